"""Process entry point: migrate the database, then serve until signalled."""

import asyncio
import logging
import signal
import sys

from proaccess.config import get_config
from proaccess.db import close_pool, get_pool
from proaccess.db.schema.migrate import migrate, schema_version
from proaccess.payments.server import run_server

logger = logging.getLogger(__name__)


async def prepare() -> None:
    """
    Connect to the database and bring the schema up to date.

    Raises:
        SystemExit: On configuration, database or migration errors
    """
    try:
        config = get_config()
        logger.info(f"Starting proaccess (env={config.env})")

        await get_pool()
        applied = await migrate()
        logger.info(f"Schema at version {await schema_version()} ({applied} migration(s) applied)")

        if not config.stripe_secret.get_secret_value():
            logger.warning("stripe_secret not set - checkout, verification and cancellation will fail")
        if not config.stripe_webhook_secret.get_secret_value():
            logger.warning("stripe_webhook_secret not set - webhooks will be rejected")

    except Exception as e:
        logger.error(f"Startup failed: {e}")
        await close_pool()
        raise SystemExit(1) from e


async def serve() -> None:
    """Run the HTTP server until SIGTERM or SIGINT."""
    await prepare()

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown_event.set)

    await run_server(shutdown_event)


def main() -> None:
    """Console script entry point."""
    logging.basicConfig(
        level=get_config().log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    try:
        asyncio.run(serve())
    except SystemExit:
        raise
    except Exception as e:
        logging.error(f"Unexpected error: {e}")
        sys.exit(1)

    logger.info("Stopped")


if __name__ == "__main__":
    main()
