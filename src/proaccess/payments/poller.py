"""Client-side entitlement verification after a checkout redirect.

Webhook delivery lags checkout completion by anywhere from a second to
a minute. After Stripe redirects back with ``?success=true`` the client
first asks the server to verify the payment directly against Stripe, and
if that does not confirm Pro, polls the entitlement record at a fixed
interval for a bounded number of attempts. The poller only reads.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import aiohttp

from proaccess.config.settings import get_config

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 2.0
DEFAULT_MAX_ATTEMPTS = 15

VERIFY_PATH = "/functions/verify-payment"
ENTITLEMENT_PATH = "/api/entitlement"

DELAYED_ACTIVATION_MESSAGE = (
    "Your payment is being processed. Activation is taking longer than expected; "
    "please refresh in a few minutes."
)
ACTIVATED_MESSAGE = "Welcome to Pro!"
CANCELLED_MESSAGE = "Verification stopped"


@dataclass
class PollResult:
    """Outcome of one verification run."""

    activated: bool
    attempts: int
    message: str
    record: Optional[dict] = None


class VerificationPoller:
    """Confirm Pro activation after checkout: verify once, then poll.

    Args:
        session: aiohttp client session
        base_url: Entitlement service base URL
        token: Bearer session token of the signed-in user
        interval: Seconds between entitlement polls
        max_attempts: Entitlement polls before giving up
        sleep: Awaitable sleep, injectable for tests
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        base_url: str,
        token: str,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.interval = interval
        self.max_attempts = max_attempts
        self._headers = {"Authorization": f"Bearer {token}"}
        self._sleep = sleep
        self._cancelled = False
        self.record: Optional[dict] = None

    @classmethod
    def from_config(cls, session: aiohttp.ClientSession, base_url: str, token: str) -> "VerificationPoller":
        """Poller using the configured interval and attempt budget."""
        config = get_config()
        return cls(
            session,
            base_url,
            token,
            interval=config.verify_poll_interval_seconds,
            max_attempts=config.verify_poll_max_attempts,
        )

    def cancel(self) -> None:
        """Stop before the next attempt (e.g. the page was left)."""
        self._cancelled = True

    async def run(self) -> PollResult:
        verified = await self._verify()
        if verified.get("is_pro"):
            return PollResult(True, 0, verified.get("message") or ACTIVATED_MESSAGE, self.record)

        attempts = 0
        while attempts < self.max_attempts:
            if self._cancelled:
                return PollResult(False, attempts, CANCELLED_MESSAGE, self.record)

            await self._sleep(self.interval)
            if self._cancelled:
                return PollResult(False, attempts, CANCELLED_MESSAGE, self.record)

            attempts += 1
            record = await self._fetch_entitlement()
            if record is not None:
                self.record = record
                if record.get("active"):
                    logger.info(f"Pro active after {attempts} poll(s)")
                    return PollResult(True, attempts, ACTIVATED_MESSAGE, record)

        logger.warning(f"Pro not active after {attempts} polls - giving up")
        return PollResult(False, attempts, DELAYED_ACTIVATION_MESSAGE, self.record)

    async def _verify(self) -> dict:
        """POST the verify endpoint; any failure just falls through to polling."""
        try:
            async with self.session.post(
                f"{self.base_url}{VERIFY_PATH}",
                headers=self._headers,
            ) as response:
                body = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning(f"Payment verification request failed: {e}")
            return {}

        if not isinstance(body, dict):
            return {}
        if body.get("error"):
            logger.warning(f"Payment verification error: {body['error']}")
        return body

    async def _fetch_entitlement(self) -> Optional[dict]:
        try:
            async with self.session.get(
                f"{self.base_url}{ENTITLEMENT_PATH}",
                headers=self._headers,
            ) as response:
                if response.status != 200:
                    logger.warning(f"Entitlement read returned HTTP {response.status}")
                    return None
                return await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning(f"Entitlement read failed: {e}")
            return None
