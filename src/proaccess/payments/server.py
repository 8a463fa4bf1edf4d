"""HTTP server for the Stripe webhook and the entitlement endpoints."""

import asyncio
import functools
import logging
from typing import Awaitable, Callable, Optional

from aiohttp import web

from proaccess.config.settings import get_config
from proaccess.db.pool import close_pool, get_pool
from proaccess.payments.auth import authenticate, require_admin
from proaccess.payments.cancel import cancel_subscription
from proaccess.payments.checkout import create_checkout_url
from proaccess.payments.entitlements import fetch_entitlement, parse_user_id
from proaccess.payments.errors import AuthenticationError, EntitlementError
from proaccess.payments.grants import redeem_points_for_pro, set_pro_access
from proaccess.payments.promo import sync_promo_codes
from proaccess.payments.verify import verify_payment
from proaccess.payments.webhooks import handle_webhook

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, X-Client-Info, Apikey",
}

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


@web.middleware
async def cors_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Answer preflight requests and add CORS headers to every response."""
    if request.method == "OPTIONS":
        return web.Response(status=200, headers=CORS_HEADERS)

    response = await handler(request)
    response.headers.update(CORS_HEADERS)
    return response


def json_endpoint(handler: Handler) -> Handler:
    """Turn raised errors into ``{"error": message}`` JSON responses.

    Nothing raised inside a client-facing handler crosses the HTTP
    boundary: known errors keep their status, anything else is a 500.
    """

    @functools.wraps(handler)
    async def wrapper(request: web.Request) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except EntitlementError as e:
            logger.info(f"{request.method} {request.path} -> {e.status}: {e.message}")
            return web.json_response({"error": e.message}, status=e.status)
        except Exception as e:
            logger.exception(f"Unhandled error in {request.method} {request.path}: {e}")
            return web.json_response({"error": "Internal error"}, status=500)

    return wrapper


async def _json_body(request: web.Request) -> dict:
    """Optional JSON object body; empty or malformed bodies read as {}."""
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _current_user(request: web.Request) -> str:
    return authenticate(request.headers.get("Authorization"))


async def webhook_endpoint(request: web.Request) -> web.Response:
    """Handle POST /webhooks/stripe."""
    payload = await request.read()
    return await handle_webhook(payload, request.headers.get("Stripe-Signature"))


@json_endpoint
async def create_checkout_endpoint(request: web.Request) -> web.Response:
    """Handle POST /functions/create-checkout."""
    user_id = _current_user(request)
    body = await _json_body(request)

    url = await create_checkout_url(
        user_id,
        promo_code=body.get("promoCode"),
        origin=request.headers.get("Origin"),
    )
    return web.json_response({"url": url})


@json_endpoint
async def verify_payment_endpoint(request: web.Request) -> web.Response:
    """Handle POST /functions/verify-payment."""
    user_id = _current_user(request)
    return web.json_response(await verify_payment(user_id))


@json_endpoint
async def cancel_subscription_endpoint(request: web.Request) -> web.Response:
    """Handle POST /functions/cancel-subscription."""
    user_id = _current_user(request)
    duration = await cancel_subscription(user_id)
    return web.json_response(
        {
            "success": True,
            "message": "Subscription cancelled successfully",
            "duration": duration,
        }
    )


@json_endpoint
async def entitlement_endpoint(request: web.Request) -> web.Response:
    """Handle GET /api/entitlement."""
    user_id = _current_user(request)
    record = await fetch_entitlement(user_id)
    if record is None:
        raise AuthenticationError("Profile not found")
    return web.json_response(record.to_dict())


@json_endpoint
async def redeem_points_endpoint(request: web.Request) -> web.Response:
    """Handle POST /api/redeem-points."""
    user_id = _current_user(request)
    record = await redeem_points_for_pro(user_id)
    return web.json_response({"success": True, **record.to_dict()})


@json_endpoint
async def admin_set_pro_endpoint(request: web.Request) -> web.Response:
    """Handle POST /admin/users/{user_id}/pro with body {"grant": bool}."""
    admin_id = _current_user(request)
    target_id = parse_user_id(request.match_info["user_id"])
    if target_id is None:
        raise EntitlementError("Invalid user id")

    body = await _json_body(request)
    grant = body.get("grant")
    if not isinstance(grant, bool):
        raise EntitlementError("Body must contain a boolean 'grant'")

    record = await set_pro_access(admin_id, target_id, grant)
    return web.json_response({"success": True, **record.to_dict()})


@json_endpoint
async def admin_sync_promo_codes_endpoint(request: web.Request) -> web.Response:
    """Handle POST /admin/promo-codes/sync."""
    admin_id = _current_user(request)
    await require_admin(admin_id)
    results = await sync_promo_codes(admin_id)
    return web.json_response({"success": True, "results": results})


async def create_app() -> web.Application:
    """Create aiohttp application with all routes.

    Returns:
        Configured aiohttp Application
    """
    app = web.Application(middlewares=[cors_middleware])
    app.router.add_post("/webhooks/stripe", webhook_endpoint)
    app.router.add_post("/functions/create-checkout", create_checkout_endpoint)
    app.router.add_post("/functions/verify-payment", verify_payment_endpoint)
    app.router.add_post("/functions/cancel-subscription", cancel_subscription_endpoint)
    app.router.add_get("/api/entitlement", entitlement_endpoint)
    app.router.add_post("/api/redeem-points", redeem_points_endpoint)
    app.router.add_post("/admin/users/{user_id}/pro", admin_set_pro_endpoint)
    app.router.add_post("/admin/promo-codes/sync", admin_sync_promo_codes_endpoint)
    return app


async def run_server(shutdown_event: Optional[asyncio.Event] = None) -> None:
    """Run the HTTP server until shutdown signal.

    Args:
        shutdown_event: Optional event to signal shutdown
    """
    config = get_config()
    await get_pool()
    app = await create_app()

    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, config.webhook_server_host, config.webhook_server_port)
    await site.start()

    logger.info(
        f"Entitlement server listening on {config.webhook_server_host}:{config.webhook_server_port}"
    )

    try:
        if shutdown_event:
            await shutdown_event.wait()
        else:
            await asyncio.Event().wait()
    finally:
        logger.info("Shutting down entitlement server...")
        await runner.cleanup()
        await close_pool()
