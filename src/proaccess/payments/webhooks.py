"""Stripe webhook handler and event processing.

Webhook events are the authoritative source of entitlement state. Each
handler maps one Stripe event type to a transition of the profile's
entitlement record:

    checkout.session.completed     (paid subscription)  -> PRO
    customer.subscription.created  (active/trialing)    -> PRO
    customer.subscription.updated  active               -> PRO, expiry = period end
                                   canceled/unpaid/past_due -> INACTIVE
    customer.subscription.deleted                       -> INACTIVE, subscription cleared
    invoice.payment_succeeded                           -> expiry extended
                                   (billing_reason=subscription_create) -> PRO
    invoice.payment_failed                              -> INACTIVE

Writes carry the event's ``created`` time so a late, older event cannot
undo a newer one. Processed event ids are recorded so redelivery is a
no-op.
"""

import json
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

import stripe
from aiohttp import web

from proaccess.config.settings import get_config
from proaccess.db.models import GRANTING_STATUSES, REVOKING_STATUSES, SubscriptionStatus, Table
from proaccess.db.pool import get_pool
from proaccess.payments.entitlements import WriteResult, from_unix, parse_user_id, utc_now
from proaccess.payments.errors import ConfigurationError, SignatureVerificationError
from proaccess.payments.sync import extend_pro, grant_pro, revoke_pro

logger = logging.getLogger(__name__)

EventHandler = Callable[[Any, datetime], Awaitable[None]]


async def handle_webhook(
    payload: bytes,
    sig_header: Optional[str],
) -> web.Response:
    """Handle and verify Stripe webhook events.

    Args:
        payload: Raw webhook payload bytes
        sig_header: Stripe-Signature header value, if sent

    Returns:
        aiohttp.web.Response: 200 ``{"received": true}`` once handled or
        skipped; 400 on verification failure or a processing error, in
        which case nothing is recorded and Stripe redelivers later
    """
    try:
        event = construct_event(payload, sig_header)
    except SignatureVerificationError as e:
        logger.error(f"Rejected webhook: {e.message}")
        return web.json_response({"error": e.message}, status=400)
    except ConfigurationError as e:
        return web.json_response({"error": e.message}, status=400)
    except ValueError:
        logger.error("Invalid webhook payload")
        return web.json_response({"error": "Invalid payload"}, status=400)

    event_type = event.get("type")
    event_id = event.get("id")
    event_at = from_unix(event.get("created")) or utc_now()
    logger.info(f"Received webhook {event_id}: {event_type}")

    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.info(f"Unhandled event type: {event_type}")
        return web.json_response({"received": True})

    try:
        if event_id and await _already_processed(event_id):
            logger.info(f"Duplicate delivery of {event_id} - already processed")
            return web.json_response({"received": True})

        await handler(event["data"]["object"], event_at)

        if event_id:
            await _record_event(event_id, event_type, event.get("created"))

    except Exception as e:
        logger.exception(f"Error processing webhook {event_type} ({event_id}): {e}")
        return web.json_response({"error": str(e) or "Webhook processing failed"}, status=400)

    return web.json_response({"received": True})


def construct_event(payload: bytes, sig_header: Optional[str]) -> Any:
    """Verify and parse a webhook payload.

    With a signing secret configured the signature is mandatory. Without
    one, the payload is parsed unverified only if
    ``require_webhook_signature`` has been switched off.

    Raises:
        SignatureVerificationError: Missing or invalid signature
        ConfigurationError: No secret configured and verification required
        ValueError: Payload is not valid JSON
    """
    config = get_config()
    secret = config.stripe_webhook_secret.get_secret_value()

    if secret:
        if not sig_header:
            raise SignatureVerificationError("Missing Stripe-Signature header")
        try:
            return stripe.Webhook.construct_event(payload, sig_header, secret)
        except stripe.SignatureVerificationError as e:
            raise SignatureVerificationError() from e

    if config.require_webhook_signature:
        logger.error("stripe_webhook_secret not configured - refusing unverified webhook")
        raise ConfigurationError("Webhook secret not configured")

    logger.warning("Processing webhook WITHOUT signature verification")
    return json.loads(payload)


async def _already_processed(event_id: str) -> bool:
    pool = await get_pool()
    async with pool.acquire() as conn:
        found = await conn.fetchval(
            f"SELECT 1 FROM {Table.STRIPE_EVENTS} WHERE event_id = $1",
            event_id,
        )
    return found is not None


async def _record_event(event_id: str, event_type: str, created: Optional[int]) -> None:
    pool = await get_pool()
    async with pool.acquire() as conn:
        await conn.execute(
            f"""
            INSERT INTO {Table.STRIPE_EVENTS} (event_id, event_type, stripe_created)
            VALUES ($1, $2, $3)
            ON CONFLICT (event_id) DO NOTHING
            """,
            event_id,
            event_type,
            created,
        )


def _object_id(value: Any) -> Optional[str]:
    """Stripe references arrive as ids, or as objects when expanded."""
    if value is None or isinstance(value, str):
        return value
    return value.get("id")


async def _handle_checkout_completed(session: Any, event_at: datetime) -> None:
    """checkout.session.completed: grant Pro to the user who paid."""
    metadata = session.get("metadata") or {}
    raw_user_id = metadata.get("user_id") or session.get("client_reference_id")
    user_id = parse_user_id(raw_user_id)

    if not user_id:
        logger.warning(f"checkout.session.completed without usable user id ({raw_user_id!r}) - skipping")
        return

    mode = session.get("mode")
    payment_status = session.get("payment_status")
    if mode != "subscription" or payment_status != "paid":
        logger.info(
            f"Checkout for user {user_id} not a paid subscription "
            f"(mode={mode}, payment_status={payment_status}) - skipping"
        )
        return

    await grant_pro(
        "id",
        user_id,
        event_at,
        started_at=event_at,
        subscription_id=_object_id(session.get("subscription")),
        customer_id=_object_id(session.get("customer")),
    )


async def _handle_subscription_created(subscription: Any, event_at: datetime) -> None:
    """customer.subscription.created: grant Pro to the customer's profile."""
    customer_id = _object_id(subscription.get("customer"))
    status = subscription.get("status")

    if not customer_id:
        logger.warning("customer.subscription.created missing customer - skipping")
        return

    if status not in GRANTING_STATUSES:
        logger.info(f"Subscription {subscription.get('id')} created with status {status} - waiting")
        return

    await grant_pro(
        "stripe_customer_id",
        customer_id,
        event_at,
        started_at=event_at,
        subscription_id=subscription.get("id"),
        customer_id=customer_id,
    )


async def _handle_subscription_updated(subscription: Any, event_at: datetime) -> None:
    """customer.subscription.updated: follow Stripe's subscription status."""
    subscription_id = subscription.get("id")
    status = subscription.get("status")

    if not subscription_id:
        logger.warning("customer.subscription.updated missing id - skipping")
        return

    if status == SubscriptionStatus.ACTIVE.value:
        await grant_pro(
            "stripe_subscription_id",
            subscription_id,
            event_at,
            expires_at=from_unix(subscription.get("current_period_end")),
        )
    elif status in REVOKING_STATUSES:
        await revoke_pro("stripe_subscription_id", subscription_id, event_at)
    else:
        logger.info(f"Subscription {subscription_id} updated to {status} - no change")


async def _handle_subscription_deleted(subscription: Any, event_at: datetime) -> None:
    """customer.subscription.deleted: terminal, applies whatever came before."""
    subscription_id = subscription.get("id")
    if not subscription_id:
        logger.warning("customer.subscription.deleted missing id - skipping")
        return

    await revoke_pro(
        "stripe_subscription_id",
        subscription_id,
        event_at,
        clear_subscription=True,
        force=True,
    )


async def _handle_invoice_payment_succeeded(invoice: Any, event_at: datetime) -> None:
    """invoice.payment_succeeded: extend expiry; first invoice also grants Pro."""
    subscription_id = _object_id(invoice.get("subscription"))
    if not subscription_id:
        logger.info(f"Invoice {invoice.get('id')} has no subscription - skipping")
        return

    if invoice.get("billing_reason") != "subscription_create":
        await extend_pro("stripe_subscription_id", subscription_id, event_at)
        return

    result = await grant_pro("stripe_subscription_id", subscription_id, event_at, started_at=event_at)

    # First invoice can beat checkout.session.completed, before the
    # subscription id is on the profile.
    customer_id = _object_id(invoice.get("customer"))
    if result is WriteResult.NOT_FOUND and customer_id:
        await grant_pro(
            "stripe_customer_id",
            customer_id,
            event_at,
            started_at=event_at,
            subscription_id=subscription_id,
        )


async def _handle_invoice_payment_failed(invoice: Any, event_at: datetime) -> None:
    """invoice.payment_failed: drop access, keep expiry for the record."""
    subscription_id = _object_id(invoice.get("subscription"))
    if not subscription_id:
        logger.info(f"Invoice {invoice.get('id')} has no subscription - skipping")
        return

    await revoke_pro("stripe_subscription_id", subscription_id, event_at, clear_expiry=False)


EVENT_HANDLERS: dict[str, EventHandler] = {
    "checkout.session.completed": _handle_checkout_completed,
    "customer.subscription.created": _handle_subscription_created,
    "customer.subscription.updated": _handle_subscription_updated,
    "customer.subscription.deleted": _handle_subscription_deleted,
    "invoice.payment_succeeded": _handle_invoice_payment_succeeded,
    "invoice.payment_failed": _handle_invoice_payment_failed,
}
