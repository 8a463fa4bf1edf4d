"""Synchronous payment verification, independent of webhook delivery."""

import logging
from typing import Any, Optional

import stripe

from proaccess.db.models import GRANTING_STATUSES
from proaccess.payments.entitlements import fetch_entitlement, utc_now
from proaccess.payments.stripe_api import configure_stripe, upstream_error
from proaccess.payments.sync import grant_pro

logger = logging.getLogger(__name__)

SUBSCRIPTION_LOOKUP_LIMIT = 10
SESSION_LOOKUP_LIMIT = 5


async def verify_payment(user_id: str) -> dict:
    """Re-derive entitlement from Stripe for a user returning from checkout.

    Looks for an active or trialing subscription of the user's Stripe
    customer, first among the customer's subscriptions and then behind
    the customer's recent paid checkout sessions. A hit grants Pro the
    same way the webhook would.

    Args:
        user_id: Acting user's profile id

    Returns:
        ``{"success": bool, "message": str}`` plus ``"is_pro": True`` when
        the user is (now) Pro

    Raises:
        ConfigurationError: If the Stripe key is absent
        UpstreamError: On Stripe API errors
    """
    record = await fetch_entitlement(user_id)

    if record is None or not record.external_customer_id:
        return {"success": False, "message": "No Stripe customer found"}

    if record.is_active():
        return {"success": True, "is_pro": True, "message": "Already Pro"}

    configure_stripe()
    customer_id = record.external_customer_id

    try:
        subscription = _find_active_subscription(customer_id)
    except stripe.StripeError as e:
        logger.error(f"Stripe lookup failed while verifying user {user_id}: {e}")
        raise upstream_error(e) from e

    if subscription is None:
        logger.info(f"No active subscription for user {user_id} (customer {customer_id})")
        return {"success": False, "message": "No active subscription found"}

    now = utc_now()
    await grant_pro(
        "id",
        user_id,
        now,
        started_at=now,
        subscription_id=subscription["id"],
    )
    logger.info(f"Verified subscription {subscription['id']} for user {user_id}")

    return {"success": True, "is_pro": True, "message": "Pro activated successfully!"}


def _find_active_subscription(customer_id: str) -> Optional[Any]:
    """First active/trialing subscription of the customer, if any.

    Raises:
        stripe.StripeError: On Stripe API errors
    """
    subscriptions = stripe.Subscription.list(
        customer=customer_id,
        limit=SUBSCRIPTION_LOOKUP_LIMIT,
    )
    for subscription in subscriptions.data:
        if subscription["status"] in GRANTING_STATUSES:
            return subscription

    sessions = stripe.checkout.Session.list(
        customer=customer_id,
        limit=SESSION_LOOKUP_LIMIT,
    )
    paid_session = next(
        (
            s for s in sessions.data
            if s["payment_status"] == "paid" and s["mode"] == "subscription"
        ),
        None,
    )
    if paid_session is None or not paid_session.get("subscription"):
        return None

    subscription = stripe.Subscription.retrieve(paid_session["subscription"])
    if subscription["status"] in GRANTING_STATUSES:
        return subscription
    return None
