"""User-initiated Pro subscription cancellation."""

import logging
from datetime import datetime
from typing import Optional

import stripe

from proaccess.db.models import Table
from proaccess.db.pool import get_pool
from proaccess.payments.entitlements import format_subscription_duration, utc_now
from proaccess.payments.errors import NoActiveSubscriptionError
from proaccess.payments.stripe_api import configure_stripe, upstream_error
from proaccess.payments.sync import revoke_pro

logger = logging.getLogger(__name__)


def _is_already_gone(error: stripe.StripeError) -> bool:
    """Stripe reports a subscription that no longer exists as resource_missing."""
    return (
        isinstance(error, stripe.InvalidRequestError)
        and (error.code == "resource_missing" or "No such subscription" in str(error))
    )


async def cancel_subscription(user_id: str, now: Optional[datetime] = None) -> str:
    """Cancel the user's Stripe subscription and revoke Pro.

    The Stripe cancellation runs first; if it fails (other than the
    subscription already being gone) nothing local changes and the call
    can be retried as a whole.

    Args:
        user_id: Acting user's profile id
        now: Cancellation time (defaults to the current time)

    Returns:
        Human-readable length of the cancelled subscription

    Raises:
        NoActiveSubscriptionError: Profile not Pro or no subscription id
        ConfigurationError: If the Stripe key is absent
        UpstreamError: Stripe refused the cancellation
    """
    now = now or utc_now()
    pool = await get_pool()

    async with pool.acquire() as conn:
        profile = await conn.fetchrow(
            f"""
            SELECT username, is_pro, stripe_subscription_id, subscription_started_at
            FROM {Table.PROFILES}
            WHERE id = $1
            """,
            user_id,
        )

    if profile is None or not profile["is_pro"]:
        raise NoActiveSubscriptionError()
    subscription_id = profile["stripe_subscription_id"]
    if not subscription_id:
        raise NoActiveSubscriptionError("No Stripe subscription ID found")

    configure_stripe()

    try:
        stripe.Subscription.cancel(subscription_id)
    except stripe.StripeError as e:
        if not _is_already_gone(e):
            logger.error(f"Stripe cancellation failed for {subscription_id}: {e}")
            raise upstream_error(e) from e
        logger.warning(f"Subscription {subscription_id} already gone in Stripe")

    username = profile["username"] or "Unknown User"
    started_at = profile["subscription_started_at"]
    duration = format_subscription_duration(started_at, now) if started_at else "Unknown"

    async with pool.acquire() as conn:
        async with conn.transaction():
            await revoke_pro(
                "id",
                user_id,
                now,
                clear_subscription=True,
                conn=conn,
                force=True,
            )
            await conn.execute(
                f"""
                INSERT INTO {Table.CANCELLATIONS}
                    (user_id, username, cancelled_at, subscription_duration)
                VALUES ($1, $2, $3, $4)
                """,
                user_id,
                username,
                now,
                duration,
            )
            await conn.execute(
                f"INSERT INTO {Table.ADMIN_MESSAGES} (message, created_at) VALUES ($1, $2)",
                f"User {username} has cancelled their Pro subscription",
                now,
            )

    logger.info(f"User {user_id} cancelled subscription {subscription_id} after {duration}")
    return duration
