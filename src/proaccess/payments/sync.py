"""Entitlement state transitions shared by every writer."""

import logging
from datetime import datetime, timedelta
from typing import Optional

import asyncpg

from proaccess.config.settings import get_config
from proaccess.payments.entitlements import WriteResult, apply_entitlement_update

logger = logging.getLogger(__name__)


async def grant_pro(
    match_column: str,
    match_value: str,
    event_at: datetime,
    expires_at: Optional[datetime] = None,
    started_at: Optional[datetime] = None,
    subscription_id: Optional[str] = None,
    customer_id: Optional[str] = None,
    conn: Optional[asyncpg.Connection] = None,
) -> WriteResult:
    """Move a profile to PRO.

    Sets ``is_pro`` and the expiry (default: ``event_at`` plus the
    configured paid period). Start time and Stripe ids are written only
    when given, so a renewal never overwrites the original start.

    Args:
        match_column: Profile column to match on
        match_value: Value to match
        event_at: Time of the fact being applied
        expires_at: Explicit expiry (e.g. Stripe current_period_end)
        started_at: First-grant time, if this grant starts a subscription
        subscription_id: Stripe subscription id to store
        customer_id: Stripe customer id to store
        conn: Optional connection inside a caller's transaction

    Returns:
        WriteResult of the compare-and-set write
    """
    if expires_at is None:
        expires_at = event_at + timedelta(days=get_config().pro_period_days)

    changes = {"is_pro": True, "subscription_expires_at": expires_at}
    if started_at is not None:
        changes["subscription_started_at"] = started_at
    if subscription_id:
        changes["stripe_subscription_id"] = subscription_id
    if customer_id:
        changes["stripe_customer_id"] = customer_id

    result = await apply_entitlement_update(match_column, match_value, changes, event_at, conn)

    if result is WriteResult.APPLIED:
        logger.info(
            f"Granted Pro for {match_column}={match_value} "
            f"until {expires_at.isoformat()} (subscription={subscription_id})"
        )
    return result


async def extend_pro(
    match_column: str,
    match_value: str,
    event_at: datetime,
    expires_at: Optional[datetime] = None,
) -> WriteResult:
    """Push the expiry forward without touching ``is_pro``."""
    if expires_at is None:
        expires_at = event_at + timedelta(days=get_config().pro_period_days)

    result = await apply_entitlement_update(
        match_column,
        match_value,
        {"subscription_expires_at": expires_at},
        event_at,
    )
    if result is WriteResult.APPLIED:
        logger.info(f"Extended Pro for {match_column}={match_value} to {expires_at.isoformat()}")
    return result


async def revoke_pro(
    match_column: str,
    match_value: str,
    event_at: datetime,
    clear_expiry: bool = True,
    clear_subscription: bool = False,
    conn: Optional[asyncpg.Connection] = None,
    force: bool = False,
) -> WriteResult:
    """Move a profile to INACTIVE.

    Args:
        match_column: Profile column to match on
        match_value: Value to match
        event_at: Time of the fact being applied
        clear_expiry: Also null ``subscription_expires_at``
        clear_subscription: Also null ``stripe_subscription_id``
        conn: Optional connection inside a caller's transaction
        force: Apply even if a later event is already stored

    Returns:
        WriteResult of the compare-and-set write
    """
    changes: dict = {"is_pro": False}
    if clear_expiry:
        changes["subscription_expires_at"] = None
    if clear_subscription:
        changes["stripe_subscription_id"] = None

    result = await apply_entitlement_update(
        match_column, match_value, changes, event_at, conn, force=force
    )

    if result is WriteResult.APPLIED:
        logger.info(f"Revoked Pro for {match_column}={match_value}")
    return result


async def link_customer(user_id: str, customer_id: str, linked_at: datetime) -> WriteResult:
    """Store the Stripe customer id on a profile.

    Forced so the link lands even when a later entitlement fact is
    stored; ``entitlement_updated_at`` never moves backwards.
    """
    result = await apply_entitlement_update(
        "id",
        user_id,
        {"stripe_customer_id": customer_id},
        linked_at,
        force=True,
    )
    if result is WriteResult.APPLIED:
        logger.info(f"Linked Stripe customer {customer_id} to user {user_id}")
    return result
