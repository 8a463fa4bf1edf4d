"""Out-of-band entitlement writers: admin grant/revoke and points redemption."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from proaccess.config.settings import get_config
from proaccess.db.models import AdminAction, Table
from proaccess.db.pool import get_pool
from proaccess.payments.auth import require_admin
from proaccess.payments.entitlements import (
    EntitlementRecord,
    WriteResult,
    fetch_entitlement,
    utc_now,
)
from proaccess.payments.errors import (
    ConcurrentUpdateError,
    EntitlementError,
    InsufficientPointsError,
)
from proaccess.payments.sync import grant_pro, revoke_pro

logger = logging.getLogger(__name__)


async def set_pro_access(
    admin_id: str,
    target_id: str,
    grant: bool,
    now: Optional[datetime] = None,
) -> EntitlementRecord:
    """Manually grant or revoke Pro for a user.

    A grant lasts ``admin_grant_days``; a revoke clears the flag and the
    expiry but leaves any Stripe subscription id in place.

    Raises:
        PermissionDeniedError: ``admin_id`` is not an admin
        EntitlementError: Target profile does not exist
        ConcurrentUpdateError: A newer write is already stored
    """
    await require_admin(admin_id)
    now = now or utc_now()
    pool = await get_pool()

    async with pool.acquire() as conn:
        async with conn.transaction():
            if grant:
                expires_at = now + timedelta(days=get_config().admin_grant_days)
                result = await grant_pro("id", target_id, now, expires_at=expires_at, conn=conn)
                action = AdminAction.GRANT_PRO
            else:
                result = await revoke_pro("id", target_id, now, conn=conn)
                action = AdminAction.REVOKE_PRO

            _raise_unless_applied(result)

            await conn.execute(
                f"""
                INSERT INTO {Table.ADMIN_ACTIONS} (admin_id, action_type, target_id)
                VALUES ($1, $2, $3)
                """,
                admin_id,
                action.value,
                target_id,
            )
            record = await fetch_entitlement(target_id, conn)

    logger.info(f"Admin {admin_id} performed {action.value} on {target_id}")
    return record


async def redeem_points_for_pro(user_id: str, now: Optional[datetime] = None) -> EntitlementRecord:
    """Spend points on a Pro period.

    The period is added to the current expiry when the user is already
    Pro, otherwise it starts now. Points and entitlement change in one
    transaction with the profile row locked.

    Raises:
        InsufficientPointsError: Fewer than ``points_redeem_cost`` points
        ConcurrentUpdateError: A newer write is already stored
    """
    config = get_config()
    now = now or utc_now()
    cost = config.points_redeem_cost
    pool = await get_pool()

    async with pool.acquire() as conn:
        async with conn.transaction():
            row = await conn.fetchrow(
                f"""
                SELECT points, is_pro, subscription_expires_at, subscription_started_at
                FROM {Table.PROFILES}
                WHERE id = $1
                FOR UPDATE
                """,
                user_id,
            )
            if row is None:
                raise EntitlementError("Profile not found")

            points = row["points"] or 0
            if points < cost:
                raise InsufficientPointsError(
                    f"You need {cost} points to redeem Pro. You currently have {points} points."
                )

            current_expiry = row["subscription_expires_at"]
            base = current_expiry if row["is_pro"] and current_expiry and current_expiry > now else now
            expires_at = base + timedelta(days=config.points_redeem_days)

            await conn.execute(
                f"UPDATE {Table.PROFILES} SET points = points - $1 WHERE id = $2",
                cost,
                user_id,
            )
            result = await grant_pro(
                "id",
                user_id,
                now,
                expires_at=expires_at,
                started_at=None if row["subscription_started_at"] else now,
                conn=conn,
            )
            _raise_unless_applied(result)
            record = await fetch_entitlement(user_id, conn)

    logger.info(f"User {user_id} redeemed {cost} points for Pro until {expires_at.isoformat()}")
    return record


def _raise_unless_applied(result: WriteResult) -> None:
    if result is WriteResult.NOT_FOUND:
        raise EntitlementError("Profile not found")
    if result is WriteResult.STALE:
        raise ConcurrentUpdateError()
