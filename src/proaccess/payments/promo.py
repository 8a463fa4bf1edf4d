"""Promo code allow-list and its mirror in Stripe."""

import logging
from typing import Optional

import stripe

from proaccess.db.models import AdminAction, PromoSyncStatus, Table
from proaccess.db.pool import get_pool
from proaccess.payments.stripe_api import configure_stripe, stripe_error_message

logger = logging.getLogger(__name__)


def normalize_promo_code(code: Optional[str]) -> Optional[str]:
    """Trim and upper-case a user-entered code; blank means no code."""
    if code is None:
        return None
    code = code.strip().upper()
    return code or None


async def lookup_promo_code(code: str) -> Optional[dict]:
    """Return the active allow-list entry for ``code``, or None."""
    pool = await get_pool()
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            f"""
            SELECT code, discount_percent, max_uses
            FROM {Table.PROMO_CODES}
            WHERE upper(code) = $1 AND is_active
            """,
            code,
        )
    return dict(row) if row else None


def find_stripe_promotion_code(code: str) -> Optional[str]:
    """Id of the active Stripe promotion code for ``code``, if any.

    Raises:
        stripe.StripeError: On Stripe API errors
    """
    promotion_codes = stripe.PromotionCode.list(code=code, active=True, limit=1)
    if promotion_codes.data:
        return promotion_codes.data[0].id
    return None


async def sync_promo_codes(admin_id: str) -> list[dict]:
    """Create a Stripe coupon and promotion code for each active promo code.

    One failing code does not stop the others; each gets its own result
    entry with status ``created``, ``already_exists`` or ``error``. Codes
    already live in Stripe are skipped before a coupon is made for them.
    The run is recorded in ``admin_actions``.

    Args:
        admin_id: Admin who triggered the sync

    Returns:
        List of per-code result dicts

    Raises:
        ConfigurationError: If the Stripe key is absent
    """
    configure_stripe()

    pool = await get_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            f"""
            SELECT code, discount_percent, max_uses
            FROM {Table.PROMO_CODES}
            WHERE is_active
            ORDER BY code
            """
        )

    results = []
    for row in rows:
        code = row["code"].upper()
        try:
            if find_stripe_promotion_code(code) is not None:
                results.append({"code": code, "status": PromoSyncStatus.ALREADY_EXISTS.value})
                continue

            coupon = stripe.Coupon.create(
                percent_off=row["discount_percent"],
                duration="forever",
                name=f"{row['discount_percent']}% off",
            )
            params = {"coupon": coupon.id, "code": code}
            if row["max_uses"]:
                params["max_redemptions"] = row["max_uses"]
            promotion_code = stripe.PromotionCode.create(**params)

            results.append(
                {
                    "code": code,
                    "status": PromoSyncStatus.CREATED.value,
                    "coupon_id": coupon.id,
                    "promotion_code_id": promotion_code.id,
                }
            )
            logger.info(f"Created Stripe promotion code {code} ({promotion_code.id})")

        except stripe.StripeError as e:
            if e.code == "resource_already_exists":
                results.append({"code": code, "status": PromoSyncStatus.ALREADY_EXISTS.value})
                continue
            logger.error(f"Failed to sync promo code {code}: {e}")
            results.append(
                {
                    "code": code,
                    "status": PromoSyncStatus.ERROR.value,
                    "error": stripe_error_message(e),
                }
            )

    async with pool.acquire() as conn:
        await conn.execute(
            f"""
            INSERT INTO {Table.ADMIN_ACTIONS} (admin_id, action_type)
            VALUES ($1, $2)
            """,
            admin_id,
            AdminAction.SYNC_PROMO_CODES.value,
        )

    logger.info(f"Admin {admin_id} synced {len(results)} promo code(s)")
    return results
