"""Entitlement record reads and the single compare-and-set writer.

All writers (webhooks, verification, cancellation, admin grants, points
redemption) change entitlement columns through
:func:`apply_entitlement_update`. Each write carries the time of the fact
it reports (the Stripe event ``created`` time for webhooks, the wall clock
for synchronous calls) and is rejected when the stored record already
reflects a later fact, so out-of-order webhook delivery cannot roll
entitlement back.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

import asyncpg

from proaccess.db.models import Table
from proaccess.db.pool import get_pool

logger = logging.getLogger(__name__)

# Columns a writer may change. Keys double as SQL identifiers, so anything
# outside this set is refused before it reaches a query string.
ENTITLEMENT_FIELDS = frozenset(
    {
        "is_pro",
        "subscription_expires_at",
        "subscription_started_at",
        "stripe_subscription_id",
        "stripe_customer_id",
    }
)

MATCH_COLUMNS = frozenset({"id", "stripe_customer_id", "stripe_subscription_id"})

_SELECT_COLUMNS = """
    id, is_pro, subscription_expires_at, subscription_started_at,
    stripe_subscription_id, stripe_customer_id,
    entitlement_updated_at, entitlement_version
"""


class WriteResult(str, Enum):
    """Outcome of a compare-and-set entitlement write."""

    APPLIED = "applied"
    STALE = "stale"
    NOT_FOUND = "not_found"


@dataclass
class EntitlementRecord:
    """Per-user Pro entitlement state."""

    user_id: str
    is_pro: bool = False
    subscription_expires_at: Optional[datetime] = None
    subscription_started_at: Optional[datetime] = None
    external_subscription_id: Optional[str] = None
    external_customer_id: Optional[str] = None
    updated_at: Optional[datetime] = None
    version: int = 0

    @classmethod
    def from_row(cls, row: Any) -> "EntitlementRecord":
        return cls(
            user_id=str(row["id"]),
            is_pro=bool(row["is_pro"]),
            subscription_expires_at=row["subscription_expires_at"],
            subscription_started_at=row["subscription_started_at"],
            external_subscription_id=row["stripe_subscription_id"],
            external_customer_id=row["stripe_customer_id"],
            updated_at=row["entitlement_updated_at"],
            version=row["entitlement_version"] or 0,
        )

    def is_active(self, now: Optional[datetime] = None) -> bool:
        """Effective access: flagged Pro and not past the expiry.

        A record whose expiry has passed reads as inactive even if no
        webhook has cleared ``is_pro`` yet.
        """
        if not self.is_pro:
            return False
        if self.subscription_expires_at is None:
            return True
        now = now or utc_now()
        return self.subscription_expires_at > now

    def to_dict(self, now: Optional[datetime] = None) -> dict:
        """JSON shape exposed on the profile/entitlement read API."""
        return {
            "user_id": self.user_id,
            "is_pro": self.is_pro,
            "active": self.is_active(now),
            "subscription_expires_at": _iso(self.subscription_expires_at),
            "subscription_started_at": _iso(self.subscription_started_at),
            "stripe_subscription_id": self.external_subscription_id,
            "stripe_customer_id": self.external_customer_id,
            "version": self.version,
        }


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def parse_user_id(value: Any) -> Optional[str]:
    """Normalize a user id to canonical UUID text, or None if malformed."""
    if not value:
        return None
    try:
        return str(uuid.UUID(str(value)))
    except ValueError:
        return None


def from_unix(timestamp: Optional[int]) -> Optional[datetime]:
    """Convert a Stripe epoch-seconds field to an aware datetime."""
    if timestamp is None:
        return None
    return datetime.fromtimestamp(int(timestamp), tz=timezone.utc)


def format_subscription_duration(started_at: datetime, now: Optional[datetime] = None) -> str:
    """Human-readable length of a subscription.

    Whole elapsed days are bucketed into days (< 7), weeks (< 30),
    30-day months (< 365) or 365-day years.

    >>> from datetime import datetime, timedelta, timezone
    >>> now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    >>> format_subscription_duration(now - timedelta(days=10), now)
    '1 week'
    """
    now = now or utc_now()
    days = max((now - started_at) // timedelta(days=1), 0)

    if days < 7:
        count, unit = days, "day"
    elif days < 30:
        count, unit = days // 7, "week"
    elif days < 365:
        count, unit = days // 30, "month"
    else:
        count, unit = days // 365, "year"

    return f"{count} {unit}{'' if count == 1 else 's'}"


async def fetch_entitlement(
    user_id: str,
    conn: Optional[asyncpg.Connection] = None,
) -> Optional[EntitlementRecord]:
    """Load the entitlement record for a user, or None if no profile exists."""
    return await _fetch_one("id", user_id, conn)


async def find_by_customer(customer_id: str) -> Optional[EntitlementRecord]:
    return await _fetch_one("stripe_customer_id", customer_id)


async def find_by_subscription(subscription_id: str) -> Optional[EntitlementRecord]:
    return await _fetch_one("stripe_subscription_id", subscription_id)


async def _fetch_one(
    column: str,
    value: str,
    conn: Optional[asyncpg.Connection] = None,
) -> Optional[EntitlementRecord]:
    if column not in MATCH_COLUMNS:
        raise ValueError(f"Cannot look up profiles by {column!r}")

    query = f"SELECT {_SELECT_COLUMNS} FROM {Table.PROFILES} WHERE {column} = $1 LIMIT 1"

    if conn is not None:
        row = await conn.fetchrow(query, value)
    else:
        pool = await get_pool()
        async with pool.acquire() as acquired:
            row = await acquired.fetchrow(query, value)

    return EntitlementRecord.from_row(row) if row else None


async def apply_entitlement_update(
    match_column: str,
    match_value: str,
    changes: dict[str, Any],
    event_at: datetime,
    conn: Optional[asyncpg.Connection] = None,
    force: bool = False,
) -> WriteResult:
    """Compare-and-set write of entitlement columns.

    The UPDATE only applies to rows whose ``entitlement_updated_at`` is
    null or not later than ``event_at``; it bumps ``entitlement_version``
    and never moves ``entitlement_updated_at`` backwards. Equal timestamps
    apply, so redelivering the same event converges to the same state.
    ``force`` skips the ordering guard for terminal facts (a deleted
    subscription stays deleted whatever arrived before it).

    Args:
        match_column: One of ``id``, ``stripe_customer_id``,
            ``stripe_subscription_id``
        match_value: Value to match
        changes: Column -> new value, keys limited to ENTITLEMENT_FIELDS
        event_at: Time of the fact this write reports (timezone-aware)
        conn: Optional connection, for callers running inside a transaction
        force: Apply regardless of the stored event time

    Returns:
        WriteResult.APPLIED, STALE (a later fact is already stored), or
        NOT_FOUND (no profile matched)
    """
    if match_column not in MATCH_COLUMNS:
        raise ValueError(f"Cannot match profiles by {match_column!r}")
    unknown = set(changes) - ENTITLEMENT_FIELDS
    if unknown:
        raise ValueError(f"Not entitlement fields: {sorted(unknown)}")
    if not changes:
        raise ValueError("No entitlement fields to update")

    columns = list(changes)
    assignments = ", ".join(f"{col} = ${i}" for i, col in enumerate(columns, start=1))
    event_param = len(columns) + 1
    match_param = len(columns) + 2

    guard = (
        ""
        if force
        else f"AND (entitlement_updated_at IS NULL OR entitlement_updated_at <= ${event_param})"
    )
    query = f"""
        UPDATE {Table.PROFILES}
        SET {assignments},
            entitlement_updated_at = GREATEST(entitlement_updated_at, ${event_param}),
            entitlement_version = entitlement_version + 1
        WHERE {match_column} = ${match_param}
          {guard}
    """
    args = [changes[col] for col in columns] + [event_at, match_value]

    if conn is not None:
        return await _execute_cas(conn, query, args, match_column, match_value, event_at)

    pool = await get_pool()
    async with pool.acquire() as acquired:
        return await _execute_cas(acquired, query, args, match_column, match_value, event_at)


async def _execute_cas(
    conn: asyncpg.Connection,
    query: str,
    args: list,
    match_column: str,
    match_value: str,
    event_at: datetime,
) -> WriteResult:
    status = await conn.execute(query, *args)

    if _rows_affected(status) > 0:
        return WriteResult.APPLIED

    stored_at = await conn.fetchval(
        f"SELECT entitlement_updated_at FROM {Table.PROFILES} WHERE {match_column} = $1 LIMIT 1",
        match_value,
    )
    if stored_at is None:
        logger.warning(f"No profile with {match_column}={match_value} - write skipped")
        return WriteResult.NOT_FOUND

    logger.warning(
        f"Stale entitlement write for {match_column}={match_value}: "
        f"event at {event_at.isoformat()} is older than stored {stored_at.isoformat()}"
    )
    return WriteResult.STALE


def _rows_affected(status: Any) -> int:
    """Parse the row count out of an asyncpg command tag like 'UPDATE 1'."""
    try:
        return int(str(status).rsplit(" ", 1)[-1])
    except ValueError:
        return 0
