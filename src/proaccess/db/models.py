"""Lightweight table-name constants and column-value enums."""

from enum import Enum


class Table:
    """Database table names."""

    PROFILES = "profiles"
    STRIPE_EVENTS = "stripe_events"
    CANCELLATIONS = "cancellations"
    ADMIN_MESSAGES = "admin_messages"
    ADMIN_ACTIONS = "admin_actions"
    PROMO_CODES = "promo_codes"
    SCHEMA_MIGRATIONS = "schema_migrations"


class SubscriptionStatus(str, Enum):
    """Stripe subscription status values the service reacts to."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"


# Statuses that grant entitlement when a subscription is created or found
GRANTING_STATUSES = frozenset(
    {SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value}
)

# Statuses that revoke entitlement on customer.subscription.updated
REVOKING_STATUSES = frozenset(
    {
        SubscriptionStatus.CANCELED.value,
        SubscriptionStatus.UNPAID.value,
        SubscriptionStatus.PAST_DUE.value,
    }
)


class AdminAction(str, Enum):
    """admin_actions.action_type values."""

    GRANT_PRO = "grant_pro"
    REVOKE_PRO = "revoke_pro"
    SYNC_PROMO_CODES = "sync_promo_codes"


class PromoSyncStatus(str, Enum):
    """Per-code outcome of a promo code sync."""

    CREATED = "created"
    ALREADY_EXISTS = "already_exists"
    ERROR = "error"
