"""Stripe subscription and Pro entitlement processing.

Handles checkout session creation, webhook processing, synchronous
payment verification, cancellation, manual/points grants and the
client-side verification poller.
"""

from proaccess.payments.cancel import cancel_subscription
from proaccess.payments.checkout import create_checkout_url
from proaccess.payments.entitlements import (
    EntitlementRecord,
    apply_entitlement_update,
    fetch_entitlement,
    format_subscription_duration,
)
from proaccess.payments.grants import redeem_points_for_pro, set_pro_access
from proaccess.payments.poller import PollResult, VerificationPoller
from proaccess.payments.verify import verify_payment
from proaccess.payments.webhooks import handle_webhook

__all__ = [
    "EntitlementRecord",
    "PollResult",
    "VerificationPoller",
    "apply_entitlement_update",
    "cancel_subscription",
    "create_checkout_url",
    "fetch_entitlement",
    "format_subscription_duration",
    "handle_webhook",
    "redeem_points_for_pro",
    "set_pro_access",
    "verify_payment",
]
