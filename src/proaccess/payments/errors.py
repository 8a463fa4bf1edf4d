"""Error taxonomy for entitlement operations.

Every error carries a user-facing ``message`` and the HTTP ``status`` the
server answers with. Handlers convert them to ``{"error": message}``.
"""


class EntitlementError(Exception):
    """Base class for errors surfaced to API callers."""

    status = 400
    default_message = "Request failed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class AuthenticationError(EntitlementError):
    """Missing or invalid session token."""

    status = 401
    default_message = "Authentication failed"


class PermissionDeniedError(EntitlementError):
    """Authenticated user lacks the admin flag."""

    status = 403
    default_message = "Unauthorized: Admin access required"


class ConfigurationError(EntitlementError):
    """Payment or auth credentials missing server-side."""

    status = 500
    default_message = "Payments are not configured. Please contact support."


class UpstreamError(EntitlementError):
    """The payment processor rejected a request."""

    status = 502
    default_message = "Payment provider request failed"


class SignatureVerificationError(EntitlementError):
    """Webhook payload could not be verified."""

    default_message = "Webhook signature verification failed"


class NoActiveSubscriptionError(EntitlementError):
    """Cancellation attempted with nothing to cancel."""

    default_message = "No active subscription found"


class InvalidPromoCodeError(EntitlementError):
    """Promo code is unknown, inactive, or not registered with Stripe."""

    default_message = "Invalid promo code"


class InsufficientPointsError(EntitlementError):
    """Not enough points for a redemption."""

    default_message = "Not enough points to redeem"


class ConcurrentUpdateError(EntitlementError):
    """A newer entitlement write landed first; the caller should retry."""

    status = 409
    default_message = "Entitlement changed concurrently, please try again"
