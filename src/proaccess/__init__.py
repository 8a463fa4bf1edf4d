"""Pro entitlement service: Stripe checkout, webhooks and verification."""

__version__ = "0.1.0"
