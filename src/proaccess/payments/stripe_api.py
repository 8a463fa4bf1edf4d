"""Stripe SDK setup and error helpers."""

import logging

import stripe

from proaccess.config.settings import get_config
from proaccess.payments.errors import ConfigurationError, UpstreamError

logger = logging.getLogger(__name__)

# Pinned so subscription payloads keep current_period_end at the top level
STRIPE_API_VERSION = "2023-10-16"


def configure_stripe() -> None:
    """Set the Stripe API key, or raise ConfigurationError if absent."""
    secret = get_config().stripe_secret.get_secret_value()
    if not secret:
        logger.error("stripe_secret not configured")
        raise ConfigurationError()

    stripe.api_key = secret
    stripe.api_version = STRIPE_API_VERSION


def stripe_error_message(error: stripe.StripeError) -> str:
    """Best human-readable message carried by a Stripe error."""
    return error.user_message or str(error) or "Payment provider request failed"


def upstream_error(error: stripe.StripeError) -> UpstreamError:
    """Wrap a Stripe error for the API boundary."""
    return UpstreamError(stripe_error_message(error))
