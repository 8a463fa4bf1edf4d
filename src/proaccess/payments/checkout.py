"""Stripe Checkout session creation for Pro subscription signup."""

import logging
from typing import Optional

import stripe

from proaccess.config.settings import get_config
from proaccess.payments.entitlements import EntitlementRecord, fetch_entitlement, from_unix
from proaccess.payments.errors import InvalidPromoCodeError
from proaccess.payments.promo import (
    find_stripe_promotion_code,
    lookup_promo_code,
    normalize_promo_code,
)
from proaccess.payments.stripe_api import configure_stripe, upstream_error
from proaccess.payments.sync import link_customer

logger = logging.getLogger(__name__)


async def create_checkout_url(
    user_id: str,
    promo_code: Optional[str] = None,
    origin: Optional[str] = None,
) -> str:
    """Create a Stripe Checkout Session for the weekly Pro subscription.

    The user id is sent both as ``client_reference_id`` and as
    ``metadata.user_id``; the webhook reads either.
A profile without a Stripe customer gets one here, so payment
    verification can find the subscription before any webhook arrives.

    Args:
        user_id: Acting user's profile id
        promo_code: Optional discount code entered by the user
        origin: Origin the user came from, used for redirect URLs

    Returns:
        Stripe Checkout Session URL

    Raises:
        ConfigurationError: If the Stripe key is absent
        InvalidPromoCodeError: If the code is not on the allow-list or not in Stripe
        UpstreamError: On Stripe API errors
    """
    config = get_config()
    configure_stripe()

    origin = (origin or config.app_origin).rstrip("/")
    code = normalize_promo_code(promo_code)

    params = {
        "mode": "subscription",
        "payment_method_types": ["card"],
        "line_items": [
            {
                "price_data": {
                    "currency": config.checkout_currency,
                    "product_data": {
                        "name": config.checkout_product_name,
                        "description": config.checkout_product_description,
                    },
                    "unit_amount": config.checkout_unit_amount,
                    "recurring": {"interval": config.checkout_interval},
                },
                "quantity": 1,
            }
        ],
        "success_url": f"{origin}?success=true",
        "cancel_url": f"{origin}?canceled=true",
        "client_reference_id": user_id,
        "metadata": {"user_id": user_id},
    }

    record = await fetch_entitlement(user_id)

    try:
        if code:
            if await lookup_promo_code(code) is None:
                raise InvalidPromoCodeError(f"Promo code {code} is not valid")
            promotion_code_id = find_stripe_promotion_code(code)
            if promotion_code_id is None:
                raise InvalidPromoCodeError(f"Promo code {code} is not available")
            params["discounts"] = [{"promotion_code": promotion_code_id}]
        else:
            params["allow_promotion_codes"] = True

        if record is not None:
            params["customer"] = await _ensure_customer(record)

        session = stripe.checkout.Session.create(**params)

    except stripe.StripeError as e:
        logger.error(f"Stripe rejected checkout for user {user_id}: {e}")
        raise upstream_error(e) from e

    logger.info(
        f"Created checkout session {session.id} for user {user_id}"
        + (f" with promo code {code}" if code else "")
    )
    return session.url


async def _ensure_customer(record: EntitlementRecord) -> str:
    """Stripe customer id for the profile, creating and storing one if missing.

    Verification looks subscriptions up by customer, so the id has to be
    on the profile before the user leaves for checkout.

    Raises:
        stripe.StripeError: On Stripe API errors
    """
    if record.external_customer_id:
        return record.external_customer_id

    customer = stripe.Customer.create(metadata={"user_id": record.user_id})
    await link_customer(record.user_id, customer.id, from_unix(customer.created))
    return customer.id
