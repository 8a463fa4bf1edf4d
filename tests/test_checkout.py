"""Tests for checkout session creation and promo codes."""

from datetime import datetime, timezone
from unittest.mock import Mock, patch

import pytest
import stripe
from pydantic import SecretStr

from proaccess.payments.checkout import create_checkout_url
from proaccess.payments.entitlements import EntitlementRecord
from proaccess.payments.errors import (
    ConfigurationError,
    InvalidPromoCodeError,
    UpstreamError,
)
from proaccess.payments.promo import normalize_promo_code
from tests.conftest import USER_ID

CHECKOUT_URL = "https://checkout.stripe.com/c/pay/cs_test_123"


def stripe_session():
    session = Mock()
    session.id = "cs_test_123"
    session.url = CHECKOUT_URL
    return session


@pytest.fixture
def no_profile():
    with patch("proaccess.payments.checkout.fetch_entitlement", return_value=None) as mock_fetch:
        yield mock_fetch


class TestCheckout:
    """Test checkout session creation."""

    @pytest.mark.asyncio
    @patch("proaccess.payments.checkout.stripe.checkout.Session.create")
    async def test_creates_weekly_subscription_session(self, mock_create, no_profile):
        mock_create.return_value = stripe_session()

        url = await create_checkout_url(USER_ID, origin="https://app.example.com/")

        assert url == CHECKOUT_URL
        kwargs = mock_create.call_args.kwargs
        assert kwargs["mode"] == "subscription"
        assert kwargs["client_reference_id"] == USER_ID
        assert kwargs["metadata"] == {"user_id": USER_ID}
        assert kwargs["allow_promotion_codes"] is True
        assert "discounts" not in kwargs
        price = kwargs["line_items"][0]["price_data"]
        assert price["currency"] == "usd"
        assert price["unit_amount"] == 1299
        assert price["recurring"] == {"interval": "week"}
        assert kwargs["success_url"] == "https://app.example.com?success=true"
        assert kwargs["cancel_url"] == "https://app.example.com?canceled=true"

    @pytest.mark.asyncio
    @patch("proaccess.payments.checkout.stripe.checkout.Session.create")
    async def test_defaults_to_configured_origin(self, mock_create, no_profile):
        mock_create.return_value = stripe_session()

        await create_checkout_url(USER_ID)

        assert mock_create.call_args.kwargs["success_url"] == "http://localhost:5173?success=true"

    @pytest.mark.asyncio
    @patch("proaccess.payments.checkout.stripe.checkout.Session.create")
    async def test_reuses_existing_stripe_customer(self, mock_create):
        mock_create.return_value = stripe_session()
        record = EntitlementRecord(USER_ID, external_customer_id="cus_existing")

        with patch("proaccess.payments.checkout.fetch_entitlement", return_value=record):
            await create_checkout_url(USER_ID)

        assert mock_create.call_args.kwargs["customer"] == "cus_existing"

    @pytest.mark.asyncio
    @patch("proaccess.payments.checkout.link_customer")
    @patch("proaccess.payments.checkout.stripe.Customer.create")
    @patch("proaccess.payments.checkout.stripe.checkout.Session.create")
    async def test_creates_and_links_customer_for_new_buyer(
        self, mock_create, mock_customer, mock_link
    ):
        mock_create.return_value = stripe_session()
        mock_customer.return_value = Mock(id="cus_new", created=1_700_000_000)
        record = EntitlementRecord(USER_ID)

        with patch("proaccess.payments.checkout.fetch_entitlement", return_value=record):
            await create_checkout_url(USER_ID)

        mock_customer.assert_called_once_with(metadata={"user_id": USER_ID})
        mock_link.assert_awaited_once_with(
            USER_ID, "cus_new", datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)
        )
        assert mock_create.call_args.kwargs["customer"] == "cus_new"

    @pytest.mark.asyncio
    @patch("proaccess.payments.checkout.stripe.Customer.create")
    @patch("proaccess.payments.checkout.stripe.checkout.Session.create")
    async def test_existing_customer_not_recreated(self, mock_create, mock_customer):
        mock_create.return_value = stripe_session()
        record = EntitlementRecord(USER_ID, external_customer_id="cus_existing")

        with patch("proaccess.payments.checkout.fetch_entitlement", return_value=record):
            await create_checkout_url(USER_ID)

        mock_customer.assert_not_called()

    @pytest.mark.asyncio
    @patch("proaccess.payments.checkout.stripe.Customer.create")
    @patch("proaccess.payments.checkout.lookup_promo_code", return_value=None)
    async def test_rejected_promo_creates_no_customer(self, mock_lookup, mock_customer):
        record = EntitlementRecord(USER_ID)

        with patch("proaccess.payments.checkout.fetch_entitlement", return_value=record):
            with pytest.raises(InvalidPromoCodeError):
                await create_checkout_url(USER_ID, promo_code="BOGUS")

        mock_customer.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_stripe_key(self, app_config, no_profile):
        app_config.stripe_secret = SecretStr("")

        with pytest.raises(ConfigurationError, match="contact support"):
            await create_checkout_url(USER_ID)

    @pytest.mark.asyncio
    @patch("proaccess.payments.checkout.stripe.checkout.Session.create")
    async def test_stripe_rejection_becomes_upstream_error(self, mock_create, no_profile):
        mock_create.side_effect = stripe.InvalidRequestError("Invalid currency", "currency")

        with pytest.raises(UpstreamError, match="Invalid currency"):
            await create_checkout_url(USER_ID)


class TestPromoCodes:
    """Test promo codes at checkout."""

    def test_normalize(self):
        assert normalize_promo_code("  save20 ") == "SAVE20"
        assert normalize_promo_code("   ") is None
        assert normalize_promo_code(None) is None

    @pytest.mark.asyncio
    @patch("proaccess.payments.checkout.stripe.checkout.Session.create")
    @patch("proaccess.payments.checkout.find_stripe_promotion_code", return_value="promo_123")
    @patch("proaccess.payments.checkout.lookup_promo_code")
    async def test_valid_code_applied_as_discount(
        self, mock_lookup, mock_find, mock_create, no_profile
    ):
        mock_lookup.return_value = {"code": "SAVE20", "discount_percent": 20, "max_uses": None}
        mock_create.return_value = stripe_session()

        await create_checkout_url(USER_ID, promo_code="save20")

        mock_lookup.assert_awaited_once_with("SAVE20")
        mock_find.assert_called_once_with("SAVE20")
        kwargs = mock_create.call_args.kwargs
        assert kwargs["discounts"] == [{"promotion_code": "promo_123"}]
        assert "allow_promotion_codes" not in kwargs

    @pytest.mark.asyncio
    @patch("proaccess.payments.checkout.stripe.checkout.Session.create")
    @patch("proaccess.payments.checkout.lookup_promo_code", return_value=None)
    async def test_code_not_on_allow_list_rejected(self, mock_lookup, mock_create, no_profile):
        with pytest.raises(InvalidPromoCodeError):
            await create_checkout_url(USER_ID, promo_code="BOGUS")

        mock_create.assert_not_called()

    @pytest.mark.asyncio
    @patch("proaccess.payments.checkout.stripe.checkout.Session.create")
    @patch("proaccess.payments.checkout.find_stripe_promotion_code", return_value=None)
    @patch("proaccess.payments.checkout.lookup_promo_code")
    async def test_code_missing_in_stripe_rejected(
        self, mock_lookup, mock_find, mock_create, no_profile
    ):
        mock_lookup.return_value = {"code": "SAVE20", "discount_percent": 20, "max_uses": None}

        with pytest.raises(InvalidPromoCodeError, match="not available"):
            await create_checkout_url(USER_ID, promo_code="SAVE20")

        mock_create.assert_not_called()
