"""Tests for the payment gateway implementations."""

from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
import stripe

from app.core.errors import RemoteSyncFailure
from app.services.payment_gateway import (
    NullGateway,
    PaymentResult,
    StripeGateway,
    get_payment_gateway,
)


@pytest.fixture
def stripe_gateway():
    gateway = StripeGateway(api_key="sk_test_123", timeout=5)
    _ = gateway.stripe
    return gateway


class TestPaymentResult:
    def test_succeeded(self):
        assert PaymentResult(status="succeeded").succeeded
        assert not PaymentResult(status="requires_action").succeeded


class TestStripeGateway:
    def test_lazy_import(self):
        gateway = StripeGateway(api_key="sk_test_123")
        assert gateway._stripe is None
        assert gateway.stripe is stripe
        assert stripe.max_network_retries == 0

    def test_create_price_uses_minor_units(self, stripe_gateway):
        price = MagicMock()
        price.id = "price_123"
        with patch.object(stripe.Price, "create", return_value=price) as mock_create:
            result = stripe_gateway.create_price("prod_1", Decimal("29.99"), "USD", "month", 3)

        assert result == "price_123"
        mock_create.assert_called_once_with(
            product="prod_1",
            unit_amount=2999,
            currency="usd",
            recurring={"interval": "month", "interval_count": 3},
        )

    def test_api_errors_become_remote_sync_failures(self, stripe_gateway):
        with (
            patch.object(
                stripe.Subscription, "cancel", side_effect=stripe.APIConnectionError("timed out")
            ),
            pytest.raises(RemoteSyncFailure, match="cancel_subscription"),
        ):
            stripe_gateway.cancel_subscription("sub_1")

    def test_pause_voids_collection(self, stripe_gateway):
        with patch.object(stripe.Subscription, "modify") as mock_modify:
            assert stripe_gateway.pause_subscription("sub_1") is True
        mock_modify.assert_called_once_with("sub_1", pause_collection={"behavior": "void"})

    def test_create_subscription_with_payment_method(self, stripe_gateway):
        created = MagicMock()
        created.id = "sub_new"
        with patch.object(stripe.Subscription, "create", return_value=created) as mock_create:
            assert stripe_gateway.create_subscription("cus_1", "price_1", "pm_1") == "sub_new"
        mock_create.assert_called_once_with(
            customer="cus_1", items=[{"price": "price_1"}], default_payment_method="pm_1"
        )

    def test_get_subscription_reads_period_end(self, stripe_gateway):
        remote = {"id": "sub_1", "status": "active", "current_period_end": 1775000000}
        with patch.object(stripe.Subscription, "retrieve", return_value=remote):
            result = stripe_gateway.get_subscription("sub_1")
        assert result.status == "active"
        assert result.current_period_end == datetime.fromtimestamp(1775000000, tz=UTC)

    def test_get_subscription_falls_back_to_item_period(self, stripe_gateway):
        remote = {
            "id": "sub_1",
            "status": "active",
            "items": {"data": [{"current_period_end": 1775000000}]},
        }
        with patch.object(stripe.Subscription, "retrieve", return_value=remote):
            result = stripe_gateway.get_subscription("sub_1")
        assert result.current_period_end == datetime.fromtimestamp(1775000000, tz=UTC)

    def test_process_payment_charges_customer(self, stripe_gateway):
        intent = MagicMock()
        intent.id = "pi_1"
        intent.status = "succeeded"
        with patch.object(stripe.PaymentIntent, "create", return_value=intent) as mock_create:
            result = stripe_gateway.process_payment("cus_1", Decimal("10.00"), "usd")

        assert result.succeeded
        assert result.remote_payment_id == "pi_1"
        assert mock_create.call_args.kwargs["customer"] == "cus_1"
        assert mock_create.call_args.kwargs["amount"] == 1000

    def test_process_payment_forwards_idempotency_key(self, stripe_gateway):
        intent = MagicMock()
        intent.id = "pi_1"
        intent.status = "succeeded"
        with patch.object(stripe.PaymentIntent, "create", return_value=intent) as mock_create:
            stripe_gateway.process_payment("cus_1", Decimal("10.00"), "usd", idempotency_key="k1")

        assert mock_create.call_args.kwargs["idempotency_key"] == "k1"

    def test_card_decline_is_a_failed_payment(self, stripe_gateway):
        error = stripe.CardError("Your card was declined.", None, "card_declined")
        with patch.object(stripe.PaymentIntent, "create", side_effect=error):
            result = stripe_gateway.process_payment("pm_1", Decimal("10.00"), "usd")
        assert result.status == "failed"
        assert "declined" in result.error_message

    def test_validate_payment_method(self, stripe_gateway):
        with patch.object(stripe.PaymentMethod, "retrieve", return_value=MagicMock()):
            assert stripe_gateway.validate_payment_method("pm_1") is True
        with patch.object(
            stripe.PaymentMethod,
            "retrieve",
            side_effect=stripe.InvalidRequestError("No such PaymentMethod", "id"),
        ):
            assert stripe_gateway.validate_payment_method("pm_missing") is False


class TestNullGateway:
    def test_every_call_fails(self):
        gateway = NullGateway()
        assert gateway.name == "null"
        with pytest.raises(RemoteSyncFailure, match="not configured"):
            gateway.create_customer("a@example.com", "A")
        with pytest.raises(RemoteSyncFailure):
            gateway.pause_subscription("sub_1")


class TestGatewayFactory:
    @patch("app.services.payment_gateway.settings")
    def test_stripe_when_key_configured(self, mock_settings):
        mock_settings.PAYMENT_GATEWAY = "stripe"
        mock_settings.gateway_enabled = True
        mock_settings.stripe_api_key = "sk_test"
        mock_settings.GATEWAY_TIMEOUT_SECONDS = 5.0
        assert isinstance(get_payment_gateway(), StripeGateway)

    @patch("app.services.payment_gateway.settings")
    def test_null_without_key(self, mock_settings):
        mock_settings.PAYMENT_GATEWAY = "stripe"
        mock_settings.gateway_enabled = False
        assert isinstance(get_payment_gateway(), NullGateway)
