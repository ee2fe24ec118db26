"""
Unit tests for the Stripe payment provider.

The Stripe SDK is mocked; these tests check what is sent and how
responses and errors are mapped.
"""

from types import SimpleNamespace
from unittest.mock import patch

import pytest
import stripe

from screen_guard.core.errors import PaymentProviderError
from screen_guard.payments.provider import ChargeIntent
from screen_guard.payments.stripe_provider import REFUND_POLICY, StripePaymentProvider


@pytest.fixture
def mock_stripe():
    """Replace the stripe module used by the provider."""
    with patch('screen_guard.payments.stripe_provider.stripe') as mock:
        mock.StripeError = stripe.StripeError
        yield mock


class TestStripePaymentProvider:
    """Test Stripe request construction and response handling."""

    def test_requires_secret_key(self, mock_stripe):
        with pytest.raises(ValueError, match="secret_key is required"):
            StripePaymentProvider("  ")

    def test_sets_api_key(self, mock_stripe):
        StripePaymentProvider("sk_test_123")
        assert mock_stripe.api_key == "sk_test_123"

    def test_create_charge(self, mock_stripe):
        mock_stripe.PaymentIntent.create.return_value = SimpleNamespace(
            id="pi_123", client_secret="pi_123_secret", amount=300
        )
        provider = StripePaymentProvider("sk_test_123")

        intent = provider.create_charge(300, {"userId": "u1", "appId": "youtube"}, "unlock-req-1")

        assert intent == ChargeIntent("pi_123", "pi_123_secret", 300)
        kwargs = mock_stripe.PaymentIntent.create.call_args.kwargs
        assert kwargs["amount"] == 300
        assert kwargs["currency"] == "usd"
        assert kwargs["idempotency_key"] == "unlock-req-1"
        assert kwargs["metadata"] == {
            "userId": "u1", "appId": "youtube", "refundPolicy": REFUND_POLICY
        }
        assert REFUND_POLICY == "90% refund after 7 days"

    def test_create_charge_without_idempotency_key(self, mock_stripe):
        mock_stripe.PaymentIntent.create.return_value = SimpleNamespace(
            id="pi_123", client_secret="secret", amount=300
        )
        StripePaymentProvider("sk_test_123").create_charge(300, {})

        assert "idempotency_key" not in mock_stripe.PaymentIntent.create.call_args.kwargs

    def test_create_charge_with_saved_payment_method(self, mock_stripe):
        mock_stripe.PaymentIntent.create.return_value = SimpleNamespace(
            id="pi_123", client_secret="secret", amount=300
        )
        StripePaymentProvider("sk_test_123", payment_method="pm_card_visa").create_charge(300, {})

        kwargs = mock_stripe.PaymentIntent.create.call_args.kwargs
        assert kwargs["payment_method"] == "pm_card_visa"
        assert kwargs["automatic_payment_methods"]["allow_redirects"] == "never"

    def test_create_charge_error(self, mock_stripe):
        mock_stripe.PaymentIntent.create.side_effect = stripe.StripeError("Your card was declined.")
        provider = StripePaymentProvider("sk_test_123")

        with pytest.raises(PaymentProviderError, match="declined"):
            provider.create_charge(300, {})

    def test_confirm_charge_confirms_when_needed(self, mock_stripe):
        mock_stripe.PaymentIntent.retrieve.return_value = SimpleNamespace(status="requires_confirmation")
        mock_stripe.PaymentIntent.confirm.return_value = SimpleNamespace(status="succeeded")
        provider = StripePaymentProvider("sk_test_123")

        assert provider.confirm_charge(ChargeIntent("pi_123", "secret", 300))
        mock_stripe.PaymentIntent.confirm.assert_called_once()

    def test_confirm_charge_not_succeeded(self, mock_stripe):
        mock_stripe.PaymentIntent.retrieve.return_value = SimpleNamespace(
            status="requires_payment_method"
        )
        provider = StripePaymentProvider("sk_test_123")

        assert not provider.confirm_charge(ChargeIntent("pi_123", "secret", 300))
        mock_stripe.PaymentIntent.confirm.assert_not_called()

    def test_retrieve_charge(self, mock_stripe):
        mock_stripe.PaymentIntent.retrieve.return_value = SimpleNamespace(
            status="succeeded", latest_charge="ch_123", amount=300
        )
        details = StripePaymentProvider("sk_test_123").retrieve_charge("pi_123")

        assert details.charge_id == "ch_123"
        assert details.amount == 300

    def test_retrieve_charge_expanded_charge(self, mock_stripe):
        mock_stripe.PaymentIntent.retrieve.return_value = SimpleNamespace(
            status="succeeded", latest_charge=SimpleNamespace(id="ch_456"), amount=300
        )
        details = StripePaymentProvider("sk_test_123").retrieve_charge("pi_123")

        assert details.charge_id == "ch_456"

    def test_retrieve_unsettled_charge_raises(self, mock_stripe):
        mock_stripe.PaymentIntent.retrieve.return_value = SimpleNamespace(
            status="processing", latest_charge=None, amount=300
        )
        with pytest.raises(PaymentProviderError, match="no settled charge"):
            StripePaymentProvider("sk_test_123").retrieve_charge("pi_123")

    def test_refund(self, mock_stripe):
        mock_stripe.Refund.create.return_value = SimpleNamespace(id="re_123")
        provider = StripePaymentProvider("sk_test_123")

        refund_id = provider.refund("ch_123", 270, {"userId": "u1"}, idempotency_key="refund-pi_123")

        assert refund_id == "re_123"
        mock_stripe.Refund.create.assert_called_once_with(
            charge="ch_123",
            amount=270,
            metadata={"userId": "u1"},
            idempotency_key="refund-pi_123"
        )

    def test_refund_error(self, mock_stripe):
        mock_stripe.Refund.create.side_effect = stripe.StripeError("Network error")

        with pytest.raises(PaymentProviderError, match="Refund failed"):
            StripePaymentProvider("sk_test_123").refund("ch_123", 270, {})

    def test_existing_refund(self, mock_stripe):
        mock_stripe.Refund.list.return_value = SimpleNamespace(data=[
            SimpleNamespace(id="re_failed", status="failed"),
            SimpleNamespace(id="re_ok", status="succeeded"),
        ])

        assert StripePaymentProvider("sk_test_123").existing_refund("pi_123") == "re_ok"

    def test_no_existing_refund(self, mock_stripe):
        mock_stripe.Refund.list.return_value = SimpleNamespace(data=[])

        assert StripePaymentProvider("sk_test_123").existing_refund("pi_123") is None
