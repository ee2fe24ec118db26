"""
Stripe payment provider.

Creates PaymentIntents for emergency unlocks and issues the delayed
partial refunds.
"""

import logging
from typing import Dict, Optional

import stripe

from .provider import ChargeDetails, ChargeIntent
from screen_guard.core.errors import PaymentProviderError

logger = logging.getLogger(__name__)

REFUND_POLICY = "90% refund after 7 days"


class StripePaymentProvider:
    """PaymentProvider backed by the Stripe API.

    All ``stripe.StripeError`` exceptions are re-raised as
    PaymentProviderError so callers never depend on the SDK.
    """

    def __init__(
        self,
        secret_key: str,
        currency: str = "usd",
        payment_method: Optional[str] = None
    ):
        """Initialize the Stripe provider.

        Args:
            secret_key: Stripe secret API key
            currency: Charge currency
            payment_method: Saved payment method to confirm server-side.
                When None, the client confirms with the returned token.
        """
        if not secret_key or not secret_key.strip():
            raise ValueError("secret_key is required and cannot be empty")
        stripe.api_key = secret_key
        stripe.max_network_retries = 2
        self.currency = currency
        self.payment_method = payment_method

    def create_charge(
        self,
        amount: int,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None
    ) -> ChargeIntent:
        """Create a PaymentIntent for ``amount`` in the smallest currency unit."""
        if amount <= 0:
            raise ValueError("amount must be > 0")
        params = {
            "amount": amount,
            "currency": self.currency,
            "metadata": dict(metadata, refundPolicy=REFUND_POLICY),
        }
        if self.payment_method:
            params["payment_method"] = self.payment_method
            params["automatic_payment_methods"] = {"enabled": True, "allow_redirects": "never"}
        else:
            params["automatic_payment_methods"] = {"enabled": True}
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        try:
            intent = stripe.PaymentIntent.create(**params)
        except stripe.StripeError as e:
            logger.error("Stripe error creating payment intent: %s", e)
            raise PaymentProviderError(f"Could not create charge: {e}") from e
        logger.info("Created payment intent %s for %d", intent.id, amount)
        return ChargeIntent(
            payment_intent_id=intent.id,
            client_token=intent.client_secret,
            amount=intent.amount
        )

    def confirm_charge(self, intent: ChargeIntent) -> bool:
        """Confirm (if needed) and report whether the charge succeeded."""
        try:
            payment_intent = stripe.PaymentIntent.retrieve(intent.payment_intent_id)
            if payment_intent.status == "requires_confirmation":
                payment_intent = stripe.PaymentIntent.confirm(
                    intent.payment_intent_id,
                    idempotency_key=f"confirm-{intent.payment_intent_id}"
                )
        except stripe.StripeError as e:
            logger.error("Stripe error confirming %s: %s", intent.payment_intent_id, e)
            raise PaymentProviderError(f"Could not confirm charge: {e}") from e

        succeeded = payment_intent.status == "succeeded"
        if not succeeded:
            logger.warning(
                "Payment intent %s not succeeded (status: %s)",
                intent.payment_intent_id, payment_intent.status
            )
        return succeeded

    def retrieve_charge(self, payment_intent_id: str) -> ChargeDetails:
        try:
            payment_intent = stripe.PaymentIntent.retrieve(payment_intent_id)
        except stripe.StripeError as e:
            raise PaymentProviderError(f"Could not retrieve {payment_intent_id}: {e}") from e

        charge_id = payment_intent.latest_charge
        if payment_intent.status != "succeeded" or not charge_id:
            raise PaymentProviderError(
                f"Payment intent {payment_intent_id} has no settled charge "
                f"(status: {payment_intent.status})"
            )
        if not isinstance(charge_id, str):
            charge_id = charge_id.id
        return ChargeDetails(
            payment_intent_id=payment_intent_id,
            charge_id=charge_id,
            amount=payment_intent.amount
        )

    def existing_refund(self, payment_intent_id: str) -> Optional[str]:
        try:
            refunds = stripe.Refund.list(payment_intent=payment_intent_id, limit=10)
        except stripe.StripeError as e:
            raise PaymentProviderError(f"Could not list refunds for {payment_intent_id}: {e}") from e
        for refund in refunds.data:
            if refund.status not in ("failed", "canceled"):
                return refund.id
        return None

    def refund(
        self,
        charge_id: str,
        amount: int,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None
    ) -> str:
        params = {"charge": charge_id, "amount": amount, "metadata": metadata}
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        try:
            refund = stripe.Refund.create(**params)
        except stripe.StripeError as e:
            logger.error("Stripe error refunding %s: %s", charge_id, e)
            raise PaymentProviderError(f"Refund failed for {charge_id}: {e}") from e
        logger.info("Issued refund %s of %d for charge %s", refund.id, amount, charge_id)
        return refund.id
