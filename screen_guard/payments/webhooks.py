"""
Stripe webhook entry point.

A ``payment_intent.succeeded`` event schedules the same refund job the
client-driven unlock flow schedules; both paths dedupe on the payment
intent id.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Optional, Union

import stripe

if TYPE_CHECKING:
    from screen_guard.core.refunds import RefundScheduler

logger = logging.getLogger(__name__)


class WebhookVerificationError(ValueError):
    """The payload or its signature could not be verified."""


@dataclass(frozen=True)
class WebhookOutcome:
    """How an event was handled."""
    event_type: str
    refund_job_id: Optional[str] = None


def handle_webhook(
    payload: Union[str, bytes],
    signature: str,
    secret: str,
    scheduler: "RefundScheduler"
) -> WebhookOutcome:
    """Verify a Stripe webhook payload and act on it.

    Args:
        payload: Raw request body
        signature: Value of the ``Stripe-Signature`` header
        secret: Webhook signing secret
        scheduler: Refund scheduler that receives new jobs

    Returns:
        WebhookOutcome for the event

    Raises:
        WebhookVerificationError: If the payload is malformed or the
            signature does not match
    """
    try:
        event = stripe.Webhook.construct_event(payload, signature, secret)
    except ValueError as e:
        raise WebhookVerificationError(f"Invalid payload: {e}") from e
    except stripe.SignatureVerificationError as e:
        raise WebhookVerificationError(f"Invalid signature: {e}") from e

    return dispatch_event(event["type"], event["data"]["object"], scheduler)


def dispatch_event(event_type: str, data: dict, scheduler: "RefundScheduler") -> WebhookOutcome:
    """Handle an already-verified event."""
    if event_type == "payment_intent.succeeded":
        metadata = data.get("metadata") or {}
        user_id = metadata.get("userId")
        app_id = metadata.get("appId")
        if not user_id or not app_id:
            logger.warning("Payment intent %s is missing unlock metadata", data.get("id"))
            return WebhookOutcome(event_type=event_type)

        created = data.get("created")
        created_at = datetime.fromtimestamp(created) if created else None
        logger.info("PaymentIntent for %s was successful", data.get("amount"))
        job = scheduler.schedule_refund(data["id"], user_id, app_id, created_at)
        return WebhookOutcome(event_type=event_type, refund_job_id=job.id)

    if event_type == "payment_intent.payment_failed":
        logger.info("Payment failed: %s", data.get("id"))
    else:
        logger.info("Unhandled event type %s", event_type)
    return WebhookOutcome(event_type=event_type)
