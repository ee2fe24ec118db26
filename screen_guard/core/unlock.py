"""
Emergency unlock payments.

Drives one unlock attempt through charge, ledger record and override:

    REQUESTED -> CHARGE_IN_FLIGHT -> CHARGED -> OVERRIDE_GRANTED
    REQUESTED -> CHARGE_IN_FLIGHT -> FAILED

A payment is only recorded after the provider reports success, and the
override is only granted after the payment is recorded.
"""

import logging
import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional

from .apps import TrackedAppTable
from .blocking import BlockController
from .errors import ChargeFailed, PaymentProviderError
from .refunds import RefundScheduler
from screen_guard.payments.provider import PaymentProvider
from screen_guard.storage.ledger import PaymentRepository
from screen_guard.storage.models import PaymentRecord, PaymentStatus
from screen_guard.storage.repository import SettingsRepository

logger = logging.getLogger(__name__)

MAX_FINISHED_ATTEMPTS = 256


class UnlockState(Enum):
    """States of a single unlock attempt."""
    REQUESTED = "requested"
    CHARGE_IN_FLIGHT = "charge_in_flight"
    CHARGED = "charged"
    OVERRIDE_GRANTED = "override_granted"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return not _TRANSITIONS[self]


_TRANSITIONS = {
    UnlockState.REQUESTED: {UnlockState.CHARGE_IN_FLIGHT},
    UnlockState.CHARGE_IN_FLIGHT: {UnlockState.CHARGED, UnlockState.FAILED},
    UnlockState.CHARGED: {UnlockState.OVERRIDE_GRANTED},
    UnlockState.OVERRIDE_GRANTED: set(),
    UnlockState.FAILED: set(),
}


class InvalidTransition(RuntimeError):
    """Raised when an attempt is moved along an edge that does not exist."""


@dataclass
class UnlockAttempt:
    """Progress of one unlock request."""
    request_id: str
    user_id: str
    app_id: str
    duration_minutes: int
    state: UnlockState = UnlockState.REQUESTED
    payment: Optional[PaymentRecord] = None
    error: Optional[str] = None
    history: List[UnlockState] = field(default_factory=lambda: [UnlockState.REQUESTED])

    def advance(self, new_state: UnlockState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)


class UnlockPaymentCoordinator:
    """Charges for an emergency unlock and grants the override."""

    def __init__(
        self,
        provider: PaymentProvider,
        payments: PaymentRepository,
        settings: SettingsRepository,
        refunds: RefundScheduler,
        controller_for: Callable[[str], BlockController],
        tracked_apps: TrackedAppTable,
        clock: Callable[[], datetime] = datetime.now,
        max_finished_attempts: int = MAX_FINISHED_ATTEMPTS
    ):
        self.provider = provider
        self.payments = payments
        self.settings = settings
        self.refunds = refunds
        self.controller_for = controller_for
        self.tracked_apps = tracked_apps
        self.clock = clock
        self.max_finished_attempts = max_finished_attempts
        self._attempts: Dict[str, UnlockAttempt] = {}
        # Finished request ids, oldest first; in-flight attempts are never evicted.
        self._finished: "OrderedDict[str, None]" = OrderedDict()
        self._lock = threading.Lock()

    def attempt(self, request_id: str) -> Optional[UnlockAttempt]:
        return self._attempts.get(request_id)

    def request_unlock(
        self,
        user_id: str,
        app_id: str,
        duration_minutes: int,
        request_id: Optional[str] = None
    ) -> PaymentRecord:
        """Charge the unlock fee and temporarily unblock the app.

        Retrying with the same ``request_id`` never charges twice: the
        provider sees the same idempotency key, and a request whose payment
        is already in the ledger returns that payment.

        Args:
            user_id: Paying user
            app_id: App to unlock
            duration_minutes: Length of the override
            request_id: Client-generated id for this unlock request

        Returns:
            The completed PaymentRecord

        Raises:
            ChargeFailed: If the charge fails; no override is granted and no
                refund job is created
            UnknownAppError: If the app is not tracked
            ValueError: If the duration is not positive
        """
        self.tracked_apps.get(app_id)
        if duration_minutes <= 0:
            raise ValueError("duration_minutes must be > 0")
        request_id = request_id or uuid.uuid4().hex

        existing = self.payments.get_payment_by_request(request_id)
        if existing is not None:
            logger.info("Unlock request %s already paid as %s", request_id, existing.id)
            self.refunds.schedule_for_payment(existing)
            self.ensure_override(existing)
            with self._lock:
                current = self._attempts.get(request_id)
                if current is not None and current.state == UnlockState.CHARGED:
                    current.advance(UnlockState.OVERRIDE_GRANTED)
                    self._finish(current)
            return existing

        with self._lock:
            current = self._attempts.get(request_id)
            if current is not None and current.state == UnlockState.CHARGE_IN_FLIGHT:
                raise ChargeFailed("Unlock request is already in progress", request_id)
            attempt = UnlockAttempt(
                request_id=request_id,
                user_id=user_id,
                app_id=app_id,
                duration_minutes=duration_minutes
            )
            self._attempts[request_id] = attempt
            self._finished.pop(request_id, None)
            attempt.advance(UnlockState.CHARGE_IN_FLIGHT)

        amount = self.settings.get_limit_config(user_id).emergency_unlock_amount
        try:
            intent = self.provider.create_charge(
                amount,
                metadata={
                    "userId": user_id,
                    "appId": app_id,
                    "unlockDuration": str(duration_minutes),
                    "requestId": request_id,
                },
                idempotency_key=f"unlock-{request_id}"
            )
            succeeded = self.provider.confirm_charge(intent)
        except PaymentProviderError as e:
            self._fail(attempt, str(e))
            raise ChargeFailed(f"Payment failed: {e}", request_id) from e

        if not succeeded:
            self._fail(attempt, "payment was not completed")
            raise ChargeFailed("Payment was not completed", request_id)

        payment = PaymentRecord(
            id=intent.payment_intent_id,
            user_id=user_id,
            app_id=app_id,
            amount=intent.amount,
            status=PaymentStatus.COMPLETED,
            created_at=self.clock(),
            unlock_duration_minutes=duration_minutes,
            request_id=request_id
        )
        try:
            self.payments.insert_payment(payment)
        except Exception:
            # Retrying with the same request id reuses the provider charge.
            self._fail(attempt, f"charge {payment.id} succeeded but was not recorded")
            raise
        attempt.payment = payment
        attempt.advance(UnlockState.CHARGED)
        logger.info("Payment %s recorded for %s/%s", payment.id, user_id, app_id)

        try:
            self.refunds.schedule_for_payment(payment)
        except Exception:
            logger.exception(
                "Could not enqueue refund for %s; it will be re-derived from the ledger",
                payment.id
            )

        # A failure here leaves the attempt CHARGED; a retry or
        # reconcile_overrides() puts the override back from the ledger.
        self.controller_for(user_id).grant_temporary_override(app_id, duration_minutes)
        with self._lock:
            attempt.advance(UnlockState.OVERRIDE_GRANTED)
            self._finish(attempt)
        return payment

    def ensure_override(self, payment: PaymentRecord) -> bool:
        """Grant the rest of a paid override window if it is missing.

        Returns:
            True if an override had to be granted
        """
        ends_at = payment.created_at + timedelta(minutes=payment.unlock_duration_minutes)
        if ends_at <= self.clock():
            return False
        controller = self.controller_for(payment.user_id)
        current = controller.state.overrides.get(payment.app_id)
        if current is not None and current.expires_at >= ends_at:
            return False
        logger.warning(
            "Payment %s had no override for %s; granting until %s",
            payment.id, payment.app_id, ends_at.isoformat()
        )
        controller.grant_override_until(payment.app_id, ends_at)
        return True

    def reconcile_overrides(self, user_id: str) -> List[str]:
        """Re-derive overrides for paid unlocks whose window is still open.

        Returns:
            Ids of the payments whose override was restored
        """
        restored = []
        for payment in self.payments.active_unlocks(user_id, self.clock()):
            if self.ensure_override(payment):
                restored.append(payment.id)
        return restored

    def _fail(self, attempt: UnlockAttempt, reason: str) -> None:
        attempt.error = reason
        with self._lock:
            attempt.advance(UnlockState.FAILED)
            self._finish(attempt)
        logger.warning(
            "Unlock %s for %s/%s failed: %s",
            attempt.request_id, attempt.user_id, attempt.app_id, reason
        )

    def _finish(self, attempt: UnlockAttempt) -> None:
        """Remember a finished attempt, evicting the oldest past the limit."""
        self._finished.pop(attempt.request_id, None)
        self._finished[attempt.request_id] = None
        while len(self._finished) > self.max_finished_attempts:
            request_id, _ = self._finished.popitem(last=False)
            old = self._attempts.get(request_id)
            if old is not None and old.state.is_terminal:
                del self._attempts[request_id]
