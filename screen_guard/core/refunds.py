"""
Delayed partial refunds for emergency unlocks.

Every successful unlock charge gets a durable refund job due seven days
later. A periodic tick refunds 90% of the original amount for every job
that has matured. Failed jobs stay queued and are retried with bounded
exponential backoff; after too many failures they are dead-lettered for
manual follow-up, never deleted.

Refunds are issued at most once per job:
1. ``refund_requested_at`` is persisted before the provider call
2. the provider call carries the job id as idempotency key
3. a job found with ``refund_requested_at`` set first asks the provider
   for an existing refund before issuing a new one
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_FLOOR
from typing import Callable, List, Optional

from .errors import PaymentProviderError, RefundExecutionFailed
from screen_guard.config.loader import RefundConfig
from screen_guard.payments.provider import PaymentProvider
from screen_guard.storage.ledger import PaymentRepository, RefundJobRepository
from screen_guard.storage.models import PaymentRecord, RefundJob, refund_job_id

logger = logging.getLogger(__name__)

REFUND_MATURITY = timedelta(days=7)
REFUND_RATIO = Decimal("0.90")


def compute_refund_amount(original_amount: int) -> int:
    """Refund owed for a charge, in the smallest currency unit.

    Always rounds DOWN so the 10% fee is never under-collected.

    Args:
        original_amount: Charged amount in the smallest currency unit

    Returns:
        floor(original_amount * 0.90)
    """
    if original_amount < 0:
        raise ValueError("original_amount cannot be negative")
    refund = Decimal(original_amount) * REFUND_RATIO
    return int(refund.to_integral_value(rounding=ROUND_FLOOR))


def retained_fee(original_amount: int) -> int:
    """The part of a charge that is kept after the refund."""
    return original_amount - compute_refund_amount(original_amount)


@dataclass
class TickReport:
    """What a single scheduler tick did."""
    started_at: Optional[datetime] = None
    skipped: bool = False
    reconciled: List[str] = field(default_factory=list)
    refunded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    dead_lettered: List[str] = field(default_factory=list)


class RefundScheduler:
    """Durable refund queue with an idempotent tick."""

    def __init__(
        self,
        provider: PaymentProvider,
        jobs: RefundJobRepository,
        payments: PaymentRepository,
        config: Optional[RefundConfig] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.provider = provider
        self.jobs = jobs
        self.payments = payments
        self.config = config or RefundConfig()
        self.clock = clock
        self._tick_lock = threading.Lock()

    def schedule_refund(
        self,
        payment_intent_id: str,
        user_id: str,
        app_id: str,
        created_at: Optional[datetime] = None
    ) -> RefundJob:
        """Persist a refund job for a charge, once.

        Scheduling the same payment intent twice (client path and webhook
        path) yields the same job.

        Returns:
            The stored job
        """
        created_at = created_at or self.clock()
        job = RefundJob(
            id=refund_job_id(payment_intent_id),
            payment_intent_id=payment_intent_id,
            user_id=user_id,
            app_id=app_id,
            refund_due_at=created_at + REFUND_MATURITY
        )
        if self.jobs.enqueue(job):
            logger.info(
                "Scheduled refund for payment %s on %s",
                payment_intent_id, job.refund_due_at.isoformat()
            )
        else:
            logger.debug("Refund job for %s already scheduled", payment_intent_id)
        return self.jobs.get_job(job.id)

    def schedule_for_payment(self, payment: PaymentRecord) -> RefundJob:
        return self.schedule_refund(payment.id, payment.user_id, payment.app_id, payment.created_at)

    def reconcile(self) -> List[str]:
        """Re-derive jobs for completed payments that are missing one."""
        created = []
        for payment in self.payments.completed_without_refund_job():
            logger.warning("Payment %s had no refund job; re-deriving it", payment.id)
            created.append(self.schedule_for_payment(payment).id)
        return created

    def backoff_delay(self, attempts: int) -> timedelta:
        """Delay before the next retry after ``attempts`` failures."""
        exponent = max(attempts - 1, 0)
        seconds = min(
            self.config.backoff_base_seconds * (2 ** min(exponent, 32)),
            self.config.backoff_max_seconds
        )
        return timedelta(seconds=seconds)

    def tick(self, now: Optional[datetime] = None) -> TickReport:
        """Process every matured, unprocessed job.

        Safe to call from cron and from the in-process loop; a tick that
        starts while another is still running returns immediately.

        Args:
            now: Evaluation time (defaults to the scheduler clock)

        Returns:
            TickReport describing what happened
        """
        if not self._tick_lock.acquire(blocking=False):
            logger.info("Refund tick already running; skipping")
            return TickReport(skipped=True)
        try:
            now = now or self.clock()
            report = TickReport(started_at=now)
            report.reconciled = self.reconcile()

            for job in self.jobs.unprocessed_jobs():
                if not job.is_due(now):
                    continue
                try:
                    refund_id = self._execute(job, now)
                except RefundExecutionFailed as e:
                    self._record_failure(job, e, now, report)
                    continue
                self.jobs.mark_processed(job.id, refund_id, now)
                self.payments.mark_refunded(job.payment_intent_id, now)
                report.refunded.append(job.id)
                logger.info(
                    "Processed refund %s for user %s, app %s",
                    refund_id, job.user_id, job.app_id
                )

            logger.info(
                "Refund tick done: %d refunded, %d failed, %d dead-lettered",
                len(report.refunded), len(report.failed), len(report.dead_lettered)
            )
            return report
        finally:
            self._tick_lock.release()

    def _execute(self, job: RefundJob, now: datetime) -> str:
        try:
            if job.refund_requested_at is not None:
                existing = self.provider.existing_refund(job.payment_intent_id)
                if existing:
                    logger.warning("Refund for %s already issued as %s", job.id, existing)
                    return existing

            charge = self.provider.retrieve_charge(job.payment_intent_id)
            amount = compute_refund_amount(charge.amount)
            self.jobs.mark_requested(job.id, now, amount)
            return self.provider.refund(
                charge.charge_id,
                amount,
                metadata={
                    "userId": job.user_id,
                    "appId": job.app_id,
                    "originalAmount": str(charge.amount),
                    "refundPercentage": "90%",
                },
                idempotency_key=job.id
            )
        except PaymentProviderError as e:
            raise RefundExecutionFailed(str(e), job.id) from e

    def _record_failure(
        self,
        job: RefundJob,
        error: RefundExecutionFailed,
        now: datetime,
        report: TickReport
    ) -> None:
        attempts = job.attempts + 1
        dead = bool(self.config.max_attempts) and attempts >= self.config.max_attempts
        next_attempt_at = None if dead else now + self.backoff_delay(attempts)
        self.jobs.record_failure(job.id, str(error), now, next_attempt_at, dead_lettered=dead)
        if dead:
            logger.error(
                "Refund job %s dead-lettered after %d attempts: %s",
                job.id, attempts, error
            )
            report.dead_lettered.append(job.id)
        else:
            logger.warning(
                "Refund job %s failed (attempt %d), retrying after %s: %s",
                job.id, attempts, next_attempt_at.isoformat(), error
            )
            report.failed.append(job.id)

    def requeue(self, job_id: str) -> bool:
        """Put a dead-lettered job back into the active queue."""
        requeued = self.jobs.requeue(job_id)
        if requeued:
            logger.info("Requeued refund job %s", job_id)
        return requeued
