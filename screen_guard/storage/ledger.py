"""
Payment ledger and refund job queue.

Both tables are append-only audit trails. Status columns move in one
direction only, enforced by guarded ``UPDATE ... WHERE`` clauses, so a
partial failure can never roll a payment or a refund backwards.
"""

from datetime import datetime
from typing import List, Optional

from .db import DEFAULT_DB_PATH, get_connection, transaction
from .models import PaymentRecord, PaymentStatus, RefundJob

_JOB_COLUMNS = """
    id, payment_intent_id, user_id, app_id, refund_due_at, processed,
    processed_at, refund_id, refund_amount, refund_requested_at, last_error,
    last_error_at, attempts, next_attempt_at, dead_lettered
"""

_PAYMENT_COLUMNS = """
    id, user_id, app_id, amount, status, created_at, refunded_at,
    unlock_duration_minutes, request_id
"""


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value is not None else None


def _row_to_payment(row) -> PaymentRecord:
    return PaymentRecord(
        id=row[0],
        user_id=row[1],
        app_id=row[2],
        amount=row[3],
        status=PaymentStatus(row[4]),
        created_at=datetime.fromisoformat(row[5]),
        refunded_at=_dt(row[6]),
        unlock_duration_minutes=row[7],
        request_id=row[8]
    )


def _row_to_job(row) -> RefundJob:
    return RefundJob(
        id=row[0],
        payment_intent_id=row[1],
        user_id=row[2],
        app_id=row[3],
        refund_due_at=datetime.fromisoformat(row[4]),
        processed=bool(row[5]),
        processed_at=_dt(row[6]),
        refund_id=row[7],
        refund_amount=row[8],
        refund_requested_at=_dt(row[9]),
        last_error=row[10],
        last_error_at=_dt(row[11]),
        attempts=row[12],
        next_attempt_at=_dt(row[13]),
        dead_lettered=bool(row[14])
    )


class PaymentRepository:
    """Append-only ledger of emergency unlock payments."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def insert_payment(self, payment: PaymentRecord) -> None:
        """Record a payment whose charge has succeeded.

        Raises:
            sqlite3.IntegrityError: If the payment id or request id exists
        """
        conn = get_connection(self.db_path)
        try:
            with transaction(conn):
                conn.execute(f"""
                    INSERT INTO payment_record ({_PAYMENT_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    payment.id,
                    payment.user_id,
                    payment.app_id,
                    payment.amount,
                    payment.status.value,
                    payment.created_at.isoformat(),
                    _ts(payment.refunded_at),
                    payment.unlock_duration_minutes,
                    payment.request_id
                ))
        finally:
            conn.close()

    def get_payment(self, payment_id: str) -> Optional[PaymentRecord]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {_PAYMENT_COLUMNS} FROM payment_record WHERE id = ?", (payment_id,)
            ).fetchone()
            return _row_to_payment(row) if row else None
        finally:
            conn.close()

    def get_payment_by_request(self, request_id: str) -> Optional[PaymentRecord]:
        """Look up the payment created for a client request id."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {_PAYMENT_COLUMNS} FROM payment_record WHERE request_id = ?", (request_id,)
            ).fetchone()
            return _row_to_payment(row) if row else None
        finally:
            conn.close()

    def list_payments(self, user_id: Optional[str] = None) -> List[PaymentRecord]:
        """Payments ordered by creation time (newest first)."""
        conn = get_connection(self.db_path)
        try:
            query = f"SELECT {_PAYMENT_COLUMNS} FROM payment_record"
            params = []
            if user_id:
                query += " WHERE user_id = ?"
                params.append(user_id)
            query += " ORDER BY created_at DESC"
            return [_row_to_payment(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def mark_refunded(self, payment_id: str, refunded_at: datetime) -> bool:
        """Move a completed payment to refunded.

        Returns:
            True if the transition happened, False if the payment was not
            in the completed state (already refunded or unknown)
        """
        conn = get_connection(self.db_path)
        try:
            with transaction(conn):
                cursor = conn.execute("""
                    UPDATE payment_record SET status = ?, refunded_at = ?
                    WHERE id = ? AND status = ?
                """, (
                    PaymentStatus.REFUNDED.value,
                    refunded_at.isoformat(),
                    payment_id,
                    PaymentStatus.COMPLETED.value
                ))
            return cursor.rowcount == 1
        finally:
            conn.close()

    def active_unlocks(self, user_id: str, now: datetime) -> List[PaymentRecord]:
        """Paid unlocks whose override window has not ended at ``now``."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(f"""
                SELECT {_PAYMENT_COLUMNS} FROM payment_record
                WHERE user_id = ? AND status != ?
                  AND julianday(created_at) + unlock_duration_minutes / 1440.0 > julianday(?)
                ORDER BY created_at ASC
            """, (user_id, PaymentStatus.PENDING.value, now.isoformat()))
            return [_row_to_payment(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def completed_without_refund_job(self) -> List[PaymentRecord]:
        """Completed payments that have no refund job yet."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(f"""
                SELECT {", ".join("p." + c.strip() for c in _PAYMENT_COLUMNS.split(","))}
                FROM payment_record p
                LEFT JOIN refund_job j ON j.payment_intent_id = p.id
                WHERE p.status = ? AND j.id IS NULL
                ORDER BY p.created_at ASC
            """, (PaymentStatus.COMPLETED.value,))
            return [_row_to_payment(row) for row in cursor.fetchall()]
        finally:
            conn.close()


class RefundJobRepository:
    """Durable queue of pending and processed refund jobs."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def enqueue(self, job: RefundJob) -> bool:
        """Persist a job unless one already exists for the same charge.

        Returns:
            True if the job was inserted, False if it was a duplicate
        """
        conn = get_connection(self.db_path)
        try:
            with transaction(conn):
                cursor = conn.execute(f"""
                    INSERT OR IGNORE INTO refund_job ({_JOB_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    job.id,
                    job.payment_intent_id,
                    job.user_id,
                    job.app_id,
                    job.refund_due_at.isoformat(),
                    int(job.processed),
                    _ts(job.processed_at),
                    job.refund_id,
                    job.refund_amount,
                    _ts(job.refund_requested_at),
                    job.last_error,
                    _ts(job.last_error_at),
                    job.attempts,
                    _ts(job.next_attempt_at),
                    int(job.dead_lettered)
                ))
            return cursor.rowcount == 1
        finally:
            conn.close()

    def get_job(self, job_id: str) -> Optional[RefundJob]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM refund_job WHERE id = ?", (job_id,)
            ).fetchone()
            return _row_to_job(row) if row else None
        finally:
            conn.close()

    def list_jobs(self, include_processed: bool = True) -> List[RefundJob]:
        """All jobs ordered by due date (oldest first)."""
        conn = get_connection(self.db_path)
        try:
            query = f"SELECT {_JOB_COLUMNS} FROM refund_job"
            if not include_processed:
                query += " WHERE processed = 0"
            query += " ORDER BY refund_due_at ASC, id ASC"
            return [_row_to_job(row) for row in conn.execute(query).fetchall()]
        finally:
            conn.close()

    def unprocessed_jobs(self) -> List[RefundJob]:
        return self.list_jobs(include_processed=False)

    def mark_requested(self, job_id: str, requested_at: datetime, refund_amount: int) -> None:
        """Note that a refund is about to be issued for this job."""
        conn = get_connection(self.db_path)
        try:
            with transaction(conn):
                conn.execute("""
                    UPDATE refund_job SET refund_requested_at = ?, refund_amount = ?
                    WHERE id = ? AND processed = 0
                """, (requested_at.isoformat(), refund_amount, job_id))
        finally:
            conn.close()

    def mark_processed(self, job_id: str, refund_id: str, processed_at: datetime) -> bool:
        """Terminal transition. Returns False if the job was already processed."""
        conn = get_connection(self.db_path)
        try:
            with transaction(conn):
                cursor = conn.execute("""
                    UPDATE refund_job
                    SET processed = 1, processed_at = ?, refund_id = ?, next_attempt_at = NULL
                    WHERE id = ? AND processed = 0
                """, (processed_at.isoformat(), refund_id, job_id))
            return cursor.rowcount == 1
        finally:
            conn.close()

    def record_failure(
        self,
        job_id: str,
        error: str,
        failed_at: datetime,
        next_attempt_at: Optional[datetime],
        dead_lettered: bool = False
    ) -> None:
        """Keep the job eligible for retry and remember why it failed."""
        conn = get_connection(self.db_path)
        try:
            with transaction(conn):
                conn.execute("""
                    UPDATE refund_job
                    SET last_error = ?, last_error_at = ?, attempts = attempts + 1,
                        next_attempt_at = ?, dead_lettered = ?
                    WHERE id = ? AND processed = 0
                """, (error, failed_at.isoformat(), _ts(next_attempt_at), int(dead_lettered), job_id))
        finally:
            conn.close()

    def requeue(self, job_id: str) -> bool:
        """Return a dead-lettered job to the active queue."""
        conn = get_connection(self.db_path)
        try:
            with transaction(conn):
                cursor = conn.execute("""
                    UPDATE refund_job
                    SET dead_lettered = 0, attempts = 0, next_attempt_at = NULL
                    WHERE id = ? AND processed = 0 AND dead_lettered = 1
                """, (job_id,))
            return cursor.rowcount == 1
        finally:
            conn.close()
