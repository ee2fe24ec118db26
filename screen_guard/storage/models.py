"""
Data models for storage layer.

Defines the durable records behind usage tracking, blocking, emergency
unlock payments and delayed refunds.
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional

DEFAULT_DAILY_LIMIT_MINUTES = 120
DEFAULT_UNLOCK_AMOUNT = 300  # smallest currency unit, $3.00


@dataclass(frozen=True)
class UsageRecord:
    """Minutes one user spent in one app on one calendar day.

    Counters only ever grow; a day's record is kept as history.
    """
    user_id: str
    app_id: str
    day: date
    minutes: int

    def __post_init__(self):
        if self.minutes < 0:
            raise ValueError("minutes cannot be negative")


@dataclass(frozen=True)
class LimitConfig:
    """Per-user usage limits and unlock pricing."""
    daily_limits: Dict[str, int] = field(default_factory=dict)
    combined_limit_enabled: bool = False
    combined_limit_minutes: Optional[int] = None
    emergency_unlock_amount: int = DEFAULT_UNLOCK_AMOUNT

    def __post_init__(self):
        """Validate limits are positive."""
        for app_id, minutes in self.daily_limits.items():
            if minutes <= 0:
                raise ValueError(f"daily limit for {app_id} must be > 0")
        if self.combined_limit_minutes is not None and self.combined_limit_minutes <= 0:
            raise ValueError("combined_limit_minutes must be > 0")
        if self.emergency_unlock_amount <= 0:
            raise ValueError("emergency_unlock_amount must be > 0")

    def limit_for(self, app_id: str) -> int:
        """Daily limit for an app, falling back to the default."""
        return self.daily_limits.get(app_id, DEFAULT_DAILY_LIMIT_MINUTES)

    def combined_limit(self, reference_app_id: Optional[str]) -> int:
        """Shared budget across all tracked apps.

        Older settings have no explicit combined value; those fall back to
        the reference app's own limit.
        """
        if self.combined_limit_minutes is not None:
            return self.combined_limit_minutes
        if reference_app_id is None:
            return DEFAULT_DAILY_LIMIT_MINUTES
        return self.limit_for(reference_app_id)


@dataclass(frozen=True)
class TemporaryOverride:
    """Time-bounded exemption from blocking after a paid unlock."""
    app_id: str
    expires_at: datetime

    def is_live(self, now: datetime) -> bool:
        return self.expires_at > now


@dataclass(frozen=True)
class BlockState:
    """Authoritative blocked set and overrides for one user."""
    user_id: str
    blocked: FrozenSet[str] = frozenset()
    overrides: Dict[str, TemporaryOverride] = field(default_factory=dict)
    version: int = 0

    def live_override(self, app_id: str, now: datetime) -> Optional[TemporaryOverride]:
        override = self.overrides.get(app_id)
        if override is not None and override.is_live(now):
            return override
        return None

    def is_blocked(self, app_id: str, now: datetime) -> bool:
        return app_id in self.blocked and self.live_override(app_id, now) is None

    def effective_blocked(self, now: datetime) -> FrozenSet[str]:
        """Apps that must be blocked natively right now."""
        return frozenset(a for a in self.blocked if self.live_override(a, now) is None)

    def with_blocked(self, blocked) -> "BlockState":
        return replace(self, blocked=frozenset(blocked))

    def with_override(self, override: TemporaryOverride) -> "BlockState":
        overrides = dict(self.overrides)
        overrides[override.app_id] = override
        return replace(self, overrides=overrides)

    def without_override(self, app_id: str) -> "BlockState":
        overrides = {k: v for k, v in self.overrides.items() if k != app_id}
        return replace(self, overrides=overrides)


class PaymentStatus(Enum):
    """Payment lifecycle; transitions only move forward."""
    PENDING = "pending"
    COMPLETED = "completed"
    REFUNDED = "refunded"


@dataclass(frozen=True)
class PaymentRecord:
    """Ledger entry for a successful emergency unlock charge."""
    id: str  # payment intent id
    user_id: str
    app_id: str
    amount: int  # smallest currency unit
    status: PaymentStatus
    created_at: datetime
    unlock_duration_minutes: int
    request_id: Optional[str] = None
    refunded_at: Optional[datetime] = None


@dataclass(frozen=True)
class RefundJob:
    """Durable delayed-refund job for one charge.

    Jobs are never deleted; a processed job stays as an audit trail.
    """
    id: str
    payment_intent_id: str
    user_id: str
    app_id: str
    refund_due_at: datetime
    processed: bool = False
    processed_at: Optional[datetime] = None
    refund_id: Optional[str] = None
    refund_amount: Optional[int] = None
    refund_requested_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    attempts: int = 0
    next_attempt_at: Optional[datetime] = None
    dead_lettered: bool = False

    def is_due(self, now: datetime) -> bool:
        """Whether a tick at ``now`` should attempt this job."""
        if self.processed or self.dead_lettered:
            return False
        if now < self.refund_due_at:
            return False
        return self.next_attempt_at is None or now >= self.next_attempt_at


def refund_job_id(payment_intent_id: str) -> str:
    return f"refund-{payment_intent_id}"
