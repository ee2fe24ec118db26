"""
Usage limit policy.

Decides which tracked apps must be blocked right now from today's usage
counters and the user's limit settings.

Evaluation Modes:
1. Combined limit - one shared budget across every tracked app; when the
   total goes over it, every tracked app is blocked
2. Per-app limits - each app is compared to its own budget

Comparisons are strict: usage exactly at the limit never blocks.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, Dict, FrozenSet, List, Mapping, Optional, Set

from .apps import TrackedAppTable
from screen_guard.storage.models import LimitConfig
from screen_guard.storage.repository import SettingsRepository, UsageRepository


@dataclass(frozen=True)
class LimitBreach:
    """Why an app (or the combined budget) is over its limit."""
    app_ids: FrozenSet[str]
    minutes_used: int
    limit_minutes: int
    combined: bool
    message: str


@dataclass(frozen=True)
class PolicyDecision:
    """Result of one evaluation."""
    blocked: FrozenSet[str]
    breaches: List[LimitBreach] = field(default_factory=list)


@dataclass(frozen=True)
class AppUsageSummary:
    """Per-app usage against its limit, for display."""
    app_id: str
    name: str
    minutes_used: int
    limit_minutes: int

    @property
    def remaining_minutes(self) -> int:
        return max(self.limit_minutes - self.minutes_used, 0)

    @property
    def over_limit(self) -> bool:
        return self.minutes_used > self.limit_minutes


def evaluate_limits(
    usage: Mapping[str, int],
    limits: LimitConfig,
    tracked_apps: TrackedAppTable
) -> PolicyDecision:
    """Decide which apps are over budget.

    This is the single evaluation routine behind both on-demand refreshes
    and the periodic background cycle. It has no side effects and gives
    the same answer for the same inputs.

    Args:
        usage: Today's minutes per app id; untracked ids are ignored and
            missing ids count as zero
        limits: The user's limit configuration
        tracked_apps: Table of monitored apps

    Returns:
        PolicyDecision with the apps to block and the reasons
    """
    tracked_usage = {app.id: usage.get(app.id, 0) for app in tracked_apps}

    if limits.combined_limit_enabled:
        total = sum(tracked_usage.values())
        limit = limits.combined_limit(tracked_apps.reference_app_id)
        if total > limit:
            blocked = frozenset(tracked_usage)
            breach = LimitBreach(
                app_ids=blocked,
                minutes_used=total,
                limit_minutes=limit,
                combined=True,
                message=(
                    f"You've used social media for {total} minutes, "
                    f"exceeding your daily limit of {limit} minutes."
                )
            )
            return PolicyDecision(blocked=blocked, breaches=[breach])
        return PolicyDecision(blocked=frozenset())

    blocked: Set[str] = set()
    breaches = []
    for app in tracked_apps:
        minutes = tracked_usage[app.id]
        limit = limits.limit_for(app.id)
        if minutes > limit:
            blocked.add(app.id)
            breaches.append(LimitBreach(
                app_ids=frozenset([app.id]),
                minutes_used=minutes,
                limit_minutes=limit,
                combined=False,
                message=(
                    f"You've used {app.name} for {minutes} minutes, "
                    f"exceeding your daily limit of {limit} minutes."
                )
            ))
    return PolicyDecision(blocked=frozenset(blocked), breaches=breaches)


class PolicyEngine:
    """Evaluates stored usage against stored limits for a user."""

    def __init__(
        self,
        usage: UsageRepository,
        settings: SettingsRepository,
        tracked_apps: TrackedAppTable,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.usage = usage
        self.settings = settings
        self.tracked_apps = tracked_apps
        self.clock = clock

    def _today(self) -> date:
        return self.clock().date()

    def decide(self, user_id: str, day: Optional[date] = None) -> PolicyDecision:
        day = day or self._today()
        return evaluate_limits(
            self.usage.get_usage_for_day(user_id, day),
            self.settings.get_limit_config(user_id),
            self.tracked_apps
        )

    def evaluate(self, user_id: str) -> Set[str]:
        """Apps that should be blocked right now."""
        return set(self.decide(user_id).blocked)

    def usage_summary(self, user_id: str) -> List[AppUsageSummary]:
        """Today's usage for every tracked app against its own limit."""
        usage: Dict[str, int] = self.usage.get_usage_for_day(user_id, self._today())
        limits = self.settings.get_limit_config(user_id)
        return [
            AppUsageSummary(
                app_id=app.id,
                name=app.name,
                minutes_used=usage.get(app.id, 0),
                limit_minutes=limits.limit_for(app.id)
            )
            for app in self.tracked_apps
        ]
