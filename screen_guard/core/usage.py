"""
Usage collection from the device.

Polls the OS usage source for every tracked app and accumulates the
readings into the usage store.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, Dict, List, Optional, Protocol

from .apps import TrackedAppTable
from .errors import PermissionDenied
from screen_guard.storage.repository import UsageRepository

logger = logging.getLogger(__name__)


class UsageSource(Protocol):
    """OS usage-stats capability."""

    def has_usage_permission(self) -> bool:
        ...

    def minutes_used_today(self, package_name: str) -> Optional[int]:
        """Minutes the package was in the foreground today.

        Returns None when the value is unknown (no permission or no data).
        """
        ...


@dataclass
class CollectionResult:
    """Outcome of one collection pass."""
    day: date
    recorded: Dict[str, int] = field(default_factory=dict)
    unknown: List[str] = field(default_factory=list)
    permission_denied: bool = False


class UsageCollector:
    """Copies per-app readings from a UsageSource into the UsageRepository.

    Missing readings are never written, so the policy sees either the last
    stored value or zero and never blocks because a permission is missing.
    """

    def __init__(
        self,
        source: UsageSource,
        repository: UsageRepository,
        tracked_apps: TrackedAppTable,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.source = source
        self.repository = repository
        self.tracked_apps = tracked_apps
        self.clock = clock

    def check_permission(self) -> None:
        """Raise PermissionDenied if the usage source cannot be read."""
        if not self.source.has_usage_permission():
            raise PermissionDenied(
                "Usage access permission is required to track screen time",
                permission="usage_access"
            )

    def collect(self, user_id: str) -> CollectionResult:
        """Read today's minutes for each tracked app and store them.

        Args:
            user_id: Owner of the counters

        Returns:
            CollectionResult listing stored and unknown readings
        """
        today = self.clock().date()
        result = CollectionResult(day=today)
        try:
            self.check_permission()
        except PermissionDenied as e:
            logger.warning("Skipping usage collection for %s: %s", user_id, e)
            result.permission_denied = True
            result.unknown = self.tracked_apps.ids
            return result

        for app in self.tracked_apps:
            minutes = self.source.minutes_used_today(app.package_name)
            if minutes is None:
                result.unknown.append(app.id)
                continue
            if minutes < 0:
                logger.warning("Ignoring negative usage %d for %s", minutes, app.id)
                result.unknown.append(app.id)
                continue
            result.recorded[app.id] = self.repository.record_minutes(user_id, app.id, today, minutes)

        logger.debug("Collected usage for %s on %s: %s", user_id, today, result.recorded)
        return result
