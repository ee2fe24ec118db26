"""
Block state control.

Holds the authoritative blocked set and temporary overrides for one user,
keeps the native blocking mechanism converged with it, and expires
overrides.

The effective blocked set is always ``blocked - live overrides``. Native
commands only ever try to reach that set, so a failed command is simply
retried by the next convergence pass.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Set

from .apps import TrackedAppTable
from .errors import NativeCommandFailed, PermissionDenied
from screen_guard.storage.models import BlockState, TemporaryOverride
from screen_guard.storage.repository import BlockStateRepository

logger = logging.getLogger(__name__)


class NativeBlocker(Protocol):
    """OS-level app blocking capability (overlay service)."""

    def has_overlay_permission(self) -> bool:
        ...

    def block(self, packages: Set[str]) -> None:
        ...

    def unblock(self, package: str) -> None:
        ...

    def currently_blocked(self) -> Set[str]:
        ...


class Notifier(Protocol):
    """User notification channel."""

    def notify(self, title: str, body: str, app_id: Optional[str] = None) -> None:
        ...


class Evaluator(Protocol):
    def evaluate(self, user_id: str) -> Set[str]:
        ...


class LoggingNotifier:
    """Notifier that writes notifications to the log."""

    def notify(self, title: str, body: str, app_id: Optional[str] = None) -> None:
        logger.info("%s: %s", title, body)


class LoggingNativeBlocker:
    """In-process blocker that records commands and logs them.

    Stands in for the overlay service when running outside the device.
    """

    def __init__(self, overlay_permission: bool = True):
        self.overlay_permission = overlay_permission
        self._blocked: Set[str] = set()

    def has_overlay_permission(self) -> bool:
        return self.overlay_permission

    def block(self, packages: Set[str]) -> None:
        logger.info("native block: %s", ", ".join(sorted(packages)))
        self._blocked.update(packages)

    def unblock(self, package: str) -> None:
        logger.info("native unblock: %s", package)
        self._blocked.discard(package)

    def currently_blocked(self) -> Set[str]:
        return set(self._blocked)


class BlockController:
    """Authoritative blocked set and override set for one user.

    Durable state lives in the BlockStateRepository; timers are only an
    accelerator for override expiry and are re-armed by ``restore()``.
    """

    def __init__(
        self,
        user_id: str,
        repository: BlockStateRepository,
        native: NativeBlocker,
        notifier: Notifier,
        tracked_apps: TrackedAppTable,
        policy: Evaluator,
        clock: Callable[[], datetime] = datetime.now,
        timer_factory: Callable[..., threading.Timer] = threading.Timer
    ):
        self.user_id = user_id
        self.repository = repository
        self.native = native
        self.notifier = notifier
        self.tracked_apps = tracked_apps
        self.policy = policy
        self.clock = clock
        self.timer_factory = timer_factory
        self.native_in_sync = False
        self.last_native_error: Optional[str] = None
        self._timers: Dict[str, threading.Timer] = {}
        self._timer_lock = threading.Lock()
        self._apply_lock = threading.RLock()

    # -- queries -----------------------------------------------------------

    @property
    def state(self) -> BlockState:
        return self.repository.load(self.user_id)

    def is_blocked(self, app_id: str) -> bool:
        """True iff the app is in the blocked set with no live override."""
        return self.state.is_blocked(app_id, self.clock())

    def blocked_apps(self) -> Set[str]:
        """Apps that are effectively blocked right now."""
        return set(self.state.effective_blocked(self.clock()))

    def live_overrides(self) -> List[TemporaryOverride]:
        now = self.clock()
        return sorted(
            (o for o in self.state.overrides.values() if o.is_live(now)),
            key=lambda o: o.expires_at
        )

    # -- block set ---------------------------------------------------------

    def apply_block_set(self, newly_blocked: Iterable[str]) -> Set[str]:
        """Make ``newly_blocked`` the blocked set.

        Apps entering the set get a single "blocked" notification for the
        transition; repeated evaluations that leave the set unchanged are
        silent. Native state is converged afterwards and native failures
        are logged, never raised.

        Args:
            newly_blocked: App ids the policy says must be blocked

        Returns:
            App ids that entered the blocked set
        """
        target = set()
        for app_id in newly_blocked:
            if app_id in self.tracked_apps:
                target.add(app_id)
            else:
                logger.warning("Ignoring untracked app id in block set: %s", app_id)

        entered: Set[str] = set()
        left: Set[str] = set()

        def _mutate(state: BlockState) -> BlockState:
            entered.clear()
            left.clear()
            if state.blocked == target:
                return state
            entered.update(target - state.blocked)
            left.update(state.blocked - target)
            return state.with_blocked(target)

        with self._apply_lock:
            state = self.repository.update(self.user_id, _mutate)
            effective = state.effective_blocked(self.clock())
            for app_id in sorted(entered):
                if app_id not in effective:
                    logger.info("%s entered the blocked set under a live override", app_id)
                    continue
                name = self.tracked_apps.display_name(app_id)
                logger.info("Blocking %s for user %s", app_id, self.user_id)
                self._notify(
                    f"{name} is now blocked",
                    f"You've reached your daily limit for {name}.",
                    app_id
                )
            for app_id in sorted(left):
                logger.info("Unblocking %s for user %s", app_id, self.user_id)
            self.sync_native(state)
        return entered

    def sync_native(self, state: Optional[BlockState] = None) -> bool:
        """Converge the native blocker to the effective blocked set.

        Returns:
            True if native state now matches, False if a permission or
            command failure left it behind (retried on the next call)
        """
        state = state or self.state
        desired = set(state.effective_blocked(self.clock()))
        try:
            self._require_overlay_permission()
            current = self.tracked_apps.ids_for_packages(
                self._native_call("query blocked apps", self.native.currently_blocked)
            )
            to_block = desired - current
            to_unblock = current - desired
            if to_block:
                self._native_call(
                    "block", self.native.block, self.tracked_apps.packages_for(to_block)
                )
            for app_id in sorted(to_unblock):
                self._native_call(
                    "unblock", self.native.unblock, self.tracked_apps.package_for(app_id)
                )
        except PermissionDenied as e:
            logger.warning("Native blocking unavailable: %s", e)
            self.native_in_sync = False
            self.last_native_error = str(e)
            return False
        except NativeCommandFailed as e:
            logger.warning("Native command failed, will retry next cycle: %s", e)
            self.native_in_sync = False
            self.last_native_error = str(e)
            return False

        self.native_in_sync = True
        self.last_native_error = None
        return True

    def _require_overlay_permission(self) -> None:
        has_permission = self._native_call(
            "overlay permission check", self.native.has_overlay_permission
        )
        if not has_permission:
            raise PermissionDenied(
                "Overlay permission is required to block apps",
                permission="overlay"
            )

    @staticmethod
    def _native_call(description: str, func, *args):
        try:
            return func(*args)
        except Exception as e:
            raise NativeCommandFailed(f"{description} failed: {e}") from e

    # -- overrides ---------------------------------------------------------

    def grant_temporary_override(self, app_id: str, duration_minutes: int) -> TemporaryOverride:
        """Exempt an app from blocking for ``duration_minutes``.

        The override applies even if the policy still marks the app over
        its limit. Any earlier override (and its expiry timer) for the same
        app is replaced.

        Raises:
            UnknownAppError: If the app is not tracked
            ValueError: If the duration is not positive
        """
        self.tracked_apps.get(app_id)
        if duration_minutes <= 0:
            raise ValueError("duration_minutes must be > 0")
        return self.grant_override_until(app_id, self.clock() + timedelta(minutes=duration_minutes))

    def grant_override_until(self, app_id: str, expires_at: datetime) -> TemporaryOverride:
        """Exempt an app from blocking until ``expires_at``.

        Used directly when an override paid for earlier has to be put back
        for the rest of its window.

        Raises:
            UnknownAppError: If the app is not tracked
            ValueError: If ``expires_at`` is not in the future
        """
        app = self.tracked_apps.get(app_id)
        now = self.clock()
        if expires_at <= now:
            raise ValueError("expires_at must be in the future")

        override = TemporaryOverride(app_id=app_id, expires_at=expires_at)
        with self._apply_lock:
            state = self.repository.update(self.user_id, lambda s: s.with_override(override))
            self._arm_timer(override)
            self.sync_native(state)

        minutes = max(int((expires_at - now).total_seconds() // 60), 1)
        logger.info("Granted override for %s until %s", app_id, expires_at.isoformat())
        self._notify(
            f"{app.name} temporarily unblocked",
            f"You can use {app.name} for {minutes} minutes.",
            app_id
        )
        return override

    def clear_override(self, app_id: str) -> bool:
        """Withdraw an override early and cancel its expiry."""
        self._cancel_timer(app_id)
        removed = []

        def _mutate(state: BlockState) -> BlockState:
            if app_id not in state.overrides:
                return state
            removed.append(app_id)
            return state.without_override(app_id)

        with self._apply_lock:
            state = self.repository.update(self.user_id, _mutate)
            self.sync_native(state)
        return bool(removed)

    def expire_overrides(self) -> List[str]:
        """Expire every override whose time has passed.

        Run at startup and at the start of each evaluation cycle so that
        expiry does not depend on a timer surviving a restart.

        Returns:
            App ids whose override expired
        """
        now = self.clock()
        expired = [
            o.app_id for o in self.state.overrides.values() if not o.is_live(now)
        ]
        return [app_id for app_id in expired if self._expire(app_id)]

    def _expire(self, app_id: str, expected_expiry: Optional[datetime] = None) -> bool:
        now = self.clock()
        removed: List[TemporaryOverride] = []

        def _mutate(state: BlockState) -> BlockState:
            removed.clear()
            override = state.overrides.get(app_id)
            if override is None:
                return state
            if expected_expiry is not None:
                # Timer path: only the override this timer was armed for.
                if override.expires_at != expected_expiry:
                    return state
            elif override.is_live(now):
                return state
            removed.append(override)
            return state.without_override(app_id)

        with self._apply_lock:
            self.repository.update(self.user_id, _mutate)
            if not removed:
                return False
            self._cancel_timer(app_id)
            try:
                still_over = self.policy.evaluate(self.user_id)
            except Exception:
                logger.exception("Re-evaluation after override expiry failed for %s", app_id)
                still_over = set(self.state.blocked)
            self.apply_block_set(still_over)

        name = self.tracked_apps.display_name(app_id)
        logger.info("Override for %s expired; blocked=%s", app_id, app_id in still_over)
        self._notify(
            f"{name} access expired",
            f"Your temporary access to {name} has expired.",
            app_id
        )
        return True

    def _arm_timer(self, override: TemporaryOverride) -> None:
        delay = max((override.expires_at - self.clock()).total_seconds(), 0.0)
        timer = self.timer_factory(
            delay, self._on_timer, args=(override.app_id, override.expires_at)
        )
        timer.daemon = True
        with self._timer_lock:
            previous = self._timers.pop(override.app_id, None)
            if previous is not None:
                previous.cancel()
            self._timers[override.app_id] = timer
        timer.start()

    def _cancel_timer(self, app_id: str) -> None:
        with self._timer_lock:
            timer = self._timers.pop(app_id, None)
        if timer is not None:
            timer.cancel()

    def _on_timer(self, app_id: str, expires_at: datetime) -> None:
        try:
            self._expire(app_id, expected_expiry=expires_at)
        except Exception:
            logger.exception("Override expiry for %s failed; next cycle will retry", app_id)

    # -- lifecycle ---------------------------------------------------------

    def restore(self) -> BlockState:
        """Reload durable state after a restart.

        Re-arms timers for live overrides, expires overrides that lapsed
        while the process was down, and re-converges native state.
        """
        now = self.clock()
        for override in self.state.overrides.values():
            if override.is_live(now):
                self._arm_timer(override)
        self.expire_overrides()
        state = self.state
        self.sync_native(state)
        return state

    def unblock_all(self) -> None:
        """Clear every block and override for this user."""
        self.shutdown()
        with self._apply_lock:
            state = self.repository.update(
                self.user_id,
                lambda s: s if not s.blocked and not s.overrides
                else BlockState(user_id=s.user_id, version=s.version)
            )
            self.sync_native(state)
        logger.info("Unblocked all apps for user %s", self.user_id)

    def shutdown(self) -> None:
        """Cancel pending expiry timers without touching durable state."""
        with self._timer_lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()

    def _notify(self, title: str, body: str, app_id: Optional[str]) -> None:
        try:
            self.notifier.notify(title, body, app_id)
        except Exception:
            logger.exception("Failed to deliver notification: %s", title)
