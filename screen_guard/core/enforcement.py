"""
Evaluation cycle and background loops.

One cycle is: expire lapsed overrides, collect usage, evaluate limits,
apply the resulting block set. Cycles for the same user never overlap; a
tick that arrives while one is running is dropped.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set

from .blocking import BlockController
from .policy import PolicyEngine
from .usage import CollectionResult, UsageCollector

logger = logging.getLogger(__name__)


@dataclass
class CycleResult:
    """Outcome of one evaluation cycle."""
    user_id: str
    blocked: Set[str] = field(default_factory=set)
    newly_blocked: Set[str] = field(default_factory=set)
    expired_overrides: List[str] = field(default_factory=list)
    collection: Optional[CollectionResult] = None


class EnforcementService:
    """Runs evaluation cycles for any number of users."""

    def __init__(
        self,
        policy: PolicyEngine,
        controller_for: Callable[[str], BlockController],
        collector: Optional[UsageCollector] = None
    ):
        self.policy = policy
        self.controller_for = controller_for
        self.collector = collector
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, user_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(user_id, threading.Lock())

    def run_cycle(self, user_id: str) -> Optional[CycleResult]:
        """Run one evaluation cycle.

        Returns:
            CycleResult, or None if a cycle for the user was already running
        """
        lock = self._lock_for(user_id)
        if not lock.acquire(blocking=False):
            logger.info("Evaluation for %s already running; tick dropped", user_id)
            return None
        try:
            controller = self.controller_for(user_id)
            result = CycleResult(user_id=user_id)
            result.expired_overrides = controller.expire_overrides()
            if self.collector is not None:
                result.collection = self.collector.collect(user_id)
            result.blocked = self.policy.evaluate(user_id)
            result.newly_blocked = controller.apply_block_set(result.blocked)
            logger.debug(
                "Cycle for %s: blocked=%s new=%s",
                user_id, sorted(result.blocked), sorted(result.newly_blocked)
            )
            return result
        finally:
            lock.release()


class PeriodicTask:
    """Calls ``func`` every ``interval_seconds`` on a daemon thread.

    ``func`` errors are logged and the loop keeps going. Overlapping calls
    (``run_once`` from another thread while the loop is inside ``func``)
    are skipped.
    """

    def __init__(self, name: str, interval_seconds: float, func: Callable[[], object]):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.name = name
        self.interval_seconds = interval_seconds
        self.func = func
        self._stop = threading.Event()
        self._running = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> bool:
        """Run ``func`` now. Returns False if a run was already in progress."""
        if not self._running.acquire(blocking=False):
            logger.info("%s still running; skipping tick", self.name)
            return False
        try:
            self.func()
        except Exception:
            logger.exception("%s tick failed", self.name)
        finally:
            self._running.release()
        return True

    def start(self) -> None:
        if self.is_alive:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.info("Started %s every %ss", self.name, self.interval_seconds)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.run_once()
            if self._stop.wait(self.interval_seconds):
                break
