"""
Composition root.

Builds repositories, engine, controllers, coordinator and scheduler from a
ScreenGuardConfig so the CLI and tests share one wiring.
"""

import logging
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .blocking import BlockController, LoggingNativeBlocker, LoggingNotifier, NativeBlocker, Notifier
from .enforcement import EnforcementService, PeriodicTask
from .policy import PolicyEngine
from .refunds import RefundScheduler
from .unlock import UnlockPaymentCoordinator
from .usage import UsageCollector, UsageSource
from screen_guard.config.loader import ScreenGuardConfig
from screen_guard.payments.provider import PaymentProvider
from screen_guard.storage.ledger import PaymentRepository, RefundJobRepository
from screen_guard.storage.repository import (
    BlockStateRepository,
    SettingsRepository,
    UsageRepository,
    initialize_schema,
)

logger = logging.getLogger(__name__)


class ScreenGuard:
    """All services for one device database."""

    def __init__(
        self,
        config: ScreenGuardConfig,
        provider: Optional[PaymentProvider] = None,
        native: Optional[NativeBlocker] = None,
        notifier: Optional[Notifier] = None,
        usage_source: Optional[UsageSource] = None,
        clock: Callable[[], datetime] = datetime.now,
        timer_factory: Callable[..., threading.Timer] = threading.Timer
    ):
        self.config = config
        self.clock = clock
        self.timer_factory = timer_factory
        self.native = native or LoggingNativeBlocker()
        self.notifier = notifier or LoggingNotifier()
        self.provider = provider

        db_path = config.database
        initialize_schema(db_path)
        self.usage = UsageRepository(db_path)
        self.settings = SettingsRepository(db_path, defaults=config.default_limits())
        self.block_states = BlockStateRepository(db_path)
        self.payments = PaymentRepository(db_path)
        self.refund_jobs = RefundJobRepository(db_path)

        self.policy = PolicyEngine(self.usage, self.settings, config.tracked_apps, clock)
        self.collector = None
        if usage_source is not None:
            self.collector = UsageCollector(usage_source, self.usage, config.tracked_apps, clock)
        self.enforcement = EnforcementService(self.policy, self.controller_for, self.collector)

        self._controllers: Dict[str, BlockController] = {}
        self._controllers_lock = threading.Lock()
        self._tasks: List[PeriodicTask] = []
        self._refunds: Optional[RefundScheduler] = None
        self._unlocks: Optional[UnlockPaymentCoordinator] = None

    def controller_for(self, user_id: str) -> BlockController:
        with self._controllers_lock:
            controller = self._controllers.get(user_id)
            if controller is None:
                controller = BlockController(
                    user_id,
                    self.block_states,
                    self.native,
                    self.notifier,
                    self.config.tracked_apps,
                    self.policy,
                    clock=self.clock,
                    timer_factory=self.timer_factory
                )
                self._controllers[user_id] = controller
            return controller

    def _require_provider(self) -> PaymentProvider:
        if self.provider is None:
            raise RuntimeError("No payment provider configured (set STRIPE_SECRET_KEY)")
        return self.provider

    @property
    def refunds(self) -> RefundScheduler:
        if self._refunds is None:
            self._refunds = RefundScheduler(
                self._require_provider(),
                self.refund_jobs,
                self.payments,
                self.config.refunds,
                self.clock
            )
        return self._refunds

    @property
    def unlocks(self) -> UnlockPaymentCoordinator:
        if self._unlocks is None:
            self._unlocks = UnlockPaymentCoordinator(
                self._require_provider(),
                self.payments,
                self.settings,
                self.refunds,
                self.controller_for,
                self.config.tracked_apps,
                self.clock
            )
        return self._unlocks

    def restore(self, user_id: str) -> None:
        """Reload a user's block state and re-derive paid overrides."""
        self.controller_for(user_id).restore()
        if self.provider is not None:
            restored = self.unlocks.reconcile_overrides(user_id)
            if restored:
                logger.info("Restored overrides for payments %s", ", ".join(restored))

    def start(self, user_ids: List[str]) -> List[PeriodicTask]:
        """Restore controllers and start the evaluation and refund loops."""
        for user_id in user_ids:
            self.restore(user_id)

        def _evaluate_all():
            for user_id in user_ids:
                self.enforcement.run_cycle(user_id)

        self._tasks = [
            PeriodicTask(
                "evaluation", self.config.enforcement.evaluation_interval_seconds, _evaluate_all
            )
        ]
        if self.provider is not None:
            self._tasks.append(
                PeriodicTask("refunds", self.config.refunds.tick_interval_seconds, self.refunds.tick)
            )
        else:
            logger.warning("No payment provider configured; refund loop not started")
        for task in self._tasks:
            task.start()
        return self._tasks

    def stop(self) -> None:
        for task in self._tasks:
            task.stop()
        self._tasks = []
        with self._controllers_lock:
            controllers = list(self._controllers.values())
        for controller in controllers:
            controller.shutdown()
