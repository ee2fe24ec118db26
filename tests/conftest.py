"""
Shared fakes for the test suite.
"""

import os
import shutil
import tempfile
from datetime import datetime, timedelta

import pytest

from screen_guard.core.apps import DEFAULT_TRACKED_APPS, TrackedAppTable
from screen_guard.core.errors import PaymentProviderError
from screen_guard.payments.provider import ChargeDetails, ChargeIntent
from screen_guard.storage.repository import initialize_schema

START = datetime(2024, 3, 4, 9, 0, 0)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeTimer:
    """threading.Timer stand-in that only fires when told to."""

    def __init__(self, interval, function, args=None):
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if not self.cancelled:
            self.function(*self.args)


class FakeTimerFactory:
    def __init__(self):
        self.timers = []

    def __call__(self, interval, function, args=None):
        timer = FakeTimer(interval, function, args)
        self.timers.append(timer)
        return timer

    def live(self):
        return [t for t in self.timers if not t.cancelled]


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def notify(self, title, body, app_id=None):
        self.sent.append((title, body, app_id))

    def titles(self):
        return [title for title, _, _ in self.sent]


class FakeNativeBlocker:
    """Native blocker with switchable permission and failures."""

    def __init__(self):
        self.overlay_permission = True
        self.fail_commands = False
        self.blocked = set()
        self.calls = []

    def has_overlay_permission(self):
        return self.overlay_permission

    def block(self, packages):
        self.calls.append(("block", set(packages)))
        if self.fail_commands:
            raise RuntimeError("overlay service not running")
        self.blocked.update(packages)

    def unblock(self, package):
        self.calls.append(("unblock", package))
        if self.fail_commands:
            raise RuntimeError("overlay service not running")
        self.blocked.discard(package)

    def currently_blocked(self):
        return set(self.blocked)


class FakePaymentProvider:
    """In-memory PaymentProvider honouring idempotency keys."""

    def __init__(self):
        self.intents = {}
        self.amounts = {}
        self.refunds = []
        self.existing = {}
        self.create_calls = 0
        self.confirm_result = True
        self.fail_charge = False
        self.refund_failures = 0
        self._idempotent_intents = {}
        self._idempotent_refunds = {}

    def create_charge(self, amount, metadata, idempotency_key=None):
        self.create_calls += 1
        if self.fail_charge:
            raise PaymentProviderError("Your card was declined.")
        if idempotency_key and idempotency_key in self._idempotent_intents:
            return self._idempotent_intents[idempotency_key]
        intent = ChargeIntent(
            payment_intent_id=f"pi_{len(self.intents) + 1}",
            client_token="secret",
            amount=amount
        )
        self.intents[intent.payment_intent_id] = dict(metadata)
        self.amounts[intent.payment_intent_id] = amount
        if idempotency_key:
            self._idempotent_intents[idempotency_key] = intent
        return intent

    def confirm_charge(self, intent):
        return self.confirm_result

    def retrieve_charge(self, payment_intent_id):
        if payment_intent_id not in self.amounts:
            raise PaymentProviderError(f"No such payment_intent: {payment_intent_id}")
        return ChargeDetails(
            payment_intent_id=payment_intent_id,
            charge_id=f"ch_{payment_intent_id}",
            amount=self.amounts[payment_intent_id]
        )

    def existing_refund(self, payment_intent_id):
        return self.existing.get(payment_intent_id)

    def refund(self, charge_id, amount, metadata, idempotency_key=None):
        if self.refund_failures > 0:
            self.refund_failures -= 1
            raise PaymentProviderError("Stripe is unavailable")
        if idempotency_key and idempotency_key in self._idempotent_refunds:
            return self._idempotent_refunds[idempotency_key]
        refund_id = f"re_{len(self.refunds) + 1}"
        self.refunds.append({
            "id": refund_id,
            "charge": charge_id,
            "amount": amount,
            "metadata": dict(metadata),
            "idempotency_key": idempotency_key,
        })
        if idempotency_key:
            self._idempotent_refunds[idempotency_key] = refund_id
        return refund_id

    def add_settled_charge(self, payment_intent_id, amount):
        self.amounts[payment_intent_id] = amount


@pytest.fixture
def db_path():
    temp_dir = tempfile.mkdtemp()
    path = os.path.join(temp_dir, "test.db")
    initialize_schema(path)
    yield path
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timers():
    return FakeTimerFactory()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def native():
    return FakeNativeBlocker()


@pytest.fixture
def provider():
    return FakePaymentProvider()


@pytest.fixture
def tracked_apps():
    return TrackedAppTable(DEFAULT_TRACKED_APPS)
