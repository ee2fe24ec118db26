# test_imports.py
import importlib

import pytest


@pytest.mark.parametrize("module", [
    "screen_guard.cli.main",
    "screen_guard.config.loader",
    "screen_guard.core.blocking",
    "screen_guard.core.enforcement",
    "screen_guard.core.policy",
    "screen_guard.core.refunds",
    "screen_guard.core.runtime",
    "screen_guard.core.unlock",
    "screen_guard.payments",
    "screen_guard.payments.webhooks",
    "screen_guard.storage.ledger",
    "screen_guard.storage.repository",
])
def test_module_imports(module):
    assert importlib.import_module(module) is not None
