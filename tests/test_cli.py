"""
Tests for the CLI interface.
"""
import hashlib
import hmac
import json
import os
import shutil
import tempfile
import time
from datetime import timedelta
from unittest.mock import patch

import pytest
import yaml
from typer.testing import CliRunner

from screen_guard.cli.main import app, EXIT_CODE_PASS, EXIT_CODE_FAIL
from screen_guard.config.loader import load_config
from screen_guard.core.runtime import ScreenGuard

runner = CliRunner()

WEBHOOK_SECRET = "whsec_cli_secret"


def signed_event(event_type, obj, secret=WEBHOOK_SECRET):
    """Event body and a matching Stripe-Signature header."""
    payload = json.dumps({
        "id": "evt_1",
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    })
    timestamp = int(time.time())
    digest = hmac.new(
        secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return payload, f"t={timestamp},v1={digest}"


@pytest.fixture
def config_path():
    """Write a config file pointing at a temporary database."""
    temp_dir = tempfile.mkdtemp()
    path = os.path.join(temp_dir, "screen_guard.yaml")
    with open(path, "w", encoding="utf-8") as f:
        yaml.dump({"database": os.path.join(temp_dir, "cli.db")}, f)
    yield path
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def guard(config_path, clock, timers, native, notifier, provider):
    """Runtime handed to every CLI command."""
    runtime = ScreenGuard(
        load_config(config_path),
        provider=provider,
        native=native,
        notifier=notifier,
        clock=clock,
        timer_factory=timers
    )
    with patch('screen_guard.cli.main._build_runtime', return_value=runtime):
        yield runtime


def invoke(config_path, *args):
    return runner.invoke(app, ["--config", config_path, "--user", "u1", *args])


class TestCLI:
    """Test CLI commands."""

    def test_no_command_prints_hint(self):
        result = runner.invoke(app, [])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Use --help" in result.output

    def test_init_creates_database(self, config_path):
        result = invoke(config_path, "init")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized" in result.output
        assert os.path.exists(load_config(config_path).database)

    def test_init_with_bad_config_fails(self, config_path):
        with open(config_path, "w", encoding="utf-8") as f:
            yaml.dump({"unknown": 1}, f)

        result = invoke(config_path, "init")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Unknown configuration keys" in result.output

    def test_record_usage_and_evaluate(self, config_path, guard, native):
        result = invoke(config_path, "record-usage", "youtube", "121")
        assert result.exit_code == EXIT_CODE_PASS
        assert "121 minutes" in result.output

        result = invoke(config_path, "evaluate")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Blocked" in result.output
        assert "YouTube" in result.output
        assert native.blocked == {"com.google.android.youtube"}

    def test_evaluate_within_limits(self, config_path, guard):
        result = invoke(config_path, "evaluate")

        assert result.exit_code == EXIT_CODE_PASS
        assert "within limits" in result.output

    def test_record_usage_unknown_app(self, config_path, guard):
        result = invoke(config_path, "record-usage", "tiktok", "5")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Unknown app id" in result.output

    def test_record_usage_add(self, config_path, guard):
        invoke(config_path, "record-usage", "youtube", "10")
        result = invoke(config_path, "record-usage", "youtube", "5", "--add")

        assert result.exit_code == EXIT_CODE_PASS
        assert "15 minutes" in result.output

    def test_limits_set_and_show(self, config_path, guard):
        result = invoke(config_path, "limits", "set", "--app", "youtube", "--minutes", "30")
        assert result.exit_code == EXIT_CODE_PASS

        result = invoke(config_path, "limits", "set", "--combined", "--combined-minutes", "90")
        assert result.exit_code == EXIT_CODE_PASS

        limits = guard.settings.get_limit_config("u1")
        assert limits.limit_for("youtube") == 30
        assert limits.combined_limit_enabled
        assert limits.combined_limit_minutes == 90

        result = invoke(config_path, "limits", "show")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Mode: combined" in result.output
        assert "Combined limit: 90m" in result.output
        assert "$3.00" in result.output

    def test_limits_set_requires_app_and_minutes(self, config_path, guard):
        result = invoke(config_path, "limits", "set", "--app", "youtube")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "must be given together" in result.output

    def test_limits_set_rejects_non_positive(self, config_path, guard):
        result = invoke(config_path, "limits", "set", "--app", "youtube", "--minutes", "0")

        assert result.exit_code == EXIT_CODE_FAIL
        assert guard.settings.get_limit_config("u1").limit_for("youtube") == 120

    def test_status(self, config_path, guard):
        invoke(config_path, "record-usage", "youtube", "121")
        invoke(config_path, "evaluate")

        result = invoke(config_path, "status")

        assert result.exit_code == EXIT_CODE_PASS
        assert "blocked" in result.output

    def test_unlock(self, config_path, guard, provider):
        invoke(config_path, "record-usage", "youtube", "121")
        invoke(config_path, "evaluate")

        result = invoke(config_path, "unlock", "youtube", "--minutes", "30", "--request-id", "req-1")

        assert result.exit_code == EXIT_CODE_PASS
        assert "unlocked for 30 minutes" in result.output
        assert "$2.70" in result.output
        assert not guard.controller_for("u1").is_blocked("youtube")

        result = invoke(config_path, "unlock", "youtube", "--request-id", "req-1")
        assert result.exit_code == EXIT_CODE_PASS
        assert provider.create_calls == 1

    def test_unlock_declined(self, config_path, guard, provider):
        provider.fail_charge = True

        result = invoke(config_path, "unlock", "youtube")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Payment failed" in result.output
        assert guard.payments.list_payments() == []

    def test_unlock_without_provider(self, config_path):
        with patch('screen_guard.cli.main.load_stripe_settings') as mock_settings:
            mock_settings.return_value.is_configured = False
            result = invoke(config_path, "unlock", "youtube")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "STRIPE_SECRET_KEY" in result.output

    def test_refunds_list_and_process(self, config_path, guard, clock, provider):
        invoke(config_path, "unlock", "youtube", "--request-id", "req-1")

        result = invoke(config_path, "refunds", "list")
        assert result.exit_code == EXIT_CODE_PASS
        assert "refund-pi_1" in result.output

        result = invoke(config_path, "refunds", "process")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Refunded 0" in result.output

        clock.advance(days=7, hours=1)
        result = invoke(config_path, "refunds", "process")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Refunded 1" in result.output
        assert provider.refunds[0]["amount"] == 270

    def test_refunds_list_empty(self, config_path, guard):
        result = invoke(config_path, "refunds", "list")

        assert result.exit_code == EXIT_CODE_PASS
        assert "No refund jobs" in result.output

    def test_refunds_requeue(self, config_path, guard, clock, provider):
        invoke(config_path, "unlock", "youtube", "--request-id", "req-1")
        job_id = "refund-pi_1"
        guard.refund_jobs.record_failure(
            job_id, "card expired", clock(), None, dead_lettered=True
        )

        result = invoke(config_path, "refunds", "requeue", job_id)
        assert result.exit_code == EXIT_CODE_PASS
        assert not guard.refund_jobs.get_job(job_id).dead_lettered

        result = invoke(config_path, "refunds", "requeue", job_id)
        assert result.exit_code == EXIT_CODE_FAIL

    def test_run_once(self, config_path, guard, native):
        invoke(config_path, "record-usage", "youtube", "121")

        result = invoke(config_path, "run", "--once")

        assert result.exit_code == EXIT_CODE_PASS
        assert native.blocked == {"com.google.android.youtube"}

    def test_run_once_refunds_matured_jobs(self, config_path, guard, clock, provider):
        invoke(config_path, "unlock", "youtube", "--request-id", "req-1")
        clock.advance(days=8)

        result = invoke(config_path, "run", "--once")

        assert result.exit_code == EXIT_CODE_PASS
        assert len(provider.refunds) == 1
        assert guard.refund_jobs.get_job("refund-pi_1").processed

    def test_history(self, config_path, guard, clock):
        guard.usage.record_minutes("u1", "youtube", clock().date(), 30)
        guard.usage.record_minutes("u1", "facebook", clock().date() - timedelta(days=1), 12)

        result = invoke(config_path, "history", "--days", "3")

        assert result.exit_code == EXIT_CODE_PASS
        assert clock().date().isoformat() in result.output
        assert (clock().date() - timedelta(days=2)).isoformat() in result.output
        assert (clock().date() - timedelta(days=3)).isoformat() not in result.output
        assert "30m" in result.output
        assert "42m" in result.output

    def test_history_rejects_empty_window(self, config_path, guard):
        result = invoke(config_path, "history", "--days", "0")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "days must be > 0" in result.output


class TestWebhookCommand:
    """Test the webhook entry point."""

    @pytest.fixture(autouse=True)
    def setup(self, config_path, guard):
        self.config_path = config_path
        self.guard = guard
        self.intent = {
            "id": "pi_hook",
            "object": "payment_intent",
            "amount": 300,
            "created": int(time.time()),
            "metadata": {"userId": "u1", "appId": "youtube", "unlockDuration": "60"},
        }
        with patch('screen_guard.cli.main.load_stripe_settings') as mock_settings:
            mock_settings.return_value.webhook_secret = WEBHOOK_SECRET
            yield

    def write_payload(self, payload):
        path = os.path.join(os.path.dirname(self.config_path), "event.json")
        with open(path, "w", encoding="utf-8") as f:
            f.write(payload)
        return path

    def test_payment_succeeded_schedules_refund(self):
        payload, signature = signed_event("payment_intent.succeeded", self.intent)

        result = invoke(
            self.config_path, "webhook", self.write_payload(payload), "--signature", signature
        )

        assert result.exit_code == EXIT_CODE_PASS
        assert "refund-pi_hook" in result.output
        job = self.guard.refund_jobs.get_job("refund-pi_hook")
        assert job.user_id == "u1"
        assert job.app_id == "youtube"

    def test_payload_from_stdin(self):
        payload, signature = signed_event("payment_intent.succeeded", self.intent)

        result = runner.invoke(
            app,
            ["--config", self.config_path, "webhook", "--signature", signature],
            input=payload
        )

        assert result.exit_code == EXIT_CODE_PASS
        assert self.guard.refund_jobs.get_job("refund-pi_hook") is not None

    def test_bad_signature_rejected(self):
        payload, signature = signed_event(
            "payment_intent.succeeded", self.intent, secret="whsec_other"
        )

        result = invoke(
            self.config_path, "webhook", self.write_payload(payload), "--signature", signature
        )

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Rejected" in result.output
        assert self.guard.refund_jobs.list_jobs() == []

    def test_other_events_are_acknowledged(self):
        payload, signature = signed_event("charge.refunded", {"id": "ch_1", "object": "charge"})

        result = invoke(
            self.config_path, "webhook", self.write_payload(payload), "--signature", signature
        )

        assert result.exit_code == EXIT_CODE_PASS
        assert "Handled charge.refunded" in result.output

    def test_missing_secret(self):
        with patch('screen_guard.cli.main.load_stripe_settings') as mock_settings:
            mock_settings.return_value.webhook_secret = None
            result = invoke(self.config_path, "webhook", "--signature", "t=1,v1=abc")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "STRIPE_WEBHOOK_SECRET" in result.output
