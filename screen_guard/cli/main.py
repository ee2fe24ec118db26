"""
CLI interface for Screen Guard.

Provides command-line access to limits, enforcement, unlocks and refunds.
"""

import dataclasses
import logging
import sys
import threading
from datetime import datetime, timedelta
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from screen_guard.config.loader import load_config, load_stripe_settings
from screen_guard.core.errors import ChargeFailed
from screen_guard.core.refunds import compute_refund_amount
from screen_guard.core.runtime import ScreenGuard
from screen_guard.payments.stripe_provider import StripePaymentProvider
from screen_guard.payments.webhooks import WebhookVerificationError, handle_webhook
from screen_guard.storage.repository import initialize_schema

app = typer.Typer()
limits_app = typer.Typer(help="Show or change daily limits.")
refunds_app = typer.Typer(help="Inspect and process delayed refunds.")
app.add_typer(limits_app, name="limits")
app.add_typer(refunds_app, name="refunds")

console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DEFAULT_USER = "default"
DEFAULT_UNLOCK_MINUTES = 60


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)],
        force=True
    )


def _build_runtime(config_path: Optional[str]) -> ScreenGuard:
    """Wire services from the config file and the Stripe environment."""
    config = load_config(config_path)
    stripe_settings = load_stripe_settings()
    provider = None
    if stripe_settings.is_configured:
        provider = StripePaymentProvider(
            stripe_settings.secret_key, payment_method=stripe_settings.payment_method
        )
    return ScreenGuard(config, provider=provider)


def _runtime(ctx: typer.Context) -> ScreenGuard:
    if ctx.obj.get("runtime") is None:
        ctx.obj["runtime"] = _build_runtime(ctx.obj.get("config"))
    return ctx.obj["runtime"]


def _user(ctx: typer.Context) -> str:
    return ctx.obj.get("user", DEFAULT_USER)


def _format_currency(cents: int) -> str:
    """Format an amount in cents as dollars."""
    return f"${cents / 100:,.2f}"


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML configuration file"
    ),
    user: str = typer.Option(
        DEFAULT_USER,
        "--user",
        "-u",
        help="User whose limits and blocks to act on"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable debug logging"
    )
):
    """Screen Guard CLI."""
    _setup_logging(verbose)
    ctx.obj = {"config": config, "user": user, "runtime": None}
    if ctx.invoked_subcommand is None:
        console.print("Screen Guard - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the Screen Guard database."""
    try:
        config = load_config(ctx.obj.get("config"))
        initialize_schema(config.database)
        console.print(f"[green]✓[/] Database initialized at {config.database}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(ctx: typer.Context):
    """Show today's usage, blocks and active overrides."""
    try:
        guard = _runtime(ctx)
        user_id = _user(ctx)
        summary = guard.policy.usage_summary(user_id)
        controller = guard.controller_for(user_id)
        blocked = controller.blocked_apps()
        overrides = {o.app_id: o for o in controller.live_overrides()}
    except Exception as e:
        _fail(str(e))

    table = Table(title=f"Screen time for {user_id}")
    table.add_column("App")
    table.add_column("Used", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("State")
    for row in summary:
        if row.app_id in overrides:
            state = f"[yellow]unlocked until {overrides[row.app_id].expires_at:%H:%M}[/]"
        elif row.app_id in blocked:
            state = "[red]blocked[/]"
        else:
            state = "[green]ok[/]"
        table.add_row(row.name, f"{row.minutes_used}m", f"{row.limit_minutes}m", state)
    console.print(table)

    limits = guard.settings.get_limit_config(user_id)
    if limits.combined_limit_enabled:
        total = sum(row.minutes_used for row in summary)
        combined = limits.combined_limit(guard.config.tracked_apps.reference_app_id)
        console.print(f"Combined limit: {total}m of {combined}m")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def evaluate(ctx: typer.Context):
    """Run one evaluation cycle and apply the resulting blocks."""
    try:
        guard = _runtime(ctx)
        user_id = _user(ctx)
        result = guard.enforcement.run_cycle(user_id)
    except Exception as e:
        _fail(str(e))

    if result is None:
        console.print("[yellow]An evaluation is already running[/]")
        sys.exit(EXIT_CODE_PASS)

    for app_id in result.expired_overrides:
        console.print(f"Override expired: {guard.config.tracked_apps.display_name(app_id)}")
    if result.blocked:
        names = ", ".join(guard.config.tracked_apps.display_name(a) for a in sorted(result.blocked))
        console.print(f"[red]Blocked:[/] {names}")
    else:
        console.print("[green]✓[/] All apps within limits")
    sys.exit(EXIT_CODE_PASS)


@app.command("record-usage")
def record_usage(
    ctx: typer.Context,
    app_id: str = typer.Argument(..., help="Tracked app id"),
    minutes: int = typer.Argument(..., help="Minutes used today"),
    add: bool = typer.Option(
        False,
        "--add",
        help="Add to today's counter instead of replacing the reading"
    )
):
    """Record today's usage for an app."""
    try:
        guard = _runtime(ctx)
        guard.config.tracked_apps.get(app_id)
        today = guard.clock().date()
        if add:
            total = guard.usage.add_minutes(_user(ctx), app_id, today, minutes)
        else:
            total = guard.usage.record_minutes(_user(ctx), app_id, today, minutes)
    except Exception as e:
        _fail(str(e))
    console.print(f"[green]✓[/] {app_id}: {total} minutes today")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def history(
    ctx: typer.Context,
    days: int = typer.Option(7, "--days", "-d", help="Number of days to show, today included")
):
    """Show daily usage per app over recent days."""
    try:
        guard = _runtime(ctx)
        user_id = _user(ctx)
        stats = guard.usage.get_usage_stats(user_id, days=days, today=guard.clock().date())
    except Exception as e:
        _fail(str(e))

    apps = list(guard.config.tracked_apps)
    table = Table(title=f"Usage for {user_id}, last {days} days")
    table.add_column("Day")
    for tracked in apps:
        table.add_column(tracked.name, justify="right")
    table.add_column("Total", justify="right")

    day = stats.start
    while day <= stats.end:
        usage = stats.daily_usage.get(day, {})
        minutes = [usage.get(tracked.id, 0) for tracked in apps]
        table.add_row(day.isoformat(), *(f"{m}m" for m in minutes), f"{sum(minutes)}m")
        day += timedelta(days=1)

    totals = [stats.totals.get(tracked.id, 0) for tracked in apps]
    table.add_row("Total", *(f"{m}m" for m in totals), f"{sum(totals)}m", style="bold")
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@limits_app.command("show")
def limits_show(ctx: typer.Context):
    """Show the user's limit configuration."""
    try:
        guard = _runtime(ctx)
        limits = guard.settings.get_limit_config(_user(ctx))
    except Exception as e:
        _fail(str(e))

    table = Table(title="Daily limits")
    table.add_column("App")
    table.add_column("Limit", justify="right")
    for tracked in guard.config.tracked_apps:
        table.add_row(tracked.name, f"{limits.limit_for(tracked.id)}m")
    console.print(table)
    mode = "combined" if limits.combined_limit_enabled else "per app"
    console.print(f"Mode: {mode}")
    console.print(
        f"Combined limit: {limits.combined_limit(guard.config.tracked_apps.reference_app_id)}m"
    )
    console.print(f"Emergency unlock: {_format_currency(limits.emergency_unlock_amount)}")
    sys.exit(EXIT_CODE_PASS)


@limits_app.command("set")
def limits_set(
    ctx: typer.Context,
    app_id: Optional[str] = typer.Option(None, "--app", "-a", help="App whose limit to set"),
    minutes: Optional[int] = typer.Option(None, "--minutes", "-m", help="Daily limit in minutes"),
    combined: Optional[bool] = typer.Option(
        None,
        "--combined/--per-app",
        help="Enforce one limit across all apps"
    ),
    combined_minutes: Optional[int] = typer.Option(
        None,
        "--combined-minutes",
        help="Combined daily limit in minutes"
    ),
    unlock_amount: Optional[int] = typer.Option(
        None,
        "--unlock-amount",
        help="Emergency unlock price in cents"
    )
):
    """Change limits; unspecified settings keep their value."""
    if (app_id is None) != (minutes is None):
        _fail("--app and --minutes must be given together")

    def _mutate(limits):
        changes = {}
        if app_id is not None:
            changes["daily_limits"] = dict(limits.daily_limits, **{app_id: minutes})
        if combined is not None:
            changes["combined_limit_enabled"] = combined
        if combined_minutes is not None:
            changes["combined_limit_minutes"] = combined_minutes
        if unlock_amount is not None:
            changes["emergency_unlock_amount"] = unlock_amount
        return dataclasses.replace(limits, **changes)

    try:
        guard = _runtime(ctx)
        if app_id is not None:
            guard.config.tracked_apps.get(app_id)
        guard.settings.update_limit_config(_user(ctx), _mutate)
    except Exception as e:
        _fail(str(e))
    console.print("[green]✓[/] Limits updated")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def unlock(
    ctx: typer.Context,
    app_id: str = typer.Argument(..., help="App to unlock"),
    minutes: int = typer.Option(
        DEFAULT_UNLOCK_MINUTES,
        "--minutes",
        "-m",
        help="Length of the temporary unlock"
    ),
    request_id: Optional[str] = typer.Option(
        None,
        "--request-id",
        help="Reuse to retry a request without being charged twice"
    )
):
    """Pay for an emergency unlock of a blocked app."""
    try:
        guard = _runtime(ctx)
        payment = guard.unlocks.request_unlock(_user(ctx), app_id, minutes, request_id)
    except ChargeFailed as e:
        console.print(f"[red]Payment failed:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    except Exception as e:
        _fail(str(e))

    name = guard.config.tracked_apps.display_name(app_id)
    refund = compute_refund_amount(payment.amount)
    console.print(f"[green]✓[/] {name} unlocked for {minutes} minutes")
    console.print(
        f"Charged {_format_currency(payment.amount)}; "
        f"{_format_currency(refund)} will be refunded after 7 days"
    )
    sys.exit(EXIT_CODE_PASS)


@refunds_app.command("list")
def refunds_list(
    ctx: typer.Context,
    pending: bool = typer.Option(False, "--pending", help="Only unprocessed jobs")
):
    """List refund jobs."""
    try:
        guard = _runtime(ctx)
        jobs = guard.refund_jobs.list_jobs(include_processed=not pending)
    except Exception as e:
        _fail(str(e))

    if not jobs:
        console.print("[dim]No refund jobs.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Refund jobs")
    table.add_column("Job")
    table.add_column("User")
    table.add_column("App")
    table.add_column("Due")
    table.add_column("Attempts", justify="right")
    table.add_column("Status")
    for job in jobs:
        if job.processed:
            state = f"[green]refunded {job.refund_id}[/]"
        elif job.dead_lettered:
            state = f"[red]dead-lettered: {job.last_error}[/]"
        elif job.last_error:
            state = f"[yellow]retrying: {job.last_error}[/]"
        else:
            state = "pending"
        table.add_row(
            job.id, job.user_id, job.app_id,
            job.refund_due_at.strftime("%Y-%m-%d %H:%M"), str(job.attempts), state
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@refunds_app.command("process")
def refunds_process(ctx: typer.Context):
    """Refund every matured job once. Safe to run from cron."""
    try:
        report = _runtime(ctx).refunds.tick()
    except Exception as e:
        _fail(str(e))

    if report.skipped:
        console.print("[yellow]A refund run is already in progress[/]")
        sys.exit(EXIT_CODE_PASS)
    console.print(
        f"Refunded {len(report.refunded)}, failed {len(report.failed)}, "
        f"dead-lettered {len(report.dead_lettered)}"
    )
    sys.exit(EXIT_CODE_FAIL if report.dead_lettered else EXIT_CODE_PASS)


@refunds_app.command("requeue")
def refunds_requeue(
    ctx: typer.Context,
    job_id: str = typer.Argument(..., help="Dead-lettered refund job id")
):
    """Return a dead-lettered refund job to the queue."""
    try:
        requeued = _runtime(ctx).refunds.requeue(job_id)
    except Exception as e:
        _fail(str(e))
    if not requeued:
        _fail(f"{job_id} is not a dead-lettered job")
    console.print(f"[green]✓[/] Requeued {job_id}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def webhook(
    ctx: typer.Context,
    payload_file: str = typer.Argument("-", help="File holding the raw event body, or - for stdin"),
    signature: str = typer.Option(
        ...,
        "--signature",
        "-s",
        help="Value of the Stripe-Signature header"
    )
):
    """Verify a Stripe webhook event and schedule its refund."""
    secret = load_stripe_settings().webhook_secret
    if not secret:
        _fail("No webhook secret configured (set STRIPE_WEBHOOK_SECRET)")

    try:
        if payload_file == "-":
            payload = sys.stdin.read()
        else:
            with open(payload_file, "rb") as f:
                payload = f.read()
        outcome = handle_webhook(payload, signature, secret, _runtime(ctx).refunds)
    except WebhookVerificationError as e:
        console.print(f"[red]Rejected:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    except Exception as e:
        _fail(str(e))

    if outcome.refund_job_id:
        console.print(f"[green]✓[/] Refund job {outcome.refund_job_id} scheduled")
    else:
        console.print(f"Handled {outcome.event_type}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def run(
    ctx: typer.Context,
    once: bool = typer.Option(False, "--once", help="Run each loop a single time and exit")
):
    """Run the evaluation and refund loops until interrupted."""
    try:
        guard = _runtime(ctx)
        user_id = _user(ctx)
        if once:
            guard.restore(user_id)
            guard.enforcement.run_cycle(user_id)
            if guard.provider is not None:
                guard.refunds.tick()
            sys.exit(EXIT_CODE_PASS)
        guard.start([user_id])
    except Exception as e:
        _fail(str(e))

    console.print(f"Enforcing limits for {user_id} (started {datetime.now():%H:%M}); Ctrl+C to stop")
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        console.print("Stopping")
    finally:
        guard.stop()
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
