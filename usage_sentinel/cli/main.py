"""
CLI interface for usage-sentinel.

Provides command-line access to budgets, alerts, signals and the monitor
process itself.
"""

import asyncio
import logging
import sys
from dataclasses import replace
from datetime import timedelta
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from usage_sentinel.config.loader import MonitorConfig, load_monitor_config
from usage_sentinel.monitor.engine import MonitorEngine
from usage_sentinel.monitor.rules import RULE_TYPES
from usage_sentinel.storage.models import BudgetPeriod, NotifyMethod
from usage_sentinel.storage.repository import NOTIFY_WEBHOOK_URL_KEY, MonitorRepository, utcnow

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def configure_logging(level: str = "INFO") -> None:
    """Route log records through rich."""
    logging.basicConfig(
        level=level.upper(),
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True
    )


def _get_config(ctx: typer.Context) -> MonitorConfig:
    return ctx.obj["config"]


def _get_repository(ctx: typer.Context) -> MonitorRepository:
    repository = MonitorRepository(_get_config(ctx).storage.db_path)
    repository.initialize_schema()
    return repository


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config_path: Optional[str] = typer.Option(
        None, "--config", "-c", help="Path to YAML monitor configuration"
    ),
    db_path: Optional[str] = typer.Option(
        None, "--db", help="Override the SQLite database path"
    ),
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level")
):
    """Usage Sentinel CLI."""
    configure_logging(log_level)
    try:
        config = load_monitor_config(config_path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    if db_path:
        config = replace(config, storage=replace(config.storage, db_path=db_path))
    ctx.obj = {"config": config}
    if ctx.invoked_subcommand is None:
        console.print("Usage Sentinel - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the monitor database."""
    try:
        _get_repository(ctx)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def run(
    ctx: typer.Context,
    no_tail: bool = typer.Option(False, "--no-tail", help="Do not subscribe to the live log tail")
):
    """Run the budget monitor and signal evaluator until interrupted."""
    engine = MonitorEngine(_get_config(ctx))

    async def _serve():
        engine.start(with_tail=not no_tail)
        try:
            await asyncio.Event().wait()
        finally:
            await engine.stop()

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        console.print("\nShutting down")


@app.command("budget-add")
def budget_add(
    ctx: typer.Context,
    period: BudgetPeriod = typer.Option(..., "--period", "-p", help="daily, weekly or monthly"),
    amount: float = typer.Option(..., "--amount", "-a", help="Budget amount in USD"),
    profile: str = typer.Option("all", "--profile", help="Profile the budget applies to"),
    threshold: int = typer.Option(80, "--threshold", "-t", help="Alert threshold percentage"),
    notify: NotifyMethod = typer.Option(NotifyMethod.DASHBOARD, "--notify", help="dashboard, slack or webhook"),
    url: Optional[str] = typer.Option(None, "--url", help="Slack or webhook URL")
):
    """Create a spend budget."""
    try:
        budget = _get_repository(ctx).create_budget(
            period=period,
            amount_usd=amount,
            profile=profile,
            alert_threshold_pct=threshold,
            notify_method=notify,
            notify_url=url
        )
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Created budget {budget.id}: {_format_currency(budget.amount_usd)} {budget.period.value}")


@app.command("budget-list")
def budget_list(ctx: typer.Context):
    """List configured budgets."""
    budgets = _get_repository(ctx).list_budgets()
    if not budgets:
        console.print("[dim]No budgets configured.[/]")
        return

    table = Table(title="Budgets")
    table.add_column("ID", justify="right")
    table.add_column("Profile", no_wrap=True)
    table.add_column("Period")
    table.add_column("Amount", justify="right")
    table.add_column("Threshold", justify="right")
    table.add_column("Notify")
    for budget in budgets:
        table.add_row(
            str(budget.id),
            budget.profile,
            budget.period.value,
            _format_currency(budget.amount_usd),
            f"{budget.alert_threshold_pct}%",
            budget.notify_method.value
        )
    console.print(table)


@app.command("budget-remove")
def budget_remove(ctx: typer.Context, budget_id: int = typer.Argument(..., help="Budget ID")):
    """Delete a budget and its alerts."""
    if not _get_repository(ctx).delete_budget(budget_id):
        console.print(f"[red]Budget {budget_id} not found[/]")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Deleted budget {budget_id}")


@app.command()
def alerts(
    ctx: typer.Context,
    budget_id: Optional[int] = typer.Option(None, "--budget", "-b", help="Only alerts for this budget"),
    limit: int = typer.Option(50, "--limit", "-n")
):
    """Show recent budget alerts."""
    rows = _get_repository(ctx).list_budget_alerts(budget_id=budget_id, limit=limit)
    if not rows:
        console.print("[dim]No budget alerts.[/]")
        return

    table = Table(title="Budget Alerts")
    table.add_column("ID", justify="right")
    table.add_column("Budget", justify="right")
    table.add_column("Triggered (UTC)")
    table.add_column("Spend", justify="right")
    table.add_column("Threshold", justify="right")
    table.add_column("Notified")
    for alert in rows:
        table.add_row(
            str(alert.id),
            str(alert.budget_id),
            str(alert.triggered_at),
            _format_currency(alert.current_amount_usd),
            f"{alert.threshold_pct}%",
            "yes" if alert.notified else "no"
        )
    console.print(table)


@app.command()
def signals(
    ctx: typer.Context,
    rule: Optional[str] = typer.Option(None, "--rule", "-r", help="Only events for this rule"),
    unacknowledged: bool = typer.Option(False, "--unacknowledged", "-u", help="Hide acknowledged events"),
    limit: int = typer.Option(50, "--limit", "-n")
):
    """List recorded signal events."""
    events = _get_repository(ctx).list_signal_events(
        rule_id=rule,
        acknowledged=False if unacknowledged else None,
        limit=limit
    )
    if not events:
        console.print("[dim]No signal events.[/]")
        return

    table = Table(title="Signals")
    table.add_column("ID", justify="right")
    table.add_column("Rule", no_wrap=True)
    table.add_column("Profile", no_wrap=True)
    table.add_column("Fired (UTC)")
    table.add_column("Ack")
    table.add_column("Evidence")
    for event in events:
        table.add_row(
            str(event.id),
            event.rule_id,
            event.profile,
            str(event.fired_at),
            "yes" if event.acknowledged else "no",
            ", ".join(f"{k}={v}" for k, v in event.data.items())
        )
    console.print(table)


@app.command()
def ack(ctx: typer.Context, event_id: int = typer.Argument(..., help="Signal event ID")):
    """Acknowledge a signal event."""
    if not _get_repository(ctx).acknowledge_signal_event(event_id):
        console.print(f"[red]Signal event {event_id} not found[/]")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Acknowledged signal {event_id}")


@app.command()
def rules():
    """List the anomaly rules in evaluation order."""
    table = Table(title="Signal Rules")
    table.add_column("ID", no_wrap=True)
    table.add_column("Name")
    table.add_column("Severity")
    table.add_column("Description")
    for rule_id, cls in RULE_TYPES.items():
        table.add_row(rule_id, cls.name, cls.severity.value, cls.description)
    console.print(table)


@app.command()
def cleanup(ctx: typer.Context):
    """Delete signal events older than the retention period."""
    days = _get_config(ctx).signals.retention_days
    removed = _get_repository(ctx).delete_signal_events_before(utcnow() - timedelta(days=days))
    console.print(f"[green]✓[/] Removed {removed} signal events older than {days} days")


@app.command("set-webhook")
def set_webhook(ctx: typer.Context, url: str = typer.Argument(..., help="Default signal webhook URL")):
    """Set the default webhook that receives signal notifications."""
    _get_repository(ctx).set_setting(NOTIFY_WEBHOOK_URL_KEY, url)
    console.print("[green]✓[/] Signal webhook updated")


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(amount):,.2f}"


if __name__ == "__main__":
    app()
