"""
CLI interface for AI Quota Guard.

Provides command-line access to the plan catalog, usage reports, dry-run
admission checks, event history, plan changes and the pending-event reaper.
"""

import sys
from dataclasses import replace
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from ai_quota_guard.config.loader import load_engine_settings, load_plan_catalog_config
from ai_quota_guard.core.engine import MeteringEngine
from ai_quota_guard.core.errors import QuotaGuardError
from ai_quota_guard.core.plans import DEFAULT_PLANS
from ai_quota_guard.core.rate_limiter import Subscriber

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

_DB_OPTION = typer.Option(None, "--db", help="Ledger database path")
_CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Engine settings YAML file")


def _build_engine(db: Optional[str], config: Optional[str], initialize: bool = False) -> MeteringEngine:
    settings = load_engine_settings(config)
    if db:
        settings = replace(settings, db_path=db)
    return MeteringEngine.from_settings(settings, initialize=initialize)


def _format_currency(amount) -> str:
    """Format a Decimal cost, trimming trailing zeros past the cent."""
    text = f"{amount:,.6f}".rstrip("0")
    if len(text.split(".")[1]) < 2:
        text = f"{amount:,.2f}"
    return f"${text}"


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """AI Quota Guard CLI."""
    if ctx.invoked_subcommand is None:
        console.print("AI Quota Guard - Use --help to see available commands")


@app.command()
def init(
    plans: Optional[str] = typer.Option(
        None,
        "--plans",
        "-p",
        help="YAML plan catalog to publish instead of the default tiers"
    ),
    db: Optional[str] = _DB_OPTION,
    config: Optional[str] = _CONFIG_OPTION
):
    """Initialize the ledger database and publish plans."""
    try:
        engine = _build_engine(db, config, initialize=True)
        if plans:
            published = engine.seed_plans(load_plan_catalog_config(plans), replace=True)
        else:
            published = engine.seed_plans(DEFAULT_PLANS)
        console.print("[green]✓[/] Database initialized successfully")
        console.print(f"Published {published} plan(s)")
        sys.exit(EXIT_CODE_PASS)
    except (QuotaGuardError, ValueError, OSError, yaml.YAMLError) as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command(name="plans")
def list_plans(
    all_versions: bool = typer.Option(
        False,
        "--all",
        "-a",
        help="Include retired plan versions"
    ),
    db: Optional[str] = _DB_OPTION,
    config: Optional[str] = _CONFIG_OPTION
):
    """Show the plan catalog."""
    try:
        engine = _build_engine(db, config)
        catalog = engine.catalog.list_plans(include_inactive=all_versions)
    except (QuotaGuardError, ValueError, OSError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not catalog:
        console.print("[yellow]No plans published.[/] Run `ai-quota-guard init` first.")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Plan Catalog")
    table.add_column("Plan")
    table.add_column("Version", justify="right")
    table.add_column("Price/call", justify="right")
    table.add_column("Monthly", justify="right")
    table.add_column("Daily", justify="right")
    table.add_column("Per minute", justify="right")
    table.add_column("Batch", justify="right")
    table.add_column("Active")
    for plan in catalog:
        limits = plan.limits
        table.add_row(
            plan.code.value,
            str(plan.version),
            _format_currency(plan.price_per_call),
            f"{limits.monthly_calls:,}",
            f"{limits.daily_calls:,}",
            f"{limits.per_minute:,}",
            str(limits.batch_size) if plan.features.batch_processing else "-",
            "yes" if plan.is_active else "no",
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def usage(
    user_id: str = typer.Argument(..., help="User to report on"),
    plan: Optional[str] = typer.Option(None, "--plan", help="Plan code to report against"),
    db: Optional[str] = _DB_OPTION,
    config: Optional[str] = _CONFIG_OPTION
):
    """Show a user's quota position and usage totals."""
    try:
        engine = _build_engine(db, config)
        report = engine.usage_report(user_id, plan)
    except (QuotaGuardError, ValueError, OSError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if report.quota is None and report.stats.total_events == 0:
        console.print(f"\n[bold yellow]No usage recorded for {user_id}[/]\n")
        sys.exit(EXIT_CODE_PASS)

    console.print(f"\n[bold]Usage for {user_id}[/bold]")
    console.print("-" * 40)
    if report.plan is not None:
        console.print(f"Plan: {report.plan.name} (v{report.plan.version})")
    if report.remaining is not None:
        limits = report.plan.limits
        console.print(
            f"Monthly: {limits.monthly_calls - report.remaining.monthly:,} / {limits.monthly_calls:,}"
        )
        console.print(f"Remaining today: {report.remaining.daily:,}")
        console.print(f"Remaining this minute: {report.remaining.per_minute:,}")
    if report.resets_at is not None:
        console.print(f"Period resets at: {report.resets_at.isoformat()}")

    stats = report.stats
    console.print(f"\nEvents: {stats.total_events:,} ({stats.total_units:,} units)")
    console.print(
        f"Completed: {stats.successful_events:,}  Failed: {stats.failed_events:,}  "
        f"Pending: {stats.pending_events:,}"
    )
    console.print(f"Total cost: {_format_currency(stats.total_cost)}")
    if stats.avg_response_time_ms is not None:
        console.print(f"Avg response time: {stats.avg_response_time_ms:,.0f} ms")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def admit(
    user_id: str = typer.Argument(..., help="User requesting admission"),
    plan: str = typer.Option(..., "--plan", help="Plan code of the user"),
    units: int = typer.Option(1, "--units", "-n", help="Number of work items"),
    batch: bool = typer.Option(False, "--batch", "-b", help="Admit as a batch"),
    db: Optional[str] = _DB_OPTION,
    config: Optional[str] = _CONFIG_OPTION
):
    """
    Dry-run an admission check.

    Nothing is charged; a denial exits with a failing code.
    """
    try:
        engine = _build_engine(db, config)
        subscriber = Subscriber(user_id=user_id, plan_code=plan)
        if batch:
            decision = engine.admit_batch(subscriber, units)
        else:
            decision = engine.admit(subscriber, units)
    except (QuotaGuardError, ValueError, OSError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if decision.allow:
        console.print(
            f"[green]ALLOW[/] {units} unit(s) for {user_id}, cost {_format_currency(decision.cost)}"
        )
    else:
        console.print(f"[red]DENY[/] {decision.reason.value}")
    if decision.remaining is not None:
        remaining = decision.remaining
        console.print(
            f"Remaining: monthly {remaining.monthly:,}, daily {remaining.daily:,}, "
            f"per minute {remaining.per_minute:,}"
        )
    sys.exit(EXIT_CODE_PASS if decision.allow else EXIT_CODE_FAIL)


@app.command()
def history(
    user_id: str = typer.Argument(..., help="User to list events for"),
    page: int = typer.Option(1, "--page", help="Page number, starting at 1"),
    limit: int = typer.Option(20, "--limit", "-l", help="Events per page"),
    db: Optional[str] = _DB_OPTION,
    config: Optional[str] = _CONFIG_OPTION
):
    """List a user's usage events, newest first."""
    try:
        engine = _build_engine(db, config)
        events, total = engine.history(user_id, page=page, limit=limit)
    except (QuotaGuardError, ValueError, OSError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if total == 0:
        console.print(f"\n[bold yellow]No usage recorded for {user_id}[/]\n")
        sys.exit(EXIT_CODE_PASS)

    pages = (total + limit - 1) // limit
    table = Table(title=f"History for {user_id} (page {page} of {pages}, {total} events)")
    table.add_column("Event", justify="right")
    table.add_column("Requested at")
    table.add_column("Plan")
    table.add_column("Units", justify="right")
    table.add_column("State")
    table.add_column("Cost", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Error")
    for event in events:
        table.add_row(
            str(event.id),
            event.requested_at.isoformat(timespec="seconds"),
            event.plan_code,
            str(event.unit_count),
            event.state.value,
            _format_currency(event.cost),
            f"{event.tokens_used.total_tokens:,}" if event.tokens_used else "-",
            event.error_class or "",
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command(name="change-plan")
def change_plan(
    user_id: str = typer.Argument(..., help="User to move"),
    plan: str = typer.Argument(..., help="Code of the new plan"),
    db: Optional[str] = _DB_OPTION,
    config: Optional[str] = _CONFIG_OPTION
):
    """Move a user to another plan, keeping this period's usage."""
    try:
        engine = _build_engine(db, config)
        state = engine.change_plan(user_id, plan)
    except (QuotaGuardError, ValueError, OSError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(
        f"[green]✓[/] {user_id} is now on {state.plan_code} "
        f"({state.monthly_calls:,} call(s) used this period)"
    )
    sys.exit(EXIT_CODE_PASS)


@app.command()
def reap(
    db: Optional[str] = _DB_OPTION,
    config: Optional[str] = _CONFIG_OPTION
):
    """Force-fail pending events older than the reaper timeout."""
    try:
        engine = _build_engine(db, config)
    except (QuotaGuardError, ValueError, OSError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    result = engine.reaper.sweep()
    if result.storage_error:
        console.print("[red]Ledger unavailable, sweep skipped[/]")
        sys.exit(EXIT_CODE_FAIL)
    console.print(
        f"[green]✓[/] Closed {result.closed} stale event(s), {result.skipped} already closed"
    )
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
