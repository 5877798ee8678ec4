"""
CLI interface for the usage ledger.

Operator access to ingestion, settlement, rollups and quota administration.
"""

import dataclasses
import sys
from datetime import date, timedelta
from decimal import Decimal
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from usage_ledger.config.loader import LedgerConfig, load_ledger_config
from usage_ledger.core.digest import LatencyStats
from usage_ledger.core.ledger import UserNotFoundError
from usage_ledger.core.logging import setup_logging
from usage_ledger.core.periods import days_remaining, format_period, utc_now
from usage_ledger.core.pipeline import UsagePipeline
from usage_ledger.storage.models import UserQuota
from usage_ledger.storage.repository import initialize_schema

app = typer.Typer()
quota_app = typer.Typer(help="Inspect and administer monthly cost quotas.")
app.add_typer(quota_app, name="quota")
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to the ledger YAML configuration"
    ),
    db: Optional[str] = typer.Option(
        None,
        "--db",
        help="SQLite database path (overrides the configuration)"
    ),
):
    """Usage Ledger CLI."""
    try:
        ledger_config = load_ledger_config(str(config)) if config else LedgerConfig.defaults()
    except Exception as e:
        console.print(f"[red]Invalid configuration:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    if db:
        ledger_config = dataclasses.replace(ledger_config, database_path=db)
    setup_logging(ledger_config.logging.level, ledger_config.logging.file)
    ctx.obj = ledger_config

    if ctx.invoked_subcommand is None:
        console.print("Usage Ledger - Use --help to see available commands")


def _pipeline(ctx: typer.Context) -> UsagePipeline:
    return UsagePipeline(ctx.obj)


@app.command()
def init(ctx: typer.Context):
    """Initialize the ledger database."""
    try:
        initialize_schema(ctx.obj.database_path)
        console.print("[green]✓[/] Database initialized successfully")
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def ingest(
    ctx: typer.Context,
    file: Path = typer.Argument(..., help="JSON-lines file of usage events"),
):
    """Buffer usage events from a JSON-lines file and flush them as raw batches."""
    if not file.exists():
        console.print(f"[red]File not found:[/] {file}")
        sys.exit(EXIT_CODE_FAIL)

    pipeline = _pipeline(ctx)
    before = sum(pipeline.raw_store.count_by_status().values())
    with open(file, "r", encoding="utf-8") as f:
        for line in f:
            if line.strip():
                pipeline.consumer.consume(line)
    pipeline.stop()
    written = sum(pipeline.raw_store.count_by_status().values()) - before

    console.print(f"[green]✓[/] {pipeline.consumer.accepted} events buffered in {written} batches")
    if pipeline.consumer.dropped:
        console.print(f"[yellow]![/] {pipeline.consumer.dropped} malformed events dropped")


@app.command()
def settle(ctx: typer.Context):
    """Settle all pending raw batches into the rollups."""
    pipeline = _pipeline(ctx)
    settled = pipeline.trigger_settlement()
    counts = pipeline.raw_store.count_by_status()
    console.print(f"[green]✓[/] Settled {settled} batches ({counts['pending']} still pending)")
    if counts["pending"]:
        sys.exit(EXIT_CODE_FAIL)


@app.command("user-usage")
def user_usage(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User identifier"),
    day: Optional[str] = typer.Option(None, "--date", "-d", help="UTC date, YYYY-MM-DD (default today)"),
):
    """Show one user's daily rollup."""
    usage_date = _parse_date(day)
    row = _pipeline(ctx).rollups.get_user_usage(usage_date, user_id)
    if row is None:
        console.print(f"[yellow]No usage for {user_id} on {usage_date}[/]")
        sys.exit(EXIT_CODE_FAIL)

    table = _summary_table(f"{user_id} on {usage_date}")
    table.add_row("Requests", f"{row.request_count:,} ({row.success_count:,} ok, {row.error_count:,} errors)")
    table.add_row("Tokens", f"{row.total_tokens:,} (in {row.total_input_tokens:,}, out {row.total_output_tokens:,})")
    table.add_row("Cost", _format_currency(row.estimated_cost_usd))
    table.add_row("Cache hit rate", f"{row.cache_efficiency.hit_rate:.1%}")
    table.add_row("Cache savings", _format_currency(row.cache_efficiency.saved_usd))
    table.add_row("Peak hour (UTC)", f"{row.peak_hour:02d}:00 ({row.peak_hour_requests} requests)")
    table.add_row("Latency", _format_latency(row.latency_stats))
    if row.error_breakdown:
        table.add_row("Errors", ", ".join(f"{k}={v}" for k, v in sorted(row.error_breakdown.items())))
    console.print(table)

    model_table = Table(title="Models")
    for column in ("Model", "Requests", "Input", "Output", "Cost"):
        model_table.add_column(column, justify="left" if column == "Model" else "right")
    for model, breakdown in sorted(row.model_breakdown.items()):
        model_table.add_row(model, f"{breakdown.request_count:,}", f"{breakdown.input_tokens:,}",
                            f"{breakdown.output_tokens:,}", _format_currency(breakdown.cost_usd))
    console.print(model_table)


@app.command("model-usage")
def model_usage(
    ctx: typer.Context,
    model: str = typer.Argument(..., help="Model name (use 'unknown' for unresolved models)"),
    day: Optional[str] = typer.Option(None, "--date", "-d", help="UTC date, YYYY-MM-DD (default today)"),
):
    """Show one model's daily rollup."""
    usage_date = _parse_date(day)
    row = _pipeline(ctx).rollups.get_model_usage(usage_date, model)
    if row is None:
        console.print(f"[yellow]No usage for {model} on {usage_date}[/]")
        sys.exit(EXIT_CODE_FAIL)

    table = _summary_table(f"{model} on {usage_date}")
    table.add_row("Requests", f"{row.request_count:,} ({row.success_count:,} ok, {row.error_count:,} errors)")
    table.add_row("Unique users", str(row.unique_users))
    table.add_row("Tokens", f"{row.total_tokens:,}")
    table.add_row("Cost", _format_currency(row.estimated_cost_usd))
    table.add_row("Cache hit rate", f"{row.cache_efficiency.hit_rate:.1%}")
    table.add_row("Peak hour (UTC)", f"{row.peak_hour:02d}:00 ({row.peak_hour_requests} requests)")
    table.add_row("Latency", _format_latency(row.latency_stats))
    console.print(table)


@app.command("system-stats")
def system_stats(
    ctx: typer.Context,
    day: Optional[str] = typer.Option(None, "--date", "-d", help="UTC date, YYYY-MM-DD (default today)"),
):
    """Show the system-wide rollup for a day."""
    usage_date = _parse_date(day)
    row = _pipeline(ctx).rollups.get_system_stats(usage_date)
    if row is None:
        console.print(f"[yellow]No usage on {usage_date}[/]")
        sys.exit(EXIT_CODE_FAIL)

    table = _summary_table(f"System on {usage_date}")
    table.add_row("Requests", f"{row.total_request_count:,}")
    table.add_row("Success rate", f"{row.success_rate:.1%}")
    table.add_row("Unique users", str(row.unique_users))
    table.add_row("Tokens", f"{row.total_tokens:,}")
    table.add_row("Cost", _format_currency(row.total_estimated_cost_usd))
    table.add_row("Cache savings", _format_currency(row.system_cache_saved_usd))
    table.add_row("Latency", _format_latency(row.latency_stats))
    console.print(table)

    for title, items in (("Top models", row.top_models), ("Top users", row.top_users)):
        board = Table(title=title)
        for column in ("Name", "Requests", "Tokens", "Cost"):
            board.add_column(column, justify="left" if column == "Name" else "right")
        for item in items:
            board.add_row(item.key, f"{item.request_count:,}", f"{item.total_tokens:,}",
                          _format_currency(item.cost_usd))
        console.print(board)


@app.command("system-range")
def system_range(
    ctx: typer.Context,
    start: str = typer.Option(..., "--from", help="First UTC date, YYYY-MM-DD"),
    end: Optional[str] = typer.Option(None, "--to", help="Last UTC date, YYYY-MM-DD (default today)"),
):
    """Show the system-wide rollups for a range of days."""
    start_date, end_date = _parse_date(start), _parse_date(end)
    rows = _pipeline(ctx).rollups.list_system_stats(start_date, end_date)
    if not rows:
        console.print(f"[yellow]No usage between {start_date} and {end_date}[/]")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title=f"System from {start_date} to {end_date}")
    for column in ("Date", "Requests", "Success", "Users", "Tokens", "Cost"):
        table.add_column(column, justify="left" if column == "Date" else "right")
    for row in rows:
        table.add_row(row.date.isoformat(), f"{row.total_request_count:,}", f"{row.success_rate:.1%}",
                      str(row.unique_users), f"{row.total_tokens:,}",
                      _format_currency(row.total_estimated_cost_usd))
    console.print(table)


@app.command()
def models(
    ctx: typer.Context,
    days: int = typer.Option(7, "--days", min=1, help="Number of days to cover"),
    end: Optional[str] = typer.Option(None, "--to", help="Last UTC date, YYYY-MM-DD (default today)"),
):
    """Summarize every model used in the last N days, most tokens first."""
    end_date = _parse_date(end)
    start_date = end_date - timedelta(days=days - 1)
    summaries = _pipeline(ctx).rollups.summarize_models(start_date, end_date)
    if not summaries:
        console.print(f"[dim]No model usage between {start_date} and {end_date}.[/]")
        return

    table = Table(title=f"Models from {start_date} to {end_date}")
    for column in ("Model", "Requests", "Success", "Users", "Tokens", "Cost", "Avg latency"):
        table.add_column(column, justify="left" if column == "Model" else "right")
    for item in summaries:
        table.add_row(item.model, f"{item.request_count:,}", f"{item.success_rate:.1%}",
                      str(item.unique_users), f"{item.total_tokens:,}",
                      _format_currency(item.estimated_cost_usd), f"{item.avg_latency_ms:.0f}ms")
    console.print(table)


@app.command()
def errors(
    ctx: typer.Context,
    limit: int = typer.Option(20, "--limit", "-n", min=1, help="Maximum errors to show"),
):
    """List the most recent failed calls from the raw batch log."""
    found = _pipeline(ctx).raw_store.find_recent_errors(limit)
    if not found:
        console.print("[dim]No recent errors.[/]")
        return

    table = Table(title="Recent errors")
    for column in ("Time (UTC)", "User", "Model", "Error", "Latency", "Request", "Batch"):
        table.add_column(column)
    for item in found:
        event = item.event
        table.add_row(event.timestamp.strftime("%Y-%m-%d %H:%M:%S"), event.user_id,
                      event.model or "unknown", event.error_type or "unknown",
                      f"{event.latency_ms}ms", event.request_id or "", item.batch_id)
    console.print(table)


@app.command()
def run(ctx: typer.Context):
    """Run the pipeline schedules and consume JSON-lines events from stdin."""
    pipeline = _pipeline(ctx)
    pipeline.start()
    console.print("[green]✓[/] Pipeline running; reading events from stdin (Ctrl-C to stop)")
    try:
        for line in sys.stdin:
            if line.strip():
                pipeline.consumer.consume(line)
    except KeyboardInterrupt:
        console.print("\nShutting down...")
    finally:
        pipeline.stop()
    console.print(f"[green]✓[/] Stopped after {pipeline.consumer.accepted} events")


@quota_app.command("show")
def quota_show(ctx: typer.Context, user_id: str = typer.Argument(..., help="User identifier")):
    """Show a user's current quota period."""
    quota = _pipeline(ctx).ledger.get_quota(user_id)
    if quota is None:
        console.print(f"[red]User not found:[/] {user_id}")
        sys.exit(EXIT_CODE_FAIL)
    _display_quota(quota)


@quota_app.command("set")
def quota_set(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User identifier"),
    limit: float = typer.Option(..., "--limit", "-l", help="Monthly cost limit in USD"),
    disable: bool = typer.Option(False, "--disable", help="Store the limit but disable the quota"),
):
    """Configure a user's monthly cost limit."""
    try:
        quota = _pipeline(ctx).set_quota_config(user_id, not disable, Decimal(str(limit)))
    except (UserNotFoundError, ValueError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    _display_quota(quota)


@quota_app.command("bonus")
def quota_bonus(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User identifier"),
    amount: float = typer.Argument(..., help="Bonus amount in USD"),
    reason: Optional[str] = typer.Option(None, "--reason", "-r", help="Why the bonus was granted"),
    granted_by: str = typer.Option(..., "--by", help="Admin granting the bonus"),
):
    """Grant bonus credit for the current period."""
    try:
        quota = _pipeline(ctx).grant_bonus(user_id, Decimal(str(amount)), reason, granted_by)
    except (UserNotFoundError, ValueError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    _display_quota(quota)


@quota_app.command("history")
def quota_history(ctx: typer.Context, user_id: str = typer.Argument(..., help="User identifier")):
    """List a user's archived quota periods."""
    pipeline = _pipeline(ctx)
    history = pipeline.ledger.list_history(user_id)
    if not history:
        console.print(f"[dim]No archived periods for {user_id}.[/]")
        return

    table = Table(title=f"Quota history for {user_id}")
    for column in ("Period", "Requests", "Tokens", "Cost", "Limit", "Usage", "Exceeded"):
        table.add_column(column, justify="left" if column == "Period" else "right")
    for item in history:
        table.add_row(
            item.period,
            f"{item.total_request_count:,}",
            f"{item.total_tokens:,}",
            _format_currency(item.total_cost_usd),
            _format_currency(item.effective_limit_usd),
            f"{item.final_usage_percent:.1f}%",
            "yes" if item.was_exceeded else "no",
        )
    console.print(table)


@quota_app.command("top")
def quota_top(
    ctx: typer.Context,
    limit: int = typer.Option(10, "--limit", "-n", min=1, help="Number of users"),
):
    """List users with the most lifetime tokens."""
    _display_quota_list("Top users by lifetime tokens", _pipeline(ctx).ledger.list_top_users(limit))


@quota_app.command("exceeded")
def quota_exceeded(ctx: typer.Context):
    """List users over their limit in the current period."""
    _display_quota_list("Users over quota", _pipeline(ctx).ledger.list_exceeded())


@quota_app.command("recent")
def quota_recent(
    ctx: typer.Context,
    limit: int = typer.Option(10, "--limit", "-n", min=1, help="Number of users"),
):
    """List the most recently active users."""
    _display_quota_list("Recently active users", _pipeline(ctx).ledger.list_recent_active(limit))


def _parse_date(value: Optional[str]) -> date:
    if value is None:
        return utc_now().date()
    try:
        return date.fromisoformat(value)
    except ValueError:
        console.print(f"[red]Invalid date:[/] {value} (expected YYYY-MM-DD)")
        sys.exit(EXIT_CODE_FAIL)


def _summary_table(title: str) -> Table:
    table = Table(title=title, show_header=False)
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    return table


def _format_currency(amount: Decimal) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${amount:,.6f}" if abs(amount) < 1 else f"${amount:,.2f}"


def _format_latency(stats: LatencyStats) -> str:
    if stats.is_empty:
        return "n/a"
    return (f"p50 {stats.p50_ms:.0f}ms, p90 {stats.p90_ms:.0f}ms, "
            f"p99 {stats.p99_ms:.0f}ms (n={stats.count:,})")


def _display_quota(quota: UserQuota) -> None:
    table = _summary_table(f"Quota for {quota.user_id} ({format_period(quota.period_year, quota.period_month)})")
    table.add_row("Enabled", "yes" if quota.quota_enabled else "no")
    table.add_row("Cost limit", _format_currency(quota.cost_limit_usd))
    table.add_row("Bonus", _format_currency(quota.bonus_cost_usd))
    table.add_row("Period cost", _format_currency(quota.period_cost_usd))
    table.add_row("Usage", f"{quota.cost_usage_percent:.2f}%")
    table.add_row("Exceeded", "[red]yes[/]" if quota.quota_exceeded else "no")
    table.add_row("Days remaining", str(days_remaining(quota.period_end_at)))
    table.add_row("Lifetime cost", _format_currency(quota.lifetime_cost_usd))
    table.add_row("Lifetime tokens", f"{quota.lifetime_tokens:,}")
    table.add_row("Lifetime requests", f"{quota.lifetime_request_count:,}")
    console.print(table)


def _display_quota_list(title: str, quotas: List[UserQuota]) -> None:
    if not quotas:
        console.print(f"[dim]{title}: none.[/]")
        return

    table = Table(title=title)
    for column in ("User", "Period cost", "Limit", "Usage", "Lifetime tokens", "Last active"):
        table.add_column(column, justify="left" if column in ("User", "Last active") else "right")
    for quota in quotas:
        last_active = quota.last_active_at.strftime("%Y-%m-%d %H:%M") if quota.last_active_at else ""
        table.add_row(
            quota.user_id,
            _format_currency(quota.period_cost_usd),
            _format_currency(quota.effective_cost_limit),
            f"{quota.cost_usage_percent:.1f}%",
            f"{quota.lifetime_tokens:,}",
            last_active,
        )
    console.print(table)


if __name__ == "__main__":
    app()
