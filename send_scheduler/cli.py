"""Command-line interface for the send scheduler.

Operates directly on the scheduler database, so it works whether or not
the HTTP service is running.

Usage:
    send-scheduler upcoming
    send-scheduler cancel ITEM_ID
    send-scheduler reschedule ITEM_ID 2026-06-01T09:30
    send-scheduler purge --days 7 --status sent --status cancelled
    send-scheduler logs list --kind scheduled_dispatch
    send-scheduler logs purge --days 30
    send-scheduler stats
"""

from __future__ import annotations

import asyncio
import sys
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import click
from rich.console import Console
from rich.table import Table

from .control import DEFAULT_ITEM_PURGE_DAYS, DEFAULT_LOG_PURGE_DAYS, OperatorControl
from .core import parse_timestamp
from .errors import SchedulerError
from .models import TERMINAL_STATUSES
from .persistence import Persistence
from .reporting import Reporting

console = Console()
err_console = Console(stderr=True)

STATUS_COLORS = {
    "pending": "yellow",
    "rescheduled": "cyan",
    "sent": "green",
    "failed": "red",
    "cancelled": "dim",
    "success": "green",
    "error": "red",
}


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(data=data)


def get_persistence(db_path: str) -> Persistence:
    """Create a Persistence bound to ``db_path``."""
    return Persistence(db_path)


def _format_ts(ts: int | None, tz: ZoneInfo | None = None) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(int(ts), tz).strftime("%Y-%m-%d %H:%M:%S")


def _colored(status: str | None) -> str:
    if not status:
        return "-"
    color = STATUS_COLORS.get(status, "white")
    return f"[{color}]{status}[/{color}]"


def _run_operation(ctx: click.Context, operation):
    """Initialise the database, run ``operation(persistence)`` and exit 1 on scheduler errors."""
    persistence = get_persistence(ctx.obj["db_path"])

    async def _run():
        await persistence.init_db()
        return await operation(persistence)

    try:
        return run_async(_run())
    except SchedulerError as exc:
        print_error(str(exc))
        sys.exit(1)


@click.group()
@click.option(
    "--db",
    "db_path",
    envvar="SND_DB_PATH",
    default="/data/send_scheduler.db",
    show_default=True,
    help="Path to the scheduler database.",
)
@click.option(
    "--timezone",
    "tz_name",
    envvar="SND_TIMEZONE",
    default="Europe/Rome",
    show_default=True,
    help="Timezone for dates given without an offset.",
)
@click.version_option(package_name="send-scheduler")
@click.pass_context
def main(ctx: click.Context, db_path: str, tz_name: str) -> None:
    """send-scheduler: inspect and manage scheduled sends."""
    ctx.ensure_object(dict)
    try:
        tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        raise click.BadParameter(f"unknown timezone '{tz_name}'", param_hint="--timezone")
    ctx.obj["db_path"] = db_path
    ctx.obj["tz"] = tz


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def upcoming(ctx: click.Context, as_json: bool) -> None:
    """Show items due in the next 24 hours."""
    data = _run_operation(ctx, lambda persistence: Reporting(persistence).upcoming_items())

    if as_json:
        print_json(data)
        return

    stats = data["statistics"]
    console.print(
        f"\n[bold]Queue[/bold]: {stats.get('pending', 0)} pending, "
        f"{stats.get('rescheduled', 0)} rescheduled, "
        f"[red]{stats.get('overdue', 0)} overdue[/red], "
        f"{stats.get('next_hour', 0)} due within the hour\n"
    )

    items = data["items"]
    if not items:
        console.print("[dim]No items due in the next 24 hours.[/dim]")
        return

    tz = ctx.obj["tz"]
    table = Table(title=f"Upcoming items ({data['period']})")
    table.add_column("ID", style="cyan")
    table.add_column("Due")
    table.add_column("In (min)", justify="right")
    table.add_column("Recipient")
    table.add_column("Instance")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")

    for item in items:
        table.add_row(
            item["id"],
            _format_ts(item.get("scheduled_ts"), tz),
            str(item.get("minutes_until_due", "-")),
            item.get("recipient_name") or item.get("recipient_ref") or "-",
            item.get("instance_name") or item.get("instance_ref") or "-",
            _colored(item.get("status")),
            str(item.get("attempts", 0)),
        )

    console.print(table)


@main.command()
@click.argument("item_id")
@click.pass_context
def cancel(ctx: click.Context, item_id: str) -> None:
    """Cancel a pending or rescheduled item."""
    result = _run_operation(ctx, lambda persistence: OperatorControl(persistence).cancel(item_id))
    if result.get("changed"):
        print_success(f"Item '{item_id}' cancelled.")
    else:
        console.print(f"[yellow]{result['message']}[/yellow]")


@main.command()
@click.argument("item_id")
@click.argument("when")
@click.pass_context
def reschedule(ctx: click.Context, item_id: str, when: str) -> None:
    """Move an active item to WHEN (ISO date-time or epoch seconds)."""
    tz = ctx.obj["tz"]
    try:
        new_ts = parse_timestamp(when, "new_time", tz)
    except SchedulerError as exc:
        print_error(str(exc))
        sys.exit(1)
    _run_operation(ctx, lambda persistence: OperatorControl(persistence).reschedule(item_id, new_ts))
    print_success(f"Item '{item_id}' rescheduled to {_format_ts(new_ts, tz)}.")


@main.command()
@click.option(
    "--days", "-d", type=int, default=DEFAULT_ITEM_PURGE_DAYS, show_default=True,
    help="Remove items scheduled more than this many days ago.",
)
@click.option(
    "--status", "-s", "statuses", multiple=True,
    type=click.Choice(sorted(status.value for status in TERMINAL_STATUSES)),
    help="Terminal status to purge (repeatable, default: all terminal).",
)
@click.option("--force", "-f", is_flag=True, help="Skip confirmation.")
@click.pass_context
def purge(ctx: click.Context, days: int, statuses: tuple[str, ...], force: bool) -> None:
    """Delete old items in a terminal status."""
    if not force and not click.confirm(f"Delete terminal items older than {days} day(s)?"):
        console.print("Aborted.")
        return
    result = _run_operation(
        ctx,
        lambda persistence: OperatorControl(persistence).purge(days, list(statuses) or None),
    )
    print_success(result["message"])


@main.group()
def logs() -> None:
    """Execution log of background runs."""


@logs.command("list")
@click.option("--page", "-p", type=int, default=1, show_default=True, help="Page number.")
@click.option("--limit", "-l", type=int, default=50, show_default=True, help="Entries per page.")
@click.option("--kind", "-k", "cron_kind", help="Filter by run kind.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def logs_list(ctx: click.Context, page: int, limit: int, cron_kind: str | None, as_json: bool) -> None:
    """List execution log entries, newest first."""
    data = _run_operation(
        ctx,
        lambda persistence: Reporting(persistence).cron_log_page(page=page, limit=limit, cron_kind=cron_kind),
    )

    if as_json:
        print_json(data)
        return

    entries = data["logs"]
    if not entries:
        console.print("[dim]No execution log entries.[/dim]")
        return

    tz = ctx.obj["tz"]
    pagination = data["pagination"]
    table = Table(title=f"Execution log (page {pagination['page']}/{pagination['total_pages']})")
    table.add_column("ID", justify="right")
    table.add_column("When")
    table.add_column("Kind", style="cyan")
    table.add_column("Status")
    table.add_column("Duration (ms)", justify="right")
    table.add_column("Message")

    for entry in entries:
        duration = entry.get("duration_ms")
        table.add_row(
            str(entry["id"]),
            _format_ts(entry.get("occurred_ts"), tz),
            entry["cron_kind"],
            _colored(entry.get("status")),
            "-" if duration is None else str(duration),
            entry.get("message") or "",
        )

    console.print(table)
    console.print(f"[dim]{pagination['total']} entries in total[/dim]")


@logs.command("purge")
@click.option(
    "--days", "-d", type=int, default=DEFAULT_LOG_PURGE_DAYS, show_default=True,
    help="Remove entries older than this many days.",
)
@click.option("--force", "-f", is_flag=True, help="Skip confirmation.")
@click.pass_context
def logs_purge(ctx: click.Context, days: int, force: bool) -> None:
    """Delete old execution log entries."""
    if not force and not click.confirm(f"Delete execution log entries older than {days} day(s)?"):
        console.print("Aborted.")
        return
    result = _run_operation(ctx, lambda persistence: OperatorControl(persistence).purge_logs(days))
    print_success(result["message"])


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def stats(ctx: click.Context, as_json: bool) -> None:
    """Summarise background runs over the last 24 hours."""
    data = _run_operation(ctx, lambda persistence: Reporting(persistence).cron_overview())

    if as_json:
        print_json(data)
        return

    totals = data["totals"]
    console.print(
        f"\n[bold]Last 7 days[/bold]: {totals.get('total_runs') or 0} runs, "
        f"[green]{totals.get('total_successes') or 0} ok[/green], "
        f"[red]{totals.get('total_errors') or 0} errors[/red]\n"
    )

    tz = ctx.obj["tz"]
    latest = data["latest_runs"]
    if not latest:
        console.print("[dim]No runs recorded yet.[/dim]")
        return

    table = Table(title="Latest run per kind")
    table.add_column("Kind", style="cyan")
    table.add_column("When")
    table.add_column("Status")
    table.add_column("Message")
    for row in latest:
        table.add_row(
            row["cron_kind"],
            _format_ts(row.get("occurred_ts"), tz),
            _colored(row.get("status")),
            row.get("message") or "",
        )
    console.print(table)


if __name__ == "__main__":
    main()
