"""Rich output formatting for the meterbridge CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that machine-readable output on *stdout* is never
polluted with human-readable decoration.
"""

from __future__ import annotations

from dataclasses import asdict, is_dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from meter_engine.models.user_record import UserRecord


def _format_limit(value: int | None) -> str:
    if value is None:
        return "[dim]unlimited[/dim]"
    if value == 0:
        return "[red]blocked[/red]"
    return str(value)


def _format_remaining(value: int | None) -> str:
    if value is None:
        return "[green]unbounded[/green]"
    colour = "red" if value == 0 else "green"
    return f"[{colour}]{value}[/{colour}]"


# ---------------------------------------------------------------------------
# User records
# ---------------------------------------------------------------------------


def display_user_record(console: Console, user_id: str, record: UserRecord) -> None:
    """Render a user's quota record as a header panel plus a counter table.

    Parameters
    ----------
    console:
        Rich console to write to (typically stderr).
    user_id:
        The user the record belongs to.
    record:
        The record, already merged over defaults.
    """
    from meter_engine.ledger import remaining
    from meter_engine.models.catalog import ResourceKind

    status = "[green]active[/green]" if record.active else "[red]inactive[/red]"
    header_lines = [
        f"[bold]User:[/bold]     {user_id}",
        f"[bold]Status:[/bold]   {status}",
        f"[bold]Billing:[/bold]  {record.billing_id or '(none)'}",
    ]
    console.print(Panel("\n".join(header_lines), title="Quota Record", border_style="blue"))

    table = Table(title="Resources", show_lines=False)
    table.add_column("Model", style="bold")
    table.add_column("Kind")
    table.add_column("Minute", justify="right")
    table.add_column("Day", justify="right")
    table.add_column("Unbilled", justify="right")
    table.add_column("Remaining", justify="right")

    for kind in ResourceKind:
        used = record.used_for(kind)
        deltas = record.deltas_for(kind)
        for model, limit in record.limits_for(kind).items():
            usage = used.get(model)
            minute = f"{usage.minute if usage else 0} / "
            day = f"{usage.day if usage else 0} / "
            table.add_row(
                model,
                kind.value,
                minute + (_format_limit(limit.minute) if limit else "-"),
                day + (_format_limit(limit.day) if limit else "-"),
                str(deltas.get(model, 0)),
                _format_remaining(remaining(record, model)),
            )

    console.print(table)


def display_remaining(console: Console, user_id: str, model: str, value: int | None) -> None:
    console.print(f"[bold]{user_id}[/bold] / {model}: {_format_remaining(value)}")


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


def display_job_list(console: Console, jobs: list[dict[str, Any]]) -> None:
    """Render the periodic jobs with their cadence and next run time.

    Each dict must contain ``name``, ``cron`` and ``next_run`` keys.
    """
    table = Table(title="Periodic Jobs")
    table.add_column("Job", style="bold")
    table.add_column("Cron")
    table.add_column("Next Run (UTC)")

    for job in jobs:
        next_run = job.get("next_run")
        table.add_row(
            job["name"],
            job["cron"],
            next_run.strftime("%Y-%m-%d %H:%M") if isinstance(next_run, datetime) else str(next_run),
        )

    console.print(table)


def display_job_result(console: Console, name: str, result: Any, duration_ms: float) -> None:
    """Render the outcome of a manually triggered job."""
    if is_dataclass(result) and not isinstance(result, type):
        details = ", ".join(f"{k}={v}" for k, v in asdict(result).items())
    elif result is None:
        details = "done"
    else:
        details = str(result)
    console.print(f"[green]✓[/green] {name}: {details} [dim]({duration_ms:.0f} ms)[/dim]")
