"""meterbridge CLI application -- Typer-based operator interface.

Provides commands for replaying periodic jobs, inspecting quota records,
tracking runs and serving the HTTP API.  Human-readable output goes to
*stderr* via Rich; ``--json`` switches to machine-readable JSON on
*stdout* so that scripts can compose cleanly.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, is_dataclass
from datetime import UTC, datetime
from typing import Any, TypeVar

import typer
from meter_engine.config import load_settings
from meter_engine.jobs.scheduler import compute_next_run
from meter_engine.ledger import remaining
from meter_engine.runtime import JOB_NAMES, MeterRuntime, create_runtime, job_crons
from rich.console import Console

from cli.display import (
    display_job_list,
    display_job_result,
    display_remaining,
    display_user_record,
)

T = TypeVar("T")

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="meterbridge",
    help="meterbridge - usage metering, quotas and billing reconciliation",
    no_args_is_help=True,
)
console = Console(stderr=True)

jobs_app = typer.Typer(name="jobs", help="Inspect and replay the periodic jobs.", no_args_is_help=True)
user_app = typer.Typer(name="user", help="Inspect user quota records.", no_args_is_help=True)
runs_app = typer.Typer(name="runs", help="Track asynchronous runs.", no_args_is_help=True)
app.add_typer(jobs_app, name="jobs")
app.add_typer(user_app, name="user")
app.add_typer(runs_app, name="runs")

# Mutable global options populated by the Typer callback.
_json_output: bool = False


# ---------------------------------------------------------------------------
# Callback -- global options
# ---------------------------------------------------------------------------


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log engine activity to stderr."),
) -> None:
    """Global options applied to every command."""
    global _json_output  # noqa: PLW0603
    _json_output = json_mode
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(action: Callable[[MeterRuntime], Awaitable[T]]) -> T:
    """Build the runtime from ``METER_*`` settings, run *action*, then close it."""

    async def _main() -> T:
        runtime = await create_runtime(load_settings())
        try:
            return await action(runtime)
        finally:
            await runtime.close()

    return asyncio.run(_main())


def _write_json(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, default=str) + "\n")


# ---------------------------------------------------------------------------
# jobs
# ---------------------------------------------------------------------------


@jobs_app.command("list")
def jobs_list() -> None:
    """List the periodic jobs with their cadence and next run time."""
    settings = load_settings()
    now = datetime.now(UTC)
    rows: list[dict[str, Any]] = []
    for name, cron in job_crons(settings).items():
        try:
            next_run: Any = compute_next_run(cron, now)
        except ValueError as exc:
            next_run = f"invalid: {exc}"
        rows.append({"name": name, "cron": cron, "next_run": next_run})

    if _json_output:
        _write_json(rows)
    else:
        display_job_list(console, rows)


@jobs_app.command("run")
def jobs_run(
    name: str = typer.Argument(..., help=f"Job to run now: {', '.join(JOB_NAMES)}."),
) -> None:
    """Run one periodic job immediately (manual replay)."""
    if name not in JOB_NAMES:
        console.print(f"[red]Unknown job '{name}'. Choose from: {', '.join(JOB_NAMES)}[/red]")
        raise typer.Exit(code=2)

    started = time.monotonic()
    try:
        result = _run(lambda runtime: runtime.scheduler.run_job(name))
    except Exception as exc:
        console.print(f"[red]Job {name} failed: {exc}[/red]")
        raise typer.Exit(code=1) from exc
    duration_ms = (time.monotonic() - started) * 1000

    if _json_output:
        payload = asdict(result) if is_dataclass(result) and not isinstance(result, type) else result
        _write_json({"job": name, "result": payload, "duration_ms": round(duration_ms, 2)})
    else:
        display_job_result(console, name, result, duration_ms)


# ---------------------------------------------------------------------------
# user
# ---------------------------------------------------------------------------


@user_app.command("show")
def user_show(user_id: str = typer.Argument(..., help="User identifier.")) -> None:
    """Show a user's limits, window counters and unbilled usage."""
    record = _run(lambda runtime: runtime.ledger.get(user_id))
    if record is None:
        console.print(f"[yellow]No quota record for user '{user_id}'.[/yellow]")
        raise typer.Exit(code=1)

    if _json_output:
        _write_json({"user_id": user_id, "record": record.model_dump(mode="json")})
    else:
        display_user_record(console, user_id, record)


@user_app.command("remaining")
def user_remaining(
    user_id: str = typer.Argument(..., help="User identifier."),
    model: str = typer.Argument(..., help="Metered resource identifier, e.g. gpt-4."),
) -> None:
    """Show the capacity a user has left for one resource."""
    record = _run(lambda runtime: runtime.ledger.get(user_id))
    if record is None:
        console.print(f"[yellow]No quota record for user '{user_id}'.[/yellow]")
        raise typer.Exit(code=1)

    value = remaining(record, model)
    if _json_output:
        _write_json({"user_id": user_id, "model": model, "remaining": value})
    else:
        display_remaining(console, user_id, model, value)


# ---------------------------------------------------------------------------
# runs
# ---------------------------------------------------------------------------


@runs_app.command("track")
def runs_track(
    user_id: str = typer.Argument(..., help="User the run belongs to."),
    thread_id: str = typer.Argument(..., help="Assistant thread identifier."),
    run_id: str = typer.Argument(..., help="Assistant run identifier."),
    provisional_cost: int = typer.Option(0, "--provisional-cost", min=0, help="Input cost charged at admission."),
) -> None:
    """Track a dispatched run until its final cost is reconciled."""
    try:
        key = _run(lambda runtime: runtime.tracker.enqueue(user_id, thread_id, run_id, provisional_cost))
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=2) from exc

    if _json_output:
        _write_json({"key": key})
    else:
        console.print(f"[green]✓[/green] Tracking run {run_id} ({key})")


@runs_app.command("list")
def runs_list() -> None:
    """List the runs awaiting reconciliation."""
    runs = _run(lambda runtime: runtime.tracker.pending())
    if _json_output:
        _write_json([r.model_dump() for r in runs])
        return
    if not runs:
        console.print("[dim]No pending runs.[/dim]")
        return
    for run in runs:
        console.print(f"{run.user_id}  {run.thread_id}  {run.run_id}  provisional={run.provisional_cost}")


# ---------------------------------------------------------------------------
# serve
# ---------------------------------------------------------------------------


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind."),
    port: int = typer.Option(8000, "--port", help="Port to listen on."),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes."),
) -> None:
    """Serve the HTTP API (and, unless disabled, the job scheduler)."""
    import uvicorn

    console.print(f"[green]✓[/green] API server starting on http://{host}:{port}")
    console.print(f"[green]✓[/green] OpenAPI docs at http://{host}:{port}/docs")
    uvicorn.run("api.main:app", host=host, port=port, reload=reload, log_level="info", access_log=False)
