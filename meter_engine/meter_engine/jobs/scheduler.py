"""Background scheduler for the periodic metering jobs.

Runs as an ``asyncio`` background task that wakes at the top of every
minute and starts the jobs whose cron cadence is due.  Supports the small
cron subset the jobs need without requiring a full cron parser dependency.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Cron expression helpers
# ---------------------------------------------------------------------------

_EVERY_MINUTE_RE = re.compile(r"^\*\s+\*\s+\*\s+\*\s+\*$")
_EVERY_N_MINUTES_RE = re.compile(r"^\*/(\d{1,2})\s+\*\s+\*\s+\*\s+\*$")
_HOURLY_RE = re.compile(r"^(\d{1,2})\s+\*\s+\*\s+\*\s+\*$")
_DAILY_RE = re.compile(r"^(\d{1,2})\s+(\d{1,2})\s+\*\s+\*\s+\*$")


def compute_next_run(cron_expression: str, from_time: datetime) -> datetime:
    """Compute the next run time from a cron expression.

    Supports a practical subset of cron syntax:

    * ``* * * * *`` -- run every minute.
    * ``*/N * * * *`` -- run every minute divisible by *N*.
    * ``M * * * *`` -- run every hour at minute *M*.
    * ``M H * * *`` -- run daily at hour *H*, minute *M*.

    Parameters
    ----------
    cron_expression:
        Five-field cron string (minute, hour, day-of-month, month, day-of-week).
    from_time:
        The reference time to compute the *next* run after.

    Returns
    -------
    datetime
        The next execution time, strictly after *from_time*.

    Raises
    ------
    ValueError
        If the cron expression does not match any supported pattern.
    """
    expr = cron_expression.strip()
    next_minute = from_time.replace(second=0, microsecond=0) + timedelta(minutes=1)

    if _EVERY_MINUTE_RE.match(expr):
        return next_minute

    match = _EVERY_N_MINUTES_RE.match(expr)
    if match:
        step = int(match.group(1))
        if not 1 <= step <= 59:
            raise ValueError(f"Invalid minute step in cron expression: '{cron_expression}'")
        candidate = next_minute
        while candidate.minute % step:
            candidate += timedelta(minutes=1)
        return candidate

    match = _HOURLY_RE.match(expr)
    if match:
        minute = _bounded(int(match.group(1)), 59, cron_expression)
        candidate = from_time.replace(minute=minute, second=0, microsecond=0)
        if candidate <= from_time:
            candidate += timedelta(hours=1)
        return candidate

    match = _DAILY_RE.match(expr)
    if match:
        minute = _bounded(int(match.group(1)), 59, cron_expression)
        hour = _bounded(int(match.group(2)), 23, cron_expression)
        candidate = from_time.replace(hour=hour, minute=minute, second=0, microsecond=0)
        if candidate <= from_time:
            candidate += timedelta(days=1)
        return candidate

    raise ValueError(
        f"Unsupported cron expression: '{cron_expression}'. "
        f"Supported patterns: '* * * * *', '*/N * * * *', "
        f"'M * * * *' (hourly), 'M H * * *' (daily)."
    )


def _bounded(value: int, upper: int, cron_expression: str) -> int:
    if value > upper:
        raise ValueError(f"Field out of range in cron expression: '{cron_expression}'")
    return value


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


@dataclass
class ScheduledJob:
    """A named periodic job and its cron cadence."""

    name: str
    cron: str
    run: Callable[[], Awaitable[Any]]


class JobScheduler:
    """AsyncIO background task dispatching the periodic metering jobs.

    Jobs due on the same tick run one after another in registration order.
    A job that is still running when its next tick comes due is skipped
    for that tick.

    Parameters
    ----------
    jobs:
        The jobs to schedule, in execution order.
    """

    def __init__(self, jobs: Sequence[ScheduledJob]) -> None:
        # Fail fast on unsupported cadences.
        for job in jobs:
            compute_next_run(job.cron, datetime.now(UTC))
        self._jobs = {job.name: job for job in jobs}
        self._next_runs: dict[str, datetime] = {}
        self._in_flight: set[str] = set()
        self._batches: set[asyncio.Task[None]] = set()
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        """Whether the scheduler loop is active."""
        return self._running

    @property
    def jobs(self) -> list[ScheduledJob]:
        return list(self._jobs.values())

    def next_run(self, name: str) -> datetime | None:
        return self._next_runs.get(name)

    async def start(self) -> None:
        """Start the scheduler background task."""
        if self._running:
            logger.warning("JobScheduler already running; ignoring start()")
            return
        self._running = True
        now = datetime.now(UTC)
        self._next_runs = {name: compute_next_run(job.cron, now) for name, job in self._jobs.items()}
        self._task = asyncio.create_task(self._run_loop())
        logger.info("JobScheduler started with jobs=%s", ",".join(self._jobs))

    async def stop(self) -> None:
        """Stop the scheduler gracefully, cancelling jobs still in flight."""
        self._running = False
        for task in [self._task, *self._batches]:
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._batches.clear()
        logger.info("JobScheduler stopped")

    async def run_job(self, name: str) -> Any:
        """Run one job immediately, outside the schedule.

        Unlike scheduled runs, failures propagate to the caller.

        Raises
        ------
        KeyError
            If no job is registered under *name*.
        """
        job = self._jobs[name]
        started = time.monotonic()
        result = await job.run()
        logger.info("Cron of %s done in %d ms", name, (time.monotonic() - started) * 1000)
        return result

    async def tick(self, now: datetime) -> asyncio.Task[None] | None:
        """Start every job due at *now*.  Returns the batch task, if any."""
        due: list[ScheduledJob] = []
        for name, job in self._jobs.items():
            next_run = self._next_runs.get(name)
            if next_run is None:
                next_run = self._next_runs[name] = compute_next_run(job.cron, now)
            if next_run > now:
                continue
            self._next_runs[name] = compute_next_run(job.cron, now)
            if name in self._in_flight:
                logger.warning("Skipping %s: previous run still in flight", name)
                continue
            due.append(job)

        if not due:
            return None
        self._in_flight.update(job.name for job in due)
        task = asyncio.create_task(self._run_batch(due))
        self._batches.add(task)
        task.add_done_callback(self._batches.discard)
        return task

    async def _run_loop(self) -> None:
        """Main scheduler loop -- wakes at the top of every minute."""
        while self._running:
            now = datetime.now(UTC)
            await asyncio.sleep((compute_next_run("* * * * *", now) - now).total_seconds())
            await self.tick(datetime.now(UTC))

    async def _run_batch(self, jobs: Sequence[ScheduledJob]) -> None:
        try:
            for job in jobs:
                await self._run_guarded(job)
                self._in_flight.discard(job.name)
        finally:
            self._in_flight.difference_update(job.name for job in jobs)

    async def _run_guarded(self, job: ScheduledJob) -> None:
        started = time.monotonic()
        try:
            await job.run()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.error(
                "Cron of %s failed after %d ms",
                job.name,
                (time.monotonic() - started) * 1000,
                exc_info=True,
                extra={"job": job.name},
            )
            return
        logger.info("Cron of %s done in %d ms", job.name, (time.monotonic() - started) * 1000)
