"""Pending-run tracking and cost reconciliation.

Asynchronous assistant runs are admitted with a provisional charge for the
user's input only.  The generated output is unknown until the run
completes, so the run is tracked in ``__tracked_runs`` and a periodic sweep
polls each one.  Completed runs are measured, recorded in the usage stream
and charged; anything else goes back into the set for the next sweep.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from meter_engine.clients.run_status import RunStatus, RunStatusClient, content_length
from meter_engine.dirty_sets import PENDING_RUNS, DirtySetIndex
from meter_engine.errors import ExternalPollError
from meter_engine.ledger import UsageLedger
from meter_engine.metering.events import UsageAction, UsageRecord
from meter_engine.metering.sinks import UsageSink
from meter_engine.models.pending_run import PendingRun, RunOutcome, run_identity
from meter_engine.state.store import UNCHANGED, QuotaStore, compare_and_swap

logger = logging.getLogger(__name__)

# Composite key -> ISO timestamp of the first time the run was tracked.
PENDING_RUNS_SEEN = "__tracked_runs_seen"


@dataclass
class SweepReport:
    """Outcome counts of one pending-run sweep."""

    reconciled: int = 0
    requeued: int = 0
    errored: int = 0
    expired: int = 0
    dropped: int = 0

    def count(self, outcome: RunOutcome) -> None:
        if outcome == RunOutcome.RECONCILED:
            self.reconciled += 1
        elif outcome == RunOutcome.STILL_PENDING:
            self.requeued += 1
        elif outcome == RunOutcome.ERRORED:
            self.errored += 1
            self.requeued += 1
        elif outcome == RunOutcome.EXPIRED:
            self.expired += 1
        else:
            self.dropped += 1


def _utcnow() -> datetime:
    return datetime.now(UTC)


class PendingRunTracker:
    """Tracks asynchronous runs until their final cost is charged.

    Parameters
    ----------
    ledger:
        Ledger receiving the final charge.
    dirty_sets:
        Index holding the pending-run set.
    store:
        Quota store holding the first-seen map (only used with a max age).
    run_client:
        Collaborator polling run status.
    usage_sink:
        Destination for the usage record of each reconciled run.
    attachment_unit_cost:
        Characters charged per non-text content part.
    max_age_seconds:
        Drop runs that have not completed after this many seconds.  ``None``
        keeps them forever.
    clock:
        Returns the current UTC time; overridable for tests.
    """

    def __init__(
        self,
        ledger: UsageLedger,
        dirty_sets: DirtySetIndex,
        store: QuotaStore,
        run_client: RunStatusClient,
        usage_sink: UsageSink,
        *,
        attachment_unit_cost: int = 1000,
        max_age_seconds: int | None = None,
        max_attempts: int = 5,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._ledger = ledger
        self._dirty_sets = dirty_sets
        self._store = store
        self._run_client = run_client
        self._usage_sink = usage_sink
        self._attachment_unit_cost = attachment_unit_cost
        self._max_age_seconds = max_age_seconds
        self._max_attempts = max_attempts
        self._clock = clock

    async def enqueue(self, user_id: str, thread_id: str, run_id: str, provisional_cost: int = 0) -> str:
        """Start tracking a run and return its key.

        A run already tracked under the same user, thread and run id keeps
        its existing entry (and provisional cost); that key is returned.
        """
        if provisional_cost < 0:
            raise ValueError("provisional_cost must be >= 0")
        key = PendingRun(
            user_id=user_id,
            thread_id=thread_id,
            run_id=run_id,
            provisional_cost=provisional_cost,
        ).to_key()
        tracked = await self._dirty_sets.add_keyed(PENDING_RUNS, key, run_identity)
        if tracked != key:
            logger.info("Run %s on thread %s already tracked as %s", run_id, thread_id, tracked)
        if self._max_age_seconds is not None:
            await self._update_seen(add=[tracked], remove=[])
        logger.debug("Tracking run %s on thread %s for user=%s", run_id, thread_id, user_id)
        return tracked

    async def pending(self) -> list[PendingRun]:
        """Return the runs currently awaiting reconciliation."""
        runs = []
        for key in await self._dirty_sets.members(PENDING_RUNS):
            try:
                runs.append(PendingRun.from_key(key))
            except ValueError:
                logger.warning("Ignoring malformed pending-run key %r", key)
        return runs

    async def sweep(self) -> SweepReport:
        """Poll every tracked run once and reconcile the completed ones.

        The set is drained up front.  Whatever is not reconciled, expired or
        dropped is merged back afterwards, even when the sweep is aborted,
        together with anything enqueued meanwhile.
        """
        seen = await self._load_seen()
        keys = await self._dirty_sets.drain(PENDING_RUNS)
        report = SweepReport()
        if not keys:
            return report

        now = self._clock()
        requeue: list[str] = []
        finished: list[str] = []
        try:
            for key in keys:
                outcome = await self._process(key, seen, now)
                report.count(outcome)
                if outcome in (RunOutcome.STILL_PENDING, RunOutcome.ERRORED):
                    requeue.append(key)
                else:
                    finished.append(key)
        finally:
            done = set(requeue) | set(finished)
            requeue.extend(key for key in keys if key not in done)
            await self._requeue(requeue, finished)

        if self._max_age_seconds is not None:
            await self._update_seen(add=requeue, remove=finished)

        logger.info(
            "Run sweep: reconciled=%d requeued=%d errored=%d expired=%d dropped=%d",
            report.reconciled,
            report.requeued,
            report.errored,
            report.expired,
            report.dropped,
        )
        return report

    async def _requeue(self, requeue: list[str], finished: list[str]) -> None:
        # A run finished in this sweep and enqueued again meanwhile must not be charged twice.
        try:
            await self._dirty_sets.restore(PENDING_RUNS, requeue, key_of=run_identity, retired=finished)
        except Exception:
            logger.error(
                "Could not requeue %d pending runs: %s",
                len(requeue),
                ",".join(requeue),
                exc_info=True,
                extra={"job": "run_sweep"},
            )
            raise

    async def _process(self, key: str, seen: dict[str, str], now: datetime) -> RunOutcome:
        try:
            run = PendingRun.from_key(key)
        except ValueError:
            logger.error("Dropping malformed pending-run key %r", key, extra={"job": "run_sweep"})
            return RunOutcome.DROPPED

        context = {"job": "run_sweep", "user_id": run.user_id, "run_id": run.run_id}
        try:
            record = await self._ledger.get(run.user_id)
            if record is None:
                logger.warning("Dropping run %s of unknown user=%s", run.run_id, run.user_id, extra=context)
                return RunOutcome.DROPPED

            status = await self._run_client.retrieve_run(run.thread_id, run.run_id)
            if status.completed:
                await self._reconcile(run, status, record.billing_id)
                return RunOutcome.RECONCILED
            outcome = RunOutcome.STILL_PENDING
        except ExternalPollError as exc:
            logger.warning("Polling run %s failed: %s", run.run_id, exc, extra=context)
            outcome = RunOutcome.ERRORED
        except Exception:
            logger.error("Reconciling run %s failed", run.run_id, exc_info=True, extra=context)
            outcome = RunOutcome.ERRORED

        if self._is_expired(key, seen, now):
            logger.error(
                "Dropping run %s of user=%s: not completed after %ds",
                run.run_id,
                run.user_id,
                self._max_age_seconds,
                extra=context,
            )
            return RunOutcome.EXPIRED
        return outcome

    async def _reconcile(self, run: PendingRun, status: RunStatus, billing_id: str | None) -> None:
        actual = await self._measure(run)
        await self._ledger.increment(run.user_id, status.model, actual + run.provisional_cost)
        await self._usage_sink.append(
            [
                UsageRecord(
                    user_id=run.user_id,
                    billing_id=billing_id,
                    action=UsageAction.ASSISTANT_MESSAGE_CREATION,
                    model=status.model,
                    count=actual,
                    extra={"thread_id": status.thread_id, "run_id": status.id},
                )
            ]
        )
        logger.info(
            "Reconciled run %s user=%s model=%s actual=%d provisional=%d",
            run.run_id,
            run.user_id,
            status.model,
            actual,
            run.provisional_cost,
        )

    async def _measure(self, run: PendingRun) -> int:
        """Sum the content length of every message the run created."""
        total = 0
        for step in await self._run_client.list_steps(run.thread_id, run.run_id):
            if step.type != "message_creation" or not step.message_id:
                continue
            content = await self._run_client.retrieve_message(run.thread_id, step.message_id)
            total += content_length(content, self._attachment_unit_cost)
        return total

    def _is_expired(self, key: str, seen: dict[str, str], now: datetime) -> bool:
        if self._max_age_seconds is None:
            return False
        first_seen = seen.get(key)
        if first_seen is None:
            return False
        age = (now - datetime.fromisoformat(first_seen)).total_seconds()
        return age > self._max_age_seconds

    async def _load_seen(self) -> dict[str, str]:
        if self._max_age_seconds is None:
            return {}
        return dict(await self._store.get(PENDING_RUNS_SEEN) or {})

    async def _update_seen(self, *, add: list[str], remove: list[str]) -> None:
        stamp = self._clock().isoformat()

        def _apply(current: Any | None) -> Any:
            seen = dict(current or {})
            before = dict(seen)
            for key in remove:
                seen.pop(key, None)
            for key in add:
                seen.setdefault(key, stamp)
            return UNCHANGED if seen == before else seen

        await compare_and_swap(self._store, PENDING_RUNS_SEEN, _apply, max_attempts=self._max_attempts)
