"""Wiring of the metering components from :class:`Settings`.

Both the API service and the CLI build the same object graph: one quota
store, the ledger and admission controller on top of it, the three
periodic jobs and the scheduler driving them.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine

from meter_engine.admission import AdmissionController
from meter_engine.clients.billing import BillingClient, StripeBillingClient
from meter_engine.clients.run_status import OpenAIRunStatusClient, RunStatusClient
from meter_engine.config import PlatformEnv, Settings
from meter_engine.dirty_sets import DirtySetIndex
from meter_engine.jobs.billing import BillingReconciler
from meter_engine.jobs.pending_runs import PendingRunTracker
from meter_engine.jobs.scheduler import JobScheduler, ScheduledJob
from meter_engine.jobs.window_reset import WindowResetter
from meter_engine.ledger import UsageLedger
from meter_engine.metering.sinks import UsageSink, build_usage_sink
from meter_engine.state.database import get_engine, get_session_factory
from meter_engine.state.sqlite_adapter import create_local_tables
from meter_engine.state.store import QuotaStore, SQLQuotaStore

logger = logging.getLogger(__name__)

JOB_NAMES = ("minute_reset", "day_reset", "run_sweep", "billing_flush")


def job_crons(settings: Settings) -> dict[str, str]:
    """Return the configured cron cadence of every job, in execution order."""
    return {
        "minute_reset": settings.minute_reset_cron,
        "day_reset": settings.day_reset_cron,
        "run_sweep": settings.run_sweep_cron,
        "billing_flush": settings.billing_flush_cron,
    }


@dataclass
class MeterRuntime:
    """The assembled metering components."""

    settings: Settings
    store: QuotaStore
    dirty_sets: DirtySetIndex
    ledger: UsageLedger
    admission: AdmissionController
    tracker: PendingRunTracker
    resetter: WindowResetter
    reconciler: BillingReconciler
    scheduler: JobScheduler
    engine: AsyncEngine | None = None
    _closers: list[Callable[[], Awaitable[Any]]] = field(default_factory=list)

    async def close(self) -> None:
        """Stop the scheduler and release HTTP clients and the engine pool."""
        if self.scheduler.running:
            await self.scheduler.stop()
        for close in self._closers:
            await close()
        if self.engine is not None:
            await self.engine.dispose()
            self.engine = None


async def open_store(settings: Settings) -> tuple[SQLQuotaStore, AsyncEngine]:
    """Create the engine for ``settings.database_url`` and its quota store.

    Tables are created automatically in dev or local SQLite mode;
    other environments are expected to be migrated ahead of time.
    """
    engine = get_engine(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    is_local = settings.database_url.startswith("sqlite")
    if settings.env == PlatformEnv.DEV or is_local:
        await create_local_tables(engine)
    return SQLQuotaStore(get_session_factory(engine)), engine


def build_runtime(
    settings: Settings,
    store: QuotaStore,
    *,
    run_client: RunStatusClient | None = None,
    billing_client: BillingClient | None = None,
    usage_sink: UsageSink | None = None,
    engine: AsyncEngine | None = None,
) -> MeterRuntime:
    """Assemble the components around *store*.

    Collaborators not passed in are built from *settings*.
    """
    closers: list[Callable[[], Awaitable[Any]]] = []
    if run_client is None:
        openai_client = OpenAIRunStatusClient(
            settings.openai_api_key.get_secret_value(),
            base_url=settings.openai_base_url,
            timeout=settings.openai_timeout,
        )
        closers.append(openai_client.close)
        run_client = openai_client
    if billing_client is None:
        billing_client = StripeBillingClient(
            settings.stripe_secret_key.get_secret_value(),
            lookup_key_separator=settings.lookup_key_separator,
        )
    if usage_sink is None:
        usage_sink = build_usage_sink(settings)
        sink_close = getattr(usage_sink, "close", None)
        if sink_close is not None:
            closers.append(sink_close)

    attempts = settings.cas_max_attempts
    dirty_sets = DirtySetIndex(store, max_attempts=attempts)
    ledger = UsageLedger(store, dirty_sets, max_attempts=attempts)
    admission = AdmissionController(
        ledger,
        reject_over_remaining=settings.reject_precharge_over_remaining,
        revert_precharge_on_failure=settings.revert_precharge_on_failure,
    )
    tracker = PendingRunTracker(
        ledger,
        dirty_sets,
        store,
        run_client,
        usage_sink,
        attachment_unit_cost=settings.attachment_unit_cost,
        max_age_seconds=settings.pending_run_max_age_seconds,
        max_attempts=attempts,
    )
    resetter = WindowResetter(ledger, dirty_sets)
    reconciler = BillingReconciler(
        ledger,
        dirty_sets,
        billing_client,
        billing_unit=settings.billing_unit,
        exempt_billing_ids=settings.billing_exempt_ids,
    )
    runners = {
        "minute_reset": resetter.reset_minute,
        "day_reset": resetter.reset_day,
        "run_sweep": tracker.sweep,
        "billing_flush": reconciler.flush,
    }
    # Same-tick jobs run in this order: minute reset before billing flush.
    scheduler = JobScheduler([ScheduledJob(name, cron, runners[name]) for name, cron in job_crons(settings).items()])
    return MeterRuntime(
        settings=settings,
        store=store,
        dirty_sets=dirty_sets,
        ledger=ledger,
        admission=admission,
        tracker=tracker,
        resetter=resetter,
        reconciler=reconciler,
        scheduler=scheduler,
        engine=engine,
        _closers=closers,
    )


async def create_runtime(settings: Settings, **collaborators: Any) -> MeterRuntime:
    """Open the configured store and assemble the components around it."""
    store, engine = await open_store(settings)
    logger.info(
        "Quota store ready (%s)",
        "local SQLite" if settings.database_url.startswith("sqlite") else "postgres",
    )
    return build_runtime(settings, store, engine=engine, **collaborators)
