"""Periodic jobs: window resets, run reconciliation and billing flush."""

from meter_engine.jobs.billing import BillingReconciler, FlushReport
from meter_engine.jobs.pending_runs import PendingRunTracker, SweepReport
from meter_engine.jobs.scheduler import JobScheduler, ScheduledJob, compute_next_run
from meter_engine.jobs.window_reset import WindowResetter

__all__ = [
    "BillingReconciler",
    "FlushReport",
    "JobScheduler",
    "PendingRunTracker",
    "ScheduledJob",
    "SweepReport",
    "WindowResetter",
    "compute_next_run",
]
