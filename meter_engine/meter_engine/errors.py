"""Exception hierarchy for the metering engine.

Request-path failures surface to the caller (``QuotaExceeded``,
``StoreUnavailable``).  Periodic jobs catch failures per unit of work and
retry on the next tick (``ExternalPollError``, ``ReconciliationSkipped``).
"""

from __future__ import annotations


class MeteringError(Exception):
    """Base class for all metering engine errors."""


class QuotaExceeded(MeteringError):
    """Admission was denied for a metered operation."""

    def __init__(self, user_id: str, model: str, remaining: int | None, reason: str = "quota_exceeded") -> None:
        self.user_id = user_id
        self.model = model
        self.remaining = remaining
        self.reason = reason
        super().__init__(f"Quota exceeded for user {user_id!r} on {model!r} ({reason})")


class StoreUnavailable(MeteringError):
    """The quota store could not complete a read or write."""


class ExternalPollError(MeteringError):
    """Polling the external run-status service failed.

    Transient by definition: the tracked run is always requeued.
    """

    def __init__(self, thread_id: str, run_id: str, message: str) -> None:
        self.thread_id = thread_id
        self.run_id = run_id
        super().__init__(f"Polling run {run_id} on thread {thread_id} failed: {message}")


class ReconciliationSkipped(MeteringError):
    """No subscription item matches a model with pending billable usage.

    Not an error condition: the usage delta is left untouched and picked up
    on the next billing cycle.
    """

    def __init__(self, user_id: str, model: str) -> None:
        self.user_id = user_id
        self.model = model
        super().__init__(f"No subscription item for model {model!r} (user {user_id!r})")
