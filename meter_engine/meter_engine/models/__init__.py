"""Domain models for the metering engine."""

from meter_engine.models.catalog import (
    CATALOG,
    WINDOWS,
    MeteredResource,
    ResourceKind,
    Window,
    WindowLimit,
    get_resource,
)
from meter_engine.models.pending_run import PendingRun, RunOutcome
from meter_engine.models.user_record import (
    UserRecord,
    WindowUsage,
    default_record_data,
    merge_defaults,
    record_from_stored,
    record_to_stored,
)

__all__ = [
    "CATALOG",
    "MeteredResource",
    "PendingRun",
    "ResourceKind",
    "RunOutcome",
    "UserRecord",
    "WINDOWS",
    "Window",
    "WindowLimit",
    "WindowUsage",
    "default_record_data",
    "get_resource",
    "merge_defaults",
    "record_from_stored",
    "record_to_stored",
]
