"""Usage stream: records of metered actions and the sinks they go to."""

from meter_engine.metering.events import UsageAction, UsageRecord
from meter_engine.metering.sinks import BigQueryUsageSink, FileUsageSink, UsageSink, build_usage_sink

__all__ = [
    "BigQueryUsageSink",
    "FileUsageSink",
    "UsageAction",
    "UsageRecord",
    "UsageSink",
    "build_usage_sink",
]
