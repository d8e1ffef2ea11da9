"""meterbridge metering engine: quotas, usage ledger and billing reconciliation."""

__version__ = "0.1.0"
