"""Clients for the external services the periodic jobs talk to."""

from meter_engine.clients.billing import BillingClient, StripeBillingClient, SubscriptionItem
from meter_engine.clients.run_status import (
    OpenAIRunStatusClient,
    RunStatus,
    RunStatusClient,
    RunStep,
    content_length,
)

__all__ = [
    "BillingClient",
    "OpenAIRunStatusClient",
    "RunStatus",
    "RunStatusClient",
    "RunStep",
    "StripeBillingClient",
    "SubscriptionItem",
    "content_length",
]
