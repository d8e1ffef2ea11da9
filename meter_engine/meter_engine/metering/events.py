"""Usage records emitted for analytics.

A usage record describes one metered action (a completed assistant run,
a generated reply).  Records are append-only and never read back by the
engine; they feed the analytics warehouse.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class UsageAction(str, Enum):
    """Actions recorded in the usage stream."""

    ASSISTANT_MESSAGE_CREATION = "assistant_message_creation_by_assistant"


def _now_ms() -> int:
    return int(time.time() * 1000)


class UsageRecord(BaseModel):
    """A single row of the usage stream.

    Attributes
    ----------
    user_id:
        The user the usage belongs to.
    billing_id:
        The user's billing customer reference at the time of the action.
    action:
        What happened.
    timestamp:
        Milliseconds since the epoch.
    model:
        The metered resource identifier.
    count:
        Units consumed (characters or images).
    extra:
        Free-form context such as thread and run identifiers.
    """

    user_id: str
    billing_id: str | None = None
    action: UsageAction
    timestamp: int = Field(default_factory=_now_ms)
    model: str
    count: int = 0
    extra: dict[str, Any] = Field(default_factory=dict)
