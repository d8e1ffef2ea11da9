"""Pending asynchronous runs awaiting cost reconciliation."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field

_KEY_SEPARATOR = "|"


class RunOutcome(str, Enum):
    """Result of polling one tracked run during a sweep."""

    RECONCILED = "RECONCILED"
    STILL_PENDING = "STILL_PENDING"
    ERRORED = "ERRORED"
    EXPIRED = "EXPIRED"
    DROPPED = "DROPPED"


class PendingRun(BaseModel):
    """An external run whose final cost is unknown until it completes.

    Serialised into the pending-run dirty set as the composite key
    ``user_id|thread_id|run_id|provisional_cost``.
    """

    user_id: str = Field(..., min_length=1)
    thread_id: str = Field(..., min_length=1)
    run_id: str = Field(..., min_length=1)
    provisional_cost: int = 0

    @property
    def identity(self) -> str:
        """``user_id|thread_id|run_id``: the run itself, whatever its provisional cost."""
        for part in (self.user_id, self.thread_id, self.run_id):
            if _KEY_SEPARATOR in part:
                raise ValueError(f"Identifier must not contain {_KEY_SEPARATOR!r}: {part!r}")
        return _KEY_SEPARATOR.join((self.user_id, self.thread_id, self.run_id))

    def to_key(self) -> str:
        return f"{self.identity}{_KEY_SEPARATOR}{self.provisional_cost}"

    @classmethod
    def from_key(cls, key: str) -> PendingRun:
        parts = key.split(_KEY_SEPARATOR)
        if len(parts) != 4:
            raise ValueError(f"Malformed pending-run key: {key!r}")
        user_id, thread_id, run_id, cost = parts
        return cls(
            user_id=user_id,
            thread_id=thread_id,
            run_id=run_id,
            provisional_cost=int(cost) if cost else 0,
        )


def run_identity(key: str) -> str:
    """Strip the provisional cost from a composite key.

    Malformed keys are their own identity.
    """
    if key.count(_KEY_SEPARATOR) != 3:
        return key
    return key.rsplit(_KEY_SEPARATOR, 1)[0]
