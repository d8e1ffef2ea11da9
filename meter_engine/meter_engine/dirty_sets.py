"""Durable dirty-set registries.

A dirty set records which users (or tracked runs) need attention on the
next periodic sweep so jobs never scan the whole user population.  Each
set is stored as one JSON list under a well-known key.  Adds are
idempotent and insertion order is irrelevant.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any

from meter_engine.state.store import UNCHANGED, QuotaStore, compare_and_swap

logger = logging.getLogger(__name__)

# Users active since the last billing flush (minute reset + billing flush).
ACTIVE_MINUTE = "__usage"
# Users active since the last day reset.
ACTIVE_DAY = "__usage_daily"
# Composite keys of runs awaiting cost reconciliation.
PENDING_RUNS = "__tracked_runs"


class DirtySetIndex:
    """Set-valued registries persisted in the quota store.

    Parameters
    ----------
    store:
        The quota store holding the sets.
    max_attempts:
        Compare-and-swap attempts per write before giving up.
    """

    def __init__(self, store: QuotaStore, max_attempts: int = 5) -> None:
        self._store = store
        self._max_attempts = max_attempts

    async def add(self, name: str, *members: str) -> None:
        """Insert *members* into set *name* (no-op for existing members)."""
        if not members:
            return

        def _add(current: Any | None) -> Any:
            existing = list(current or [])
            missing = [m for m in dict.fromkeys(members) if m not in existing]
            if not missing:
                return UNCHANGED
            return existing + missing

        await compare_and_swap(self._store, name, _add, max_attempts=self._max_attempts)

    async def add_keyed(self, name: str, member: str, key_of: Callable[[str], str]) -> str:
        """Insert *member* unless a member with the same ``key_of`` is present.

        Returns the member the set holds for that key afterwards.
        """
        wanted = key_of(member)
        held = member

        def _add(current: Any | None) -> Any:
            nonlocal held
            existing = list(current or [])
            for candidate in existing:
                if key_of(candidate) == wanted:
                    held = candidate
                    return UNCHANGED
            held = member
            return existing + [member]

        await compare_and_swap(self._store, name, _add, max_attempts=self._max_attempts)
        return held

    async def restore(
        self,
        name: str,
        members: Iterable[str],
        *,
        key_of: Callable[[str], str],
        retired: Iterable[str] = (),
    ) -> None:
        """Merge drained *members* back into set *name*.

        A returning member replaces any member with the same key added
        meanwhile.  Keys of *retired* members are removed from both sides.
        """
        retired_keys = {key_of(m) for m in retired}
        returning = {key_of(m): m for m in members if key_of(m) not in retired_keys}
        if not returning and not retired_keys:
            return

        def _restore(current: Any | None) -> Any:
            existing = list(current or [])
            kept = [m for m in existing if key_of(m) not in retired_keys and key_of(m) not in returning]
            merged = kept + list(returning.values())
            return UNCHANGED if merged == existing else merged

        await compare_and_swap(self._store, name, _restore, max_attempts=self._max_attempts)

    async def members(self, name: str) -> list[str]:
        return list(await self._store.get(name) or [])

    async def discard(self, name: str, members: Iterable[str]) -> None:
        """Remove exactly *members*, keeping anything inserted since they were read."""
        to_remove = set(members)
        if not to_remove:
            return

        def _discard(current: Any | None) -> Any:
            if not current:
                return UNCHANGED
            remaining = [m for m in current if m not in to_remove]
            if len(remaining) == len(current):
                return UNCHANGED
            return remaining

        await compare_and_swap(self._store, name, _discard, max_attempts=self._max_attempts)

    async def drain(self, name: str) -> list[str]:
        """Read and clear set *name* in one store transaction."""
        return list(await self._store.take(name) or [])

    async def clear(self, name: str) -> None:
        await self._store.delete(name)
