"""Quota store: durable JSON values addressed by key.

Two backends share the :class:`QuotaStore` protocol:

* :class:`SQLQuotaStore` -- the ``kv_entries`` table through SQLAlchemy
  (PostgreSQL in production, SQLite via aiosqlite locally).
* :class:`MemoryQuotaStore` -- process-local, for single-process dev runs
  and tests.

Every write bumps a per-key version.  :meth:`QuotaStore.compare_and_put`
only writes when the caller's version is still current, which lets the
ledger and the dirty-set index retry read-modify-write cycles instead of
silently overwriting a concurrent update.  A version of ``0`` means the
key does not exist.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from typing import Any, Protocol

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from meter_engine.errors import StoreUnavailable
from meter_engine.state.tables import KVEntryTable

logger = logging.getLogger(__name__)


class QuotaStore(Protocol):
    """Protocol for durable per-key JSON storage."""

    async def get(self, key: str) -> Any | None: ...

    async def get_versioned(self, key: str) -> tuple[Any | None, int]: ...

    async def put(self, key: str, value: Any) -> None: ...

    async def compare_and_put(self, key: str, value: Any, expected_version: int) -> bool: ...

    async def delete(self, key: str) -> None: ...

    async def take(self, key: str) -> Any | None:
        """Read and delete *key* in one transaction."""
        ...


class SQLQuotaStore:
    """Quota store backed by the ``kv_entries`` table.

    Each method runs in its own short transaction.  Any
    :class:`~sqlalchemy.exc.SQLAlchemyError` is re-raised as
    :class:`~meter_engine.errors.StoreUnavailable`.

    Parameters
    ----------
    session_factory:
        Async session factory bound to the store's engine.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, key: str) -> Any | None:
        value, _ = await self.get_versioned(key)
        return value

    async def get_versioned(self, key: str) -> tuple[Any | None, int]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(KVEntryTable.value, KVEntryTable.version).where(KVEntryTable.key == key)
                )
                row = result.one_or_none()
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Failed to read {key!r}") from exc
        if row is None:
            return None, 0
        return row[0], row[1]

    async def put(self, key: str, value: Any) -> None:
        try:
            async with self._session_factory() as session, session.begin():
                result = await session.execute(
                    update(KVEntryTable)
                    .where(KVEntryTable.key == key)
                    .values(value=value, version=KVEntryTable.version + 1)
                )
                if result.rowcount == 0:  # type: ignore[attr-defined]
                    session.add(KVEntryTable(key=key, value=value, version=1))
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Failed to write {key!r}") from exc

    async def compare_and_put(self, key: str, value: Any, expected_version: int) -> bool:
        try:
            async with self._session_factory() as session, session.begin():
                if expected_version == 0:
                    session.add(KVEntryTable(key=key, value=value, version=1))
                    await session.flush()
                    return True
                result = await session.execute(
                    update(KVEntryTable)
                    .where(KVEntryTable.key == key, KVEntryTable.version == expected_version)
                    .values(value=value, version=expected_version + 1)
                )
                return result.rowcount == 1  # type: ignore[attr-defined]
        except IntegrityError:
            # Another writer created the key first.
            return False
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Failed to write {key!r}") from exc

    async def delete(self, key: str) -> None:
        try:
            async with self._session_factory() as session, session.begin():
                await session.execute(delete(KVEntryTable).where(KVEntryTable.key == key))
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Failed to delete {key!r}") from exc

    async def take(self, key: str) -> Any | None:
        try:
            async with self._session_factory() as session, session.begin():
                result = await session.execute(select(KVEntryTable.value).where(KVEntryTable.key == key))
                value = result.scalar_one_or_none()
                if value is not None:
                    await session.execute(delete(KVEntryTable).where(KVEntryTable.key == key))
                return value
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Failed to drain {key!r}") from exc


class MemoryQuotaStore:
    """Process-local quota store.

    Values are deep-copied on the way in and out so callers can never
    mutate stored state without writing it back.
    """

    def __init__(self) -> None:
        self._data: dict[str, tuple[Any, int]] = {}

    async def get(self, key: str) -> Any | None:
        value, _ = await self.get_versioned(key)
        return value

    async def get_versioned(self, key: str) -> tuple[Any | None, int]:
        entry = self._data.get(key)
        if entry is None:
            return None, 0
        return copy.deepcopy(entry[0]), entry[1]

    async def put(self, key: str, value: Any) -> None:
        _, version = self._data.get(key, (None, 0))
        self._data[key] = (copy.deepcopy(value), version + 1)

    async def compare_and_put(self, key: str, value: Any, expected_version: int) -> bool:
        _, version = self._data.get(key, (None, 0))
        if version != expected_version:
            return False
        self._data[key] = (copy.deepcopy(value), version + 1)
        return True

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def take(self, key: str) -> Any | None:
        entry = self._data.pop(key, None)
        return None if entry is None else entry[0]


# Sentinel returned by a compare_and_swap mutator to skip the write.
UNCHANGED: Any = object()


async def compare_and_swap(
    store: QuotaStore,
    key: str,
    mutate: Callable[[Any | None], Any],
    *,
    max_attempts: int = 5,
) -> Any | None:
    """Apply *mutate* to the value at *key* with optimistic concurrency.

    *mutate* receives the current value (``None`` if absent) and returns the
    new value, or :data:`UNCHANGED` to skip the write.  The read-modify-write
    is retried while another writer wins the race.

    Returns
    -------
    The value left in the store.

    Raises
    ------
    StoreUnavailable
        If every attempt lost the race.
    """
    for attempt in range(1, max_attempts + 1):
        current, version = await store.get_versioned(key)
        new_value = mutate(current)
        if new_value is UNCHANGED:
            return current
        if await store.compare_and_put(key, new_value, version):
            return new_value
        logger.debug("Write conflict on %s (attempt %d/%d)", key, attempt, max_attempts)
    raise StoreUnavailable(f"Gave up writing {key!r} after {max_attempts} conflicting attempts")

