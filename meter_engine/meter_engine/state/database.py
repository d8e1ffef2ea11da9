"""Engine and session factory for the quota store.

``sqlite+aiosqlite`` URLs get the local single-file engine from
:mod:`meter_engine.state.sqlite_adapter`; anything else is treated as a
pooled server database (PostgreSQL via asyncpg in production).
"""

from __future__ import annotations

import logging

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

logger = logging.getLogger(__name__)

# Store transactions touch a single row; anything slower is a stuck lock.
_STATEMENT_TIMEOUT_MS = 5000
_LOCK_TIMEOUT_MS = 2000


def get_engine(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
) -> AsyncEngine:
    """Create the async engine backing the quota store.

    *pool_size* and *max_overflow* only apply to server databases.
    """
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        from meter_engine.state.sqlite_adapter import get_local_engine

        return get_local_engine(url.database or ":memory:")

    connect_args = {}
    if url.get_driver_name() == "asyncpg":
        connect_args["server_settings"] = {
            "statement_timeout": str(_STATEMENT_TIMEOUT_MS),
            "lock_timeout": str(_LOCK_TIMEOUT_MS),
        }

    engine = create_async_engine(
        url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=1800,
        connect_args=connect_args,
    )
    logger.info(
        "Quota store engine for %s (pool_size=%d, max_overflow=%d)",
        url.render_as_string(hide_password=True),
        pool_size,
        max_overflow,
    )
    return engine


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)
