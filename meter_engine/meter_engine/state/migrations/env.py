"""Alembic environment for the quota store schema.

Migrations always run against a live database.  The URL comes from
``ALEMBIC_DATABASE_URL``, then ``METER_DATABASE_URL``, then
``sqlalchemy.url`` in ``alembic.ini``; async driver names are swapped for
their synchronous counterparts.
"""

from __future__ import annotations

import logging
import os
from logging.config import fileConfig

from alembic import context
from meter_engine.state.tables import Base
from sqlalchemy import create_engine, pool
from sqlalchemy.engine import URL, make_url

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)

logger = logging.getLogger("alembic.env")

_SYNC_DRIVERS = {
    "postgresql": "postgresql+psycopg",
    "postgresql+asyncpg": "postgresql+psycopg",
    "sqlite+aiosqlite": "sqlite",
}


def sync_url() -> URL:
    raw = (
        os.environ.get("ALEMBIC_DATABASE_URL")
        or os.environ.get("METER_DATABASE_URL")
        or config.get_main_option("sqlalchemy.url")
        or "sqlite:///.meterbridge/state.db"
    )
    url = make_url(raw)
    drivername = _SYNC_DRIVERS.get(url.drivername, url.drivername)
    query = dict(url.query)
    # asyncpg's ``ssl`` is libpq's ``sslmode``.
    if drivername.startswith("postgresql") and "ssl" in query:
        query["sslmode"] = query.pop("ssl")
    return url.set(drivername=drivername, query=query)


def run_migrations() -> None:
    if context.is_offline_mode():
        raise RuntimeError("Quota store migrations need a database connection; --sql is not supported")

    url = sync_url()
    logger.info("Migrating quota store at %s", url.render_as_string(hide_password=True))
    engine = create_engine(url, poolclass=pool.NullPool)
    try:
        with engine.connect() as connection:
            context.configure(
                connection=connection,
                target_metadata=Base.metadata,
                compare_type=True,
                # SQLite cannot ALTER columns in place.
                render_as_batch=connection.dialect.name == "sqlite",
            )
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


run_migrations()
