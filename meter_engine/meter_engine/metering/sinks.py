"""Usage sinks: best-effort destinations for :class:`UsageRecord` rows.

Two sinks are provided:

* :class:`FileUsageSink` -- appends records as JSON lines to a local file.
* :class:`BigQueryUsageSink` -- streams records to a BigQuery table through
  the ``tabledata.insertAll`` REST endpoint.

A sink never raises.  Failures are logged and the records are dropped;
the usage stream is analytics, not the source of truth for quotas.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Sequence
from pathlib import Path
from typing import Any, Protocol

import httpx

from meter_engine.config import Settings, UsageSinkType
from meter_engine.metering.events import UsageRecord

logger = logging.getLogger(__name__)


class UsageSink(Protocol):
    """Protocol for usage record persistence."""

    async def append(self, records: Sequence[UsageRecord]) -> None:
        """Persist a batch of records, logging instead of raising on failure."""
        ...


class FileUsageSink:
    """Appends usage records as JSON lines to a local file.

    Parameters
    ----------
    path:
        Path to the JSON lines file.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    async def append(self, records: Sequence[UsageRecord]) -> None:
        if not records:
            return
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as fh:
                for record in records:
                    fh.write(record.model_dump_json() + "\n")
        except OSError:
            logger.warning("Failed to append %d usage records to %s", len(records), self._path, exc_info=True)
            return
        logger.debug("Appended %d usage records to %s", len(records), self._path)


class BigQueryUsageSink:
    """Streams usage records into a BigQuery table.

    Parameters
    ----------
    dataset_url:
        Dataset endpoint, e.g.
        ``https://bigquery.googleapis.com/bigquery/v2/projects/<p>/datasets/<d>/``.
    token:
        OAuth bearer token for the service account.
    table:
        Target table name inside the dataset.
    timeout:
        Per-request timeout in seconds.
    client:
        Optional pre-built ``httpx.AsyncClient`` (used by tests).
    """

    def __init__(
        self,
        dataset_url: str,
        token: str,
        table: str = "usage",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._insert_path = f"{dataset_url.rstrip('/')}/tables/{table}/insertAll"
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
            },
        )

    async def append(self, records: Sequence[UsageRecord]) -> None:
        if not records:
            return
        payload: dict[str, Any] = {
            "kind": "bigquery#tableDataInsertAllRequest",
            "rows": [{"insertId": uuid.uuid4().hex, "json": _to_row(r)} for r in records],
        }
        try:
            response = await self._client.post(self._insert_path, json=payload)
            response.raise_for_status()
            errors = response.json().get("insertErrors")
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "BigQuery returned %d for insertAll: %s",
                exc.response.status_code,
                exc.response.text[:500],
            )
            return
        except httpx.HTTPError as exc:
            logger.warning("BigQuery insertAll failed: %s", exc)
            return
        if errors:
            logger.warning("BigQuery rejected %d of %d usage rows", len(errors), len(records))
        else:
            logger.debug("Streamed %d usage rows to BigQuery", len(records))

    async def close(self) -> None:
        await self._client.aclose()


def _to_row(record: UsageRecord) -> dict[str, Any]:
    # The warehouse column for ``extra`` is a JSON-encoded string.
    row = record.model_dump(mode="json")
    row["extra"] = json.dumps(record.extra) if record.extra else None
    return row


def build_usage_sink(settings: Settings) -> UsageSink:
    """Return the sink selected by ``settings.usage_sink``.

    Falls back to the file sink when BigQuery is selected but not
    configured.
    """
    if settings.usage_sink == UsageSinkType.BIGQUERY:
        if settings.is_bigquery_configured():
            return BigQueryUsageSink(
                settings.bigquery_url,
                settings.bigquery_token.get_secret_value(),
                table=settings.bigquery_table,
            )
        logger.warning("BigQuery usage sink selected but not configured; writing to %s", settings.usage_sink_path)
    return FileUsageSink(settings.usage_sink_path)
