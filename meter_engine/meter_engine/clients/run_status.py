"""Run-status collaborator: polls the OpenAI Assistants API.

The pending-run sweep only needs three read calls: the run itself, the
steps of a completed run, and the messages those steps created.  Any
transport or HTTP status failure is raised as
:class:`~meter_engine.errors.ExternalPollError` so the sweep can requeue
the run.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, Protocol

import httpx
from pydantic import BaseModel

from meter_engine.errors import ExternalPollError

logger = logging.getLogger(__name__)

_STEPS_PAGE_SIZE = 100


class RunStatus(BaseModel):
    id: str
    thread_id: str
    status: str
    model: str

    @property
    def completed(self) -> bool:
        return self.status == "completed"


class RunStep(BaseModel):
    """A run step reduced to what cost reconciliation needs."""

    id: str
    type: str
    message_id: str | None = None


class RunStatusClient(Protocol):
    """Protocol for polling asynchronous runs."""

    async def retrieve_run(self, thread_id: str, run_id: str) -> RunStatus: ...

    async def list_steps(self, thread_id: str, run_id: str) -> list[RunStep]: ...

    async def retrieve_message(self, thread_id: str, message_id: str) -> list[dict[str, Any]]:
        """Return the content parts of a message."""
        ...


def content_length(content: Sequence[dict[str, Any]], attachment_unit_cost: int = 1000) -> int:
    """Measure message content in billable characters.

    Text parts count their characters; every other part (image files,
    image URLs, attachments) counts *attachment_unit_cost*.
    """
    total = 0
    for part in content:
        if part.get("type") == "text":
            text = part.get("text")
            value = text.get("value", "") if isinstance(text, dict) else text
            total += len(value or "")
        else:
            total += attachment_unit_cost
    return total


class OpenAIRunStatusClient:
    """Async client for the Assistants run, step and message endpoints.

    Parameters
    ----------
    api_key:
        OpenAI API key sent as a bearer token.
    base_url:
        API root (default ``https://api.openai.com/v1``).
    timeout:
        Per-request timeout in seconds.
    transport:
        Optional httpx transport, used by tests to stub the API.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            headers={
                "Authorization": f"Bearer {api_key}",
                "OpenAI-Beta": "assistants=v2",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    async def retrieve_run(self, thread_id: str, run_id: str) -> RunStatus:
        body = await self._get(thread_id, run_id, f"/threads/{thread_id}/runs/{run_id}")
        return RunStatus(
            id=body.get("id", run_id),
            thread_id=body.get("thread_id", thread_id),
            status=body.get("status", ""),
            model=body.get("model", ""),
        )

    async def list_steps(self, thread_id: str, run_id: str) -> list[RunStep]:
        """Return every step of the run, following cursor pagination."""
        steps: list[RunStep] = []
        params: dict[str, Any] = {"limit": _STEPS_PAGE_SIZE, "order": "asc"}
        while True:
            page = await self._get(thread_id, run_id, f"/threads/{thread_id}/runs/{run_id}/steps", params=params)
            for raw in page.get("data", []):
                steps.append(_parse_step(raw))
            last_id = page.get("last_id")
            if not page.get("has_more") or not last_id:
                return steps
            params = {**params, "after": last_id}

    async def retrieve_message(self, thread_id: str, message_id: str) -> list[dict[str, Any]]:
        body = await self._get(thread_id, message_id, f"/threads/{thread_id}/messages/{message_id}")
        return list(body.get("content", []))

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._client.aclose()

    async def _get(
        self,
        thread_id: str,
        run_id: str,
        path: str,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        try:
            response = await self._client.get(path, params=params)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as exc:
            raise ExternalPollError(
                thread_id,
                run_id,
                f"HTTP {exc.response.status_code} for {path}",
            ) from exc
        except httpx.HTTPError as exc:
            raise ExternalPollError(thread_id, run_id, f"{type(exc).__name__}: {exc}") from exc


def _parse_step(raw: dict[str, Any]) -> RunStep:
    details = raw.get("step_details") or {}
    message_id = None
    if details.get("type") == "message_creation":
        message_id = (details.get("message_creation") or {}).get("message_id")
    return RunStep(id=raw.get("id", ""), type=raw.get("type", ""), message_id=message_id)
