"""Access logging for the metering API.

One line per request under the ``api.access`` logger.  Requests that
address a metered user (``/usage/{user_id}...``) carry the ``user_id`` so
access lines can be joined with the job logs of the same user.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("api.access")

CORRELATION_HEADER = "X-Correlation-ID"

# Liveness checks hit these every few seconds.
_QUIET_PATHS = frozenset({"/api/v1/health"})


def _level_for(path: str, status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code == 429:
        # Quota denials are routine admission outcomes.
        return logging.INFO
    if status_code >= 400:
        return logging.WARNING
    if path in _QUIET_PATHS:
        return logging.DEBUG
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log method, path, status and duration of every request.

    The correlation id is read from ``X-Correlation-ID`` (or minted) and
    exposed to handlers as ``request.state.correlation_id``; it is echoed
    on the response.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or uuid.uuid4().hex
        request.state.correlation_id = correlation_id

        started = time.monotonic()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[CORRELATION_HEADER] = correlation_id
            return response
        finally:
            path = request.url.path
            payload: dict[str, Any] = {
                "method": request.method,
                "path": path,
                "status_code": status_code,
                "duration_ms": round((time.monotonic() - started) * 1000, 2),
                "correlation_id": correlation_id,
            }
            user_id = request.path_params.get("user_id")
            if user_id is not None:
                payload["user_id"] = user_id
            logger.log(
                _level_for(path, status_code),
                "%s %s -> %d",
                request.method,
                path,
                status_code,
                extra={"request": payload},
            )
