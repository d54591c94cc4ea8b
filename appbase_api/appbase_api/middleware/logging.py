"""Structured request-logging middleware."""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("appbase.access")

# Header values that must never reach the logs.  Cookies carry raw
# session tokens; stripe-signature is replayable within its tolerance.
_SENSITIVE_HEADERS: frozenset[str] = frozenset(
    {"authorization", "cookie", "set-cookie", "stripe-signature", "x-api-key"}
)
_MASK: str = "***"

_CORRELATION_HEADER: str = "X-Correlation-ID"


def _safe_headers(request: Request) -> dict[str, str]:
    """Return a copy of the request headers with sensitive values masked."""
    return {key: (_MASK if key.lower() in _SENSITIVE_HEADERS else value) for key, value in request.headers.items()}


def _app_id_from_path(request: Request) -> str | None:
    """Return the ``{app_id}`` path parameter once routing has resolved it."""
    path_params = request.scope.get("path_params") or {}
    return path_params.get("app_id")


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    # 401/403/429 on the auth routes are routine but worth seeing.
    return logging.WARNING if status_code >= 400 else logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request with method, path, status code, and duration.

    Each request is tagged with a ``correlation_id`` (taken from the
    incoming ``X-Correlation-ID`` header or generated as a UUID-4), which
    is echoed back as a response header.  The tenant is the ``app_id``
    path parameter when the route has one.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = request.headers.get(_CORRELATION_HEADER) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id

        start = time.monotonic()
        response: Response | None = None
        try:
            response = await call_next(request)
            response.headers[_CORRELATION_HEADER] = correlation_id
            return response
        finally:
            duration_ms = round((time.monotonic() - start) * 1000, 2)
            status_code = response.status_code if response is not None else 500

            log_payload: dict[str, Any] = {
                "method": request.method,
                "path": request.url.path,
                "query": str(request.url.query) if request.url.query else None,
                "status_code": status_code,
                "duration_ms": duration_ms,
                "client": request.client.host if request.client else None,
                "correlation_id": correlation_id,
                "tenant_id": _app_id_from_path(request) or "anonymous",
                "headers": _safe_headers(request),
            }
            logger.log(_level_for(status_code), "request completed", extra={"request": log_payload})
