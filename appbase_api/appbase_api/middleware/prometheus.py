"""Prometheus metrics middleware and application counters.

Exposes standard RED metrics (Rate, Errors, Duration) for HTTP requests
plus counters for session operations and webhook processing outcomes.

Path normalisation collapses per-app and per-id segments (e.g.
``/api/v1/apps/my-app/me`` -> ``/api/v1/apps/{app_id}/me``) to keep label
cardinality bounded.
"""

from __future__ import annotations

import logging
import re
import time

from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

HTTP_REQUESTS_TOTAL = Counter(
    "appbase_http_requests_total",
    "Total HTTP requests by method, path, and status code",
    ["method", "path", "status_code"],
)

HTTP_REQUEST_DURATION = Histogram(
    "appbase_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

SESSIONS_TOTAL = Counter(
    "appbase_sessions_total",
    "Session operations by operation and outcome",
    ["operation", "outcome"],
)

WEBHOOK_EVENTS_TOTAL = Counter(
    "appbase_webhook_events_total",
    "Payment-provider webhook events by type and outcome",
    ["event_type", "outcome"],
)


_PATH_PARAM_PATTERNS = [
    # Tenant segment after /apps/ or /auth/
    (re.compile(r"/(apps|auth)/[^/]+"), r"/\1/{app_id}"),
    # UUIDs (8-4-4-4-12 hex format)
    (re.compile(r"/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"), "/{id}"),
    # Long hex strings (subject ids)
    (re.compile(r"/[0-9a-f]{12,64}"), "/{id}"),
    # Pure numeric segments
    (re.compile(r"/\d+"), "/{id}"),
]


def _normalise_path(path: str) -> str:
    """Collapse path parameters to prevent cardinality explosion."""
    for pattern, replacement in _PATH_PARAM_PATTERNS:
        path = pattern.sub(replacement, path)
    return path


# Paths excluded from metrics recording.
_SKIP_PATHS: frozenset[str] = frozenset({"/metrics", "/docs", "/redoc", "/openapi.json", "/favicon.ico"})


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Record HTTP request rate, error rate, and latency."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if path in _SKIP_PATHS:
            return await call_next(request)

        method = request.method
        normalised = _normalise_path(path)

        start = time.monotonic()
        response = await call_next(request)
        duration = time.monotonic() - start

        HTTP_REQUESTS_TOTAL.labels(
            method=method,
            path=normalised,
            status_code=str(response.status_code),
        ).inc()
        HTTP_REQUEST_DURATION.labels(method=method, path=normalised).observe(duration)

        return response
