"""Single-line JSON log formatter.

Activated by ``APPBASE_STRUCTURED_LOGGING=true``; the application then
replaces the root handlers with a ``StreamHandler`` using this formatter.

Output schema per line::

    {
        "timestamp": "2026-10-19T12:34:56.789012+00:00",
        "level": "INFO",
        "logger": "appbase.access",
        "message": "request completed",
        "request": { ... },        // from RequestLoggingMiddleware
        "webhook": { ... },        // from the Stripe webhook endpoint
        "exc_info": "Traceback ..."
    }
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

# ``extra=`` keys copied verbatim into the JSON payload when present.
_STRUCTURED_EXTRAS: tuple[str, ...] = ("request", "webhook", "tenant_id", "correlation_id")


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in _STRUCTURED_EXTRAS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)
