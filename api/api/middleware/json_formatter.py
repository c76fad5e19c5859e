"""JSON log formatter for log aggregation.

Emits each log record as a single-line JSON object.  Activate by setting
``API_STRUCTURED_LOGGING=true``; the application then replaces the default
text handlers with a ``StreamHandler`` using this formatter.

Output schema per line::

    {
        "timestamp": "2026-05-15T12:34:56.789012+00:00",
        "level": "WARNING",
        "logger": "api.services.enforcement_service",
        "message": "Enforcement denied: ...",
        "workspace_id": "ws_1",     // present when passed via ``extra``
        "customer_id": "cus_1",     // present when passed via ``extra``
        "feature_key": "api_calls", // present when passed via ``extra``
        "request": { ... },         // present when emitted by RequestLoggingMiddleware
        "exc_info": "Traceback ..." // present only on exceptions
    }
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

_CONTEXT_FIELDS: tuple[str, ...] = ("workspace_id", "customer_id", "feature_key")


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for name in _CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                payload[name] = value

        request_data = getattr(record, "request", None)
        if request_data is not None:
            payload["request"] = request_data

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)
