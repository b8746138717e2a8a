"""Structured JSON logging utilities.

Every record is rendered as one JSON object with the standard fields
(timestamp, level, message, module, func, line) plus the request/account/event
context variables and any sanitized ``extra`` fields.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any

from billsync_api.context import account_id_var, event_id_var, request_id_var
from billsync_api.utils.sanitize import sanitize_exc, sanitize_obj, sanitize_str

# Attributes every LogRecord carries; anything else came from ``extra``.
_RESERVED_ATTRS: frozenset[str] = frozenset({
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "taskName",
    "exc_info",
    "exc_text",
    "stack_info",
})

_CONTEXT_FIELDS = (
    ("request_id", request_id_var),
    ("account_id", account_id_var),
    ("event_id", event_id_var),
)


class JSONFormatter(logging.Formatter):
    """JSON log formatter with request context.

    Context variables are included only when set, so worker-style code paths
    (alembic, scripts) produce the same shape without empty keys.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON string."""
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": sanitize_str(record.getMessage()),
            "module": record.module,
            "func": record.funcName,
            "line": record.lineno,
        }

        for field, var in _CONTEXT_FIELDS:
            value = var.get()
            if value:
                log_data[field] = value

        if record.exc_info:
            log_data["exc_info"] = sanitize_exc(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = sanitize_obj(value)

        return json.dumps(log_data, default=str)


def configure_json_logging(log_level: str = "INFO") -> None:
    """Configure root logger with JSON formatter.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)
