from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from lumen.context import LOG_CONTEXT_KEYS, get_log_context
from lumen.core.config import get_settings


# record attributes copied into the "fields" map; anything else passed via
# ``extra`` stays on the record but is not serialised
_FIELDS = frozenset(
    {
        "method",
        "path",
        "status_code",
        "duration_ms",
        "user_id",
        "subscription_id",
        "plan_id",
        "billing_record_id",
        "action",
        "status",
        "resource",
        "sink",
        "event_name",
        "processed",
        "failed",
        "error",
    }
)
_ERROR_LIMIT = 500
_CONFIGURED_FLAG = "_lumen_configured"


def _attach_context(record: logging.LogRecord) -> None:
    for key, value in get_log_context().items():
        if getattr(record, key, None) is None:
            setattr(record, key, value)


class LogContextFilter(logging.Filter):
    """Fills context on records created before the record factory was installed."""

    def filter(self, record: logging.LogRecord) -> bool:
        _attach_context(record)
        return True


_DEFAULT_RECORD_FACTORY = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _DEFAULT_RECORD_FACTORY(*args, **kwargs)
    _attach_context(record)
    return record


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key in LOG_CONTEXT_KEYS:
            payload[key] = getattr(record, key, None)

        fields = {key: value for key, value in record.__dict__.items() if key in _FIELDS}
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:_ERROR_LIMIT]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        payload["fields"] = fields
        return json.dumps(payload, default=str)


def configure_logging() -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, _CONFIGURED_FLAG, False):
        return

    level = logging.getLevelName(get_settings().log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(LogContextFilter())

    root_logger.handlers.clear()
    root_logger.filters.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    setattr(root_logger, _CONFIGURED_FLAG, True)
