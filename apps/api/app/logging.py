from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id


_BASE_RECORD_KEYS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime", "correlation_id"}
_STRUCTURED_FIELDS = (
    "method",
    "path",
    "status_code",
    "duration_ms",
    "entity_type",
    "entity_id",
    "user_id",
    "action",
    "reason",
    "error",
)
_SECRET_MARKERS = ("password", "token", "secret", "authorization")
_MAX_ERROR_LENGTH = 500

_default_record_factory = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _default_record_factory(*args, **kwargs)
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    return record


def _is_secret(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in _SECRET_MARKERS)


def structured_fields(record: logging.LogRecord) -> dict[str, Any]:
    """Pick the whitelisted ``extra=`` keys off a record; anything secret-looking is masked."""

    fields: dict[str, Any] = {}
    for key in _STRUCTURED_FIELDS:
        if key in record.__dict__ and record.__dict__[key] is not None:
            fields[key] = record.__dict__[key]

    for key in record.__dict__.keys() - _BASE_RECORD_KEYS:
        if _is_secret(key):
            fields[key] = "[redacted]"

    if isinstance(fields.get("error"), str):
        fields["error"] = fields["error"][:_MAX_ERROR_LENGTH]
    return fields


class JsonLogFormatter(logging.Formatter):
    def __init__(self, service: str = "crm-api") -> None:
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "service": self.service,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "fields": structured_fields(record),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging() -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_crm_configured", False):
        return

    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter(service=os.getenv("APP_NAME", "crm-api")))

    root_logger.handlers.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    root_logger._crm_configured = True  # type: ignore[attr-defined]
