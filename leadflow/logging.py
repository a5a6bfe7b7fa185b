from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from leadflow.context import get_request_context
from leadflow.core.config import Settings, get_settings


CONTEXT_FIELDS = (
    "method",
    "path",
    "status_code",
    "duration_ms",
    "lead_id",
    "organization_id",
    "account_id",
    "contact_id",
    "opportunity_id",
    "count",
    "status",
    "error",
)
MAX_ERROR_LENGTH = 500

_default_record_factory = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _default_record_factory(*args, **kwargs)
    context = get_request_context()
    record.correlation_id = context["correlation_id"]
    record.request_organization_id = context["organization_id"]
    return record


def context_fields(record: logging.LogRecord) -> dict[str, Any]:
    """Extra fields passed through ``extra=`` that belong in structured output.

    ``organization_id`` falls back to the tenant header bound for the current request.
    """
    fields = {key: getattr(record, key) for key in CONTEXT_FIELDS if getattr(record, key, None) is not None}
    request_organization_id = getattr(record, "request_organization_id", None)
    if "organization_id" not in fields and request_organization_id:
        fields["organization_id"] = request_organization_id
    error = fields.get("error")
    if isinstance(error, str):
        fields["error"] = error[:MAX_ERROR_LENGTH]
    return fields


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "fields": context_fields(record),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class TextLogFormatter(logging.Formatter):
    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)s %(name)s [%(correlation_id)s] %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = context_fields(record)
        if fields:
            line += " " + " ".join(f"{key}={value}" for key, value in fields.items())
        return line


def configure_logging(settings: Settings | None = None) -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_leadflow_configured", False):
        return

    settings = settings or get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(TextLogFormatter() if settings.log_format == "text" else JsonLogFormatter())

    logging.setLogRecordFactory(_record_factory)
    root_logger.handlers.clear()
    root_logger.setLevel(level)
    root_logger.addHandler(handler)
    root_logger._leadflow_configured = True  # type: ignore[attr-defined]
