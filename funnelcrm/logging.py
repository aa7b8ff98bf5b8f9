from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from funnelcrm.context import get_correlation_id
from funnelcrm.core.config import Settings, get_settings
from funnelcrm.otel import current_trace_id


_STRUCTURED_FIELDS = frozenset(
    {
        # http
        "method",
        "path",
        "status_code",
        "duration_ms",
        # pipeline
        "company_id",
        "funnel_id",
        "stage_id",
        "lead_id",
        "from_stage_id",
        "to_stage_id",
        "from_order",
        "to_order",
        "transaction_id",
        "transaction_type",
        "actor_user_id",
        "outcome",
        "event_name",
        "error",
    }
)
_MAX_ERROR_LENGTH = 500
_TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(correlation_id)s] %(message)s"


def _stamp(record: logging.LogRecord) -> None:
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    if not getattr(record, "trace_id", None):
        record.trace_id = current_trace_id()


class CorrelationIdFilter(logging.Filter):
    """Stamp records created before the record factory was installed."""

    def filter(self, record: logging.LogRecord) -> bool:
        _stamp(record)
        return True


_default_record_factory = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _default_record_factory(*args, **kwargs)
    _stamp(record)
    return record


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = {key: value for key, value in record.__dict__.items() if key in _STRUCTURED_FIELDS}
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:_MAX_ERROR_LENGTH]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "fields": fields,
        }
        trace_id = getattr(record, "trace_id", None)
        if trace_id:
            payload["trace_id"] = trace_id
        return json.dumps(payload, default=str)


def _build_formatter(log_format: str) -> logging.Formatter:
    if log_format.lower() == "text":
        return logging.Formatter(_TEXT_FORMAT)
    return JsonLogFormatter()


def configure_logging(settings: Settings | None = None) -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_funnelcrm_configured", False):
        return

    settings = settings or get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(_build_formatter(settings.log_format))
    handler.addFilter(CorrelationIdFilter())

    root_logger.handlers.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    root_logger._funnelcrm_configured = True  # type: ignore[attr-defined]
