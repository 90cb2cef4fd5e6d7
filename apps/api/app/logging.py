from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from app.context import get_log_context


# Extra keys that make it into the JSON "fields" object; anything else passed
# through ``extra=`` stays out of the log stream.
_KNOWN_FIELDS = frozenset(
    {
        # http
        "method",
        "path",
        "status_code",
        "duration_ms",
        "workspace_id",
        # dispatch
        "event_kind",
        "event_name",
        "dedup_key",
        "matched_count",
        "ran_count",
        "skipped_count",
        "errored_count",
        "triggered_count",
        # execution
        "workflow_id",
        "action_index",
        "action_kind",
        "attempt",
        "max_attempts",
        "transient",
        "outcome",
        "status",
        # delivery
        "provider",
        "recipient",
        "error",
    }
)
_MAX_ERROR_LENGTH = 500


def _stamp_context(record: logging.LogRecord) -> None:
    for key, value in get_log_context().items():
        if not getattr(record, key, None):
            setattr(record, key, value)


class LogContextFilter(logging.Filter):
    """Copies the active correlation id and dedup key onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        _stamp_context(record)
        return True


_DEFAULT_RECORD_FACTORY = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _DEFAULT_RECORD_FACTORY(*args, **kwargs)
    _stamp_context(record)
    return record


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields: dict[str, Any] = {
            key: value
            for key, value in record.__dict__.items()
            if key in _KNOWN_FIELDS and value is not None
        }
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:_MAX_ERROR_LENGTH]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        return json.dumps(
            {
                "ts": datetime.now(timezone.utc).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
                "correlation_id": getattr(record, "correlation_id", None),
                "fields": fields,
            },
            default=str,
        )


def configure_logging(level_name: str | None = None) -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_onboardhub_configured", False):
        return

    if level_name is None:
        from app.core.config import get_settings

        level_name = get_settings().log_level
    level = getattr(logging, level_name.upper(), logging.INFO)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(LogContextFilter())

    root_logger.handlers.clear()
    root_logger.filters.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    root_logger._onboardhub_configured = True  # type: ignore[attr-defined]
