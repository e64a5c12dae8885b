"""
Structured logging configuration for production use.

JSON logs in production, text in development. Per-slot work runs inside
`slot_context(...)`; every record logged there carries the slot fields,
so batch job output can be grouped by slot without repeating ids in
each message.
"""
import logging
import sys
import json
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional
from core.config import settings

_slot_fields: ContextVar[Optional[Dict[str, Any]]] = ContextVar("slot_fields", default=None)


@contextmanager
def slot_context(**fields: Any) -> Iterator[None]:
    """Attach `fields` (slot_id, job, ...) to records logged inside the block."""
    token = _slot_fields.set({**(_slot_fields.get() or {}), **fields})
    try:
        yield
    finally:
        _slot_fields.reset(token)


class SlotContextFilter(logging.Filter):
    """Copies the current slot context onto each record as `slot` (text) and `slot_fields` (JSON)."""

    def filter(self, record: logging.LogRecord) -> bool:
        fields = _slot_fields.get() or {}
        record.slot_fields = dict(fields)
        record.slot = "".join(f" [{k}={v}]" for k, v in fields.items())
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        log_data.update(getattr(record, "slot_fields", None) or {})
        # Transitions attach from/to status via extra={"extra_fields": {...}}
        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


def setup_logging():
    """
    Configure application-wide logging on stdout.
    """
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    if settings.LOG_FORMAT == "json" or settings.ENVIRONMENT == "production":
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s -%(slot)s %(message)s"
        )

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.addFilter(SlotContextFilter())
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("celery").setLevel(logging.INFO)

    return root_logger
