"""JSON logging configuration for the CRM reply engine service.

Every reply engine turn logs with its conversation and inbound message id as
top-level fields, so one query pulls all lines of a turn out of the stream.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional

# Context keys promoted to top-level fields of the JSON line.
TURN_FIELDS = ("conversation_id", "inbound_message_id", "reply_key")


class JSONFormatter(logging.Formatter):
    """Format log records as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = dict(getattr(record, "context", None) or {})
        for field in TURN_FIELDS:
            if context.get(field) is not None:
                log_data[field] = context.pop(field)
        if context:
            log_data["context"] = context

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_logging(level: Optional[str] = None) -> None:
    """Configure JSON logging on stdout; the level defaults to settings.log_level."""
    if level is None:
        from app.config import settings

        level = settings.log_level

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"crm.{name}")


class TurnLogger(logging.LoggerAdapter):
    """Stamps each record with the turn ids plus any per-call `context=` dict."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        context = kwargs.pop("context", None)
        kwargs["extra"] = {"context": {**self.extra, **(context or {})}}
        return msg, kwargs


def get_turn_logger(name: str, conversation_id: int, inbound_message_id: int) -> TurnLogger:
    return TurnLogger(
        get_logger(name),
        {"conversation_id": conversation_id, "inbound_message_id": inbound_message_id},
    )
