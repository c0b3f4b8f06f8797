"""JSON logging configuration for the co-host engine."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

# keys lifted out of ``context`` so log search can filter on them directly
TOP_LEVEL_KEYS = ("conversation_id", "property_id")


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if context:
            for key in TOP_LEVEL_KEYS:
                if context.get(key) is not None:
                    log_data[key] = context[key]
            rest = {key: value for key, value in context.items() if key not in TOP_LEVEL_KEYS}
            if rest:
                log_data["context"] = rest

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO") -> None:
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)

    for noisy in ("httpx", "httpcore", "uvicorn.access", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"cohost.{name}")


class LoggerAdapter(logging.LoggerAdapter):
    """Merges a fixed context (e.g. conversation id) into every record."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        context = kwargs.pop("context", None)
        if context or self.extra:
            kwargs["extra"] = {"context": {**self.extra, **(context or {})}}
        return msg, kwargs


def conversation_logger(name: str, conversation_id: str, **fields: Any) -> LoggerAdapter:
    """Logger bound to one conversation, so every line carries its id."""
    return LoggerAdapter(get_logger(name), {"conversation_id": conversation_id, **fields})
