"""Structured Logging — JSON formatter and setup for conversation observability.

Invariants:
    - Every record carries timestamp, level, logger name, and message
    - Conversation fields (conversation_id, iteration, turn_key, tool_name, ...)
      copied from `extra=` only when present
    - setup_logging is idempotent: calling it again replaces its own handler

Design Decisions:
    - The library never configures logging on import; embedding processes call
      setup_logging() or setup_logging_from_settings() once
    - Unserializable extra values rendered with str() rather than dropped
"""

import json
import logging
from datetime import datetime, timezone

CONVERSATION_FIELDS = (
    "conversation_id", "iteration", "turn_key", "tool_name", "error_code",
    "attempt", "input_tokens", "output_tokens", "stop_reason", "cost", "total_cost",
)


class JSONFormatter(logging.Formatter):
    """One JSON object per log line."""

    def __init__(self, fields: tuple[str, ...] = CONVERSATION_FIELDS):
        super().__init__()
        self.fields = fields

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in self.fields:
            value = record.__dict__.get(key)
            if value is not None:
                entry[key] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class _TurnloopHandler(logging.StreamHandler):
    """Marker type so repeated setup replaces rather than stacks handlers."""


def setup_logging(level: str = "INFO", fmt: str = "json", stream=None) -> logging.Handler:
    """Install one stream handler on the root logger. Returns the handler."""
    root = logging.getLogger()
    for existing in [h for h in root.handlers if isinstance(h, _TurnloopHandler)]:
        root.removeHandler(existing)

    handler = _TurnloopHandler(stream)
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
        ))
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    return handler


def setup_logging_from_settings(settings, stream=None) -> logging.Handler:
    return setup_logging(settings.log_level, settings.log_format, stream=stream)
