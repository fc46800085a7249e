"""Structured logging tests — JSON shape, extra fields, handler setup."""

import io
import json
import logging
import sys

import pytest

from turnloop.infrastructure.observability import (
    JSONFormatter,
    setup_logging,
    setup_logging_from_settings,
)


def _record(msg="hello %s", args=("world",), **extra):
    record = logging.LogRecord(
        "turnloop.test", logging.INFO, __file__, 1, msg, args, None,
    )
    record.__dict__.update(extra)
    return record


@pytest.fixture
def restore_root():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


def test_json_has_base_fields():
    entry = json.loads(JSONFormatter().format(_record()))
    assert entry["level"] == "INFO"
    assert entry["logger"] == "turnloop.test"
    assert entry["message"] == "hello world"
    assert "timestamp" in entry


def test_conversation_extras_included_and_none_skipped():
    entry = json.loads(JSONFormatter().format(_record(
        conversation_id="c1", iteration=3, tool_name=None, total_cost=0.25,
    )))
    assert entry["conversation_id"] == "c1"
    assert entry["iteration"] == 3
    assert entry["total_cost"] == 0.25
    assert "tool_name" not in entry


def test_unserializable_extra_rendered_as_string():
    entry = json.loads(JSONFormatter().format(_record(error_code=object())))
    assert entry["error_code"].startswith("<object object")


def test_exception_included():
    try:
        raise ValueError("boom")
    except ValueError:
        record = logging.LogRecord(
            "x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info(),
        )
    entry = json.loads(JSONFormatter().format(record))
    assert "ValueError: boom" in entry["exception"]


def test_setup_logging_is_idempotent(restore_root):
    first = setup_logging("DEBUG")
    second = setup_logging("WARNING")
    assert first not in restore_root.handlers
    assert second in restore_root.handlers
    assert restore_root.level == logging.WARNING


def test_setup_logging_json_output(restore_root):
    stream = io.StringIO()
    setup_logging("INFO", "json", stream=stream)
    logging.getLogger("turnloop.demo").info("turn done", extra={"iteration": 2})
    entry = json.loads(stream.getvalue().strip().splitlines()[-1])
    assert entry["message"] == "turn done"
    assert entry["iteration"] == 2


def test_setup_from_settings_text_format(restore_root, settings):
    stream = io.StringIO()
    text_settings = settings.model_copy(update={"log_format": "text", "log_level": "info"})
    setup_logging_from_settings(text_settings, stream=stream)
    logging.getLogger("turnloop.demo").info("plain line")
    assert "INFO turnloop.demo: plain line" in stream.getvalue()
