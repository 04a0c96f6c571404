"""Unit tests for structured logging helpers."""

from __future__ import annotations

import json
import logging

import pytest

from observability import (
    ContextFilter,
    JsonFormatter,
    PlainFormatter,
    bind_context,
    clear_context,
    configure_logging,
    get_context,
    log_context,
)


@pytest.fixture(autouse=True)
def _clean_context():
    clear_context()
    yield
    clear_context()


def _record(message: str = "job closed") -> logging.LogRecord:
    record = logging.LogRecord("orchestration.test", logging.INFO, __file__, 1, message, None, None)
    ContextFilter().filter(record)
    return record


def test_log_context_is_scoped() -> None:
    """Context bound in a block is removed when the block exits."""
    bind_context(worker="w1", ignored=None)

    with log_context({"job_id": 7, "agent_slug": "developer"}):
        assert get_context() == {"worker": "w1", "job_id": "7", "agent_slug": "developer"}

    assert get_context() == {"worker": "w1"}
    clear_context("worker")
    assert get_context() == {}


def test_json_formatter_includes_context() -> None:
    """JSON lines carry the core fields and bound context."""
    with log_context({"job_id": 3}):
        record = _record()

    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "job closed"
    assert payload["level"] == "INFO"
    assert payload["logger"] == "orchestration.test"
    assert payload["job_id"] == "3"


def test_plain_formatter_appends_sorted_context() -> None:
    """Plain lines end with the bound context as key=value pairs."""
    with log_context({"project_id": "proj-1", "job_id": 3}):
        record = _record()

    assert PlainFormatter().format(record).endswith("job closed job_id=3 project_id=proj-1")


def test_configure_logging_replaces_handlers() -> None:
    """Repeated configuration leaves exactly one stdout handler."""
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        configure_logging(level="debug", json_output=False)
        configure_logging(level="warning", json_output=True)

        assert len(root.handlers) == 1
        assert root.level == logging.WARNING
        assert isinstance(root.handlers[0].formatter, JsonFormatter)
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
