import asyncio
import json
from io import StringIO

import pytest

from errors import RemoteOperationError
from logging_config import LogContext, configure_logging, get_logger
from stores import NoteStore


def _lines(stream):
    return [json.loads(line) for line in stream.getvalue().splitlines()]


def test_json_lines_carry_context():
    stream = StringIO()
    configure_logging(level="DEBUG", stream=stream)
    with LogContext.bind(request_id="req-1", user_id="user-1"):
        get_logger("test").info("hello", extra={"record_id": "n1"})
    get_logger("test").info("after")

    first, second = _lines(stream)
    assert first["logger"] == "workspace.test"
    assert first["request_id"] == "req-1"
    assert first["user_id"] == "user-1"
    assert first["record_id"] == "n1"
    assert "request_id" not in second


def test_configure_is_idempotent():
    stream = StringIO()
    configure_logging(stream=stream)
    configure_logging(stream=StringIO())
    get_logger("test").warning("once")
    assert len(_lines(stream)) == 1


def test_failed_remote_call_is_logged(store, clock, session):
    stream = StringIO()
    configure_logging(stream=stream)
    notes = NoteStore(store, clock)
    store.failing.add("insert")
    with pytest.raises(RemoteOperationError):
        asyncio.run(notes.create(session, {"title": "x"}))
    (entry,) = _lines(stream)
    assert entry["level"] == "ERROR"
    assert entry["logger"] == "workspace.stores.notes"
    assert entry["operation"] == "create"
    assert entry["exc_type"] == "ConnectionError"
