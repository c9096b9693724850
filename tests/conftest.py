"""
Shared fixtures for the workspace test suite.

Stores run against an in-process document store and a ManualClock, so
every timestamp and duration in a test is exact.
"""
from datetime import datetime, timezone

import pytest

from clock import ManualClock
from database import MemoryDocumentStore
from logging_config import LogContext, reset_logging
from session import WorkspaceSession
from workspace import Workspace

USER_ID = "user-1"
OTHER_USER_ID = "user-2"


class RecordingStore(MemoryDocumentStore):
    """Memory store that records each call and can be told to fail."""

    def __init__(self):
        super().__init__()
        self.calls = []
        self.failing = set()

    def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        if operation in self.failing:
            raise ConnectionError(f"store unavailable during {operation}")

    async def query(self, collection, owner_id, order_by, descending=True):
        self._enter("query")
        return await super().query(collection, owner_id, order_by, descending)

    async def insert(self, collection, record):
        self._enter("insert")
        return await super().insert(collection, record)

    async def patch(self, collection, record_id, fields):
        self._enter("patch")
        return await super().patch(collection, record_id, fields)

    async def remove(self, collection, record_id):
        self._enter("remove")
        return await super().remove(collection, record_id)


@pytest.fixture(autouse=True)
def _clean_logging():
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def store() -> RecordingStore:
    return RecordingStore()


@pytest.fixture
def session() -> WorkspaceSession:
    return WorkspaceSession.signed_in(USER_ID)


@pytest.fixture
def other_session() -> WorkspaceSession:
    return WorkspaceSession.signed_in(OTHER_USER_ID)


@pytest.fixture
def workspace(store, clock) -> Workspace:
    return Workspace(store, clock)
