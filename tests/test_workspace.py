import asyncio

import pytest

from errors import NotAuthenticatedError
from session import WorkspaceSession
from workspace import WorkspaceRegistry


def test_load_all_settles_the_timer(store, workspace, session):
    async def scenario():
        await store.insert("time_entries", {
            "project_name": "P", "description": None, "start_time": "2024-01-15T08:00:00.000Z",
            "end_time": None, "duration": None, "is_running": True,
            "user_id": "user-1", "created_at": "2024-01-15T08:00:00.000Z",
        })
        await store.insert("tasks", {
            "title": "T", "completed": False, "priority": "low", "user_id": "user-1",
            "created_at": "2024-01-15T08:00:00.000Z", "updated_at": "2024-01-15T08:00:00.000Z",
        })
        await workspace.load_all(session)

    asyncio.run(scenario())
    assert workspace.loaded
    assert workspace.timer.active.project_name == "P"
    board = workspace.dashboard()
    assert board["tasks"]["total"] == 1
    assert board["time"]["running"] is True
    assert board["notes"] == {"total": 0}


def test_registry_keeps_one_workspace_per_user(store, clock, session, other_session):
    registry = WorkspaceRegistry(store, clock)

    async def scenario():
        first = await registry.for_session(session)
        again = await registry.for_session(session)
        other = await registry.for_session(other_session)
        await registry.close()
        return first, again, other

    first, again, other = asyncio.run(scenario())
    assert first is again
    assert other is not first
    assert store.calls.count("query") == 8


def test_registry_refuses_signed_out(store, clock):
    registry = WorkspaceRegistry(store, clock)
    with pytest.raises(NotAuthenticatedError):
        asyncio.run(registry.for_session(WorkspaceSession.signed_out()))


def test_concurrent_first_requests_share_one_timer(store, clock, session):
    registry = WorkspaceRegistry(store, clock)

    async def scenario():
        first, second = await asyncio.gather(registry.for_session(session),
                                             registry.for_session(session))
        await first.timer.quick_start(session, "Alpha")
        await (await registry.for_session(session)).timer.quick_start(session, "Beta")
        return first, second

    first, second = asyncio.run(scenario())
    assert first is second
    running = [d["project_name"] for d in store.collections["time_entries"].values() if d["is_running"]]
    assert running == ["Beta"]
    assert store.calls.count("query") == 4
