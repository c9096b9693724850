"""One user's workspace: the four collection stores and the time session."""

import asyncio
from typing import Any, Dict, Optional

from clock import Clock, SystemClock
from database import DocumentStore
from filters import invoice_stats, note_stats, task_stats, time_stats
from logging_config import get_logger
from session import WorkspaceSession
from stores import InvoiceStore, NoteStore, TaskStore, TimeEntryStore
from timetracking import TimeSession

logger = get_logger("workspace")


class Workspace:
    def __init__(self, store: DocumentStore, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()
        self.notes = NoteStore(store, self.clock)
        self.tasks = TaskStore(store, self.clock)
        self.invoices = InvoiceStore(store, self.clock)
        self.time_entries = TimeEntryStore(store, self.clock)
        self.timer = TimeSession(self.time_entries, self.clock)
        self.loaded = False

    async def load_all(self, session: WorkspaceSession) -> None:
        await asyncio.gather(
            self.notes.load(session),
            self.tasks.load(session),
            self.invoices.load(session),
        )
        await self.timer.sync(session)
        self.loaded = True

    def dashboard(self) -> Dict[str, Any]:
        now = self.clock.now()
        return {
            "notes": note_stats(self.notes.snapshot)._asdict(),
            "tasks": task_stats(self.tasks.snapshot, now)._asdict(),
            "invoices": invoice_stats(self.invoices.snapshot)._asdict(),
            "time": time_stats(self.time_entries.snapshot, now)._asdict(),
        }

    async def close(self) -> None:
        await self.timer.close()


class WorkspaceRegistry:
    """Keeps one loaded Workspace per signed-in user for the life of the process."""

    def __init__(self, store: DocumentStore, clock: Optional[Clock] = None):
        self.store = store
        self.clock = clock or SystemClock()
        self._workspaces: Dict[str, Workspace] = {}
        self._loading: Dict[str, asyncio.Lock] = {}

    async def for_session(self, session: WorkspaceSession) -> Workspace:
        user_id = session.require_user()
        workspace = self._workspaces.get(user_id)
        if workspace is not None:
            return workspace
        # Concurrent first requests for one user must share a single TimeSession
        async with self._loading.setdefault(user_id, asyncio.Lock()):
            workspace = self._workspaces.get(user_id)
            if workspace is None:
                workspace = Workspace(self.store, self.clock)
                await workspace.load_all(session)
                self._workspaces[user_id] = workspace
                logger.info("Workspace loaded", extra={"user_id": user_id})
        return workspace

    async def close(self) -> None:
        for workspace in self._workspaces.values():
            await workspace.close()
        self._workspaces.clear()
        self._loading.clear()
