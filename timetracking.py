"""
Time tracking session.

``TimeSession`` is the state machine over one owner's whole set of time
entries: it is Idle when no entry is running and Running(entry) when
exactly one is. Transitions are serialised, and a start always finishes
the write that stops the previous entry before it writes the new one, so
two entries are never running at once.

While Running, an optional ticker reports the elapsed seconds once per
tick; it is reset on every transition and cancelled on Idle and close().
"""
import asyncio
import contextlib
import math
from datetime import datetime
from typing import Callable, Optional

from clock import Clock
from errors import ValidationError
from logging_config import get_logger
from schemas import TimeEntry, truncate_timestamp
from session import WorkspaceSession
from stores import TimeEntryStore

logger = get_logger("timetracking")

IDLE = "idle"
RUNNING = "running"


def elapsed_between(start: datetime, end: datetime) -> int:
    """Whole seconds from start to end, never negative."""
    return max(0, math.floor((end - start).total_seconds()))


def format_duration(seconds: Optional[int]) -> str:
    seconds = max(0, int(seconds or 0))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


class TimeSession:
    def __init__(self, entries: TimeEntryStore, clock: Optional[Clock] = None,
                 tick_interval: float = 1.0):
        self.entries = entries
        self.clock = clock or entries.clock
        self.tick_interval = tick_interval
        self.elapsed = 0
        self._lock = asyncio.Lock()
        self._on_tick: Optional[Callable[[int], None]] = None
        self._ticker: Optional[asyncio.Task] = None

    @property
    def active(self) -> Optional[TimeEntry]:
        running = self.entries.running
        return running[0] if running else None

    @property
    def state(self) -> str:
        return RUNNING if self.active is not None else IDLE

    @property
    def ticking(self) -> bool:
        return self._ticker is not None and not self._ticker.done()

    def _now(self) -> datetime:
        return truncate_timestamp(self.clock.now())

    def elapsed_seconds(self) -> int:
        active = self.active
        if active is None:
            return 0
        return elapsed_between(active.start_time, self.clock.now())

    async def sync(self, session: WorkspaceSession) -> Optional[TimeEntry]:
        """Load the owner's entries and settle on at most one running entry."""
        async with self._lock:
            await self.entries.load(session)
            running = sorted(self.entries.running, key=lambda e: e.start_time, reverse=True)
            for extra in running[1:]:
                logger.warning("Stopping extra running entry", extra={"entry_id": extra.id})
                await self._stop_entry(session, extra)
            self._restart_ticker()
            return self.active

    async def _stop_entry(self, session: WorkspaceSession, entry: TimeEntry) -> TimeEntry:
        now = self._now()
        return await self.entries.mark_stopped(
            session, entry.id, now, elapsed_between(entry.start_time, now)
        )

    async def start(self, session: WorkspaceSession, entry_id: str) -> TimeEntry:
        async with self._lock:
            self.entries.get(entry_id)
            current = self.active
            try:
                if current is not None and current.id != entry_id:
                    await self._stop_entry(session, current)
                started = await self.entries.mark_running(session, entry_id, self._now())
            finally:
                self._restart_ticker()
            logger.info("Timer started", extra={"entry_id": entry_id})
            return started

    async def stop(self, session: WorkspaceSession) -> Optional[TimeEntry]:
        """Stop the running entry. A no-op returning None when Idle."""
        async with self._lock:
            current = self.active
            if current is None:
                return None
            try:
                stopped = await self._stop_entry(session, current)
            finally:
                self._restart_ticker()
            logger.info("Timer stopped", extra={"entry_id": stopped.id, "duration": stopped.duration})
            return stopped

    async def quick_start(self, session: WorkspaceSession, project_name: str,
                          description: Optional[str] = None) -> TimeEntry:
        """Create a new entry that is already running."""
        if not project_name or not project_name.strip():
            raise ValidationError("project_name must not be empty", field="project_name")
        async with self._lock:
            current = self.active
            try:
                if current is not None:
                    await self._stop_entry(session, current)
                entry = await self.entries.create_running(
                    session, project_name, description, start_time=self._now()
                )
            finally:
                self._restart_ticker()
            logger.info("Timer quick-started", extra={"entry_id": entry.id})
            return entry

    async def discard(self, session: WorkspaceSession, entry_id: str) -> None:
        """Delete an entry; deleting the running one leaves the session Idle."""
        async with self._lock:
            try:
                await self.entries.delete(session, entry_id)
            finally:
                self._restart_ticker()

    # Ticker

    def start_ticker(self, callback: Callable[[int], None]) -> None:
        """Report elapsed seconds to ``callback`` while Running. Needs a running loop."""
        self._on_tick = callback
        self._restart_ticker()

    def _restart_ticker(self) -> None:
        self._cancel_ticker()
        self.elapsed = 0
        if self._on_tick is not None and self.active is not None:
            self._ticker = asyncio.get_running_loop().create_task(self._tick())

    def _cancel_ticker(self) -> None:
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None

    async def _tick(self) -> None:
        while True:
            await asyncio.sleep(self.tick_interval)
            self.elapsed = self.elapsed_seconds()
            if self._on_tick is not None:
                self._on_tick(self.elapsed)

    async def close(self) -> None:
        self._on_tick = None
        ticker, self._ticker = self._ticker, None
        self.elapsed = 0
        if ticker is not None:
            ticker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await ticker
