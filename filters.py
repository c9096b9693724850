"""
Search, filtering and aggregate statistics over a store snapshot.

Everything here is a pure function of its inputs: results preserve the
snapshot's order and nothing is cached between calls.
"""
from datetime import datetime, time, timezone
from typing import Any, Iterable, List, NamedTuple, Sequence, TypeVar

from errors import ValidationError
from schemas import Invoice, Note, Task, TimeEntry

T = TypeVar("T")

NOTE_SEARCH_FIELDS = ("title", "content")
TASK_SEARCH_FIELDS = ("title", "description")
INVOICE_SEARCH_FIELDS = ("client.name", "invoice_number")
TIME_ENTRY_SEARCH_FIELDS = ("project_name", "description")

TASK_STATUSES = ("all", "pending", "completed")


def _lookup(record: Any, path: str) -> Any:
    value = record
    for part in path.split("."):
        if value is None:
            return None
        value = getattr(value, part, None)
    return value


def search(records: Iterable[T], term: str, fields: Sequence[str]) -> List[T]:
    """Case-insensitive substring match of ``term`` against any of ``fields``."""
    needle = (term or "").lower()
    if not needle:
        return list(records)
    matched = []
    for record in records:
        for path in fields:
            value = _lookup(record, path)
            if value and needle in str(value).lower():
                matched.append(record)
                break
    return matched


def search_notes(notes: Iterable[Note], term: str) -> List[Note]:
    return search(notes, term, NOTE_SEARCH_FIELDS)


def search_tasks(tasks: Iterable[Task], term: str) -> List[Task]:
    return search(tasks, term, TASK_SEARCH_FIELDS)


def search_invoices(invoices: Iterable[Invoice], term: str) -> List[Invoice]:
    return search(invoices, term, INVOICE_SEARCH_FIELDS)


def search_time_entries(entries: Iterable[TimeEntry], term: str) -> List[TimeEntry]:
    return search(entries, term, TIME_ENTRY_SEARCH_FIELDS)


def filter_tasks(tasks: Iterable[Task], status: str = "all") -> List[Task]:
    if status not in TASK_STATUSES:
        raise ValidationError(f"Unknown task filter: {status}", field="status")
    if status == "pending":
        return [t for t in tasks if not t.completed]
    if status == "completed":
        return [t for t in tasks if t.completed]
    return list(tasks)


def is_overdue(task: Task, now: datetime) -> bool:
    # A due date means midnight UTC of that day
    if task.completed or task.due_date is None:
        return False
    return datetime.combine(task.due_date, time.min, tzinfo=timezone.utc) < now


class TaskStats(NamedTuple):
    total: int
    completed: int
    pending: int
    overdue: int


class InvoiceStats(NamedTuple):
    total: int
    draft: int
    sent: int
    paid: int
    total_amount: float


class TimeStats(NamedTuple):
    total_seconds: int
    today_seconds: int
    entries: int
    running: bool


class NoteStats(NamedTuple):
    total: int


def task_stats(tasks: Sequence[Task], now: datetime) -> TaskStats:
    completed = sum(1 for t in tasks if t.completed)
    return TaskStats(
        total=len(tasks),
        completed=completed,
        pending=len(tasks) - completed,
        overdue=sum(1 for t in tasks if is_overdue(t, now)),
    )


def invoice_stats(invoices: Sequence[Invoice]) -> InvoiceStats:
    return InvoiceStats(
        total=len(invoices),
        draft=sum(1 for i in invoices if i.status == "draft"),
        sent=sum(1 for i in invoices if i.status == "sent"),
        paid=sum(1 for i in invoices if i.status == "paid"),
        total_amount=sum(i.total for i in invoices),
    )


def time_stats(entries: Sequence[TimeEntry], now: datetime) -> TimeStats:
    """Tracked seconds overall and for entries created on ``now``'s (UTC) date."""
    today = now.astimezone(timezone.utc).date()
    return TimeStats(
        total_seconds=sum(e.duration or 0 for e in entries),
        today_seconds=sum(e.duration or 0 for e in entries if e.created_at.date() == today),
        entries=len(entries),
        running=any(e.is_running for e in entries),
    )


def note_stats(notes: Sequence[Note]) -> NoteStats:
    return NoteStats(total=len(notes))
