from datetime import date, datetime, timezone

import pytest

from errors import ValidationError
from filters import (
    filter_tasks, invoice_stats, is_overdue, note_stats, search, search_invoices, search_notes,
    search_tasks, search_time_entries, task_stats, time_stats,
)
from invoicing import InvoiceItem
from schemas import Client, Invoice, Note, Task, TimeEntry

NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)
STAMP = datetime(2024, 1, 10, 9, 0, tzinfo=timezone.utc)


def _task(title, completed=False, due=None, description=None):
    return Task(id=title, title=title, description=description, completed=completed, due_date=due,
                user_id="u", created_at=STAMP, updated_at=STAMP)


def _invoice(number, client, status="draft", rate=100):
    return Invoice(id=number, invoice_number=number, client=Client(name=client),
                   invoice_date=date(2024, 1, 1), items=[InvoiceItem(id="1", rate=rate)],
                   status=status, user_id="u", created_at=STAMP, updated_at=STAMP)


def _entry(name, duration=None, created=STAMP, running=False, description=None):
    end = None if running or duration is None else created
    return TimeEntry(id=name, project_name=name, description=description, start_time=created,
                     end_time=end, duration=None if running else duration, is_running=running,
                     user_id="u", created_at=created)


@pytest.fixture
def tasks():
    return [
        _task("Write report", description="quarterly numbers"),
        _task("Pay rent", completed=True, due=date(2024, 1, 1)),
        _task("Call bank", due=date(2024, 1, 14)),
        _task("Plan trip", due=date(2024, 2, 1)),
    ]


class TestSearch:
    def test_case_insensitive_and_order_preserving(self, tasks):
        assert [t.title for t in search_tasks(tasks, "T")] == ["Write report", "Pay rent", "Plan trip"]
        assert [t.title for t in search_tasks(tasks, "PA")] == ["Pay rent"]

    def test_matches_description_only(self, tasks):
        assert [t.title for t in search_tasks(tasks, "Quarterly")] == ["Write report"]

    def test_empty_term_returns_everything(self, tasks):
        assert search_tasks(tasks, "") == tasks

    def test_notes_search_content(self):
        notes = [Note(id="1", title="Meeting", content="Roadmap review", user_id="u",
                      created_at=STAMP, updated_at=STAMP),
                 Note(id="2", title="Groceries", content="milk", user_id="u",
                      created_at=STAMP, updated_at=STAMP)]
        assert [n.id for n in search_notes(notes, "roadmap")] == ["1"]

    def test_invoices_by_client_or_number(self):
        invoices = [_invoice("INV-2024-001", "Acme Corp"), _invoice("INV-2024-002", "Globex")]
        assert [i.id for i in search_invoices(invoices, "acme")] == ["INV-2024-001"]
        assert [i.id for i in search_invoices(invoices, "002")] == ["INV-2024-002"]

    def test_time_entries(self):
        entries = [_entry("Website", description="landing page"), _entry("Billing")]
        assert [e.id for e in search_time_entries(entries, "LANDING")] == ["Website"]

    def test_missing_attribute_does_not_match(self, tasks):
        assert search(tasks, "x", ["nonexistent.path"]) == []


class TestStatusFilter:
    def test_pending_is_exactly_incomplete(self, tasks):
        pending = filter_tasks(tasks, "pending")
        assert pending == [t for t in tasks if not t.completed]

    def test_completed(self, tasks):
        assert [t.title for t in filter_tasks(tasks, "completed")] == ["Pay rent"]

    def test_all_keeps_full_snapshot(self, tasks):
        assert len(filter_tasks(tasks, "all")) == len(tasks)

    def test_unknown_filter(self, tasks):
        with pytest.raises(ValidationError):
            filter_tasks(tasks, "archived")


class TestStats:
    def test_task_stats(self, tasks):
        stats = task_stats(tasks, NOW)
        assert stats == (4, 1, 3, 1)

    def test_overdue_ignores_completed_and_undated(self, tasks):
        assert [t.title for t in tasks if is_overdue(t, NOW)] == ["Call bank"]

    def test_due_today_counts_once_the_day_started(self):
        assert is_overdue(_task("today", due=date(2024, 1, 15)), NOW)

    def test_invoice_stats(self):
        invoices = [_invoice("1", "a"), _invoice("2", "b", "sent", 50), _invoice("3", "c", "paid", 25)]
        stats = invoice_stats(invoices)
        assert stats._asdict() == {"total": 3, "draft": 1, "sent": 1, "paid": 1, "total_amount": 175}

    def test_time_stats(self):
        today = datetime(2024, 1, 15, 8, 0, tzinfo=timezone.utc)
        entries = [_entry("a", 600), _entry("b", 120, created=today),
                   _entry("c", created=today, running=True), _entry("d")]
        stats = time_stats(entries, NOW)
        assert stats.total_seconds == 720
        assert stats.today_seconds == 120
        assert stats.entries == 4
        assert stats.running is True

    def test_note_stats(self):
        assert note_stats([]).total == 0
