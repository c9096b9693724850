#!/usr/bin/env python3
"""
Seed one user's workspace with sample tasks, notes, an invoice and a
finished time entry.

Everything goes through the stores and the time session, so the sample
records pass the same validation as API writes and the invoice totals come
from the invoice engine.

Usage:
    WORKSPACE_STORE=mongo DATABASE_URL=... DATABASE_NAME=... \\
        python3 seed.py --user-id <id>
"""
import argparse
import asyncio
import sys
from datetime import timedelta
from typing import Dict, Optional

from clock import Clock, ManualClock, SystemClock
from database import DocumentStore, get_document_store
from invoicing import InvoiceDraft
from session import WorkspaceSession
from workspace import Workspace

TRACKED_SECONDS = 3600


async def seed_workspace(store: DocumentStore, user_id: str,
                         clock: Optional[Clock] = None) -> Dict[str, int]:
    """Write the sample records for ``user_id`` and return counts per collection."""
    now = (clock or SystemClock()).now()
    # Runs an hour behind so the time entry can finish at ``now``
    seed_clock = ManualClock(now - timedelta(seconds=TRACKED_SECONDS))
    session = WorkspaceSession.signed_in(user_id)
    workspace = Workspace(store, seed_clock)
    await workspace.load_all(session)

    await workspace.tasks.create(session, {
        "title": "Review Project Proposal",
        "description": "Review the new project proposal from the client.",
        "priority": "high",
    })
    done = await workspace.tasks.create(session, {
        "title": "Update Website Content",
        "description": "Update the homepage content with the new marketing copy.",
        "priority": "medium",
    })
    await workspace.tasks.toggle(session, done.id)

    await workspace.notes.create(session, {
        "title": "Meeting Notes",
        "content": "Discussed the new feature roadmap. Key takeaways:\n"
                   "- Focus on mobile responsiveness\n- Improve loading speed",
    })

    draft = InvoiceDraft(clock=seed_clock, tax_rate=10)
    draft.client_name = "Acme Corp"
    draft.client_email = "billing@acme.com"
    draft.client_address = "123 Business Rd, Tech City"
    draft.due_date = draft.invoice_date + timedelta(days=14)
    draft.update_item(draft.items[0].id, description="Web Development", quantity=10, rate=150)
    hosting = draft.add_item()
    draft.update_item(hosting.id, description="Hosting Setup", quantity=1, rate=200)
    invoice = await workspace.invoices.create(session, draft)
    await workspace.invoices.set_status(session, invoice.id, "sent")

    await workspace.timer.quick_start(session, "WorkflowHQ Dev", "Implementing the storage migration")
    seed_clock.advance(TRACKED_SECONDS)
    await workspace.timer.stop(session)
    await workspace.close()

    return {
        "tasks": 2,
        "notes": 1,
        "invoices": 1,
        "time_entries": 1,
    }


def main() -> int:
    parser = argparse.ArgumentParser(description="Seed sample workspace data for one user.")
    parser.add_argument("--user-id", required=True, help="Owner of the seeded records")
    args = parser.parse_args()

    try:
        store = get_document_store()
    except RuntimeError as exc:
        print(f"  ERROR: {exc}", file=sys.stderr)
        return 1

    print(f"Seeding data for user: {args.user_id}")
    counts = asyncio.run(seed_workspace(store, args.user_id))
    for collection, count in counts.items():
        print(f"  {collection}: {count}")
    print("Seeding complete.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
