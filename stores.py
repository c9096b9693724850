"""
Collection stores.

A store keeps the local, ordered snapshot of one collection for one owner.
Every mutation is write-then-apply: validate, write to the document store,
and only when the write succeeded reconcile the snapshot. A failed write
raises RemoteOperationError and leaves the snapshot exactly as it was.
"""
from datetime import datetime
from typing import (
    Any, Awaitable, Callable, Dict, Generic, List, Mapping, Optional, Tuple, Type, TypeVar, Union,
)

from pydantic import ValidationError as PydanticValidationError

from clock import Clock, SystemClock
from database import DocumentStore
from errors import (
    OwnershipError, RecordNotFoundError, RemoteOperationError, ValidationError, WorkspaceError,
)
from invoicing import InvoiceDraft, check_status_transition, generate_invoice_number
from logging_config import get_logger
from schemas import (
    TIMESTAMP_RESOLUTION, Invoice, Note, Record, Task, TimeEntry, truncate_timestamp,
)
from session import WorkspaceSession

RecordT = TypeVar("RecordT", bound=Record)
Snapshot = Tuple[RecordT, ...]
Listener = Callable[[Tuple[Any, ...]], None]


def _changed_fields(old: Dict[str, Any], new: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in new.items() if old.get(k) != v}


def _validation_error(exc: PydanticValidationError) -> ValidationError:
    first = exc.errors()[0]
    field = ".".join(str(part) for part in first.get("loc", ())) or None
    return ValidationError(first.get("msg", str(exc)), field=field)


class CollectionStore(Generic[RecordT]):
    model: Type[RecordT]

    def __init__(self, store: DocumentStore, clock: Optional[Clock] = None):
        self.store = store
        self.clock = clock or SystemClock()
        self.log = get_logger(f"stores.{self.model.collection}")
        self._snapshot: Tuple[RecordT, ...] = ()
        self._owner_id: Optional[str] = None
        self._listeners: List[Listener] = []

    @property
    def collection(self) -> str:
        return self.model.collection

    @property
    def snapshot(self) -> Tuple[RecordT, ...]:
        return self._snapshot

    @property
    def owner_id(self) -> Optional[str]:
        return self._owner_id

    def get(self, record_id: str) -> RecordT:
        for record in self._snapshot:
            if record.id == record_id:
                return record
        raise RecordNotFoundError(self.collection, record_id)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener`` with every new snapshot; returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, records) -> None:
        self._snapshot = tuple(records)
        for listener in list(self._listeners):
            listener(self._snapshot)

    def _owner(self, session: WorkspaceSession) -> str:
        user_id = session.require_user()
        if self._owner_id is None:
            self._owner_id = user_id
        elif self._owner_id != user_id:
            raise OwnershipError(self._owner_id, user_id)
        return user_id

    def _stamp(self, previous: Optional[datetime] = None) -> datetime:
        # Stamps are strictly increasing per record, even on a coarse clock
        now = truncate_timestamp(self.clock.now())
        if previous is not None and now <= previous:
            now = previous + TIMESTAMP_RESOLUTION
        return now

    def _build(self, data: Mapping[str, Any]) -> RecordT:
        try:
            return self.model.model_validate(dict(data))
        except PydanticValidationError as exc:
            raise _validation_error(exc) from exc

    def _reject_read_only(self, fields: Mapping[str, Any]) -> None:
        blocked = sorted(set(fields) & (self.model.read_only | {"updated_at"}))
        if blocked:
            raise ValidationError(f"Read-only field(s): {', '.join(blocked)}", field=blocked[0])

    async def _remote(self, operation: str, call: Awaitable[Any], **context: Any) -> Any:
        try:
            result = await call
        except WorkspaceError:
            self.log.error("%s on %s failed", operation, self.collection, exc_info=True,
                           extra={"operation": operation, **context})
            raise
        except Exception as exc:
            self.log.error("%s on %s failed", operation, self.collection, exc_info=True,
                           extra={"operation": operation, **context})
            raise RemoteOperationError(operation, self.collection, exc) from exc
        self.log.debug("%s on %s ok", operation, self.collection,
                       extra={"operation": operation, **context})
        return result

    async def load(self, session: WorkspaceSession) -> Tuple[RecordT, ...]:
        """Replace the snapshot with the owner's records, newest first."""
        user_id = session.require_user()
        docs = await self._remote(
            "load",
            self.store.query(self.collection, user_id, self.model.order_field, descending=True),
            user_id=user_id,
        )
        records = []
        for doc in docs:
            try:
                records.append(self.model.from_document(doc))
            except PydanticValidationError:
                self.log.warning("Skipping malformed %s record", self.collection,
                                 extra={"record_id": doc.get("id")})
        self._owner_id = user_id
        self._publish(records)
        return self._snapshot

    def _prepare_create(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        return fields

    async def create(self, session: WorkspaceSession, fields: Mapping[str, Any]) -> RecordT:
        fields = dict(fields)
        self._reject_read_only(fields)
        return await self._insert(session, self._prepare_create(fields))

    async def _insert(self, session: WorkspaceSession, data: Dict[str, Any]) -> RecordT:
        user_id = self._owner(session)
        now = self._stamp()
        data = {**data, "user_id": user_id, "created_at": now}
        if "updated_at" in self.model.model_fields:
            data["updated_at"] = now
        record = self._build(data)
        record_id = await self._remote(
            "create", self.store.insert(self.collection, record.to_document()), user_id=user_id,
        )
        record = record.model_copy(update={"id": record_id})
        self._publish((record,) + self._snapshot)
        return record

    def _check_update(self, current: RecordT, patch: Dict[str, Any]) -> None:
        pass

    async def update(self, session: WorkspaceSession, record_id: str,
                     patch: Mapping[str, Any]) -> RecordT:
        patch = dict(patch)
        self._reject_read_only(patch)
        return await self._apply(session, record_id, patch)

    async def _apply(self, session: WorkspaceSession, record_id: str,
                     patch: Dict[str, Any]) -> RecordT:
        user_id = self._owner(session)
        current = self.get(record_id)
        self._check_update(current, patch)
        data = current.model_dump()
        data.update(patch)
        if "updated_at" in self.model.model_fields:
            data["updated_at"] = self._stamp(current.updated_at)
        updated = self._build(data)
        fields = _changed_fields(current.to_document(), updated.to_document())
        if not set(fields) - {"updated_at"}:
            return current
        await self._remote(
            "update", self.store.patch(self.collection, record_id, fields),
            user_id=user_id, record_id=record_id,
        )
        self._publish(updated if r.id == record_id else r for r in self._snapshot)
        return updated

    async def delete(self, session: WorkspaceSession, record_id: str) -> None:
        """Remove the record remotely, then locally. Irreversible."""
        user_id = self._owner(session)
        self.get(record_id)
        await self._remote(
            "delete", self.store.remove(self.collection, record_id),
            user_id=user_id, record_id=record_id,
        )
        self._publish(r for r in self._snapshot if r.id != record_id)


class NoteStore(CollectionStore[Note]):
    model = Note


class TaskStore(CollectionStore[Task]):
    model = Task

    async def toggle(self, session: WorkspaceSession, record_id: str) -> Task:
        task = self.get(record_id)
        return await self._apply(session, record_id, {"completed": not task.completed})


class TimeEntryStore(CollectionStore[TimeEntry]):
    """Time entries. Running-state changes are made by TimeSession only."""

    model = TimeEntry

    @property
    def running(self) -> Tuple[TimeEntry, ...]:
        return tuple(e for e in self._snapshot if e.is_running)

    def _prepare_create(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        fields.setdefault("start_time", truncate_timestamp(self.clock.now()))
        fields["is_running"] = False
        return fields

    async def create_running(self, session: WorkspaceSession, project_name: str,
                             description: Optional[str] = None,
                             start_time: Optional[datetime] = None) -> TimeEntry:
        return await self._insert(session, {
            "project_name": project_name,
            "description": description,
            "start_time": start_time or truncate_timestamp(self.clock.now()),
            "is_running": True,
        })

    async def mark_running(self, session: WorkspaceSession, record_id: str,
                           start_time: datetime) -> TimeEntry:
        return await self._apply(session, record_id, {
            "start_time": start_time, "is_running": True, "end_time": None, "duration": None,
        })

    async def mark_stopped(self, session: WorkspaceSession, record_id: str,
                           end_time: datetime, duration: int) -> TimeEntry:
        return await self._apply(session, record_id, {
            "end_time": end_time, "is_running": False, "duration": duration,
        })


class InvoiceStore(CollectionStore[Invoice]):
    model = Invoice

    async def create(self, session: WorkspaceSession,
                     fields: Union[InvoiceDraft, Mapping[str, Any]]) -> Invoice:
        if isinstance(fields, InvoiceDraft):
            fields = fields.to_fields()
        return await super().create(session, fields)

    def _prepare_create(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        fields["invoice_number"] = generate_invoice_number(self.clock.now())
        # New invoices always start as drafts
        fields["status"] = "draft"
        return fields

    def _check_update(self, current: Invoice, patch: Dict[str, Any]) -> None:
        if "status" in patch:
            check_status_transition(current.status, patch["status"])

    async def set_status(self, session: WorkspaceSession, record_id: str, status: str) -> Invoice:
        return await self.update(session, record_id, {"status": status})
