"""
Workspace Document Schemas

Each Pydantic model below maps to a MongoDB collection named by its
``collection`` attribute:
- User -> "users"
- Note -> "notes"
- Task -> "tasks"
- TimeEntry -> "time_entries"
- Invoice -> "invoices"

Attribute names are the persisted field names, so documents written here
stay readable by other clients of the same store. Timestamps are stored as
ISO-8601 strings and date-only fields as YYYY-MM-DD.
"""
from datetime import date, datetime, timedelta, timezone
from typing import Annotated, Any, ClassVar, Dict, List, Literal, Mapping, Optional

from pydantic import (
    AfterValidator, BaseModel, EmailStr, Field, PlainSerializer, field_validator, model_validator,
)

from invoicing import InvoiceItem, compute_totals, coerce_tax_rate

Priority = Literal["low", "medium", "high"]
InvoiceStatus = Literal["draft", "sent", "paid"]

TIMESTAMP_RESOLUTION = timedelta(milliseconds=1)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def truncate_timestamp(value: datetime) -> datetime:
    """Drop sub-millisecond precision, the resolution timestamps are stored at."""
    value = as_utc(value)
    return value.replace(microsecond=value.microsecond // 1000 * 1000)


def iso_timestamp(value: datetime) -> str:
    """2024-01-15T09:00:00.000Z, the format the store already holds."""
    return as_utc(value).isoformat(timespec="milliseconds").replace("+00:00", "Z")


Timestamp = Annotated[datetime, AfterValidator(as_utc), PlainSerializer(iso_timestamp, when_used="json")]


def _require_text(value: str, name: str) -> str:
    if value is None or not str(value).strip():
        raise ValueError(f"{name} must not be empty")
    return value


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


class User(BaseModel):
    collection: ClassVar[str] = "users"

    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="BCrypt hashed password")


class Record(BaseModel):
    """Fields shared by every owner-scoped record."""

    collection: ClassVar[str]
    order_field: ClassVar[str] = "created_at"
    # Fields a patch may never touch
    read_only: ClassVar[frozenset] = frozenset({"id", "user_id", "created_at"})

    id: Optional[str] = None
    user_id: str = Field(..., description="Owner's user id")
    created_at: Timestamp

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]):
        data = dict(doc)
        if "_id" in data:
            data.setdefault("id", str(data.pop("_id")))
        return cls.model_validate(data)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude={"id"})


class StampedRecord(Record):
    updated_at: Timestamp

    @model_validator(mode="before")
    @classmethod
    def _default_updated_at(cls, data):
        # Older invoice documents were written without updated_at
        if isinstance(data, dict) and data.get("updated_at") is None and "created_at" in data:
            data = {**data, "updated_at": data["created_at"]}
        return data


class Note(StampedRecord):
    collection: ClassVar[str] = "notes"
    order_field: ClassVar[str] = "updated_at"

    title: str
    content: str = ""

    @field_validator("title")
    @classmethod
    def _title_required(cls, v):
        return _require_text(v, "title")


class Task(StampedRecord):
    collection: ClassVar[str] = "tasks"

    title: str
    description: Optional[str] = None
    priority: Priority = "medium"
    completed: bool = False
    due_date: Optional[date] = None

    @field_validator("title")
    @classmethod
    def _title_required(cls, v):
        return _require_text(v, "title")

    @field_validator("due_date", mode="before")
    @classmethod
    def _blank_due_date(cls, v):
        return _blank_to_none(v)


class TimeEntry(Record):
    collection: ClassVar[str] = "time_entries"
    # Running state is only changed by the time session
    read_only: ClassVar[frozenset] = Record.read_only | {"start_time", "end_time", "duration", "is_running"}

    project_name: str
    description: Optional[str] = None
    start_time: Timestamp
    end_time: Optional[Timestamp] = None
    duration: Optional[int] = Field(None, ge=0, description="seconds")
    is_running: bool = False

    @field_validator("project_name")
    @classmethod
    def _project_required(cls, v):
        return _require_text(v, "project_name")

    @model_validator(mode="after")
    def _duration_matches_state(self):
        if self.is_running and (self.end_time is not None or self.duration is not None):
            raise ValueError("a running entry has no end_time or duration")
        if not self.is_running and (self.end_time is None) != (self.duration is None):
            raise ValueError("end_time and duration are set together")
        return self


class Client(BaseModel):
    name: str
    email: str = ""
    address: str = ""

    @field_validator("name")
    @classmethod
    def _name_required(cls, v):
        return _require_text(v, "client name")


class Invoice(StampedRecord):
    collection: ClassVar[str] = "invoices"
    read_only: ClassVar[frozenset] = Record.read_only | {"invoice_number", "subtotal", "tax_amount", "total"}

    invoice_number: str
    client: Client
    invoice_date: date
    due_date: Optional[date] = None
    items: List[InvoiceItem] = Field(..., min_length=1)
    subtotal: float = 0.0
    tax_rate: float = 0.0
    tax_amount: float = 0.0
    total: float = 0.0
    status: InvoiceStatus = "draft"

    @field_validator("tax_rate", mode="before")
    @classmethod
    def _coerce_tax_rate(cls, v):
        return coerce_tax_rate(v)

    @field_validator("due_date", mode="before")
    @classmethod
    def _blank_due_date(cls, v):
        return _blank_to_none(v)

    @model_validator(mode="after")
    def _recompute_totals(self):
        self.subtotal, self.tax_amount, self.total = compute_totals(self.items, self.tax_rate)
        return self

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]):
        data = dict(doc)
        if "client" not in data:
            data["client"] = {
                "name": data.pop("client_name", ""),
                "email": data.pop("client_email", "") or "",
                "address": data.pop("client_address", "") or "",
            }
        return super().from_document(data)

    def to_document(self) -> Dict[str, Any]:
        doc = super().to_document()
        client = doc.pop("client")
        doc["client_name"] = client["name"]
        doc["client_email"] = client["email"]
        doc["client_address"] = client["address"]
        return doc
