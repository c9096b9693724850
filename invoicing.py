"""
Invoice arithmetic and draft editing.

Line amounts and totals are always derived, never entered: an item's
amount is quantity x rate, and an invoice's subtotal, tax and total are
recomputed from its items and tax rate on every read. No rounding happens
here; formatting to two decimals is left to whoever displays the number.
"""
import math
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, NamedTuple, Optional

from pydantic import BaseModel, computed_field, field_validator

from clock import Clock, SystemClock
from errors import InvalidStatusTransitionError, RecordNotFoundError, ValidationError

MIN_QUANTITY = 1
MIN_RATE = 0.0

INVOICE_STATUSES = ("draft", "sent", "paid")

# Leaving "paid" is not allowed; everything else may move forward, and a
# sent invoice may be pulled back to draft.
ALLOWED_TRANSITIONS: Dict[str, frozenset] = {
    "draft": frozenset({"sent", "paid"}),
    "sent": frozenset({"paid", "draft"}),
    "paid": frozenset(),
}


def _to_finite(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def coerce_quantity(value: Any) -> int:
    number = _to_finite(value)
    if number is None:
        return MIN_QUANTITY
    return max(MIN_QUANTITY, int(number))


def coerce_rate(value: Any) -> float:
    number = _to_finite(value)
    if number is None:
        return MIN_RATE
    return max(MIN_RATE, number)


def coerce_tax_rate(value: Any) -> float:
    number = _to_finite(value)
    if number is None:
        return 0.0
    return max(0.0, number)


def compute_item_amount(quantity: Any, rate: Any) -> float:
    return coerce_quantity(quantity) * coerce_rate(rate)


class InvoiceTotals(NamedTuple):
    subtotal: float
    tax_amount: float
    total: float


def compute_totals(items: Iterable[Any], tax_rate: Any) -> InvoiceTotals:
    """Subtotal, tax and total for a list of items at ``tax_rate`` percent."""
    subtotal = sum(item.amount for item in items)
    tax_amount = subtotal * coerce_tax_rate(tax_rate) / 100
    return InvoiceTotals(subtotal, tax_amount, subtotal + tax_amount)


class InvoiceItem(BaseModel):
    id: str
    description: str = ""
    quantity: int = MIN_QUANTITY
    rate: float = MIN_RATE

    @field_validator("quantity", mode="before")
    @classmethod
    def _coerce_quantity(cls, v):
        return coerce_quantity(v)

    @field_validator("rate", mode="before")
    @classmethod
    def _coerce_rate(cls, v):
        return coerce_rate(v)

    @computed_field  # type: ignore[misc]
    @property
    def amount(self) -> float:
        return compute_item_amount(self.quantity, self.rate)


def check_status_transition(current: str, requested: str) -> None:
    if requested not in INVOICE_STATUSES:
        raise ValidationError(f"Unknown invoice status: {requested}", field="status")
    if requested == current:
        return
    if requested not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise InvalidStatusTransitionError(current, requested)


def generate_invoice_number(now: datetime) -> str:
    suffix = int(now.timestamp() * 1000) % 1_000_000
    return f"INV-{now.year}-{suffix:06d}"


class InvoiceDraft:
    """An unsaved invoice being edited: client details, dates, items, tax rate."""

    def __init__(self, clock: Optional[Clock] = None, tax_rate: Any = 0):
        self._clock = clock or SystemClock()
        self.client_name = ""
        self.client_email = ""
        self.client_address = ""
        self.invoice_date: date = self._clock.now().date()
        self.due_date: Optional[date] = None
        self.tax_rate = coerce_tax_rate(tax_rate)
        self.items: List[InvoiceItem] = []
        self.add_item()

    def _new_item_id(self) -> str:
        taken = {item.id for item in self.items}
        stamp = int(self._clock.now().timestamp() * 1000)
        while str(stamp) in taken:
            stamp += 1
        return str(stamp)

    def _index(self, item_id: str) -> int:
        for index, item in enumerate(self.items):
            if item.id == item_id:
                return index
        raise RecordNotFoundError("invoice_items", item_id)

    def add_item(self) -> InvoiceItem:
        item = InvoiceItem(id=self._new_item_id())
        self.items.append(item)
        return item

    def update_item(self, item_id: str, **fields: Any) -> InvoiceItem:
        unknown = set(fields) - {"description", "quantity", "rate"}
        if unknown:
            raise ValidationError(f"Cannot edit item field(s): {', '.join(sorted(unknown))}")
        index = self._index(item_id)
        data = self.items[index].model_dump(exclude={"amount"})
        data.update(fields)
        self.items[index] = InvoiceItem.model_validate(data)
        return self.items[index]

    def remove_item(self, item_id: str) -> None:
        index = self._index(item_id)
        if len(self.items) < 2:
            raise ValidationError("An invoice needs at least one item", field="items")
        del self.items[index]

    def set_tax_rate(self, value: Any) -> None:
        self.tax_rate = coerce_tax_rate(value)

    @property
    def totals(self) -> InvoiceTotals:
        return compute_totals(self.items, self.tax_rate)

    def to_fields(self) -> Dict[str, Any]:
        return {
            "client": {
                "name": self.client_name,
                "email": self.client_email,
                "address": self.client_address,
            },
            "invoice_date": self.invoice_date,
            "due_date": self.due_date,
            "items": [item.model_dump() for item in self.items],
            "tax_rate": self.tax_rate,
        }
