"""
Data model shared by the stores, the engine and the Ledger client.

Money is held as ``Decimal`` in major units until the Ledger boundary, where
``LineItem.minor_unit_price`` scales it by 100 exactly once.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class LineItem(BaseModel):
    """One purchased product on an order, in the order stream's field names."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(..., min_length=1)
    external_id: str = Field(..., alias="id")
    quantity: int = Field(..., gt=0)
    unit_price: Decimal = Field(..., ge=0)
    vat: Optional[Decimal] = None

    @field_validator("external_id", mode="before")
    @classmethod
    def coerce_external_id(cls, v: Any) -> Any:
        """Upstream sends numeric ids for some products."""
        if isinstance(v, bool):
            return v
        if isinstance(v, int):
            return str(v)
        return v

    @field_validator("unit_price", "vat", mode="before")
    @classmethod
    def coerce_float(cls, v: Any) -> Any:
        """Route floats through ``str`` so 9.99 stays 9.99."""
        if isinstance(v, float):
            return str(v)
        return v

    @field_validator("unit_price")
    @classmethod
    def validate_minor_units(cls, v: Decimal) -> Decimal:
        """Prices must convert to whole minor units without rounding."""
        if (v * 100) != (v * 100).to_integral_value():
            raise ValueError("unit_price must have at most two decimal places")
        return v

    def minor_unit_price(self) -> int:
        """Unit price in minor units (cents/øre)."""
        scaled = self.unit_price * 100
        return int(scaled)

    def to_storage(self) -> Dict[str, Any]:
        """Serialize with wire field names; decimals become strings."""
        return self.model_dump(mode="json", by_alias=True)


class OrderRecord(BaseModel):
    """
    Join state for one order identifier.

    ``webhook_types_seen`` only grows. ``version`` increments on every write and
    guards conditional updates. ``invoiced_payment_id`` is the charge the invoice was
    issued for.
    """

    model_config = ConfigDict(frozen=True)

    order_id: str
    items: Tuple[LineItem, ...]
    webhook_types_seen: frozenset[str]
    last_updated: datetime
    version: int = 1
    invoice_id: Optional[str] = None
    invoiced_payment_id: Optional[str] = None
    invoice_sent_at: Optional[datetime] = None

    @property
    def is_invoiced(self) -> bool:
        return self.invoice_id is not None

    @property
    def is_invoice_sent(self) -> bool:
        return self.invoice_sent_at is not None

    def is_invoiced_for_other_payment(self, payment_id: str) -> bool:
        return (
            self.invoiced_payment_id is not None and self.invoiced_payment_id != payment_id
        )


class PaymentEvent(BaseModel):
    """
    A confirmed charge, reduced to what reconciliation needs.

    ``charge`` keeps the provider's original charge object for manual review
    messages. The amount is not used: invoices are priced from order items.
    """

    model_config = ConfigDict(frozen=True)

    event_id: Optional[str] = None
    event_type: str
    payment_id: str
    customer_id: str
    currency: str = Field(..., min_length=3, max_length=3)
    order_ref: Optional[str] = None
    receipt_email: Optional[str] = None
    charge: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        return v.upper()


class RetryEnvelope(BaseModel):
    """
    "Try this payment again later."

    ``attempt`` starts at 1 and increases by one on every requeue.
    """

    model_config = ConfigDict(frozen=True)

    order_ref: str
    payment_event: PaymentEvent
    attempt: int = Field(..., ge=1)
    enqueued_at: datetime = Field(default_factory=utcnow)

    def next_attempt(self) -> RetryEnvelope:
        return RetryEnvelope(
            order_ref=self.order_ref,
            payment_event=self.payment_event,
            attempt=self.attempt + 1,
        )

    def to_message(self) -> Dict[str, Any]:
        """Queue wire shape."""
        return {
            "order_number": self.order_ref,
            "paymentEvent": self.payment_event.model_dump(mode="json"),
            "attempt": self.attempt,
            "timestamp": self.enqueued_at.isoformat(),
        }

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> RetryEnvelope:
        return cls(
            order_ref=message["order_number"],
            payment_event=PaymentEvent.model_validate(message["paymentEvent"]),
            attempt=message["attempt"],
            enqueued_at=datetime.fromisoformat(message["timestamp"]),
        )


class CustomerProfile(BaseModel):
    """Customer as known by the payment provider."""

    model_config = ConfigDict(frozen=True)

    customer_id: str
    name: str
    email: str
    country: str
    line1: Optional[str] = None
    line2: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None


class InvoiceLine(BaseModel):
    """Invoice line with the price already in minor units."""

    model_config = ConfigDict(frozen=True)

    product_name: str
    description: str
    comment: str
    unit_price: int
    quantity: int
    currency: str
    vat_type: str
    income_account: int


class CombinedInvoiceRequest(BaseModel):
    """Order items joined with the paying customer, ready for the Ledger API."""

    model_config = ConfigDict(frozen=True)

    order_ref: str
    payment_id: str
    customer: CustomerProfile
    is_domestic: bool
    currency: str
    lines: Tuple[InvoiceLine, ...]
    issue_date: date
    due_date: date
    invoice_text: str
    bank_account_code: str
    payment_account: str
    cash: bool = True
