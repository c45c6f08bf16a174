"""
Normalized inbound events and engine outcomes.

Both are closed sets: the normalizer yields exactly one ``NormalizedEvent``
variant per payload and the engine yields exactly one ``ProcessingOutcome``
variant per confirmed payment.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Literal, Optional, Tuple, Union

from reconciler.domain.models import LineItem, PaymentEvent

Source = Literal["order", "payment"]


@dataclass(frozen=True)
class OrderCreated:
    order_id: str
    items: Tuple[LineItem, ...]
    webhook_type: str


@dataclass(frozen=True)
class PaymentConfirmed:
    event: PaymentEvent


@dataclass(frozen=True)
class Ignored:
    """Acknowledged without side effects (unsupported type)."""

    source: Source
    reason: str


@dataclass(frozen=True)
class Malformed:
    """Rejected as a client error; nothing persisted, nothing retried."""

    source: Source
    reason: str


@dataclass(frozen=True)
class NeedsManualReview:
    """A valid payment that cannot be joined automatically."""

    event: PaymentEvent
    reason: str


NormalizedEvent = Union[OrderCreated, PaymentConfirmed, Ignored, Malformed, NeedsManualReview]


@dataclass(frozen=True)
class ProcessingOutcome:
    """Base for the three terminal results of processing a confirmed payment."""

    status: ClassVar[str] = ""

    order_ref: Optional[str]
    payment_id: str

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"status": self.status}
        result.update(
            {k: v for k, v in self.__dict__.items() if v is not None}
        )
        return result


@dataclass(frozen=True)
class RetryQueued(ProcessingOutcome):
    status: ClassVar[str] = "retry_queued"

    attempt: int = 1
    delay_seconds: float = 0.0


@dataclass(frozen=True)
class Invoiced(ProcessingOutcome):
    status: ClassVar[str] = "invoiced"

    invoice_id: Optional[str] = None
    duplicate: bool = False


@dataclass(frozen=True)
class Notified(ProcessingOutcome):
    status: ClassVar[str] = "notified"

    reason: str = ""
    delivered: bool = True
