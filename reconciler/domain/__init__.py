"""
Domain layer: the join state and the events that feed it.

No infrastructure imports here; stores, queues and API clients depend on this
package, never the other way round.
"""
from .events import (
    Ignored,
    Invoiced,
    Malformed,
    NeedsManualReview,
    NormalizedEvent,
    Notified,
    OrderCreated,
    PaymentConfirmed,
    ProcessingOutcome,
    RetryQueued,
)
from .models import (
    CombinedInvoiceRequest,
    CustomerProfile,
    InvoiceLine,
    LineItem,
    OrderRecord,
    PaymentEvent,
    RetryEnvelope,
)

__all__ = [
    "CombinedInvoiceRequest",
    "CustomerProfile",
    "Ignored",
    "InvoiceLine",
    "Invoiced",
    "LineItem",
    "Malformed",
    "NeedsManualReview",
    "NormalizedEvent",
    "Notified",
    "OrderCreated",
    "OrderRecord",
    "PaymentConfirmed",
    "PaymentEvent",
    "ProcessingOutcome",
    "RetryEnvelope",
    "RetryQueued",
]
