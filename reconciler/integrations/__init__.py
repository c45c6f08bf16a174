"""External service integrations: payment provider, Ledger API, notifications."""
from .ledger_client import LedgerClient
from .notifier import WebhookNotifier
from .stripe_client import CircuitBreaker, StripeCustomerClient

__all__ = [
    "CircuitBreaker",
    "LedgerClient",
    "StripeCustomerClient",
    "WebhookNotifier",
]
