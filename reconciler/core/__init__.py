"""Core reconciliation logic: normalization, join state, retries, the engine."""
from .locale import LocaleClassifier
from .normalizer import WebhookNormalizer
from .order_store import ConflictStrategy, InMemoryOrderStore, OrderStore
from .reconciliation import InvoiceConfig, ReconciliationEngine
from .retry_scheduler import (
    BackoffPolicy,
    ClaimedEnvelope,
    InMemoryRetryScheduler,
    RedisRetryScheduler,
    RetryScheduler,
)

__all__ = [
    "BackoffPolicy",
    "ClaimedEnvelope",
    "ConflictStrategy",
    "InMemoryOrderStore",
    "InMemoryRetryScheduler",
    "InvoiceConfig",
    "LocaleClassifier",
    "OrderStore",
    "ReconciliationEngine",
    "RedisRetryScheduler",
    "RetryScheduler",
    "WebhookNormalizer",
]
