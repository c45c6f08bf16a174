"""
Pytest configuration and fixtures.
"""
from datetime import date
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest

from reconciler.config import Settings
from reconciler.core import (
    BackoffPolicy,
    InMemoryOrderStore,
    InMemoryRetryScheduler,
    InvoiceConfig,
    LocaleClassifier,
    ReconciliationEngine,
    WebhookNormalizer,
)
from reconciler.domain import CustomerProfile
from reconciler.integrations import LedgerClient, StripeCustomerClient, WebhookNotifier

ISSUE_DATE = date(2024, 1, 15)


class FakeClock:
    """Settable epoch clock."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        redis_url="redis://localhost:6379/15",
        notification_webhook_url="https://hooks.example.test/manual-review",
        ledger_company_slug="pattern-magicians",
        ledger_api_token="test-token",
        ledger_bank_account_code="1920:10001",
        ledger_payment_account="1920:10001",
        stripe_secret_key="sk_test_fake_key_for_testing",
        app_name="invoice-reconciler-test",
        app_env="test",
        log_level="DEBUG",
        _env_file=None,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def normalizer() -> WebhookNormalizer:
    return WebhookNormalizer()


@pytest.fixture
def order_store() -> InMemoryOrderStore:
    return InMemoryOrderStore()


@pytest.fixture
def retry_scheduler(clock: FakeClock) -> InMemoryRetryScheduler:
    return InMemoryRetryScheduler(
        BackoffPolicy(base_delay=5.0, max_delay=900.0, max_attempts=3), clock=clock
    )


@pytest.fixture
def foreign_profile() -> CustomerProfile:
    return CustomerProfile(
        customer_id="cus_123",
        name="Ada Lovelace",
        email="ada@example.com",
        country="US",
        line1="1 Analytical Way",
        city="Boston",
        postal_code="02108",
    )


@pytest.fixture
def customer_client(foreign_profile: CustomerProfile) -> AsyncMock:
    client = AsyncMock(spec=StripeCustomerClient)
    client.fetch_customer_profile.return_value = foreign_profile
    return client


@pytest.fixture
def ledger_client() -> AsyncMock:
    client = AsyncMock(spec=LedgerClient)
    client.ensure_contact.return_value = "contact-1"
    client.create_invoice.return_value = "inv-1"
    client.send_invoice.return_value = None
    return client


@pytest.fixture
def notifier() -> AsyncMock:
    return AsyncMock(spec=WebhookNotifier)


@pytest.fixture
def invoice_config(test_settings: Settings) -> InvoiceConfig:
    return InvoiceConfig.from_settings(test_settings)


@pytest.fixture
def engine(
    order_store: InMemoryOrderStore,
    retry_scheduler: InMemoryRetryScheduler,
    customer_client: AsyncMock,
    ledger_client: AsyncMock,
    notifier: AsyncMock,
    invoice_config: InvoiceConfig,
) -> ReconciliationEngine:
    return ReconciliationEngine(
        order_store=order_store,
        retry_scheduler=retry_scheduler,
        customer_client=customer_client,
        ledger_client=ledger_client,
        notifier=notifier,
        locale=LocaleClassifier(),
        invoice_config=invoice_config,
        today=lambda: ISSUE_DATE,
    )


@pytest.fixture
def widget_items() -> List[Dict[str, Any]]:
    return [{"name": "Widget", "id": "w1", "quantity": 2, "unit_price": 9.99, "vat": 0}]


@pytest.fixture
def order_payload(widget_items: List[Dict[str, Any]]) -> Callable[..., Dict[str, Any]]:
    """Factory for order-stream webhook bodies."""

    def build(
        order_id: Any = "123",
        items: Optional[List[Dict[str, Any]]] = None,
        webhook_type: str = "order_paid",
    ) -> Dict[str, Any]:
        return {
            "webhook_type": webhook_type,
            "order": {"id": order_id, "items": widget_items if items is None else items},
        }

    return build


@pytest.fixture
def charge_payload() -> Callable[..., Dict[str, Any]]:
    """Factory for Stripe event bodies."""

    def build(
        order_number: Optional[str] = "123",
        currency: Optional[str] = "usd",
        event_type: str = "charge.succeeded",
        customer: Optional[str] = "cus_123",
        charge_id: str = "ch_123",
    ) -> Dict[str, Any]:
        charge: Dict[str, Any] = {
            "id": charge_id,
            "object": "charge",
            "amount": 1998,
            "receipt_email": "ada@example.com",
            "metadata": {},
        }
        if currency is not None:
            charge["currency"] = currency
        if customer is not None:
            charge["customer"] = customer
        if order_number is not None:
            charge["metadata"]["order_number"] = order_number
        return {"id": "evt_123", "type": event_type, "data": {"object": charge}}

    return build
