"""
Reconciliation engine: joins confirmed payments with stored orders.

The engine keeps no state between calls. Everything it knows about an order
lives in the order store and the retry queue, so any worker can process any
event for any order, in any order of arrival.

Per confirmed payment:
1. Order absent -> schedule a retry (or escalate once attempts run out)
2. Order present -> look up the customer, classify domestic/foreign,
. Order already invoiced for another charge -> manual review
"""
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Callable, Optional

import structlog

from reconciler.config import Settings
from reconciler.core.locale import LocaleClassifier
from reconciler.core.order_store import OrderStore
from reconciler.core.retry_scheduler import RetryScheduler
from reconciler.domain import (
    CombinedInvoiceRequest,
    CustomerProfile,
    InvoiceLine,
    Invoiced,
    Notified,
    OrderCreated,
    OrderRecord,
    PaymentEvent,
    ProcessingOutcome,
    RetryEnvelope,
    RetryQueued,
)
from reconciler.errors import NotFoundError, NotificationDeliveryError
from reconciler.integrations.ledger_client import LedgerClient
from reconciler.integrations.notifier import WebhookNotifier
from reconciler.integrations.stripe_client import StripeCustomerClient
from reconciler.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

RETRY_EXHAUSTED = "retry_exhausted"
ALREADY_INVOICED = "order_already_invoiced"


@dataclass(frozen=True)
class InvoiceConfig:
    """Account codes and customer-facing strings used when invoicing."""

    bank_account_code: str
    payment_account: str
    domestic_income_account: int = 3010
    export_income_account: int = 3110
    domestic_vat_type: str = "HIGH"
    export_vat_type: str = "EXEMPT_IMPORT_EXPORT"
    due_days: int = 30
    invoice_text_domestic: str = ""
    invoice_text_foreign: str = ""
    receipt_subject: str = ""
    receipt_message_domestic: str = "{name}"
    receipt_message_foreign: str = "{name}"
    contact_language_domestic: str = "Norwegian"
    contact_language_foreign: str = "English"
    suppress_duplicate_invoices: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "InvoiceConfig":
        return cls(
            bank_account_code=settings.ledger_bank_account_code,
            payment_account=settings.ledger_payment_account,
            domestic_income_account=settings.domestic_income_account,
            export_income_account=settings.export_income_account,
            domestic_vat_type=settings.domestic_vat_type,
            export_vat_type=settings.export_vat_type,
            due_days=settings.invoice_due_days,
            invoice_text_domestic=settings.invoice_text_domestic,
            invoice_text_foreign=settings.invoice_text_foreign,
            receipt_subject=settings.receipt_subject,
            receipt_message_domestic=settings.receipt_message_domestic,
            receipt_message_foreign=settings.receipt_message_foreign,
            contact_language_domestic=settings.contact_language_domestic,
            contact_language_foreign=settings.contact_language_foreign,
            suppress_duplicate_invoices=settings.suppress_duplicate_invoices,
        )

    def invoice_text(self, is_domestic: bool) -> str:
        return self.invoice_text_domestic if is_domestic else self.invoice_text_foreign

    def receipt_message(self, is_domestic: bool, name: str) -> str:
        template = self.receipt_message_domestic if is_domestic else self.receipt_message_foreign
        return template.format(name=name)

    def contact_language(self, is_domestic: bool) -> str:
        return self.contact_language_domestic if is_domestic else self.contact_language_foreign


class ReconciliationEngine:
    """
    Processes order and payment events against the order store.

    Every collaborator is passed in; the engine never reads process-wide
    configuration or clients.
    """

    def __init__(
        self,
        order_store: OrderStore,
        retry_scheduler: RetryScheduler,
        customer_client: StripeCustomerClient,
        ledger_client: LedgerClient,
        notifier: WebhookNotifier,
        locale: LocaleClassifier,
        invoice_config: InvoiceConfig,
        today: Callable[[], date] = date.today,
    ):
        """
        Initialize reconciliation engine.

        Args:
            order_store: Durable join state
            retry_scheduler: Delay queue for payments whose order is missing
            customer_client: Payment provider customer lookup
            ledger_client: Invoicing API
            notifier: Manual review channel
            locale: Domestic/foreign classifier
            invoice_config: Account codes and customer-facing strings
            today: Source of the invoice issue date
        """
        self.order_store = order_store
        self.retry_scheduler = retry_scheduler
        self.customer_client = customer_client
        self.ledger_client = ledger_client
        self.notifier = notifier
        self.locale = locale
        self.invoice_config = invoice_config
        self.today = today

        logger.info(
            "reconciliation_engine_initialized",
            max_attempts=retry_scheduler.policy.max_attempts,
            suppress_duplicate_invoices=invoice_config.suppress_duplicate_invoices,
        )

    async def handle_order_created(self, event: OrderCreated) -> OrderRecord:
        """
        Store or merge an order.

        Raises:
            OrderConflictError: Items differ under the ``reject`` strategy
            StoreError: Store failure
        """
        return await self.order_store.upsert(event.order_id, event.items, event.webhook_type)

    async def process_payment(self, event: PaymentEvent, attempt: int = 0) -> ProcessingOutcome:
        """
        Reconcile a confirmed payment with its order.

        Args:
            event: Confirmed payment carrying an order reference
            attempt: Retries already spent on this payment (0 on first arrival)

        Returns:
            ProcessingOutcome: Exactly one of RetryQueued, Invoiced, Notified

        Raises:
            StoreError: Order store or retry queue failure
            ExternalServiceError: Payment provider or Ledger API failure
        """
        if event.order_ref is None:
            return await self.handle_manual_review(
                event, "A charge requires manual order handling due to missing metadata"
            )

        log = logger.bind(
            payment_id=event.payment_id, order_ref=event.order_ref, attempt=attempt
        )

        try:
            record = await self.order_store.require(event.order_ref)
        except NotFoundError:
            return await self._schedule_retry(event, attempt)

        suppress = self.invoice_config.suppress_duplicate_invoices
        if suppress and record.is_invoiced_for_other_payment(event.payment_id):
            log.warning(
                "order_invoiced_for_other_payment",
                invoice_id=record.invoice_id,
                invoiced_payment_id=record.invoiced_payment_id,
            )
            return await self.handle_manual_review(
                event,
                f"Order {event.order_ref} was already invoiced as {record.invoice_id} "
                f"for charge {record.invoiced_payment_id}",
                code=ALREADY_INVOICED,
            )

        if suppress and record.is_invoice_sent:
            log.info("invoice_duplicate_suppressed", invoice_id=record.invoice_id)
            return self._finish(
                Invoiced(
                    order_ref=event.order_ref,
                    payment_id=event.payment_id,
                    invoice_id=record.invoice_id,
                    duplicate=True,
                )
            )

        profile = await self.customer_client.fetch_customer_profile(
            event.customer_id, event.receipt_email
        )
        is_domestic = self.locale.is_domestic(profile.country)

        if suppress and record.is_invoiced:
            invoice_id = record.invoice_id
            log.warning("invoice_send_resumed", invoice_id=invoice_id)
        else:
            request = self.build_invoice_request(record, event, profile, is_domestic)
            contact_id = await self.ledger_client.ensure_contact(
                profile, self.invoice_config.contact_language(is_domestic)
            )
            invoice_id = await self.ledger_client.create_invoice(request, contact_id)
            await self.order_store.mark_invoice_created(
                record.order_id, invoice_id, payment_id=event.payment_id
            )

        await self.ledger_client.send_invoice(
            invoice_id,
            recipient_email=profile.email,
            recipient_name=profile.name,
            message=self.invoice_config.receipt_message(is_domestic, profile.name),
            subject=self.invoice_config.receipt_subject,
        )
        await self.order_store.mark_invoice_sent(record.order_id)

        log.info("payment_invoiced", invoice_id=invoice_id, is_domestic=is_domestic)
        return self._finish(
            Invoiced(order_ref=event.order_ref, payment_id=event.payment_id, invoice_id=invoice_id)
        )

    async def process_retry(self, envelope: RetryEnvelope) -> ProcessingOutcome:
        """Reprocess a redelivered payment, carrying its attempt count."""
        return await self.process_payment(envelope.payment_event, attempt=envelope.attempt)

    async def handle_manual_review(
        self, event: PaymentEvent, reason: str, code: Optional[str] = None
    ) -> Notified:
        """
        Escalate a payment to a human.

        A failed notification is logged and reported in the outcome; it never
        fails the delivery.
        """
        delivered = True
        try:
            await self.notifier.notify_manual_review(event, reason)
        except NotificationDeliveryError as e:
            delivered = False
            logger.error(
                "manual_review_notification_failed",
                payment_id=event.payment_id,
                order_ref=event.order_ref,
                error=e.message,
            )

        outcome = Notified(
            order_ref=event.order_ref,
            payment_id=event.payment_id,
            reason=code or reason,
            delivered=delivered,
        )
        metrics.record_outcome(outcome.status)
        return outcome

    def build_invoice_request(
        self,
        record: OrderRecord,
        event: PaymentEvent,
        profile: CustomerProfile,
        is_domestic: bool,
    ) -> CombinedInvoiceRequest:
        """
        Join order items with the paying customer.

        Prices are converted to minor units here and nowhere else.
        """
        config = self.invoice_config
        income_account = (
            config.domestic_income_account if is_domestic else config.export_income_account
        )
        vat_type = config.domestic_vat_type if is_domestic else config.export_vat_type

        lines = tuple(
            InvoiceLine(
                product_name=item.name,
                description=item.name,
                comment=f"#{item.external_id}",
                unit_price=item.minor_unit_price(),
                quantity=item.quantity,
                currency=event.currency,
                vat_type=vat_type,
                income_account=income_account,
            )
            for item in record.items
        )

        issue_date = self.today()
        return CombinedInvoiceRequest(
            order_ref=record.order_id,
            payment_id=event.payment_id,
            customer=profile,
            is_domestic=is_domestic,
            currency=event.currency,
            lines=lines,
            issue_date=issue_date,
            due_date=issue_date + timedelta(days=config.due_days),
            invoice_text=config.invoice_text(is_domestic),
            bank_account_code=config.bank_account_code,
            payment_account=config.payment_account,
        )

    async def _schedule_retry(self, event: PaymentEvent, attempt: int) -> ProcessingOutcome:
        envelope = RetryEnvelope(
            order_ref=event.order_ref, payment_event=event, attempt=attempt + 1
        )
        delay = self.retry_scheduler.delay_for(envelope)

        if not await self.retry_scheduler.schedule(envelope, delay):
            return await self.handle_manual_review(
                event,
                f"Order {event.order_ref} was not received after {attempt} retries",
                code=RETRY_EXHAUSTED,
            )

        logger.info(
            "payment_order_not_found",
            payment_id=event.payment_id,
            order_ref=event.order_ref,
            attempt=envelope.attempt,
            delay_seconds=delay,
        )
        return self._finish(
            RetryQueued(
                order_ref=event.order_ref,
                payment_id=event.payment_id,
                attempt=envelope.attempt,
                delay_seconds=delay,
            )
        )

    @staticmethod
    def _finish(outcome: ProcessingOutcome) -> ProcessingOutcome:
        metrics.record_outcome(outcome.status)
        return outcome
