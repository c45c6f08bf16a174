"""
Tests for the reconciliation engine.

Collaborators at the network edge (Stripe, Ledger API, notification channel)
are mocks; the order store and retry queue are the in-memory backends.
"""
from datetime import date
from unittest.mock import AsyncMock

import pytest

from reconciler.core import InMemoryOrderStore, InMemoryRetryScheduler, ReconciliationEngine
from reconciler.core.reconciliation import ALREADY_INVOICED, RETRY_EXHAUSTED
from reconciler.domain import (
    CustomerProfile,
    Ignored,
    Invoiced,
    NeedsManualReview,
    Notified,
    RetryQueued,
)
from reconciler.errors import ExternalServiceError, NotificationDeliveryError, StoreError


async def store_order(engine: ReconciliationEngine, normalizer, payload) -> None:
    await engine.handle_order_created(normalizer.normalize_order(payload))


def payment(normalizer, payload):
    return normalizer.normalize_payment(payload).event


class TestScenarios:
    """End-to-end behaviour for the reference scenarios."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_scenario_a_foreign_order_invoiced_in_minor_units(
        self, engine, normalizer, order_store, ledger_client, order_payload, charge_payload
    ) -> None:
        await store_order(engine, normalizer, order_payload(order_id="123"))
        record = await order_store.get("123")
        assert record is not None
        assert len(record.items) == 1
        assert record.items[0].quantity == 2

        outcome = await engine.process_payment(
            payment(normalizer, charge_payload(order_number="123", currency="usd"))
        )

        assert isinstance(outcome, Invoiced)
        assert outcome.invoice_id == "inv-1"
        request, contact_id = ledger_client.create_invoice.await_args.args
        assert contact_id == "contact-1"
        assert request.is_domestic is False
        assert request.currency == "USD"
        (line,) = request.lines
        assert line.unit_price == 999
        assert line.quantity == 2
        assert line.income_account == 3110
        assert line.vat_type == "EXEMPT_IMPORT_EXPORT"
        assert line.comment == "#w1"
        assert line.product_name == "Widget"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_scenario_b_missing_order_queues_retry(
        self,
        engine,
        normalizer,
        retry_scheduler: InMemoryRetryScheduler,
        ledger_client,
        customer_client,
        charge_payload,
    ) -> None:
        outcome = await engine.process_payment(
            payment(normalizer, charge_payload(order_number="999"))
        )

        assert isinstance(outcome, RetryQueued)
        assert outcome.attempt == 1
        assert outcome.delay_seconds == 5
        (envelope,) = retry_scheduler.pending()
        assert envelope.order_ref == "999"
        assert envelope.attempt == 1
        customer_client.fetch_customer_profile.assert_not_awaited()
        ledger_client.ensure_contact.assert_not_awaited()
        ledger_client.create_invoice.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_scenario_c_missing_metadata_notifies(
        self, engine, normalizer, notifier, retry_scheduler, charge_payload
    ) -> None:
        event = normalizer.normalize_payment(charge_payload(order_number=None))
        assert isinstance(event, NeedsManualReview)

        outcome = await engine.handle_manual_review(event.event, event.reason)

        assert isinstance(outcome, Notified)
        assert outcome.delivered is True
        notifier.notify_manual_review.assert_awaited_once_with(event.event, event.reason)
        assert await retry_scheduler.pending_count() == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_scenario_d_unsupported_event_ignored(
        self, normalizer, order_store, ledger_client, charge_payload
    ) -> None:
        event = normalizer.normalize_payment(charge_payload(event_type="charge.failed"))

        assert isinstance(event, Ignored)
        assert len(order_store) == 0
        ledger_client.create_invoice.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payment_without_order_ref_is_escalated(
        self, engine, normalizer, notifier, charge_payload
    ) -> None:
        event = normalizer.normalize_payment(charge_payload(order_number=None)).event

        outcome = await engine.process_payment(event)

        assert isinstance(outcome, Notified)
        notifier.notify_manual_review.assert_awaited_once()


class TestInvoiceConstruction:
    """Request building and Ledger call sequence."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_domestic_customer(
        self, engine, normalizer, customer_client, ledger_client, order_payload, charge_payload
    ) -> None:
        customer_client.fetch_customer_profile.return_value = CustomerProfile(
            customer_id="cus_123", name="Ola Nordmann", email="ola@example.no", country=" norge "
        )
        await store_order(engine, normalizer, order_payload())

        await engine.process_payment(payment(normalizer, charge_payload(currency="nok")))

        profile, language = ledger_client.ensure_contact.await_args.args
        assert language == "Norwegian"
        request, _ = ledger_client.create_invoice.await_args.args
        assert request.is_domestic is True
        assert request.lines[0].income_account == 3010
        assert request.lines[0].vat_type == "HIGH"
        assert request.invoice_text.startswith("Faktura")
        send_kwargs = ledger_client.send_invoice.await_args.kwargs
        assert send_kwargs["message"].startswith("Hei Ola Nordmann")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_dates_and_accounts(
        self, engine, normalizer, ledger_client, order_payload, charge_payload
    ) -> None:
        await store_order(engine, normalizer, order_payload())

        await engine.process_payment(payment(normalizer, charge_payload()))

        request, _ = ledger_client.create_invoice.await_args.args
        assert request.issue_date == date(2024, 1, 15)
        assert request.due_date == date(2024, 2, 14)
        assert request.bank_account_code == "1920:10001"
        assert request.payment_account == "1920:10001"
        assert request.cash is True
        assert request.order_ref == "123"
        assert request.payment_id == "ch_123"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_ledger_call_sequence(
        self,
        engine,
        normalizer,
        order_store,
        ledger_client,
        foreign_profile,
        order_payload,
        charge_payload,
    ) -> None:
        await store_order(engine, normalizer, order_payload())

        await engine.process_payment(payment(normalizer, charge_payload()))

        ledger_client.ensure_contact.assert_awaited_once_with(foreign_profile, "English")
        ledger_client.send_invoice.assert_awaited_once()
        args, kwargs = ledger_client.send_invoice.await_args
        assert args == ("inv-1",)
        assert kwargs["recipient_email"] == "ada@example.com"
        assert kwargs["recipient_name"] == "Ada Lovelace"
        assert kwargs["subject"] == "Your receipt from Pattern Magicians"
        record = await order_store.get("123")
        assert record.invoice_id == "inv-1"
        assert record.is_invoice_sent

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_multiple_items_scaled_once(
        self, engine, normalizer, ledger_client, order_payload, charge_payload
    ) -> None:
        items = [
            {"name": "Pattern", "id": 17, "quantity": 1, "unit_price": "120.50"},
            {"name": "Yarn", "id": "y-2", "quantity": 3, "unit_price": 0.1},
        ]
        await store_order(engine, normalizer, order_payload(items=items))

        await engine.process_payment(payment(normalizer, charge_payload()))

        request, _ = ledger_client.create_invoice.await_args.args
        assert [(line.comment, line.unit_price, line.quantity) for line in request.lines] == [
            ("#17", 12050, 1),
            ("#y-2", 10, 3),
        ]


class TestOutOfOrderDelivery:
    """Payment before order, redeliveries and the attempt ceiling."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payment_before_order_converges_to_one_invoice(
        self,
        engine,
        normalizer,
        retry_scheduler,
        clock,
        ledger_client,
        order_payload,
        charge_payload,
    ) -> None:
        first = await engine.process_payment(payment(normalizer, charge_payload()))
        assert isinstance(first, RetryQueued)

        await store_order(engine, normalizer, order_payload())
        clock.advance(first.delay_seconds)
        (claimed,) = await retry_scheduler.claim_due(10, 60)

        outcome = await engine.process_retry(claimed.envelope)
        await retry_scheduler.ack(claimed)

        assert isinstance(outcome, Invoiced)
        ledger_client.create_invoice.assert_awaited_once()
        assert await retry_scheduler.pending_count() == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redelivered_envelope_does_not_double_invoice(
        self,
        engine,
        normalizer,
        retry_scheduler,
        clock,
        ledger_client,
        order_payload,
        charge_payload,
    ) -> None:
        """A lease that expires after success hands the envelope out again."""
        await engine.process_payment(payment(normalizer, charge_payload()))
        await store_order(engine, normalizer, order_payload())
        clock.advance(5)
        (claimed,) = await retry_scheduler.claim_due(10, 30)
        await engine.process_retry(claimed.envelope)

        clock.advance(30)
        (again,) = await retry_scheduler.claim_due(10, 30)
        outcome = await engine.process_retry(again.envelope)

        assert isinstance(outcome, Invoiced)
        assert outcome.duplicate is True
        ledger_client.create_invoice.assert_awaited_once()
        ledger_client.send_invoice.assert_awaited_once()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retry_bound_routes_to_manual_review(
        self, engine, normalizer, retry_scheduler, clock, notifier, charge_payload
    ) -> None:
        """max_attempts is 3: three retries, then dead letter and notification."""
        outcome = await engine.process_payment(payment(normalizer, charge_payload()))
        statuses = [outcome.status]

        while isinstance(outcome, RetryQueued):
            clock.advance(outcome.delay_seconds)
            (claimed,) = await retry_scheduler.claim_due(10, 60)
            outcome = await engine.process_retry(claimed.envelope)
            await retry_scheduler.ack(claimed)
            statuses.append(outcome.status)

        assert statuses == ["retry_queued", "retry_queued", "retry_queued", "notified"]
        assert isinstance(outcome, Notified)
        assert outcome.reason == RETRY_EXHAUSTED
        notifier.notify_manual_review.assert_awaited_once()
        assert await retry_scheduler.pending_count() == 0
        (dead,) = await retry_scheduler.dead_letters()
        assert dead.attempt == 4

        clock.advance(3600)
        assert await retry_scheduler.claim_due(10, 60) == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_backoff_grows_with_attempts(
        self, engine, normalizer, charge_payload
    ) -> None:
        event = payment(normalizer, charge_payload())

        delays = [(await engine.process_payment(event, attempt=n)).delay_seconds for n in range(3)]

        assert delays == [5, 10, 20]


class TestClassificationExhaustiveness:
    """Every confirmed payment ends in exactly one outcome with one side effect."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "order_present,attempt,expected",
        [
            (True, 0, Invoiced),
            (True, 3, Invoiced),
            (False, 0, RetryQueued),
            (False, 2, RetryQueued),
            (False, 3, Notified),
        ],
    )
    async def test_single_outcome(
        self,
        engine,
        normalizer,
        retry_scheduler,
        ledger_client,
        notifier,
        order_payload,
        charge_payload,
        order_present,
        attempt,
        expected,
    ) -> None:
        if order_present:
            await store_order(engine, normalizer, order_payload())

        outcome = await engine.process_payment(payment(normalizer, charge_payload()), attempt)

        assert type(outcome) is expected
        side_effects = [
            ledger_client.create_invoice.await_count,
            await retry_scheduler.pending_count(),
            notifier.notify_manual_review.await_count,
        ]
        assert sum(side_effects) == 1


class TestDuplicateInvoices:
    """Redelivered payments for orders that were already invoiced."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_payment_suppressed(
        self, engine, normalizer, ledger_client, customer_client, order_payload, charge_payload
    ) -> None:
        await store_order(engine, normalizer, order_payload())
        event = payment(normalizer, charge_payload())

        await engine.process_payment(event)
        outcome = await engine.process_payment(event)

        assert isinstance(outcome, Invoiced)
        assert outcome.duplicate is True
        assert outcome.invoice_id == "inv-1"
        ledger_client.create_invoice.assert_awaited_once()
        customer_client.fetch_customer_profile.assert_awaited_once()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_other_charge_for_invoiced_order_goes_to_manual_review(
        self,
        engine,
        normalizer,
        order_store,
        ledger_client,
        notifier,
        order_payload,
        charge_payload,
    ) -> None:
        """An upsell charged separately must not be swallowed as a duplicate."""
        await store_order(engine, normalizer, order_payload(order_id="7"))
        await engine.process_payment(
            payment(normalizer, charge_payload(order_number="7", charge_id="ch_A"))
        )
        await store_order(
            engine, normalizer, order_payload(order_id="7", webhook_type="upsell_paid")
        )

        outcome = await engine.process_payment(
            payment(normalizer, charge_payload(order_number="7", charge_id="ch_B"))
        )

        assert isinstance(outcome, Notified)
        assert outcome.reason == ALREADY_INVOICED
        assert outcome.payment_id == "ch_B"
        ledger_client.create_invoice.assert_awaited_once()
        notifier.notify_manual_review.assert_awaited_once()
        record = await order_store.get("7")
        assert record.invoiced_payment_id == "ch_A"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_other_charge_for_unsent_invoice_does_not_resume_send(
        self, engine, normalizer, order_store, ledger_client, order_payload, charge_payload
    ) -> None:
        await store_order(engine, normalizer, order_payload())
        await order_store.mark_invoice_created("123", "inv-9", payment_id="ch_A")

        outcome = await engine.process_payment(
            payment(normalizer, charge_payload(charge_id="ch_B"))
        )

        assert isinstance(outcome, Notified)
        assert outcome.reason == ALREADY_INVOICED
        ledger_client.send_invoice.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_created_but_unsent_invoice_resumes_at_send(
        self, engine, normalizer, order_store, ledger_client, order_payload, charge_payload
    ) -> None:
        await store_order(engine, normalizer, order_payload())
        await order_store.mark_invoice_created("123", "inv-9")

        outcome = await engine.process_payment(payment(normalizer, charge_payload()))

        assert isinstance(outcome, Invoiced)
        assert outcome.invoice_id == "inv-9"
        ledger_client.create_invoice.assert_not_awaited()
        assert ledger_client.send_invoice.await_args.args == ("inv-9",)
        record = await order_store.get("123")
        assert record.is_invoice_sent

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_suppression_disabled_invoices_again(
        self,
        order_store,
        retry_scheduler,
        customer_client,
        ledger_client,
        notifier,
        invoice_config,
        normalizer,
        order_payload,
        charge_payload,
    ) -> None:
        from dataclasses import replace

        from reconciler.core import LocaleClassifier

        engine = ReconciliationEngine(
            order_store=order_store,
            retry_scheduler=retry_scheduler,
            customer_client=customer_client,
            ledger_client=ledger_client,
            notifier=notifier,
            locale=LocaleClassifier(),
            invoice_config=replace(invoice_config, suppress_duplicate_invoices=False),
        )
        await store_order(engine, normalizer, order_payload())
        event = payment(normalizer, charge_payload())

        await engine.process_payment(event)
        await engine.process_payment(event)

        assert ledger_client.create_invoice.await_count == 2


class TestErrorPropagation:
    """Store and external failures surface; notification failures do not."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_ledger_failure_propagates_and_leaves_order_uninvoiced(
        self, engine, normalizer, order_store, ledger_client, order_payload, charge_payload
    ) -> None:
        ledger_client.create_invoice.side_effect = ExternalServiceError(
            "Ledger API error", service="ledger", status_code=500
        )
        await store_order(engine, normalizer, order_payload())

        with pytest.raises(ExternalServiceError):
            await engine.process_payment(payment(normalizer, charge_payload()))

        record = await order_store.get("123")
        assert not record.is_invoiced
        ledger_client.send_invoice.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_store_failure_propagates(self, engine, normalizer, charge_payload) -> None:
        engine.order_store = AsyncMock(spec=InMemoryOrderStore)
        engine.order_store.require.side_effect = StoreError("database unavailable")

        with pytest.raises(StoreError):
            await engine.process_payment(payment(normalizer, charge_payload()))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_notification_failure_is_reported_not_raised(
        self, engine, normalizer, notifier, charge_payload
    ) -> None:
        notifier.notify_manual_review.side_effect = NotificationDeliveryError("channel down")
        event = payment(normalizer, charge_payload(order_number=None))

        outcome = await engine.handle_manual_review(event, "missing metadata")

        assert isinstance(outcome, Notified)
        assert outcome.delivered is False
