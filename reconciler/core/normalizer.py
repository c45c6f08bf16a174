"""
Inbound webhook normalization.

Turns raw order-stream and payment-stream payloads into exactly one
``NormalizedEvent`` variant. Nothing downstream of this module reads the
raw dictionaries again, except to quote the original charge in manual
review messages.
"""
from typing import Any, Dict, FrozenSet, Iterable, Optional

import structlog
from pydantic import ValidationError

from reconciler.domain import (
    Ignored,
    LineItem,
    Malformed,
    NeedsManualReview,
    NormalizedEvent,
    OrderCreated,
    PaymentConfirmed,
    PaymentEvent,
)
from reconciler.domain.events import Source

logger = structlog.get_logger(__name__)

DEFAULT_ORDER_WEBHOOK_TYPES = frozenset({"upsell_paid", "product_paid", "order_paid"})
PAYMENT_SUCCEEDED_EVENT = "charge.succeeded"


class WebhookNormalizer:
    """
    Validates and shapes inbound webhook payloads.

    Order stream:
    - ``webhook_type`` outside the allow-list -> Ignored
    - missing ``order.id`` or non-list ``order.items`` -> Malformed

    Payment stream:
    - any event type other than ``charge.succeeded`` -> Ignored
    - missing charge id, currency or customer -> Malformed
    - missing ``metadata.order_number`` -> NeedsManualReview
    """

    def __init__(self, allowed_order_webhook_types: Optional[Iterable[str]] = None):
        """
        Initialize normalizer.

        Args:
            allowed_order_webhook_types: Order webhook types that are persisted
        """
        self.allowed_order_webhook_types: FrozenSet[str] = frozenset(
            allowed_order_webhook_types
            if allowed_order_webhook_types is not None
            else DEFAULT_ORDER_WEBHOOK_TYPES
        )

    def normalize(self, payload: Any, source: Source) -> NormalizedEvent:
        """
        Normalize a payload from the declared source.

        Args:
            payload: Decoded JSON body
            source: ``"order"`` or ``"payment"``

        Returns:
            NormalizedEvent: Exactly one variant
        """
        if source == "order":
            return self.normalize_order(payload)
        if source == "payment":
            return self.normalize_payment(payload)
        raise ValueError(f"Unknown webhook source: {source}")

    def normalize_order(self, payload: Any) -> NormalizedEvent:
        """Normalize an order-stream payload."""
        if not isinstance(payload, dict):
            return self._malformed("order", "Payload must be a JSON object")

        webhook_type = payload.get("webhook_type")
        if not webhook_type or webhook_type not in self.allowed_order_webhook_types:
            logger.info("order_webhook_ignored", webhook_type=webhook_type)
            return Ignored(source="order", reason=f"Unsupported webhook_type: {webhook_type}")

        order = payload.get("order")
        if not isinstance(order, dict) or not self._present(order.get("id")):
            return self._malformed("order", "Missing order or order.id")

        raw_id = order["id"]
        if isinstance(raw_id, bool) or not isinstance(raw_id, (str, int)):
            return self._malformed("order", "order.id must be a string or number")
        order_id = str(raw_id)

        raw_items = order.get("items")
        if not isinstance(raw_items, list):
            return self._malformed("order", "order.items is not an array", order_id=order_id)

        try:
            items = tuple(
                LineItem.model_validate(self._pick_item_fields(item)) for item in raw_items
            )
        except (ValidationError, TypeError) as e:
            return self._malformed("order", f"Invalid order item: {e}", order_id=order_id)

        logger.info(
            "order_webhook_normalized",
            order_id=order_id,
            webhook_type=webhook_type,
            item_count=len(items),
        )
        return OrderCreated(order_id=order_id, items=items, webhook_type=webhook_type)

    def normalize_payment(self, payload: Any) -> NormalizedEvent:
        """Normalize a payment-stream payload."""
        if not isinstance(payload, dict):
            return self._malformed("payment", "Payload must be a JSON object")

        event_type = payload.get("type")
        if event_type != PAYMENT_SUCCEEDED_EVENT:
            logger.info(
                "payment_webhook_ignored",
                event_type=event_type,
                event_id=payload.get("id"),
            )
            return Ignored(source="payment", reason=f"Unsupported event type: {event_type}")

        data = payload.get("data")
        charge = data.get("object") if isinstance(data, dict) else None
        if not isinstance(charge, dict):
            return self._malformed("payment", "Charge object missing in event")

        charge_id = charge.get("id")
        if not charge_id:
            return self._malformed("payment", "Charge id missing")

        currency = charge.get("currency")
        if not isinstance(currency, str) or len(currency.strip()) != 3:
            return self._malformed(
                "payment", f"Missing currency on charge {charge_id}", payment_id=charge_id
            )

        customer = charge.get("customer")
        if isinstance(customer, dict):
            customer = customer.get("id")
        if not customer:
            return self._malformed(
                "payment", f"No customer ID found on charge {charge_id}", payment_id=charge_id
            )

        metadata = charge.get("metadata")
        raw_ref = metadata.get("order_number") if isinstance(metadata, dict) else None
        order_ref = str(raw_ref).strip() if self._present(raw_ref) else None

        event_id = payload.get("id")
        try:
            event = PaymentEvent(
                event_id=str(event_id) if self._present(event_id) else None,
                event_type=event_type,
                payment_id=str(charge_id),
                customer_id=str(customer),
                currency=currency.strip(),
                order_ref=order_ref,
                receipt_email=charge.get("receipt_email"),
                charge=charge,
            )
        except ValidationError as e:
            return self._malformed(
                "payment", f"Invalid charge {charge_id}: {e}", payment_id=str(charge_id)
            )

        if event.order_ref is None:
            logger.info("payment_missing_order_reference", payment_id=event.payment_id)
            return NeedsManualReview(
                event=event,
                reason="A charge requires manual order handling due to missing metadata",
            )

        logger.info(
            "payment_webhook_normalized",
            payment_id=event.payment_id,
            order_ref=event.order_ref,
        )
        return PaymentConfirmed(event=event)

    @staticmethod
    def _present(value: Any) -> bool:
        if value is None or isinstance(value, bool):
            return False
        if isinstance(value, str):
            return bool(value.strip())
        return True

    @staticmethod
    def _pick_item_fields(item: Any) -> Dict[str, Any]:
        if not isinstance(item, dict):
            raise TypeError("order item must be an object")
        return {
            key: item.get(key)
            for key in ("name", "id", "quantity", "unit_price", "vat")
            if item.get(key) is not None
        }

    @staticmethod
    def _malformed(source: Source, reason: str, **context: Any) -> Malformed:
        logger.warning("webhook_malformed", source=source, reason=reason, **context)
        return Malformed(source=source, reason=reason)
