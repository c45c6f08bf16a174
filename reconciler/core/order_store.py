"""
Order store: the durable join state, one record per order identifier.

Writes are read-compare-write cycles guarded by a version counter. A cycle
that loses the race re-reads and tries again, so concurrent deliveries for the
same order never drop a webhook type or silently overwrite each other.
"""
import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Iterable, Optional, Tuple

import structlog

from reconciler.domain import LineItem, OrderRecord
from reconciler.domain.models import utcnow
from reconciler.errors import NotFoundError, OrderConflictError, StoreError
from reconciler.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class ConflictStrategy(str, Enum):
    """What to do when an order is redelivered with different items."""

    LAST_WRITE_WINS = "last_write_wins"
    KEEP_EXISTING = "keep_existing"
    REJECT = "reject"


class OrderStore(ABC):
    """
    Order store contract.

    Backends implement three primitives (``get``, ``_insert``,
    ``_compare_and_swap``); the merge rules live here so every backend
    behaves the same.
    """

    def __init__(
        self,
        conflict_strategy: ConflictStrategy = ConflictStrategy.LAST_WRITE_WINS,
        max_write_attempts: int = 5,
    ):
        """
        Initialize order store.

        Args:
            conflict_strategy: Resolution for redelivered orders with different items
            max_write_attempts: Conditional write attempts before raising StoreError
        """
        self.conflict_strategy = ConflictStrategy(conflict_strategy)
        self.max_write_attempts = max_write_attempts

    @abstractmethod
    async def get(self, order_id: str) -> Optional[OrderRecord]:
        """Return the record for ``order_id`` or None."""

    @abstractmethod
    async def _insert(self, record: OrderRecord) -> bool:
        """Create ``record``; False if the order id already exists."""

    @abstractmethod
    async def _compare_and_swap(self, record: OrderRecord, expected_version: int) -> bool:
        """Replace the stored record if its version is still ``expected_version``."""

    async def require(self, order_id: str) -> OrderRecord:
        """
        Return the record for ``order_id``.

        Raises:
            NotFoundError: The order has not been received yet
        """
        record = await self.get(order_id)
        if record is None:
            raise NotFoundError(order_id)
        return record

    async def upsert(
        self, order_id: str, items: Iterable[LineItem], tag: str
    ) -> OrderRecord:
        """
        Create or merge the record for an order.

        Args:
            order_id: Order identifier
            items: Line items from the order webhook
            tag: Webhook type that delivered the items

        Returns:
            OrderRecord: The record as written

        Raises:
            OrderConflictError: Items differ and the strategy is ``reject``
            StoreError: Backend failure or write contention not resolved
        """
        incoming = tuple(items)

        for attempt in range(1, self.max_write_attempts + 1):
            existing = await self.get(order_id)
            now = utcnow()

            if existing is None:
                record = OrderRecord(
                    order_id=order_id,
                    items=incoming,
                    webhook_types_seen=frozenset({tag}),
                    last_updated=now,
                    version=1,
                )
                if await self._insert(record):
                    logger.info(
                        "order_stored",
                        order_id=order_id,
                        webhook_type=tag,
                        item_count=len(incoming),
                    )
                    return record
            else:
                record = existing.model_copy(
                    update={
                        "items": self._resolve_items(existing, incoming),
                        "webhook_types_seen": existing.webhook_types_seen | {tag},
                        "last_updated": now,
                        "version": existing.version + 1,
                    }
                )
                if await self._compare_and_swap(record, expected_version=existing.version):
                    logger.info(
                        "order_updated",
                        order_id=order_id,
                        webhook_type=tag,
                        version=record.version,
                        webhook_types_seen=sorted(record.webhook_types_seen),
                    )
                    return record

            metrics.record_store_write_contention()
            logger.info("order_store_write_contention", order_id=order_id, attempt=attempt)

        raise StoreError(
            f"Could not write order {order_id} after {self.max_write_attempts} attempts",
            order_id=order_id,
        )

    async def mark_invoice_created(
        self, order_id: str, invoice_id: str, payment_id: Optional[str] = None
    ) -> OrderRecord:
        """Record the Ledger invoice id created for this order and the charge it covers."""
        return await self._update(
            order_id,
            lambda r: {"invoice_id": invoice_id, "invoiced_payment_id": payment_id},
        )

    async def mark_invoice_sent(
        self, order_id: str, sent_at: Optional[datetime] = None
    ) -> OrderRecord:
        """Record that the invoice for this order was delivered to the customer."""
        when = sent_at or utcnow()
        return await self._update(order_id, lambda r: {"invoice_sent_at": when})

    async def _update(
        self, order_id: str, changes: Callable[[OrderRecord], Dict[str, object]]
    ) -> OrderRecord:
        for _ in range(self.max_write_attempts):
            existing = await self.get(order_id)
            if existing is None:
                raise StoreError(f"Order {order_id} disappeared from the store", order_id=order_id)
            update = dict(changes(existing))
            update.update({"last_updated": utcnow(), "version": existing.version + 1})
            record = existing.model_copy(update=update)
            if await self._compare_and_swap(record, expected_version=existing.version):
                return record
            metrics.record_store_write_contention()

        raise StoreError(
            f"Could not update order {order_id} after {self.max_write_attempts} attempts",
            order_id=order_id,
        )

    def _resolve_items(
        self, existing: OrderRecord, incoming: Tuple[LineItem, ...]
    ) -> Tuple[LineItem, ...]:
        if existing.items == incoming:
            logger.info("order_already_stored_matching_items", order_id=existing.order_id)
            return incoming

        logger.warning(
            "order_items_conflict",
            order_id=existing.order_id,
            strategy=self.conflict_strategy.value,
            existing_items=[item.to_storage() for item in existing.items],
            new_items=[item.to_storage() for item in incoming],
        )
        metrics.record_order_conflict(self.conflict_strategy.value)

        if self.conflict_strategy is ConflictStrategy.REJECT:
            raise OrderConflictError(existing.order_id)
        if self.conflict_strategy is ConflictStrategy.KEEP_EXISTING:
            return existing.items
        return incoming


class InMemoryOrderStore(OrderStore):
    """
    Process-local order store.

    Used by tests and single-process development runs. Records are immutable,
    so handing them out needs no copying.
    """

    def __init__(
        self,
        conflict_strategy: ConflictStrategy = ConflictStrategy.LAST_WRITE_WINS,
        max_write_attempts: int = 5,
    ):
        super().__init__(conflict_strategy, max_write_attempts)
        self._records: Dict[str, OrderRecord] = {}
        self._lock = asyncio.Lock()

    async def get(self, order_id: str) -> Optional[OrderRecord]:
        return self._records.get(order_id)

    async def _insert(self, record: OrderRecord) -> bool:
        async with self._lock:
            if record.order_id in self._records:
                return False
            self._records[record.order_id] = record
            return True

    async def _compare_and_swap(self, record: OrderRecord, expected_version: int) -> bool:
        async with self._lock:
            current = self._records.get(record.order_id)
            if current is None or current.version != expected_version:
                return False
            self._records[record.order_id] = record
            return True

    def __len__(self) -> int:
        return len(self._records)
