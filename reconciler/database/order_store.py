"""
Order store backed by a SQL table.

Conditional writes are ``UPDATE ... WHERE version = :expected``; an insert
that hits the primary key means another writer got there first.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

import structlog
from sqlalchemy import Table, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reconciler.core.order_store import ConflictStrategy, OrderStore
from reconciler.domain import LineItem, OrderRecord
from reconciler.errors import StoreError

logger = structlog.get_logger(__name__)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SQLAlchemyOrderStore(OrderStore):
    """Order store on any SQLAlchemy async backend (PostgreSQL in production)."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        table: Table,
        conflict_strategy: ConflictStrategy = ConflictStrategy.LAST_WRITE_WINS,
        max_write_attempts: int = 5,
    ):
        super().__init__(conflict_strategy, max_write_attempts)
        self.session_factory = session_factory
        self.table = table

    @staticmethod
    def _to_row(record: OrderRecord) -> Dict[str, Any]:
        return {
            "order_id": record.order_id,
            "items": [item.to_storage() for item in record.items],
            "webhook_types": sorted(record.webhook_types_seen),
            "last_updated": record.last_updated,
            "version": record.version,
            "invoice_id": record.invoice_id,
            "invoiced_payment_id": record.invoiced_payment_id,
            "invoice_sent_at": record.invoice_sent_at,
        }

    @staticmethod
    def _to_record(row: Mapping[str, Any]) -> OrderRecord:
        return OrderRecord(
            order_id=row["order_id"],
            items=tuple(LineItem.model_validate(item) for item in row["items"]),
            webhook_types_seen=frozenset(row["webhook_types"]),
            last_updated=_as_utc(row["last_updated"]),
            version=row["version"],
            invoice_id=row["invoice_id"],
            invoiced_payment_id=row["invoiced_payment_id"],
            invoice_sent_at=_as_utc(row["invoice_sent_at"]),
        )

    async def get(self, order_id: str) -> Optional[OrderRecord]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(self.table).where(self.table.c.order_id == order_id)
                )
                row = result.mappings().first()
        except SQLAlchemyError as e:
            logger.error("order_store_read_failed", order_id=order_id, error=str(e))
            raise StoreError(f"Failed to read order {order_id}: {str(e)}", order_id=order_id) from e

        return self._to_record(row) if row is not None else None

    async def _insert(self, record: OrderRecord) -> bool:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await session.execute(insert(self.table).values(**self._to_row(record)))
        except IntegrityError:
            return False
        except SQLAlchemyError as e:
            logger.error("order_store_write_failed", order_id=record.order_id, error=str(e))
            raise StoreError(
                f"Failed to write order {record.order_id}: {str(e)}", order_id=record.order_id
            ) from e
        return True

    async def _compare_and_swap(self, record: OrderRecord, expected_version: int) -> bool:
        row = self._to_row(record)
        row.pop("order_id")
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        update(self.table)
                        .where(
                            self.table.c.order_id == record.order_id,
                            self.table.c.version == expected_version,
                        )
                        .values(**row)
                    )
        except SQLAlchemyError as e:
            logger.error("order_store_write_failed", order_id=record.order_id, error=str(e))
            raise StoreError(
                f"Failed to write order {record.order_id}: {str(e)}", order_id=record.order_id
            ) from e
        return result.rowcount == 1
