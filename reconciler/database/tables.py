"""SQLAlchemy table definitions for the order store."""
from typing import Optional

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
)


def build_orders_table(name: str = "orders", metadata: Optional[MetaData] = None) -> Table:
    """
    Orders table, one row per order identifier.

    The name is configuration, so the table is built at runtime rather than
    declared once at import.

    Args:
        name: Table name
        metadata: MetaData to attach to (a fresh one by default)

    Returns:
        Table: The orders table
    """
    return Table(
        name,
        metadata if metadata is not None else MetaData(),
        Column("order_id", String(255), primary_key=True),
        Column("items", JSON, nullable=False),
        Column("webhook_types", JSON, nullable=False),
        Column("last_updated", DateTime(timezone=True), nullable=False),
        Column("version", Integer, nullable=False, default=1),
        Column("invoice_id", String(255), nullable=True),
        Column("invoiced_payment_id", String(255), nullable=True),
        Column("invoice_sent_at", DateTime(timezone=True), nullable=True),
    )
