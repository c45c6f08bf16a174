"""Database package: SQL-backed order store."""
from .connection import create_engine_from_settings, create_session_factory, init_db
from .order_store import SQLAlchemyOrderStore
from .tables import build_orders_table

__all__ = [
    "SQLAlchemyOrderStore",
    "build_orders_table",
    "create_engine_from_settings",
    "create_session_factory",
    "init_db",
]
