"""Queue store adapters: the contract plus SQLite and Postgres implementations."""

from courier.store.base import OutboxStore, Subscription
from courier.store.postgres import PostgresOutboxStore
from courier.store.sqlite import SQLiteOutboxStore

__all__ = ["OutboxStore", "PostgresOutboxStore", "SQLiteOutboxStore", "Subscription"]
