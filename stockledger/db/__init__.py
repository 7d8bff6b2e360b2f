"""
Database Layer for the StockLedger audit ledger

Provides:
- LedgerStore abstraction (InMemory for dev, Postgres for prod)
- Environment-based connection configuration
"""

from .store import (
    LedgerStore,
    InMemoryLedgerStore,
    PostgresLedgerStore,
    ChainHead,
    StorageError,
    LockTimeoutError,
    ChainIntegrityError,
)
from .config import DatabaseConfig, StoreDriver, get_database_url, get_store_driver

__all__ = [
    "LedgerStore",
    "InMemoryLedgerStore",
    "PostgresLedgerStore",
    "ChainHead",
    "StorageError",
    "LockTimeoutError",
    "ChainIntegrityError",
    "DatabaseConfig",
    "StoreDriver",
    "get_database_url",
    "get_store_driver",
]
