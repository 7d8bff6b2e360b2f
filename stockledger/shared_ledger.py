"""
Shared Ledger Services

Builds the store, factory, verifier, reader and scheduler once per process.
Supports both in-memory (development) and PostgreSQL (production) modes.

Mode is determined by environment variables:
- LEDGER_STORE_DRIVER: Explicit driver selection (memory, psycopg2)
- DATABASE_URL or DATABASE_HOST: Database connection (auto-selects psycopg2)
- Neither set: Use in-memory (default for development)

In production (STOCKLEDGER_PRODUCTION=1) an unreachable database is fatal.
Elsewhere the store falls back to memory so the app still boots.
"""

import logging
from dataclasses import dataclass
from threading import Lock
from typing import Optional

from .core import (
    AlertDispatcher,
    ChainVerifier,
    LedgerEntryFactory,
    LedgerReader,
    VerificationConfig,
    VerificationScheduler,
    get_signature_service,
)
from .core.signing_service import is_production
from .db.config import DatabaseConfig, StoreDriver, get_database_url, get_store_driver
from .db.store import InMemoryLedgerStore, LedgerStore, PostgresLedgerStore, StorageError

logger = logging.getLogger(__name__)


@dataclass
class LedgerServices:
    """Everything the app and the CLI need, wired to one store."""
    store: LedgerStore
    factory: LedgerEntryFactory
    verifier: ChainVerifier
    reader: LedgerReader
    dispatcher: AlertDispatcher
    scheduler: VerificationScheduler

    def close(self) -> None:
        self.scheduler.stop()
        self.store.close()


def create_store() -> LedgerStore:
    """
    Create the appropriate LedgerStore based on configuration.

    Returns:
        InMemoryLedgerStore for development/testing
        PostgresLedgerStore for production (when DATABASE_URL is set)
    """
    driver = get_store_driver()

    if driver == StoreDriver.MEMORY:
        logger.info("Using in-memory ledger store (no persistence)")
        return InMemoryLedgerStore()

    db_url = get_database_url()
    if db_url is None:
        logger.warning(f"Driver is {driver.value} but no database configured - using in-memory store")
        return InMemoryLedgerStore()

    return _create_psycopg2_store(DatabaseConfig.from_env())


def _create_psycopg2_store(config: DatabaseConfig) -> LedgerStore:
    """Create PostgresLedgerStore and make sure its table exists."""
    store = PostgresLedgerStore.from_dsn(
        config.to_dsn(),
        lock_timeout_ms=config.lock_timeout_ms,
        statement_timeout_ms=config.statement_timeout_ms,
    )
    try:
        store.ensure_schema()
    except StorageError:
        if is_production():
            raise
        logger.exception("Could not connect to PostgreSQL - falling back to in-memory store")
        return InMemoryLedgerStore()

    logger.info(f"PostgreSQL ledger store ready ({config.host}:{config.port}/{config.database})")
    return store


def build_services(
    store: Optional[LedgerStore] = None,
    dispatcher: Optional[AlertDispatcher] = None,
    config: Optional[VerificationConfig] = None,
) -> LedgerServices:
    """
    Wire the ledger components together.

    Any argument left as None is built from the environment.
    """
    store = store if store is not None else create_store()
    config = config or VerificationConfig.from_env()
    dispatcher = dispatcher or AlertDispatcher.from_env()
    signer = get_signature_service()

    verifier = ChainVerifier(store, signer=signer, check_content=config.check_content)

    return LedgerServices(
        store=store,
        factory=LedgerEntryFactory(store, signer=signer),
        verifier=verifier,
        reader=LedgerReader(store),
        dispatcher=dispatcher,
        scheduler=VerificationScheduler(verifier, dispatcher, config),
    )


_services: Optional[LedgerServices] = None
_services_lock = Lock()


def get_services() -> LedgerServices:
    """Get the process-wide services, building them on first use."""
    global _services
    with _services_lock:
        if _services is None:
            _services = build_services()
        return _services


def reset_services() -> None:
    """Drop the process-wide services (for tests)."""
    global _services
    with _services_lock:
        if _services is not None:
            _services.close()
        _services = None
