"""
Tests for PostgresLedgerStore error handling and row decoding.

No database is needed: the connection factory is replaced with fakes.
"""

import json
from datetime import datetime, timezone

import psycopg2
import pytest

from stockledger.core import ChainVerifier
from stockledger.db import (
    ChainIntegrityError,
    InMemoryLedgerStore,
    LockTimeoutError,
    PostgresLedgerStore,
    StorageError,
)
from stockledger.db.store import _dumps


class FakeDriverError(Exception):
    def __init__(self, pgcode, pgerror=""):
        super().__init__(pgerror)
        self.pgcode = pgcode
        self.pgerror = pgerror


def _unreachable():
    raise psycopg2.OperationalError("could not connect to server: Connection refused")


@pytest.fixture
def pg_store():
    return PostgresLedgerStore(_unreachable)


class TestPostgresErrorTranslation:

    def test_lock_not_available(self, pg_store):
        assert isinstance(pg_store._translate(FakeDriverError("55P03")), LockTimeoutError)

    def test_lock_timeout_cancel(self, pg_store):
        error = FakeDriverError("57014", "canceling statement due to lock timeout")
        assert isinstance(pg_store._translate(error), LockTimeoutError)

    def test_statement_timeout(self, pg_store):
        error = FakeDriverError("57014", "canceling statement due to statement timeout")
        translated = pg_store._translate(error)
        assert type(translated) is StorageError
        assert "timed out" in str(translated)

    def test_duplicate_index(self, pg_store):
        error = FakeDriverError("23505", "duplicate key value violates unique constraint")
        assert isinstance(pg_store._translate(error), ChainIntegrityError)

    def test_unknown_error(self, pg_store):
        assert type(pg_store._translate(FakeDriverError("XX000", "boom"))) is StorageError


class TestPostgresUnreachable:

    def test_reads_raise_storage_error(self, pg_store):
        with pytest.raises(StorageError, match="Could not connect"):
            pg_store.list_all()

    def test_append_raises_storage_error(self, pg_store):
        with pytest.raises(StorageError, match="Could not connect"):
            with pg_store.begin_append():
                pass

    def test_ensure_schema_raises_storage_error(self, pg_store):
        with pytest.raises(StorageError):
            pg_store.ensure_schema()


def _as_stored_row(entry):
    """The row psycopg2 hands back after a JSONB write and read."""
    return (
        entry.index,
        entry.timestamp,
        entry.event_type,
        entry.event_id,
        entry.collection_name,
        json.loads(_dumps(entry.payload)),
        entry.user_id,
        entry.previous_hash,
        entry.hash,
        entry.hmac_signature,
        entry.is_verified,
    )


class TestPostgresRowRoundTrip:

    def test_content_check_passes_after_jsonb_round_trip(self, pg_store, factory, signer):
        factory.append("STOCK_IN", "stk-1", "StockIn", {
            "received_at": datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc),
            "quantity": 1e20,
            "unit_cost": 2.75,
        })
        factory.append("STOCK_OUT", "out-1", "StockOut", {"quantity": 3.0})

        reloaded = InMemoryLedgerStore()
        for entry in factory.store.list_all():
            with reloaded.begin_append() as ctx:
                ctx.commit(pg_store._row_to_entry(_as_stored_row(entry)))

        report = ChainVerifier(reloaded, signer=signer, check_content=True).verify()

        assert report.is_valid, report.tampered_entries
        assert reloaded.get_by_index(1).payload["received_at"] == "2024-03-01T09:00:00.000000Z"
        assert reloaded.count_unverified() == 0
