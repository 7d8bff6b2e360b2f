"""Tests for the read-only query surface."""

import csv
import io

import pytest

from stockledger.core import LedgerReader
from stockledger.core.reader import CSV_HEADER


@pytest.fixture
def reader(store):
    return LedgerReader(store)


@pytest.fixture
def populated(factory):
    factory.append("STOCK_IN_REQUEST", "req-1", "StockInRequest", {"quantity": 40}, "u-clerk")
    factory.append("APPROVAL", "req-1", "StockInRequest", {"approved": True}, "u-manager")
    factory.append("STOCK_IN", "stk-1", "StockIn", {"quantity": 40}, "u-clerk")
    factory.append("STOCK_OUT", "out-1", "StockOut", {"quantity": 5}, "u-clerk")
    factory.append("STOCK_OUT", "out-2", "StockOut", {"quantity": 7}, None)


class TestLedgerReader:

    def test_list_chain_in_index_order(self, reader, populated):
        assert [e.index for e in reader.list_chain()] == [1, 2, 3, 4, 5]

    def test_get_entry(self, reader, populated):
        assert reader.get_entry(3).event_id == "stk-1"
        assert reader.get_entry(99) is None

    def test_search_newest_first(self, reader, populated):
        results = reader.search(event_type="STOCK_OUT")
        assert [e.event_id for e in results] == ["out-2", "out-1"]

    def test_search_combines_filters(self, reader, populated):
        results = reader.search(collection_name="StockOut", user_id="u-clerk")
        assert [e.index for e in results] == [4]

    def test_search_limit(self, reader, populated):
        assert [e.index for e in reader.search(limit=2)] == [5, 4]

    def test_audit_trail_oldest_first(self, reader, populated):
        trail = reader.audit_trail("req-1")
        assert [e.event_type for e in trail] == ["STOCK_IN_REQUEST", "APPROVAL"]

    def test_audit_trail_unknown_record(self, reader, populated):
        assert reader.audit_trail("nope") == []

    def test_stats(self, reader, store, populated):
        store.mark_unverified(2)
        stats = reader.stats()

        assert stats["total_entries"] == 5
        assert stats["unverified_entries"] == 1
        assert stats["event_type_breakdown"] == {
            "STOCK_IN_REQUEST": 1,
            "APPROVAL": 1,
            "STOCK_IN": 1,
            "STOCK_OUT": 2,
        }
        assert stats["first_entry_time"] == reader.get_entry(1).timestamp
        assert stats["last_entry_time"] == reader.get_entry(5).timestamp

    def test_stats_time_span_survives_deleted_row(self, reader, store, populated):
        last = reader.get_entry(5).timestamp
        del store._entries[1]

        stats = reader.stats()

        assert stats["total_entries"] == 4
        assert stats["first_entry_time"] == reader.get_entry(1).timestamp
        assert stats["last_entry_time"] == last

    def test_stats_empty_ledger(self, reader):
        stats = reader.stats()
        assert stats["total_entries"] == 0
        assert stats["first_entry_time"] is None
        assert stats["last_entry_time"] is None
        assert stats["event_type_breakdown"] == {}

    def test_export_csv(self, reader, store, populated):
        store.mark_unverified(4)
        rows = list(csv.reader(io.StringIO(reader.export_csv())))

        assert rows[0] == CSV_HEADER
        assert rows[0] == ["Index", "Timestamp", "EventType", "CollectionName", "UserId", "IsVerified"]
        assert len(rows) == 6
        assert rows[1][0] == "1"
        assert rows[1][2:] == ["STOCK_IN_REQUEST", "StockInRequest", "u-clerk", "true"]
        assert rows[4][5] == "false"
        assert rows[5][4] == "N/A"

    def test_export_csv_empty_ledger(self, reader):
        assert reader.export_csv() == ",".join(CSV_HEADER) + "\n"
