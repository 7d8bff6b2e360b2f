"""
Tests for the HTTP layer.

The app is driven through FastAPI's TestClient with in-memory services
injected before startup.
"""

import pytest
from fastapi.testclient import TestClient

from stockledger import shared_ledger
from stockledger.core import AlertDispatcher, VerificationConfig
from stockledger.db import InMemoryLedgerStore, StorageError
from stockledger.main import app


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def notify(self, summary):
        self.sent.append(summary)


class UnreachableStore(InMemoryLedgerStore):
    def list_all(self):
        raise StorageError("Could not connect to ledger database")

    def _do_commit(self, ctx, entry):
        self._do_rollback(ctx)
        raise StorageError("Could not connect to ledger database")


def _services(store=None, notifier=None):
    return shared_ledger.build_services(
        store=store if store is not None else InMemoryLedgerStore(),
        dispatcher=AlertDispatcher(notifier),
        config=VerificationConfig(enabled=False),
    )


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def services(monkeypatch, notifier):
    services = _services(notifier=notifier)
    monkeypatch.setattr(shared_ledger, "_services", services)
    return services


@pytest.fixture
def client(services):
    with TestClient(app) as client:
        yield client


def _post_event(client, **overrides):
    body = {
        "event_type": "STOCK_IN",
        "event_id": "stk-001",
        "collection_name": "StockIn",
        "payload": {"item_id": "ITM-104", "quantity": 25},
        "user_id": "u-17",
    }
    body.update(overrides)
    return client.post("/api/ledger/events", json=body)


def _tamper_hash(services, index):
    store = services.store
    store._entries[index - 1] = store._entries[index - 1].model_copy(update={"hash": "0" * 64})


class TestAppendEndpoint:

    def test_append_returns_created_entry(self, client):
        response = _post_event(client)

        assert response.status_code == 201
        data = response.json()
        assert data["index"] == 1
        assert data["previous_hash"] == "GENESIS"
        assert data["is_verified"] is True
        assert len(data["hash"]) == 64
        assert len(data["hmac_signature"]) == 64

    def test_append_chains(self, client):
        first = _post_event(client).json()
        second = _post_event(client, event_type="STOCK_OUT", event_id="out-001").json()
        assert second["previous_hash"] == first["hash"]

    def test_missing_fields_rejected(self, client):
        response = client.post("/api/ledger/events", json={"event_type": "STOCK_IN"})
        assert response.status_code == 422

    def test_empty_event_type_rejected(self, client, services):
        assert _post_event(client, event_type="").status_code == 422
        assert services.store.count() == 0

    def test_store_down_returns_503(self, monkeypatch):
        monkeypatch.setattr(shared_ledger, "_services", _services(store=UnreachableStore()))
        with TestClient(app) as client:
            response = _post_event(client)

        assert response.status_code == 503
        assert "Could not connect" in response.json()["detail"]


class TestQueryEndpoints:

    @pytest.fixture
    def populated(self, client):
        _post_event(client, event_type="STOCK_IN_REQUEST", event_id="req-1", collection_name="StockInRequest")
        _post_event(client, event_type="APPROVAL", event_id="req-1", collection_name="StockInRequest", user_id="u-mgr")
        _post_event(client, event_type="STOCK_OUT", event_id="out-1", collection_name="StockOut", user_id=None)
        return client

    def test_chain(self, populated):
        response = populated.get("/api/ledger/chain")
        assert response.status_code == 200
        assert [e["index"] for e in response.json()] == [1, 2, 3]

    def test_entry(self, populated):
        assert populated.get("/api/ledger/entries/2").json()["event_type"] == "APPROVAL"

    def test_entry_not_found(self, populated):
        assert populated.get("/api/ledger/entries/42").status_code == 404

    def test_search(self, populated):
        response = populated.get("/api/ledger/events", params={"collection_name": "StockInRequest"})
        assert [e["index"] for e in response.json()] == [2, 1]

    def test_search_limit_validated(self, populated):
        assert populated.get("/api/ledger/events", params={"limit": 0}).status_code == 422

    def test_audit_trail(self, populated):
        response = populated.get("/api/ledger/audit/req-1")
        assert [e["event_type"] for e in response.json()] == ["STOCK_IN_REQUEST", "APPROVAL"]

    def test_stats(self, populated):
        data = populated.get("/api/ledger/stats").json()
        assert data["totalEntries"] == 3
        assert data["unverifiedEntries"] == 0
        assert data["eventTypeBreakdown"]["STOCK_OUT"] == 1
        assert data["firstEntryTime"] is not None

    def test_export_csv(self, populated):
        response = populated.get("/api/ledger/export/csv")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert "attachment" in response.headers["content-disposition"]
        lines = response.text.strip().split("\n")
        assert lines[0] == "Index,Timestamp,EventType,CollectionName,UserId,IsVerified"
        assert len(lines) == 4
        assert lines[3].endswith("N/A,true")


class TestVerificationEndpoints:

    def test_verify_empty_chain(self, client):
        data = client.get("/api/ledger/chain/verify").json()
        assert data["isValid"] is True
        assert data["tamperedEntries"] == []

    def test_verify_reports_tampering_without_alert(self, client, services, notifier):
        for i in range(3):
            _post_event(client, event_id=f"stk-{i}")
        _tamper_hash(services, 2)

        data = client.get("/api/ledger/chain/verify").json()

        assert data["isValid"] is False
        assert {t["index"] for t in data["tamperedEntries"]} == {2, 3}
        assert notifier.sent == []
        assert client.get("/api/ledger/entries/2").json()["is_verified"] is False

    def test_force_verify_alerts(self, client, services, notifier):
        for i in range(3):
            _post_event(client, event_id=f"stk-{i}")
        _tamper_hash(services, 2)

        data = client.post("/api/ledger/force-verify").json()

        assert data["isValid"] is False
        assert data["alertSent"] is True
        assert len(notifier.sent) == 1

    def test_force_verify_intact_chain(self, client, notifier):
        _post_event(client)
        data = client.post("/api/ledger/force-verify").json()

        assert data["isValid"] is True
        assert data["alertSent"] is False
        assert notifier.sent == []

    def test_force_verify_without_channel(self, monkeypatch):
        services = _services(notifier=None)
        monkeypatch.setattr(shared_ledger, "_services", services)
        with TestClient(app) as client:
            _post_event(client)
            _tamper_hash(services, 1)
            data = client.post("/api/ledger/force-verify").json()

        assert data["isValid"] is False
        assert data["alertSent"] is False


class TestSystemEndpoints:

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "healthy", "service": "stockledger"}

    def test_health_detailed_healthy(self, client):
        _post_event(client)
        response = client.get("/health/detailed")

        assert response.status_code == 200
        data = response.json()
        assert data["checks"]["ledger_store"]["entry_count"] == 1
        assert data["checks"]["chain_integrity"]["valid"] is True
        assert data["scheduler"]["enabled"] is False

    def test_health_detailed_tampered(self, client, services):
        _post_event(client)
        _tamper_hash(services, 1)

        response = client.get("/health/detailed")

        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"

    def test_health_detailed_store_down(self, monkeypatch):
        monkeypatch.setattr(shared_ledger, "_services", _services(store=UnreachableStore()))
        with TestClient(app) as client:
            response = client.get("/health/detailed")

        assert response.status_code == 503
        assert response.json()["checks"]["ledger_store"]["status"] == "unhealthy"

    def test_metrics(self, client):
        _post_event(client)
        data = client.get("/metrics").json()

        assert data["entries_appended"] == 1
        assert data["requests_total"] >= 1

    def test_request_id_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "abc123"})
        assert response.headers["X-Request-ID"] == "abc123"
