"""Tests for the management CLI and store/driver configuration."""

import pytest

from stockledger import shared_ledger
from stockledger.core import AlertDispatcher, VerificationConfig
from stockledger.db import (
    DatabaseConfig,
    InMemoryLedgerStore,
    StoreDriver,
    get_database_url,
    get_store_driver,
)
from tools import manage


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def notify(self, summary):
        self.sent.append(summary)


@pytest.fixture
def services(monkeypatch):
    """Point the CLI at one in-memory store for the whole test."""
    store = InMemoryLedgerStore()
    notifier = RecordingNotifier()

    def load(check_content=False, with_alerts=False):
        return shared_ledger.build_services(
            store=store,
            dispatcher=AlertDispatcher(notifier if with_alerts else None),
            config=VerificationConfig(enabled=False, check_content=check_content),
        )

    monkeypatch.setattr(manage, "_load_services", load)
    built = load()
    built.notifier = notifier
    return built


class TestManageCLI:

    def test_no_command_prints_help(self, capsys):
        assert manage.main([]) == 1
        assert "usage" in capsys.readouterr().out.lower()

    def test_generate_key(self, capsys):
        assert manage.main(["generate-key"]) == 0
        out = capsys.readouterr().out
        assert "STOCKLEDGER_SIGNING_KEY=" in out

    def test_verify_chain_ok(self, services, capsys):
        services.factory.append("STOCK_IN", "stk-1", "StockIn", {"quantity": 1})

        assert manage.main(["verify-chain"]) == 0
        assert "[OK]" in capsys.readouterr().out

    def test_verify_chain_tampered_exits_1(self, services, capsys):
        for i in range(3):
            services.factory.append("STOCK_IN", f"stk-{i}", "StockIn", {"quantity": i})
        services.store._entries[1] = services.store._entries[1].model_copy(update={"hash": "0" * 64})

        assert manage.main(["verify-chain"]) == 1
        out = capsys.readouterr().out
        assert "Entry #2: Invalid HMAC signature" in out
        assert "Entry #3: Previous hash mismatch" in out
        assert services.notifier.sent == []

    def test_verify_chain_alert_flag(self, services):
        services.factory.append("STOCK_IN", "stk-1", "StockIn", {"quantity": 1})
        services.store._entries[0] = services.store._entries[0].model_copy(update={"hash": "0" * 64})

        assert manage.main(["verify-chain", "--alert"]) == 1
        assert len(services.notifier.sent) == 1

    def test_verify_chain_content_flag(self, services):
        services.factory.append("STOCK_IN", "stk-1", "StockIn", {"quantity": 1})
        services.store._entries[0] = services.store._entries[0].model_copy(update={"payload": {"quantity": 50}})

        assert manage.main(["verify-chain"]) == 0
        assert manage.main(["verify-chain", "--content"]) == 1

    def test_stats(self, services, capsys):
        services.factory.append("STOCK_OUT", "out-1", "StockOut", {"quantity": 1})

        manage.main(["stats"])

        out = capsys.readouterr().out
        assert "Total entries: 1" in out
        assert "STOCK_OUT: 1" in out

    def test_export_csv(self, services, tmp_path):
        services.factory.append("STOCK_IN", "stk-1", "StockIn", {"quantity": 1})
        output = tmp_path / "export.csv"

        assert manage.main(["export-csv", "-o", str(output)]) == 0
        assert output.read_text().startswith("Index,Timestamp,EventType")

    def test_init_db_requires_database(self, capsys):
        assert manage.main(["init-db"]) == 1
        assert "No database configured" in capsys.readouterr().out


class TestDatabaseConfig:

    def test_defaults_to_memory(self):
        assert get_database_url() is None
        assert get_store_driver() == StoreDriver.MEMORY

    def test_database_url_selects_psycopg2(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql://ledger:pw@db:5433/inventory")
        assert get_store_driver() == StoreDriver.PSYCOPG2

    def test_explicit_driver_wins(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql://ledger:pw@db:5433/inventory")
        monkeypatch.setenv("LEDGER_STORE_DRIVER", "memory")
        assert get_store_driver() == StoreDriver.MEMORY

    def test_unknown_driver_rejected(self, monkeypatch):
        monkeypatch.setenv("LEDGER_STORE_DRIVER", "mongodb")
        with pytest.raises(ValueError, match="Unknown LEDGER_STORE_DRIVER"):
            get_store_driver()

    def test_from_url(self):
        config = DatabaseConfig.from_url("postgresql://ledger:pw@db:5433/inventory?sslmode=require")

        assert config.host == "db"
        assert config.port == 5433
        assert config.database == "inventory"
        assert config.user == "ledger"
        assert config.password == "pw"
        assert config.ssl_mode == "require"

    def test_url_without_password_for_logging(self):
        config = DatabaseConfig(host="db", user="ledger", password="secret")
        assert "secret" not in config.to_url(include_password=False)

    def test_host_env_builds_url(self, monkeypatch):
        monkeypatch.setenv("DATABASE_HOST", "pg.internal")
        monkeypatch.setenv("DATABASE_NAME", "ledger")
        assert get_database_url().startswith("postgresql://postgres@pg.internal:5432/ledger")

    def test_timeouts_from_env(self, monkeypatch):
        monkeypatch.setenv("DATABASE_LOCK_TIMEOUT_MS", "500")
        config = DatabaseConfig.from_env()
        assert config.lock_timeout_ms == 500
        assert config.statement_timeout_ms == 10000

    def test_create_store_memory(self):
        assert isinstance(shared_ledger.create_store(), InMemoryLedgerStore)
