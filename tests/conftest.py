"""Shared fixtures for the ledger test suite."""

import pytest

from stockledger.core import ChainVerifier, LedgerEntryFactory, SignatureService
from stockledger.db import InMemoryLedgerStore
from stockledger.observability import reset_metrics

TEST_SIGNING_KEY = "test-signing-key"


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch):
    """Every test starts with a known key, no alert channel and no database."""
    monkeypatch.setenv("STOCKLEDGER_SIGNING_KEY", TEST_SIGNING_KEY)
    for var in (
        "STOCKLEDGER_PRODUCTION",
        "EMAIL_USER",
        "EMAIL_PASS",
        "ALERT_EMAIL",
        "DATABASE_URL",
        "DATABASE_HOST",
        "LEDGER_STORE_DRIVER",
        "STOCKLEDGER_VERIFY_ENABLED",
        "STOCKLEDGER_VERIFY_CONTENT",
    ):
        monkeypatch.delenv(var, raising=False)

    SignatureService.reset()
    reset_metrics()
    yield
    SignatureService.reset()


@pytest.fixture
def signer():
    return SignatureService(key=TEST_SIGNING_KEY)


@pytest.fixture
def store():
    return InMemoryLedgerStore()


@pytest.fixture
def factory(store, signer):
    return LedgerEntryFactory(store, signer=signer)


@pytest.fixture
def verifier(store, signer):
    return ChainVerifier(store, signer=signer)


@pytest.fixture
def append_movements():
    """Append `count` simple STOCK_IN entries through a factory and return them."""
    def _append(factory, count=3):
        return [
            factory.append(
                "STOCK_IN",
                f"stk-{i:03d}",
                "StockIn",
                {"item_id": f"ITM-{100 + i}", "quantity": 10 * i},
                user_id="u-clerk",
            )
            for i in range(1, count + 1)
        ]
    return _append
