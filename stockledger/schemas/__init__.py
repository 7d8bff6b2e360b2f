# Canonical schemas for the inventory audit ledger.

from .entry import (
    GENESIS_HASH,
    EventType,
    LedgerEntry,
    TamperRecord,
    VerificationReport,
)

__all__ = [
    "GENESIS_HASH",
    "EventType",
    "LedgerEntry",
    "TamperRecord",
    "VerificationReport",
]
