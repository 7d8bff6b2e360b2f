"""
Demonstration: Stock Movement Audit Trail

This example records a short inventory history, verifies it, tampers with
one entry behind the ledger's back and shows the verifier catching it.

Run with: python -m examples.demo_lifecycle
"""

from stockledger.core import (
    AlertDispatcher,
    ChainVerifier,
    LedgerEntryFactory,
    LedgerReader,
    SignatureService,
    build_summary,
)
from stockledger.db import InMemoryLedgerStore
from stockledger.schemas import EventType


def _banner(title: str) -> None:
    print("=" * 60)
    print(title)
    print("=" * 60)


def main():
    _banner("StockLedger - Audit Trail Demonstration")
    print()

    store = InMemoryLedgerStore()
    signer = SignatureService(key="demo-signing-key")
    factory = LedgerEntryFactory(store, signer=signer)
    verifier = ChainVerifier(store, signer=signer)
    reader = LedgerReader(store)

    # ================================================================
    # STEP 1: RECORD STOCK MOVEMENTS
    # ================================================================
    _banner("STEP 1: RECORD STOCK MOVEMENTS")

    movements = [
        (EventType.STOCK_IN_REQUEST, "req-001", "StockInRequest",
         {"item_id": "ITM-104", "quantity": 40, "supplier": "Acme"}, "u-clerk"),
        (EventType.APPROVAL, "req-001", "StockInRequest",
         {"approved": True, "note": "Quarterly restock"}, "u-manager"),
        (EventType.STOCK_IN, "stk-001", "StockIn",
         {"item_id": "ITM-104", "quantity": 40, "unit_cost": 2.75}, "u-clerk"),
        (EventType.STOCK_OUT, "out-001", "StockOut",
         {"item_id": "ITM-104", "quantity": 12, "destination": "Store 7"}, "u-clerk"),
        (EventType.DEAD_STOCK, "dead-001", "DeadStock",
         {"item_id": "ITM-104", "quantity": 3, "reason": "Water damage"}, None),
    ]

    for event_type, event_id, collection, payload, user_id in movements:
        entry = factory.append(event_type, event_id, collection, payload, user_id)
        print(f"[OK] #{entry.index} {entry.event_type:<18} {entry.hash[:16]}... "
              f"<- {entry.previous_hash[:16]}")
    print()

    # ================================================================
    # STEP 2: VERIFY
    # ================================================================
    _banner("STEP 2: VERIFY THE CHAIN")
    report = verifier.verify()
    print(f"Valid: {report.is_valid} ({report.entries_checked} entries checked)")
    print()

    # ================================================================
    # STEP 3: AUDIT TRAIL
    # ================================================================
    _banner("STEP 3: AUDIT TRAIL FOR req-001")
    for entry in reader.audit_trail("req-001"):
        print(f"  #{entry.index} {entry.event_type} by {entry.user_id or 'N/A'} "
              f"at {entry.timestamp.isoformat()}")
    print()

    # ================================================================
    # STEP 4: TAMPER
    # ================================================================
    _banner("STEP 4: TAMPER WITH ENTRY #3 (direct storage write)")
    stored = store._entries[2]
    store._entries[2] = stored.model_copy(update={"hash": "0" * 64})
    print("Entry #3 hash overwritten without re-signing")
    print()

    # ================================================================
    # STEP 5: VERIFY AGAIN
    # ================================================================
    _banner("STEP 5: VERIFY AGAIN")
    report = verifier.verify()
    print(f"Valid: {report.is_valid}")
    for record in report.tampered_entries:
        print(f"  Entry #{record.index}: {record.reason}")
    print()

    summary = build_summary(report.tampered_entries, report.verified_at)
    print("Alert that would be sent:")
    print(f"  Subject: {summary.subject}")
    print()

    # No channel configured here, so this is a no-op
    sent = AlertDispatcher().dispatch(report.tampered_entries)
    print(f"Alert sent: {sent}")
    print()

    print(reader.export_csv())


if __name__ == "__main__":
    main()
