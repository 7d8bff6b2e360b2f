#!/usr/bin/env python3
"""
StockLedger Management CLI

Commands for operating the audit ledger:
- verify-chain: Verify ledger chain integrity (exit 1 on tampering)
- stats: Print entry counts and the time span covered
- export-csv: Export the chain to CSV
- generate-key: Generate a random HMAC signing key
- init-db: Create the ledger table in PostgreSQL

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage verify-chain
    python -m tools.manage verify-chain --alert --content
    python -m tools.manage export-csv -o ledger.csv
    python -m tools.manage generate-key
"""

import argparse
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


def _load_services(check_content: bool = False, with_alerts: bool = False):
    """Build the ledger services without starting the scheduler."""
    from stockledger.core import AlertDispatcher, VerificationConfig
    from stockledger.shared_ledger import build_services

    config = VerificationConfig.from_env()
    config.enabled = False
    config.check_content = config.check_content or check_content

    dispatcher = AlertDispatcher.from_env() if with_alerts else AlertDispatcher()
    return build_services(dispatcher=dispatcher, config=config)


def cmd_verify_chain(args):
    """Verify the integrity of the ledger chain."""
    services = _load_services(check_content=args.content, with_alerts=args.alert)
    try:
        print("Verifying ledger...")
        report = services.verifier.verify()
        print(f"Entries checked: {report.entries_checked}")

        if report.is_valid:
            print("[OK] Chain integrity verified OK")
            head = services.store.get_head()
            if head.last_hash:
                print(f"  Chain head: {head.last_hash[:16]}...")
            return 0

        print(f"[FAIL] Chain integrity verification FAILED! ({len(report.tampered_entries)} findings)")
        for record in report.tampered_entries:
            print(f"  Entry #{record.index}: {record.reason}")

        if args.alert:
            if services.dispatcher.dispatch(report.tampered_entries):
                print("  Alert sent")
            else:
                print("  Alert NOT sent (channel missing or delivery failed)")
        return 1
    finally:
        services.store.close()


def cmd_stats(args):
    """Print ledger statistics."""
    services = _load_services()
    try:
        stats = services.reader.stats()
    finally:
        services.store.close()

    print("=== Ledger Statistics ===\n")
    print(f"  Total entries: {stats['total_entries']}")
    print(f"  Unverified entries: {stats['unverified_entries']}")
    print(f"  First entry: {stats['first_entry_time'] or 'N/A'}")
    print(f"  Last entry: {stats['last_entry_time'] or 'N/A'}")

    if stats["event_type_breakdown"]:
        print("\n  By event type:")
        for event_type, count in sorted(stats["event_type_breakdown"].items()):
            print(f"    {event_type}: {count}")


def cmd_export_csv(args):
    """Export the whole chain to a CSV file."""
    services = _load_services()
    try:
        csv_text = services.reader.export_csv()
        count = services.store.count()
    finally:
        services.store.close()

    output_file = args.output or "ledger_export.csv"
    with open(output_file, "w", newline="") as f:
        f.write(csv_text)

    print(f"[OK] Exported {count} entries to {output_file}")


def cmd_generate_key(args):
    """Generate a random HMAC signing key."""
    from stockledger.core import generate_signing_key

    key = generate_signing_key()
    print("\nSigning key (KEEP SECRET!):")
    print(key)
    print("\nSet this environment variable:")
    print(f"  STOCKLEDGER_SIGNING_KEY={key}")
    print("\nChanging the key invalidates every existing signature.")


def cmd_init_db(args):
    """Create the ledger table and indices."""
    from stockledger.db.config import DatabaseConfig, get_database_url
    from stockledger.db.store import PostgresLedgerStore, StorageError

    if get_database_url() is None:
        print("Error: No database configured. Set DATABASE_URL or DATABASE_HOST.")
        return 1

    config = DatabaseConfig.from_env()
    print(f"Connecting to {config.to_url(include_password=False)}...")

    store = PostgresLedgerStore.from_dsn(config.to_dsn())
    try:
        store.ensure_schema()
    except StorageError as e:
        print(f"[FAIL] Could not create schema: {e}")
        return 1

    print("[OK] Ledger schema ready")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="StockLedger Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # verify-chain
    p_verify = subparsers.add_parser(
        "verify-chain",
        help="Verify ledger chain integrity"
    )
    p_verify.add_argument("--alert", action="store_true", help="Send a tamper alert if configured")
    p_verify.add_argument("--content", action="store_true", help="Also recompute hashes from content")

    # stats
    subparsers.add_parser(
        "stats",
        help="Print ledger statistics"
    )

    # export-csv
    p_export = subparsers.add_parser(
        "export-csv",
        help="Export the chain to CSV"
    )
    p_export.add_argument("--output", "-o", help="Output file (default: ledger_export.csv)")

    # generate-key
    subparsers.add_parser(
        "generate-key",
        help="Generate a random HMAC signing key"
    )

    # init-db
    subparsers.add_parser(
        "init-db",
        help="Create the ledger table in PostgreSQL"
    )

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "verify-chain": cmd_verify_chain,
        "stats": cmd_stats,
        "export-csv": cmd_export_csv,
        "generate-key": cmd_generate_key,
        "init-db": cmd_init_db,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
