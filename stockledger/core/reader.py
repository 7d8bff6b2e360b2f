"""
Ledger Reader - Read-only queries over the LedgerStore.

Readers take no locks. An entry may be observed before or after a
verification run flips its is_verified flag; nothing else ever changes.
"""

import csv
import io
from typing import Any, Optional, TYPE_CHECKING

from ..schemas import LedgerEntry

if TYPE_CHECKING:
    from ..db.store import LedgerStore


DEFAULT_SEARCH_LIMIT = 100

CSV_HEADER = ["Index", "Timestamp", "EventType", "CollectionName", "UserId", "IsVerified"]


class LedgerReader:
    """Thin pass-through over the store for listing, lookup, stats and export."""

    def __init__(self, store: "LedgerStore"):
        self._store = store

    def list_chain(self) -> list[LedgerEntry]:
        """All entries in index order."""
        return self._store.list_all()

    def get_entry(self, index: int) -> Optional[LedgerEntry]:
        return self._store.get_by_index(index)

    def search(
        self,
        event_type: Optional[str] = None,
        collection_name: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = DEFAULT_SEARCH_LIMIT,
    ) -> list[LedgerEntry]:
        """Most recent entries matching every given filter, newest first."""
        return self._store.find(
            event_type=event_type,
            collection_name=collection_name,
            user_id=user_id,
            limit=limit,
            newest_first=True,
        )

    def audit_trail(self, event_id: str) -> list[LedgerEntry]:
        """Every entry recorded for one domain record, oldest first."""
        return self._store.find(event_id=event_id)

    def stats(self) -> dict[str, Any]:
        """Aggregate counts and the time span covered by the ledger."""
        total = self._store.count()
        # Rows can go missing, so the count is not the highest index
        first = next(iter(self._store.find(limit=1)), None)
        last = next(iter(self._store.find(limit=1, newest_first=True)), None)

        return {
            "total_entries": total,
            "unverified_entries": self._store.count_unverified(),
            "event_type_breakdown": self._store.event_type_counts(),
            "first_entry_time": first.timestamp if first else None,
            "last_entry_time": last.timestamp if last else None,
        }

    def export_csv(self) -> str:
        """The whole chain as CSV (one row per entry, no payloads)."""
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(CSV_HEADER)
        for entry in self._store.list_all():
            writer.writerow([
                entry.index,
                entry.timestamp.isoformat(),
                entry.event_type,
                entry.collection_name,
                entry.user_id or "N/A",
                "true" if entry.is_verified else "false",
            ])
        return buffer.getvalue()
