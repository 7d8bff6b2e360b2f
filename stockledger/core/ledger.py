"""
Ledger Entry Factory - The Write Path

This is an append-only ledger.
Nothing is "edited". Things happen.

The factory:
- Accepts domain events (stock in/out, dead stock, approvals, ...)
- Validates the caller's input
- Chains each entry to its predecessor
- Hashes and signs it
- Persists it through the LedgerStore

ARCHITECTURE NOTE:
- LedgerEntryFactory: input validation, hashing, signing
- LedgerStore: serialized append, ordering, durability

The LedgerStore is the single source of truth for the next index and the
previous hash. The factory reads both inside begin_append(), so concurrent
appends can never be assigned the same index.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Optional, TYPE_CHECKING

from ..db.store import StorageError
from ..observability import get_metrics
from ..schemas import LedgerEntry
from .errors import LedgerInputError
from .hasher import CanonicalSerializationError, Hasher
from .signing_service import SignatureService, get_signature_service

if TYPE_CHECKING:
    from ..db.store import LedgerStore

logger = logging.getLogger(__name__)


class LedgerEntryFactory:
    """
    Builds and persists chained, signed ledger entries.

    CHAIN INTEGRITY GUARANTEES:
    - index is count + 1, read under the store's append lock
    - previous_hash is the last entry's hash, or GENESIS for the first entry
    - hash covers index, timestamp, event_type, event_id, collection_name,
      payload and previous_hash
    - An entry is either fully written or not written at all
    """

    def __init__(
        self,
        store: Optional["LedgerStore"] = None,
        signer: Optional[SignatureService] = None,
    ):
        """
        Args:
            store: LedgerStore implementation for persistence.
                   If None, creates an InMemoryLedgerStore.
            signer: SignatureService. If None, uses the process-wide instance.
        """
        if store is None:
            from ..db.store import InMemoryLedgerStore
            store = InMemoryLedgerStore()

        self._store = store
        self._signer = signer or get_signature_service()

    @property
    def store(self) -> "LedgerStore":
        return self._store

    @staticmethod
    def _validate_input(
        event_type: str,
        event_id: str,
        collection_name: str,
        payload: Any,
    ) -> None:
        for name, value in (
            ("event_type", event_type),
            ("event_id", event_id),
            ("collection_name", collection_name),
        ):
            if not isinstance(value, str) or not value:
                raise LedgerInputError(f"{name} must be a non-empty string")

        if not isinstance(payload, dict):
            raise LedgerInputError(
                f"payload must be a dict, got {type(payload).__name__}"
            )

    def append(
        self,
        event_type: str,
        event_id: str,
        collection_name: str,
        payload: dict[str, Any],
        user_id: Optional[str] = None,
    ) -> LedgerEntry:
        """
        Record one domain event as a new ledger entry.

        Flow:
        1. Reserve the chain head (lock + count + last hash)
        2. Build and hash the canonical content
        3. Sign the hash
        4. Commit with is_verified = True

        Raises:
            LedgerInputError: If the event fields are invalid
            StorageError: If the store is unavailable or the write failed.
                          The event is NOT recorded.
        """
        # Enum members and ObjectId-like ids are accepted and stored as strings
        event_type = getattr(event_type, "value", event_type)
        event_id = str(event_id) if event_id is not None else ""
        user_id = str(user_id) if user_id is not None else None

        self._validate_input(event_type, event_id, collection_name, payload)

        # The stored payload is the hashed payload; fail before taking the append lock
        try:
            payload = Hasher.normalize(payload)
        except CanonicalSerializationError as e:
            raise LedgerInputError(f"payload cannot be canonically serialized: {e}") from e

        started = time.perf_counter()

        with self._store.begin_append() as ctx:
            index = ctx.head.next_index
            previous_hash = ctx.head.previous_hash
            timestamp = datetime.now(timezone.utc)

            entry_hash = Hasher.hash_entry(
                index=index,
                timestamp=timestamp,
                event_type=event_type,
                event_id=event_id,
                collection_name=collection_name,
                payload=payload,
                previous_hash=previous_hash,
            )
            signature = self._signer.sign(entry_hash)

            entry = LedgerEntry(
                index=index,
                timestamp=timestamp,
                event_type=event_type,
                event_id=event_id,
                collection_name=collection_name,
                payload=payload,
                user_id=user_id,
                previous_hash=previous_hash,
                hash=entry_hash,
                hmac_signature=signature,
                is_verified=True,
            )

            persisted = ctx.commit(entry)

        get_metrics().record_append((time.perf_counter() - started) * 1000)
        logger.info(f"Entry #{persisted.index} appended: {event_type} ({event_id})")
        return persisted

    def record_event(
        self,
        event_type: str,
        event_id: str,
        collection_name: str,
        payload: dict[str, Any],
        user_id: Optional[str] = None,
    ) -> Optional[LedgerEntry]:
        """
        Record an event on behalf of domain code that must not fail because of the ledger.

        A storage failure is logged and the event is lost; callers that need
        the guarantee should call append() and handle StorageError themselves.

        Returns:
            The persisted entry, or None if it could not be stored
        """
        try:
            return self.append(event_type, event_id, collection_name, payload, user_id)
        except StorageError:
            logger.exception(f"Ledger event NOT recorded: {event_type} ({event_id})")
            return None
