"""
Chain Verifier

Walks the entire ledger in index order and reports every integrity finding.

Checks per entry:
1. hmac_signature authenticates hash under the ledger key
2. previous_hash equals the hash of the entry before it

Findings are data, not exceptions: a tampered ledger still produces a
normal VerificationReport. Every flagged entry has is_verified = False
persisted, whether or not anyone is alerted afterwards.

NOTE: By default the stored hash is NOT recomputed from the content fields.
Someone able to rewrite payload, hash and hmac_signature together (i.e. who
holds the key) passes both checks. Set check_content=True to also recompute
each hash from its content.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Optional, TYPE_CHECKING

from ..observability import get_metrics
from ..schemas import LedgerEntry, TamperRecord, VerificationReport
from .hasher import CanonicalSerializationError, Hasher
from .signing_service import SignatureService, get_signature_service

if TYPE_CHECKING:
    from ..db.store import LedgerStore

logger = logging.getLogger(__name__)


REASON_INVALID_SIGNATURE = "Invalid HMAC signature"
REASON_CHAIN_BROKEN = "Previous hash mismatch — chain broken"
REASON_CONTENT_MISMATCH = "Content hash mismatch"


class ChainVerifier:
    """
    Full-chain verification.

    Every run is a full O(n) re-scan from index 1; there is no checkpointing.
    """

    def __init__(
        self,
        store: "LedgerStore",
        signer: Optional[SignatureService] = None,
        check_content: bool = False,
    ):
        """
        Args:
            store: LedgerStore to verify
            signer: SignatureService. If None, uses the process-wide instance.
            check_content: Also recompute each hash from the stored content
        """
        self._store = store
        self._signer = signer or get_signature_service()
        self._check_content = check_content

    @property
    def check_content(self) -> bool:
        return self._check_content

    def _content_matches(self, entry: LedgerEntry) -> bool:
        try:
            computed = Hasher.hash_entry(
                index=entry.index,
                timestamp=entry.timestamp,
                event_type=entry.event_type,
                event_id=entry.event_id,
                collection_name=entry.collection_name,
                payload=entry.payload,
                previous_hash=entry.previous_hash,
            )
        except CanonicalSerializationError:
            return False
        return computed == entry.hash

    def verify(self) -> VerificationReport:
        """
        Verify the whole chain.

        Raises:
            StorageError: If the store cannot be read or a flag cannot be written
        """
        started = time.perf_counter()
        entries = self._store.list_all()
        tampered: list[TamperRecord] = []

        previous: Optional[LedgerEntry] = None
        for entry in entries:
            reasons = []

            if not self._signer.verify(entry.hash, entry.hmac_signature):
                reasons.append(REASON_INVALID_SIGNATURE)

            if previous is not None and entry.previous_hash != previous.hash:
                reasons.append(REASON_CHAIN_BROKEN)

            if self._check_content and not self._content_matches(entry):
                reasons.append(REASON_CONTENT_MISMATCH)

            if reasons:
                tampered.extend(TamperRecord(index=entry.index, reason=r) for r in reasons)
                self._store.mark_unverified(entry.index)

            previous = entry

        report = VerificationReport(
            is_valid=not tampered,
            tampered_entries=tampered,
            entries_checked=len(entries),
            verified_at=datetime.now(timezone.utc),
        )

        duration_ms = (time.perf_counter() - started) * 1000
        get_metrics().record_verification(
            duration_ms, len({t.index for t in tampered})
        )

        if report.is_valid:
            logger.info(f"Chain verified - {len(entries)} entries intact ({duration_ms:.1f}ms)")
        else:
            logger.error(
                f"TAMPERING DETECTED - {len(tampered)} finding(s): "
                + ", ".join(f"#{t.index} {t.reason}" for t in tampered)
            )

        return report
