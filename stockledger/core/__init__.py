# Core ledger services
from .hasher import Hasher, CanonicalSerializationError, GENESIS_HASH
from .errors import LedgerError, LedgerInputError, ConfigurationError
from .signing_service import (
    SignatureService,
    get_signature_service,
    generate_signing_key,
)
from .ledger import LedgerEntryFactory
from .verifier import (
    ChainVerifier,
    REASON_INVALID_SIGNATURE,
    REASON_CHAIN_BROKEN,
    REASON_CONTENT_MISMATCH,
)
from .alerts import (
    AlertDispatcher,
    AlertConfig,
    AlertSummary,
    EmailNotifier,
    Notifier,
    build_summary,
)
from .verification_scheduler import VerificationScheduler, VerificationConfig
from .reader import LedgerReader

__all__ = [
    "Hasher",
    "CanonicalSerializationError",
    "GENESIS_HASH",
    "LedgerError",
    "LedgerInputError",
    "ConfigurationError",
    "SignatureService",
    "get_signature_service",
    "generate_signing_key",
    "LedgerEntryFactory",
    "ChainVerifier",
    "REASON_INVALID_SIGNATURE",
    "REASON_CHAIN_BROKEN",
    "REASON_CONTENT_MISMATCH",
    "AlertDispatcher",
    "AlertConfig",
    "AlertSummary",
    "EmailNotifier",
    "Notifier",
    "build_summary",
    "VerificationScheduler",
    "VerificationConfig",
    "LedgerReader",
]
