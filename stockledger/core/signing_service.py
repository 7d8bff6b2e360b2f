"""
Signature Service - HMAC Key Management

Signs and verifies ledger entry hashes with HMAC-SHA256 under a single
process-wide secret key.

KEY CONFIGURATION:
- Stored in env var: STOCKLEDGER_SIGNING_KEY
- Loaded once, on first use; never rotated while the process runs

PRODUCTION REQUIREMENTS:
- Set STOCKLEDGER_SIGNING_KEY to a long random string
- Generate with: python -m tools.manage generate-key

DEVELOPMENT MODE:
- If the key is not set, the well-known default key is used (warning logged)
- Entries signed with the default key can be forged by anyone who reads this file
"""

import hashlib
import hmac
import logging
import os
import secrets
import warnings
from typing import Optional

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


SIGNING_KEY_ENV = "STOCKLEDGER_SIGNING_KEY"
DEFAULT_SIGNING_KEY = "default-dev-key-change-in-production"


def is_production() -> bool:
    """Check if running in production mode."""
    return os.environ.get("STOCKLEDGER_PRODUCTION", "").lower() in ("1", "true", "yes")


def generate_signing_key() -> str:
    """Generate a new random signing key (hex, 256 bits)."""
    return secrets.token_hex(32)


class SignatureService:
    """
    HMAC-SHA256 signatures over entry hashes.

    Thread-safe once constructed: the key is immutable and every method is a
    pure function of its inputs and the key.

    SECURITY NOTES:
    - The key is never logged or exposed
    - verify() uses constant-time comparison
    - Production mode refuses the default key
    """

    _instance: Optional["SignatureService"] = None

    def __init__(self, key: Optional[str] = None):
        """
        Args:
            key: Secret key. If None, loads from STOCKLEDGER_SIGNING_KEY.
        """
        if key is None:
            key = self._load_key_from_env()
        elif not key:
            raise ConfigurationError("Signing key must not be empty")
        self._key = key.encode("utf-8")
        self._is_default = key == DEFAULT_SIGNING_KEY

    @classmethod
    def instance(cls) -> "SignatureService":
        """Get the process-wide instance, loading the key on first use."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Reset the process-wide instance (for testing only)."""
        cls._instance = None

    @staticmethod
    def _load_key_from_env() -> str:
        key = os.environ.get(SIGNING_KEY_ENV, "")

        if key and key != DEFAULT_SIGNING_KEY:
            logger.info("Signing key loaded from environment")
            return key

        if is_production():
            raise ConfigurationError(
                f"{SIGNING_KEY_ENV} must be set to a non-default value in production. "
                "Generate one with: python -m tools.manage generate-key"
            )

        warnings.warn(
            "Ledger signing key not configured. Using the insecure default key. "
            "NOT suitable for production!",
            stacklevel=3,
        )
        logger.warning(
            f"{SIGNING_KEY_ENV} not set - using insecure default signing key (development mode)"
        )
        return DEFAULT_SIGNING_KEY

    @property
    def is_default_key(self) -> bool:
        """Check if the insecure default key is in use."""
        return self._is_default

    def sign(self, entry_hash: str) -> str:
        """
        Sign an entry hash.

        Returns:
            Hex-encoded HMAC-SHA256 (64 characters, lowercase)
        """
        return hmac.new(self._key, entry_hash.encode("utf-8"), hashlib.sha256).hexdigest()

    def verify(self, entry_hash: str, signature: str) -> bool:
        """
        Verify a signature over an entry hash.

        Never raises: a malformed or mismatched signature is a verification
        failure, not an error.
        """
        try:
            expected = self.sign(entry_hash)
            if len(signature) != len(expected):
                return False
            return hmac.compare_digest(expected.encode("ascii"), signature.encode("ascii"))
        except (TypeError, ValueError, AttributeError, UnicodeError):
            return False


def get_signature_service() -> SignatureService:
    """Get the global SignatureService instance."""
    return SignatureService.instance()
