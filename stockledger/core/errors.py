"""Ledger exceptions raised by the core services."""


class LedgerError(Exception):
    """Base exception for ledger errors."""
    pass


class LedgerInputError(LedgerError):
    """Raised when an event cannot be recorded because the caller's input is invalid."""
    pass


class ConfigurationError(LedgerError):
    """Raised when configuration is missing or insecure in production mode."""
    pass
