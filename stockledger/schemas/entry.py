"""
Ledger Entry Schema

This is an append-only ledger, not CRUD.
Nothing is "edited". Things happen.

Each entry:
- Records one domain event
- Is hashed
- Is chained to its predecessor
- Is signed
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


# previous_hash of the first entry
GENESIS_HASH = "GENESIS"


class EventType(str, Enum):
    """
    Event types emitted by the inventory application.

    The ledger treats event_type as an opaque string; these are the values
    the domain code uses today. You can add more later, never remove.
    """
    STOCK_IN = "STOCK_IN"
    STOCK_OUT = "STOCK_OUT"
    STOCK_IN_REQUEST = "STOCK_IN_REQUEST"
    DEAD_STOCK = "DEAD_STOCK"
    DEAD_STOCK_REQUEST = "DEAD_STOCK_REQUEST"
    APPROVAL = "APPROVAL"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class LedgerEntry(BaseModel):
    """
    The immutable entry record.

    Rules:
    - No UPDATE of content fields
    - No DELETE
    - is_verified is the only field a verification run may change

    Chain Integrity Rules:
    - index is 1-based and contiguous
    - previous_hash is "GENESIS" for index 1 only
    - previous_hash equals the hash of the entry at index - 1 otherwise
    """
    index: int = Field(
        ...,
        ge=1,
        description="1-based position in the chain"
    )

    timestamp: datetime = Field(
        ...,
        description="When this entry was created (UTC)"
    )

    event_type: str = Field(
        ...,
        description="Classification of the domain event, e.g. STOCK_IN"
    )
    event_id: str = Field(
        ...,
        description="Identifier of the domain record the event concerns"
    )
    collection_name: str = Field(
        ...,
        description="Domain collection the record belongs to, e.g. StockIn"
    )

    payload: dict[str, Any] = Field(
        default_factory=dict,
        description="Caller-defined event data, not interpreted by the ledger"
    )

    user_id: Optional[str] = Field(
        default=None,
        description="Actor responsible for the event (not covered by the hash)"
    )

    previous_hash: str = Field(
        ...,
        description="Hash of the preceding entry, or GENESIS for the first entry"
    )
    hash: str = Field(
        ...,
        description="SHA-256 of the canonical entry content"
    )
    hmac_signature: str = Field(
        ...,
        description="HMAC-SHA256 of hash under the ledger signing key"
    )

    is_verified: bool = Field(
        default=True,
        description="False once a verification run has flagged this entry"
    )

    @property
    def is_genesis(self) -> bool:
        """Check if this is the first entry."""
        return self.index == 1

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "index": 2,
                "timestamp": "2024-03-16T09:00:00.000000Z",
                "event_type": "STOCK_IN",
                "event_id": "65f1c2a9e4b0a1d2c3e4f5a6",
                "collection_name": "StockIn",
                "payload": {"item_id": "ITM-104", "quantity": 25, "supplier": "Acme"},
                "user_id": "u-17",
                "previous_hash": "9f2c...",
                "hash": "4ab1...",
                "hmac_signature": "c03e...",
                "is_verified": True,
            }
        }
    )


class TamperRecord(BaseModel):
    """A single integrity finding from a verification run."""
    index: int
    reason: str


class VerificationReport(BaseModel):
    """
    Result of one full verification run.

    is_valid is True iff tampered_entries is empty.
    """
    model_config = ConfigDict(populate_by_name=True)

    is_valid: bool = Field(..., alias="isValid")
    tampered_entries: list[TamperRecord] = Field(default_factory=list, alias="tamperedEntries")
    entries_checked: int = 0
    verified_at: datetime
