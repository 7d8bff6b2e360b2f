"""
Cryptographic Hashing Service

Handles deterministic serialization and SHA-256 hashing of ledger entries.
Same input → same hash. Always.

If this changes, every stored hash becomes unreproducible.
Every change here must be backward-compatible or versioned.

CANONICAL SERIALIZATION RULES:
1. Version: "__canon_v" injected into every canonical output (first key when sorted)
2. Dictionary keys: sorted recursively (Unicode codepoint order)
3. Nulls: omitted entirely (not serialized as null)
4. Empty strings, lists and dicts: preserved (they are valid data)
5. Datetimes: ISO 8601 with microseconds, forced to UTC, Z suffix
6. Dates: ISO 8601 (YYYY-MM-DD)
7. UUIDs: lowercase string representation
8. Enums: string value (not name)
9. Decimals: string representation
10. Floats: finite only, shortest round-trip repr; NaN/Infinity rejected
11. JSON output: no extra whitespace, sorted keys, ASCII only
12. Top-level: must be dict/object (not list/primitive)
"""

import hashlib
import json
import math
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from ..schemas import GENESIS_HASH


class CanonicalSerializationError(Exception):
    """Raised when data cannot be canonically serialized."""
    pass


class Hasher:
    """
    Canonical serialization and hashing.

    IMMUTABLE CONTRACT:
    - Same logical input → same hash
    - Across platforms and Python versions

    If you need to change serialization rules, you MUST version them.
    """

    SERIALIZATION_VERSION = 1

    @classmethod
    def _serialize_value(cls, value: Any, path: str = "") -> Any:
        """
        Convert Python objects to JSON-serializable canonical format.

        Raises:
            CanonicalSerializationError: If value cannot be serialized deterministically
        """
        if value is None:
            return None  # Filtered out by _to_canonical_dict

        if isinstance(value, UUID):
            return str(value).lower()

        if isinstance(value, datetime):
            return cls._serialize_datetime(value, path)

        if isinstance(value, date):
            return value.strftime("%Y-%m-%d")

        if isinstance(value, Enum):
            return value.value

        if isinstance(value, bool):
            return value

        if isinstance(value, int):
            return value

        # Inventory payloads carry quantities and prices as plain JSON numbers,
        # so finite floats are accepted. repr() is the shortest round-trip form.
        if isinstance(value, float):
            if math.isnan(value) or math.isinf(value):
                raise CanonicalSerializationError(
                    f"Cannot serialize non-finite float at {path}."
                )
            return value

        if isinstance(value, Decimal):
            return str(value)

        if isinstance(value, str):
            return value

        if isinstance(value, (list, tuple)):
            return [
                cls._serialize_value(v, f"{path}[{i}]")
                for i, v in enumerate(value)
            ]

        if isinstance(value, dict):
            return cls._to_canonical_dict(value, path)

        # Pydantic model - dump to dict first
        if hasattr(value, "model_dump"):
            return cls._to_canonical_dict(value.model_dump(mode="python"), path)

        if isinstance(value, bytes):
            raise CanonicalSerializationError(
                f"Cannot serialize bytes at {path}. "
                "Convert to base64 string first."
            )

        if isinstance(value, set):
            raise CanonicalSerializationError(
                f"Cannot serialize set at {path}. "
                "Sets have no stable ordering. Convert to sorted list first."
            )

        raise CanonicalSerializationError(
            f"Cannot serialize {type(value).__name__} at {path}. "
            "Only JSON-compatible types are allowed."
        )

    @classmethod
    def _serialize_datetime(cls, dt: datetime, path: str) -> str:
        """
        Serialize datetime to canonical ISO 8601 format.

        Format: YYYY-MM-DDTHH:MM:SS.ffffffZ
        """
        if dt.tzinfo is None:
            raise CanonicalSerializationError(
                f"Datetime at {path} is timezone-naive. "
                "All datetimes must be timezone-aware for deterministic serialization. "
                "Use datetime.now(timezone.utc) or attach a timezone."
            )

        utc_dt = dt.astimezone(timezone.utc)
        return utc_dt.strftime("%Y-%m-%dT%H:%M:%S.") + \
               f"{utc_dt.microsecond:06d}Z"

    @classmethod
    def _to_canonical_dict(
        cls,
        data: dict[str, Any],
        path: str = ""
    ) -> dict[str, Any]:
        """
        Convert a dict to canonical form.

        Keys sorted, None values omitted, all values recursively serialized.
        """
        result = {}

        for key in data.keys():
            if not isinstance(key, str):
                raise CanonicalSerializationError(
                    f"Dictionary key at {path} must be string, "
                    f"got {type(key).__name__}"
                )

        for key in sorted(data.keys()):
            key_path = f"{path}.{key}" if path else key
            serialized = cls._serialize_value(data[key], key_path)
            if serialized is not None:
                result[key] = serialized

        return result

    @classmethod
    def canonicalize(cls, data: dict[str, Any] | Any) -> str:
        """
        Convert data to canonical JSON string.

        Injects "__canon_v" (serialization version) so every hash is
        self-describing.

        Raises:
            CanonicalSerializationError: If data cannot be deterministically serialized
        """
        if hasattr(data, "model_dump"):
            data = data.model_dump(mode="python")

        if not isinstance(data, dict):
            raise CanonicalSerializationError(
                f"Top-level canonicalization requires a dict/object, "
                f"got {type(data).__name__}."
            )

        canonical_dict = cls._to_canonical_dict(data)
        canonical_dict = {"__canon_v": cls.SERIALIZATION_VERSION, **canonical_dict}

        return json.dumps(
            canonical_dict,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=True,
            allow_nan=False,
        )

    @classmethod
    def normalize(cls, data: dict[str, Any]) -> dict[str, Any]:
        """
        Plain JSON form of a payload, without the version key.

        Hashing and storing this form means every store hands back exactly
        what was hashed: datetimes as canonical strings, nulls dropped,
        integral floats as ints (JSONB does not keep 1e20 a float).

        Raises:
            CanonicalSerializationError: If data cannot be deterministically serialized
        """
        return cls._collapse_floats(cls._to_canonical_dict(data))

    @classmethod
    def _collapse_floats(cls, value: Any) -> Any:
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, list):
            return [cls._collapse_floats(v) for v in value]
        if isinstance(value, dict):
            return {k: cls._collapse_floats(v) for k, v in value.items()}
        return value

    @classmethod
    def hash_data(cls, data: dict[str, Any] | Any) -> str:
        """
        Hash data using SHA-256.

        Returns:
            Hex-encoded SHA-256 hash (64 characters, lowercase)
        """
        canonical = cls.canonicalize(data)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    @staticmethod
    def entry_content(
        index: int,
        timestamp: datetime,
        event_type: str,
        event_id: str,
        collection_name: str,
        payload: dict[str, Any],
        previous_hash: str,
    ) -> dict[str, Any]:
        """The exact set of fields covered by an entry hash. user_id is not one of them."""
        return {
            "index": index,
            "timestamp": timestamp,
            "event_type": event_type,
            "event_id": event_id,
            "collection_name": collection_name,
            "payload": payload,
            "previous_hash": previous_hash,
        }

    @classmethod
    def hash_entry(
        cls,
        index: int,
        timestamp: datetime,
        event_type: str,
        event_id: str,
        collection_name: str,
        payload: dict[str, Any],
        previous_hash: str,
    ) -> str:
        """
        Hash the content fields of a ledger entry.

        previous_hash is part of the content, so the digest chains the entry
        to its predecessor ("GENESIS" for the first entry).
        """
        return cls.hash_data(cls.entry_content(
            index=index,
            timestamp=timestamp,
            event_type=event_type,
            event_id=event_id,
            collection_name=collection_name,
            payload=payload,
            previous_hash=previous_hash,
        ))
