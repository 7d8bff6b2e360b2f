"""
Ledger Store Abstraction

This module defines the LedgerStore interface and provides two implementations:
- InMemoryLedgerStore: For development and testing
- PostgresLedgerStore: For production with full durability and concurrency safety

The LedgerStore is responsible for:
- Serialized append (index assignment cannot race)
- Ordering and durability guarantees
- The is_verified flag, the only field that changes after insert

The LedgerEntryFactory retains responsibility for:
- Canonical hashing and HMAC signing
- Input validation

TRANSACTION CONTRACT:
All append operations MUST use the begin_append() context manager:

    with store.begin_append() as ctx:
        index, prev_hash = ctx.head.next_index, ctx.head.previous_hash
        # ... compute hash and sign ...
        ctx.commit(entry)

Reading the head and inserting the entry happen under the same lock, so two
concurrent appends can never compute the same index.
"""

import json
from abc import ABC, abstractmethod
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Generator, Optional

import psycopg2
from psycopg2.extras import Json

from ..schemas import GENESIS_HASH, LedgerEntry


# ============================================================
# EXCEPTIONS
# ============================================================

class StorageError(Exception):
    """Store unreachable or a read/write failed."""
    pass


class LockTimeoutError(StorageError):
    """Raised when the append lock cannot be acquired in time (ledger busy)."""
    pass


class ChainIntegrityError(StorageError):
    """Raised when a commit would break the contiguous index sequence."""
    pass


# ============================================================
# DATA STRUCTURES
# ============================================================

@dataclass
class ChainHead:
    """
    Current state of the chain head.

    This is what gets locked during an append.
    """
    entry_count: int
    last_hash: Optional[str]  # None means empty ledger

    @property
    def next_index(self) -> int:
        """Get the next index to assign."""
        return self.entry_count + 1

    @property
    def previous_hash(self) -> str:
        """Hash the next entry must link to."""
        return self.last_hash if self.last_hash is not None else GENESIS_HASH

    @property
    def is_empty(self) -> bool:
        return self.entry_count == 0


@dataclass
class AppendContext:
    """
    Transaction context for one serialized append.

    Holds the connection and cursor so commit/rollback happen on the SAME
    connection that took the lock. All transaction state lives here, not on
    the store, so a store instance can be shared across threads.
    """
    head: ChainHead
    _store: "LedgerStore"
    _conn: Any = field(default=None)
    _cursor: Any = field(default=None)
    _committed: bool = field(default=False, init=False)
    _rolled_back: bool = field(default=False, init=False)

    def commit(self, entry: LedgerEntry) -> LedgerEntry:
        """Persist the entry within this transaction and release the lock."""
        if self._committed:
            raise StorageError("Transaction already committed")
        if self._rolled_back:
            raise StorageError("Transaction already rolled back")

        result = self._store._do_commit(self, entry)
        self._committed = True
        return result

    def rollback(self) -> None:
        """Explicitly rollback this transaction."""
        if not self._committed and not self._rolled_back:
            self._store._do_rollback(self)
            self._rolled_back = True


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class LedgerStore(ABC):
    """
    Abstract base class for ledger persistence.

    Implementations must ensure:
    1. Serialized append: begin_append holds a lock until commit/rollback
    2. No gaps and no duplicates in entry indices
    3. An entry is written with all of its fields or not at all
    4. Content fields are never updated; only is_verified may change
    """

    @contextmanager
    @abstractmethod
    def begin_append(self) -> Generator[AppendContext, None, None]:
        """
        Begin a serialized append.

        Acquires the append lock, yields an AppendContext holding the current
        head, and rolls back automatically if the block exits without commit.
        """
        pass

    @abstractmethod
    def _do_commit(self, ctx: AppendContext, entry: LedgerEntry) -> LedgerEntry:
        """Internal: commit within current transaction. Use ctx.commit() instead."""
        pass

    @abstractmethod
    def _do_rollback(self, ctx: AppendContext) -> None:
        """Internal: rollback current transaction. Use ctx.rollback() instead."""
        pass

    @abstractmethod
    def list_all(self) -> list[LedgerEntry]:
        """List all entries ordered by index ascending."""
        pass

    @abstractmethod
    def get_by_index(self, index: int) -> Optional[LedgerEntry]:
        """Get a single entry, or None if there is no entry at that index."""
        pass

    @abstractmethod
    def count(self) -> int:
        """Get total number of entries in the store."""
        pass

    @abstractmethod
    def mark_unverified(self, index: int) -> bool:
        """
        Persist is_verified = False for one entry.

        Returns:
            True if an entry with that index exists
        """
        pass

    @abstractmethod
    def find(
        self,
        event_id: Optional[str] = None,
        event_type: Optional[str] = None,
        collection_name: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> list[LedgerEntry]:
        """
        Find entries matching every given filter.

        Args:
            limit: Maximum number of entries returned (None = no limit)
            newest_first: Order by index descending instead of ascending
        """
        pass

    @abstractmethod
    def count_unverified(self) -> int:
        """Number of entries a verification run has flagged."""
        pass

    @abstractmethod
    def event_type_counts(self) -> dict[str, int]:
        """Number of entries per event_type."""
        pass

    def get_head(self) -> ChainHead:
        """
        Get current chain head without locking.

        Use this for read-only operations (health checks, stats).
        """
        entries = self.list_all()
        return ChainHead(
            entry_count=len(entries),
            last_hash=entries[-1].hash if entries else None,
        )

    def close(self) -> None:
        """Release any resources held by the store."""
        pass


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryLedgerStore(LedgerStore):
    """
    In-memory implementation of LedgerStore.

    Suitable for:
    - Development
    - Testing

    NOT suitable for:
    - Production (no durability)
    - Multi-instance deployments (no shared state)
    """

    def __init__(self):
        self._entries: list[LedgerEntry] = []
        self._lock = Lock()

    @contextmanager
    def begin_append(self) -> Generator[AppendContext, None, None]:
        """Begin serialized append with thread lock."""
        self._lock.acquire()

        last = self._entries[-1] if self._entries else None
        head = ChainHead(
            entry_count=len(self._entries),
            last_hash=last.hash if last else None,
        )
        ctx = AppendContext(head=head, _store=self, _conn="in_memory_lock")

        try:
            yield ctx
        finally:
            if not ctx._committed and not ctx._rolled_back:
                self._do_rollback(ctx)

    def _do_commit(self, ctx: AppendContext, entry: LedgerEntry) -> LedgerEntry:
        if ctx._conn != "in_memory_lock":
            raise StorageError("_do_commit called outside begin_append context")

        try:
            expected_index = len(self._entries) + 1
            if entry.index != expected_index:
                raise ChainIntegrityError(
                    f"Index mismatch: expected {expected_index}, got {entry.index}"
                )

            expected_prev = self._entries[-1].hash if self._entries else GENESIS_HASH
            if entry.previous_hash != expected_prev:
                raise ChainIntegrityError(
                    f"Previous hash mismatch: expected {expected_prev[:16]}..., "
                    f"got {entry.previous_hash[:16]}..."
                )

            self._entries.append(entry.model_copy(deep=True))
            return entry

        finally:
            ctx._conn = None
            self._lock.release()

    def _do_rollback(self, ctx: AppendContext) -> None:
        """Release lock without committing."""
        if ctx._conn == "in_memory_lock":
            ctx._conn = None
            self._lock.release()

    def list_all(self) -> list[LedgerEntry]:
        return [e.model_copy(deep=True) for e in sorted(self._entries, key=lambda e: e.index)]

    def get_by_index(self, index: int) -> Optional[LedgerEntry]:
        for entry in self._entries:
            if entry.index == index:
                return entry.model_copy(deep=True)
        return None

    def count(self) -> int:
        return len(self._entries)

    def mark_unverified(self, index: int) -> bool:
        for entry in self._entries:
            if entry.index == index:
                entry.is_verified = False
                return True
        return False

    def find(
        self,
        event_id: Optional[str] = None,
        event_type: Optional[str] = None,
        collection_name: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> list[LedgerEntry]:
        matches = [
            e for e in self._entries
            if (event_id is None or e.event_id == event_id)
            and (event_type is None or e.event_type == event_type)
            and (collection_name is None or e.collection_name == collection_name)
            and (user_id is None or e.user_id == user_id)
        ]
        matches.sort(key=lambda e: e.index, reverse=newest_first)
        if limit is not None:
            matches = matches[:limit]
        return [e.model_copy(deep=True) for e in matches]

    def count_unverified(self) -> int:
        return sum(1 for e in self._entries if not e.is_verified)

    def event_type_counts(self) -> dict[str, int]:
        return dict(Counter(e.event_type for e in self._entries))

    def clear(self) -> None:
        """Clear all entries (testing only)."""
        with self._lock:
            self._entries = []


# ============================================================
# POSTGRESQL IMPLEMENTATION
# ============================================================

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS ledger_entries (
    entry_index      INTEGER PRIMARY KEY CHECK (entry_index >= 1),
    created_at       TIMESTAMPTZ NOT NULL,
    event_type       TEXT NOT NULL,
    event_id         TEXT NOT NULL,
    collection_name  TEXT NOT NULL,
    payload_json     JSONB NOT NULL,
    user_id          TEXT,
    previous_hash    TEXT NOT NULL,
    hash             TEXT NOT NULL,
    hmac_signature   TEXT NOT NULL,
    is_verified      BOOLEAN NOT NULL DEFAULT TRUE
);
CREATE INDEX IF NOT EXISTS ix_ledger_entries_event_id ON ledger_entries (event_id);
CREATE INDEX IF NOT EXISTS ix_ledger_entries_event_type ON ledger_entries (event_type);
CREATE INDEX IF NOT EXISTS ix_ledger_entries_collection ON ledger_entries (collection_name);
CREATE INDEX IF NOT EXISTS ix_ledger_entries_user_id ON ledger_entries (user_id);
"""

_SELECT_COLUMNS = """
    entry_index, created_at, event_type, event_id, collection_name,
    payload_json, user_id, previous_hash, hash, hmac_signature, is_verified
"""


class PostgresLedgerStore(LedgerStore):
    """
    PostgreSQL implementation of LedgerStore.

    Provides:
    - Full ACID guarantees
    - Serialized appends via LOCK TABLE ... SHARE ROW EXCLUSIVE
      (readers are not blocked)
    - entry_index PRIMARY KEY as a second line against duplicate indices
    - Lock/statement timeouts to prevent hanging

    Usage:
        store = PostgresLedgerStore(lambda: psycopg2.connect(dsn))
        store.ensure_schema()
    """

    LOCK_TIMEOUT_MS = 2000
    STATEMENT_TIMEOUT_MS = 10000

    PGCODE_LOCK_NOT_AVAILABLE = '55P03'
    PGCODE_QUERY_CANCELED = '57014'
    PGCODE_UNIQUE_VIOLATION = '23505'

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        lock_timeout_ms: int = LOCK_TIMEOUT_MS,
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
    ):
        """
        Args:
            connection_factory: Callable that returns a psycopg2 connection.
            lock_timeout_ms: How long to wait for the append lock (ms).
            statement_timeout_ms: Max statement execution time (ms).
        """
        self._connection_factory = connection_factory
        self._lock_timeout_ms = lock_timeout_ms
        self._statement_timeout_ms = statement_timeout_ms

    @classmethod
    def from_dsn(cls, dsn: str, **kwargs) -> "PostgresLedgerStore":
        return cls(lambda: psycopg2.connect(dsn), **kwargs)

    def _connect(self):
        try:
            return self._connection_factory()
        except psycopg2.Error as e:
            raise StorageError(f"Could not connect to ledger database: {e}") from e

    def _translate(self, e: Exception) -> StorageError:
        """Map a driver exception onto the StorageError hierarchy."""
        pgcode = getattr(e, 'pgcode', None)
        err_msg = (getattr(e, 'pgerror', None) or str(e)).lower()

        if pgcode == self.PGCODE_LOCK_NOT_AVAILABLE:
            return LockTimeoutError("Ledger busy - could not acquire lock. Try again.")
        if pgcode == self.PGCODE_QUERY_CANCELED:
            if 'lock timeout' in err_msg or 'lock_timeout' in err_msg:
                return LockTimeoutError("Ledger busy - could not acquire lock. Try again.")
            return StorageError("Query timed out - statement took too long.")
        if pgcode == self.PGCODE_UNIQUE_VIOLATION:
            return ChainIntegrityError(f"Duplicate entry index: {err_msg}")
        return StorageError(f"Ledger database error: {e}")

    @contextmanager
    def _query(self) -> Generator[Any, None, None]:
        """Cursor for a short read/write statement outside the append lock."""
        conn = self._connect()
        try:
            with conn:
                with conn.cursor() as cursor:
                    yield cursor
        except psycopg2.Error as e:
            raise self._translate(e) from e
        finally:
            conn.close()

    def ensure_schema(self) -> None:
        """Create the ledger table and indices if they do not exist."""
        with self._query() as cursor:
            cursor.execute(SCHEMA_SQL)

    @contextmanager
    def begin_append(self) -> Generator[AppendContext, None, None]:
        """
        Begin serialized append.

        The table lock is held until the transaction commits or rolls back,
        so the count + last hash read here cannot go stale before insert.
        """
        conn = self._connect()
        conn.autocommit = False
        cursor = conn.cursor()
        ctx = None

        try:
            try:
                # SET LOCAL keeps timeouts transaction-scoped
                cursor.execute(f"SET LOCAL lock_timeout = '{self._lock_timeout_ms}ms'")
                cursor.execute(f"SET LOCAL statement_timeout = '{self._statement_timeout_ms}ms'")
                cursor.execute("LOCK TABLE ledger_entries IN SHARE ROW EXCLUSIVE MODE")

                cursor.execute("SELECT COUNT(*) FROM ledger_entries")
                entry_count = cursor.fetchone()[0]
                cursor.execute(
                    "SELECT hash FROM ledger_entries ORDER BY entry_index DESC LIMIT 1"
                )
                row = cursor.fetchone()
            except psycopg2.Error as e:
                raise self._translate(e) from e

            head = ChainHead(entry_count=entry_count, last_hash=row[0] if row else None)
            ctx = AppendContext(head=head, _store=self, _conn=conn, _cursor=cursor)

            yield ctx

        finally:
            if ctx is None or not ctx._committed:
                try:
                    conn.rollback()
                except psycopg2.Error:
                    pass  # Connection might be broken
            try:
                cursor.close()
            finally:
                conn.close()

    def _do_commit(self, ctx: AppendContext, entry: LedgerEntry) -> LedgerEntry:
        if ctx._cursor is None or ctx._conn is None:
            raise StorageError("_do_commit called outside begin_append context")

        if entry.index != ctx.head.next_index:
            raise ChainIntegrityError(
                f"Index mismatch: expected {ctx.head.next_index}, got {entry.index}"
            )

        try:
            ctx._cursor.execute(
                """
                INSERT INTO ledger_entries (
                    entry_index, created_at, event_type, event_id, collection_name,
                    payload_json, user_id, previous_hash, hash, hmac_signature, is_verified
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.index,
                    entry.timestamp,
                    entry.event_type,
                    entry.event_id,
                    entry.collection_name,
                    Json(entry.payload, dumps=_dumps),
                    entry.user_id,
                    entry.previous_hash,
                    entry.hash,
                    entry.hmac_signature,
                    entry.is_verified,
                ),
            )
            ctx._conn.commit()
        except psycopg2.Error as e:
            raise self._translate(e) from e

        return entry

    def _do_rollback(self, ctx: AppendContext) -> None:
        if ctx._conn is not None:
            ctx._conn.rollback()

    def list_all(self) -> list[LedgerEntry]:
        with self._query() as cursor:
            cursor.execute(
                f"SELECT {_SELECT_COLUMNS} FROM ledger_entries ORDER BY entry_index"
            )
            return [self._row_to_entry(row) for row in cursor.fetchall()]

    def get_by_index(self, index: int) -> Optional[LedgerEntry]:
        with self._query() as cursor:
            cursor.execute(
                f"SELECT {_SELECT_COLUMNS} FROM ledger_entries WHERE entry_index = %s",
                (index,),
            )
            row = cursor.fetchone()
            return self._row_to_entry(row) if row else None

    def count(self) -> int:
        with self._query() as cursor:
            cursor.execute("SELECT COUNT(*) FROM ledger_entries")
            return cursor.fetchone()[0]

    def mark_unverified(self, index: int) -> bool:
        with self._query() as cursor:
            cursor.execute(
                "UPDATE ledger_entries SET is_verified = FALSE WHERE entry_index = %s",
                (index,),
            )
            return cursor.rowcount > 0

    def find(
        self,
        event_id: Optional[str] = None,
        event_type: Optional[str] = None,
        collection_name: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> list[LedgerEntry]:
        clauses = []
        params: list[Any] = []
        for column, value in (
            ("event_id", event_id),
            ("event_type", event_type),
            ("collection_name", collection_name),
            ("user_id", user_id),
        ):
            if value is not None:
                clauses.append(f"{column} = %s")
                params.append(value)

        sql = f"SELECT {_SELECT_COLUMNS} FROM ledger_entries"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY entry_index " + ("DESC" if newest_first else "ASC")
        if limit is not None:
            sql += " LIMIT %s"
            params.append(limit)

        with self._query() as cursor:
            cursor.execute(sql, params)
            return [self._row_to_entry(row) for row in cursor.fetchall()]

    def count_unverified(self) -> int:
        with self._query() as cursor:
            cursor.execute("SELECT COUNT(*) FROM ledger_entries WHERE NOT is_verified")
            return cursor.fetchone()[0]

    def event_type_counts(self) -> dict[str, int]:
        with self._query() as cursor:
            cursor.execute(
                "SELECT event_type, COUNT(*) FROM ledger_entries GROUP BY event_type"
            )
            return {row[0]: row[1] for row in cursor.fetchall()}

    def get_head(self) -> ChainHead:
        with self._query() as cursor:
            cursor.execute("SELECT COUNT(*) FROM ledger_entries")
            entry_count = cursor.fetchone()[0]
            cursor.execute(
                "SELECT hash FROM ledger_entries ORDER BY entry_index DESC LIMIT 1"
            )
            row = cursor.fetchone()
        return ChainHead(entry_count=entry_count, last_hash=row[0] if row else None)

    def _row_to_entry(self, row: tuple) -> LedgerEntry:
        payload = row[5]
        if isinstance(payload, str):
            payload = json.loads(payload)

        return LedgerEntry(
            index=row[0],
            timestamp=row[1],
            event_type=row[2],
            event_id=row[3],
            collection_name=row[4],
            payload=payload,
            user_id=row[6],
            previous_hash=row[7],
            hash=row[8],
            hmac_signature=row[9],
            is_verified=row[10],
        )


def _json_serial(obj):
    """JSON serializer for objects not serializable by default json code."""
    if hasattr(obj, 'isoformat'):  # datetime, date
        return obj.isoformat()
    return str(obj)  # UUID, Decimal


def _dumps(obj) -> str:
    return json.dumps(obj, default=_json_serial)
