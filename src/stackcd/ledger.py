"""Durable revision ledger for deployed stacks.

The ledger records, per stack, what was last deployed: the repository
revision, the revision of the stack file itself and a SHA-256 fingerprint of
the exact content that went out. Stack reconcilers compare fingerprints
against this record to decide whether a redeploy is needed, so a restart
never triggers redundant deployments.

STORAGE LAYERS:
- SqliteBackend: one shared sqlite3 write connection plus a read
  connection per thread (WAL, bounded busy wait)
- ReconnectingBackend: decorator that probes before every call and reopens
  the inner backend when the connection is gone
- RevisionLedger: the stack-level API; all writes go through one
  process-wide lock on top of SQLite's own locking
"""

from __future__ import annotations

import hashlib
import logging
import os
import sqlite3
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from .config import DB_BUSY_TIMEOUT_MS

logger = logging.getLogger(__name__)

DB_FILE_NAME = "revisions.db"

# Length of the fingerprint prefix used as a display identifier
SHORT_HASH_LENGTH = 8
UNKNOWN_HASH = "unknown"

NEVER_DEPLOYED = datetime.fromtimestamp(0, UTC)

SCHEMA = """
CREATE TABLE IF NOT EXISTS revisions (
  stack TEXT PRIMARY KEY,
  repo_revision TEXT NOT NULL DEFAULT '',
  deployed_stack_revision TEXT NOT NULL DEFAULT '',
  hash TEXT NOT NULL DEFAULT '',
  deployed_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);
"""

UPSERT_SQL = """
INSERT INTO revisions (stack, repo_revision, deployed_stack_revision, hash, deployed_at)
VALUES (?, ?, ?, ?, ?)
ON CONFLICT(stack) DO UPDATE SET
  repo_revision = excluded.repo_revision,
  deployed_stack_revision = excluded.deployed_stack_revision,
  hash = excluded.hash,
  deployed_at = excluded.deployed_at
"""

SELECT_SQL = """
SELECT repo_revision, deployed_stack_revision, hash, deployed_at
FROM revisions WHERE stack = ?
"""

SELECT_ALL_SQL = """
SELECT stack, repo_revision, deployed_stack_revision, hash, deployed_at
FROM revisions ORDER BY stack
"""


class LedgerError(Exception):
    """Base class for revision ledger failures."""

    pass


class StorageInitializationError(LedgerError):
    """Raised when the backing store cannot be opened or its schema created."""

    pass


class StorageOperationError(LedgerError):
    """Raised when a read or write fails on a reachable store."""

    pass


class StorageConnectionError(LedgerError):
    """Raised by a liveness probe when the connection is unusable."""

    pass


def fingerprint(content: bytes) -> str:
    """Compute the hex-encoded SHA-256 digest of content."""
    return hashlib.sha256(content).hexdigest()


def short_fingerprint(hash_value: str) -> str:
    """Get the display prefix of a fingerprint.

    Only the never-deployed record has a hash shorter than the prefix.
    """
    if len(hash_value) < SHORT_HASH_LENGTH:
        return UNKNOWN_HASH
    return hash_value[:SHORT_HASH_LENGTH]


def _parse_timestamp(value: str | None) -> datetime:
    if not value:
        return NEVER_DEPLOYED
    parsed = datetime.fromisoformat(value)
    # CURRENT_TIMESTAMP defaults are naive UTC
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass(frozen=True)
class StackMetadata:
    """What was last deployed for one stack.

    The default instance is the zero-value record returned for stacks the
    ledger has never seen.
    """

    repo_revision: str = ""
    deployed_stack_revision: str = ""
    hash: str = ""
    deployed_at: datetime = field(default=NEVER_DEPLOYED)

    @classmethod
    def from_content(
        cls,
        repo_revision: str,
        deployed_stack_revision: str,
        content: bytes,
    ) -> StackMetadata:
        """Build a record for content that is being deployed now."""
        return cls(
            repo_revision=repo_revision,
            deployed_stack_revision=deployed_stack_revision,
            hash=fingerprint(content),
            deployed_at=datetime.now(UTC),
        )

    @property
    def short_hash(self) -> str:
        """Display identifier for the deployed content."""
        return short_fingerprint(self.hash)

    @property
    def is_deployed(self) -> bool:
        """Whether this record describes an actual deployment."""
        return bool(self.hash)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "repo_revision": self.repo_revision,
            "deployed_stack_revision": self.deployed_stack_revision,
            "hash": self.hash,
            "deployed_at": self.deployed_at.isoformat(),
        }


class StorageBackend(Protocol):
    """Capability interface for the ledger's backing store."""

    @property
    def location(self) -> str: ...

    def open(self) -> None: ...

    def close(self) -> None: ...

    def probe(self) -> None: ...

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int: ...

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]: ...


def resolve_db_path(location: str) -> str:
    """Return a location usable by sqlite.

    A directory gets the default file name appended (container bind mounts
    of a missing file show up as directories) and missing parent
    directories are created. URIs and in-memory locations pass through.
    """
    if location == ":memory:" or location.startswith("file:"):
        return location

    path = os.path.abspath(location)
    if os.path.isdir(path):
        path = os.path.join(path, DB_FILE_NAME)

    parent = os.path.dirname(path)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)
    return path


def _is_memory(path: str | None) -> bool:
    return path is not None and (path == ":memory:" or "mode=memory" in path)


class SqliteBackend:
    """SQLite storage backend.

    Writes share one connection guarded by a lock. Reads run on a
    per-thread connection so they never wait behind an in-flight write;
    WAL mode lets them see the last committed state. All connections run
    in autocommit mode so every statement is its own atomic transaction,
    with a busy timeout so contending writers retry briefly instead of
    failing with "database is locked".
    """

    def __init__(
        self,
        location: str,
        schema: str = SCHEMA,
        busy_timeout_ms: int = DB_BUSY_TIMEOUT_MS,
    ) -> None:
        self._location = location
        self._schema = schema
        self._busy_timeout_ms = busy_timeout_ms
        self._path: str | None = None
        self._conn: sqlite3.Connection | None = None
        # Guards the write connection; sqlite3 connections are shared across workers
        self._lock = threading.RLock()
        self._readers: dict[threading.Thread, sqlite3.Connection] = {}
        self._readers_lock = threading.Lock()

    @property
    def location(self) -> str:
        return self._location

    def open(self) -> None:
        """Open (or reopen) the connection and ensure the schema exists.

        Raises:
            StorageInitializationError: If the location is unusable.
        """
        with self._lock:
            self.close()
            try:
                path = resolve_db_path(self._location)
            except OSError as e:
                raise StorageInitializationError(
                    f"failed to prepare database location {self._location}: {e}"
                ) from e

            try:
                conn = self._connect(path)
            except sqlite3.Error as e:
                raise StorageInitializationError(
                    f"failed to open database {self._location}: {e}"
                ) from e

            try:
                conn.execute("PRAGMA journal_mode=WAL")
                if self._schema:
                    conn.executescript(self._schema)
            except sqlite3.Error as e:
                conn.close()
                raise StorageInitializationError(
                    f"failed to open database {self._location}: {e}"
                ) from e

            self._path = path
            self._conn = conn

    def close(self) -> None:
        with self._lock:
            with self._readers_lock:
                readers = list(self._readers.values())
                self._readers.clear()
            for reader in readers:
                self._close_quietly(reader)
            if self._conn is None:
                return
            self._close_quietly(self._conn)
            self._conn = None

    def probe(self) -> None:
        """Check the write connection is usable.

        A connection another thread is writing through is in use and
        therefore alive, so the probe never waits behind a write.

        Raises:
            StorageConnectionError: If there is no usable connection.
        """
        if self._conn is None:
            raise StorageConnectionError(f"database {self._location} is not open")
        if not self._lock.acquire(blocking=False):
            return
        try:
            conn = self._require_connection()
            conn.execute("SELECT 1").fetchone()
        except sqlite3.Error as e:
            raise StorageConnectionError(
                f"database {self._location} is unreachable: {e}"
            ) from e
        finally:
            self._lock.release()

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a write statement and return the affected row count."""
        with self._lock:
            conn = self._require_connection()
            try:
                return conn.execute(sql, tuple(params)).rowcount
            except sqlite3.Error as e:
                raise StorageOperationError(str(e)) from e

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        """Run a read statement on this thread's read connection."""
        if _is_memory(self._path):
            # A second connection would open a different in-memory database
            with self._lock:
                return self._fetch(self._require_connection(), sql, params)
        return self._fetch(self._reader(), sql, params)

    def _fetch(
        self, conn: sqlite3.Connection, sql: str, params: Sequence[Any]
    ) -> list[sqlite3.Row]:
        try:
            return conn.execute(sql, tuple(params)).fetchall()
        except sqlite3.Error as e:
            raise StorageOperationError(str(e)) from e

    def _reader(self) -> sqlite3.Connection:
        path = self._path
        if self._conn is None or path is None:
            raise StorageConnectionError(f"database {self._location} is not open")

        current = threading.current_thread()
        with self._readers_lock:
            reader = self._readers.get(current)
            if reader is not None:
                return reader

            # Worker threads are short-lived; drop connections of finished ones
            for thread in [t for t in self._readers if not t.is_alive()]:
                self._close_quietly(self._readers.pop(thread))

            try:
                reader = self._connect(path)
            except sqlite3.Error as e:
                raise StorageConnectionError(
                    f"database {self._location} is unreachable: {e}"
                ) from e
            self._readers[current] = reader
            return reader

    def _connect(self, path: str) -> sqlite3.Connection:
        conn = sqlite3.connect(
            path,
            timeout=self._busy_timeout_ms / 1000,
            isolation_level=None,
            check_same_thread=False,
            uri=path.startswith("file:"),
        )
        try:
            conn.row_factory = sqlite3.Row
            conn.execute(f"PRAGMA busy_timeout={int(self._busy_timeout_ms)}")
        except sqlite3.Error:
            conn.close()
            raise
        return conn

    @staticmethod
    def _close_quietly(conn: sqlite3.Connection) -> None:
        try:
            conn.close()
        except sqlite3.Error as e:
            logger.debug("Error closing ledger connection", extra={"error": str(e)})

    def _require_connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageConnectionError(f"database {self._location} is not open")
        return self._conn


class ReconnectingBackend:
    """Decorates a backend with reconnect-on-probe-failure.

    Every execute/query is preceded by a probe. A failed probe closes and
    reopens the inner backend; only a failed reopen reaches the caller, as
    StorageInitializationError.
    """

    def __init__(self, inner: StorageBackend) -> None:
        self._inner = inner
        self._reconnect_lock = threading.Lock()
        self.reconnects = 0

    @property
    def location(self) -> str:
        return self._inner.location

    @property
    def inner(self) -> StorageBackend:
        return self._inner

    def open(self) -> None:
        self._inner.open()

    def close(self) -> None:
        self._inner.close()

    def probe(self) -> None:
        """Probe the inner backend, reopening it if the probe fails."""
        try:
            self._inner.probe()
            return
        except StorageConnectionError as e:
            logger.warning(
                "Ledger connection lost, reconnecting",
                extra={"location": self.location, "error": str(e)},
            )

        with self._reconnect_lock:
            # Another worker may have reconnected while we waited
            try:
                self._inner.probe()
                return
            except StorageConnectionError:
                pass
            self._inner.close()
            self._inner.open()
            self.reconnects += 1

        logger.info(
            "Ledger reconnected",
            extra={"location": self.location, "reconnects": self.reconnects},
        )

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        self.probe()
        return self._inner.execute(sql, params)

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        self.probe()
        return self._inner.query(sql, params)


class RevisionLedger:
    """Keyed store of per-stack deployment metadata.

    Usage:
        ledger = open_ledger("/data/revisions.db")
        last = ledger.load("web")
        if last.hash != fingerprint(content):
            ...deploy...
            ledger.upsert("web", StackMetadata.from_content(rev, stack_rev, content))
    """

    def __init__(self, location: str, backend: StorageBackend | None = None) -> None:
        """Create a ledger; call initialize() before use.

        Args:
            location: Database file path, directory, or sqlite URI.
            backend: Storage backend override, mainly for tests.
        """
        self._location = location
        self._backend: StorageBackend = backend or ReconnectingBackend(SqliteBackend(location))
        # Serializes writes from concurrent workers in this process
        self._write_lock = threading.Lock()

    @property
    def location(self) -> str:
        return self._location

    @property
    def backend(self) -> StorageBackend:
        return self._backend

    def initialize(self) -> None:
        """Open or create the backing store. Safe to call repeatedly.

        Raises:
            StorageInitializationError: If the location is unusable.
        """
        self._backend.open()
        logger.info("Revision ledger initialized", extra={"location": self._location})

    def close(self) -> None:
        self._backend.close()

    def ensure_alive(self) -> None:
        """Probe the store, transparently reconnecting if it dropped.

        Raises:
            StorageInitializationError: If reconnecting fails.
            StorageConnectionError: If the backend cannot reconnect by itself.
        """
        self._backend.probe()

    def upsert(self, stack_name: str, metadata: StackMetadata) -> None:
        """Insert or fully replace the record for a stack (last writer wins).

        Raises:
            StorageOperationError: If the write fails.
        """
        params = (
            stack_name,
            metadata.repo_revision,
            metadata.deployed_stack_revision,
            metadata.hash,
            metadata.deployed_at.isoformat(),
        )
        with self._write_lock:
            try:
                self._backend.execute(UPSERT_SQL, params)
            except StorageOperationError as e:
                raise StorageOperationError(
                    f"failed to save revision for stack {stack_name}: {e}"
                ) from e

        logger.debug(
            "Saved stack revision",
            extra={"stack": stack_name, "hash": metadata.short_hash},
        )

    def load(self, stack_name: str) -> StackMetadata:
        """Get the record for a stack, or the zero-value record if absent.

        Raises:
            StorageOperationError: If the read fails.
        """
        try:
            rows = self._backend.query(SELECT_SQL, (stack_name,))
        except StorageOperationError as e:
            raise StorageOperationError(
                f"failed to query revision for stack {stack_name}: {e}"
            ) from e

        if not rows:
            return StackMetadata()
        return self._row_to_metadata(stack_name, rows[0])

    def list_all(self) -> dict[str, StackMetadata]:
        """Get every stored record keyed by stack name, ordered by name."""
        try:
            rows = self._backend.query(SELECT_ALL_SQL)
        except StorageOperationError as e:
            raise StorageOperationError(f"failed to list revisions: {e}") from e
        return {row["stack"]: self._row_to_metadata(row["stack"], row) for row in rows}

    @staticmethod
    def _row_to_metadata(stack_name: str, row: sqlite3.Row) -> StackMetadata:
        try:
            deployed_at = _parse_timestamp(row["deployed_at"])
        except (TypeError, ValueError) as e:
            raise StorageOperationError(
                f"invalid deployed_at for stack {stack_name}: {row['deployed_at']!r}"
            ) from e
        return StackMetadata(
            repo_revision=row["repo_revision"] or "",
            deployed_stack_revision=row["deployed_stack_revision"] or "",
            hash=row["hash"] or "",
            deployed_at=deployed_at,
        )


def open_ledger(location: str) -> RevisionLedger:
    """Create and initialize a ledger at location.

    Raises:
        StorageInitializationError: If the location is unusable.
    """
    ledger = RevisionLedger(location)
    ledger.initialize()
    return ledger
