"""Core storage layer for the memory lifecycle engine.

Manages a SQLite database holding memories, their per-sector embeddings,
the consolidation audit trail, cold-storage archive and run leases.
sqlite-vec is loaded when available so similarity can be computed inside
SQL.  All public methods are async-friendly, wrapping synchronous sqlite3
calls via :func:`anyio.to_thread.run_sync`.

Connection strategy:
    - A single ``threading.Lock`` serialises write operations.
    - Thread-local persistent connections, one per thread pool worker.
    - WAL mode enables concurrent readers alongside a single writer.

Every :class:`sqlite3.Error` leaving this module is wrapped into
:class:`~memcycle.errors.StoreError`.

Usage::

    from memcycle.storage import Storage

    store = Storage(config.db_path)
    await store.initialize()
    row_id = await store.execute_write("INSERT INTO memories ...", (...))
"""

from __future__ import annotations

import logging
import sqlite3
import struct
import threading
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, TypeVar

import anyio
import sqlite_vec

from memcycle.config import get_config
from memcycle.errors import StoreError

_T = TypeVar("_T")

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Embedding serialisation helpers
# ---------------------------------------------------------------------------


def serialize_embedding(vec: list[float]) -> bytes:
    """Pack a float vector into a compact binary representation.

    Parameters
    ----------
    vec:
        A list of floats.

    Returns
    -------
    bytes
        Little-endian packed float32 values, the layout sqlite-vec expects.
    """
    return struct.pack(f"<{len(vec)}f", *vec)


def deserialize_embedding(data: bytes) -> list[float]:
    """Unpack binary embedding data back into a list of floats."""
    count = len(data) // struct.calcsize("f")
    return list(struct.unpack(f"<{count}f", data))


def utcnow_iso(offset: timedelta | None = None) -> str:
    """Current UTC time as a fixed-width ISO-8601 string.

    Microseconds are always present so stored timestamps compare
    correctly as plain strings.
    """
    now = datetime.now(tz=timezone.utc)
    if offset is not None:
        now += offset
    return now.isoformat(timespec="microseconds")


# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """\
-- Hot working set.  A summary has consolidated_from set, an original has
-- consolidated_into set; never both.
CREATE TABLE IF NOT EXISTS memories (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    content TEXT NOT NULL,
    sector TEXT NOT NULL CHECK(sector IN (
        'episodic','semantic','procedural','emotional','reflective'
    )),
    strength REAL NOT NULL DEFAULT 1.0 CHECK(strength > 0),
    importance REAL NOT NULL DEFAULT 0.5,
    access_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    last_accessed_at TEXT,
    tags TEXT,
    is_archived INTEGER NOT NULL DEFAULT 0,
    consolidated_into INTEGER REFERENCES memories(id) ON DELETE SET NULL,
    consolidated_from TEXT,
    CHECK (consolidated_into IS NULL OR consolidated_from IS NULL)
);

-- One float32 vector per (memory, sector)
CREATE TABLE IF NOT EXISTS memory_embeddings (
    memory_id INTEGER NOT NULL REFERENCES memories(id) ON DELETE CASCADE,
    sector TEXT NOT NULL,
    embedding BLOB NOT NULL,
    dimension INTEGER NOT NULL,
    PRIMARY KEY (memory_id, sector)
);

-- Append-only audit of committed consolidation events
CREATE TABLE IF NOT EXISTS consolidation_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    sector TEXT NOT NULL,
    summary_memory_id INTEGER REFERENCES memories(id) ON DELETE SET NULL,
    consolidated_memory_ids TEXT NOT NULL,
    member_strengths TEXT NOT NULL DEFAULT '{}',
    similarity_threshold REAL NOT NULL,
    cluster_size INTEGER NOT NULL,
    avg_similarity REAL,
    consolidated_at TEXT NOT NULL,
    rolled_back_at TEXT
);

-- Cold storage projection of archived memories
CREATE TABLE IF NOT EXISTS archived_memories (
    memory_id INTEGER PRIMARY KEY,
    user_id TEXT NOT NULL,
    content TEXT NOT NULL,
    sector TEXT NOT NULL,
    tags TEXT,
    strength REAL NOT NULL,
    importance REAL NOT NULL,
    access_count INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    last_accessed_at TEXT,
    archived_at TEXT NOT NULL,
    forgetting_score REAL,
    size_bytes INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS archived_embeddings (
    memory_id INTEGER NOT NULL REFERENCES archived_memories(memory_id) ON DELETE CASCADE,
    sector TEXT NOT NULL,
    embedding BLOB NOT NULL,
    dimension INTEGER NOT NULL,
    PRIMARY KEY (memory_id, sector)
);

-- Audit log for prune / archive / restore / purge / rollback / run actions
CREATE TABLE IF NOT EXISTS lifecycle_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT,
    action TEXT NOT NULL,
    details TEXT,
    memories_affected TEXT,
    created_at TEXT NOT NULL
);

-- Per-(pass, user) run leases with expiry
CREATE TABLE IF NOT EXISTS leases (
    name TEXT PRIMARY KEY,
    holder TEXT NOT NULL,
    acquired_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);
"""

_INDEX_SQL = """\
CREATE INDEX IF NOT EXISTS idx_memories_user_sector
    ON memories(user_id, sector, created_at, id);
CREATE INDEX IF NOT EXISTS idx_memories_consolidated_into
    ON memories(consolidated_into) WHERE consolidated_into IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_memories_archived
    ON memories(user_id, is_archived);
CREATE INDEX IF NOT EXISTS idx_embeddings_sector
    ON memory_embeddings(sector);
CREATE INDEX IF NOT EXISTS idx_history_user
    ON consolidation_history(user_id, consolidated_at);
CREATE INDEX IF NOT EXISTS idx_archived_user
    ON archived_memories(user_id, archived_at);
CREATE INDEX IF NOT EXISTS idx_lifecycle_log_user
    ON lifecycle_log(user_id, created_at);
"""


def _wrap_error(exc: sqlite3.Error, operation: str) -> StoreError:
    # Lock contention and I/O trouble surface as OperationalError.
    return StoreError(
        f"store {operation} failed: {exc}",
        {"operation": operation},
        retryable=isinstance(exc, sqlite3.OperationalError),
    )


# ---------------------------------------------------------------------------
# Storage class
# ---------------------------------------------------------------------------


class Storage:
    """Async-friendly SQLite storage backend.

    Parameters
    ----------
    db_path:
        Filesystem path for the SQLite database file.  Parent directories
        are created automatically during :meth:`initialize`.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        cfg = get_config()
        self._db_path: Path = db_path or cfg.db_path
        self._backup_dir: Path = cfg.backup_dir
        self._backup_count: int = cfg.backup_count
        self._write_lock = threading.Lock()
        self._local = threading.local()
        self._all_connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._initialized = False
        self._vec_available = False

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def db_path(self) -> Path:
        """Filesystem path of the SQLite database."""
        return self._db_path

    @property
    def vec_available(self) -> bool:
        """Whether the sqlite-vec extension loaded successfully."""
        return self._vec_available

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Prepare the database for use.

        Idempotent.  Creates directories, probes sqlite-vec, creates the
        schema, applies migrations and takes an automatic backup.
        """
        await anyio.to_thread.run_sync(self._initialize_sync)
        self._initialized = True
        log.info(
            "Storage initialised at %s (vec=%s)",
            self._db_path,
            self._vec_available,
        )

    def _initialize_sync(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._backup_dir.mkdir(parents=True, exist_ok=True)

        self._vec_available = self._probe_vec_support()

        conn = self._open_connection()
        try:
            conn.executescript(_SCHEMA_SQL)
            # Migrations run before indexes since indexes may reference
            # migrated columns.
            self._run_migrations(conn)
            conn.executescript(_INDEX_SQL)
            conn.execute("ANALYZE")
            conn.commit()
        except sqlite3.Error as exc:
            raise _wrap_error(exc, "initialize") from exc
        finally:
            conn.close()

        self._backup_sync()

    def _run_migrations(self, conn: sqlite3.Connection) -> None:
        """Apply schema migrations for databases created by older releases.

        Each migration checks whether it needs to run before executing.
        """
        cursor = conn.execute("PRAGMA table_info(consolidation_history)")
        columns = {row[1] for row in cursor.fetchall()}

        # Migration 1: member strengths are needed to roll a cluster back.
        if "member_strengths" not in columns:
            conn.execute(
                "ALTER TABLE consolidation_history "
                "ADD COLUMN member_strengths TEXT NOT NULL DEFAULT '{}'"
            )
            log.info("Migration: Added 'member_strengths' to consolidation_history")

        # Migration 2: explicit rollback marker.
        if "rolled_back_at" not in columns:
            conn.execute(
                "ALTER TABLE consolidation_history ADD COLUMN rolled_back_at TEXT"
            )
            log.info("Migration: Added 'rolled_back_at' to consolidation_history")

        # Migration 3: archive rows remember the score that sent them there.
        cursor = conn.execute("PRAGMA table_info(archived_memories)")
        archive_columns = {row[1] for row in cursor.fetchall()}
        if "forgetting_score" not in archive_columns:
            conn.execute(
                "ALTER TABLE archived_memories ADD COLUMN forgetting_score REAL"
            )
            log.info("Migration: Added 'forgetting_score' to archived_memories")

    def _probe_vec_support(self) -> bool:
        """Check whether sqlite-vec can be loaded in this environment."""
        conn = sqlite3.connect(str(self._db_path))
        try:
            if not hasattr(conn, "enable_load_extension"):
                log.warning(
                    "sqlite3 module compiled without extension loading support; "
                    "similarity will be computed in Python"
                )
                return False

            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)
            log.debug("sqlite-vec extension loaded successfully")
            return True
        except (AttributeError, OSError, sqlite3.OperationalError) as exc:
            log.warning(
                "sqlite-vec extension could not be loaded (%s); "
                "similarity will be computed in Python",
                exc,
            )
            return False
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Connection factory
    # ------------------------------------------------------------------

    def _get_connection(self) -> sqlite3.Connection:
        """Return the thread-local persistent :class:`sqlite3.Connection`."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._open_connection()
            self._local.conn = conn
            with self._connections_lock:
                self._all_connections.append(conn)
        return conn

    def _open_connection(self) -> sqlite3.Connection:
        """Open and configure a new :class:`sqlite3.Connection`.

        WAL journal mode, foreign keys on, sqlite-vec loaded when
        available and :class:`sqlite3.Row` as row factory.
        """
        conn = sqlite3.connect(
            str(self._db_path),
            timeout=30.0,
            check_same_thread=False,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row

        if self._vec_available:
            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("PRAGMA cache_size=-64000")  # ~64 MB
        conn.execute("PRAGMA busy_timeout=5000")

        return conn

    # ------------------------------------------------------------------
    # Query execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> list[sqlite3.Row]:
        """Execute a read-only query and return all rows.

        Parameters
        ----------
        sql:
            SQL SELECT statement.
        params:
            Bind parameters (positional tuple or named dict).

        Returns
        -------
        list[sqlite3.Row]
            Result rows with dict-like column access.

        Raises
        ------
        StoreError
            If SQLite rejects the query.
        """
        return await anyio.to_thread.run_sync(
            lambda: self._execute_sync(sql, params),
        )

    def _execute_sync(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> list[sqlite3.Row]:
        conn = self._get_connection()
        try:
            cursor = conn.execute(sql, params)
            return cursor.fetchall()
        except sqlite3.Error as exc:
            raise _wrap_error(exc, "read") from exc

    async def execute_write(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> int:
        """Execute a single write statement under the write lock.

        Returns
        -------
        int
            The ``lastrowid`` of the executed statement.
        """
        return await anyio.to_thread.run_sync(
            lambda: self._execute_write_sync(sql, params),
        )

    def _execute_write_sync(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> int:
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                cursor = conn.execute(sql, params)
                conn.execute("COMMIT")
                return cursor.lastrowid or 0
            except sqlite3.Error as exc:
                self._rollback_quietly(conn)
                raise _wrap_error(exc, "write") from exc

    async def execute_transaction(self, fn: Callable[[sqlite3.Connection], _T]) -> _T:
        """Execute a callback inside a single ``BEGIN IMMEDIATE`` transaction.

        This is the atomic multi-row commit primitive: everything *fn* does
        through the provided connection commits together or not at all.
        The write lock is held for the entire duration.

        Parameters
        ----------
        fn:
            A synchronous callable that receives a
            :class:`sqlite3.Connection` and returns a value of type *T*.

        Returns
        -------
        T
            Whatever *fn* returns.

        Raises
        ------
        StoreError
            If SQLite fails.  Any other exception raised by *fn* rolls the
            transaction back and propagates unchanged.
        """
        return await anyio.to_thread.run_sync(
            lambda: self._execute_transaction_sync(fn),
        )

    def _execute_transaction_sync(self, fn: Callable[[sqlite3.Connection], _T]) -> _T:
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                result = fn(conn)
                conn.execute("COMMIT")
                return result
            except sqlite3.Error as exc:
                self._rollback_quietly(conn)
                raise _wrap_error(exc, "transaction") from exc
            except BaseException:
                self._rollback_quietly(conn)
                raise

    @staticmethod
    def _rollback_quietly(conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            try:
                conn.execute("ROLLBACK")
            except sqlite3.Error as exc:
                log.warning("Rollback failed: %s", exc)

    # ------------------------------------------------------------------
    # Lease helpers
    # ------------------------------------------------------------------

    @staticmethod
    def try_acquire_lease(
        conn: sqlite3.Connection,
        name: str,
        holder: str | None = None,
        ttl_seconds: int = 600,
    ) -> tuple[bool, str | None]:
        """Attempt to acquire a named lease inside a transaction.

        Expired leases are cleaned up before the acquisition attempt.

        Parameters
        ----------
        conn:
            A connection already inside an active transaction (e.g.
            from :meth:`execute_transaction`).
        name:
            The lease name (primary key in the ``leases`` table).
        holder:
            An identifier for the holder.  Defaults to a random UUID.
        ttl_seconds:
            Lifetime of the lease unless renewed.

        Returns
        -------
        tuple[bool, str | None]
            ``(True, holder)`` if acquired, otherwise ``(False, current)``
            where *current* is the holder owning the lease.
        """
        if holder is None:
            holder = uuid.uuid4().hex

        now = utcnow_iso()
        conn.execute(
            "DELETE FROM leases WHERE name = ? AND expires_at < ?",
            (name, now),
        )

        try:
            conn.execute(
                "INSERT INTO leases (name, holder, acquired_at, expires_at) "
                "VALUES (?, ?, ?, ?)",
                (name, holder, now, utcnow_iso(timedelta(seconds=ttl_seconds))),
            )
            return True, holder
        except sqlite3.IntegrityError:
            row = conn.execute(
                "SELECT holder FROM leases WHERE name = ?", (name,)
            ).fetchone()
            return False, row["holder"] if row else None

    @staticmethod
    def renew_lease(
        conn: sqlite3.Connection,
        name: str,
        holder: str,
        ttl_seconds: int = 600,
    ) -> bool:
        """Push the expiry of a held lease forward.

        Returns ``False`` if *holder* no longer owns the lease.
        """
        cursor = conn.execute(
            "UPDATE leases SET expires_at = ? WHERE name = ? AND holder = ?",
            (utcnow_iso(timedelta(seconds=ttl_seconds)), name, holder),
        )
        return cursor.rowcount > 0

    @staticmethod
    def release_lease(conn: sqlite3.Connection, name: str, holder: str | None = None) -> None:
        """Release a named lease inside a transaction.

        If *holder* is given the lease is only released when held by it.
        """
        if holder is not None:
            conn.execute(
                "DELETE FROM leases WHERE name = ? AND holder = ?",
                (name, holder),
            )
        else:
            conn.execute("DELETE FROM leases WHERE name = ?", (name,))

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    @staticmethod
    def log_action(
        conn: sqlite3.Connection,
        action: str,
        user_id: str | None,
        details: str | None = None,
        memories_affected: str | None = None,
    ) -> None:
        """Append a row to ``lifecycle_log`` inside an open transaction."""
        conn.execute(
            "INSERT INTO lifecycle_log "
            "(user_id, action, details, memories_affected, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (user_id, action, details, memories_affected, utcnow_iso()),
        )

    # ------------------------------------------------------------------
    # Maintenance operations
    # ------------------------------------------------------------------

    async def backup(self) -> Path:
        """Create a timestamped backup of the database.

        Old backups beyond the configured retention count are deleted.
        """
        return await anyio.to_thread.run_sync(self._backup_sync)

    def _backup_sync(self) -> Path:
        if not self._db_path.exists():
            log.debug("No database file to back up yet")
            return self._db_path

        timestamp = datetime.now(tz=timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        backup_path = self._backup_dir / f"memcycle_{timestamp}.db"

        src = sqlite3.connect(str(self._db_path))
        dst = sqlite3.connect(str(backup_path))
        try:
            src.backup(dst)
            log.info("Backup created: %s", backup_path)
        finally:
            dst.close()
            src.close()

        self._prune_backups()
        return backup_path

    def _prune_backups(self) -> None:
        """Delete old backups, keeping only the most recent ``backup_count``."""
        backups = sorted(
            self._backup_dir.glob("memcycle_*.db"),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        for old in backups[self._backup_count :]:
            try:
                old.unlink()
                log.debug("Pruned old backup: %s", old.name)
            except OSError as exc:
                log.warning("Failed to remove old backup %s: %s", old.name, exc)

    # ------------------------------------------------------------------
    # Database metadata
    # ------------------------------------------------------------------

    async def get_db_size_bytes(self) -> int:
        """Return the database file size in bytes, WAL included."""
        return await anyio.to_thread.run_sync(self._get_db_size_bytes_sync)

    def _get_db_size_bytes_sync(self) -> int:
        if not self._db_path.exists():
            return 0
        size_bytes = self._db_path.stat().st_size
        wal_path = self._db_path.with_name(self._db_path.name + "-wal")
        if wal_path.exists():
            size_bytes += wal_path.stat().st_size
        return size_bytes

    async def table_counts(self) -> dict[str, int]:
        """Return row counts for all core tables in one round-trip."""
        rows = await self.execute(
            """
            SELECT 'memories'              AS tbl, COUNT(*) AS cnt FROM memories
            UNION ALL
            SELECT 'memory_embeddings',            COUNT(*)        FROM memory_embeddings
            UNION ALL
            SELECT 'consolidation_history',        COUNT(*)        FROM consolidation_history
            UNION ALL
            SELECT 'archived_memories',            COUNT(*)        FROM archived_memories
            UNION ALL
            SELECT 'lifecycle_log',                COUNT(*)        FROM lifecycle_log
            """
        )
        return {row["tbl"]: row["cnt"] for row in rows}

    # ------------------------------------------------------------------
    # Context manager support
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close all persistent connections opened across all threads."""
        with self._connections_lock:
            conns = list(self._all_connections)
            self._all_connections.clear()

        for conn in conns:
            try:
                conn.close()
            except sqlite3.Error as exc:
                log.warning("Failed to close connection: %s", exc)

        self._local.conn = None
        log.debug("Storage closed (%d connections released)", len(conns))

    async def __aenter__(self) -> Storage:
        await self.initialize()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()
