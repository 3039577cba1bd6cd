"""Memory records and the persistent memory store.

A **memory** is one piece of agent knowledge: content, one embedding per
sector it is indexed into, access statistics and a ``strength`` retention
weight.  Consolidation links memories into a small graph by id:

- a **summary** memory lists its members in ``consolidated_from``;
- an **original** memory points at its summary via ``consolidated_into``.

A memory is never both.  The ``memories`` table enforces this with a CHECK
constraint, :class:`Memory` exposes it through :attr:`Memory.is_summary`
and :attr:`Memory.is_original`.

This module provides:

* :class:`Memory`, :class:`ConsolidationHistoryRecord` and
  :class:`ArchivedMemory`, dataclasses mapping 1:1 to table rows.
* :class:`MemoryStore`, async CRUD plus the protection lookup used by the
  forgetting scorer.

Usage::

    from memcycle.storage import Storage
    from memcycle.memory import MemoryStore

    store = Storage()
    await store.initialize()
    memories = MemoryStore(store)
    mem = await memories.create(
        "alice", "Deploys go out on Tuesdays", "semantic",
        embeddings={"semantic": vec},
    )
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable

from memcycle.config import ForgettingConfig, get_config
from memcycle.errors import StoreError, ValidationError
from memcycle.storage import Storage, deserialize_embedding, serialize_embedding, utcnow_iso

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SECTORS: tuple[str, ...] = (
    "episodic",
    "semantic",
    "procedural",
    "emotional",
    "reflective",
)
"""Allowed values for the ``memories.sector`` column."""


# ---------------------------------------------------------------------------
# JSON column helpers
# ---------------------------------------------------------------------------


def loads_list(raw: str | None) -> list:
    """Decode a JSON list column, tolerating NULL and malformed text."""
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return []
    return value if isinstance(value, list) else []


def dumps_ids(ids: Iterable[int]) -> str | None:
    """Encode an id list for a JSON column; empty lists are stored as NULL."""
    ids = [int(i) for i in ids]
    return json.dumps(ids) if ids else None


def has_protective_tag(tags: Iterable[str], protected_tags: Iterable[str]) -> bool:
    """Return ``True`` if any tag (case-insensitive) is a protective tag."""
    protected = {t.lower() for t in protected_tags}
    return any(t.lower() in protected for t in tags)


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------


@dataclass
class Memory:
    """In-memory representation of a single ``memories`` row.

    ``tags`` and ``consolidated_from`` are JSON text in SQLite and Python
    lists here.

    Parameters
    ----------
    id:
        Auto-incremented primary key.
    user_id:
        Owner of the memory.
    content:
        The knowledge payload.  Empty while the memory is archived.
    sector:
        Primary sector, one of :data:`SECTORS`.
    strength:
        Retention weight in ``(0, 1]``.  Consolidation lowers it but never
        to zero.
    importance:
        Explicit priority in ``[0, 1]``.
    access_count:
        Number of recorded retrievals.
    created_at:
        ISO-8601 creation timestamp.
    last_accessed_at:
        ISO-8601 timestamp of the most recent retrieval, or ``None``.
    tags:
        Flat list of string tags.
    is_archived:
        ``True`` while the content lives in cold storage.
    consolidated_into:
        Id of the summary this memory was merged into.
    consolidated_from:
        Ids of the members this summary was built from.
    """

    id: int
    user_id: str
    content: str
    sector: str
    strength: float = 1.0
    importance: float = 0.5
    access_count: int = 0
    created_at: str = ""
    last_accessed_at: str | None = None
    tags: list[str] = field(default_factory=list)
    is_archived: bool = False
    consolidated_into: int | None = None
    consolidated_from: list[int] = field(default_factory=list)

    @property
    def is_summary(self) -> bool:
        return bool(self.consolidated_from)

    @property
    def is_original(self) -> bool:
        return self.consolidated_into is not None

    @property
    def last_access(self) -> str:
        """Most recent access, falling back to creation time."""
        return self.last_accessed_at or self.created_at

    @classmethod
    def from_row(cls, row: Any) -> Memory:
        """Create a :class:`Memory` from a :class:`sqlite3.Row`."""
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            content=row["content"],
            sector=row["sector"],
            strength=row["strength"],
            importance=row["importance"],
            access_count=row["access_count"],
            created_at=row["created_at"],
            last_accessed_at=row["last_accessed_at"],
            tags=[str(t) for t in loads_list(row["tags"])],
            is_archived=bool(row["is_archived"]),
            consolidated_into=row["consolidated_into"],
            consolidated_from=[int(i) for i in loads_list(row["consolidated_from"])],
        )

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["is_summary"] = self.is_summary
        return d


@dataclass
class ConsolidationHistoryRecord:
    """One committed consolidation event.

    ``summary_memory_id`` is ``None`` once the event has been rolled back
    or the summary purged.
    """

    id: int
    user_id: str
    sector: str
    summary_memory_id: int | None
    consolidated_memory_ids: list[int]
    similarity_threshold: float
    cluster_size: int
    consolidated_at: str
    avg_similarity: float | None = None
    member_strengths: dict[int, float] = field(default_factory=dict)
    rolled_back_at: str | None = None

    @classmethod
    def from_row(cls, row: Any) -> ConsolidationHistoryRecord:
        try:
            strengths = json.loads(row["member_strengths"] or "{}")
        except (json.JSONDecodeError, TypeError):
            strengths = {}
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            sector=row["sector"],
            summary_memory_id=row["summary_memory_id"],
            consolidated_memory_ids=[int(i) for i in loads_list(row["consolidated_memory_ids"])],
            similarity_threshold=row["similarity_threshold"],
            cluster_size=row["cluster_size"],
            consolidated_at=row["consolidated_at"],
            avg_similarity=row["avg_similarity"],
            member_strengths={int(k): float(v) for k, v in strengths.items()},
            rolled_back_at=row["rolled_back_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ArchivedMemory:
    """Cold-storage projection of a memory."""

    memory_id: int
    user_id: str
    content: str
    sector: str
    created_at: str
    archived_at: str
    tags: list[str] = field(default_factory=list)
    strength: float = 1.0
    importance: float = 0.5
    access_count: int = 0
    last_accessed_at: str | None = None
    forgetting_score: float | None = None
    size_bytes: int = 0

    @classmethod
    def from_row(cls, row: Any) -> ArchivedMemory:
        return cls(
            memory_id=row["memory_id"],
            user_id=row["user_id"],
            content=row["content"],
            sector=row["sector"],
            created_at=row["created_at"],
            archived_at=row["archived_at"],
            tags=[str(t) for t in loads_list(row["tags"])],
            strength=row["strength"],
            importance=row["importance"],
            access_count=row["access_count"],
            last_accessed_at=row["last_accessed_at"],
            forgetting_score=row["forgetting_score"],
            size_bytes=row["size_bytes"],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Graph maintenance shared by pruning and purge
# ---------------------------------------------------------------------------


def detach_from_summary(conn: sqlite3.Connection, memory_id: int) -> int | None:
    """Remove *memory_id* from its summary's ``consolidated_from`` list.

    Must be called inside a transaction before the memory row is deleted.
    Returns the summary id, or ``None`` if the memory was not an original.
    A summary whose list becomes empty turns back into a plain memory.
    """
    row = conn.execute(
        "SELECT consolidated_into FROM memories WHERE id = ?", (memory_id,)
    ).fetchone()
    if row is None or row["consolidated_into"] is None:
        return None
    summary_id = row["consolidated_into"]
    summary = conn.execute(
        "SELECT consolidated_from FROM memories WHERE id = ?", (summary_id,)
    ).fetchone()
    if summary is not None:
        members = [i for i in loads_list(summary["consolidated_from"]) if i != memory_id]
        conn.execute(
            "UPDATE memories SET consolidated_from = ? WHERE id = ?",
            (dumps_ids(members), summary_id),
        )
    return summary_id


# ---------------------------------------------------------------------------
# Validation helpers (module-private)
# ---------------------------------------------------------------------------


def _validate_sector(sector: str) -> None:
    if sector not in SECTORS:
        raise ValidationError(
            f"Invalid sector {sector!r}. Must be one of: {', '.join(SECTORS)}",
            {"sector": sector},
        )


def _validate_unit(name: str, value: float, *, allow_zero: bool = True) -> None:
    low_ok = value >= 0.0 if allow_zero else value > 0.0
    if not (low_ok and value <= 1.0):
        raise ValidationError(f"{name} must be within [0, 1], got {value}", {name: value})


# ---------------------------------------------------------------------------
# Memory store
# ---------------------------------------------------------------------------


class MemoryStore:
    """Async access to the ``memories`` and ``memory_embeddings`` tables.

    Parameters
    ----------
    storage:
        An initialised :class:`~memcycle.storage.Storage` instance.
    config:
        Forgetting settings; only ``protected_tags`` is used here.
    """

    def __init__(self, storage: Storage, config: ForgettingConfig | None = None) -> None:
        self._storage = storage
        self._cfg = config or get_config().forgetting

    @property
    def storage(self) -> Storage:
        return self._storage

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(
        self,
        user_id: str,
        content: str,
        sector: str,
        *,
        tags: list[str] | None = None,
        strength: float = 1.0,
        importance: float = 0.5,
        embeddings: dict[str, list[float]] | None = None,
    ) -> Memory:
        """Insert a memory and its per-sector embeddings atomically.

        Raises
        ------
        ValidationError
            On empty content, unknown sector or out-of-range weights.
        """
        if not content or not content.strip():
            raise ValidationError("Memory content must not be empty", {"user_id": user_id})
        _validate_sector(sector)
        _validate_unit("strength", strength, allow_zero=False)
        _validate_unit("importance", importance)
        for emb_sector, vec in (embeddings or {}).items():
            _validate_sector(emb_sector)
            if not vec:
                raise ValidationError("Embedding must not be empty", {"sector": emb_sector})

        tags_json = json.dumps(tags) if tags else None
        now = utcnow_iso()

        def _do_create(conn: sqlite3.Connection) -> int:
            cursor = conn.execute(
                """
                INSERT INTO memories
                    (user_id, content, sector, strength, importance, tags, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (user_id, content, sector, strength, importance, tags_json, now),
            )
            new_id = cursor.lastrowid or 0
            for emb_sector, vec in (embeddings or {}).items():
                conn.execute(
                    "INSERT INTO memory_embeddings (memory_id, sector, embedding, dimension) "
                    "VALUES (?, ?, ?, ?)",
                    (new_id, emb_sector, serialize_embedding(vec), len(vec)),
                )
            return new_id

        memory_id = await self._storage.execute_transaction(_do_create)
        log.debug("Created memory %d for %s in %s", memory_id, user_id, sector)
        memory = await self.get(memory_id)
        if memory is None:
            raise StoreError("Memory vanished after insert", {"memory_id": memory_id})
        return memory

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get(self, memory_id: int) -> Memory | None:
        """Fetch a memory by id without recording an access."""
        rows = await self._storage.execute(
            "SELECT * FROM memories WHERE id = ?", (memory_id,)
        )
        return Memory.from_row(rows[0]) if rows else None

    async def get_many(self, memory_ids: Iterable[int]) -> dict[int, Memory]:
        """Fetch several memories in one query, keyed by id."""
        ids = list(dict.fromkeys(int(i) for i in memory_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" * len(ids))
        rows = await self._storage.execute(
            f"SELECT * FROM memories WHERE id IN ({placeholders})", tuple(ids)
        )
        return {row["id"]: Memory.from_row(row) for row in rows}

    async def list_for_user(
        self,
        user_id: str,
        sector: str | None = None,
        *,
        include_archived: bool = False,
    ) -> list[Memory]:
        """List a user's memories in stable ``(created_at, id)`` order."""
        clauses = ["user_id = ?"]
        params: list[Any] = [user_id]
        if sector is not None:
            _validate_sector(sector)
            clauses.append("sector = ?")
            params.append(sector)
        if not include_archived:
            clauses.append("is_archived = 0")
        rows = await self._storage.execute(
            f"SELECT * FROM memories WHERE {' AND '.join(clauses)} "
            "ORDER BY created_at ASC, id ASC",
            tuple(params),
        )
        return [Memory.from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    async def set_embedding(self, memory_id: int, sector: str, vec: list[float]) -> None:
        """Insert or replace the embedding of *memory_id* in *sector*."""
        _validate_sector(sector)
        if not vec:
            raise ValidationError("Embedding must not be empty", {"memory_id": memory_id})
        await self._storage.execute_write(
            """
            INSERT INTO memory_embeddings (memory_id, sector, embedding, dimension)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(memory_id, sector) DO UPDATE SET
                embedding = excluded.embedding,
                dimension = excluded.dimension
            """,
            (memory_id, sector, serialize_embedding(vec), len(vec)),
        )

    async def get_embedding(self, memory_id: int, sector: str) -> list[float] | None:
        rows = await self._storage.execute(
            "SELECT embedding FROM memory_embeddings WHERE memory_id = ? AND sector = ?",
            (memory_id, sector),
        )
        return deserialize_embedding(rows[0]["embedding"]) if rows else None

    async def get_embeddings(self, memory_ids: Iterable[int], sector: str) -> dict[int, list[float]]:
        """Fetch embeddings for several memories in one sector."""
        ids = list(dict.fromkeys(int(i) for i in memory_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" * len(ids))
        rows = await self._storage.execute(
            f"SELECT memory_id, embedding FROM memory_embeddings "
            f"WHERE sector = ? AND memory_id IN ({placeholders})",
            (sector, *ids),
        )
        return {r["memory_id"]: deserialize_embedding(r["embedding"]) for r in rows}

    # ------------------------------------------------------------------
    # Access tracking and protection
    # ------------------------------------------------------------------

    async def record_access(self, memory_id: int) -> None:
        """Increment ``access_count`` and update ``last_accessed_at``."""
        await self._storage.execute_write(
            """
            UPDATE memories
            SET access_count = access_count + 1,
                last_accessed_at = ?
            WHERE id = ?
            """,
            (utcnow_iso(), memory_id),
        )

    async def is_protected(self, memory_id: int) -> bool:
        """Return whether *memory_id* carries a pruning-protective tag.

        Unknown ids are reported as unprotected.
        """
        memory = await self.get(memory_id)
        if memory is None:
            return False
        return has_protective_tag(memory.tags, self._cfg.protected_tags)
