"""Cold storage for memories that are forgettable but not worth deleting.

Archival is the reversible counterpart of pruning.  Archiving a memory:

- copies content, tags, statistics and timestamps into ``archived_memories``
  and its embeddings into ``archived_embeddings``;
- removes its embeddings from the hot ``memory_embeddings`` table so search
  no longer sees it;
- leaves a stub in ``memories`` with ``is_archived = 1`` and empty content.
  The stub keeps ``consolidated_into`` / ``consolidated_from`` so the
  consolidation graph stays intact.

:meth:`ArchiveManager.restore` reverses all of that in one transaction and
deletes the archive row.  :meth:`ArchiveManager.purge` deletes both the
archive row and the stub for good.

Batch archival commits each memory separately and reports a per-memory
outcome, so one failure never aborts the rest of the batch.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Iterable

from memcycle.config import ArchiveConfig, ForgettingConfig, get_config, validate_cutoffs
from memcycle.errors import ArchiveError, InvalidArchiveError, StoreError
from memcycle.forgetting import ForgettingScore
from memcycle.memory import ArchivedMemory, Memory, MemoryStore, detach_from_summary
from memcycle.storage import Storage, utcnow_iso

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class ArchiveOutcome:
    """Result of archiving one memory."""

    memory_id: int
    success: bool
    error: str | None = None
    freed_bytes: int = 0


@dataclass
class ArchiveResult:
    """Per-memory outcomes of one archival batch."""

    user_id: str
    outcomes: list[ArchiveOutcome] = field(default_factory=list)

    @property
    def archived_ids(self) -> list[int]:
        return [o.memory_id for o in self.outcomes if o.success]

    @property
    def failed_ids(self) -> list[int]:
        return [o.memory_id for o in self.outcomes if not o.success]

    @property
    def freed_bytes(self) -> int:
        return sum(o.freed_bytes for o in self.outcomes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "archived_ids": self.archived_ids,
            "failed": {o.memory_id: o.error for o in self.outcomes if not o.success},
            "freed_bytes": self.freed_bytes,
        }


# ---------------------------------------------------------------------------
# ArchiveManager
# ---------------------------------------------------------------------------


class ArchiveManager:
    """Moves memories between the hot store and cold storage.

    Parameters
    ----------
    storage:
        Store providing the atomic commit primitive.
    memories:
        Memory store used to return restored memories.
    config:
        Archive settings.  Falls back to ``get_config().archive``.
    forgetting:
        Forgetting settings, checked against ``config`` so archival never
        triggers below the pruning cutoff.
    """

    def __init__(
        self,
        storage: Storage,
        memories: MemoryStore,
        config: ArchiveConfig | None = None,
        forgetting: ForgettingConfig | None = None,
    ) -> None:
        self._storage = storage
        self._memories = memories
        self._cfg = config or get_config().archive
        self._forgetting = forgetting or get_config().forgetting
        validate_cutoffs(self._forgetting, self._cfg)

    # ------------------------------------------------------------------
    # Archive
    # ------------------------------------------------------------------

    async def archive_memories(
        self,
        user_id: str,
        memory_ids: Iterable[int],
        *,
        scores: dict[int, float] | None = None,
    ) -> ArchiveResult:
        """Archive each of *memory_ids*, one transaction per memory.

        Parameters
        ----------
        user_id:
            Owner of the memories.
        memory_ids:
            Memories to move to cold storage.
        scores:
            Optional forgetting score per id, stored with the archive row.

        Returns
        -------
        ArchiveResult
            One :class:`ArchiveOutcome` per requested id, in request order.
        """
        if not user_id:
            raise InvalidArchiveError("user_id is required for archival")
        result = ArchiveResult(user_id=user_id)
        for memory_id in dict.fromkeys(int(i) for i in memory_ids):
            score = (scores or {}).get(memory_id)
            try:
                freed = await self._archive_one(user_id, memory_id, score)
            except (ArchiveError, StoreError) as exc:
                result.outcomes.append(ArchiveOutcome(memory_id, False, str(exc)))
                log.warning("Archive failed user=%s memory=%d: %s", user_id, memory_id, exc)
                continue
            result.outcomes.append(ArchiveOutcome(memory_id, True, freed_bytes=freed))

        if result.archived_ids:
            log.info(
                "Archived %d memories for %s: %s",
                len(result.archived_ids), user_id, result.archived_ids,
            )
        return result

    async def archive_cold(
        self,
        user_id: str,
        scores: list[ForgettingScore],
        *,
        exclude_ids: Iterable[int] = (),
    ) -> ArchiveResult:
        """Archive every unprotected memory scoring above ``archive_cutoff``.

        Summaries are eligible.  Ids in *exclude_ids* (for instance those
        just pruned) are ignored.  At most ``batch_size`` memories move,
        highest score first.
        """
        excluded = set(exclude_ids)
        cold = [
            s for s in scores
            if s.score > self._cfg.archive_cutoff
            and not s.protected
            and s.memory_id not in excluded
        ]
        cold.sort(key=lambda s: (-s.score, s.last_access, s.memory_id))
        cold = cold[: self._cfg.batch_size]
        return await self.archive_memories(
            user_id,
            [s.memory_id for s in cold],
            scores={s.memory_id: s.score for s in cold},
        )

    async def _archive_one(self, user_id: str, memory_id: int, score: float | None) -> int:
        retain = self._cfg.retain_embeddings

        def _do_archive(conn: sqlite3.Connection) -> int:
            row = conn.execute(
                "SELECT * FROM memories WHERE id = ? AND user_id = ?",
                (memory_id, user_id),
            ).fetchone()
            if row is None:
                raise InvalidArchiveError(
                    "memory not found", {"user_id": user_id, "memory_id": memory_id}
                )
            if row["is_archived"]:
                raise ArchiveError(
                    "memory already archived", {"user_id": user_id, "memory_id": memory_id}
                )

            emb = conn.execute(
                "SELECT COALESCE(SUM(dimension * 4), 0) AS b "
                "FROM memory_embeddings WHERE memory_id = ?",
                (memory_id,),
            ).fetchone()
            size_bytes = len(row["content"].encode()) + emb["b"]

            conn.execute(
                """
                INSERT INTO archived_memories
                    (memory_id, user_id, content, sector, tags, strength, importance,
                     access_count, created_at, last_accessed_at, archived_at,
                     forgetting_score, size_bytes)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    memory_id,
                    user_id,
                    row["content"],
                    row["sector"],
                    row["tags"],
                    row["strength"],
                    row["importance"],
                    row["access_count"],
                    row["created_at"],
                    row["last_accessed_at"],
                    utcnow_iso(),
                    score,
                    size_bytes,
                ),
            )
            if retain:
                conn.execute(
                    """
                    INSERT INTO archived_embeddings (memory_id, sector, embedding, dimension)
                    SELECT memory_id, sector, embedding, dimension
                    FROM memory_embeddings WHERE memory_id = ?
                    """,
                    (memory_id,),
                )
            conn.execute("DELETE FROM memory_embeddings WHERE memory_id = ?", (memory_id,))
            conn.execute(
                "UPDATE memories SET is_archived = 1, content = '', tags = NULL WHERE id = ?",
                (memory_id,),
            )
            Storage.log_action(
                conn,
                "archive",
                user_id,
                json.dumps({"score": score, "size_bytes": size_bytes}),
                json.dumps([memory_id]),
            )
            return size_bytes

        return await self._storage.execute_transaction(_do_archive)

    # ------------------------------------------------------------------
    # Restore / purge
    # ------------------------------------------------------------------

    async def restore(self, user_id: str, memory_id: int) -> Memory:
        """Bring an archived memory back into the hot store.

        Content, tags, statistics and creation time are restored exactly
        and the archive row is removed.

        Raises
        ------
        ArchiveError
            If no archive record exists for *memory_id* and *user_id*.
            Nothing is changed in that case.
        """

        def _do_restore(conn: sqlite3.Connection) -> None:
            archived = conn.execute(
                "SELECT * FROM archived_memories WHERE memory_id = ? AND user_id = ?",
                (memory_id, user_id),
            ).fetchone()
            if archived is None:
                raise ArchiveError(
                    "no archived record for memory",
                    {"user_id": user_id, "memory_id": memory_id},
                )

            values = (
                archived["content"],
                archived["tags"],
                archived["strength"],
                archived["importance"],
                archived["access_count"],
                archived["created_at"],
                archived["last_accessed_at"],
            )
            stub = conn.execute(
                "SELECT id FROM memories WHERE id = ?", (memory_id,)
            ).fetchone()
            if stub is not None:
                conn.execute(
                    """
                    UPDATE memories
                    SET content = ?, tags = ?, strength = ?, importance = ?,
                        access_count = ?, created_at = ?, last_accessed_at = ?,
                        is_archived = 0
                    WHERE id = ?
                    """,
                    (*values, memory_id),
                )
            else:
                conn.execute(
                    """
                    INSERT INTO memories
                        (content, tags, strength, importance, access_count,
                         created_at, last_accessed_at, id, user_id, sector)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (*values, memory_id, user_id, archived["sector"]),
                )

            conn.execute(
                """
                INSERT OR REPLACE INTO memory_embeddings (memory_id, sector, embedding, dimension)
                SELECT memory_id, sector, embedding, dimension
                FROM archived_embeddings WHERE memory_id = ?
                """,
                (memory_id,),
            )
            conn.execute("DELETE FROM archived_memories WHERE memory_id = ?", (memory_id,))
            Storage.log_action(conn, "restore", user_id, None, json.dumps([memory_id]))

        await self._storage.execute_transaction(_do_restore)
        memory = await self._memories.get(memory_id)
        if memory is None:
            raise ArchiveError("restored memory not found", {"memory_id": memory_id})
        log.info("Restored memory %d for %s", memory_id, user_id)
        return memory

    async def purge(self, user_id: str, memory_id: int) -> None:
        """Permanently delete an archived memory and its hot stub.

        Raises
        ------
        ArchiveError
            If no archive record exists for *memory_id* and *user_id*.
        """

        def _do_purge(conn: sqlite3.Connection) -> None:
            archived = conn.execute(
                "SELECT memory_id FROM archived_memories WHERE memory_id = ? AND user_id = ?",
                (memory_id, user_id),
            ).fetchone()
            if archived is None:
                raise ArchiveError(
                    "no archived record for memory",
                    {"user_id": user_id, "memory_id": memory_id},
                )
            detach_from_summary(conn, memory_id)
            conn.execute("DELETE FROM memories WHERE id = ?", (memory_id,))
            conn.execute("DELETE FROM archived_memories WHERE memory_id = ?", (memory_id,))
            Storage.log_action(conn, "purge", user_id, None, json.dumps([memory_id]))

        await self._storage.execute_transaction(_do_purge)
        log.info("Purged archived memory %d for %s", memory_id, user_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_archived(self, user_id: str, memory_id: int) -> ArchivedMemory | None:
        rows = await self._storage.execute(
            "SELECT * FROM archived_memories WHERE memory_id = ? AND user_id = ?",
            (memory_id, user_id),
        )
        return ArchivedMemory.from_row(rows[0]) if rows else None

    async def search_archive(
        self,
        user_id: str,
        query: str,
        limit: int = 50,
    ) -> list[ArchivedMemory]:
        """Case-insensitive substring search over archived content and tags."""
        if not query or not query.strip():
            raise InvalidArchiveError("search query must not be empty", {"user_id": user_id})
        escaped = query.strip().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        pattern = f"%{escaped}%"
        rows = await self._storage.execute(
            r"""
            SELECT * FROM archived_memories
            WHERE user_id = ?
              AND (content LIKE ? ESCAPE '\' OR COALESCE(tags, '') LIKE ? ESCAPE '\')
            ORDER BY archived_at DESC, memory_id ASC
            LIMIT ?
            """,
            (user_id, pattern, pattern, limit),
        )
        return [ArchivedMemory.from_row(r) for r in rows]

    async def get_archive_stats(self, user_id: str) -> dict[str, Any]:
        """Return ``count``, ``bytes_used`` and the archival time range."""
        rows = await self._storage.execute(
            """
            SELECT COUNT(*) AS cnt,
                   COALESCE(SUM(size_bytes), 0) AS bytes_used,
                   MIN(archived_at) AS oldest,
                   MAX(archived_at) AS newest
            FROM archived_memories WHERE user_id = ?
            """,
            (user_id,),
        )
        row = rows[0]
        return {
            "count": row["cnt"],
            "bytes_used": row["bytes_used"],
            "oldest_archived_at": row["oldest"],
            "newest_archived_at": row["newest"],
        }
