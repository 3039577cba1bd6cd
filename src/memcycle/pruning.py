"""Irreversible removal of forgetting candidates.

Pruning hard-deletes memories (embeddings cascade) in one transaction.  An
original that is pruned is detached from its summary's ``consolidated_from``
list so no summary points at a missing member.  Summaries, archived stubs,
protected memories and other users' memories are never deleted here, even
when asked for explicitly; they are reported back as skipped.

Every prune appends one ``lifecycle_log`` row listing the deleted ids with
their scores and reasons.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Iterable

from memcycle.config import ForgettingConfig, get_config
from memcycle.errors import ValidationError
from memcycle.forgetting import ForgettingCandidate, ForgettingScorer
from memcycle.memory import detach_from_summary, has_protective_tag, loads_list
from memcycle.storage import Storage

log = logging.getLogger(__name__)


@dataclass
class PrunePreview:
    """What a prune would delete, without deleting anything."""

    user_id: str
    candidates: list[ForgettingCandidate] = field(default_factory=list)
    total_bytes: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "candidates": [
                {"memory_id": c.memory_id, "score": round(c.score, 4), "reason": c.reason.value}
                for c in self.candidates
            ],
            "total_bytes": self.total_bytes,
        }


@dataclass
class PruneResult:
    """Outcome of one prune transaction."""

    user_id: str
    deleted_ids: list[int] = field(default_factory=list)
    skipped_ids: list[int] = field(default_factory=list)
    detached_from: dict[int, int] = field(default_factory=dict)
    """Pruned original id -> summary it was detached from."""
    freed_bytes: int = 0

    @property
    def deleted_count(self) -> int:
        return len(self.deleted_ids)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "deleted_ids": list(self.deleted_ids),
            "deleted_count": self.deleted_count,
            "skipped_ids": list(self.skipped_ids),
            "freed_bytes": self.freed_bytes,
        }


class PruningService:
    """Deletes forgetting candidates.

    Parameters
    ----------
    storage:
        Store providing the atomic commit primitive.
    scorer:
        Scorer used by :meth:`preview`.
    config:
        Forgetting settings.  Falls back to ``get_config().forgetting``.
    """

    def __init__(
        self,
        storage: Storage,
        scorer: ForgettingScorer,
        config: ForgettingConfig | None = None,
    ) -> None:
        self._storage = storage
        self._scorer = scorer
        self._cfg = config or get_config().forgetting

    async def preview(self, user_id: str, limit: int | None = None) -> PrunePreview:
        """Return the current pruning batch and the bytes it would free."""
        candidates = await self._scorer.find_candidates(user_id, limit=limit)
        ids = [c.memory_id for c in candidates]
        total = 0
        if ids:
            placeholders = ",".join("?" * len(ids))
            rows = await self._storage.execute(
                f"""
                SELECT
                    COALESCE((SELECT SUM(LENGTH(CAST(content AS BLOB))) FROM memories
                              WHERE id IN ({placeholders})), 0) AS content_bytes,
                    COALESCE((SELECT SUM(dimension * 4) FROM memory_embeddings
                              WHERE memory_id IN ({placeholders})), 0) AS embedding_bytes
                """,
                (*ids, *ids),
            )
            total = rows[0]["content_bytes"] + rows[0]["embedding_bytes"]
        return PrunePreview(user_id=user_id, candidates=candidates, total_bytes=total)

    async def prune(
        self,
        user_id: str,
        memory_ids: Iterable[int],
        *,
        candidates: dict[int, ForgettingCandidate] | None = None,
    ) -> PruneResult:
        """Permanently delete *memory_ids* belonging to *user_id*.

        Parameters
        ----------
        user_id:
            Owner of the memories.  Ids of other users are skipped.
        memory_ids:
            Memories to delete.
        candidates:
            Optional score/reason lookup written to the audit log.

        Returns
        -------
        PruneResult
            Deleted and skipped ids, freed bytes.

        Raises
        ------
        ValidationError
            If *user_id* is empty.
        StoreError
            If the transaction fails; nothing is deleted.
        """
        if not user_id:
            raise ValidationError("user_id is required for pruning")
        ids = list(dict.fromkeys(int(i) for i in memory_ids))
        result = PruneResult(user_id=user_id)
        if not ids:
            return result

        protected_tags = self._cfg.protected_tags
        lookup = candidates or {}

        def _do_prune(conn: sqlite3.Connection) -> None:
            for memory_id in ids:
                row = conn.execute(
                    "SELECT user_id, content, tags, is_archived, consolidated_from "
                    "FROM memories WHERE id = ?",
                    (memory_id,),
                ).fetchone()
                if (
                    row is None
                    or row["user_id"] != user_id
                    or row["is_archived"]
                    or row["consolidated_from"] is not None
                    or has_protective_tag(loads_list(row["tags"]), protected_tags)
                ):
                    result.skipped_ids.append(memory_id)
                    continue

                emb = conn.execute(
                    "SELECT COALESCE(SUM(dimension * 4), 0) AS b "
                    "FROM memory_embeddings WHERE memory_id = ?",
                    (memory_id,),
                ).fetchone()
                result.freed_bytes += len(row["content"].encode()) + emb["b"]

                summary_id = detach_from_summary(conn, memory_id)
                if summary_id is not None:
                    result.detached_from[memory_id] = summary_id
                conn.execute("DELETE FROM memories WHERE id = ?", (memory_id,))
                result.deleted_ids.append(memory_id)

            if result.deleted_ids:
                Storage.log_action(
                    conn,
                    "prune",
                    user_id,
                    json.dumps({
                        "freed_bytes": result.freed_bytes,
                        "scores": {
                            str(i): {
                                "score": round(lookup[i].score, 4),
                                "reason": lookup[i].reason.value,
                            }
                            for i in result.deleted_ids
                            if i in lookup
                        },
                    }),
                    json.dumps(result.deleted_ids),
                )

        await self._storage.execute_transaction(_do_prune)

        if result.deleted_ids:
            log.info(
                "Pruned %d memories for %s (freed=%d bytes): %s",
                result.deleted_count, user_id, result.freed_bytes, result.deleted_ids,
            )
        if result.skipped_ids:
            log.warning("Prune skipped ids for %s: %s", user_id, result.skipped_ids)
        return result

    async def prune_candidates(
        self,
        user_id: str,
        candidates: list[ForgettingCandidate],
        limit: int | None = None,
    ) -> PruneResult:
        """Prune the first *limit* candidates (default ``prune_batch_size``)."""
        batch = candidates[: self._cfg.prune_batch_size if limit is None else limit]
        return await self.prune(
            user_id,
            [c.memory_id for c in batch],
            candidates={c.memory_id: c for c in batch},
        )
