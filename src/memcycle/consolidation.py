"""Similarity consolidation: cluster, summarise, link, weaken.

The **consolidation engine** merges groups of mutually similar memories into
one summary memory while keeping every original.  For one user and one
sector, :meth:`ConsolidationEngine.run`:

1. **Lists eligible seeds** -- hot memories with an embedding in the sector
   that are neither summaries nor originals, in ``(created_at, id)`` order so
   the clustering is deterministic.
2. **Grows seed-centred clusters** -- every unassigned neighbour whose
   similarity *to the seed* reaches the threshold joins, until
   ``max_cluster_size``.  Growth is not transitive: a memory similar only to
   another member but not to the seed stays out.
3. **Discards small clusters** -- below ``max(2, min_cluster_size)`` the
   members stay unconsolidated and may join a later seed's cluster.
4. **Commits each cluster atomically** -- summary memory (with the
   normalised mean embedding), ``consolidated_from`` on the summary,
   ``consolidated_into`` plus reduced strength on every member, and one
   ``consolidation_history`` row, all in a single transaction.

The summary text is produced before the transaction opens.  A failing
summarizer or a rejected commit skips that cluster only; the pass carries on
with the next one.

Usage::

    engine = ConsolidationEngine(storage, memories, search, summarizer)
    result = await engine.run("alice", "episodic")
    print(result.to_dict())
"""

from __future__ import annotations

import itertools
import json
import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any

from memcycle.config import ConsolidationConfig, get_config
from memcycle.errors import (
    ConsolidationError,
    InvalidConsolidationError,
    SearchError,
    StoreError,
    SummarizerError,
)
from memcycle.memory import SECTORS, ConsolidationHistoryRecord, Memory, MemoryStore, dumps_ids
from memcycle.search import VectorSearch, cosine_similarity, normalized_mean
from memcycle.storage import Storage, serialize_embedding, utcnow_iso
from memcycle.summarizer import Summarizer

logger = logging.getLogger(__name__)

_TOPIC_CHARS = 50

_SUMMARY_STRENGTH: float = 1.0
"""Strength given to a freshly written summary memory."""


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class ConsolidationCluster:
    """Transient grouping of mutually similar memories.

    Attributes
    ----------
    member_ids:
        Seed first, then neighbours by similarity to the seed (descending).
    similarities:
        Similarity of each non-seed member to the seed.
    centroid:
        Normalised mean of the members' embeddings in ``sector``.
    avg_similarity:
        Mean pairwise cosine similarity across all members.
    """

    user_id: str
    sector: str
    seed_id: int
    member_ids: list[int]
    similarities: dict[int, float] = field(default_factory=dict)
    topic: str = ""
    centroid: list[float] = field(default_factory=list)
    avg_similarity: float = 0.0

    @property
    def size(self) -> int:
        return len(self.member_ids)

    def to_dict(self) -> dict[str, Any]:
        return {
            "seed_id": self.seed_id,
            "member_ids": list(self.member_ids),
            "size": self.size,
            "topic": self.topic,
            "avg_similarity": round(self.avg_similarity, 4),
        }


@dataclass
class ConsolidationResult:
    """Summary of one consolidation pass over a (user, sector).

    Attributes
    ----------
    clusters_found:
        Clusters that met the minimum size.
    committed:
        Clusters whose commit succeeded.
    skipped:
        Clusters dropped because the summarizer or the commit failed.
    summary_ids:
        Ids of the summary memories created, in commit order.
    history_ids:
        Ids of the ``consolidation_history`` rows written.
    details:
        Per-cluster detail dicts for logging and debugging.
    """

    user_id: str
    sector: str
    clusters_found: int = 0
    committed: int = 0
    skipped: int = 0
    summary_ids: list[int] = field(default_factory=list)
    history_ids: list[int] = field(default_factory=list)
    details: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "sector": self.sector,
            "clusters_found": self.clusters_found,
            "committed": self.committed,
            "skipped": self.skipped,
            "summary_ids": list(self.summary_ids),
            "history_ids": list(self.history_ids),
            "details": self.details,
        }


# ---------------------------------------------------------------------------
# ConsolidationEngine
# ---------------------------------------------------------------------------


class ConsolidationEngine:
    """Clusters similar memories of one sector into summary memories.

    Parameters
    ----------
    storage:
        Store whose :meth:`~memcycle.storage.Storage.execute_transaction`
        is the atomic commit primitive.
    memories:
        Memory store for loading member rows and embeddings.
    search:
        Similarity search used to grow clusters.
    summarizer:
        Produces the summary text for a cluster.
    config:
        Consolidation settings.  Falls back to ``get_config().consolidation``.
    """

    def __init__(
        self,
        storage: Storage,
        memories: MemoryStore,
        search: VectorSearch,
        summarizer: Summarizer,
        config: ConsolidationConfig | None = None,
    ) -> None:
        self._storage = storage
        self._memories = memories
        self._search = search
        self._summarizer = summarizer
        self._cfg = config or get_config().consolidation

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(
        self,
        user_id: str,
        sector: str,
        *,
        similarity_threshold: float | None = None,
        min_cluster_size: int | None = None,
    ) -> ConsolidationResult:
        """Run one consolidation pass for *user_id* in *sector*.

        Parameters
        ----------
        user_id:
            Owner whose memories are clustered.
        sector:
            Embedding space to cluster in.
        similarity_threshold:
            Minimum similarity to the seed, in ``[0, 1]``.
        min_cluster_size:
            Smallest cluster worth committing.  At least 1; a cluster always
            needs two members regardless.

        Returns
        -------
        ConsolidationResult
            Counts, created ids and per-cluster details.

        Raises
        ------
        InvalidConsolidationError
            If the threshold, cluster size or sector is invalid.
        SearchError
            If similarity search fails with a retryable error.
        """
        threshold = (
            self._cfg.similarity_threshold
            if similarity_threshold is None
            else similarity_threshold
        )
        min_size = self._cfg.min_cluster_size if min_cluster_size is None else min_cluster_size
        self._validate(sector, threshold, min_size)

        result = ConsolidationResult(user_id=user_id, sector=sector)
        clusters = await self.identify_clusters(user_id, sector, threshold, min_size)
        result.clusters_found = len(clusters)

        for cluster in clusters:
            try:
                summary_id, history_id = await self.consolidate_cluster(cluster, threshold)
            except (SummarizerError, ConsolidationError, StoreError) as exc:
                result.skipped += 1
                result.details.append({
                    "action": "skip",
                    **cluster.to_dict(),
                    "error": str(exc),
                })
                logger.warning(
                    "Skipped cluster user=%s sector=%s seed=%d members=%s: %s",
                    user_id, sector, cluster.seed_id, cluster.member_ids, exc,
                )
                continue

            result.committed += 1
            result.summary_ids.append(summary_id)
            result.history_ids.append(history_id)
            result.details.append({
                "action": "consolidate",
                **cluster.to_dict(),
                "summary_id": summary_id,
                "history_id": history_id,
            })

        logger.info(
            "Consolidation user=%s sector=%s: found=%d committed=%d skipped=%d",
            user_id, sector, result.clusters_found, result.committed, result.skipped,
        )
        return result

    async def identify_clusters(
        self,
        user_id: str,
        sector: str,
        similarity_threshold: float | None = None,
        min_cluster_size: int | None = None,
    ) -> list[ConsolidationCluster]:
        """Find seed-centred clusters without mutating anything."""
        threshold = (
            self._cfg.similarity_threshold
            if similarity_threshold is None
            else similarity_threshold
        )
        min_size = self._cfg.min_cluster_size if min_cluster_size is None else min_cluster_size
        self._validate(sector, threshold, min_size)
        effective_min = max(2, min_size)
        max_size = max(effective_min, self._cfg.max_cluster_size)

        seeds = await self._eligible_memories(user_id, sector)
        by_id = {m.id: m for m in seeds}
        assigned: set[int] = set()
        clusters: list[ConsolidationCluster] = []

        for seed in seeds:
            if seed.id in assigned:
                continue
            try:
                similarities = await self._grow(seed, by_id, assigned, threshold, max_size)
            except SearchError as exc:
                if exc.retryable:
                    raise
                logger.debug("Seed %d skipped: %s", seed.id, exc)
                continue

            member_ids = [seed.id, *similarities]
            if len(member_ids) < effective_min:
                logger.debug("Seed %d: cluster of %d below minimum", seed.id, len(member_ids))
                continue

            assigned.update(member_ids)
            clusters.append(
                await self._describe(user_id, sector, seed, member_ids, similarities)
            )

        logger.debug(
            "Identified %d clusters among %d eligible memories (user=%s sector=%s)",
            len(clusters), len(seeds), user_id, sector,
        )
        return clusters

    async def consolidate_cluster(
        self,
        cluster: ConsolidationCluster,
        similarity_threshold: float,
    ) -> tuple[int, int]:
        """Summarise and commit one cluster atomically.

        Returns
        -------
        tuple[int, int]
            ``(summary_memory_id, history_id)``.

        Raises
        ------
        SummarizerError
            If no summary text could be produced.  Nothing is written.
        ConsolidationError
            If a member changed since clustering.  Nothing is written.
        StoreError
            If the store rejected the commit.  Nothing is written.
        """
        members = await self._memories.get_many(cluster.member_ids)
        missing = [i for i in cluster.member_ids if i not in members]
        if missing:
            raise ConsolidationError(
                "cluster members no longer exist",
                {"user_id": cluster.user_id, "sector": cluster.sector, "missing": missing},
            )
        ordered = [members[i] for i in cluster.member_ids]

        try:
            summary_text = await self._summarizer.summarize(
                [m.content for m in ordered], cluster.topic
            )
        except SummarizerError:
            raise
        except Exception as exc:
            raise SummarizerError(
                f"summarizer failed: {exc}",
                {"seed_id": cluster.seed_id, "member_ids": list(cluster.member_ids)},
            ) from exc
        if not summary_text or not summary_text.strip():
            raise SummarizerError("summarizer returned empty text", {"seed_id": cluster.seed_id})

        factor = self._cfg.strength_decay_factor
        floor = self._cfg.strength_floor
        tags_json = json.dumps(list(self._cfg.summary_tags))
        importance = self._cfg.summary_importance
        member_ids = list(cluster.member_ids)

        def _do_commit(conn: sqlite3.Connection) -> tuple[int, int]:
            placeholders = ",".join("?" * len(member_ids))
            rows = conn.execute(
                f"""
                SELECT id, strength FROM memories
                WHERE id IN ({placeholders})
                  AND user_id = ?
                  AND is_archived = 0
                  AND consolidated_into IS NULL
                  AND consolidated_from IS NULL
                """,
                (*member_ids, cluster.user_id),
            ).fetchall()
            current = {r["id"]: r["strength"] for r in rows}
            if len(current) != len(member_ids):
                raise ConsolidationError(
                    "cluster members changed since clustering",
                    {
                        "user_id": cluster.user_id,
                        "sector": cluster.sector,
                        "member_ids": [i for i in member_ids if i not in current],
                    },
                )

            now = utcnow_iso()
            cursor = conn.execute(
                """
                INSERT INTO memories
                    (user_id, content, sector, strength, importance, tags,
                     created_at, consolidated_from)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    cluster.user_id,
                    summary_text,
                    cluster.sector,
                    _SUMMARY_STRENGTH,
                    importance,
                    tags_json,
                    now,
                    dumps_ids(member_ids),
                ),
            )
            summary_id = cursor.lastrowid or 0

            if cluster.centroid:
                conn.execute(
                    "INSERT INTO memory_embeddings (memory_id, sector, embedding, dimension) "
                    "VALUES (?, ?, ?, ?)",
                    (
                        summary_id,
                        cluster.sector,
                        serialize_embedding(cluster.centroid),
                        len(cluster.centroid),
                    ),
                )

            for member_id in member_ids:
                conn.execute(
                    "UPDATE memories SET consolidated_into = ?, strength = ? WHERE id = ?",
                    (summary_id, _weaken(current[member_id], factor, floor), member_id),
                )

            cursor = conn.execute(
                """
                INSERT INTO consolidation_history
                    (user_id, sector, summary_memory_id, consolidated_memory_ids,
                     member_strengths, similarity_threshold, cluster_size,
                     avg_similarity, consolidated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    cluster.user_id,
                    cluster.sector,
                    summary_id,
                    json.dumps(member_ids),
                    json.dumps({str(i): current[i] for i in member_ids}),
                    similarity_threshold,
                    len(member_ids),
                    cluster.avg_similarity,
                    now,
                ),
            )
            return summary_id, cursor.lastrowid or 0

        summary_id, history_id = await self._storage.execute_transaction(_do_commit)
        logger.info(
            "Committed cluster user=%s sector=%s summary=%d members=%s",
            cluster.user_id, cluster.sector, summary_id, member_ids,
        )
        return summary_id, history_id

    async def get_history(
        self,
        user_id: str,
        limit: int = 20,
    ) -> list[ConsolidationHistoryRecord]:
        """Return *user_id*'s consolidation events, most recent first."""
        rows = await self._storage.execute(
            """
            SELECT * FROM consolidation_history
            WHERE user_id = ?
            ORDER BY consolidated_at DESC, id DESC
            LIMIT ?
            """,
            (user_id, limit),
        )
        return [ConsolidationHistoryRecord.from_row(r) for r in rows]

    async def rollback(self, history_id: int) -> ConsolidationHistoryRecord:
        """Undo one committed consolidation event.

        Member strengths recorded at commit time are restored, their
        ``consolidated_into`` is cleared and the summary memory is deleted.
        The history row is kept, marked ``rolled_back_at``, with its
        summary id nulled.

        Raises
        ------
        ConsolidationError
            If the event does not exist or was already rolled back.
        """

        def _do_rollback(conn: sqlite3.Connection) -> None:
            row = conn.execute(
                "SELECT * FROM consolidation_history WHERE id = ?", (history_id,)
            ).fetchone()
            if row is None:
                raise ConsolidationError("unknown consolidation event", {"history_id": history_id})
            record = ConsolidationHistoryRecord.from_row(row)
            if record.rolled_back_at is not None:
                raise ConsolidationError(
                    "consolidation event already rolled back", {"history_id": history_id}
                )

            summary_id = record.summary_memory_id
            for member_id in record.consolidated_memory_ids:
                strength = record.member_strengths.get(member_id)
                conn.execute(
                    """
                    UPDATE memories
                    SET consolidated_into = NULL,
                        strength = COALESCE(?, strength)
                    WHERE id = ?
                      AND (consolidated_into IS NULL OR consolidated_into = ?)
                    """,
                    (strength, member_id, summary_id),
                )
            if summary_id is not None:
                conn.execute("DELETE FROM archived_memories WHERE memory_id = ?", (summary_id,))
                conn.execute("DELETE FROM memories WHERE id = ?", (summary_id,))

            conn.execute(
                "UPDATE consolidation_history "
                "SET rolled_back_at = ?, summary_memory_id = NULL WHERE id = ?",
                (utcnow_iso(), history_id),
            )
            Storage.log_action(
                conn,
                "rollback",
                record.user_id,
                json.dumps({"history_id": history_id, "summary_id": summary_id}),
                json.dumps(record.consolidated_memory_ids),
            )

        await self._storage.execute_transaction(_do_rollback)
        rows = await self._storage.execute(
            "SELECT * FROM consolidation_history WHERE id = ?", (history_id,)
        )
        record = ConsolidationHistoryRecord.from_row(rows[0])
        logger.info(
            "Rolled back consolidation %d (user=%s members=%s)",
            history_id, record.user_id, record.consolidated_memory_ids,
        )
        return record

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _validate(sector: str, threshold: float, min_size: int) -> None:
        if sector not in SECTORS:
            raise InvalidConsolidationError(f"Unknown sector {sector!r}", {"sector": sector})
        if not 0.0 <= threshold <= 1.0:
            raise InvalidConsolidationError(
                "similarity threshold must be within [0, 1]", {"threshold": threshold}
            )
        if min_size < 1:
            raise InvalidConsolidationError(
                "minimum cluster size must be at least 1", {"min_cluster_size": min_size}
            )

    async def _eligible_memories(self, user_id: str, sector: str) -> list[Memory]:
        rows = await self._storage.execute(
            """
            SELECT m.* FROM memories m
            JOIN memory_embeddings e ON e.memory_id = m.id AND e.sector = m.sector
            WHERE m.user_id = ?
              AND m.sector = ?
              AND m.is_archived = 0
              AND m.consolidated_into IS NULL
              AND m.consolidated_from IS NULL
            ORDER BY m.created_at ASC, m.id ASC
            """,
            (user_id, sector),
        )
        return [Memory.from_row(r) for r in rows]

    async def _grow(
        self,
        seed: Memory,
        eligible: dict[int, Memory],
        assigned: set[int],
        threshold: float,
        max_size: int,
    ) -> dict[int, float]:
        """Collect unassigned neighbours of *seed*, best first.

        Pages through the neighbour list with a doubling limit while a full
        page has been consumed and the cluster still has room.
        """
        joined: dict[int, float] = {}
        page = max(self._cfg.search_page_size, 2 * max_size)
        while True:
            hits = await self._search.search_by_memory(
                seed.id,
                seed.sector,
                limit=page,
                threshold=threshold,
                user_id=seed.user_id,
            )
            for hit in hits:
                if 1 + len(joined) >= max_size:
                    break
                if hit.memory_id in joined or hit.memory_id in assigned:
                    continue
                if hit.memory_id not in eligible:
                    continue
                joined[hit.memory_id] = hit.similarity
            if 1 + len(joined) >= max_size or len(hits) < page:
                return joined
            page *= 2

    async def _describe(
        self,
        user_id: str,
        sector: str,
        seed: Memory,
        member_ids: list[int],
        similarities: dict[int, float],
    ) -> ConsolidationCluster:
        embeddings = await self._memories.get_embeddings(member_ids, sector)
        vectors = [embeddings[i] for i in member_ids if i in embeddings]
        pairs = list(itertools.combinations(vectors, 2))
        avg = (
            sum(cosine_similarity(a, b) for a, b in pairs) / len(pairs)
            if pairs
            else 0.0
        )
        return ConsolidationCluster(
            user_id=user_id,
            sector=sector,
            seed_id=seed.id,
            member_ids=member_ids,
            similarities=dict(similarities),
            topic=" ".join(seed.content.split())[:_TOPIC_CHARS],
            centroid=normalized_mean(vectors),
            avg_similarity=avg,
        )


def _weaken(strength: float, factor: float, floor: float) -> float:
    """Scale *strength* by *factor* without dropping below *floor*.

    A memory already below the floor keeps its strength.
    """
    reduced = strength * factor
    if reduced >= floor:
        return reduced
    return min(strength, floor)
