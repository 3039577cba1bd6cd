"""Vector similarity search over per-sector memory embeddings.

Similarity is cosine similarity clamped into ``[0, 1]``.  When sqlite-vec is
loaded the distance is computed inside SQLite with ``vec_distance_cosine``;
otherwise rows are scored in Python.  Both paths return identical ordering:
similarity descending, then memory id ascending.

Search is side-effect free.  It never records an access.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Iterable

from memcycle.config import SearchConfig, get_config
from memcycle.errors import InvalidSearchError, SearchError, StoreError
from memcycle.memory import SECTORS
from memcycle.storage import Storage, deserialize_embedding, serialize_embedding

log = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SearchResult:
    """One neighbour returned by :class:`VectorSearch`."""

    memory_id: int
    similarity: float


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity of two vectors clamped into ``[0, 1]``.

    Zero vectors and mismatched dimensions score ``0.0``.
    """
    if len(a) != len(b) or not a:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return max(0.0, min(1.0, dot / (norm_a * norm_b)))


def normalized_mean(vectors: Iterable[list[float]]) -> list[float]:
    """Unit-length mean of equally sized vectors (the cluster centroid)."""
    vectors = list(vectors)
    if not vectors:
        return []
    dim = len(vectors[0])
    mean = [sum(v[i] for v in vectors) / len(vectors) for i in range(dim)]
    norm = math.sqrt(sum(x * x for x in mean))
    if norm == 0.0:
        return mean
    return [x / norm for x in mean]


class VectorSearch:
    """Nearest-neighbour queries against ``memory_embeddings``.

    Parameters
    ----------
    storage:
        An initialised :class:`~memcycle.storage.Storage` instance.
    config:
        Default limit and threshold.  Falls back to ``get_config().search``.
    """

    def __init__(self, storage: Storage, config: SearchConfig | None = None) -> None:
        self._storage = storage
        self._cfg = config or get_config().search

    cosine_similarity = staticmethod(cosine_similarity)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def search(
        self,
        query_embedding: list[float],
        sector: str,
        limit: int | None = None,
        threshold: float | None = None,
        *,
        user_id: str | None = None,
        exclude_ids: Iterable[int] = (),
    ) -> list[SearchResult]:
        """Return up to *limit* neighbours with similarity >= *threshold*.

        Parameters
        ----------
        query_embedding:
            The vector to search with.
        sector:
            Embedding space to search in.
        limit:
            Maximum number of results.  Must be at least 1.
        threshold:
            Minimum similarity in ``[0, 1]``.
        user_id:
            Restrict results to one user's memories.
        exclude_ids:
            Memory ids that must not appear in the result.

        Returns
        -------
        list[SearchResult]
            Ordered by similarity descending, then memory id ascending.

        Raises
        ------
        InvalidSearchError
            On an empty embedding, unknown sector, ``limit < 1`` or a
            threshold outside ``[0, 1]``.
        SearchError
            If the store cannot be read (retryable).
        """
        limit = self._cfg.default_limit if limit is None else limit
        threshold = self._cfg.default_threshold if threshold is None else threshold
        self._validate(query_embedding, sector, limit, threshold)
        excluded = {int(i) for i in exclude_ids}

        try:
            if self._storage.vec_available:
                results = await self._search_sql(
                    query_embedding, sector, limit, threshold, user_id, excluded
                )
            else:
                results = await self._search_python(
                    query_embedding, sector, limit, threshold, user_id, excluded
                )
        except StoreError as exc:
            raise SearchError(
                "store unreachable during similarity search",
                {"sector": sector, "user_id": user_id},
                retryable=True,
            ) from exc

        log.debug(
            "search sector=%s user=%s limit=%d threshold=%.3f -> %d results",
            sector, user_id, limit, threshold, len(results),
        )
        return results

    async def search_by_memory(
        self,
        memory_id: int,
        sector: str,
        limit: int | None = None,
        threshold: float | None = None,
        *,
        user_id: str | None = None,
        exclude_ids: Iterable[int] = (),
    ) -> list[SearchResult]:
        """Like :meth:`search`, seeded with a stored memory's embedding.

        The source memory never appears in its own result.

        Raises
        ------
        SearchError
            If *memory_id* has no embedding in *sector*.
        """
        if sector not in SECTORS:
            raise InvalidSearchError(f"Unknown sector {sector!r}", {"sector": sector})
        try:
            rows = await self._storage.execute(
                "SELECT embedding FROM memory_embeddings WHERE memory_id = ? AND sector = ?",
                (memory_id, sector),
            )
        except StoreError as exc:
            raise SearchError(
                "store unreachable while loading source embedding",
                {"memory_id": memory_id, "sector": sector},
                retryable=True,
            ) from exc
        if not rows:
            raise SearchError(
                "memory has no embedding in sector",
                {"memory_id": memory_id, "sector": sector},
            )
        source = deserialize_embedding(rows[0]["embedding"])
        return await self.search(
            source,
            sector,
            limit,
            threshold,
            user_id=user_id,
            exclude_ids={memory_id, *exclude_ids},
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _validate(query: list[float], sector: str, limit: int, threshold: float) -> None:
        if not query:
            raise InvalidSearchError("query embedding is empty", {"sector": sector})
        if sector not in SECTORS:
            raise InvalidSearchError(f"Unknown sector {sector!r}", {"sector": sector})
        if limit < 1:
            raise InvalidSearchError("limit must be at least 1", {"limit": limit})
        if not 0.0 <= threshold <= 1.0:
            raise InvalidSearchError("threshold must be within [0, 1]", {"threshold": threshold})

    @staticmethod
    def _filters(
        sector: str,
        dimension: int,
        user_id: str | None,
        excluded: set[int],
    ) -> tuple[str, list[Any]]:
        clauses = ["e.sector = ?", "e.dimension = ?", "m.is_archived = 0"]
        params: list[Any] = [sector, dimension]
        if user_id is not None:
            clauses.append("m.user_id = ?")
            params.append(user_id)
        if excluded:
            clauses.append(f"e.memory_id NOT IN ({','.join('?' * len(excluded))})")
            params.extend(sorted(excluded))
        return " AND ".join(clauses), params

    async def _search_sql(
        self,
        query: list[float],
        sector: str,
        limit: int,
        threshold: float,
        user_id: str | None,
        excluded: set[int],
    ) -> list[SearchResult]:
        where, params = self._filters(sector, len(query), user_id, excluded)
        rows = await self._storage.execute(
            f"""
            SELECT memory_id, similarity FROM (
                SELECT e.memory_id AS memory_id,
                       MAX(0.0, MIN(1.0, 1.0 - vec_distance_cosine(e.embedding, ?))) AS similarity
                FROM memory_embeddings e
                JOIN memories m ON m.id = e.memory_id
                WHERE {where}
            )
            WHERE similarity >= ?
            ORDER BY similarity DESC, memory_id ASC
            LIMIT ?
            """,
            (serialize_embedding(query), *params, threshold, limit),
        )
        return [SearchResult(r["memory_id"], float(r["similarity"])) for r in rows]

    async def _search_python(
        self,
        query: list[float],
        sector: str,
        limit: int,
        threshold: float,
        user_id: str | None,
        excluded: set[int],
    ) -> list[SearchResult]:
        where, params = self._filters(sector, len(query), user_id, excluded)
        rows = await self._storage.execute(
            f"""
            SELECT e.memory_id AS memory_id, e.embedding AS embedding
            FROM memory_embeddings e
            JOIN memories m ON m.id = e.memory_id
            WHERE {where}
            """,
            tuple(params),
        )
        scored = [
            SearchResult(r["memory_id"], cosine_similarity(query, deserialize_embedding(r["embedding"])))
            for r in rows
        ]
        scored = [s for s in scored if s.similarity >= threshold]
        scored.sort(key=lambda s: (-s.similarity, s.memory_id))
        return scored[:limit]
