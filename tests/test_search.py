"""Tests for vector similarity search (SQL and pure-Python paths)."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from memcycle.errors import InvalidSearchError, SearchError, StoreError, ValidationError
from memcycle.search import VectorSearch, cosine_similarity, normalized_mean
from memcycle.storage import Storage
from tests.conftest import axis, insert_memory, vec


@pytest.fixture(params=["sql", "python"])
def search_mode(request: pytest.FixtureRequest, storage: Storage) -> VectorSearch:
    """Run each search test against both similarity implementations."""
    if request.param == "python":
        storage._vec_available = False
    elif not storage.vec_available:
        pytest.skip("sqlite-vec not loadable here")
    return VectorSearch(storage)


class TestCosine:
    def test_identical(self) -> None:
        assert cosine_similarity([1.0, 2.0], [1.0, 2.0]) == pytest.approx(1.0)

    def test_orthogonal(self) -> None:
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == 0.0

    def test_opposite_clamped_to_zero(self) -> None:
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == 0.0

    def test_zero_vector(self) -> None:
        assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0

    def test_dimension_mismatch(self) -> None:
        assert cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0]) == 0.0

    def test_normalized_mean_is_unit(self) -> None:
        centroid = normalized_mean([[1.0, 0.0], [0.0, 1.0]])
        assert centroid == pytest.approx([2 ** -0.5, 2 ** -0.5])


class TestSearch:
    async def test_orders_by_similarity_then_id(
        self, storage: Storage, search_mode: VectorSearch
    ) -> None:
        far = await insert_memory(storage, "far", embedding=vec(1, 1))
        near_b = await insert_memory(storage, "near b", embedding=vec(1, 0))
        near_a = await insert_memory(storage, "near a", embedding=vec(1, 0))
        await insert_memory(storage, "unrelated", embedding=axis(3))

        results = await search_mode.search(vec(1, 0), "episodic", limit=10, threshold=0.5)

        assert [r.memory_id for r in results] == [near_b, near_a, far]
        assert results[0].similarity == pytest.approx(1.0, abs=1e-5)
        assert results[2].similarity == pytest.approx(2 ** -0.5, abs=1e-5)

    async def test_threshold_and_limit(self, storage: Storage, search_mode: VectorSearch) -> None:
        for _ in range(3):
            await insert_memory(storage, "x", embedding=vec(1, 0))
        await insert_memory(storage, "y", embedding=vec(0, 1))

        assert len(await search_mode.search(vec(1, 0), "episodic", limit=2)) == 2
        hits = await search_mode.search(vec(1, 0), "episodic", limit=10, threshold=0.9)
        assert len(hits) == 3

    async def test_sector_isolation(self, storage: Storage, search_mode: VectorSearch) -> None:
        await insert_memory(storage, "e", sector="episodic", embedding=vec(1, 0))
        s = await insert_memory(storage, "s", sector="semantic", embedding=vec(1, 0))
        hits = await search_mode.search(vec(1, 0), "semantic")
        assert [h.memory_id for h in hits] == [s]

    async def test_user_filter_and_exclusion(
        self, storage: Storage, search_mode: VectorSearch
    ) -> None:
        a1 = await insert_memory(storage, "a1", user_id="alice", embedding=vec(1, 0))
        a2 = await insert_memory(storage, "a2", user_id="alice", embedding=vec(1, 0))
        await insert_memory(storage, "b1", user_id="bob", embedding=vec(1, 0))

        hits = await search_mode.search(vec(1, 0), "episodic", user_id="alice", exclude_ids=[a1])
        assert [h.memory_id for h in hits] == [a2]

    async def test_archived_excluded(self, storage: Storage, search_mode: VectorSearch) -> None:
        m = await insert_memory(storage, "a", embedding=vec(1, 0))
        await storage.execute_write("UPDATE memories SET is_archived = 1 WHERE id = ?", (m,))
        assert await search_mode.search(vec(1, 0), "episodic") == []

    async def test_search_by_memory_excludes_source(
        self, storage: Storage, search_mode: VectorSearch
    ) -> None:
        src = await insert_memory(storage, "src", embedding=vec(1, 0))
        other = await insert_memory(storage, "other", embedding=vec(1, 0.1))
        hits = await search_mode.search_by_memory(src, "episodic", threshold=0.5)
        assert [h.memory_id for h in hits] == [other]

    async def test_search_does_not_record_access(
        self, storage: Storage, search_mode: VectorSearch
    ) -> None:
        m = await insert_memory(storage, "a", embedding=vec(1, 0))
        await search_mode.search(vec(1, 0), "episodic")
        rows = await storage.execute(
            "SELECT access_count, last_accessed_at FROM memories WHERE id = ?", (m,)
        )
        assert rows[0]["access_count"] == 0
        assert rows[0]["last_accessed_at"] is None


class TestSearchErrors:
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"limit": 0},
            {"threshold": 1.5},
            {"threshold": -0.1},
        ],
    )
    async def test_invalid_arguments(self, search: VectorSearch, kwargs: dict) -> None:
        with pytest.raises(InvalidSearchError):
            await search.search(vec(1, 0), "episodic", **kwargs)

    async def test_empty_embedding(self, search: VectorSearch) -> None:
        with pytest.raises(ValidationError):
            await search.search([], "episodic")

    async def test_unknown_sector(self, search: VectorSearch) -> None:
        with pytest.raises(InvalidSearchError):
            await search.search(vec(1, 0), "dreams")

    async def test_missing_embedding_not_retryable(
        self, storage: Storage, search: VectorSearch
    ) -> None:
        m = await insert_memory(storage, "no embedding")
        with pytest.raises(SearchError) as info:
            await search.search_by_memory(m, "episodic")
        assert not info.value.retryable

    async def test_store_failure_is_retryable(self, storage: Storage, search: VectorSearch) -> None:
        with patch.object(storage, "execute", AsyncMock(side_effect=StoreError("locked"))):
            with pytest.raises(SearchError) as info:
                await search.search(vec(1, 0), "episodic")
        assert info.value.retryable
