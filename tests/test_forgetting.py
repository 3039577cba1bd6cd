"""Tests for the composite forgetting score and candidate selection."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from memcycle.config import ForgettingConfig, ForgettingWeights
from memcycle.errors import ValidationError
from memcycle.forgetting import (
    ForgettingReason,
    ForgettingScore,
    ForgettingScorer,
)
from memcycle.memory import Memory, MemoryStore
from memcycle.search import VectorSearch
from memcycle.storage import Storage
from tests.conftest import insert_memory, vec


@pytest.fixture
def scorer(memories: MemoryStore, search: VectorSearch) -> ForgettingScorer:
    return ForgettingScorer(memories, search, ForgettingConfig())


def _score(memory_id: int, score: float, last_access: str = "2026-01-01", **kw) -> ForgettingScore:
    defaults = dict(
        decay=0.0,
        importance=0.0,
        interference=0.0,
        reason=ForgettingReason.TEMPORAL_DECAY,
        protected=False,
        is_summary=False,
    )
    defaults.update(kw)
    return ForgettingScore(memory_id=memory_id, score=score, last_access=last_access, **defaults)


class TestSignals:
    def test_decay_half_life(self, scorer: ForgettingScorer) -> None:
        now = datetime(2026, 3, 1, tzinfo=timezone.utc)
        at_half_life = (now - timedelta(days=30)).isoformat()
        assert scorer.decay_signal(now.isoformat(), now) == pytest.approx(0.0)
        assert scorer.decay_signal(at_half_life, now) == pytest.approx(0.5)

    def test_decay_future_access_clamped(self, scorer: ForgettingScorer) -> None:
        now = datetime(2026, 3, 1, tzinfo=timezone.utc)
        assert scorer.decay_signal((now + timedelta(days=1)).isoformat(), now) == 0.0

    def test_importance_blend(self, scorer: ForgettingScorer) -> None:
        m = Memory(id=1, user_id="u", content="x", sector="semantic", strength=1.0, importance=0.5)
        assert scorer.importance_signal(m) == pytest.approx(0.45)

    def test_importance_grows_with_access(self, scorer: ForgettingScorer) -> None:
        cold = Memory(id=1, user_id="u", content="x", sector="semantic", access_count=0)
        hot = Memory(id=2, user_id="u", content="x", sector="semantic", access_count=50)
        assert scorer.importance_signal(hot) > scorer.importance_signal(cold)

    def test_protective_tag_pins_importance(self, scorer: ForgettingScorer) -> None:
        m = Memory(
            id=1, user_id="u", content="x", sector="semantic",
            strength=0.1, importance=0.0, tags=["Pinned"],
        )
        assert scorer.importance_signal(m) == 1.0


class TestScoring:
    async def test_fresh_memory_scores_low(
        self, storage: Storage, memories: MemoryStore, scorer: ForgettingScorer
    ) -> None:
        m = await insert_memory(storage, "fresh", accessed_days_ago=0)
        score = await scorer.score_memory(await memories.get(m))
        assert score.score == pytest.approx(0.165, abs=1e-3)
        assert score.reason is ForgettingReason.LOW_IMPORTANCE

    async def test_old_weak_memory_is_candidate(
        self, storage: Storage, scorer: ForgettingScorer
    ) -> None:
        old = await insert_memory(storage, "old", strength=0.1, importance=0.0, days_ago=300)
        await insert_memory(storage, "fresh", accessed_days_ago=0)

        candidates = await scorer.find_candidates("alice")

        assert [c.memory_id for c in candidates] == [old]
        assert candidates[0].score == pytest.approx(0.79, abs=1e-2)
        assert candidates[0].reason is ForgettingReason.TEMPORAL_DECAY

    async def test_protected_never_candidate(
        self, storage: Storage, scorer: ForgettingScorer
    ) -> None:
        await insert_memory(
            storage, "old but pinned", strength=0.1, importance=0.0, days_ago=300, tags=["pinned"]
        )
        assert await scorer.find_candidates("alice") == []

    async def test_summary_never_candidate(
        self, storage: Storage, scorer: ForgettingScorer
    ) -> None:
        a = await insert_memory(storage, "member")
        s = await insert_memory(storage, "summary", strength=0.1, importance=0.0, days_ago=300)
        await storage.execute_write(
            "UPDATE memories SET consolidated_from = ? WHERE id = ?", (f"[{a}]", s)
        )

        scores = await scorer.score_user("alice")
        summary_score = next(x for x in scores if x.memory_id == s)
        assert summary_score.is_summary
        assert summary_score.score > 0.7
        assert scorer.select_candidates(scores) == []

    async def test_other_users_ignored(self, storage: Storage, scorer: ForgettingScorer) -> None:
        await insert_memory(storage, "old", user_id="bob", strength=0.1, importance=0.0, days_ago=300)
        assert await scorer.find_candidates("alice") == []

    async def test_missing_embedding_means_no_interference(
        self, storage: Storage, memories: MemoryStore, scorer: ForgettingScorer
    ) -> None:
        m = await insert_memory(storage, "no vector")
        score = await scorer.score_memory(await memories.get(m))
        assert score.interference == 0.0


class TestInterference:
    async def test_weaker_duplicate_absorbs_penalty(
        self, storage: Storage, scorer: ForgettingScorer
    ) -> None:
        strong = await insert_memory(storage, "dup", strength=1.0, embedding=vec(1, 0))
        weak = await insert_memory(storage, "dup", strength=0.5, embedding=vec(1, 0))

        scores = {s.memory_id: s for s in await scorer.score_user("alice")}

        assert scores[strong].interference == 0.0
        assert scores[weak].dominating_duplicates == 1
        assert scores[weak].interference == pytest.approx(1 / 3)

    async def test_equal_strength_smaller_id_wins(
        self, storage: Storage, scorer: ForgettingScorer
    ) -> None:
        first = await insert_memory(storage, "dup", embedding=vec(1, 0))
        second = await insert_memory(storage, "dup", embedding=vec(1, 0))

        scores = {s.memory_id: s for s in await scorer.score_user("alice")}

        assert scores[first].dominating_duplicates == 0
        assert scores[second].dominating_duplicates == 1

    async def test_below_duplicate_threshold_ignored(
        self, storage: Storage, scorer: ForgettingScorer
    ) -> None:
        await insert_memory(storage, "a", embedding=vec(1, 0))
        b = await insert_memory(storage, "b", strength=0.5, embedding=vec(1, 1))
        scores = {s.memory_id: s for s in await scorer.score_user("alice")}
        assert scores[b].interference == 0.0

    async def test_isolated_duplicate_reason(
        self, storage: Storage, scorer: ForgettingScorer
    ) -> None:
        for _ in range(3):
            await insert_memory(storage, "dup", strength=1.0, accessed_days_ago=0, embedding=vec(1, 0))
        weak = await insert_memory(
            storage, "dup", strength=0.5, importance=1.0, accessed_days_ago=0, embedding=vec(1, 0)
        )
        scores = {s.memory_id: s for s in await scorer.score_user("alice")}
        assert scores[weak].interference == 1.0
        assert scores[weak].reason is ForgettingReason.ISOLATED_DUPLICATE

    async def test_accessed_duplicate_is_high_interference(
        self, storage: Storage, scorer: ForgettingScorer
    ) -> None:
        for _ in range(3):
            await insert_memory(storage, "dup", strength=1.0, accessed_days_ago=0, embedding=vec(1, 0))
        weak = await insert_memory(
            storage, "dup", strength=0.5, importance=1.0, access_count=5,
            accessed_days_ago=0, embedding=vec(1, 0),
        )
        scores = {s.memory_id: s for s in await scorer.score_user("alice")}
        assert scores[weak].reason is ForgettingReason.HIGH_INTERFERENCE


class TestSelection:
    def test_order_score_then_last_access_then_id(self, scorer: ForgettingScorer) -> None:
        scores = [
            _score(5, 0.9, "2026-02-01"),
            _score(3, 0.9, "2026-01-01"),
            _score(4, 0.9, "2026-01-01"),
            _score(1, 0.95, "2026-03-01"),
            _score(2, 0.5),
        ]
        assert [c.memory_id for c in scorer.select_candidates(scores)] == [1, 3, 4, 5]

    def test_cutoff_is_strict(self, scorer: ForgettingScorer) -> None:
        assert scorer.select_candidates([_score(1, 0.70)]) == []
        assert len(scorer.select_candidates([_score(1, 0.7001)])) == 1

    def test_limit_bounds_batch(self, scorer: ForgettingScorer) -> None:
        scores = [_score(i, 0.9) for i in range(1, 11)]
        assert len(scorer.select_candidates(scores, limit=3)) == 3

    def test_protected_and_summary_excluded(self, scorer: ForgettingScorer) -> None:
        scores = [_score(1, 0.9, protected=True), _score(2, 0.9, is_summary=True), _score(3, 0.9)]
        assert [c.memory_id for c in scorer.select_candidates(scores)] == [3]

    async def test_find_candidates_uses_batch_size(
        self, storage: Storage, memories: MemoryStore, search: VectorSearch
    ) -> None:
        for _ in range(4):
            await insert_memory(storage, "old", strength=0.1, importance=0.0, days_ago=300)
        scorer = ForgettingScorer(memories, search, ForgettingConfig(prune_batch_size=2))
        assert len(await scorer.find_candidates("alice")) == 2


class TestConfigValidation:
    def test_bad_weights_rejected(self, memories: MemoryStore, search: VectorSearch) -> None:
        cfg = ForgettingConfig(weights=ForgettingWeights(0.9, 0.9, 0.9))
        with pytest.raises(ValidationError):
            ForgettingScorer(memories, search, cfg)
