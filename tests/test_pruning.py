"""Tests for pruning: preview, skip rules, graph detach and the audit log."""

from __future__ import annotations

import json

import pytest

from memcycle.config import ForgettingConfig
from memcycle.errors import StoreError, ValidationError
from memcycle.forgetting import ForgettingCandidate, ForgettingReason, ForgettingScorer
from memcycle.memory import MemoryStore
from memcycle.pruning import PruningService
from memcycle.search import VectorSearch
from memcycle.storage import Storage
from tests.conftest import count_rows, get_row, insert_memory, vec


@pytest.fixture
def pruning(storage: Storage, memories: MemoryStore, search: VectorSearch) -> PruningService:
    cfg = ForgettingConfig()
    return PruningService(storage, ForgettingScorer(memories, search, cfg), cfg)


async def _old(storage: Storage, content: str = "stale", **kw) -> int:
    return await insert_memory(storage, content, strength=0.1, importance=0.0, days_ago=300, **kw)


class TestPreview:
    async def test_preview_deletes_nothing(self, storage: Storage, pruning: PruningService) -> None:
        old = await _old(storage, "abcd", embedding=vec(1, 0))
        await insert_memory(storage, "fresh", accessed_days_ago=0)

        preview = await pruning.preview("alice")

        assert [c.memory_id for c in preview.candidates] == [old]
        # 4 bytes of content plus a 6-dim float32 embedding.
        assert preview.total_bytes == 4 + 6 * 4
        assert await count_rows(storage, "memories") == 2

    async def test_empty_preview(self, pruning: PruningService) -> None:
        preview = await pruning.preview("nobody")
        assert preview.candidates == []
        assert preview.total_bytes == 0
        assert preview.to_dict()["candidates"] == []


class TestPrune:
    async def test_deletes_memory_and_embeddings(
        self, storage: Storage, pruning: PruningService
    ) -> None:
        m = await _old(storage, embedding=vec(1, 0))
        result = await pruning.prune("alice", [m])

        assert result.deleted_ids == [m]
        assert result.freed_bytes == len("stale") + 6 * 4
        assert await count_rows(storage, "memories") == 0
        assert await count_rows(storage, "memory_embeddings") == 0

    async def test_skip_rules(self, storage: Storage, pruning: PruningService) -> None:
        plain = await _old(storage)
        foreign = await _old(storage, user_id="bob")
        pinned = await _old(storage, tags=["Critical"])
        archived = await _old(storage)
        await storage.execute_write("UPDATE memories SET is_archived = 1 WHERE id = ?", (archived,))
        summary = await _old(storage)
        await storage.execute_write(
            "UPDATE memories SET consolidated_from = ? WHERE id = ?", (f"[{plain}]", summary)
        )

        result = await pruning.prune(
            "alice", [plain, foreign, pinned, archived, summary, 9999]
        )

        assert result.deleted_ids == [plain]
        assert result.skipped_ids == [foreign, pinned, archived, summary, 9999]
        assert await count_rows(storage, "memories") == 4

    async def test_duplicate_ids_collapsed(self, storage: Storage, pruning: PruningService) -> None:
        m = await _old(storage)
        result = await pruning.prune("alice", [m, m])
        assert result.deleted_ids == [m]
        assert result.skipped_ids == []

    async def test_detaches_from_summary(self, storage: Storage, pruning: PruningService) -> None:
        a = await _old(storage, "a")
        b = await _old(storage, "b")
        summary = await insert_memory(storage, "a and b")
        await storage.execute_write(
            "UPDATE memories SET consolidated_from = ? WHERE id = ?", (json.dumps([a, b]), summary)
        )
        await storage.execute_write(
            "UPDATE memories SET consolidated_into = ? WHERE id IN (?, ?)", (summary, a, b)
        )

        result = await pruning.prune("alice", [a])
        assert result.detached_from == {a: summary}
        row = await get_row(storage, "memories", "id", summary)
        assert json.loads(row["consolidated_from"]) == [b]

        await pruning.prune("alice", [b])
        row = await get_row(storage, "memories", "id", summary)
        # Last member gone: the summary becomes a plain memory.
        assert row["consolidated_from"] is None

    async def test_audit_log_row(self, storage: Storage, pruning: PruningService) -> None:
        m = await _old(storage)
        candidate = ForgettingCandidate(m, 0.79, ForgettingReason.TEMPORAL_DECAY)
        await pruning.prune_candidates("alice", [candidate])

        row = await get_row(storage, "lifecycle_log", "action", "prune")
        assert row["user_id"] == "alice"
        assert json.loads(row["memories_affected"]) == [m]
        details = json.loads(row["details"])
        assert details["scores"][str(m)] == {"score": 0.79, "reason": "temporal_decay"}

    async def test_nothing_deleted_writes_no_log(
        self, storage: Storage, pruning: PruningService
    ) -> None:
        await pruning.prune("alice", [])
        await pruning.prune("alice", [12345])
        assert await count_rows(storage, "lifecycle_log") == 0

    async def test_batch_limit(self, storage: Storage, pruning: PruningService) -> None:
        ids = [await _old(storage) for _ in range(3)]
        candidates = [ForgettingCandidate(i, 0.9, ForgettingReason.TEMPORAL_DECAY) for i in ids]
        result = await pruning.prune_candidates("alice", candidates, limit=2)
        assert result.deleted_ids == ids[:2]

    async def test_empty_user_rejected(self, pruning: PruningService) -> None:
        with pytest.raises(ValidationError):
            await pruning.prune("", [1])

    async def test_store_failure_deletes_nothing(
        self, storage: Storage, pruning: PruningService
    ) -> None:
        a = await _old(storage)
        b = await _old(storage)
        # Break the log write so the transaction fails after both deletes.
        await storage.execute_write("DROP TABLE lifecycle_log")

        with pytest.raises(StoreError):
            await pruning.prune("alice", [a, b])
        rows = await storage.execute("SELECT COUNT(*) AS cnt FROM memories")
        assert rows[0]["cnt"] == 2
