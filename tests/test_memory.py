"""Tests for MemoryStore CRUD, embeddings, access tracking and stats."""

from __future__ import annotations

import pytest

from memcycle.errors import ValidationError
from memcycle.memory import (
    MemoryStore,
    dumps_ids,
    has_protective_tag,
    loads_list,
)
from memcycle.storage import Storage
from tests.conftest import insert_memory, vec


class TestHelpers:
    def test_loads_list_tolerates_garbage(self) -> None:
        assert loads_list(None) == []
        assert loads_list("not json") == []
        assert loads_list('{"a": 1}') == []
        assert loads_list("[1, 2]") == [1, 2]

    def test_empty_id_list_is_null(self) -> None:
        assert dumps_ids([]) is None
        assert dumps_ids([3, 1]) == "[3, 1]"

    def test_protective_tags_case_insensitive(self) -> None:
        assert has_protective_tag(["PINNED"], ("pinned",))
        assert not has_protective_tag(["work"], ("pinned",))


class TestCreate:
    async def test_create_with_embeddings(self, memories: MemoryStore) -> None:
        m = await memories.create(
            "alice", "learned sqlite", "semantic",
            tags=["db"], embeddings={"semantic": vec(1, 0), "procedural": vec(0, 1)},
        )
        assert m.id > 0
        assert m.tags == ["db"]
        assert m.strength == 1.0
        assert not m.is_summary and not m.is_original
        assert await memories.get_embedding(m.id, "procedural") == pytest.approx(vec(0, 1))

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"content": "  "},
            {"sector": "dreams"},
            {"strength": 0.0},
            {"importance": 1.5},
            {"embeddings": {"semantic": []}},
        ],
    )
    async def test_invalid_input(self, memories: MemoryStore, kwargs: dict) -> None:
        args = {"user_id": "alice", "content": "x", "sector": "semantic"}
        args.update(kwargs)
        with pytest.raises(ValidationError):
            await memories.create(**args)

    async def test_get_missing(self, memories: MemoryStore) -> None:
        assert await memories.get(12345) is None


class TestRead:
    async def test_list_for_user_ordering_and_filters(
        self, storage: Storage, memories: MemoryStore
    ) -> None:
        newer = await insert_memory(storage, "newer", days_ago=1)
        older = await insert_memory(storage, "older", days_ago=2)
        sem = await insert_memory(storage, "sem", sector="semantic", days_ago=3)
        archived = await insert_memory(storage, "gone", days_ago=4)
        await storage.execute_write("UPDATE memories SET is_archived = 1 WHERE id = ?", (archived,))
        await insert_memory(storage, "bob", user_id="bob")

        assert [m.id for m in await memories.list_for_user("alice")] == [sem, older, newer]
        assert [m.id for m in await memories.list_for_user("alice", "episodic")] == [older, newer]
        everything = await memories.list_for_user("alice", include_archived=True)
        assert everything[0].id == archived

    async def test_get_many(self, storage: Storage, memories: MemoryStore) -> None:
        a = await insert_memory(storage, "a")
        b = await insert_memory(storage, "b")
        found = await memories.get_many([b, a, 999])
        assert set(found) == {a, b}


class TestEmbeddings:
    async def test_set_replaces(self, storage: Storage, memories: MemoryStore) -> None:
        m = await insert_memory(storage, "x", embedding=vec(1, 0))
        await memories.set_embedding(m, "episodic", vec(0, 1))
        assert await memories.get_embedding(m, "episodic") == pytest.approx(vec(0, 1))

    async def test_get_embeddings_by_sector(self, storage: Storage, memories: MemoryStore) -> None:
        a = await insert_memory(storage, "a", embedding=vec(1, 0))
        b = await insert_memory(storage, "b")
        assert set(await memories.get_embeddings([a, b], "episodic")) == {a}

    async def test_empty_embedding_rejected(self, storage: Storage, memories: MemoryStore) -> None:
        m = await insert_memory(storage, "x")
        with pytest.raises(ValidationError):
            await memories.set_embedding(m, "episodic", [])


class TestAccessAndProtection:
    async def test_record_access(self, storage: Storage, memories: MemoryStore) -> None:
        m = await insert_memory(storage, "x")
        await memories.record_access(m)
        await memories.record_access(m)
        memory = await memories.get(m)
        assert memory.access_count == 2
        assert memory.last_access == memory.last_accessed_at

    async def test_is_protected(self, storage: Storage, memories: MemoryStore) -> None:
        pinned = await insert_memory(storage, "x", tags=["pinned"])
        plain = await insert_memory(storage, "y", tags=["work"])
        assert await memories.is_protected(pinned)
        assert not await memories.is_protected(plain)
        assert not await memories.is_protected(404)

