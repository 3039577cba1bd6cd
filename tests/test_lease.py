"""Tests for the lease manager."""

from __future__ import annotations

import pytest

from memcycle.errors import LeaseConflict
from memcycle.lease import LeaseManager
from memcycle.storage import Storage
from tests.conftest import count_rows


@pytest.fixture
def leases(storage: Storage) -> LeaseManager:
    return LeaseManager(storage, ttl_seconds=60)


class TestLeaseManager:
    async def test_acquire_generates_token(self, leases: LeaseManager) -> None:
        token = await leases.acquire("lifecycle:alice")
        assert token
        assert await leases.holder_of("lifecycle:alice") == token

    async def test_conflict_names_holder(self, leases: LeaseManager) -> None:
        await leases.acquire("lifecycle:alice", "first")
        with pytest.raises(LeaseConflict) as info:
            await leases.acquire("lifecycle:alice", "second")
        assert info.value.holder == "first"
        assert info.value.name == "lifecycle:alice"

    async def test_release_frees_name(self, storage: Storage, leases: LeaseManager) -> None:
        token = await leases.acquire("lifecycle:alice")
        await leases.release("lifecycle:alice", token)
        assert await leases.holder_of("lifecycle:alice") is None
        assert await count_rows(storage, "leases") == 0

    async def test_expired_lease_has_no_holder(self, storage: Storage) -> None:
        short = LeaseManager(storage, ttl_seconds=-1)
        await short.acquire("lifecycle:alice")
        assert await short.holder_of("lifecycle:alice") is None
        # And anyone may take it over.
        assert await LeaseManager(storage).acquire("lifecycle:alice", "next") == "next"

    async def test_renew_by_other_holder_fails(self, leases: LeaseManager) -> None:
        token = await leases.acquire("lifecycle:alice")
        assert await leases.renew("lifecycle:alice", token)
        assert not await leases.renew("lifecycle:alice", "intruder")

    async def test_leases_are_per_user(self, leases: LeaseManager) -> None:
        await leases.acquire("lifecycle:alice")
        await leases.acquire("lifecycle:bob")
