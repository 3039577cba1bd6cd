"""Per-user run leases stored in the ``leases`` table.

A lease is a row with a holder token and an expiry.  Acquisition deletes
expired rows first, so a crashed process can lock a user out for at most
one TTL.  Callers release in a ``finally`` block.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid

import anyio

from memcycle.errors import LeaseConflict
from memcycle.storage import Storage, utcnow_iso

log = logging.getLogger(__name__)


class LeaseManager:
    """Acquire, renew and release named leases."""

    def __init__(self, storage: Storage, ttl_seconds: int = 600) -> None:
        self._storage = storage
        self._ttl = ttl_seconds

    async def acquire(self, name: str, holder: str | None = None) -> str:
        """Take the lease *name* and return the holder token.

        Raises
        ------
        LeaseConflict
            If another holder owns an unexpired lease.
        """
        token = holder or uuid.uuid4().hex

        def _do_acquire(conn: sqlite3.Connection) -> tuple[bool, str | None]:
            return Storage.try_acquire_lease(conn, name, token, self._ttl)

        acquired, current = await self._storage.execute_transaction(_do_acquire)
        if not acquired:
            raise LeaseConflict(name, current)
        log.debug("Lease %s acquired by %s", name, token)
        return token

    async def renew(self, name: str, holder: str) -> bool:
        """Extend the lease.  ``False`` means it was lost (expired and retaken)."""

        def _do_renew(conn: sqlite3.Connection) -> bool:
            return Storage.renew_lease(conn, name, holder, self._ttl)

        return await self._storage.execute_transaction(_do_renew)

    async def release(self, name: str, holder: str) -> None:
        """Drop the lease if *holder* still owns it.

        Shielded from cancellation so a cancelled run still frees its lease.
        """

        def _do_release(conn: sqlite3.Connection) -> None:
            Storage.release_lease(conn, name, holder)

        with anyio.CancelScope(shield=True):
            await self._storage.execute_transaction(_do_release)
        log.debug("Lease %s released by %s", name, holder)

    async def holder_of(self, name: str) -> str | None:
        """Current unexpired holder of *name*, if any."""
        rows = await self._storage.execute(
            "SELECT holder FROM leases WHERE name = ? AND expires_at >= ?",
            (name, utcnow_iso()),
        )
        return rows[0]["holder"] if rows else None

