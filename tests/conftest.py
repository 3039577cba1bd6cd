"""Shared fixtures and helpers for the memcycle test suite."""

from __future__ import annotations

import json
import math
from datetime import timedelta
from pathlib import Path
from typing import Any

import pytest

from memcycle.memory import MemoryStore
from memcycle.search import VectorSearch
from memcycle.storage import Storage, serialize_embedding, utcnow_iso

DIM = 6


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def storage(tmp_path: Path) -> Storage:
    """Provide an initialized Storage instance backed by a temp directory.

    The database file, backup directory, and all related artefacts live
    entirely inside ``tmp_path`` so tests never touch the user's real data.
    """
    db_path = tmp_path / "test.db"
    s = Storage(db_path)
    # Point backups at a temp sub-directory as well.
    s._backup_dir = tmp_path / "backups"
    s._backup_dir.mkdir(exist_ok=True)
    await s.initialize()
    yield s  # type: ignore[misc]
    await s.close()


@pytest.fixture
def memories(storage: Storage) -> MemoryStore:
    return MemoryStore(storage)


@pytest.fixture
def search(storage: Storage) -> VectorSearch:
    return VectorSearch(storage)


# ---------------------------------------------------------------------------
# Vector helpers
# ---------------------------------------------------------------------------


def vec(*components: float, dim: int = DIM) -> list[float]:
    """Unit vector from the leading *components*, zero-padded to *dim*."""
    padded = list(components) + [0.0] * (dim - len(components))
    norm = math.sqrt(sum(x * x for x in padded))
    return [x / norm for x in padded]


def axis(index: int, dim: int = DIM) -> list[float]:
    """Unit vector along one axis; different axes are unrelated (cosine 0)."""
    out = [0.0] * dim
    out[index] = 1.0
    return out


# ---------------------------------------------------------------------------
# Shared test helpers -- direct SQL insertion bypassing MemoryStore
# ---------------------------------------------------------------------------


async def insert_memory(
    storage: Storage,
    content: str = "test memory",
    sector: str = "episodic",
    user_id: str = "alice",
    strength: float = 1.0,
    importance: float = 0.5,
    access_count: int = 0,
    days_ago: float = 0.0,
    accessed_days_ago: float | None = None,
    tags: list[str] | None = None,
    embedding: list[float] | None = None,
) -> int:
    """Insert a memory (and optionally its embedding) via SQL.

    ``days_ago`` backdates ``created_at``; ``accessed_days_ago`` sets
    ``last_accessed_at``, which otherwise stays NULL.

    Returns the auto-generated memory ID.
    """
    created_at = utcnow_iso(timedelta(days=-days_ago))
    last_accessed_at = (
        utcnow_iso(timedelta(days=-accessed_days_ago))
        if accessed_days_ago is not None
        else None
    )
    memory_id = await storage.execute_write(
        """
        INSERT INTO memories
            (user_id, content, sector, strength, importance, access_count,
             created_at, last_accessed_at, tags)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            user_id,
            content,
            sector,
            strength,
            importance,
            access_count,
            created_at,
            last_accessed_at,
            json.dumps(tags) if tags else None,
        ),
    )
    if embedding is not None:
        await storage.execute_write(
            "INSERT INTO memory_embeddings (memory_id, sector, embedding, dimension) "
            "VALUES (?, ?, ?, ?)",
            (memory_id, sector, serialize_embedding(embedding), len(embedding)),
        )
    return memory_id


async def get_row(storage: Storage, table: str, key: str, value: Any) -> dict[str, Any] | None:
    rows = await storage.execute(f"SELECT * FROM {table} WHERE {key} = ?", (value,))
    return dict(rows[0]) if rows else None


async def count_rows(storage: Storage, table: str, where: str = "1=1", params: tuple = ()) -> int:
    """Count rows in *table* matching a raw WHERE clause."""
    rows = await storage.execute(f"SELECT COUNT(*) AS cnt FROM {table} WHERE {where}", params)
    return rows[0]["cnt"]


async def log_actions(storage: Storage, user_id: str | None = None) -> list[str]:
    """Actions written to ``lifecycle_log``, oldest first."""
    if user_id is None:
        rows = await storage.execute("SELECT action FROM lifecycle_log ORDER BY id")
    else:
        rows = await storage.execute(
            "SELECT action FROM lifecycle_log WHERE user_id = ? ORDER BY id", (user_id,)
        )
    return [r["action"] for r in rows]
