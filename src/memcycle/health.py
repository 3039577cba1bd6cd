"""Health metrics and maintenance recommendations per user.

The monitor aggregates storage usage against a quota, memory counts by
sector and by age, consolidation graph counts, cheap forgetting-candidate
counts and the consolidation queue.  From those it derives
:class:`Recommendation` objects which the scheduler attaches to each run.

Recommendation rules (thresholds live in :class:`~memcycle.config.HealthConfig`):

- ``optimization`` when storage usage reaches the warning percentage
  (``high`` from the critical percentage, ``medium`` below).
- ``pruning`` when more than ``pruning_recommend_at`` memories match the
  cheap forgetting criteria (``high`` above ``pruning_high_at``).
- ``archiving`` when more than ``archiving_recommend_at`` memories are
  older than 30 days (``medium`` above ``archiving_medium_at``).
- ``consolidation`` when more than ``consolidation_recommend_at`` episodic
  memories are waiting (``medium`` above ``consolidation_medium_at``).
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Any

from memcycle.config import HealthConfig, get_config
from memcycle.memory import SECTORS
from memcycle.storage import Storage, utcnow_iso

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Report types
# ---------------------------------------------------------------------------


@dataclass
class StorageMetrics:
    bytes_used: int
    archive_bytes: int
    quota_bytes: int
    usage_percent: float


@dataclass
class AgeCounts:
    last_24h: int = 0
    last_week: int = 0
    last_month: int = 0
    older: int = 0


@dataclass
class ForgettingCounts:
    """Memories matching the cheap, non-scored forgetting criteria."""

    low_strength: int = 0
    old_age: int = 0
    low_access: int = 0
    total: int = 0


@dataclass
class Recommendation:
    type: str  # consolidation | pruning | archiving | optimization
    priority: str  # low | medium | high
    message: str
    action: str


@dataclass
class HealthReport:
    """Complete health picture for one user."""

    user_id: str
    storage: StorageMetrics
    counts_by_sector: dict[str, int]
    counts_by_age: AgeCounts
    graph: dict[str, int]
    forgetting_candidates: ForgettingCounts
    consolidation_queue: dict[str, int]
    recommendations: list[Recommendation] = field(default_factory=list)
    timestamp: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Recommendation rules
# ---------------------------------------------------------------------------


def generate_recommendations(
    cfg: HealthConfig,
    storage: StorageMetrics,
    counts_by_sector: dict[str, int],
    counts_by_age: AgeCounts,
    forgetting: ForgettingCounts,
) -> list[Recommendation]:
    """Derive recommendations from already collected metrics."""
    recs: list[Recommendation] = []

    if storage.usage_percent >= cfg.storage_warning_pct:
        recs.append(Recommendation(
            type="optimization",
            priority="high" if storage.usage_percent >= cfg.storage_critical_pct else "medium",
            message=(
                f"Storage usage is at {storage.usage_percent:.1f}%. "
                "Consider pruning or archiving old memories."
            ),
            action="prune_or_archive",
        ))

    if forgetting.total > cfg.pruning_recommend_at:
        recs.append(Recommendation(
            type="pruning",
            priority="high" if forgetting.total > cfg.pruning_high_at else "medium",
            message=(
                f"{forgetting.total} memories are candidates for pruning "
                "(low strength, old, or never accessed)."
            ),
            action="review_pruning_candidates",
        ))

    if counts_by_age.older > cfg.archiving_recommend_at:
        recs.append(Recommendation(
            type="archiving",
            priority="medium" if counts_by_age.older > cfg.archiving_medium_at else "low",
            message=(
                f"{counts_by_age.older} memories are older than 30 days. "
                "Consider archiving to optimize active storage."
            ),
            action="archive_old_memories",
        ))

    episodic = counts_by_sector.get("episodic", 0)
    if episodic > cfg.consolidation_recommend_at:
        recs.append(Recommendation(
            type="consolidation",
            priority="medium" if episodic > cfg.consolidation_medium_at else "low",
            message=f"{episodic} episodic memories could be consolidated into summaries.",
            action="run_consolidation",
        ))

    return recs


# ---------------------------------------------------------------------------
# HealthMonitor
# ---------------------------------------------------------------------------


class HealthMonitor:
    """Read-only aggregation of per-user memory health.

    Parameters
    ----------
    storage:
        An initialised :class:`~memcycle.storage.Storage` instance.
    config:
        Thresholds.  Falls back to ``get_config().health``.
    """

    def __init__(self, storage: Storage, config: HealthConfig | None = None) -> None:
        self._storage = storage
        self._cfg = config or get_config().health

    async def get_health(self, user_id: str) -> HealthReport:
        """Collect every metric and the resulting recommendations."""
        storage = await self.get_storage_metrics(user_id)
        by_sector = await self.get_counts_by_sector(user_id)
        by_age = await self.get_counts_by_age(user_id)
        graph = await self.get_graph_counts(user_id)
        forgetting = await self.get_forgetting_counts(user_id)
        queue = await self.get_consolidation_queue(user_id)
        return HealthReport(
            user_id=user_id,
            storage=storage,
            counts_by_sector=by_sector,
            counts_by_age=by_age,
            graph=graph,
            forgetting_candidates=forgetting,
            consolidation_queue=queue,
            recommendations=generate_recommendations(
                self._cfg, storage, by_sector, by_age, forgetting
            ),
            timestamp=utcnow_iso(),
        )

    async def get_recommendations(self, user_id: str) -> list[Recommendation]:
        storage = await self.get_storage_metrics(user_id)
        by_sector = await self.get_counts_by_sector(user_id)
        by_age = await self.get_counts_by_age(user_id)
        forgetting = await self.get_forgetting_counts(user_id)
        return generate_recommendations(self._cfg, storage, by_sector, by_age, forgetting)

    async def record_snapshot(self, user_id: str) -> HealthReport:
        """Compute the report and append it to ``lifecycle_log``."""
        report = await self.get_health(user_id)
        payload = json.dumps(report.to_dict())

        def _do_log(conn: sqlite3.Connection) -> None:
            Storage.log_action(conn, "health", user_id, payload)

        await self._storage.execute_transaction(_do_log)
        log.debug("Health snapshot recorded for %s", user_id)
        return report

    # ------------------------------------------------------------------
    # Individual metrics
    # ------------------------------------------------------------------

    async def get_storage_metrics(self, user_id: str) -> StorageMetrics:
        """Content plus embedding bytes, hot and archived, against the quota."""
        rows = await self._storage.execute(
            """
            SELECT
                COALESCE((SELECT SUM(LENGTH(CAST(content AS BLOB))) FROM memories
                          WHERE user_id = :u), 0) AS content_bytes,
                COALESCE((SELECT SUM(e.dimension * 4) FROM memory_embeddings e
                          JOIN memories m ON m.id = e.memory_id
                          WHERE m.user_id = :u), 0) AS embedding_bytes,
                COALESCE((SELECT SUM(size_bytes) FROM archived_memories
                          WHERE user_id = :u), 0) AS archive_bytes
            """,
            {"u": user_id},
        )
        row = rows[0]
        archive_bytes = row["archive_bytes"]
        used = row["content_bytes"] + row["embedding_bytes"] + archive_bytes
        quota = max(1, self._cfg.quota_bytes)
        usage = min(100.0, round(used / quota * 100, 2))
        return StorageMetrics(
            bytes_used=used,
            archive_bytes=archive_bytes,
            quota_bytes=self._cfg.quota_bytes,
            usage_percent=usage,
        )

    async def get_counts_by_sector(self, user_id: str) -> dict[str, int]:
        rows = await self._storage.execute(
            "SELECT sector, COUNT(*) AS cnt FROM memories "
            "WHERE user_id = ? AND is_archived = 0 GROUP BY sector",
            (user_id,),
        )
        counts = {s: 0 for s in SECTORS}
        for r in rows:
            counts[r["sector"]] = r["cnt"]
        return counts

    async def get_counts_by_age(self, user_id: str) -> AgeCounts:
        rows = await self._storage.execute(
            """
            SELECT
                SUM(CASE WHEN created_at > :d1 THEN 1 ELSE 0 END) AS last_24h,
                SUM(CASE WHEN created_at > :d7 AND created_at <= :d1 THEN 1 ELSE 0 END) AS last_week,
                SUM(CASE WHEN created_at > :d30 AND created_at <= :d7 THEN 1 ELSE 0 END) AS last_month,
                SUM(CASE WHEN created_at <= :d30 THEN 1 ELSE 0 END) AS older
            FROM memories
            WHERE user_id = :u AND is_archived = 0
            """,
            {
                "u": user_id,
                "d1": utcnow_iso(timedelta(days=-1)),
                "d7": utcnow_iso(timedelta(days=-7)),
                "d30": utcnow_iso(timedelta(days=-30)),
            },
        )
        row = rows[0]
        return AgeCounts(
            last_24h=row["last_24h"] or 0,
            last_week=row["last_week"] or 0,
            last_month=row["last_month"] or 0,
            older=row["older"] or 0,
        )

    async def get_graph_counts(self, user_id: str) -> dict[str, int]:
        rows = await self._storage.execute(
            """
            SELECT
                COUNT(*) AS total,
                SUM(CASE WHEN is_archived = 1 THEN 1 ELSE 0 END) AS archived,
                SUM(CASE WHEN consolidated_from IS NOT NULL THEN 1 ELSE 0 END) AS summaries,
                SUM(CASE WHEN consolidated_into IS NOT NULL THEN 1 ELSE 0 END) AS originals
            FROM memories WHERE user_id = ?
            """,
            (user_id,),
        )
        row = rows[0]
        return {
            "total": row["total"] or 0,
            "archived": row["archived"] or 0,
            "summaries": row["summaries"] or 0,
            "originals": row["originals"] or 0,
        }

    async def get_forgetting_counts(self, user_id: str) -> ForgettingCounts:
        """Count hot memories by the low-strength / old-age / never-accessed rules."""
        rows = await self._storage.execute(
            """
            SELECT
                SUM(CASE WHEN strength < :s THEN 1 ELSE 0 END) AS low_strength,
                SUM(CASE WHEN created_at < :old THEN 1 ELSE 0 END) AS old_age,
                SUM(CASE WHEN access_count <= 0 THEN 1 ELSE 0 END) AS low_access,
                SUM(CASE WHEN strength < :s OR created_at < :old OR access_count <= 0
                         THEN 1 ELSE 0 END) AS total
            FROM memories
            WHERE user_id = :u AND is_archived = 0
            """,
            {
                "u": user_id,
                "s": self._cfg.low_strength_threshold,
                "old": utcnow_iso(timedelta(days=-self._cfg.old_age_days)),
            },
        )
        row = rows[0]
        return ForgettingCounts(
            low_strength=row["low_strength"] or 0,
            old_age=row["old_age"] or 0,
            low_access=row["low_access"] or 0,
            total=row["total"] or 0,
        )

    async def get_consolidation_queue(self, user_id: str) -> dict[str, int]:
        """Episodic memories not yet part of any consolidation."""
        rows = await self._storage.execute(
            """
            SELECT COUNT(*) AS cnt FROM memories
            WHERE user_id = ?
              AND sector = 'episodic'
              AND is_archived = 0
              AND consolidated_into IS NULL
              AND consolidated_from IS NULL
            """,
            (user_id,),
        )
        size = rows[0]["cnt"]
        return {
            "size": size,
            "estimated_time_ms": size * self._cfg.estimated_ms_per_memory,
        }
