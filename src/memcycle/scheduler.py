"""Per-user lifecycle runs: consolidate, score, prune, archive, snapshot.

:class:`ConsolidationScheduler` exposes two operations to its caller:

- :meth:`~ConsolidationScheduler.run_now` starts a run in the background and
  returns :attr:`RunOutcome.STARTED`, or :attr:`RunOutcome.ALREADY_RUNNING`
  when the user's lease is taken.  A second trigger is rejected, never
  queued.
- :meth:`~ConsolidationScheduler.status` reports ``idle``, ``running`` or
  ``failed`` with the reason.  ``failed`` falls back to ``idle`` after
  ``failed_status_seconds``.

Within a run the stages always execute in this order::

    recommend -> consolidate -> score -> prune -> archive -> snapshot

A failing stage aborts the stages after it; whatever earlier stages
committed stays committed.  Retryable errors (transient store I/O) are
retried per stage with exponential backoff.  Every run, finished or not,
appends a ``run`` row to ``lifecycle_log`` and releases its lease.

Timing (intervals, cron) is up to the caller; there is no loop here.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

import anyio

from memcycle.archive import ArchiveManager, ArchiveResult
from memcycle.config import MemcycleConfig, SchedulerConfig, get_config
from memcycle.consolidation import ConsolidationEngine, ConsolidationResult
from memcycle.errors import LeaseConflict, LifecycleError, StoreError, ValidationError
from memcycle.forgetting import ForgettingCandidate, ForgettingScorer
from memcycle.health import HealthMonitor, HealthReport, Recommendation
from memcycle.lease import LeaseManager
from memcycle.memory import MemoryStore
from memcycle.pruning import PruneResult, PruningService
from memcycle.search import VectorSearch
from memcycle.storage import Storage, utcnow_iso
from memcycle.summarizer import Summarizer, build_summarizer

log = logging.getLogger(__name__)

_T = TypeVar("_T")

STAGES: tuple[str, ...] = (
    "recommend",
    "consolidate",
    "score",
    "prune",
    "archive",
    "snapshot",
)


def lease_name(user_id: str) -> str:
    return f"lifecycle:{user_id}"


class RunOutcome(str, enum.Enum):
    STARTED = "started"
    ALREADY_RUNNING = "already_running"


class RunState(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    FAILED = "failed"


@dataclass(frozen=True)
class RunStatus:
    state: RunState
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"state": self.state.value, "reason": self.reason}


@dataclass
class RunReport:
    """Everything one run did, stage by stage."""

    user_id: str
    started_at: str = ""
    finished_at: str = ""
    recommendations: list[Recommendation] = field(default_factory=list)
    consolidation: list[ConsolidationResult] = field(default_factory=list)
    scored: int = 0
    candidates: list[ForgettingCandidate] = field(default_factory=list)
    prune: PruneResult | None = None
    archive: ArchiveResult | None = None
    health: HealthReport | None = None
    stages_completed: list[str] = field(default_factory=list)
    failed_stage: str | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "recommendations": [
                {"type": r.type, "priority": r.priority, "message": r.message, "action": r.action}
                for r in self.recommendations
            ],
            "consolidation": [c.to_dict() for c in self.consolidation],
            "scored": self.scored,
            "candidates": [
                {"memory_id": c.memory_id, "score": round(c.score, 4), "reason": c.reason.value}
                for c in self.candidates
            ],
            "prune": self.prune.to_dict() if self.prune else None,
            "archive": self.archive.to_dict() if self.archive else None,
            "stages_completed": list(self.stages_completed),
            "failed_stage": self.failed_stage,
            "error": self.error,
        }


class ConsolidationScheduler:
    """Runs the lifecycle stages for one user at a time per user.

    Parameters
    ----------
    storage:
        Shared store.  Leases live in its ``leases`` table.
    engine, scorer, pruning, archive, health:
        The lifecycle components, called in stage order.
    config:
        Retry and lease settings.  Falls back to ``get_config().scheduler``.

    Use :meth:`from_config` to wire every component from one config.
    """

    def __init__(
        self,
        storage: Storage,
        *,
        engine: ConsolidationEngine,
        scorer: ForgettingScorer,
        pruning: PruningService,
        archive: ArchiveManager,
        health: HealthMonitor,
        config: SchedulerConfig | None = None,
    ) -> None:
        self._storage = storage
        self._engine = engine
        self._scorer = scorer
        self._pruning = pruning
        self._archive = archive
        self._health = health
        self._cfg = config or get_config().scheduler
        self._leases = LeaseManager(storage, self._cfg.lease_ttl_seconds)

        self._tasks: dict[str, asyncio.Task[RunReport]] = {}
        self._starting: set[str] = set()
        self._failed: dict[str, tuple[str, float]] = {}
        self._reports: dict[str, RunReport] = {}

    @classmethod
    def from_config(
        cls,
        storage: Storage,
        config: MemcycleConfig | None = None,
        *,
        summarizer: Summarizer | None = None,
    ) -> ConsolidationScheduler:
        cfg = config or get_config()
        memories = MemoryStore(storage, cfg.forgetting)
        search = VectorSearch(storage, cfg.search)
        scorer = ForgettingScorer(memories, search, cfg.forgetting)
        return cls(
            storage,
            engine=ConsolidationEngine(
                storage,
                memories,
                search,
                summarizer or build_summarizer(cfg),
                cfg.consolidation,
            ),
            scorer=scorer,
            pruning=PruningService(storage, scorer, cfg.forgetting),
            archive=ArchiveManager(storage, memories, cfg.archive, cfg.forgetting),
            health=HealthMonitor(storage, cfg.health),
            config=cfg.scheduler,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run_now(self, user_id: str) -> RunOutcome:
        """Start a run for *user_id* unless one is already in progress.

        Raises
        ------
        ValidationError
            If *user_id* is empty.
        StoreError
            If the lease table cannot be reached.
        """
        if not user_id:
            raise ValidationError("user_id is required")
        task = self._tasks.get(user_id)
        if user_id in self._starting or (task is not None and not task.done()):
            log.info("Lifecycle run for %s already in progress", user_id)
            return RunOutcome.ALREADY_RUNNING

        self._starting.add(user_id)
        try:
            holder = await self._leases.acquire(lease_name(user_id))
        except LeaseConflict as exc:
            log.info("Lifecycle run for %s rejected: %s", user_id, exc)
            return RunOutcome.ALREADY_RUNNING
        finally:
            self._starting.discard(user_id)

        self._failed.pop(user_id, None)
        self._tasks[user_id] = asyncio.create_task(
            self._run(user_id, holder), name=f"memcycle-lifecycle-{user_id}"
        )
        log.info("Lifecycle run started for %s", user_id)
        return RunOutcome.STARTED

    async def status(self, user_id: str) -> RunStatus:
        task = self._tasks.get(user_id)
        if user_id in self._starting or (task is not None and not task.done()):
            return RunStatus(RunState.RUNNING)

        failed = self._failed.get(user_id)
        if failed is not None:
            reason, at = failed
            if time.monotonic() - at < self._cfg.failed_status_seconds:
                return RunStatus(RunState.FAILED, reason)
            del self._failed[user_id]

        # A run owned by another process shows up only as a live lease.
        try:
            holder = await self._leases.holder_of(lease_name(user_id))
        except StoreError as exc:
            log.warning("Could not read lease for %s: %s", user_id, exc)
            return RunStatus(RunState.FAILED, f"status: {exc}")
        if holder is not None:
            return RunStatus(RunState.RUNNING)
        return RunStatus(RunState.IDLE)

    async def join(self, user_id: str) -> RunReport | None:
        """Wait for the current run of *user_id* and return its report."""
        task = self._tasks.get(user_id)
        if task is not None:
            await asyncio.wait([task])
        return self._reports.get(user_id)

    async def run_once(self, user_id: str) -> RunReport | None:
        """Start a run and wait for it.  ``None`` if one was already running."""
        if await self.run_now(user_id) is RunOutcome.ALREADY_RUNNING:
            return None
        return await self.join(user_id)

    def last_report(self, user_id: str) -> RunReport | None:
        return self._reports.get(user_id)

    async def shutdown(self) -> None:
        """Cancel in-flight runs and wait until their leases are released."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        log.debug("Scheduler shut down (%d runs cancelled)", len(tasks))

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def _run(self, user_id: str, holder: str) -> RunReport:
        report = RunReport(user_id=user_id, started_at=utcnow_iso())
        try:
            await self._execute(user_id, holder, report)
        except asyncio.CancelledError:
            report.error = "cancelled"
            self._failed[user_id] = ("cancelled", time.monotonic())
            log.warning(
                "Lifecycle run cancelled user=%s stages_completed=%s",
                user_id, report.stages_completed,
            )
            raise
        except Exception as exc:
            reason = f"{report.failed_stage or 'run'}: {exc}"
            report.error = reason
            self._failed[user_id] = (reason, time.monotonic())
            log.error(
                "Lifecycle run failed user=%s stage=%s stages_completed=%s: %s",
                user_id, report.failed_stage, report.stages_completed, exc,
                exc_info=not isinstance(exc, LifecycleError),
            )
        else:
            log.info("Lifecycle run finished for %s", user_id)
        finally:
            report.finished_at = utcnow_iso()
            self._reports[user_id] = report
            try:
                await self._record_run(report)
            except StoreError as exc:
                log.error("Could not record lifecycle run for %s: %s", user_id, exc)
            try:
                await self._leases.release(lease_name(user_id), holder)
            except StoreError as exc:
                log.error(
                    "Could not release lease for %s, it expires in %ds: %s",
                    user_id, self._cfg.lease_ttl_seconds, exc,
                )
        return report

    async def _execute(self, user_id: str, holder: str, report: RunReport) -> None:
        report.recommendations = await self._stage(
            report, "recommend", lambda: self._health.get_recommendations(user_id)
        )
        for rec in report.recommendations:
            log.info("Recommendation for %s [%s] %s", user_id, rec.priority, rec.message)

        await self._renew(user_id, holder)
        report.consolidation = await self._stage(
            report, "consolidate", lambda: self._consolidate_all(user_id)
        )

        await self._renew(user_id, holder)
        scores = await self._stage(report, "score", lambda: self._scorer.score_user(user_id))
        report.scored = len(scores)
        report.candidates = self._scorer.select_candidates(
            scores, limit=self._scorer.config.prune_batch_size
        )

        await self._renew(user_id, holder)
        report.prune = await self._stage(
            report,
            "prune",
            lambda: self._pruning.prune_candidates(user_id, report.candidates),
        )

        await self._renew(user_id, holder)
        pruned = list(report.prune.deleted_ids)
        report.archive = await self._stage(
            report,
            "archive",
            lambda: self._archive.archive_cold(user_id, scores, exclude_ids=pruned),
        )

        await self._renew(user_id, holder)
        report.health = await self._stage(
            report, "snapshot", lambda: self._health.record_snapshot(user_id)
        )

    async def _record_run(self, report: RunReport) -> None:
        payload = json.dumps({
            "started_at": report.started_at,
            "finished_at": report.finished_at,
            "stages_completed": report.stages_completed,
            "failed_stage": report.failed_stage,
            "error": report.error,
        })

        def _do_log(conn: sqlite3.Connection) -> None:
            Storage.log_action(conn, "run", report.user_id, payload)

        with anyio.CancelScope(shield=True):
            await self._storage.execute_transaction(_do_log)

    async def _consolidate_all(self, user_id: str) -> list[ConsolidationResult]:
        results = []
        for sector in self._cfg.sectors:
            results.append(await self._engine.run(user_id, sector))
        return results

    async def _stage(
        self,
        report: RunReport,
        name: str,
        fn: Callable[[], Awaitable[_T]],
    ) -> _T:
        """Run one stage, retrying retryable errors with exponential backoff."""
        attempts = max(1, self._cfg.max_retry_attempts)
        attempt = 0
        while True:
            attempt += 1
            try:
                result = await fn()
            except LifecycleError as exc:
                if not exc.retryable or attempt == attempts:
                    report.failed_stage = name
                    raise
                delay = self._cfg.base_retry_delay_seconds * 2 ** (attempt - 1)
                log.warning(
                    "Stage %s for %s failed (attempt %d/%d), retrying in %.1fs: %s",
                    name, report.user_id, attempt, attempts, delay, exc,
                )
                await anyio.sleep(delay)
            except Exception:
                report.failed_stage = name
                raise
            else:
                report.stages_completed.append(name)
                return result

    async def _renew(self, user_id: str, holder: str) -> None:
        if not await self._leases.renew(lease_name(user_id), holder):
            raise LifecycleError("lease lost", {"user_id": user_id, "holder": holder})
