"""memcycle -- lifecycle engine for long-lived agent memory stores.

Quick start::

    from memcycle import ConsolidationScheduler, Storage

    async def main():
        async with Storage() as storage:
            scheduler = ConsolidationScheduler.from_config(storage)
            report = await scheduler.run_once("alice")

For lower-level access, import from submodules::

    from memcycle.consolidation import ConsolidationEngine, ConsolidationResult
    from memcycle.forgetting import ForgettingScorer, ForgettingCandidate
    from memcycle.archive import ArchiveManager
    from memcycle.health import HealthMonitor
"""

from __future__ import annotations

__version__ = "0.1.0"

# Public API exports
from memcycle.errors import (
    ArchiveError,
    ConsolidationError,
    LeaseConflict,
    LifecycleError,
    StoreError,
    ValidationError,
)
from memcycle.memory import SECTORS, Memory, MemoryStore
from memcycle.scheduler import ConsolidationScheduler, RunOutcome, RunState, RunStatus
from memcycle.storage import Storage

__all__ = [
    "__version__",
    "ConsolidationScheduler",
    "RunOutcome",
    "RunState",
    "RunStatus",
    "Storage",
    "Memory",
    "MemoryStore",
    "SECTORS",
    "LifecycleError",
    "ValidationError",
    "StoreError",
    "ConsolidationError",
    "ArchiveError",
    "LeaseConflict",
]
