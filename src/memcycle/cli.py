"""Command-line entry points for manual lifecycle runs and inspection.

Every command prints JSON on stdout.  Errors go to stderr with exit code 1.

Usage::

    memcycle run alice
    memcycle status alice
    memcycle health alice
    memcycle history alice [--limit 20]
    memcycle rollback <history_id>
    memcycle preview alice
    memcycle restore alice <memory_id>
    memcycle archive-search alice "<query>" [--limit 50]

Add ``-v`` anywhere for debug logging on stderr.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Coroutine

from memcycle.archive import ArchiveManager
from memcycle.config import get_config
from memcycle.consolidation import ConsolidationEngine
from memcycle.errors import LifecycleError
from memcycle.forgetting import ForgettingScorer
from memcycle.health import HealthMonitor
from memcycle.memory import MemoryStore
from memcycle.pruning import PruningService
from memcycle.scheduler import ConsolidationScheduler, RunOutcome
from memcycle.search import VectorSearch
from memcycle.storage import Storage
from memcycle.summarizer import build_summarizer

log = logging.getLogger(__name__)

_USAGE = """\
Usage: memcycle <command> [args] [-v]

Commands:
  run <user>                       run every lifecycle stage now
  status <user>                    idle / running / failed
  health <user>                    health report with recommendations
  history <user> [--limit N]       consolidation history, newest first
  rollback <history_id>            undo one consolidation
  preview <user>                   pruning candidates, nothing deleted
  restore <user> <memory_id>       bring an archived memory back
  archive-search <user> <query>    search archived content and tags
"""


def _emit(payload: Any) -> str:
    return json.dumps(payload, indent=2, default=str)


@asynccontextmanager
async def _open_storage() -> AsyncIterator[Storage]:
    storage = Storage()
    await storage.initialize()
    try:
        yield storage
    finally:
        await storage.close()


def _option(args: list[str], flag: str, default: int) -> int:
    if flag in args:
        idx = args.index(flag)
        if idx + 1 < len(args):
            try:
                return int(args[idx + 1])
            except ValueError:
                _fail(f"{flag} must be an integer, got {args[idx + 1]!r}")
    return default


def _positional(args: list[str]) -> list[str]:
    out: list[str] = []
    skip = False
    for a in args:
        if skip:
            skip = False
            continue
        if a == "--limit":
            skip = True
            continue
        if a.startswith("-"):
            continue
        out.append(a)
    return out


def _fail(message: str) -> None:
    print(f"Error: {message}", file=sys.stderr)
    sys.exit(1)


def _invoke(coro: Coroutine[Any, Any, str]) -> None:
    try:
        result = asyncio.run(coro)
    except LifecycleError as exc:
        log.debug("Command failed", exc_info=True)
        _fail(str(exc))
        return
    print(result)


# ------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------

async def _run(user_id: str) -> str:
    async with _open_storage() as storage:
        scheduler = ConsolidationScheduler.from_config(storage)
        outcome = await scheduler.run_now(user_id)
        if outcome is RunOutcome.ALREADY_RUNNING:
            return _emit({"outcome": outcome.value})
        try:
            report = await scheduler.join(user_id)
        finally:
            await scheduler.shutdown()
        return _emit({
            "outcome": outcome.value,
            "report": report.to_dict() if report else None,
        })


async def _status(user_id: str) -> str:
    async with _open_storage() as storage:
        scheduler = ConsolidationScheduler.from_config(storage)
        status = await scheduler.status(user_id)
        return _emit({"user_id": user_id, **status.to_dict()})


async def _health(user_id: str) -> str:
    async with _open_storage() as storage:
        report = await HealthMonitor(storage).get_health(user_id)
        return _emit(report.to_dict())


def _engine(storage: Storage) -> ConsolidationEngine:
    cfg = get_config()
    memories = MemoryStore(storage, cfg.forgetting)
    return ConsolidationEngine(
        storage,
        memories,
        VectorSearch(storage, cfg.search),
        build_summarizer(cfg),
        cfg.consolidation,
    )


async def _history(user_id: str, limit: int) -> str:
    async with _open_storage() as storage:
        records = await _engine(storage).get_history(user_id, limit=limit)
        return _emit([r.to_dict() for r in records])


async def _rollback(history_id: int) -> str:
    async with _open_storage() as storage:
        record = await _engine(storage).rollback(history_id)
        return _emit(record.to_dict())


async def _preview(user_id: str) -> str:
    async with _open_storage() as storage:
        cfg = get_config()
        memories = MemoryStore(storage, cfg.forgetting)
        scorer = ForgettingScorer(memories, VectorSearch(storage, cfg.search), cfg.forgetting)
        preview = await PruningService(storage, scorer, cfg.forgetting).preview(user_id)
        return _emit(preview.to_dict())


async def _restore(user_id: str, memory_id: int) -> str:
    async with _open_storage() as storage:
        manager = ArchiveManager(storage, MemoryStore(storage))
        memory = await manager.restore(user_id, memory_id)
        return _emit(memory.to_dict())


async def _archive_search(user_id: str, query: str, limit: int) -> str:
    async with _open_storage() as storage:
        manager = ArchiveManager(storage, MemoryStore(storage))
        hits = await manager.search_archive(user_id, query, limit=limit)
        return _emit([h.to_dict() for h in hits])


# ------------------------------------------------------------------
# Dispatch
# ------------------------------------------------------------------

def _parse_id(value: str, name: str) -> int:
    try:
        return int(value)
    except ValueError:
        _fail(f"{name} must be an integer, got {value!r}")
        raise


def dispatch(args: list[str]) -> None:
    """Run the command named by ``args[0]``."""
    verbose = "-v" in args or "--verbose" in args
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    pos = _positional(args)
    if not pos:
        print(_USAGE, file=sys.stderr)
        sys.exit(1)

    command, rest = pos[0], pos[1:]

    if command == "run" and len(rest) == 1:
        _invoke(_run(rest[0]))
    elif command == "status" and len(rest) == 1:
        _invoke(_status(rest[0]))
    elif command == "health" and len(rest) == 1:
        _invoke(_health(rest[0]))
    elif command == "history" and len(rest) == 1:
        _invoke(_history(rest[0], _option(args, "--limit", 20)))
    elif command == "rollback" and len(rest) == 1:
        _invoke(_rollback(_parse_id(rest[0], "history_id")))
    elif command == "preview" and len(rest) == 1:
        _invoke(_preview(rest[0]))
    elif command == "restore" and len(rest) == 2:
        _invoke(_restore(rest[0], _parse_id(rest[1], "memory_id")))
    elif command == "archive-search" and len(rest) == 2:
        _invoke(_archive_search(rest[0], rest[1], _option(args, "--limit", 50)))
    else:
        print(_USAGE, file=sys.stderr)
        sys.exit(1)


def main() -> None:
    dispatch(sys.argv[1:])
