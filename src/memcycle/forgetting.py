"""Composite forgetting score.

Three signals, each in ``[0, 1]``, are blended into one score where higher
means "more forgettable":

1. **Temporal decay** -- ``1 - 0.5 ** (days_since_access / half_life)``.
   Zero right after an access, 0.5 after one half-life, approaching 1.
2. **Importance** -- a blend of access frequency (saturating), explicit
   ``strength`` and explicit ``importance``.  Protective tags pin it to 1.
   It enters the composite as ``1 - importance``.
3. **Interference** -- how many near-duplicates (similarity at or above
   ``duplicate_threshold`` in the same sector) *dominate* this memory.  A
   duplicate dominates when it is stronger, or equally strong with a
   smaller id, so the strongest copy of a group scores zero and weaker
   copies absorb the penalty.

``composite = w_decay * decay + w_importance * (1 - importance)
+ w_interference * interference``.

A memory becomes a :class:`ForgettingCandidate` only when the composite
exceeds the pruning cutoff, it carries no protective tag and it is not a
summary memory.  Candidates sort by score descending, then oldest last
access, then smallest id.
"""

from __future__ import annotations

import enum
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from memcycle.config import ForgettingConfig, get_config, validate_forgetting
from memcycle.errors import SearchError
from memcycle.memory import Memory, MemoryStore, has_protective_tag
from memcycle.search import VectorSearch

log = logging.getLogger(__name__)

_DUPLICATE_SEARCH_LIMIT = 50

_IMPORTANCE_MIX: tuple[float, float, float] = (0.4, 0.3, 0.3)
"""Share of access frequency, strength and explicit importance."""


class ForgettingReason(str, enum.Enum):
    """Which signal dominates a memory's forgetting score."""

    TEMPORAL_DECAY = "temporal_decay"
    LOW_IMPORTANCE = "low_importance"
    HIGH_INTERFERENCE = "high_interference"
    ISOLATED_DUPLICATE = "isolated_duplicate"
    """Interference dominates and the memory was never accessed."""


@dataclass(frozen=True)
class ForgettingScore:
    """Full breakdown of one memory's score."""

    memory_id: int
    score: float
    decay: float
    importance: float
    interference: float
    reason: ForgettingReason
    protected: bool
    is_summary: bool
    last_access: str
    dominating_duplicates: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "memory_id": self.memory_id,
            "score": round(self.score, 4),
            "decay": round(self.decay, 4),
            "importance": round(self.importance, 4),
            "interference": round(self.interference, 4),
            "reason": self.reason.value,
            "protected": self.protected,
            "is_summary": self.is_summary,
        }


@dataclass(frozen=True)
class ForgettingCandidate:
    """A memory selected for pruning.  Never persisted."""

    memory_id: int
    score: float
    reason: ForgettingReason
    last_access: str = ""


def _parse_ts(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _candidate_sort_key(s: ForgettingScore) -> tuple[float, str, int]:
    return (-s.score, s.last_access, s.memory_id)


class ForgettingScorer:
    """Scores memories and selects pruning candidates.

    Parameters
    ----------
    memories:
        Store used to load memories.
    search:
        Similarity search used for the interference signal.
    config:
        Forgetting settings.  Falls back to ``get_config().forgetting``.

    Raises
    ------
    ValidationError
        If the weights do not sum to 1 or a cutoff is out of range.
    """

    def __init__(
        self,
        memories: MemoryStore,
        search: VectorSearch,
        config: ForgettingConfig | None = None,
    ) -> None:
        self._memories = memories
        self._search = search
        self._cfg = config or get_config().forgetting
        validate_forgetting(self._cfg)

    @property
    def config(self) -> ForgettingConfig:
        return self._cfg

    # ------------------------------------------------------------------
    # Individual signals
    # ------------------------------------------------------------------

    def decay_signal(self, last_access: str, now: datetime) -> float:
        elapsed_days = max(0.0, (now - _parse_ts(last_access)).total_seconds() / 86400.0)
        return 1.0 - 0.5 ** (elapsed_days / self._cfg.half_life_days)

    def importance_signal(self, memory: Memory) -> float:
        if has_protective_tag(memory.tags, self._cfg.protected_tags):
            return 1.0
        frequency = 1.0 - math.exp(-memory.access_count / max(1, self._cfg.access_saturation))
        w_freq, w_strength, w_importance = _IMPORTANCE_MIX
        value = (
            w_freq * frequency
            + w_strength * memory.strength
            + w_importance * memory.importance
        )
        return max(0.0, min(1.0, value))

    async def interference_signal(
        self,
        memory: Memory,
        peers: dict[int, Memory],
    ) -> tuple[float, int]:
        """Return ``(interference, dominating_duplicate_count)``.

        *peers* maps id to memory for the candidates' owner; duplicates
        outside it (archived, other users) are ignored.
        """
        try:
            neighbours = await self._search.search_by_memory(
                memory.id,
                memory.sector,
                limit=_DUPLICATE_SEARCH_LIMIT,
                threshold=self._cfg.duplicate_threshold,
                user_id=memory.user_id,
            )
        except SearchError as exc:
            if exc.retryable:
                raise
            # No embedding in its own sector: nothing can interfere.
            return 0.0, 0

        dominating = 0
        for hit in neighbours:
            other = peers.get(hit.memory_id)
            if other is None:
                continue
            if other.strength > memory.strength or (
                other.strength == memory.strength and other.id < memory.id
            ):
                dominating += 1
        saturation = max(1, self._cfg.interference_saturation)
        return min(1.0, dominating / saturation), dominating

    # ------------------------------------------------------------------
    # Composite
    # ------------------------------------------------------------------

    async def score_memory(
        self,
        memory: Memory,
        *,
        peers: dict[int, Memory] | None = None,
        now: datetime | None = None,
    ) -> ForgettingScore:
        """Compute the composite score of one memory."""
        now = now or datetime.now(tz=timezone.utc)
        if peers is None:
            peers = {
                m.id: m
                for m in await self._memories.list_for_user(memory.user_id, memory.sector)
            }

        decay = self.decay_signal(memory.last_access, now)
        importance = self.importance_signal(memory)
        interference, dominating = await self.interference_signal(memory, peers)

        w = self._cfg.weights
        contributions = (
            (w.decay * decay, ForgettingReason.TEMPORAL_DECAY),
            (w.importance * (1.0 - importance), ForgettingReason.LOW_IMPORTANCE),
            (w.interference * interference, ForgettingReason.HIGH_INTERFERENCE),
        )
        score = max(0.0, min(1.0, sum(c for c, _ in contributions)))
        # First maximum wins on ties: decay, then importance, then interference.
        _, reason = max(contributions, key=lambda c: c[0])
        if reason is ForgettingReason.HIGH_INTERFERENCE and memory.access_count == 0:
            reason = ForgettingReason.ISOLATED_DUPLICATE

        return ForgettingScore(
            memory_id=memory.id,
            score=score,
            decay=decay,
            importance=importance,
            interference=interference,
            reason=reason,
            protected=has_protective_tag(memory.tags, self._cfg.protected_tags),
            is_summary=memory.is_summary,
            last_access=memory.last_access,
            dominating_duplicates=dominating,
        )

    async def score_user(
        self,
        user_id: str,
        *,
        now: datetime | None = None,
    ) -> list[ForgettingScore]:
        """Score every hot (non-archived) memory of *user_id*, ordered by id."""
        now = now or datetime.now(tz=timezone.utc)
        memories = await self._memories.list_for_user(user_id)
        peers = {m.id: m for m in memories}
        scores = [await self.score_memory(m, peers=peers, now=now) for m in memories]
        scores.sort(key=lambda s: s.memory_id)
        log.debug("Scored %d memories for %s", len(scores), user_id)
        return scores

    # ------------------------------------------------------------------
    # Candidate selection
    # ------------------------------------------------------------------

    def select_candidates(
        self,
        scores: list[ForgettingScore],
        *,
        cutoff: float | None = None,
        limit: int | None = None,
    ) -> list[ForgettingCandidate]:
        """Filter and order pruning candidates.

        Parameters
        ----------
        scores:
            Output of :meth:`score_user`.
        cutoff:
            Score that must be exceeded.  Defaults to ``prune_cutoff``.
        limit:
            Bounded batch size; ``None`` keeps every candidate.
        """
        cutoff = self._cfg.prune_cutoff if cutoff is None else cutoff
        eligible = [
            s for s in scores
            if s.score > cutoff and not s.protected and not s.is_summary
        ]
        eligible.sort(key=_candidate_sort_key)
        if limit is not None:
            eligible = eligible[:limit]
        return [
            ForgettingCandidate(s.memory_id, s.score, s.reason, s.last_access)
            for s in eligible
        ]

    async def find_candidates(
        self,
        user_id: str,
        *,
        limit: int | None = None,
        now: datetime | None = None,
    ) -> list[ForgettingCandidate]:
        """Score *user_id* and return the pruning batch."""
        scores = await self.score_user(user_id, now=now)
        batch = self._cfg.prune_batch_size if limit is None else limit
        return self.select_candidates(scores, limit=batch)
