"""Central configuration for the memory lifecycle engine.

All tunables live here with sensible defaults.  Values can be overridden
through environment variables prefixed with ``MEMCYCLE_`` (nested keys use
double underscores, e.g. ``MEMCYCLE_CONSOLIDATION__SIMILARITY_THRESHOLD=0.8``).
Tuple-valued fields take a comma-separated list
(``MEMCYCLE_FORGETTING__PROTECTED_TAGS=pinned,keep``).

Usage::

    from memcycle.config import get_config

    cfg = get_config()
    print(cfg.db_path)
    print(cfg.consolidation.similarity_threshold)
"""

from __future__ import annotations

import math
import os
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import TypeVar, get_args, get_origin, get_type_hints

from memcycle.errors import ValidationError

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Nested configuration sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SearchConfig:
    """Defaults for vector similarity queries."""

    default_limit: int = 10
    default_threshold: float = 0.0


@dataclass(frozen=True, slots=True)
class ConsolidationConfig:
    """Parameters for similarity clustering and summary creation."""

    similarity_threshold: float = 0.75
    """Minimum similarity to the seed for a memory to join its cluster."""

    min_cluster_size: int = 2
    """Clusters smaller than this are discarded.  Values below 2 still
    require a pair, since a cluster is at least two memories."""

    max_cluster_size: int = 20
    """Cap on cluster growth around a single seed."""

    strength_decay_factor: float = 0.5
    """Multiplier applied to each original's strength on commit."""

    strength_floor: float = 0.05
    """Consolidation never pushes an original's strength below this."""

    search_page_size: int = 32
    """Neighbours fetched per similarity query while growing a cluster."""

    summary_importance: float = 0.8
    summary_tags: tuple[str, ...] = ("consolidated", "summary")


@dataclass(frozen=True, slots=True)
class ForgettingWeights:
    """Relative weights of the three forgetting signals.  Must sum to 1."""

    decay: float = 0.5
    importance: float = 0.3
    interference: float = 0.2


@dataclass(frozen=True, slots=True)
class ForgettingConfig:
    """Parameters for the composite forgetting score and pruning."""

    half_life_days: float = 30.0
    """Days since last access at which the decay signal reaches 0.5."""

    access_saturation: int = 10
    """Access count at which the frequency part of importance is ~0.63."""

    duplicate_threshold: float = 0.92
    """Similarity at or above which two memories count as near-duplicates."""

    interference_saturation: int = 3
    """Number of stronger duplicates that drives interference to 1.0."""

    prune_cutoff: float = 0.70
    prune_batch_size: int = 50
    protected_tags: tuple[str, ...] = ("pinned", "critical", "protected")
    weights: ForgettingWeights = field(default_factory=ForgettingWeights)


@dataclass(frozen=True, slots=True)
class ArchiveConfig:
    """Parameters for cold storage."""

    archive_cutoff: float = 0.80
    """Forgetting score above which a memory is archived.  Never lower
    than :attr:`ForgettingConfig.prune_cutoff`."""

    batch_size: int = 100
    retain_embeddings: bool = True


@dataclass(frozen=True, slots=True)
class HealthConfig:
    """Thresholds behind health metrics and recommendations."""

    quota_bytes: int = 1024 * 1024 * 1024
    storage_warning_pct: float = 80.0
    storage_critical_pct: float = 90.0
    low_strength_threshold: float = 0.1
    old_age_days: int = 180
    pruning_recommend_at: int = 100
    pruning_high_at: int = 500
    archiving_recommend_at: int = 100
    archiving_medium_at: int = 500
    consolidation_recommend_at: int = 50
    consolidation_medium_at: int = 200
    estimated_ms_per_memory: int = 100


@dataclass(frozen=True, slots=True)
class SchedulerConfig:
    """Parameters for the per-user lifecycle run."""

    max_retry_attempts: int = 3
    base_retry_delay_seconds: float = 1.0
    lease_ttl_seconds: int = 600
    failed_status_seconds: float = 300.0
    """How long ``status()`` keeps reporting a failed run before it
    falls back to idle."""

    sectors: tuple[str, ...] = (
        "episodic",
        "semantic",
        "procedural",
        "emotional",
        "reflective",
    )


# ---------------------------------------------------------------------------
# Top-level configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class MemcycleConfig:
    """Root configuration object.

    All paths are stored as resolved :class:`~pathlib.Path` instances with
    ``~`` expanded.
    """

    db_path: Path = field(default_factory=lambda: Path("~/.memcycle/memcycle.db"))
    backup_dir: Path = field(default_factory=lambda: Path("~/.memcycle/backups"))
    backup_count: int = 5

    summarizer: str = "extractive"  # "extractive" or "ollama"
    ollama_url: str = "http://localhost:11434"
    summary_model: str = "llama3.2:3b"
    summary_timeout_seconds: float = 30.0

    search: SearchConfig = field(default_factory=SearchConfig)
    consolidation: ConsolidationConfig = field(default_factory=ConsolidationConfig)
    forgetting: ForgettingConfig = field(default_factory=ForgettingConfig)
    archive: ArchiveConfig = field(default_factory=ArchiveConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)

    def __post_init__(self) -> None:
        # Frozen dataclass, hence object.__setattr__.
        object.__setattr__(self, "db_path", self.db_path.expanduser())
        object.__setattr__(self, "backup_dir", self.backup_dir.expanduser())


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _check_unit(name: str, value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise ValidationError(f"{name} must be between 0 and 1", {name: value})


def validate_forgetting(cfg: ForgettingConfig) -> None:
    """Raise :class:`ValidationError` if *cfg* is inconsistent."""
    w = cfg.weights
    for name in ("decay", "importance", "interference"):
        _check_unit(f"weights.{name}", getattr(w, name))
    total = w.decay + w.importance + w.interference
    if not math.isclose(total, 1.0, abs_tol=1e-6):
        raise ValidationError("forgetting weights must sum to 1", {"sum": total})
    _check_unit("prune_cutoff", cfg.prune_cutoff)
    _check_unit("duplicate_threshold", cfg.duplicate_threshold)
    if cfg.half_life_days <= 0:
        raise ValidationError("half_life_days must be positive", {"half_life_days": cfg.half_life_days})
    if cfg.prune_batch_size < 1:
        raise ValidationError("prune_batch_size must be at least 1", {"prune_batch_size": cfg.prune_batch_size})


def validate_cutoffs(forgetting: ForgettingConfig, archive: ArchiveConfig) -> None:
    """Archival must never trigger below the pruning cutoff."""
    _check_unit("archive_cutoff", archive.archive_cutoff)
    if archive.archive_cutoff < forgetting.prune_cutoff:
        raise ValidationError(
            "archive_cutoff must not be lower than prune_cutoff",
            {"archive_cutoff": archive.archive_cutoff, "prune_cutoff": forgetting.prune_cutoff},
        )


# ---------------------------------------------------------------------------
# Environment-variable loader
# ---------------------------------------------------------------------------

_ENV_PREFIX = "MEMCYCLE_"
_NESTED_SEP = "__"


def _resolve_type_hints(dc_type: type) -> dict[str, type]:
    """Resolve stringified annotations back to real types.

    ``from __future__ import annotations`` turns all annotations into
    strings.  :func:`typing.get_type_hints` evaluates them in the correct
    module namespace so we get the actual :class:`type` objects.
    """
    module = sys.modules.get(dc_type.__module__, None)
    globalns = getattr(module, "__dict__", {}) if module else {}
    return get_type_hints(dc_type, globalns=globalns)


def _coerce(value: str, target_type: type[T]) -> T:
    """Cast an env-var string to the target field type."""
    if get_origin(target_type) is tuple:
        item_type = (get_args(target_type) or (str,))[0]
        items = [v.strip() for v in value.split(",") if v.strip()]
        return tuple(item_type(v) for v in items)  # type: ignore[return-value]
    if target_type is bool:
        return target_type(value.lower() in ("1", "true", "yes"))  # type: ignore[return-value]
    if target_type is Path:
        return target_type(value)  # type: ignore[return-value]
    return target_type(value)  # type: ignore[return-value]


def _load_dataclass(dc_type: type[T], prefix: str) -> T:
    """Recursively build a dataclass from env-var overrides + defaults."""
    hints = _resolve_type_hints(dc_type)
    kwargs: dict[str, object] = {}

    for f in fields(dc_type):  # type: ignore[arg-type]
        field_type = hints[f.name]
        nested_prefix = f"{prefix}{f.name}{_NESTED_SEP}".upper()

        if hasattr(field_type, "__dataclass_fields__"):
            kwargs[f.name] = _load_dataclass(field_type, nested_prefix)
        else:
            env_key = f"{prefix}{f.name}".upper()
            raw = os.environ.get(env_key)
            if raw is not None:
                kwargs[f.name] = _coerce(raw, field_type)

    return dc_type(**kwargs)  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

_cached_config: MemcycleConfig | None = None


def get_config(*, reload: bool = False) -> MemcycleConfig:
    """Return the current :class:`MemcycleConfig`.

    On the first call the config is built by merging defaults with any
    ``MEMCYCLE_*`` environment variables.  The result is cached for the
    lifetime of the process unless *reload* is ``True``.

    Raises
    ------
    ValidationError
        If the merged configuration is inconsistent (weights not summing
        to 1, archival cutoff below the pruning cutoff, ...).
    """
    global _cached_config  # noqa: PLW0603
    if _cached_config is None or reload:
        cfg = _load_dataclass(MemcycleConfig, _ENV_PREFIX)
        validate_forgetting(cfg.forgetting)
        validate_cutoffs(cfg.forgetting, cfg.archive)
        _cached_config = cfg
    return _cached_config
