"""Tests for configuration defaults, env overrides and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from memcycle.config import (
    ArchiveConfig,
    ForgettingConfig,
    ForgettingWeights,
    MemcycleConfig,
    get_config,
    validate_cutoffs,
    validate_forgetting,
)
from memcycle.errors import ValidationError


@pytest.fixture(autouse=True)
def _fresh_config():
    get_config(reload=True)
    yield
    get_config(reload=True)


class TestDefaults:
    def test_paths_are_expanded(self) -> None:
        cfg = MemcycleConfig()
        assert "~" not in str(cfg.db_path)
        assert cfg.db_path.name == "memcycle.db"

    def test_archive_cutoff_not_below_prune_cutoff(self) -> None:
        cfg = MemcycleConfig()
        assert cfg.archive.archive_cutoff >= cfg.forgetting.prune_cutoff

    def test_default_weights_sum_to_one(self) -> None:
        w = ForgettingWeights()
        assert w.decay + w.importance + w.interference == pytest.approx(1.0)

    def test_defaults_validate(self) -> None:
        cfg = MemcycleConfig()
        validate_forgetting(cfg.forgetting)
        validate_cutoffs(cfg.forgetting, cfg.archive)


class TestEnvOverrides:
    def test_nested_float(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MEMCYCLE_CONSOLIDATION__SIMILARITY_THRESHOLD", "0.8")
        cfg = get_config(reload=True)
        assert cfg.consolidation.similarity_threshold == pytest.approx(0.8)

    def test_top_level_path(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.setenv("MEMCYCLE_DB_PATH", str(tmp_path / "x.db"))
        cfg = get_config(reload=True)
        assert cfg.db_path == tmp_path / "x.db"

    def test_tuple_from_comma_list(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MEMCYCLE_FORGETTING__PROTECTED_TAGS", "pinned, keep")
        cfg = get_config(reload=True)
        assert cfg.forgetting.protected_tags == ("pinned", "keep")

    def test_bool(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MEMCYCLE_ARCHIVE__RETAIN_EMBEDDINGS", "false")
        cfg = get_config(reload=True)
        assert cfg.archive.retain_embeddings is False

    def test_doubly_nested(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MEMCYCLE_FORGETTING__WEIGHTS__DECAY", "0.6")
        monkeypatch.setenv("MEMCYCLE_FORGETTING__WEIGHTS__IMPORTANCE", "0.2")
        cfg = get_config(reload=True)
        assert cfg.forgetting.weights.decay == pytest.approx(0.6)
        assert cfg.forgetting.weights.interference == pytest.approx(0.2)

    def test_inconsistent_env_rejected(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MEMCYCLE_ARCHIVE__ARCHIVE_CUTOFF", "0.5")
        with pytest.raises(ValidationError):
            get_config(reload=True)

    def test_cached_until_reload(self, monkeypatch: pytest.MonkeyPatch) -> None:
        first = get_config()
        monkeypatch.setenv("MEMCYCLE_BACKUP_COUNT", "9")
        assert get_config() is first
        assert get_config(reload=True).backup_count == 9


class TestValidation:
    def test_weights_must_sum_to_one(self) -> None:
        cfg = ForgettingConfig(weights=ForgettingWeights(0.5, 0.5, 0.5))
        with pytest.raises(ValidationError, match="sum to 1"):
            validate_forgetting(cfg)

    def test_weight_out_of_range(self) -> None:
        cfg = ForgettingConfig(weights=ForgettingWeights(1.5, -0.3, -0.2))
        with pytest.raises(ValidationError):
            validate_forgetting(cfg)

    def test_prune_cutoff_range(self) -> None:
        with pytest.raises(ValidationError):
            validate_forgetting(ForgettingConfig(prune_cutoff=1.2))

    def test_half_life_positive(self) -> None:
        with pytest.raises(ValidationError):
            validate_forgetting(ForgettingConfig(half_life_days=0))

    def test_archive_below_prune_rejected(self) -> None:
        with pytest.raises(ValidationError, match="archive_cutoff"):
            validate_cutoffs(ForgettingConfig(prune_cutoff=0.7), ArchiveConfig(archive_cutoff=0.6))

    def test_equal_cutoffs_allowed(self) -> None:
        validate_cutoffs(ForgettingConfig(prune_cutoff=0.7), ArchiveConfig(archive_cutoff=0.7))

    def test_validation_error_is_value_error(self) -> None:
        with pytest.raises(ValueError):
            validate_forgetting(ForgettingConfig(half_life_days=-1))
