"""Tests for the PersistenceEngine facade and configuration."""

import json
from datetime import timedelta
from pathlib import Path

import pytest
from pydantic import ValidationError

from stasis.archive_store import ArchiveStore
from stasis.config import StasisConfig
from stasis.engine import PersistenceEngine
from stasis.errors import NotFoundError, ScopeMismatchError
from stasis.models import (
    ArchiveLevel, EventOrigin, HealthLevel, HealthMetric, HealthSummary,
    MaintenanceResult, Scope,
)
from stasis.tiering import TieringPolicy

from conftest import NOW


@pytest.fixture
def engine(context_store, archive_store, clock, tmp_path):
    return PersistenceEngine(
        context_store, archive_store, clock=clock, health_log_dir=tmp_path / "health-logs",
    )


def _seed(engine, context_id="ctx-1", scope=Scope.SESSION, age_days=1, task="Fix flaky test"):
    start = NOW - timedelta(days=age_days)
    engine.contexts.start_context(context_id, scope, current_task=task, created_at=start)
    for i in range(6):
        engine.contexts.append(
            context_id, scope, "tool_call" if i % 3 else "decision",
            {"step": i}, 9 if i % 3 == 0 else 3,
            timestamp=start + timedelta(seconds=i),
        )


class TestArchiveRestore:

    def test_archive_keeps_live_context_by_default(self, engine):
        _seed(engine)
        result = engine.archive("ctx-1", Scope.SESSION)
        assert result.kept_active
        assert engine.contexts.snapshot("ctx-1", Scope.SESSION) is not None

    def test_archive_can_drop_live_context(self, engine):
        _seed(engine)
        result = engine.archive("ctx-1", Scope.SESSION, keep_active=False)
        assert not result.kept_active
        assert engine.contexts.snapshot("ctx-1", Scope.SESSION) is None

    def test_archive_unknown_context(self, engine):
        with pytest.raises(ValueError, match="Context not found"):
            engine.archive("nope", Scope.SESSION)

    def test_round_trip_through_live_store(self, engine):
        _seed(engine, age_days=100)
        archived = engine.archive("ctx-1", Scope.SESSION, keep_active=False)
        assert archived.archive_level == ArchiveLevel.DEEP_SLEEP

        result = engine.restore("ctx-1", Scope.SESSION)
        live = engine.contexts.snapshot("ctx-1", Scope.SESSION)
        assert live is not None
        assert live.events[0].origin == EventOrigin.RESTORATION
        assert [e.payload for e in live.events if e.origin == EventOrigin.ARCHIVE] == [
            {"step": 0}, {"step": 3},
        ]
        assert live.current_task == "Fix flaky test"
        assert result.time_gap_ms == pytest.approx(100 * 24 * 3600 * 1000, abs=10_000)

    def test_restore_without_reregister(self, engine):
        _seed(engine)
        engine.archive("ctx-1", Scope.SESSION, keep_active=False)
        engine.restore("ctx-1", Scope.SESSION, reregister=False)
        assert engine.contexts.snapshot("ctx-1", Scope.SESSION) is None

    def test_scope_is_never_inferred(self, engine):
        _seed(engine)
        engine.archive("ctx-1", Scope.SESSION)
        with pytest.raises(ScopeMismatchError):
            engine.restore("ctx-1", Scope.PROJECT)
        with pytest.raises(NotFoundError):
            engine.restore("other", Scope.SESSION)


class TestHealth:

    def test_single_metric(self, engine):
        _seed(engine, age_days=2)
        metric = engine.health("ctx-1", Scope.SESSION)
        assert isinstance(metric, HealthMetric)
        assert metric.level == HealthLevel.EXCELLENT

    def test_single_maintenance_archives_stale(self, engine):
        _seed(engine, age_days=60)
        result = engine.health("ctx-1", Scope.SESSION, maintenance=True)
        assert isinstance(result, MaintenanceResult)
        assert result.actions_taken == ["archived:Sleeping"]
        assert engine.stats().total_contexts == 1

    def test_summary_over_live_contexts(self, engine):
        _seed(engine, "fresh", age_days=1)
        _seed(engine, "stale", Scope.PROJECT, age_days=60)
        engine.archive("fresh", Scope.SESSION)

        summary = engine.health()
        assert isinstance(summary, HealthSummary)
        assert summary.total_contexts == 2
        assert summary.by_level["excellent"] == 1
        assert summary.by_level["warning"] == 1
        assert summary.archived_contexts == 1

    def test_maintenance_summary_writes_health_log(self, engine, tmp_path):
        _seed(engine, age_days=60)
        summary = engine.health(maintenance=True)
        assert summary.archived_contexts == 1
        log = json.loads((tmp_path / "health-logs" / "session" / "ctx-1.json").read_text())
        assert log[0]["actions"] == ["archived:Sleeping"]

    def test_health_unknown_context(self, engine):
        with pytest.raises(ValueError, match="Context not found"):
            engine.health("nope", Scope.SESSION)


class TestCleanupAndStats:

    def test_cleanup_uses_configured_retention(self, context_store, archive_store, clock):
        engine = PersistenceEngine(
            context_store, archive_store, config=StasisConfig(retention_days=10), clock=clock,
        )
        _seed(engine)
        engine.archive("ctx-1", Scope.SESSION)
        clock.advance(days=11)
        assert engine.cleanup().processed_count == 1

    def test_cleanup_explicit_retention(self, engine, clock):
        _seed(engine)
        engine.archive("ctx-1", Scope.SESSION)
        clock.advance(days=11)
        assert engine.cleanup(30).processed_count == 0
        assert engine.cleanup(0).processed_count == 1

    def test_stats(self, engine):
        _seed(engine, "a")
        _seed(engine, "b", Scope.PROJECT, age_days=40)
        engine.archive("a", Scope.SESSION)
        engine.archive("b", Scope.PROJECT)
        stats = engine.stats()
        assert stats.total_contexts == 2
        assert stats.by_level["Active"] == 1
        assert stats.by_level["Sleeping"] == 1


class TestConfig:

    def test_defaults(self, tmp_path):
        config = StasisConfig.load(tmp_path)
        assert config.retention_days == 365
        assert config.restore_budget_ms == 1000
        assert config.archive_dir == tmp_path / "archive"

    def test_overrides_from_file(self, tmp_path):
        (tmp_path / "config.json").write_text(json.dumps({
            "retention_days": 30,
            "tiering": {"deep_sleep_after_days": 60,
                        "retention_thresholds": {"DeepSleep": 10}},
            "health": {"freshness_half_life_days": 7},
        }))
        config = StasisConfig.load(tmp_path)
        assert config.retention_days == 30
        assert config.tiering.deep_sleep_after_days == 60
        assert config.tiering.retention_threshold(ArchiveLevel.DEEP_SLEEP) == 10
        assert config.tiering.retention_threshold(ArchiveLevel.DORMANT) == 3
        assert config.health.freshness_half_life_days == 7

    def test_write_then_load(self, tmp_path):
        StasisConfig(tiering=TieringPolicy(dormant_after_days=3), retention_days=99).write(tmp_path)
        config = StasisConfig.load(tmp_path)
        assert config.tiering.dormant_after_days == 3
        assert config.retention_days == 99

    def test_unknown_option_rejected(self, tmp_path):
        (tmp_path / "config.json").write_text(json.dumps({"retention_dayz": 3}))
        with pytest.raises(ValueError, match="config option"):
            StasisConfig.load(tmp_path)

    def test_invalid_json_rejected(self, tmp_path):
        (tmp_path / "config.json").write_text("{")
        with pytest.raises(ValueError, match="Invalid config file"):
            StasisConfig.load(tmp_path)

    def test_archive_dir_env_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv("STASIS_ARCHIVE_DIR", str(tmp_path / "elsewhere"))
        assert StasisConfig.load(tmp_path).archive_dir == tmp_path / "elsewhere"

    def test_env_beats_config_file(self, tmp_path, monkeypatch):
        (tmp_path / "config.json").write_text(json.dumps({
            "retention_days": 30, "archive_dir": str(tmp_path / "from-file"),
        }))
        monkeypatch.setenv("STASIS_RETENTION_DAYS", "7")
        monkeypatch.setenv("STASIS_ARCHIVE_DIR", str(tmp_path / "from-env"))
        config = StasisConfig.load(tmp_path)
        assert config.retention_days == 7
        assert config.archive_dir == tmp_path / "from-env"

    def test_archive_dir_from_file(self, tmp_path):
        (tmp_path / "config.json").write_text(json.dumps({"archive_dir": "/srv/archive"}))
        assert StasisConfig.load(tmp_path).archive_dir == Path("/srv/archive")

    def test_invalid_values_reported_by_field(self, tmp_path):
        (tmp_path / "config.json").write_text(json.dumps({
            "retention_days": -1,
            "health": {"freshness_weight": 0.9},
        }))
        with pytest.raises(ValueError, match="config option") as exc_info:
            StasisConfig.load(tmp_path)
        message = str(exc_info.value)
        assert "retention_days:" in message
        assert "health: Value error, Health weights must sum to 1.0" in message
        assert not isinstance(exc_info.value, ValidationError)

    def test_non_object_config_rejected(self, tmp_path):
        (tmp_path / "config.json").write_text("[1, 2]")
        with pytest.raises(ValueError, match="must contain a JSON object"):
            StasisConfig.load(tmp_path)

    def test_direct_construction_validates(self):
        with pytest.raises(ValidationError):
            StasisConfig(restore_budget_ms=0)

    def test_open_project(self, tmp_path):
        stasis_dir = tmp_path / ".stasis"
        stasis_dir.mkdir()
        engine = PersistenceEngine.open(tmp_path)
        try:
            assert isinstance(engine.archives, ArchiveStore)
            assert engine.archives.root == stasis_dir / "archive"
            assert (stasis_dir / "archive" / "metadata").is_dir()
        finally:
            engine.close()
