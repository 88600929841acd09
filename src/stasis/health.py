"""Health monitoring — scoring, maintenance actions and the background loop."""

import asyncio
import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from stasis.archiver import ArchiveManager
from stasis.errors import StasisError
from stasis.models import (
    ContextSnapshot, HealthFactors, HealthLevel, HealthMetric, HealthSummary,
    MaintenanceResult, Scope, utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 6 * 60 * 60
HEALTH_LOG_LIMIT = 100
MAX_REPORTED_ISSUES = 20


class HealthPolicy(BaseModel):
    """Weights and thresholds for health scoring.

    overall = freshness_weight * freshness
            + structural_weight * structural
            + size_weight * size

    Freshness stays at 1.0 for ``freshness_grace_days`` and then halves
    every ``freshness_half_life_days``. Size is 1.0 up to the soft limit
    and falls linearly to ``size_floor`` at the hard limit.
    """

    model_config = ConfigDict(extra="forbid")

    freshness_weight: float = Field(default=0.6, ge=0.0, le=1.0)
    structural_weight: float = Field(default=0.3, ge=0.0, le=1.0)
    size_weight: float = Field(default=0.1, ge=0.0, le=1.0)
    excellent_threshold: float = 0.8
    good_threshold: float = 0.5
    warning_threshold: float = 0.25
    freshness_grace_days: float = Field(default=3, ge=0)
    freshness_half_life_days: float = 14
    size_soft_limit_bytes: int = Field(default=256 * 1024, gt=0)
    size_hard_limit_bytes: int = 4 * 1024 * 1024
    size_floor: float = Field(default=0.5, ge=0.0, le=1.0)

    @field_validator("freshness_half_life_days")
    @classmethod
    def validate_half_life(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("freshness_half_life_days must be positive")
        return v

    @model_validator(mode="after")
    def validate_weights_and_thresholds(self) -> "HealthPolicy":
        total = self.freshness_weight + self.structural_weight + self.size_weight
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"Health weights must sum to 1.0, got {total}")
        if not (1 >= self.excellent_threshold > self.good_threshold
                > self.warning_threshold > 0):
            raise ValueError("Health thresholds must be strictly decreasing within (0, 1]")
        if self.size_hard_limit_bytes <= self.size_soft_limit_bytes:
            raise ValueError("size_hard_limit_bytes must exceed size_soft_limit_bytes")
        return self

    def level_for(self, score: float, structurally_valid: bool = True) -> HealthLevel:
        if not structurally_valid:
            return HealthLevel.CRITICAL
        if score >= self.excellent_threshold:
            return HealthLevel.EXCELLENT
        if score >= self.good_threshold:
            return HealthLevel.GOOD
        if score >= self.warning_threshold:
            return HealthLevel.WARNING
        return HealthLevel.CRITICAL

    def freshness(self, age: timedelta) -> float:
        days = max(age, timedelta(0)) / timedelta(days=1)
        if days <= self.freshness_grace_days:
            return 1.0
        return 0.5 ** ((days - self.freshness_grace_days) / self.freshness_half_life_days)

    def size(self, size_bytes: int) -> float:
        if size_bytes <= self.size_soft_limit_bytes:
            return 1.0
        if size_bytes >= self.size_hard_limit_bytes:
            return self.size_floor
        span = self.size_hard_limit_bytes - self.size_soft_limit_bytes
        over = (size_bytes - self.size_soft_limit_bytes) / span
        return 1.0 - over * (1.0 - self.size_floor)


def check_structure(context_id: str, snapshot: ContextSnapshot) -> list[str]:
    """Return structural problems with a snapshot; empty means well-formed."""
    issues = []
    if not snapshot.context_id:
        issues.append("empty context id")
    elif snapshot.context_id != context_id:
        issues.append(f"snapshot belongs to {snapshot.context_id!r}, not {context_id!r}")
    if snapshot.last_activity_at is None or snapshot.last_activity_at.tzinfo is None:
        issues.append("last_activity_at is missing or not timezone-aware")

    prev_seq = None
    for event in snapshot.events:
        if prev_seq is not None and event.seq <= prev_seq:
            issues.append(f"event seq {event.seq} out of order after {prev_seq}")
        prev_seq = event.seq
        if not event.event_type:
            issues.append(f"event {event.seq} has no type")
        if not isinstance(event.importance, int) or not 0 <= event.importance <= 10:
            issues.append(f"event {event.seq} importance {event.importance!r} outside 0-10")
        if event.timestamp is None or event.timestamp.tzinfo is None:
            issues.append(f"event {event.seq} timestamp missing or not timezone-aware")
        try:
            json.dumps(event.payload)
        except (TypeError, ValueError):
            issues.append(f"event {event.seq} payload is not JSON-serializable")
        if len(issues) >= MAX_REPORTED_ISSUES:
            break

    if snapshot.event_count is not None and len(snapshot.events) < snapshot.event_count:
        issues.append(
            f"truncated: {len(snapshot.events)} of {snapshot.event_count} events present"
        )
    return issues


def _snapshot_size(snapshot: ContextSnapshot) -> int:
    events = [
        [e.seq, e.event_type, e.payload, e.importance, str(e.timestamp)]
        for e in snapshot.events
    ]
    return len(json.dumps(events, default=str).encode("utf-8"))


class HealthMonitor:
    """Scores contexts and keeps them maintained.

    ``source`` is the live-context collaborator; it needs
    ``list_contexts() -> list[(context_id, scope)]`` and
    ``snapshot(context_id, scope) -> ContextSnapshot | None``. Without a
    source the background loop has nothing to visit.
    """

    def __init__(
        self,
        archiver: ArchiveManager | None = None,
        source=None,
        policy: HealthPolicy | None = None,
        clock: Callable[[], datetime] = utc_now,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        health_log_dir: Path | None = None,
        auto_archive: bool = True,
    ):
        self.archiver = archiver
        self.source = source
        self.policy = policy or HealthPolicy()
        self.clock = clock
        self.interval_seconds = interval_seconds
        self.health_log_dir = Path(health_log_dir) if health_log_dir else None
        self.auto_archive = auto_archive
        self.flagged: dict[tuple[str, Scope], str] = {}
        self.cycle_count = 0
        self._task: asyncio.Task | None = None

    # --- scoring ---

    def score_health(self, context_id: str, snapshot: ContextSnapshot) -> HealthMetric:
        now = self.clock()
        issues = check_structure(context_id, snapshot)
        valid = not issues

        freshness = (
            self.policy.freshness(now - snapshot.last_activity_at)
            if snapshot.last_activity_at is not None and snapshot.last_activity_at.tzinfo
            else 0.0
        )
        factors = HealthFactors(
            freshness=freshness,
            structural=1.0 if valid else 0.0,
            size=self.policy.size(_snapshot_size(snapshot)),
        )
        overall = (
            self.policy.freshness_weight * factors.freshness
            + self.policy.structural_weight * factors.structural
            + self.policy.size_weight * factors.size
        )
        level = self.policy.level_for(overall, structurally_valid=valid)

        return HealthMetric(
            context_id=context_id,
            scope=snapshot.scope,
            overall_score=overall,
            level=level,
            factors=factors,
            evaluated_at=now,
            issues=issues,
            recommendations=self._recommendations(factors, level, issues),
        )

    @staticmethod
    def _recommendations(factors: HealthFactors, level: HealthLevel, issues: list[str]) -> list[str]:
        recs = []
        if issues:
            recs.append("Structural problems detected; manual review required before archival")
        if factors.freshness < 0.5:
            recs.append("Context is stale; archive it to reclaim space")
        if factors.size < 1.0:
            recs.append("Context is large; archival will reduce its footprint")
        if level == HealthLevel.EXCELLENT:
            recs.append("Context is in excellent health")
        return recs

    # --- maintenance ---

    def perform_maintenance(self, context_id: str, snapshot: ContextSnapshot) -> MaintenanceResult:
        """Score a context and act on the result.

        warning (or critical from staleness) -> archive
        critical from structural failure     -> flag for manual intervention
        excellent / good                     -> nothing
        """
        metric = self.score_health(context_id, snapshot)
        result = MaintenanceResult(context_id=context_id, metric=metric)
        key = (context_id, snapshot.scope)

        if not metric.structurally_valid:
            reason = "; ".join(metric.issues)
            self.flagged[key] = reason
            logger.warning("Context %s/%s flagged for manual intervention: %s",
                           snapshot.scope.value, context_id, reason)
            result.actions_taken.append("flagged_for_manual_intervention")
        elif metric.level in (HealthLevel.WARNING, HealthLevel.CRITICAL):
            self.flagged.pop(key, None)
            if self.archiver is None or not self.auto_archive:
                result.actions_taken.append("archive_recommended")
            else:
                try:
                    archived = self.archiver.archive(context_id, snapshot.scope, snapshot)
                    result.actions_taken.append(f"archived:{archived.archive_level.value}")
                except StasisError as e:
                    logger.error("Maintenance archive of %s/%s failed: %s",
                                 snapshot.scope.value, context_id, e)
                    result.actions_taken.append("archive_failed")
                    result.success = False
                    result.error = str(e)
        else:
            self.flagged.pop(key, None)

        self._log_health(snapshot.scope, metric, result)
        return result

    def run_maintenance_cycle(self) -> list[MaintenanceResult]:
        """One pass over every context the source knows about."""
        self.cycle_count += 1
        if self.source is None:
            return []
        results = []
        for context_id, scope in self.source.list_contexts():
            snapshot = self.source.snapshot(context_id, scope)
            if snapshot is None:
                continue
            results.append(self.perform_maintenance(context_id, snapshot))
        logger.info("Maintenance cycle %d visited %d contexts", self.cycle_count, len(results))
        return results

    def summarize(self, metrics: list[HealthMetric]) -> HealthSummary:
        by_level = {level.value: 0 for level in HealthLevel}
        for m in metrics:
            by_level[m.level.value] += 1
        average = sum(m.overall_score for m in metrics) / len(metrics) if metrics else 0.0
        return HealthSummary(
            total_contexts=len(metrics),
            by_level=by_level,
            average_score=average,
            flagged=sorted(f"{scope.value}/{cid}" for cid, scope in self.flagged),
            maintenance_running=self.maintenance_running,
        )

    def _log_health(self, scope: Scope, metric: HealthMetric, result: MaintenanceResult) -> None:
        """Append to the bounded per-context health history."""
        if self.health_log_dir is None:
            return
        log_file = self.health_log_dir / scope.value / f"{metric.context_id}.json"
        entry = {
            "evaluated_at": metric.evaluated_at.isoformat(),
            "level": metric.level.value,
            "overall_score": round(metric.overall_score, 4),
            "factors": {
                "freshness": round(metric.factors.freshness, 4),
                "structural": metric.factors.structural,
                "size": round(metric.factors.size, 4),
            },
            "actions": result.actions_taken,
        }
        try:
            history = []
            if log_file.is_file():
                try:
                    history = json.loads(log_file.read_text(encoding="utf-8"))
                except json.JSONDecodeError:
                    logger.warning("Health log %s unreadable, starting fresh", log_file)
            history.append(entry)
            log_file.parent.mkdir(parents=True, exist_ok=True)
            log_file.write_text(json.dumps(history[-HEALTH_LOG_LIMIT:], indent=2), encoding="utf-8")
        except OSError as e:
            logger.warning("Failed to write health log %s: %s", log_file, e)

    def health_history(self, context_id: str, scope: Scope) -> list[dict]:
        if self.health_log_dir is None:
            return []
        log_file = self.health_log_dir / Scope(scope).value / f"{context_id}.json"
        if not log_file.is_file():
            return []
        return json.loads(log_file.read_text(encoding="utf-8"))

    # --- background loop ---

    @property
    def maintenance_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start_background_maintenance(self) -> None:
        """Start the periodic maintenance task. No-op if already running.

        Cycles block the event loop while they run; see ``_maintenance_loop``.
        """
        if self.maintenance_running:
            logger.debug("Background maintenance already running")
            return
        self._task = asyncio.create_task(self._maintenance_loop())
        logger.info("Background maintenance started (every %ss)", self.interval_seconds)

    async def stop_background_maintenance(self) -> None:
        """Cancel the task and wait for it; no cycle runs after this returns."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Background maintenance stopped")

    async def _maintenance_loop(self) -> None:
        """Run a cycle, then sleep ``interval_seconds``, until cancelled.

        Each cycle runs synchronously on the event loop thread and blocks
        the loop for its duration (SQLite reads, fsync, xz compression).
        The live store's SQLite connection is bound to the thread that
        opened it, so cycles are not moved to an executor. Callers that
        share the loop with latency-sensitive work should keep the
        interval long or run the monitor in its own process.
        """
        while True:
            try:
                self.run_maintenance_cycle()
            except Exception:
                logger.exception("Maintenance cycle failed")
            await asyncio.sleep(self.interval_seconds)
