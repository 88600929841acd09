"""PersistenceEngine — the four exposed operations over live and archived contexts."""

import logging
from datetime import datetime
from pathlib import Path
from typing import Callable

from stasis.archive_store import ArchiveStore
from stasis.archiver import ArchiveManager
from stasis.cleanup import CleanupService
from stasis.codec import ArchiveCodec
from stasis.config import DB_NAME, HEALTH_LOG_DIR_NAME, STASIS_DIR, StasisConfig
from stasis.health import HealthMonitor
from stasis.models import (
    ArchiveResult, ArchiveStats, CleanupResult, HealthMetric, HealthSummary,
    MaintenanceResult, RestoreResult, Scope, utc_now,
)
from stasis.restore import RestoreEngine
from stasis.store import ContextStore

logger = logging.getLogger(__name__)


class PersistenceEngine:
    """Wires the live context store to the archive, restore, health and cleanup services.

    All services share one ``ArchiveStore`` and therefore one per-key lock
    registry.
    """

    def __init__(
        self,
        contexts: ContextStore,
        archives: ArchiveStore,
        config: StasisConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
        health_log_dir: Path | None = None,
    ):
        self.contexts = contexts
        self.archives = archives
        self.config = config or StasisConfig()
        self.clock = clock

        codec = ArchiveCodec(self.config.tiering)
        self.archiver = ArchiveManager(archives, codec=codec, clock=clock)
        self.restorer = RestoreEngine(
            archives, codec=codec, clock=clock, budget_ms=self.config.restore_budget_ms,
        )
        self.monitor = HealthMonitor(
            archiver=self.archiver,
            source=contexts,
            policy=self.config.health,
            clock=clock,
            interval_seconds=self.config.maintenance_interval_seconds,
            health_log_dir=health_log_dir,
        )
        self.cleaner = CleanupService(archives, clock=clock)

    @classmethod
    def open(cls, project: Path, clock: Callable[[], datetime] = utc_now) -> "PersistenceEngine":
        """Engine for an initialized project directory."""
        stasis_dir = Path(project) / STASIS_DIR
        config = StasisConfig.load(stasis_dir)
        archives = ArchiveStore(config.archive_dir)
        archives.initialize()
        return cls(
            ContextStore(stasis_dir / DB_NAME),
            archives,
            config=config,
            clock=clock,
            health_log_dir=stasis_dir / HEALTH_LOG_DIR_NAME,
        )

    def close(self):
        self.contexts.close()

    # --- operations ---

    def archive(self, context_id: str, scope: Scope, keep_active: bool = True) -> ArchiveResult:
        """Archive a live context; drop it from the live store unless keep_active."""
        scope = Scope(scope)
        snapshot = self.contexts.snapshot(context_id, scope)
        if snapshot is None:
            raise ValueError(f"Context not found: {scope.value}/{context_id}")
        result = self.archiver.archive(context_id, scope, snapshot)
        if not keep_active:
            self.contexts.remove_context(context_id, scope)
            result.kept_active = False
            logger.debug("Removed live context %s/%s after archival", scope.value, context_id)
        return result

    def restore(self, context_id: str, scope: Scope, reregister: bool = True) -> RestoreResult:
        """Restore an archive and, by default, hand the rebuilt log back to the live store."""
        result = self.restorer.restore(context_id, scope)
        if reregister:
            self.contexts.reregister(result.context)
        return result

    def health(
        self,
        context_id: str | None = None,
        scope: Scope = Scope.SESSION,
        maintenance: bool = False,
    ) -> HealthMetric | MaintenanceResult | HealthSummary:
        """Score one context, or summarize every live context when no id is given."""
        if context_id is not None:
            scope = Scope(scope)
            snapshot = self.contexts.snapshot(context_id, scope)
            if snapshot is None:
                raise ValueError(f"Context not found: {scope.value}/{context_id}")
            if maintenance:
                return self.monitor.perform_maintenance(context_id, snapshot)
            return self.monitor.score_health(context_id, snapshot)

        if maintenance:
            metrics = [r.metric for r in self.monitor.run_maintenance_cycle()]
        else:
            metrics = []
            for cid, s in self.contexts.list_contexts():
                snapshot = self.contexts.snapshot(cid, s)
                if snapshot is not None:
                    metrics.append(self.monitor.score_health(cid, snapshot))
        summary = self.monitor.summarize(metrics)
        summary.archived_contexts = self.archives.stats().total_contexts
        return summary

    def cleanup(self, retention_days: int | None = None) -> CleanupResult:
        if retention_days is None:
            retention_days = self.config.retention_days
        return self.cleaner.cleanup_expired(retention_days)

    def stats(self) -> ArchiveStats:
        return self.archives.stats()
