"""RestoreEngine — locate, decode and reconstitute an archived context."""

import dataclasses
import logging
import time
from datetime import datetime
from typing import Callable

from stasis.archive_store import ArchiveStore
from stasis.codec import ArchiveCodec
from stasis.errors import CorruptArchiveError, NotFoundError, ScopeMismatchError
from stasis.models import (
    RESTORATION_EVENT_TYPE, ArchiveLevel, ArchiveRecord, DecodedArchive, Event,
    EventOrigin, RestorationSummary, RestoredContext, RestoreResult, Scope, utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_BUDGET_MS = 1000.0
MS_PER_DAY = 24 * 60 * 60 * 1000
NOTICE_IMPORTANCE = 4


class RestoreEngine:
    """Restores archives by exact (context_id, scope); scope is never inferred."""

    def __init__(
        self,
        store: ArchiveStore,
        codec: ArchiveCodec | None = None,
        clock: Callable[[], datetime] = utc_now,
        budget_ms: float = DEFAULT_BUDGET_MS,
    ):
        self.store = store
        self.codec = codec or ArchiveCodec()
        self.clock = clock
        self.budget_ms = budget_ms

    def restore(self, context_id: str, scope: Scope) -> RestoreResult:
        """Restore an archived context.

        Raises:
            NotFoundError: no archive for context_id in any scope
            ScopeMismatchError: archive exists under another scope
            CorruptArchiveError: payload failed validation
        """
        scope = Scope(scope)
        start = time.perf_counter()

        with self.store.lock(context_id, scope):
            record = self.store.get(context_id, scope)
            if record is None:
                others = [s for s in self.store.scopes_for(context_id) if s != scope]
                if others:
                    raise ScopeMismatchError(context_id, scope.value, others[0].value)
                raise NotFoundError(context_id, scope.value)
            payload = self.store.read_payload(record)

        decoded = self.codec.decode(payload)
        if decoded.context_id != context_id or decoded.scope != scope:
            raise CorruptArchiveError(
                f"Payload at {record.path} belongs to "
                f"{decoded.scope.value}/{decoded.context_id}, not {scope.value}/{context_id}"
            )

        now = self.clock()
        time_gap_ms = (now - decoded.last_activity_at).total_seconds() * 1000
        context = RestoredContext(
            context_id=context_id,
            scope=scope,
            archive_level=decoded.archive_level,
            entries=[self._mark_restored(e) for e in decoded.entries],
            notice=self._notice(decoded, time_gap_ms, now),
            current_task=decoded.current_task,
            last_activity_at=decoded.last_activity_at,
        )
        summary = self._summarize(decoded, record, time_gap_ms)

        restore_time_ms = (time.perf_counter() - start) * 1000
        performance_met = restore_time_ms < self.budget_ms
        if performance_met:
            logger.info("Restored %s/%s in %.1fms", scope.value, context_id, restore_time_ms)
        else:
            logger.warning(
                "Restore of %s/%s took %.1fms (budget %.0fms)",
                scope.value, context_id, restore_time_ms, self.budget_ms,
            )

        return RestoreResult(
            context=context,
            time_gap_ms=time_gap_ms,
            restore_time_ms=restore_time_ms,
            performance_met=performance_met,
            restoration_summary=summary,
        )

    @staticmethod
    def _mark_restored(entry):
        if isinstance(entry, Event) and entry.origin == EventOrigin.LIVE:
            return dataclasses.replace(entry, origin=EventOrigin.ARCHIVE)
        return entry

    @staticmethod
    def _notice(decoded: DecodedArchive, time_gap_ms: float, now: datetime) -> Event:
        days = int(time_gap_ms // MS_PER_DAY)
        sections = [
            {"type": s.event_type, "count": s.count,
             "first_timestamp": s.first_timestamp.isoformat(),
             "last_timestamp": s.last_timestamp.isoformat()}
            for s in decoded.summaries
        ]
        note = f"This context was inactive for {days} days."
        if sections:
            total = sum(s["count"] for s in sections)
            note += f" {total} lower-importance events were summarized during archival."
        return Event(
            seq=0,
            event_type=RESTORATION_EVENT_TYPE,
            payload={
                "restored_at": now.isoformat(),
                "last_activity_at": decoded.last_activity_at.isoformat(),
                "time_gap_ms": int(time_gap_ms),
                "time_gap_days": days,
                "archive_level": decoded.archive_level.value,
                "original_task": decoded.current_task,
                "summarized_sections": sections,
                "note": note,
            },
            importance=NOTICE_IMPORTANCE,
            timestamp=now,
            origin=EventOrigin.RESTORATION,
        )

    @staticmethod
    def _summarize(
        decoded: DecodedArchive, record: ArchiveRecord, time_gap_ms: float,
    ) -> RestorationSummary:
        days = int(time_gap_ms // MS_PER_DAY)
        summarized = sum(s.count for s in decoded.summaries)

        recommendations = []
        if days > 30:
            recommendations.append("Review project status: significant time has passed")
            recommendations.append("Check whether dependencies or requirements have changed")
        if days > 7:
            recommendations.append("Review previous work and current goals")
        if decoded.archive_level == ArchiveLevel.DEEP_SLEEP:
            recommendations.append("Context was heavily compressed; some detail was summarized")
        if not decoded.current_task:
            recommendations.append("No previous task recorded; define current objectives")

        return RestorationSummary(
            message=f"Context restored after {days} day{'' if days == 1 else 's'} of inactivity",
            archive_level=decoded.archive_level,
            compression_applied=f"{record.compression_ratio * 100:.1f}% of original size stored",
            original_task=decoded.current_task,
            events_preserved=len(decoded.events),
            events_summarized=summarized,
            recommendations=recommendations or ["Context appears ready to resume"],
        )
