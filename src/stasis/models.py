"""Data models for contexts, archives, health and cleanup results."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class Scope(str, Enum):
    SESSION = "session"
    PROJECT = "project"


class ArchiveLevel(str, Enum):
    ACTIVE = "Active"
    DORMANT = "Dormant"
    SLEEPING = "Sleeping"
    DEEP_SLEEP = "DeepSleep"

    @property
    def code(self) -> int:
        """Stable one-byte code used in the payload header."""
        return _LEVEL_CODES[self]

    @property
    def slug(self) -> str:
        """Directory name for this level in the archive store."""
        return _LEVEL_SLUGS[self]

    @property
    def rank(self) -> int:
        return _LEVEL_ORDER.index(self)

    @classmethod
    def from_code(cls, code: int) -> "ArchiveLevel":
        for level, value in _LEVEL_CODES.items():
            if value == code:
                return level
        raise ValueError(f"Unknown archive level code: {code}")


_LEVEL_ORDER = [
    ArchiveLevel.ACTIVE, ArchiveLevel.DORMANT,
    ArchiveLevel.SLEEPING, ArchiveLevel.DEEP_SLEEP,
]
_LEVEL_CODES = {level: i + 1 for i, level in enumerate(_LEVEL_ORDER)}
_LEVEL_SLUGS = {
    ArchiveLevel.ACTIVE: "active",
    ArchiveLevel.DORMANT: "dormant",
    ArchiveLevel.SLEEPING: "sleeping",
    ArchiveLevel.DEEP_SLEEP: "deep_sleep",
}


class EventOrigin(str, Enum):
    LIVE = "live"
    ARCHIVE = "archive"
    SUMMARY = "summary"
    RESTORATION = "restoration"


class HealthLevel(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    WARNING = "warning"
    CRITICAL = "critical"


SUMMARY_EVENT_TYPE = "archive.summary"
RESTORATION_EVENT_TYPE = "context.restored"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Event:
    seq: int
    event_type: str
    payload: Any
    importance: int
    timestamp: datetime
    origin: EventOrigin = EventOrigin.LIVE


@dataclass
class SummaryRecord:
    """Stand-in for a group of same-type events dropped during archival."""
    event_type: str
    count: int
    first_timestamp: datetime
    last_timestamp: datetime
    first_seq: int
    last_seq: int
    max_importance: int = 0

    def to_event(self) -> Event:
        return Event(
            seq=self.first_seq,
            event_type=SUMMARY_EVENT_TYPE,
            payload={
                "summarized_type": self.event_type,
                "count": self.count,
                "first_timestamp": self.first_timestamp.isoformat(),
                "last_timestamp": self.last_timestamp.isoformat(),
                "first_seq": self.first_seq,
                "last_seq": self.last_seq,
            },
            importance=self.max_importance,
            timestamp=self.last_timestamp,
            origin=EventOrigin.SUMMARY,
        )


@dataclass
class ContextSnapshot:
    context_id: str
    scope: Scope
    events: list[Event]
    last_activity_at: datetime
    current_task: str | None = None
    created_at: datetime | None = None
    # Number of events the live store holds for this context.
    # None means "trust len(events)".
    event_count: int | None = None


@dataclass
class ArchiveRecord:
    context_id: str
    scope: Scope
    archive_level: ArchiveLevel
    path: str
    original_size_bytes: int
    compressed_size_bytes: int
    compression_ratio: float
    archived_at: datetime
    source_last_activity_at: datetime
    current_task: str | None = None
    retained_events: int = 0
    summarized_events: int = 0
    original_tokens: int = 0
    compressed_tokens: int = 0


@dataclass
class ArchiveResult:
    context_id: str
    scope: Scope
    archive_level: ArchiveLevel
    compression_ratio: float
    archive_time_ms: float
    paths: dict[str, str]
    original_size_bytes: int
    compressed_size_bytes: int
    kept_active: bool = True


@dataclass
class DecodedArchive:
    context_id: str
    scope: Scope
    archive_level: ArchiveLevel
    last_activity_at: datetime
    archived_at: datetime
    entries: list[Event | SummaryRecord]
    current_task: str | None = None
    created_at: datetime | None = None
    event_count: int = 0
    original_size_bytes: int = 0

    @property
    def events(self) -> list[Event]:
        return [e for e in self.entries if isinstance(e, Event)]

    @property
    def summaries(self) -> list[SummaryRecord]:
        return [e for e in self.entries if isinstance(e, SummaryRecord)]


@dataclass
class RestoredContext:
    context_id: str
    scope: Scope
    archive_level: ArchiveLevel
    entries: list[Event | SummaryRecord]
    notice: Event
    current_task: str | None = None
    last_activity_at: datetime | None = None

    @property
    def events(self) -> list[Event]:
        return [e for e in self.entries if isinstance(e, Event)]

    @property
    def summaries(self) -> list[SummaryRecord]:
        return [e for e in self.entries if isinstance(e, SummaryRecord)]

    def event_log(self) -> list[Event]:
        """Reconstructed event sequence: the notice, then entries in original order."""
        log = [self.notice]
        for entry in self.entries:
            if isinstance(entry, SummaryRecord):
                log.append(entry.to_event())
            else:
                log.append(entry)
        return log


@dataclass
class RestorationSummary:
    message: str
    archive_level: ArchiveLevel
    compression_applied: str
    original_task: str | None
    events_preserved: int
    events_summarized: int
    recommendations: list[str] = field(default_factory=list)


@dataclass
class RestoreResult:
    context: RestoredContext
    time_gap_ms: float
    restore_time_ms: float
    performance_met: bool
    restoration_summary: RestorationSummary


@dataclass
class HealthFactors:
    freshness: float
    structural: float
    size: float


@dataclass
class HealthMetric:
    context_id: str
    overall_score: float
    level: HealthLevel
    factors: HealthFactors
    evaluated_at: datetime
    scope: Scope | None = None
    issues: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    @property
    def structurally_valid(self) -> bool:
        return not self.issues


@dataclass
class MaintenanceResult:
    context_id: str
    actions_taken: list[str] = field(default_factory=list)
    success: bool = True
    error: str | None = None
    metric: HealthMetric | None = None


@dataclass
class CleanupResult:
    processed_count: int = 0
    freed_bytes: int = 0
    errors: list[str] = field(default_factory=list)
    scanned_count: int = 0


@dataclass
class HealthSummary:
    total_contexts: int
    by_level: dict[str, int]
    average_score: float
    flagged: list[str] = field(default_factory=list)
    maintenance_running: bool = False
    archived_contexts: int = 0


@dataclass
class ArchiveStats:
    total_contexts: int = 0
    by_scope: dict[str, int] = field(default_factory=dict)
    by_level: dict[str, int] = field(default_factory=dict)
    total_original_bytes: int = 0
    total_compressed_bytes: int = 0
    average_compression_ratio: float = 0.0
    total_original_tokens: int = 0
    total_compressed_tokens: int = 0
    oldest: ArchiveRecord | None = None
    newest: ArchiveRecord | None = None
