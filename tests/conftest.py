"""Shared fixtures for Stasis tests."""

from datetime import datetime, timedelta, timezone

import pytest

from stasis.archive_store import ArchiveStore
from stasis.codec import ArchiveCodec
from stasis.models import ContextSnapshot, Event, Scope
from stasis.store import ContextStore

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock for components that take ``clock=``."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def make_events(count, importance=5, event_type="note", start=None, payload=None):
    start = start or NOW - timedelta(days=1)
    return [
        Event(
            seq=i + 1,
            event_type=event_type,
            payload=payload if payload is not None else {"text": f"event {i}"},
            importance=importance,
            timestamp=start + timedelta(minutes=i),
        )
        for i in range(count)
    ]


def make_snapshot(
    context_id="ctx-1",
    scope=Scope.SESSION,
    events=None,
    age=timedelta(days=1),
    current_task="Refactor the parser",
):
    events = events if events is not None else make_events(5)
    return ContextSnapshot(
        context_id=context_id,
        scope=scope,
        events=events,
        last_activity_at=NOW - age,
        current_task=current_task,
        created_at=NOW - age - timedelta(days=1),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def archive_store(tmp_path):
    """Empty initialized archive store."""
    s = ArchiveStore(tmp_path / "archive")
    s.initialize()
    return s


@pytest.fixture
def codec():
    return ArchiveCodec()


@pytest.fixture
def context_store(tmp_path):
    """Empty initialized live context store."""
    s = ContextStore(tmp_path / "contexts.db")
    s.initialize()
    yield s
    s.close()


@pytest.fixture
def mixed_snapshot():
    """Ten events aged 120 days: two at importance 9, eight at importance 3."""
    start = NOW - timedelta(days=121)
    events = []
    for i in range(10):
        high = i in (2, 7)
        events.append(Event(
            seq=i + 1,
            event_type="decision" if high else "tool_call",
            payload={"n": i, "detail": "chose sqlite" if high else "ran tests"},
            importance=9 if high else 3,
            timestamp=start + timedelta(hours=i),
        ))
    return make_snapshot(events=events, age=timedelta(days=120))
