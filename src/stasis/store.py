"""ContextStore — SQLite home of live contexts and their event logs."""

import dataclasses
import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from stasis.models import (
    ContextSnapshot, Event, EventOrigin, RestoredContext, Scope, utc_now,
)

SCHEMA_VERSION = 1

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS contexts (
    context_id       TEXT NOT NULL,
    scope            TEXT NOT NULL CHECK(scope IN ('session','project')),
    current_task     TEXT,
    created_at       TEXT NOT NULL,
    last_activity_at TEXT NOT NULL,
    event_count      INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (context_id, scope)
);

CREATE TABLE IF NOT EXISTS events (
    context_id  TEXT NOT NULL,
    scope       TEXT NOT NULL,
    seq         INTEGER NOT NULL,
    event_type  TEXT NOT NULL,
    payload     TEXT NOT NULL,
    importance  INTEGER NOT NULL CHECK(importance BETWEEN 0 AND 10),
    timestamp   TEXT NOT NULL,
    origin      TEXT NOT NULL DEFAULT 'live',
    PRIMARY KEY (context_id, scope, seq),
    FOREIGN KEY (context_id, scope)
        REFERENCES contexts(context_id, scope) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_contexts_activity ON contexts(last_activity_at);

CREATE TABLE IF NOT EXISTS meta (
    key   TEXT PRIMARY KEY,
    value TEXT
);
"""


class ContextStore:
    """SQLite-backed live context store.

    Produces ``ContextSnapshot``s for archival and accepts reconstructed
    event logs after a restore (``reregister``).
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path))
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def close(self):
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def initialize(self) -> None:
        """Create tables and indexes."""
        self.conn.executescript(SCHEMA_SQL)
        self.set_meta("schema_version", str(SCHEMA_VERSION))

    # --- contexts ---

    def start_context(
        self,
        context_id: str,
        scope: Scope,
        current_task: str | None = None,
        created_at: datetime | None = None,
    ) -> ContextSnapshot:
        """Register a new, empty context."""
        scope = Scope(scope)
        if not context_id:
            raise ValueError("Context id must not be empty")
        if self._context_row(context_id, scope) is not None:
            raise ValueError(f"Context already exists: {scope.value}/{context_id}")
        created = (created_at or utc_now()).astimezone(timezone.utc).isoformat()
        with self.conn:
            self.conn.execute(
                "INSERT INTO contexts (context_id, scope, current_task, created_at, last_activity_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (context_id, scope.value, current_task, created, created),
            )
        return self.snapshot(context_id, scope)

    def set_task(self, context_id: str, scope: Scope, current_task: str | None) -> None:
        self._require(context_id, Scope(scope))
        with self.conn:
            self.conn.execute(
                "UPDATE contexts SET current_task = ? WHERE context_id = ? AND scope = ?",
                (current_task, context_id, Scope(scope).value),
            )

    def append(
        self,
        context_id: str,
        scope: Scope,
        event_type: str,
        payload,
        importance: int = 5,
        timestamp: datetime | None = None,
        origin: EventOrigin = EventOrigin.LIVE,
    ) -> Event:
        """Append one event to the context log and bump last activity."""
        scope = Scope(scope)
        row = self._require(context_id, scope)
        if not event_type:
            raise ValueError("Event type must not be empty")
        if not 0 <= importance <= 10:
            raise ValueError(f"Importance must be 0-10, got {importance}")
        ts = timestamp or utc_now()
        if ts.tzinfo is None:
            raise ValueError("Event timestamp must be timezone-aware")
        ts = ts.astimezone(timezone.utc)
        event = Event(
            seq=row["event_count"] + 1,
            event_type=event_type,
            payload=payload,
            importance=importance,
            timestamp=ts,
            origin=EventOrigin(origin),
        )
        with self.conn:
            self._insert_event(context_id, scope, event)
            self.conn.execute(
                "UPDATE contexts SET event_count = ?, "
                "last_activity_at = MAX(last_activity_at, ?) "
                "WHERE context_id = ? AND scope = ?",
                (event.seq, ts.isoformat(), context_id, scope.value),
            )
        return event

    def snapshot(self, context_id: str, scope: Scope) -> ContextSnapshot | None:
        """Current state of a context, events in insertion order."""
        scope = Scope(scope)
        row = self._context_row(context_id, scope)
        if row is None:
            return None
        rows = self.conn.execute(
            "SELECT * FROM events WHERE context_id = ? AND scope = ? ORDER BY seq",
            (context_id, scope.value),
        ).fetchall()
        return ContextSnapshot(
            context_id=context_id,
            scope=scope,
            events=[self._row_to_event(r) for r in rows],
            last_activity_at=datetime.fromisoformat(row["last_activity_at"]),
            current_task=row["current_task"],
            created_at=datetime.fromisoformat(row["created_at"]),
            event_count=row["event_count"],
        )

    def list_contexts(self) -> list[tuple[str, Scope]]:
        rows = self.conn.execute(
            "SELECT context_id, scope FROM contexts ORDER BY scope, context_id"
        ).fetchall()
        return [(r["context_id"], Scope(r["scope"])) for r in rows]

    def remove_context(self, context_id: str, scope: Scope) -> bool:
        with self.conn:
            cur = self.conn.execute(
                "DELETE FROM contexts WHERE context_id = ? AND scope = ?",
                (context_id, Scope(scope).value),
            )
        return cur.rowcount > 0

    def reregister(self, restored: RestoredContext) -> ContextSnapshot:
        """Replace the live context with a restored event log.

        Events are re-sequenced from 1 in reconstructed order; last
        activity becomes the restoration time.
        """
        log = restored.event_log()
        now = restored.notice.timestamp
        existing = self._context_row(restored.context_id, restored.scope)
        created = existing["created_at"] if existing else now.isoformat()
        with self.conn:
            self.conn.execute(
                "DELETE FROM contexts WHERE context_id = ? AND scope = ?",
                (restored.context_id, restored.scope.value),
            )
            self.conn.execute(
                "INSERT INTO contexts (context_id, scope, current_task, created_at, "
                "last_activity_at, event_count) VALUES (?, ?, ?, ?, ?, ?)",
                (restored.context_id, restored.scope.value, restored.current_task,
                 created, now.isoformat(), len(log)),
            )
            for seq, event in enumerate(log, start=1):
                self._insert_event(
                    restored.context_id, restored.scope, dataclasses.replace(event, seq=seq),
                )
        return self.snapshot(restored.context_id, restored.scope)

    def count(self) -> int:
        row = self.conn.execute("SELECT COUNT(*) AS cnt FROM contexts").fetchone()
        return row["cnt"]

    # --- internals ---

    def _context_row(self, context_id: str, scope: Scope) -> sqlite3.Row | None:
        return self.conn.execute(
            "SELECT * FROM contexts WHERE context_id = ? AND scope = ?",
            (context_id, scope.value),
        ).fetchone()

    def _require(self, context_id: str, scope: Scope) -> sqlite3.Row:
        row = self._context_row(context_id, scope)
        if row is None:
            raise ValueError(f"Context not found: {scope.value}/{context_id}")
        return row

    def _insert_event(self, context_id: str, scope: Scope, event: Event) -> None:
        self.conn.execute(
            "INSERT INTO events (context_id, scope, seq, event_type, payload, importance, timestamp, origin) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (context_id, scope.value, event.seq, event.event_type,
             json.dumps(event.payload), event.importance,
             event.timestamp.isoformat(), event.origin.value),
        )

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> Event:
        return Event(
            seq=row["seq"],
            event_type=row["event_type"],
            payload=json.loads(row["payload"]),
            importance=row["importance"],
            timestamp=datetime.fromisoformat(row["timestamp"]),
            origin=EventOrigin(row["origin"]),
        )

    # --- meta ---

    def get_meta(self, key: str) -> str | None:
        row = self.conn.execute(
            "SELECT value FROM meta WHERE key = ?", (key,)
        ).fetchone()
        return row["value"] if row else None

    def set_meta(self, key: str, value: str) -> None:
        with self.conn:
            self.conn.execute(
                "INSERT INTO meta (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )
