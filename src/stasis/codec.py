"""Archive codec — versioned, checksummed payloads with verbatim retention.

Payload layout (big-endian)::

    +--------+---------+-------+-------+------------+----------+--------+
    | "STSZ" | version | level | codec | header_len | body_len | crc32  |
    |   4s   |    B    |   B   |   B   |     I      |    I     |   I    |
    +--------+---------+-------+-------+------------+----------+--------+
    | header JSON (uncompressed metadata)                                |
    +--------------------------------------------------------------------+
    | body (zlib or xz compressed JSON document)                         |
    +--------------------------------------------------------------------+

The CRC covers header JSON and body. The body document opens and closes
with the same envelope marker, so truncation or splicing inside the
compressed stream is caught even when the frame itself looks intact.
"""

import json
import math
import logging
import lzma
import struct
import zlib
from dataclasses import dataclass
from datetime import datetime

from stasis.errors import CorruptArchiveError
from stasis.models import (
    ArchiveLevel, ContextSnapshot, DecodedArchive, Event, EventOrigin,
    Scope, SummaryRecord,
)
from stasis.tiering import TieringPolicy

logger = logging.getLogger(__name__)

MAGIC = b"STSZ"
FORMAT_VERSION = 1
FRAME = struct.Struct(">4sBBBIII")

CODEC_ZLIB = 1
CODEC_LZMA = 2
CODEC_NAMES = {CODEC_ZLIB: "zlib", CODEC_LZMA: "xz"}

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Rough token count for a JSON document (about four characters per token)."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


@dataclass
class PayloadHeader:
    context_id: str
    scope: Scope
    archive_level: ArchiveLevel
    codec: int
    archived_at: datetime
    source_last_activity_at: datetime
    original_size_bytes: int
    payload_size_bytes: int
    current_task: str | None = None
    retained_events: int = 0
    summarized_events: int = 0
    original_tokens: int = 0
    compressed_tokens: int = 0


@dataclass
class EncodedArchive:
    payload: bytes
    archive_level: ArchiveLevel
    original_size_bytes: int
    retained_events: int
    summarized_events: int
    original_tokens: int = 0
    compressed_tokens: int = 0

    @property
    def compressed_size_bytes(self) -> int:
        return len(self.payload)

    @property
    def compression_ratio(self) -> float:
        if not self.original_size_bytes:
            return 1.0
        return self.compressed_size_bytes / self.original_size_bytes


def envelope_marker(scope: Scope, context_id: str) -> str:
    return f"context:{scope.value}/{context_id}"


def _iso(ts: datetime | None) -> str | None:
    return ts.isoformat() if ts is not None else None


def _parse_ts(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _dumps(obj) -> bytes:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _loads(raw: bytes, what: str):
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CorruptArchiveError(f"Invalid {what} JSON: {e}") from e


def _event_to_dict(event: Event) -> dict:
    return {
        "kind": "event",
        "seq": event.seq,
        "type": event.event_type,
        "payload": event.payload,
        "importance": event.importance,
        "timestamp": _iso(event.timestamp),
        "origin": event.origin.value,
    }


def _summary_to_dict(summary: SummaryRecord) -> dict:
    return {
        "kind": "summary",
        "type": summary.event_type,
        "count": summary.count,
        "first_timestamp": _iso(summary.first_timestamp),
        "last_timestamp": _iso(summary.last_timestamp),
        "first_seq": summary.first_seq,
        "last_seq": summary.last_seq,
        "max_importance": summary.max_importance,
    }


def _entry_from_dict(item: dict) -> Event | SummaryRecord:
    kind = item["kind"]
    if kind == "event":
        return Event(
            seq=item["seq"],
            event_type=item["type"],
            payload=item["payload"],
            importance=item["importance"],
            timestamp=_parse_ts(item["timestamp"]),
            origin=EventOrigin(item["origin"]),
        )
    if kind == "summary":
        return SummaryRecord(
            event_type=item["type"],
            count=item["count"],
            first_timestamp=_parse_ts(item["first_timestamp"]),
            last_timestamp=_parse_ts(item["last_timestamp"]),
            first_seq=item["first_seq"],
            last_seq=item["last_seq"],
            max_importance=item.get("max_importance", 0),
        )
    raise ValueError(f"unknown entry kind {kind!r}")


class ArchiveCodec:
    """Turns snapshots into archival payloads and back."""

    def __init__(self, policy: TieringPolicy | None = None):
        self.policy = policy or TieringPolicy()

    # --- encode ---

    def encode(
        self,
        snapshot: ContextSnapshot,
        level: ArchiveLevel,
        archived_at: datetime,
    ) -> EncodedArchive:
        threshold = self.policy.retention_threshold(level)
        entries, retained, summarized = self._partition(snapshot.events, threshold)

        try:
            original = _dumps(self._document(
                snapshot, [_event_to_dict(e) for e in snapshot.events]
            ))
            body = _dumps(self._document(snapshot, [
                _event_to_dict(e) if isinstance(e, Event) else _summary_to_dict(e)
                for e in entries
            ]))
        except TypeError as e:
            raise ValueError(
                f"Context {snapshot.context_id} has a payload that is not JSON-serializable: {e}"
            ) from e

        codec, compressed = self._compress(body, level)
        original_tokens = estimate_tokens(original.decode("utf-8"))
        compressed_tokens = estimate_tokens(body.decode("utf-8"))
        header_json = _dumps({
            "context_id": snapshot.context_id,
            "scope": snapshot.scope.value,
            "archived_at": _iso(archived_at),
            "source_last_activity_at": _iso(snapshot.last_activity_at),
            "original_size_bytes": len(original),
            "current_task": snapshot.current_task,
            "retained_events": retained,
            "summarized_events": summarized,
            "original_tokens": original_tokens,
            "compressed_tokens": compressed_tokens,
        })
        frame = FRAME.pack(
            MAGIC, FORMAT_VERSION, level.code, codec,
            len(header_json), len(compressed),
            zlib.crc32(header_json + compressed),
        )
        return EncodedArchive(
            payload=frame + header_json + compressed,
            archive_level=level,
            original_size_bytes=len(original),
            retained_events=retained,
            summarized_events=summarized,
            original_tokens=original_tokens,
            compressed_tokens=compressed_tokens,
        )

    def _partition(
        self, events: list[Event], threshold: int,
    ) -> tuple[list[Event | SummaryRecord], int, int]:
        """Split events into verbatim entries and per-type summaries.

        A summary sits at the position of its group's first member.
        Incoming summary events (from an earlier restore) are folded into
        the group of the type they summarize.
        """
        entries: list[Event | SummaryRecord] = []
        groups: dict[str, SummaryRecord] = {}
        retained = summarized = 0

        for event in events:
            if event.importance >= threshold:
                entries.append(event)
                retained += 1
                continue

            member = self._as_summary(event)
            group = groups.get(member.event_type)
            if group is None:
                groups[member.event_type] = member
                entries.append(member)
            else:
                group.count += member.count
                group.first_timestamp = min(group.first_timestamp, member.first_timestamp)
                group.last_timestamp = max(group.last_timestamp, member.last_timestamp)
                group.last_seq = max(group.last_seq, member.last_seq)
                group.max_importance = max(group.max_importance, member.max_importance)
            summarized += member.count

        return entries, retained, summarized

    @staticmethod
    def _as_summary(event: Event) -> SummaryRecord:
        if event.origin == EventOrigin.SUMMARY and isinstance(event.payload, dict):
            p = event.payload
            try:
                return SummaryRecord(
                    event_type=p["summarized_type"],
                    count=int(p["count"]),
                    first_timestamp=_parse_ts(p["first_timestamp"]),
                    last_timestamp=_parse_ts(p["last_timestamp"]),
                    first_seq=event.seq,
                    last_seq=event.seq,
                    max_importance=event.importance,
                )
            except (KeyError, TypeError, ValueError):
                logger.debug("Summary event %s has malformed payload, summarizing as-is", event.seq)
        return SummaryRecord(
            event_type=event.event_type,
            count=1,
            first_timestamp=event.timestamp,
            last_timestamp=event.timestamp,
            first_seq=event.seq,
            last_seq=event.seq,
            max_importance=event.importance,
        )

    @staticmethod
    def _document(snapshot: ContextSnapshot, entries: list[dict]) -> dict:
        marker = envelope_marker(snapshot.scope, snapshot.context_id)
        event_count = snapshot.event_count
        if event_count is None:
            event_count = len(snapshot.events)
        return {
            "begin": marker,
            "context": {
                "context_id": snapshot.context_id,
                "scope": snapshot.scope.value,
                "current_task": snapshot.current_task,
                "last_activity_at": _iso(snapshot.last_activity_at),
                "created_at": _iso(snapshot.created_at),
                "event_count": event_count,
            },
            "entries": entries,
            "end": marker,
        }

    def _compress(self, body: bytes, level: ArchiveLevel) -> tuple[int, bytes]:
        compressed = zlib.compress(body, self.policy.zlib_level(level))
        if level == ArchiveLevel.DEEP_SLEEP:
            xz = lzma.compress(body, preset=9 | lzma.PRESET_EXTREME)
            if len(xz) < len(compressed):
                return CODEC_LZMA, xz
        return CODEC_ZLIB, compressed

    # --- decode ---

    def read_header(self, payload: bytes) -> PayloadHeader:
        """Validate the frame and checksum and return metadata, without decompressing."""
        header, _ = self._unframe(payload)
        return header

    def decode(self, payload: bytes) -> DecodedArchive:
        header, body = self._unframe(payload)

        try:
            if header.codec == CODEC_LZMA:
                raw = lzma.decompress(body)
            else:
                raw = zlib.decompress(body)
        except (zlib.error, lzma.LZMAError) as e:
            raise CorruptArchiveError(
                f"Cannot decompress {CODEC_NAMES[header.codec]} body: {e}"
            ) from e

        doc = _loads(raw, "body")
        if not isinstance(doc, dict):
            raise CorruptArchiveError("Body is not a JSON object")

        expected = envelope_marker(header.scope, header.context_id)
        begin, end = doc.get("begin"), doc.get("end")
        if begin is None or end is None:
            raise CorruptArchiveError("Envelope marker missing")
        if begin != end or begin != expected:
            raise CorruptArchiveError(
                f"Envelope markers do not match: begin={begin!r} end={end!r} expected={expected!r}"
            )

        try:
            context = doc["context"]
            entries = [_entry_from_dict(item) for item in doc["entries"]]
            return DecodedArchive(
                context_id=header.context_id,
                scope=header.scope,
                archive_level=header.archive_level,
                last_activity_at=header.source_last_activity_at,
                archived_at=header.archived_at,
                entries=entries,
                current_task=context.get("current_task"),
                created_at=_parse_ts(context.get("created_at")),
                event_count=int(context.get("event_count", 0)),
                original_size_bytes=header.original_size_bytes,
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise CorruptArchiveError(f"Malformed body document: {e}") from e

    def _unframe(self, payload: bytes) -> tuple[PayloadHeader, bytes]:
        if len(payload) < FRAME.size:
            raise CorruptArchiveError(
                f"Payload truncated: {len(payload)} bytes, frame needs {FRAME.size}"
            )
        magic, version, level_code, codec, header_len, body_len, crc = FRAME.unpack_from(payload)
        if magic != MAGIC:
            raise CorruptArchiveError(f"Bad magic {magic!r}")
        if version != FORMAT_VERSION:
            raise CorruptArchiveError(f"Unsupported format version {version}")
        try:
            level = ArchiveLevel.from_code(level_code)
        except ValueError as e:
            raise CorruptArchiveError(str(e)) from e
        if codec not in CODEC_NAMES:
            raise CorruptArchiveError(f"Unknown codec id {codec}")

        expected = FRAME.size + header_len + body_len
        if len(payload) != expected:
            raise CorruptArchiveError(
                f"Payload length mismatch: expected {expected} bytes, got {len(payload)}"
            )
        header_json = payload[FRAME.size:FRAME.size + header_len]
        body = payload[FRAME.size + header_len:]
        if zlib.crc32(header_json + body) != crc:
            raise CorruptArchiveError("Checksum mismatch")

        meta = _loads(header_json, "header")
        try:
            header = PayloadHeader(
                context_id=meta["context_id"],
                scope=Scope(meta["scope"]),
                archive_level=level,
                codec=codec,
                archived_at=_parse_ts(meta["archived_at"]),
                source_last_activity_at=_parse_ts(meta["source_last_activity_at"]),
                original_size_bytes=int(meta["original_size_bytes"]),
                payload_size_bytes=len(payload),
                current_task=meta.get("current_task"),
                retained_events=int(meta.get("retained_events", 0)),
                summarized_events=int(meta.get("summarized_events", 0)),
                original_tokens=int(meta.get("original_tokens", 0)),
                compressed_tokens=int(meta.get("compressed_tokens", 0)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptArchiveError(f"Malformed header: {e}") from e
        return header, body
