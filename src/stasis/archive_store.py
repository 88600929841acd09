"""ArchiveStore — file-system persistence of archive payloads.

Layout under ``root``::

    <scope>/<level>/<context_id>.stz      payload (self-describing, see codec)
    metadata/<scope>/<context_id>.json    sidecar index entry

Every file is written to a temp file in the target directory and renamed
into place, so readers see either the old record or the new one.
"""

import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator

from stasis.errors import ArchiveReadError, ArchiveWriteError, CorruptArchiveError
from stasis.models import ArchiveLevel, ArchiveRecord, ArchiveStats, Scope

logger = logging.getLogger(__name__)

PAYLOAD_SUFFIX = ".stz"
METADATA_DIR = "metadata"


def _check_context_id(context_id: str) -> None:
    if not context_id or context_id in (".", "..") or any(
        c in context_id for c in ("/", "\\", "\x00")
    ):
        raise ValueError(f"Invalid context id: {context_id!r}")


def _record_to_dict(record: ArchiveRecord) -> dict:
    return {
        "context_id": record.context_id,
        "scope": record.scope.value,
        "archive_level": record.archive_level.value,
        "path": record.path,
        "original_size_bytes": record.original_size_bytes,
        "compressed_size_bytes": record.compressed_size_bytes,
        "compression_ratio": record.compression_ratio,
        "archived_at": record.archived_at.isoformat(),
        "source_last_activity_at": record.source_last_activity_at.isoformat(),
        "current_task": record.current_task,
        "retained_events": record.retained_events,
        "summarized_events": record.summarized_events,
        "original_tokens": record.original_tokens,
        "compressed_tokens": record.compressed_tokens,
    }


def _record_from_dict(data: dict) -> ArchiveRecord:
    return ArchiveRecord(
        context_id=data["context_id"],
        scope=Scope(data["scope"]),
        archive_level=ArchiveLevel(data["archive_level"]),
        path=data["path"],
        original_size_bytes=int(data["original_size_bytes"]),
        compressed_size_bytes=int(data["compressed_size_bytes"]),
        compression_ratio=float(data["compression_ratio"]),
        archived_at=datetime.fromisoformat(data["archived_at"]),
        source_last_activity_at=datetime.fromisoformat(data["source_last_activity_at"]),
        current_task=data.get("current_task"),
        retained_events=int(data.get("retained_events", 0)),
        summarized_events=int(data.get("summarized_events", 0)),
        original_tokens=int(data.get("original_tokens", 0)),
        compressed_tokens=int(data.get("compressed_tokens", 0)),
    )


class _KeyLock:
    """A per-key lock plus the number of threads holding or waiting on it."""

    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class ArchiveStore:
    """Durable archive records keyed by (context_id, scope).

    Also owns the per-key lock registry, so every component built on the
    same store instance serializes work on a context the same way.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self._locks: dict[tuple[str, Scope], _KeyLock] = {}
        self._locks_guard = threading.Lock()

    def initialize(self) -> None:
        """Create the directory skeleton."""
        for scope in Scope:
            (self.root / METADATA_DIR / scope.value).mkdir(parents=True, exist_ok=True)
            for level in ArchiveLevel:
                (self.root / scope.value / level.slug).mkdir(parents=True, exist_ok=True)

    @contextmanager
    def lock(self, context_id: str, scope: Scope):
        """Exclusive section for one (context_id, scope).

        The registry entry is dropped once no thread holds or waits on it.
        """
        key = (context_id, Scope(scope))
        with self._locks_guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _KeyLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[key]

    # --- paths ---

    def payload_path(self, context_id: str, scope: Scope, level: ArchiveLevel) -> Path:
        _check_context_id(context_id)
        return self.root / Scope(scope).value / level.slug / f"{context_id}{PAYLOAD_SUFFIX}"

    def metadata_path(self, context_id: str, scope: Scope) -> Path:
        _check_context_id(context_id)
        return self.root / METADATA_DIR / Scope(scope).value / f"{context_id}.json"

    # --- write ---

    def write(self, record: ArchiveRecord, payload: bytes) -> ArchiveRecord:
        """Persist payload and sidecar, replacing any earlier record for the key.

        Both files are staged and fsynced before either is renamed into
        place, so a failed write leaves the previous record intact.

        Caller must hold ``lock(record.context_id, record.scope)``.
        """
        key = f"{record.scope.value}/{record.context_id}"
        path = self.payload_path(record.context_id, record.scope, record.archive_level)
        meta_path = self.metadata_path(record.context_id, record.scope)
        previous = None
        staged: list[str] = []
        payload_replaced = False
        try:
            try:
                previous = self.get(record.context_id, record.scope)
            except CorruptArchiveError:
                logger.warning("Replacing unreadable metadata for %s", key)
                previous = None

            record.path = str(path)
            record.compressed_size_bytes = len(payload)
            payload_tmp = self._stage(path, payload)
            staged.append(payload_tmp)
            meta_tmp = self._stage(
                meta_path, json.dumps(_record_to_dict(record), indent=2).encode("utf-8"),
            )
            staged.append(meta_tmp)

            os.replace(payload_tmp, path)
            payload_replaced = True
            os.replace(meta_tmp, meta_path)
            staged.clear()
        except (OSError, ArchiveReadError) as e:
            for tmp_name in staged:
                Path(tmp_name).unlink(missing_ok=True)
            if payload_replaced and (previous is None or previous.path != record.path):
                # Old sidecar still points at the old payload; drop the orphan.
                path.unlink(missing_ok=True)
            raise ArchiveWriteError(f"Failed to write archive for {key}: {e}") from e

        if previous is not None and previous.path != record.path:
            try:
                Path(previous.path).unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Could not remove superseded payload %s: %s", previous.path, e)
        return record

    @staticmethod
    def _stage(path: Path, data: bytes) -> str:
        """Write ``data`` to a fsynced temp file beside ``path``; return its name."""
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return tmp_name

    # --- read ---

    def get(self, context_id: str, scope: Scope) -> ArchiveRecord | None:
        """Sidecar record for the exact key, or None.

        Raises:
            CorruptArchiveError: the sidecar is not a valid record
            ArchiveReadError: the sidecar exists but could not be read
        """
        meta_path = self.metadata_path(context_id, scope)
        try:
            raw = meta_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise ArchiveReadError(f"Cannot read metadata {meta_path}: {e}") from e
        except UnicodeDecodeError as e:
            raise CorruptArchiveError(f"Unreadable metadata {meta_path}: {e}") from e
        try:
            return _record_from_dict(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise CorruptArchiveError(f"Unreadable metadata {meta_path}: {e}") from e

    def scopes_for(self, context_id: str) -> list[Scope]:
        """Scopes that hold an archive for this context id."""
        return [s for s in Scope if self.metadata_path(context_id, s).is_file()]

    def read_payload(self, record: ArchiveRecord) -> bytes:
        try:
            return Path(record.path).read_bytes()
        except FileNotFoundError as e:
            raise CorruptArchiveError(
                f"Payload missing for {record.scope.value}/{record.context_id}: {record.path}"
            ) from e
        except OSError as e:
            raise ArchiveReadError(f"Cannot read payload {record.path}: {e}") from e

    def keys(self) -> list[tuple[str, Scope]]:
        """All indexed (context_id, scope) pairs, sorted."""
        keys = []
        for scope in Scope:
            meta_dir = self.root / METADATA_DIR / scope.value
            if not meta_dir.is_dir():
                continue
            for meta_path in meta_dir.glob("*.json"):
                keys.append((meta_path.stem, scope))
        return sorted(keys, key=lambda k: (k[1].value, k[0]))

    def records(self) -> Iterator[ArchiveRecord]:
        """Readable records; unreadable sidecars are logged and skipped."""
        for context_id, scope in self.keys():
            try:
                record = self.get(context_id, scope)
            except (CorruptArchiveError, ArchiveReadError) as e:
                logger.warning("Skipping record: %s", e)
                continue
            if record is not None:
                yield record

    # --- delete ---

    def delete(self, context_id: str, scope: Scope) -> ArchiveRecord | None:
        """Remove payload then sidecar. A missing payload raises FileNotFoundError.

        Caller must hold ``lock(context_id, scope)``.
        """
        record = self.get(context_id, scope)
        if record is None:
            return None
        Path(record.path).unlink()
        self.metadata_path(context_id, scope).unlink()
        return record

    # --- statistics ---

    def stats(self) -> ArchiveStats:
        stats = ArchiveStats(
            by_scope={s.value: 0 for s in Scope},
            by_level={level.value: 0 for level in ArchiveLevel},
        )
        for record in self.records():
            stats.total_contexts += 1
            stats.by_scope[record.scope.value] += 1
            stats.by_level[record.archive_level.value] += 1
            stats.total_original_bytes += record.original_size_bytes
            stats.total_compressed_bytes += record.compressed_size_bytes
            stats.total_original_tokens += record.original_tokens
            stats.total_compressed_tokens += record.compressed_tokens
            if stats.oldest is None or record.archived_at < stats.oldest.archived_at:
                stats.oldest = record
            if stats.newest is None or record.archived_at > stats.newest.archived_at:
                stats.newest = record
        if stats.total_original_bytes:
            stats.average_compression_ratio = (
                stats.total_compressed_bytes / stats.total_original_bytes
            )
        return stats
