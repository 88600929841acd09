"""ArchiveManager — snapshot, tier, encode and persist a context."""

import logging
import time
from collections import Counter
from datetime import datetime
from typing import Callable

from stasis.archive_store import ArchiveStore
from stasis.codec import ArchiveCodec
from stasis.models import ArchiveRecord, ArchiveResult, ContextSnapshot, Scope, utc_now

logger = logging.getLogger(__name__)


class ArchiveManager:
    """Archives context snapshots at the level their age calls for."""

    def __init__(
        self,
        store: ArchiveStore,
        codec: ArchiveCodec | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.codec = codec or ArchiveCodec()
        self.policy = self.codec.policy
        self.clock = clock
        self.metrics: Counter = Counter()

    def archive(self, context_id: str, scope: Scope, snapshot: ContextSnapshot) -> ArchiveResult:
        """Archive a snapshot, replacing any earlier archive for the same key.

        Raises:
            ValueError: snapshot does not belong to (context_id, scope)
            ArchiveWriteError: the store could not persist the record
        """
        scope = Scope(scope)
        if snapshot.context_id != context_id or snapshot.scope != scope:
            raise ValueError(
                f"Snapshot {snapshot.scope.value}/{snapshot.context_id} "
                f"does not match {scope.value}/{context_id}"
            )

        start = time.perf_counter()
        archived_at = self.clock()
        level = self.policy.select_level(archived_at - snapshot.last_activity_at)

        with self.store.lock(context_id, scope):
            encoded = self.codec.encode(snapshot, level, archived_at=archived_at)
            record = self.store.write(ArchiveRecord(
                context_id=context_id,
                scope=scope,
                archive_level=level,
                path="",
                original_size_bytes=encoded.original_size_bytes,
                compressed_size_bytes=encoded.compressed_size_bytes,
                compression_ratio=encoded.compression_ratio,
                archived_at=archived_at,
                source_last_activity_at=snapshot.last_activity_at,
                current_task=snapshot.current_task,
                retained_events=encoded.retained_events,
                summarized_events=encoded.summarized_events,
                original_tokens=encoded.original_tokens,
                compressed_tokens=encoded.compressed_tokens,
            ), encoded.payload)

        archive_time_ms = (time.perf_counter() - start) * 1000
        self.metrics["archived"] += 1
        self.metrics[f"level:{level.value}"] += 1
        self.metrics["bytes_written"] += record.compressed_size_bytes
        logger.info(
            "Archived %s/%s at %s: %d -> %d bytes (ratio %.3f) in %.1fms",
            scope.value, context_id, level.value,
            record.original_size_bytes, record.compressed_size_bytes,
            record.compression_ratio, archive_time_ms,
        )

        return ArchiveResult(
            context_id=context_id,
            scope=scope,
            archive_level=level,
            compression_ratio=record.compression_ratio,
            archive_time_ms=archive_time_ms,
            paths={
                "payload": record.path,
                "metadata": str(self.store.metadata_path(context_id, scope)),
            },
            original_size_bytes=record.original_size_bytes,
            compressed_size_bytes=record.compressed_size_bytes,
        )
