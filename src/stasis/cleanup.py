"""Cleanup — delete archives older than the retention window."""

import logging
from datetime import datetime, timedelta
from typing import Callable

from stasis.archive_store import ArchiveStore
from stasis.errors import CleanupItemError, StasisError
from stasis.models import CleanupResult, utc_now

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 365


def _reason(e: Exception) -> str:
    if isinstance(e, OSError):
        return f"{type(e).__name__}: {e.strerror or e}"
    return str(e)


class CleanupService:
    """Enforces the retention window over the archive store.

    A failure on one record is captured in ``CleanupResult.errors`` and
    the sweep moves on.
    """

    def __init__(self, store: ArchiveStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    def cleanup_expired(self, retention_days: int = DEFAULT_RETENTION_DAYS) -> CleanupResult:
        if retention_days < 0:
            raise ValueError(f"retention_days must be >= 0, got {retention_days}")

        cutoff = self.clock() - timedelta(days=retention_days)
        result = CleanupResult()

        for context_id, scope in self.store.keys():
            result.scanned_count += 1
            with self.store.lock(context_id, scope):
                try:
                    record = self.store.get(context_id, scope)
                except (StasisError, OSError) as e:
                    result.errors.append(str(CleanupItemError(context_id, scope.value, _reason(e))))
                    continue
                if record is None or record.archived_at >= cutoff:
                    continue
                try:
                    self.store.delete(context_id, scope)
                except (StasisError, OSError) as e:
                    result.errors.append(str(CleanupItemError(context_id, scope.value, _reason(e))))
                    continue

            result.processed_count += 1
            result.freed_bytes += record.compressed_size_bytes
            logger.debug("Deleted expired archive %s/%s", scope.value, context_id)

        if result.processed_count:
            logger.info("Cleaned up %d expired archives, freed %d bytes",
                        result.processed_count, result.freed_bytes)
        if result.errors:
            logger.warning("Cleanup finished with %d errors", len(result.errors))
        return result
