"""Exception taxonomy for archive, restore and cleanup failures."""


class StasisError(Exception):
    """Base class for all engine errors."""


class NotFoundError(StasisError):
    """No archive exists for the context in any scope."""

    def __init__(self, context_id: str, scope: str):
        self.context_id = context_id
        self.scope = scope
        super().__init__(f"No archive found for context '{context_id}' ({scope})")


class ScopeMismatchError(StasisError):
    """An archive exists for the context, but under a different scope."""

    def __init__(self, context_id: str, requested: str, archived: str):
        self.context_id = context_id
        self.requested = requested
        self.archived = archived
        super().__init__(
            f"Scope mismatch for context '{context_id}': "
            f"requested {requested}, archived as {archived}"
        )


class CorruptArchiveError(StasisError):
    """Payload failed structural or checksum validation."""


class ArchiveWriteError(StasisError):
    """I/O failure while persisting an archive."""


class CleanupItemError(StasisError):
    """A single record could not be deleted during a cleanup sweep.

    Never raised out of the cleanup service; its string form is stored in
    ``CleanupResult.errors``.
    """

    def __init__(self, context_id: str, scope: str, reason: str):
        self.context_id = context_id
        self.scope = scope
        self.reason = reason
        super().__init__(f"{scope}/{context_id}: {reason}")


class ArchiveReadError(StasisError):
    """I/O failure (other than a missing file) while reading an archive record."""
