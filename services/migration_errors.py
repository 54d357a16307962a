# services/migration_errors.py
"""
Error kinds raised by the conversation identity and merge pipeline.

- NormalizationError: an identity string could not be normalized (recorded, never fatal)
- GroupMergeError: one merge group could not be planned or written (recorded per group)
- RecordWriteError: one identity backfill write failed (recorded per record)
- LoadError: the paginated scan failed (aborts the run)
- MigrationInProgressError: another live migration holds the lock
"""
from typing import Optional


class MigrationError(Exception):
    """Base class for conversation migration failures."""


class NormalizationError(MigrationError, ValueError):
    def __init__(self, raw: Optional[str], reason: str):
        self.raw = raw
        self.reason = reason
        super().__init__(f"Cannot normalize identity {raw!r}: {reason}")


class GroupMergeError(MigrationError):
    def __init__(self, group_key: str, message: str):
        self.group_key = group_key
        super().__init__(message)


class RecordWriteError(MigrationError):
    def __init__(self, record_id: str, message: str):
        self.record_id = record_id
        super().__init__(message)


class LoadError(MigrationError):
    pass


class MigrationInProgressError(MigrationError):
    def __init__(self, holder: Optional[str] = None, expires_at=None):
        self.holder = holder
        self.expires_at = expires_at
        detail = f" (held by {holder})" if holder else ""
        super().__init__(f"Another conversation migration is in progress{detail}")
