"""
Error taxonomy for content synchronization.

Whole-run failures (lock, finalized, fetch) are raised to the caller before
anything is written. Per-item failures are collected into the run report as
``ItemError`` records; ``ItemMergeError`` is the exception used internally to
carry one of them. ``InvariantViolationError`` is never corrected silently.
"""
from typing import Optional


class SyncError(Exception):
    """Base class for synchronization errors."""

    reason = "sync_error"
    http_status = 500


class LockConflictError(SyncError):
    """Another synchronization run holds the lock. Retry later."""

    reason = "locked"
    http_status = 409

    def __init__(self, message: str = "A content synchronization is already running"):
        super().__init__(message)


class SyncFinalizedError(SyncError):
    """The final refresh has completed; synchronization is permanently disabled."""

    reason = "finalized"
    http_status = 410

    def __init__(self, message: str = "Final refresh already completed; synchronization is disabled"):
        super().__init__(message)


class SourceFetchError(SyncError):
    """The content source could not be reached or returned unusable data."""

    reason = "fetch_failed"
    http_status = 502

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ItemMergeError(SyncError):
    """A single source item could not be merged."""

    reason = "item_failed"
    http_status = 422

    def __init__(self, message: str, position: Optional[int] = None, loid: Optional[str] = None):
        super().__init__(message)
        self.position = position
        self.loid = loid


class InvariantViolationError(SyncError):
    """The store holds zero or several active versions for a question."""

    reason = "invariant_violation"

    def __init__(self, question_ids):
        self.question_ids = sorted(question_ids)
        super().__init__(f"Active-version invariant violated for questions {self.question_ids}")


class QuestionSetNotFoundError(SyncError):
    reason = "not_found"
    http_status = 404

    def __init__(self, question_set_id: int):
        super().__init__(f"Question set {question_set_id} not found")
        self.question_set_id = question_set_id
