# File: src/lotsync/domain/exceptions.py
"""
Error taxonomy for the occupancy engine

Every error raised across the library boundary derives from LotSyncError and
carries a stable ErrorKind, so the calling layer can translate failures into
messages without matching on exception text.

Kinds:
- NOT_FOUND: referenced lot or space does not exist (not retried)
- CONFLICT: duplicate space number within a lot (caller picks another number)
- INVALID_ARGUMENT: malformed input (not retried)
- TRANSIENT: store unavailable or timed out (safe to retry with backoff)
- PERMISSION_DENIED: caller lacks the role for a mutating operation
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Stable, inspectable error categories"""
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INVALID_ARGUMENT = "invalid_argument"
    TRANSIENT = "transient"
    PERMISSION_DENIED = "permission_denied"

    @property
    def is_retryable(self) -> bool:
        return self is ErrorKind.TRANSIENT


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LotSyncError(Exception):
    """Base exception for engine errors"""
    kind: ErrorKind = ErrorKind.TRANSIENT

    def __init__(self, message: str, *, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    @property
    def retryable(self) -> bool:
        return self.kind.is_retryable

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(kind={self.kind.value}, message={self.message!r})"


class NotFoundError(LotSyncError):
    """Referenced lot or space id does not exist"""
    kind = ErrorKind.NOT_FOUND


class ConflictError(LotSyncError):
    """Space number already held by another space in the same lot"""
    kind = ErrorKind.CONFLICT


class InvalidArgumentError(LotSyncError, ValueError):
    """Malformed input such as a non-positive count or a reversed time range"""
    kind = ErrorKind.INVALID_ARGUMENT


class TransientError(LotSyncError):
    """Store unavailable or timed out"""
    kind = ErrorKind.TRANSIENT


class StaleWriteError(TransientError):
    """
    A revision-guarded write lost the race against a concurrent writer.

    Raised by repositories; services re-read and retry. Escapes to callers
    only after the retry budget is spent, where it is treated as transient.
    """

    def __init__(self, message: str, *, expected_revision: Optional[int] = None):
        super().__init__(message)
        self.expected_revision = expected_revision


class PermissionDeniedError(LotSyncError):
    """Caller lacks the role required for the operation"""
    kind = ErrorKind.PERMISSION_DENIED
