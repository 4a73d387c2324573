"""Typed exceptions raised by the indexing core."""

from __future__ import annotations


class VaultIndexError(Exception):
    """Base exception for indexing and retrieval errors."""


class CacheError(VaultIndexError):
    """Failed to read or write the change-detection cache."""


class CacheCorruptError(CacheError):
    """The persisted cache exists but cannot be parsed."""


class LockTimeoutError(VaultIndexError):
    """The vector store lock could not be acquired in time."""


class EmbeddingError(VaultIndexError):
    """The embedding backend failed to return a usable vector."""


class EmbeddingValidationError(EmbeddingError):
    """The backend answered with a malformed payload or wrong dimensions."""


class RetryExhaustedError(VaultIndexError):
    """An operation kept failing after every allowed attempt."""

    def __init__(self, attempts: int, last_error: BaseException | None) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Operation failed after {attempts} attempts: {last_error}")


class IndexNotCreatedError(VaultIndexError):
    """The vector index has not been created on disk yet."""


class IndexTooSmallError(VaultIndexError):
    """The vector index holds too few items to run a query."""
