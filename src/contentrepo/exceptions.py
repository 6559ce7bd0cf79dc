"""
Custom exception hierarchy for the content repository.

All exceptions inherit from ContentRepoError, which provides optional context
for structured error handling and logging.
"""

from __future__ import annotations

from typing import Any


class ContentRepoError(Exception):
    """Base exception for all content repository errors.

    Attributes:
        message: Human-readable error message.
        context: Optional structured context for logging/debugging.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx_str})"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context!r})"


class ConfigurationError(ContentRepoError):
    """Raised when the repository cannot be set up.

    Examples:
        - Repository root exists but is not a directory
        - Repository root is not writable
        - Repository root cannot be created
    """

    pass


class FilesystemError(ContentRepoError):
    """Raised when a shard directory is unusable.

    Context should include:
        - path: The offending path
    """

    pass


class ContentNotFoundError(ContentRepoError):
    """Raised when an operation addresses a hash with no stored content.

    Context should include:
        - hash: The hex hash that was requested
    """

    pass


class ExplodedContentError(ContentRepoError):
    """Raised when content cannot be exploded or is not exploded.

    Context should include:
        - hash: The hex hash of the content
        - reason: Why the operation was rejected
    """

    pass


class ContentIOError(ContentRepoError):
    """Raised when content could not be written after all fallbacks.

    Context should include:
        - path: The destination path
    """

    pass


class InvalidStateError(ContentRepoError):
    """Raised on contract violations by a caller.

    Examples:
        - persist() called on an item that already has a hash
        - hash requested before it is known
        - staged item used after close()
    """

    pass


class InvalidHashError(ContentRepoError, ValueError):
    """Raised when a hash value is malformed.

    Context should include:
        - value: The rejected value
    """

    pass
