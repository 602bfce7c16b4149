"""Exception hierarchy for the memory index."""

from __future__ import annotations


class MemindexError(Exception):
    """Base class for all memory-index errors."""


class ConfigError(MemindexError, ValueError):
    """Raised when a config file contains an invalid or forbidden value."""


class ProviderError(MemindexError):
    """An embedding provider rejected or failed a request."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Rate limit or 5xx-class upstream condition. Safe to retry."""


class FatalProviderError(ProviderError):
    """Any other provider rejection. Never retried."""


class BatchPipelineError(MemindexError):
    """The remote batch pipeline failed and the sync must fall back.

    Attributes:
        stage: Pipeline step that failed (upload, create, poll, download, parse).
        transient: Whether the underlying cause was a transient upstream condition.
    """

    def __init__(self, message: str, *, stage: str, transient: bool = False) -> None:
        super().__init__(message)
        self.stage = stage
        self.transient = transient


class DocumentIOError(MemindexError):
    """A single memory document could not be read."""

    def __init__(self, path: str, cause: Exception) -> None:
        super().__init__(f"Cannot read memory document '{path}': {cause}")
        self.path = path
        self.cause = cause


class StoreError(MemindexError):
    """Persistence failed; the transaction was rolled back."""


class ManagerClosedError(MemindexError):
    """The manager was closed while an operation was in flight."""
