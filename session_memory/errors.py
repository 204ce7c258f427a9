"""Exception taxonomy for the session-memory pipeline."""

from __future__ import annotations


class SessionMemoryError(Exception):
    """Base class for every error raised by this package."""


class TranscriptValidationError(SessionMemoryError):
    """A transcript source failed validation and must not be processed."""

    def __init__(self, source: str, errors: list[str]) -> None:
        self.source = source
        self.errors = errors
        super().__init__(f"Validation failed for {source}: {'; '.join(errors)}")


class ProviderError(SessionMemoryError):
    """An external provider (embedding or context model) call failed."""


class StorageError(SessionMemoryError):
    """A write or query against the store failed."""


class ConfigurationError(SessionMemoryError):
    """A required credential or setting is missing."""


class NotIndexedError(SessionMemoryError):
    """Search was attempted before any chunk had an embedding."""
