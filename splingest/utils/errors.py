"""Exception types raised by the ingestion engine."""

from __future__ import annotations


class IngestionError(Exception):
    """Base class for ingestion failures."""


class PersistenceError(IngestionError):
    """A batched read or write against the record store failed.

    Fatal to the phase that issued the call; earlier phases keep their writes.
    """

    def __init__(self, message: str, *, kind: str | None = None) -> None:
        super().__init__(message)
        self.kind = kind


class RemapError(IngestionError):
    """Written unit records could not be aligned with their correlation keys."""


class IngestionCancelled(IngestionError):
    """Raised when the caller's cancellation token fires or the deadline passes."""
