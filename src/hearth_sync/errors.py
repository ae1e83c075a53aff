"""Exception taxonomy for the sync client.

Per-item enrichment (message text, avatars, names) never raises; these
exceptions cover the primary results: extraction, session handling and the
critical remote calls.
"""

from __future__ import annotations


class HearthSyncError(Exception):
    """Base class for all sync client failures."""


class SourceUnavailable(HearthSyncError):
    """A local datastore is missing or cannot be opened."""

    def __init__(self, path: object, reason: str) -> None:
        super().__init__(f"{reason}: {path}")
        self.path = path
        self.reason = reason


class ExtractionFailed(HearthSyncError):
    """A datastore query failed part-way; no partial result is returned."""


class DecodeFailure(HearthSyncError):
    """A binary blob does not match the expected layout."""


class NotAuthenticated(HearthSyncError):
    """No session exists; the user must sign in."""

    def __init__(self, message: str = "Not authenticated") -> None:
        super().__init__(message)


class SessionExpired(HearthSyncError):
    """The session could not be validated or refreshed."""

    def __init__(self, message: str = "Session expired. Please sign in again.") -> None:
        super().__init__(message)


class InvalidPayload(HearthSyncError):
    """Caller-supplied data does not match the expected shape."""


class SyncRequestFailed(HearthSyncError):
    """A critical remote call (cursor fetch, message push) failed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


__all__ = [
    "HearthSyncError",
    "SourceUnavailable",
    "ExtractionFailed",
    "DecodeFailure",
    "NotAuthenticated",
    "SessionExpired",
    "SyncRequestFailed",
    "InvalidPayload",
]
