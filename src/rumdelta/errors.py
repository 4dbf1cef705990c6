"""Failure taxonomy for a sync run.

Every fallible step of a run raises one of these. The driver catches them at its
boundary and records them as `RunError` values on the run report; see
`rumdelta.sync.driver`.
"""

from __future__ import annotations

from enum import Enum

__all__ = [
    "AuthError",
    "CommitError",
    "CursorReadError",
    "EnvelopeError",
    "ErrorKind",
    "ExportError",
    "QueryError",
    "SyncError",
]


class ErrorKind(str, Enum):
    CURSOR_READ = "cursor_read"
    AUTH = "auth"
    QUERY = "query"
    ENVELOPE = "envelope"
    EXPORT = "export"
    COMMIT = "commit"


class SyncError(Exception):
    kind: ErrorKind = ErrorKind.QUERY
    fatal: bool = True


class CursorReadError(SyncError):
    """Stored cursor could not be read. Run degrades to full-window mode."""

    kind = ErrorKind.CURSOR_READ
    fatal = False


class AuthError(SyncError):
    kind = ErrorKind.AUTH


class QueryError(SyncError):
    """Remote change source call failed (transport error or bad status)."""

    kind = ErrorKind.QUERY


class EnvelopeError(SyncError):
    """Response payload does not look like a delta page."""

    kind = ErrorKind.ENVELOPE


class ExportError(SyncError):
    """Mapping or writing rows to the export failed."""

    kind = ErrorKind.EXPORT


class CommitError(SyncError):
    """Writing the cursor, audit copy or artifact to the store failed."""

    kind = ErrorKind.COMMIT
    fatal = False
