"""
Error taxonomy for the capture service.

Each class maps to exactly one recovery path:

TransientSourceError:
    Source connection hiccup. Recovered by reconnect with backoff.

AuthExpiredError:
    Stored credentials are no longer accepted. Escalates to
    needs_reauthentication (credentials purged, retry counter reset).

StorageWriteError:
    Structured storage rejected a write. Logged with full context;
    never fatal to the ingestion loop.

CacheResolutionError:
    Identity lookup failed. Treated as a cache miss, retried on the
    next lookup, never fatal.

UnknownSessionReference:
    State change for a session id with no in-memory entry. Logged and
    ignored; no state mutation.

StartupError:
    Unrecoverable failure before the first successful connection.
    Allowed to terminate the process (a supervisor restarts it).
"""

from __future__ import annotations

from typing import Any


class CaptureError(Exception):
    """Base class for all capture-service errors."""


class TransientSourceError(CaptureError):
    """Source call failed in a way that a reconnect is expected to fix."""


class AuthExpiredError(CaptureError):
    """Source rejected the stored credentials."""


class StorageWriteError(CaptureError):
    """Structured storage write failed."""

    def __init__(self, operation: str, message: str, **context: Any) -> None:
        super().__init__(f"{operation}: {message}")
        self.operation = operation
        self.context = context


class CacheResolutionError(CaptureError):
    """Identity resolution failed for a single identity."""

    def __init__(self, identity_id: str, message: str) -> None:
        super().__init__(f"{identity_id}: {message}")
        self.identity_id = identity_id


class UnknownSessionReference(CaptureError):
    """Notification referenced a session id that is not being tracked."""

    def __init__(self, session_id: str) -> None:
        super().__init__(session_id)
        self.session_id = session_id


class StartupError(CaptureError):
    """Service could not start; nothing has connected yet."""
