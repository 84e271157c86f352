# Sync/exceptions.py
# Description: Error taxonomy shared by the sync endpoint, the sync engines and the device sync client.
from typing import Dict, Optional


class SyncError(Exception):
    """Base exception for the sync library."""
    status_code = 500

    def __init__(self, message: str = "Sync error"):
        super().__init__(message)
        self.message = message


class AuthenticationError(SyncError):
    """Missing or invalid credential. Never retried automatically; the user has to log in again."""
    status_code = 403

    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message)


class ValidationError(SyncError):
    """Malformed request parameters or records. Never retried."""
    status_code = 400


class UpstreamStoreError(SyncError):
    """The record store failed for one or more kinds. Safe to retry the whole cycle later."""
    status_code = 500

    def __init__(self, message: str = "Record store failure", errors_by_kind: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.errors_by_kind: Dict[str, str] = dict(errors_by_kind or {})

    @classmethod
    def from_kind_errors(cls, errors_by_kind: Dict[str, str]) -> "UpstreamStoreError":
        message = "; ".join(f"{kind}: {err}" for kind, err in errors_by_kind.items())
        return cls(message, errors_by_kind=errors_by_kind)


class TransportError(SyncError):
    """The server answered with a status the client has no specific handling for."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NetworkError(TransportError):
    """Client-observed connection failure. Retried on the next scheduled cycle."""


class SyncTimeoutError(NetworkError):
    """A single HTTP call exceeded its timeout."""


class StateError(SyncError):
    """Represents an error reading/writing local sync state."""
