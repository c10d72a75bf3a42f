"""Exceptions raised by the clan sync client."""

from typing import Optional


class SyncError(Exception):
    """Base exception for sync operations."""
    pass


class NetworkError(SyncError):
    """Network-related error."""
    pass


class AuthenticationError(SyncError):
    """Authentication failed or no credentials available."""
    pass


class RemoteDataError(SyncError):
    """Backend answered but reported failure or returned unusable data."""
    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class InitializationError(SyncError):
    """Coordinator startup failed."""
    pass


class MalformedEventError(SyncError):
    """Event payload does not match its expected shape."""
    def __init__(self, message: str, event_name: Optional[str] = None):
        super().__init__(message)
        self.event_name = event_name
