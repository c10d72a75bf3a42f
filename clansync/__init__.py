"""
Clan Sync

Cache-synchronization core for the clan/federation client: keeps a local
cache consistent with the backend across periodic polling, realtime
invalidation events and manual refresh.
"""

from .api import (
    ApiClient,
    ApiResponse,
    RemoteDataSource,
)
from .cache import (
    CacheStore,
    LocalCache,
)
from .config import SyncConfig, get_settings
from .coordinator import (
    PeriodicTask,
    SyncCoordinator,
    SyncPhase,
    SyncState,
)
from .events import (
    EVENT_TYPES,
    CacheInvalidated,
    ClanUpdated,
    DataUpdated,
    EventSource,
    FederationUpdated,
    LocalEventSource,
    MissionUpdated,
    SyncEvent,
    UserOffline,
    UserOnline,
    parse_event,
)
from .exceptions import (
    AuthenticationError,
    InitializationError,
    MalformedEventError,
    NetworkError,
    RemoteDataError,
    SyncError,
)
from .main import sync_session

__version__ = "0.1.0"
__all__ = [
    # Main classes
    "SyncCoordinator",
    "LocalCache",
    "ApiClient",
    "LocalEventSource",
    "PeriodicTask",

    # Contracts
    "CacheStore",
    "RemoteDataSource",
    "EventSource",

    # Configuration
    "SyncConfig",
    "get_settings",

    # Data models
    "ApiResponse",
    "SyncPhase",
    "SyncState",
    "SyncEvent",
    "CacheInvalidated",
    "DataUpdated",
    "UserOnline",
    "UserOffline",
    "ClanUpdated",
    "FederationUpdated",
    "MissionUpdated",
    "EVENT_TYPES",
    "parse_event",

    # Exceptions
    "SyncError",
    "NetworkError",
    "AuthenticationError",
    "RemoteDataError",
    "InitializationError",
    "MalformedEventError",

    # Convenience functions
    "sync_session",
]
