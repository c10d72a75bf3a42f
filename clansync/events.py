"""
Clan Sync - Realtime Events

Typed event variants for the invalidation/update events pushed by the backend,
plus the event source contract and an in-process implementation.

Raw payloads are validated into one model per event name at the boundary, so
handlers only ever see typed fields.
"""

import logging
from collections import defaultdict
from typing import Any, Callable, ClassVar, Optional, Protocol, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .exceptions import MalformedEventError

logger = logging.getLogger(__name__)

EventCallback = Callable[[Any], None]


# =============================================================================
# Event Variants
# =============================================================================

class _Event(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    event_name: ClassVar[str]


class CacheInvalidated(_Event):
    """Backend says a cache type (optionally one entity of it) is stale."""
    event_name: ClassVar[str] = "cache_invalidated"

    data_type: str = Field(alias="type", min_length=1)
    entity_id: Optional[str] = Field(default=None, alias="id", min_length=1)


class DataUpdated(_Event):
    """Backend pushed fresh data, or announced a change, for a type."""
    event_name: ClassVar[str] = "data_updated"

    data_type: str = Field(alias="type", min_length=1)
    data: Any = None


class _PresenceEvent(_Event):
    user_id: str = Field(alias="userId", min_length=1)

    @model_validator(mode="before")
    @classmethod
    def accept_bare_user_id(cls, value: Any) -> Any:
        """Presence events may arrive as the bare user id string."""
        if isinstance(value, str):
            return {"userId": value}
        return value


class UserOnline(_PresenceEvent):
    event_name: ClassVar[str] = "user_online"


class UserOffline(_PresenceEvent):
    event_name: ClassVar[str] = "user_offline"


class ClanUpdated(_Event):
    event_name: ClassVar[str] = "clan_updated"

    clan_id: str = Field(alias="clanId", min_length=1)


class FederationUpdated(_Event):
    event_name: ClassVar[str] = "federation_updated"

    federation_id: str = Field(alias="federationId", min_length=1)


class MissionUpdated(_Event):
    """A mission of a clan changed."""
    event_name: ClassVar[str] = "mission_updated"

    clan_id: str = Field(alias="clanId", min_length=1)


SyncEvent = Union[
    CacheInvalidated,
    DataUpdated,
    UserOnline,
    UserOffline,
    ClanUpdated,
    FederationUpdated,
    MissionUpdated,
]

EVENT_TYPES: dict[str, type[_Event]] = {
    model.event_name: model
    for model in (
        CacheInvalidated,
        DataUpdated,
        UserOnline,
        UserOffline,
        ClanUpdated,
        FederationUpdated,
        MissionUpdated,
    )
}


def parse_event(event_name: str, payload: Any) -> SyncEvent:
    """
    Build the typed variant for a raw event payload.

    Raises:
        MalformedEventError: unknown event name or payload of the wrong shape
    """
    model = EVENT_TYPES.get(event_name)
    if model is None:
        raise MalformedEventError(f"Unknown event: {event_name}", event_name=event_name)

    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise MalformedEventError(
            f"Malformed {event_name} payload: {e.error_count()} error(s)",
            event_name=event_name,
        ) from e


# =============================================================================
# Event Source
# =============================================================================

class EventSource(Protocol):
    """Delivers named events with raw payloads to registered callbacks."""

    def on(self, event_name: str, callback: EventCallback) -> None: ...

    def off(self, event_name: str, callback: EventCallback) -> None: ...


class LocalEventSource:
    """In-process event source; transports feed it through :meth:`emit`."""

    def __init__(self):
        self._listeners: dict[str, list[EventCallback]] = defaultdict(list)

    def on(self, event_name: str, callback: EventCallback) -> None:
        """Register a callback for an event name."""
        self._listeners[event_name].append(callback)

    def off(self, event_name: str, callback: EventCallback) -> None:
        """Remove a callback; unknown callbacks are ignored."""
        listeners = self._listeners.get(event_name, [])
        if callback in listeners:
            listeners.remove(callback)

    def listener_count(self, event_name: Optional[str] = None) -> int:
        """Number of registered callbacks, for one event or all."""
        if event_name is not None:
            return len(self._listeners.get(event_name, []))
        return sum(len(listeners) for listeners in self._listeners.values())

    def emit(self, event_name: str, payload: Any = None) -> int:
        """
        Deliver an event to its listeners.

        A failing listener is logged and skipped so later listeners and
        later events are still delivered.

        Returns:
            Number of listeners invoked
        """
        listeners = list(self._listeners.get(event_name, []))
        for callback in listeners:
            try:
                callback(payload)
            except Exception as e:
                logger.error(f"Listener for {event_name} failed: {e}")
        return len(listeners)
