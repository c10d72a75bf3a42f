"""
Realtime Event Tests

Tests for typed event parsing and the in-process event source.
"""

import pytest

from clansync.events import (
    EVENT_TYPES,
    CacheInvalidated,
    ClanUpdated,
    DataUpdated,
    FederationUpdated,
    LocalEventSource,
    MissionUpdated,
    UserOffline,
    UserOnline,
    parse_event,
)
from clansync.exceptions import MalformedEventError


class TestParseEvent:
    """Tests for building typed variants from raw payloads."""

    def test_catalogue_is_complete(self):
        assert set(EVENT_TYPES) == {
            "cache_invalidated",
            "data_updated",
            "user_online",
            "user_offline",
            "clan_updated",
            "federation_updated",
            "mission_updated",
        }

    def test_cache_invalidated(self):
        event = parse_event("cache_invalidated", {"type": "missions", "id": "c1"})
        assert isinstance(event, CacheInvalidated)
        assert event.data_type == "missions"
        assert event.entity_id == "c1"

    def test_cache_invalidated_without_id(self):
        event = parse_event("cache_invalidated", {"type": "stats"})
        assert event.entity_id is None

    def test_data_updated_keeps_inline_payload(self):
        event = parse_event("data_updated", {"type": "stats", "data": {"online_users": 7}})
        assert isinstance(event, DataUpdated)
        assert event.data == {"online_users": 7}

    def test_presence_accepts_object_or_bare_id(self):
        online = parse_event("user_online", {"userId": "u1"})
        offline = parse_event("user_offline", "u2")

        assert isinstance(online, UserOnline)
        assert online.user_id == "u1"
        assert isinstance(offline, UserOffline)
        assert offline.user_id == "u2"

    def test_entity_events(self):
        assert isinstance(parse_event("clan_updated", {"clanId": "c1"}), ClanUpdated)
        assert isinstance(parse_event("federation_updated", {"federationId": "f1"}), FederationUpdated)
        mission = parse_event("mission_updated", {"clanId": "c1", "missionId": "m9"})
        assert isinstance(mission, MissionUpdated)
        assert mission.clan_id == "c1"

    @pytest.mark.parametrize(
        "event_name,payload",
        [
            ("cache_invalidated", {"id": "c1"}),
            ("cache_invalidated", {"type": ""}),
            ("cache_invalidated", {"type": 12}),
            ("cache_invalidated", ["stats"]),
            ("cache_invalidated", None),
            ("data_updated", {"data": {}}),
            ("user_online", {}),
            ("user_offline", 42),
            ("clan_updated", {"clan": "c1"}),
            ("federation_updated", "f1"),
            ("mission_updated", {"clanId": None}),
        ],
    )
    def test_malformed_payloads_rejected(self, event_name, payload):
        with pytest.raises(MalformedEventError) as exc_info:
            parse_event(event_name, payload)
        assert exc_info.value.event_name == event_name

    def test_unknown_event_rejected(self):
        with pytest.raises(MalformedEventError):
            parse_event("clan_deleted", {"clanId": "c1"})


class TestLocalEventSource:
    """Tests for in-process event delivery."""

    def test_emit_reaches_listeners(self):
        source = LocalEventSource()
        received = []
        source.on("clan_updated", received.append)

        assert source.emit("clan_updated", {"clanId": "c1"}) == 1
        assert received == [{"clanId": "c1"}]

    def test_emit_without_listeners(self):
        source = LocalEventSource()
        assert source.emit("clan_updated", {}) == 0

    def test_failing_listener_does_not_block_others(self):
        source = LocalEventSource()
        received = []

        def broken(payload):
            raise RuntimeError("boom")

        source.on("data_updated", broken)
        source.on("data_updated", received.append)

        source.emit("data_updated", {"type": "stats"})
        source.emit("data_updated", {"type": "user"})

        assert received == [{"type": "stats"}, {"type": "user"}]

    def test_off_removes_listener(self):
        source = LocalEventSource()
        received = []
        source.on("user_online", received.append)
        source.off("user_online", received.append)
        source.off("user_online", received.append)

        source.emit("user_online", "u1")

        assert received == []
        assert source.listener_count() == 0
