"""
Local Cache Tests

Tests for validity tracking, invalidation and maintenance of the SQLite cache.
"""

import pytest

from clansync.cache import LocalCache, make_key


class TestValidity:
    """Tests for TTL-based validity."""

    def test_cache_initialization(self, cache):
        """Test cache initializes correctly."""
        assert cache.db_path.exists()
        assert cache.keys() == []

    def test_missing_entry_is_invalid(self, cache):
        assert cache.is_cache_valid("stats") is False
        assert cache.get_cached("stats") is None

    def test_fresh_entry_is_valid(self, cache):
        cache.cache_stats({"online_users": 3})

        assert cache.is_cache_valid("stats") is True
        assert cache.get_cached("stats") == {"online_users": 3}

    def test_expired_entry_is_invalid(self, cache):
        cache.cache_data("stats", {"online_users": 3}, ttl_seconds=-1)

        assert cache.is_cache_valid("stats") is False
        assert cache.get_cached("stats") is None

    def test_scoped_entry_validity(self, cache):
        cache.cache_data("missions", [{"id": "m1"}], entity_id="c1")

        assert cache.is_cache_valid("missions", "c1") is True
        assert cache.is_cache_valid("missions", "c2") is False
        assert cache.is_cache_valid("missions") is False

    def test_per_type_ttl(self, tmp_path):
        cache = LocalCache(tmp_path / "ttl.db", ttls={"stats": -1}, default_ttl=600)
        cache.cache_stats({"online_users": 1})
        cache.cache_data("other", {"x": 1})

        assert cache.is_cache_valid("stats") is False
        assert cache.is_cache_valid("other") is True

    def test_checksum_tracks_content(self, cache):
        cache.cache_stats({"a": 1})
        first = cache.get_cached_checksum("stats")
        cache.cache_stats({"a": 2})

        assert first is not None
        assert len(first) == 64
        assert cache.get_cached_checksum("stats") != first


class TestInvalidation:
    """Tests for scoped, type-wide, pattern and relation invalidation."""

    def test_make_key(self):
        assert make_key("stats") == "stats"
        assert make_key("missions", "c1") == "missions:c1"

    def test_invalidate_scoped_entry(self, cache):
        cache.cache_data("missions", [1], entity_id="c1")
        cache.cache_data("missions", [2], entity_id="c2")

        removed = cache.invalidate_cache("missions", "c1")

        assert removed == 1
        assert cache.keys() == ["missions:c2"]

    def test_invalidate_whole_type(self, cache):
        cache.cache_data("missions", [1], entity_id="c1")
        cache.cache_data("missions", [2], entity_id="c2")
        cache.cache_data("missions", [3])
        cache.cache_stats({"online_users": 1})

        removed = cache.invalidate_cache("missions")

        assert removed == 3
        assert cache.keys() == ["stats"]

    def test_invalidate_related_across_types(self, cache):
        cache.cache_clans([{"id": "c1"}, {"id": "c3"}], federation_id="f1")
        cache.cache_clans([{"id": "c2"}], federation_id="f2")
        cache.cache_data("missions", [{"id": "m1"}], entity_id="c1")
        cache.cache_data("missions", [{"id": "m2"}], entity_id="c2")
        cache.cache_data("members", {"clanId": "c1", "members": ["u1"]})
        cache.cache_data("members", {"clanId": "c2", "members": ["u2"]}, entity_id="c2")

        cache.invalidate_clan_related("c1")

        assert cache.keys() == ["clans:f2", "members:c2", "missions:c2"]

    def test_invalidate_related_ignores_substring_ids(self, cache):
        cache.cache_data("missions", [{"clanId": "c10"}], entity_id="c10")

        assert cache.invalidate_related("c1") == 0
        assert cache.keys() == ["missions:c10"]

    def test_invalidate_federation_related(self, cache):
        cache.cache_clans([{"id": "c1"}], federation_id="f1")
        cache.cache_federations([{"id": "f1"}, {"id": "f2"}])
        cache.cache_clans([{"id": "c2"}], federation_id="f2")

        cache.invalidate_federation_related("f1")

        # The federation list mentions f1 too, so it goes with the f1 clans
        assert cache.keys() == ["clans:f2"]

    def test_invalidate_pattern(self, cache):
        cache.cache_data("missions", [1], entity_id="c1")
        cache.cache_data("missions", [2], entity_id="c2")
        cache.cache_stats({})

        assert cache.invalidate_pattern("missions:*") == 2
        assert cache.keys() == ["stats"]


class TestMaintenance:
    """Tests for purge and health reporting."""

    def test_clear_expired_cache(self, cache):
        cache.cache_data("stats", {}, ttl_seconds=-1)
        cache.cache_data("user", {}, ttl_seconds=-1)
        cache.cache_federations([])

        assert cache.clear_expired_cache() == 2
        assert cache.keys() == ["federations"]

    def test_clear_all_cache(self, cache):
        cache.cache_stats({})
        cache.cache_federations([])

        assert cache.clear_all_cache() == 2
        assert cache.keys() == []

    def test_health_info(self, cache):
        cache.cache_data("missions", [], entity_id="c1", ttl_seconds=-1)
        cache.cache_data("missions", [], entity_id="c2")
        cache.cache_stats({})

        health = cache.get_health_info()

        assert health["total_entries"] == 3
        assert health["expired_entries"] == 1
        assert health["valid_entries"] == 2
        assert health["by_type"] == {"missions": 2, "stats": 1}

    @pytest.mark.parametrize("payload", [{"nested": {"list": [1, "two"]}}, [1, 2, 3], "plain", 42])
    def test_payload_shapes_survive(self, cache, payload):
        cache.cache_data("misc", payload)
        assert cache.get_cached("misc") == payload
