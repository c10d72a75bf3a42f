"""
Clan Sync - Local Cache Store

SQLite-backed cache of backend data, addressed by type and optional entity id.

Features:
- Per-type TTL validity tracking
- Scoped, type-wide, pattern and relation invalidation
- Expired-entry purge and health summary for maintenance
"""

import fnmatch
import hashlib
import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional, Protocol

from .config import DEFAULT_CACHE_TTLS

logger = logging.getLogger(__name__)


def make_key(data_type: str, entity_id: Optional[str] = None) -> str:
    """Build the cache key for a type and optional entity id."""
    if entity_id is None:
        return data_type
    return f"{data_type}:{entity_id}"


def _timestamp(dt: datetime) -> str:
    # Fixed precision keeps stored timestamps comparable as strings
    return dt.isoformat(timespec="microseconds")


def _references(value: Any, entity_id: str) -> bool:
    """Check whether a JSON value contains ``entity_id`` as a string anywhere."""
    if isinstance(value, str):
        return value == entity_id
    if isinstance(value, dict):
        return any(_references(v, entity_id) for v in value.values())
    if isinstance(value, list):
        return any(_references(v, entity_id) for v in value)
    return False


# =============================================================================
# Store Contract
# =============================================================================

class CacheStore(Protocol):
    """Operations the sync coordinator needs from a cache."""

    def is_cache_valid(self, data_type: str, entity_id: Optional[str] = None) -> bool: ...

    def cache_data(
        self,
        data_type: str,
        data: Any,
        entity_id: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
    ) -> None: ...

    def cache_stats(self, stats: Any) -> None: ...

    def cache_federations(self, federations: list) -> None: ...

    def cache_clans(self, clans: list, federation_id: Optional[str] = None) -> None: ...

    def invalidate_cache(self, data_type: str, entity_id: Optional[str] = None) -> int: ...

    def invalidate_related(self, entity_id: str) -> int: ...

    def invalidate_clan_related(self, clan_id: str) -> int: ...

    def invalidate_federation_related(self, federation_id: str) -> int: ...

    def clear_expired_cache(self) -> int: ...

    def clear_all_cache(self) -> int: ...

    def get_health_info(self) -> dict: ...


# =============================================================================
# Local Cache (SQLite)
# =============================================================================

class LocalCache:
    """SQLite-based cache for backend data."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS cached_data (
        key TEXT PRIMARY KEY,
        data_type TEXT NOT NULL,
        entity_id TEXT,
        data TEXT NOT NULL,
        checksum TEXT,
        cached_at TEXT NOT NULL,
        expires_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_cached_data_type ON cached_data(data_type);
    CREATE INDEX IF NOT EXISTS idx_cached_data_entity ON cached_data(entity_id);
    CREATE INDEX IF NOT EXISTS idx_cached_data_expires ON cached_data(expires_at);
    """

    def __init__(
        self,
        db_path: Path,
        ttls: Optional[dict[str, int]] = None,
        default_ttl: int = 600,
    ):
        self.db_path = Path(db_path)
        self.ttls = dict(DEFAULT_CACHE_TTLS if ttls is None else ttls)
        self.default_ttl = default_ttl
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the database schema."""
        with self._get_connection() as conn:
            conn.executescript(self.SCHEMA)
            conn.commit()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with proper cleanup and retry for SQLITE_BUSY."""
        conn = None
        for attempt in range(5):
            try:
                conn = sqlite3.connect(str(self.db_path), timeout=30.0)
                conn.row_factory = sqlite3.Row
                break
            except sqlite3.OperationalError as e:
                if "database is locked" in str(e) and attempt < 4:
                    time.sleep(0.1 * (2 ** attempt))
                else:
                    raise
        try:
            yield conn
        finally:
            if conn:
                conn.close()

    def ttl_for(self, data_type: str) -> int:
        """TTL in seconds for a cache type."""
        return self.ttls.get(data_type, self.default_ttl)

    # === Writes ===

    def cache_data(
        self,
        data_type: str,
        data: Any,
        entity_id: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
    ) -> None:
        """Cache a payload under its type and optional entity id."""
        now = datetime.now(timezone.utc)
        if ttl_seconds is None:
            ttl_seconds = self.ttl_for(data_type)
        expires_at = now + timedelta(seconds=ttl_seconds)

        encoded = json.dumps(data, sort_keys=True, default=str)
        checksum = hashlib.sha256(encoded.encode()).hexdigest()

        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO cached_data
                (key, data_type, entity_id, data, checksum, cached_at, expires_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    make_key(data_type, entity_id),
                    data_type,
                    entity_id,
                    encoded,
                    checksum,
                    _timestamp(now),
                    _timestamp(expires_at),
                ),
            )
            conn.commit()
        logger.debug(f"Cached {make_key(data_type, entity_id)} (ttl={ttl_seconds}s)")

    def cache_stats(self, stats: Any) -> None:
        """Cache global statistics."""
        self.cache_data("stats", stats)

    def cache_federations(self, federations: list) -> None:
        """Cache the federation list."""
        self.cache_data("federations", federations)

    def cache_clans(self, clans: list, federation_id: Optional[str] = None) -> None:
        """Cache a clan list, scoped to a federation when given."""
        self.cache_data("clans", clans, entity_id=federation_id)

    # === Reads ===

    def _row(self, key: str) -> Optional[sqlite3.Row]:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT data, checksum, expires_at FROM cached_data WHERE key = ?",
                (key,),
            )
            return cursor.fetchone()

    def is_cache_valid(self, data_type: str, entity_id: Optional[str] = None) -> bool:
        """Check whether an unexpired entry exists for the key."""
        row = self._row(make_key(data_type, entity_id))
        if not row:
            return False
        expires_at = datetime.fromisoformat(row["expires_at"])
        return datetime.now(timezone.utc) < expires_at

    def get_cached(self, data_type: str, entity_id: Optional[str] = None) -> Optional[Any]:
        """Get cached data if not expired."""
        row = self._row(make_key(data_type, entity_id))
        if not row:
            return None
        if datetime.now(timezone.utc) >= datetime.fromisoformat(row["expires_at"]):
            return None
        return json.loads(row["data"])

    def get_cached_checksum(self, data_type: str, entity_id: Optional[str] = None) -> Optional[str]:
        """Get the checksum of cached data."""
        row = self._row(make_key(data_type, entity_id))
        return row["checksum"] if row else None

    def keys(self) -> list[str]:
        """All cache keys, expired or not."""
        with self._get_connection() as conn:
            cursor = conn.execute("SELECT key FROM cached_data ORDER BY key")
            return [row["key"] for row in cursor.fetchall()]

    # === Invalidation ===

    def invalidate_cache(self, data_type: str, entity_id: Optional[str] = None) -> int:
        """
        Invalidate cached entries.

        Without an id every entry of the type goes, scoped or not. With an
        id only that scoped entry goes.
        """
        with self._get_connection() as conn:
            if entity_id is None:
                cursor = conn.execute(
                    "DELETE FROM cached_data WHERE data_type = ?",
                    (data_type,),
                )
            else:
                cursor = conn.execute(
                    "DELETE FROM cached_data WHERE key = ?",
                    (make_key(data_type, entity_id),),
                )
            conn.commit()
            removed = cursor.rowcount

        logger.debug(f"Invalidated {removed} entries for {make_key(data_type, entity_id)}")
        return removed

    def invalidate_related(self, entity_id: str) -> int:
        """Invalidate every entry whose key or payload references ``entity_id``."""
        with self._get_connection() as conn:
            cursor = conn.execute("SELECT key, entity_id, data FROM cached_data")
            doomed = []
            for row in cursor.fetchall():
                if row["entity_id"] == entity_id or entity_id in row["key"].split(":"):
                    doomed.append(row["key"])
                    continue
                try:
                    payload = json.loads(row["data"])
                except ValueError:
                    continue
                if _references(payload, entity_id):
                    doomed.append(row["key"])

            conn.executemany(
                "DELETE FROM cached_data WHERE key = ?",
                [(key,) for key in doomed],
            )
            conn.commit()

        logger.debug(f"Invalidated {len(doomed)} entries related to {entity_id}")
        return len(doomed)

    def invalidate_clan_related(self, clan_id: str) -> int:
        """Invalidate every entry touching a clan."""
        return self.invalidate_related(clan_id)

    def invalidate_federation_related(self, federation_id: str) -> int:
        """Invalidate every entry touching a federation."""
        return self.invalidate_related(federation_id)

    def invalidate_pattern(self, pattern: str) -> int:
        """Invalidate entries whose key matches a shell-style glob."""
        with self._get_connection() as conn:
            cursor = conn.execute("SELECT key FROM cached_data")
            doomed = [
                row["key"] for row in cursor.fetchall()
                if fnmatch.fnmatchcase(row["key"], pattern)
            ]
            conn.executemany(
                "DELETE FROM cached_data WHERE key = ?",
                [(key,) for key in doomed],
            )
            conn.commit()
        return len(doomed)

    # === Maintenance ===

    def clear_expired_cache(self) -> int:
        """Clear all expired cached data."""
        now = datetime.now(timezone.utc)
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM cached_data WHERE expires_at <= ?",
                (_timestamp(now),),
            )
            conn.commit()
            removed = cursor.rowcount

        if removed:
            logger.info(f"Cleared {removed} expired cache entries")
        return removed

    def clear_all_cache(self) -> int:
        """Remove every cached entry."""
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM cached_data")
            conn.commit()
            removed = cursor.rowcount

        logger.info(f"Cleared entire cache ({removed} entries)")
        return removed

    def get_health_info(self) -> dict:
        """Summarize entry counts for health monitoring."""
        now = _timestamp(datetime.now(timezone.utc))
        with self._get_connection() as conn:
            total = conn.execute("SELECT COUNT(*) FROM cached_data").fetchone()[0]
            expired = conn.execute(
                "SELECT COUNT(*) FROM cached_data WHERE expires_at <= ?",
                (now,),
            ).fetchone()[0]
            cursor = conn.execute(
                """
                SELECT data_type, COUNT(*) as count
                FROM cached_data
                GROUP BY data_type
                """
            )
            by_type = {row["data_type"]: row["count"] for row in cursor.fetchall()}

        return {
            "total_entries": total,
            "expired_entries": expired,
            "valid_entries": total - expired,
            "by_type": by_type,
        }
