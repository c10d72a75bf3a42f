"""
Clan Sync - Sync Coordinator

Keeps the local cache consistent with the backend across periodic polling,
push-driven invalidation events and manual refresh.

Features:
- Initial sync of essential data (stats + federations) when the cache is stale
- Periodic sync of volatile data (stats) with expired-entry purge
- Forced sync that clears and reloads the cache
- Event-driven invalidation from typed realtime events
- Independent health check of backend reachability and cache hygiene
- Single ``syncing`` flag; losing sync requests are dropped, never queued
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from .api import (
    CLANS_PATH,
    FEDERATIONS_PATH,
    GLOBAL_STATS_PATH,
    HEALTH_PATH,
    RemoteDataSource,
)
from .cache import CacheStore
from .config import SyncConfig
from .events import (
    CacheInvalidated,
    ClanUpdated,
    DataUpdated,
    EventSource,
    FederationUpdated,
    MissionUpdated,
    SyncEvent,
    UserOffline,
    UserOnline,
    parse_event,
)
from .exceptions import InitializationError, MalformedEventError, RemoteDataError, SyncError

logger = logging.getLogger(__name__)


# =============================================================================
# Sync State
# =============================================================================

class SyncPhase(Enum):
    """Last known phase of the coordinator."""
    IDLE = "idle"
    INITIAL_SYNC = "initial_sync"
    SYNCING = "syncing"
    MANUAL_SYNC = "manual_sync"
    ERROR = "error"


_ACTIVE_PHASES = {SyncPhase.INITIAL_SYNC, SyncPhase.SYNCING, SyncPhase.MANUAL_SYNC}
_RESTING_PHASES = {SyncPhase.IDLE, SyncPhase.ERROR}

TRANSITIONS: dict[SyncPhase, set[SyncPhase]] = {
    **{phase: set(_ACTIVE_PHASES) for phase in _RESTING_PHASES},
    **{phase: set(_RESTING_PHASES) for phase in _ACTIVE_PHASES},
}


@dataclass
class SyncState:
    """Mutable sync state owned by a single coordinator."""
    initialized: bool = False
    syncing: bool = False
    sync_count: int = 0
    error_count: int = 0
    last_sync_time: Optional[datetime] = None
    last_error: Optional[str] = None
    events_processed: int = 0
    events_rejected: int = 0
    _phase: SyncPhase = field(default=SyncPhase.IDLE, repr=False)

    @property
    def phase(self) -> SyncPhase:
        return self._phase

    def transition(self, target: SyncPhase) -> bool:
        """Move to ``target`` if allowed; undefined transitions are ignored."""
        if target not in TRANSITIONS[self._phase]:
            logger.debug(f"Ignoring phase transition {self._phase.value} -> {target.value}")
            return False
        self._phase = target
        return True


# =============================================================================
# Periodic Task
# =============================================================================

class PeriodicTask:
    """
    Supervised background task running a coroutine on a fixed interval.

    The first tick fires one interval after :meth:`start`. Ticks are awaited
    in the loop, so a timer never overlaps itself, and :meth:`stop` lets an
    in-flight tick finish before returning.
    """

    def __init__(self, name: str, interval: float, callback: Callable[[], Awaitable[None]]):
        self.name = name
        self.interval = interval
        self.callback = callback
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._next_run: Optional[float] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start ticking, replacing any previous task."""
        if self._task is not None:
            self._stop_event.set()
            self._task.cancel()

        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(
            self._run(self._stop_event),
            name=f"clansync-{self.name}",
        )
        logger.info(f"{self.name} timer started (interval: {self.interval:g}s)")

    async def stop(self) -> None:
        """Stop ticking and join the task."""
        task, self._task = self._task, None
        self._next_run = None
        if task is None:
            return

        self._stop_event.set()
        try:
            await task
        except asyncio.CancelledError:
            if not task.cancelled():
                raise

    def next_run_in(self) -> Optional[float]:
        """Seconds until the next tick, or None when stopped."""
        if not self.running or self._next_run is None:
            return None
        return max(0.0, self._next_run - asyncio.get_running_loop().time())

    async def _run(self, stop_event: asyncio.Event) -> None:
        loop = asyncio.get_running_loop()
        while not stop_event.is_set():
            self._next_run = loop.time() + self.interval
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.callback()
            except Exception as e:
                logger.error(f"{self.name} tick failed: {e}")


# =============================================================================
# Sync Coordinator
# =============================================================================

class SyncCoordinator:
    """Owns cache freshness policy between the backend and the local cache."""

    def __init__(
        self,
        api: RemoteDataSource,
        cache: CacheStore,
        events: EventSource,
        config: Optional[SyncConfig] = None,
    ):
        self.api = api
        self.cache = cache
        self.events = events
        self.config = config or SyncConfig()
        self.state = SyncState()

        self._periodic_timer = PeriodicTask(
            "periodic-sync", self.config.sync_interval, self.run_periodic_sync
        )
        self._health_timer = PeriodicTask(
            "health-check", self.config.health_check_interval, self.run_health_check
        )
        self._listeners: list[tuple[str, Callable[[Any], None]]] = []
        self._generation = 0
        self._init_lock = asyncio.Lock()

        self._handlers: dict[type, Callable[[Any], None]] = {
            CacheInvalidated: self._on_cache_invalidated,
            DataUpdated: self._on_data_updated,
            UserOnline: self._on_presence_changed,
            UserOffline: self._on_presence_changed,
            ClanUpdated: self._on_clan_updated,
            FederationUpdated: self._on_federation_updated,
            MissionUpdated: self._on_mission_updated,
        }

    # === Lifecycle ===

    async def initialize(self) -> None:
        """
        Start the coordinator.

        Subscribes to realtime events, starts both timers and performs the
        initial sync. Concurrent callers wait for the first one to finish;
        calling it again once initialized is a no-op.

        Raises:
            InitializationError: subscription, timer startup or initial sync
                raised; nothing is left running and ``initialized`` stays False
        """
        async with self._init_lock:
            if self.state.initialized:
                return

            generation = self._generation
            try:
                logger.info("Initializing sync coordinator...")
                self._subscribe()
                self._periodic_timer.start()
                self._health_timer.start()
                await self._perform_initial_sync()
            except Exception as e:
                logger.error(f"Failed to initialize sync coordinator: {e}")
                await self._teardown()
                raise InitializationError(f"Sync coordinator initialization failed: {e}") from e
            except BaseException:
                logger.warning("Sync coordinator initialization cancelled")
                await self._teardown()
                raise

            if generation != self._generation:
                logger.warning("Coordinator disposed during initialization; staying stopped")
                return

            self.state.initialized = True
            logger.info("Sync coordinator initialized successfully")

    async def dispose(self) -> None:
        """Stop timers, drop event subscriptions and reset ``initialized``."""
        self._generation += 1
        await self._teardown()
        if self.state.initialized:
            logger.info("Sync coordinator disposed")
        self.state.initialized = False

    async def _teardown(self) -> None:
        self._unsubscribe()
        await self._periodic_timer.stop()
        await self._health_timer.stop()

    # === Sync Operations ===

    async def _perform_initial_sync(self) -> None:
        if self.state.syncing:
            logger.debug("Sync already in progress, skipping initial sync")
            return

        self.state.syncing = True
        self.state.transition(SyncPhase.INITIAL_SYNC)
        try:
            logger.info("Performing initial sync...")
            needs_sync = not all(
                self.cache.is_cache_valid(data_type)
                for data_type in ("user", "stats", "federations")
            )
            # User data is not refreshed here; only stats and federations are essential
            if needs_sync:
                await self._sync_essential_data()

            self.state.transition(SyncPhase.IDLE)
            logger.info("Initial sync completed")
        except asyncio.CancelledError:
            self.state.transition(SyncPhase.IDLE)
            raise
        except Exception as e:
            self.state.last_error = str(e)
            self.state.transition(SyncPhase.ERROR)
            logger.error(f"Initial sync failed: {e}")
        finally:
            self.state.syncing = False

    async def run_periodic_sync(self) -> None:
        """Timer tick: purge expired entries and refresh volatile data."""
        if self.state.syncing:
            logger.debug("Sync already in progress, skipping periodic sync")
            return

        self.state.syncing = True
        try:
            self.state.transition(SyncPhase.SYNCING)
            self.state.sync_count += 1
            logger.info("Performing periodic sync...")

            self.cache.clear_expired_cache()
            await self._sync_volatile_data()

            self.state.last_sync_time = datetime.now(timezone.utc)
            self.state.transition(SyncPhase.IDLE)
            logger.debug("Periodic sync completed")
        except Exception as e:
            self.state.error_count += 1
            self.state.last_error = str(e)
            self.state.transition(SyncPhase.ERROR)
            logger.error(f"Periodic sync failed: {e}")
        finally:
            self.state.syncing = False

    async def force_sync(self) -> bool:
        """
        Clear the whole cache and reload essential data.

        Returns:
            True if the sync ran, False if another sync was already running

        Raises:
            SyncError: the reload failed
        """
        if self.state.syncing:
            logger.warning("Sync already in progress")
            return False

        self.state.syncing = True
        try:
            self.state.transition(SyncPhase.MANUAL_SYNC)

            self.cache.clear_all_cache()
            await self._sync_essential_data()

            self.state.last_sync_time = datetime.now(timezone.utc)
            self.state.transition(SyncPhase.IDLE)
            logger.info("Manual sync completed")
            return True
        except Exception as e:
            self.state.error_count += 1
            self.state.last_error = str(e)
            self.state.transition(SyncPhase.ERROR)
            logger.error(f"Manual sync failed: {e}")
            if isinstance(e, SyncError):
                raise
            raise SyncError(f"Manual sync failed: {e}") from e
        finally:
            self.state.syncing = False

    async def run_health_check(self) -> None:
        """Timer tick: probe the backend and purge expired entries past the threshold."""
        try:
            response = await self.api.get(
                HEALTH_PATH,
                require_auth=False,
                timeout=self.config.health_check_timeout,
                retry=False,
            )
            if not response.success:
                logger.warning(
                    f"Health check failed: {response.message or 'unhealthy response'}"
                )
        except Exception as e:
            logger.warning(f"Health check failed: {e}")

        try:
            expired = self.cache.get_health_info().get("expired_entries", 0)
            if expired > self.config.expired_cleanup_threshold:
                logger.info(f"Found {expired} expired cache entries, cleaning up...")
                self.cache.clear_expired_cache()
        except Exception as e:
            logger.warning(f"Cache health check failed: {e}")

    async def _sync_essential_data(self) -> None:
        try:
            await self._sync_global_stats()
            await self._sync_federations()
            logger.info("Essential data sync completed")
        except Exception as e:
            logger.error(f"Essential data sync failed: {e}")
            raise

    async def _sync_volatile_data(self) -> None:
        try:
            if not self.cache.is_cache_valid("stats"):
                await self._sync_global_stats()
        except Exception as e:
            logger.error(f"Volatile data sync failed: {e}")

    async def _sync_global_stats(self) -> None:
        response = await self.api.get(GLOBAL_STATS_PATH, timeout=self.config.sync_timeout)
        if not response.success:
            raise RemoteDataError(
                f"Global stats fetch failed: {response.message or 'unknown error'}",
                path=GLOBAL_STATS_PATH,
            )
        self.cache.cache_stats(response.data)
        logger.info("Global stats synced successfully")

    async def _sync_federations(self) -> None:
        response = await self.api.get(FEDERATIONS_PATH, timeout=self.config.sync_timeout)
        if not response.success:
            raise RemoteDataError(
                f"Federations fetch failed: {response.message or 'unknown error'}",
                path=FEDERATIONS_PATH,
            )
        if not isinstance(response.data, list):
            raise RemoteDataError("Federations payload is not a list", path=FEDERATIONS_PATH)
        self.cache.cache_federations(response.data)
        logger.info("Federations synced successfully")

    async def sync_clans(self, federation_id: Optional[str] = None) -> None:
        """
        Fetch and cache the clan list.

        Args:
            federation_id: Restrict to the clans of one federation
        """
        params = {"federationId": federation_id} if federation_id else None
        response = await self.api.get(CLANS_PATH, timeout=self.config.sync_timeout, params=params)
        if not response.success:
            raise RemoteDataError(
                f"Clans fetch failed: {response.message or 'unknown error'}",
                path=CLANS_PATH,
            )
        if not isinstance(response.data, list):
            raise RemoteDataError("Clans payload is not a list", path=CLANS_PATH)

        self.cache.cache_clans(response.data, federation_id=federation_id)
        suffix = f" for federation {federation_id}" if federation_id else ""
        logger.info(f"Clans synced successfully{suffix}")

    # === Event Handling ===

    def _subscribe(self) -> None:
        if self._listeners:
            logger.debug("Already subscribed to realtime events")
            return

        for event_name in (
            CacheInvalidated.event_name,
            DataUpdated.event_name,
            UserOnline.event_name,
            UserOffline.event_name,
            ClanUpdated.event_name,
            FederationUpdated.event_name,
            MissionUpdated.event_name,
        ):
            listener = self._make_listener(event_name)
            self.events.on(event_name, listener)
            self._listeners.append((event_name, listener))
        logger.info(f"Subscribed to {len(self._listeners)} realtime events")

    def _unsubscribe(self) -> None:
        while self._listeners:
            event_name, listener = self._listeners.pop()
            try:
                self.events.off(event_name, listener)
            except Exception as e:
                logger.warning(f"Failed to unsubscribe from {event_name}: {e}")

    def _make_listener(self, event_name: str) -> Callable[[Any], None]:
        def listener(payload: Any) -> None:
            self.handle_event(event_name, payload)
        return listener

    def handle_event(self, event_name: str, payload: Any) -> None:
        """Apply one raw realtime event to the cache. Never raises."""
        try:
            event = parse_event(event_name, payload)
        except MalformedEventError as e:
            self.state.events_rejected += 1
            logger.warning(f"Discarding event: {e}")
            return

        try:
            self._handlers[type(event)](event)
            self.state.events_processed += 1
        except Exception as e:
            logger.error(f"Error handling {event_name}: {e}")

    def _on_cache_invalidated(self, event: CacheInvalidated) -> None:
        self.cache.invalidate_cache(event.data_type, event.entity_id)
        suffix = f" (id: {event.entity_id})" if event.entity_id else ""
        logger.info(f"Cache invalidated for type: {event.data_type}{suffix}")

    def _on_data_updated(self, event: DataUpdated) -> None:
        if event.data_type == "stats":
            if event.data is not None:
                self.cache.cache_stats(event.data)
        elif event.data_type == "user":
            self.cache.invalidate_cache("user")
        else:
            logger.info(f"Unhandled data update type: {event.data_type}")

    def _on_presence_changed(self, event: SyncEvent) -> None:
        # Presence feeds the online counts in global stats
        self.cache.invalidate_cache("stats")
        state = "online" if isinstance(event, UserOnline) else "offline"
        logger.info(f"User {event.user_id} status changed to {state}")

    def _on_clan_updated(self, event: ClanUpdated) -> None:
        self.cache.invalidate_clan_related(event.clan_id)
        logger.info(f"Clan cache invalidated for clan: {event.clan_id}")

    def _on_federation_updated(self, event: FederationUpdated) -> None:
        self.cache.invalidate_federation_related(event.federation_id)
        logger.info(f"Federation cache invalidated for federation: {event.federation_id}")

    def _on_mission_updated(self, event: MissionUpdated) -> None:
        self.cache.invalidate_cache("missions", event.clan_id)
        self.cache.invalidate_cache("stats")
        logger.info(f"Mission cache invalidated for clan: {event.clan_id}")

    # === Status ===

    def get_sync_status(self) -> dict:
        """Get a read-only snapshot of sync state."""
        next_run = self._periodic_timer.next_run_in()
        last_sync = self.state.last_sync_time
        return {
            "initialized": self.state.initialized,
            "syncing": self.state.syncing,
            "status": self.state.phase.value,
            "sync_count": self.state.sync_count,
            "error_count": self.state.error_count,
            "last_sync_time": last_sync.isoformat() if last_sync else None,
            "next_sync_in_seconds": int(round(next_run)) if next_run is not None else None,
            "events_processed": self.state.events_processed,
            "events_rejected": self.state.events_rejected,
            "last_error": self.state.last_error,
        }
