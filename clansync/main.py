"""
Clan Sync - Command Line Entry Point

Composition root: builds the cache, API client, event source and coordinator
and wires them together.

Usage:
    clansync --status           # Print sync status as JSON
    clansync --sync             # Clear cache and reload essential data
    clansync --clans [FED_ID]   # Sync clan list, optionally for one federation
    clansync --run              # Keep syncing until interrupted
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from contextlib import asynccontextmanager
from typing import Optional

from .api import ApiClient
from .cache import LocalCache
from .config import SyncConfig, get_settings
from .coordinator import SyncCoordinator
from .events import LocalEventSource
from .exceptions import SyncError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def sync_session(config: Optional[SyncConfig] = None):
    """
    Context manager for a coordinator session.

    Usage:
        async with sync_session() as coordinator:
            await coordinator.initialize()
            await coordinator.force_sync()
    """
    config = config or get_settings()
    cache = LocalCache(
        config.cache_db_path,
        ttls=config.cache_ttls,
        default_ttl=config.default_cache_ttl,
    )
    api = ApiClient(config)
    coordinator = SyncCoordinator(api, cache, LocalEventSource(), config)
    try:
        yield coordinator
    finally:
        await coordinator.dispose()
        await api.close()


async def _run_until_signalled(coordinator: SyncCoordinator) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops lack signal handlers; Ctrl+C still raises KeyboardInterrupt
            pass

    logger.info("Sync coordinator running, press Ctrl+C to stop")
    await stop.wait()


async def run(args: argparse.Namespace, config: SyncConfig) -> int:
    """Execute the requested CLI actions; returns the process exit code."""
    async with sync_session(config) as coordinator:
        await coordinator.initialize()

        if args.sync:
            try:
                await coordinator.force_sync()
            except SyncError as e:
                print(f"Sync failed: {e}", file=sys.stderr)
                return 1

        if args.clans is not None:
            try:
                await coordinator.sync_clans(args.clans or None)
            except SyncError as e:
                print(f"Clan sync failed: {e}", file=sys.stderr)
                return 1

        if args.status:
            print(json.dumps(coordinator.get_sync_status(), indent=2))

        if args.run:
            await _run_until_signalled(coordinator)

    return 0


def main(argv: Optional[list[str]] = None) -> int:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Clan/federation cache sync client")
    parser.add_argument("--status", action="store_true", help="Show sync status")
    parser.add_argument("--sync", action="store_true", help="Force a full resync")
    parser.add_argument(
        "--clans",
        nargs="?",
        const="",
        default=None,
        metavar="FEDERATION_ID",
        help="Sync clan list, optionally for one federation",
    )
    parser.add_argument("--run", action="store_true", help="Run until interrupted")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    args = parser.parse_args(argv)
    config = get_settings()

    # Configure logging
    log_level = logging.DEBUG if (args.verbose or config.debug) else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        return asyncio.run(run(args, config))
    except KeyboardInterrupt:
        return 0
    except SyncError as e:
        logger.error(f"{e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
