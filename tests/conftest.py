"""
Shared fixtures for the clan sync test suite.

Coordinator tests run against a real SQLite cache in a temp directory, an
in-process event source and a scripted fake backend.
"""

import asyncio
from typing import Any, Optional

import pytest
import pytest_asyncio

from clansync.api import ApiResponse, FEDERATIONS_PATH, GLOBAL_STATS_PATH, HEALTH_PATH
from clansync.cache import LocalCache
from clansync.config import SyncConfig
from clansync.coordinator import SyncCoordinator
from clansync.events import LocalEventSource


class FakeRemote:
    """Scripted RemoteDataSource: per-path responses, exceptions or gates."""

    def __init__(self):
        self.responses: dict[str, Any] = {
            HEALTH_PATH: ApiResponse(success=True, data={"status": "ok"}),
            GLOBAL_STATS_PATH: ApiResponse(success=True, data={"online_users": 5}),
            FEDERATIONS_PATH: ApiResponse(success=True, data=[{"id": "f1", "name": "North"}]),
        }
        self.gates: dict[str, asyncio.Event] = {}
        self.calls: list[dict] = []
        self.closed = False

    def paths(self) -> list[str]:
        return [call["path"] for call in self.calls]

    async def close(self) -> None:
        self.closed = True

    async def get(
        self,
        path: str,
        *,
        require_auth: bool = True,
        timeout: Optional[float] = None,
        params: Optional[dict[str, str]] = None,
        retry: bool = True,
    ) -> ApiResponse:
        self.calls.append({
            "path": path,
            "require_auth": require_auth,
            "timeout": timeout,
            "params": params,
            "retry": retry,
        })
        gate = self.gates.get(path)
        if gate is not None:
            await gate.wait()

        result = self.responses.get(path, ApiResponse(success=True, data=[]))
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def config(tmp_path):
    """Config with long timer intervals so ticks only happen when tests call them."""
    return SyncConfig(
        cache_dir=tmp_path,
        sync_interval=3600,
        health_check_interval=3600,
        base_retry_delay=0,
        api_token="test-token",
    )


@pytest.fixture
def cache(config):
    return LocalCache(config.cache_db_path, ttls=config.cache_ttls)


@pytest.fixture
def events():
    return LocalEventSource()


@pytest.fixture
def remote():
    return FakeRemote()


@pytest_asyncio.fixture
async def coordinator(remote, cache, events, config):
    coordinator = SyncCoordinator(remote, cache, events, config)
    yield coordinator
    await coordinator.dispose()
