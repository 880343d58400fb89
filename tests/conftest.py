"""Shared fixtures for storage_coordinator tests."""

from __future__ import annotations

import os

import pytest
from aiohttp.test_utils import TestClient, TestServer

from storage_coordinator.api.server import build_app
from storage_coordinator.daemon import CoordinatorDaemon
from storage_coordinator.market.projector import EventProjector
from storage_coordinator.market.queries import MarketplaceQueryService
from storage_coordinator.models.config import CoordinatorConfig
from storage_coordinator.providers.hub import ProviderHub
from storage_coordinator.providers.registry import ProviderConnection, ProviderRegistry
from storage_coordinator.storage.sqlite import SQLiteMarketStore
from storage_coordinator.transfers.dispatcher import FragmentDispatcher

from tests.factories import PROVIDER_A
from tests.mocks import FakeChannel, MockPoller

CONTRACT_ID = "CCEDYFIHUCJFITWEOT7BWUO2HBQQ72L244ZXQ4YNOC6FYRDN3MKDQFK7"


def make_test_config(**overrides) -> CoordinatorConfig:
    """Build a CoordinatorConfig suitable for testing."""
    defaults = dict(
        host="127.0.0.1",
        port=0,
        poll_interval=1,
        error_backoff=1,
        rpc_url="https://soroban-testnet.stellar.org",
        contract_id=CONTRACT_ID,
        db_path=":memory:",
        transfer_timeout=5.0,
        reaper_interval=0.05,
        max_upload_mb=1,
        ws_heartbeat=None,
    )
    defaults.update(overrides)
    return CoordinatorConfig(**defaults)


def register_provider(
    registry: ProviderRegistry,
    address: str = PROVIDER_A,
    available_storage: int = 100,
    connection_id: str | None = None,
    fail: bool = False,
) -> tuple[ProviderConnection, FakeChannel]:
    """Register a provider with a FakeChannel; returns (connection, channel)."""
    channel = FakeChannel(fail=fail)
    conn_id = connection_id or f"conn-{len(registry) + 1}"
    conn = registry.register(conn_id, address, available_storage, channel)
    return conn, channel


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep STORAGE_COORD_* variables of the host out of the tests."""
    for key in list(os.environ):
        if key.startswith("STORAGE_COORD_"):
            monkeypatch.delenv(key)


@pytest.fixture
def test_config():
    """Default CoordinatorConfig for tests."""
    return make_test_config()


@pytest.fixture
async def store():
    """Initialized in-memory SQLiteMarketStore."""
    s = SQLiteMarketStore(":memory:")
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def projector(store):
    return EventProjector(store)


@pytest.fixture
def registry():
    return ProviderRegistry()


@pytest.fixture
def dispatcher(registry, store):
    return FragmentDispatcher(registry, store, transfer_timeout=5.0)


@pytest.fixture
def queries(store):
    return MarketplaceQueryService(store)


@pytest.fixture
def hub(registry, dispatcher):
    return ProviderHub(registry, dispatcher, heartbeat=None)


@pytest.fixture
def mock_poller():
    return MockPoller()


@pytest.fixture
async def client(queries, dispatcher, registry, hub):
    """aiohttp TestClient over the full HTTP app."""
    app = build_app(queries, dispatcher, registry, hub, max_upload_bytes=1024 * 1024)
    async with TestClient(TestServer(app)) as c:
        yield c


@pytest.fixture
async def daemon(test_config, mock_poller):
    """CoordinatorDaemon on an in-memory store with a mocked poller."""
    d = CoordinatorDaemon(test_config)
    d.poller = mock_poller
    await d.store.initialize()
    yield d
    await d.store.close()
