from typing import Any, Dict, List

import pytest

from toolbridge.test.fakes import FakeClientFactory
from toolbridge.tool.config_loader import ServerConfigStore
from toolbridge.tool.manager import ConnectionManager
from toolbridge.tool.platform_resolver import PlatformCommandResolver
from toolbridge.tool.types import ServerConfig, ServerData


@pytest.fixture
def config_path(tmp_path):
    return tmp_path / "servers.yaml"


@pytest.fixture
def store(config_path):
    return ServerConfigStore(config_path)


@pytest.fixture
def write_servers(store):
    def _write(servers: List[ServerConfig]) -> ServerConfigStore:
        assert store.save(ServerData(servers=list(servers)))
        return store

    return _write


@pytest.fixture
def make_manager(store):
    """Manager wired to fake clients; servers launched through ``npx`` skip validation."""

    def _make(per_server: Dict[str, Dict[str, Any]] = None, **kwargs: Any):
        factory = FakeClientFactory(per_server)
        kwargs.setdefault("resolver", PlatformCommandResolver(platform="linux"))
        manager = ConnectionManager(store, client_factory=factory, **kwargs)
        return manager, factory

    return _make
