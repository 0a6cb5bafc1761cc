import asyncio

import pytest

from toolbridge.test.fakes import FakeProtocolClient, make_connection
from toolbridge.tool.discovery import discover_capabilities
from toolbridge.tool.errors import DuplicateConnectionError
from toolbridge.tool.registry import ConnectionRegistry


class TestDiscovery:
    @pytest.mark.asyncio
    async def test_unsupported_category_is_empty(self):
        client = FakeProtocolClient("s", tools=["search"], prompts=["intro"], unsupported=("resources",))

        capabilities = await discover_capabilities("s", client)

        assert [t.name for t in capabilities.tools] == ["search"]
        assert capabilities.resources == []
        assert [p.name for p in capabilities.prompts] == ["intro"]

    @pytest.mark.asyncio
    async def test_failing_probe_does_not_affect_others(self):
        client = FakeProtocolClient("s", tools=["search"], resources=["memo://a"], broken=("tools",))

        capabilities = await discover_capabilities("s", client)

        assert capabilities.tools == []
        assert [r.uri for r in capabilities.resources] == ["memo://a"]
        assert capabilities.summary() == "1 resources"

    @pytest.mark.asyncio
    async def test_stalled_listing_times_out_as_empty(self):
        client = FakeProtocolClient("s", tools=["search"], prompts=["intro"], hanging=("resources",))

        capabilities = await asyncio.wait_for(discover_capabilities("s", client, timeout=0.05), 5)

        assert [t.name for t in capabilities.tools] == ["search"]
        assert capabilities.resources == []
        assert [p.name for p in capabilities.prompts] == ["intro"]


class TestRegistry:
    @pytest.mark.asyncio
    async def test_projections_follow_registration_order(self):
        registry = ConnectionRegistry()
        registry.put(await make_connection("b", tools=["search", "fetch"]))
        registry.put(await make_connection("a", tools=["search"], resources=["memo://x"]))

        tools = registry.get_all_tools()

        assert [(t.server_id, t.name) for t in tools] == [("b", "search"), ("b", "fetch"), ("a", "search")]
        assert [r.server_id for r in registry.get_all_resources()] == ["a"]
        assert registry.get_connected_server_ids() == ["b", "a"]
        assert registry.get_connection_status() == {"b": True, "a": True}

    @pytest.mark.asyncio
    async def test_projection_does_not_tag_stored_descriptors(self):
        registry = ConnectionRegistry()
        conn = await make_connection("a", tools=["search"])
        registry.put(conn)

        registry.get_all_tools()

        assert conn.tools[0].server_id is None

    @pytest.mark.asyncio
    async def test_duplicate_put_rejected(self):
        registry = ConnectionRegistry()
        registry.put(await make_connection("a"))

        with pytest.raises(DuplicateConnectionError):
            registry.put(await make_connection("a"))

    @pytest.mark.asyncio
    async def test_remove(self):
        registry = ConnectionRegistry()
        registry.put(await make_connection("a", tools=["search"]))

        assert registry.remove("a").server_id == "a"
        assert registry.remove("a") is None
        assert "a" not in registry
        assert registry.get_all_tools() == []

    @pytest.mark.asyncio
    async def test_disconnected_entries_are_hidden_from_projections(self):
        registry = ConnectionRegistry()
        conn = await make_connection("a", tools=["search"])
        registry.put(conn)
        conn.connected = False

        assert registry.get_all_tools() == []
        assert registry.get_connected_server_ids() == []
        assert registry.get_connection_status() == {"a": False}

    @pytest.mark.asyncio
    async def test_detailed_status(self):
        registry = ConnectionRegistry()
        registry.put(await make_connection("a", tools=["search"], prompts=["intro"]))

        status = registry.get_detailed_status().model_dump(by_alias=True)

        assert status["totalServers"] == 1
        assert status["connectedServers"] == 1
        [entry] = status["servers"]
        assert entry["toolCount"] == 1
        assert entry["promptCount"] == 1
        assert entry["hasProcess"] is True
        assert entry["tools"] == [{"name": "search", "description": "search on a"}]
