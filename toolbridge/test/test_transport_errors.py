"""Error mapping at the transport boundary, without spawning a provider."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import anyio
import pytest
from mcp import StdioServerParameters
from mcp.shared.exceptions import McpError
from mcp.types import (
    INVALID_PARAMS,
    METHOD_NOT_FOUND,
    ErrorData,
    ListPromptsResult,
    ListToolsResult,
    Prompt,
    Tool,
)

from toolbridge.tool.errors import InvocationError, ProtocolUnsupported, TransportClosed
from toolbridge.tool.transport import CONNECTION_CLOSED, StdioProtocolClient


@pytest.fixture
def client():
    return StdioProtocolClient("s", StdioServerParameters(command="unused"), call_timeout=0.2)


def mcp_error(code, message="boom"):
    return McpError(ErrorData(code=code, message=message))


class TestRequestMapping:
    @pytest.mark.asyncio
    async def test_method_not_found(self, client):
        request = AsyncMock(side_effect=mcp_error(METHOD_NOT_FOUND, "Method not found"))

        with pytest.raises(ProtocolUnsupported) as excinfo:
            await client._request("resources/list", request())

        assert excinfo.value.method == "resources/list"

    @pytest.mark.asyncio
    async def test_other_protocol_errors_are_invocation_errors(self, client):
        request = AsyncMock(side_effect=mcp_error(INVALID_PARAMS, "bad args"))

        with pytest.raises(InvocationError) as excinfo:
            await client._request("tools/call", request())

        assert excinfo.value.code == INVALID_PARAMS
        assert str(excinfo.value) == "bad args"

    @pytest.mark.asyncio
    async def test_connection_closed_marks_transport_closed(self, client):
        request = AsyncMock(side_effect=mcp_error(CONNECTION_CLOSED, "Connection closed"))

        with pytest.raises(TransportClosed):
            await client._request("tools/call", request())

        assert client.is_alive is False

    @pytest.mark.asyncio
    async def test_broken_stream(self, client):
        request = AsyncMock(side_effect=anyio.BrokenResourceError())

        with pytest.raises(TransportClosed):
            await client._request("tools/call", request())

    @pytest.mark.asyncio
    async def test_call_timeout(self, client):
        with pytest.raises(InvocationError, match="timed out after 0.2s"):
            await client._request("tools/call", asyncio.sleep(5))

    @pytest.mark.asyncio
    async def test_requests_need_a_session(self, client):
        with pytest.raises(TransportClosed, match="is not running"):
            await client.list_tools()


class TestResultConversion:
    @pytest.mark.asyncio
    async def test_list_tools(self, client):
        client._task = asyncio.ensure_future(asyncio.sleep(60))
        client._session = MagicMock()
        client._session.list_tools = AsyncMock(
            return_value=ListToolsResult(
                tools=[Tool(name="search", description="Find things", inputSchema={"type": "object"})]
            )
        )
        try:
            [tool] = await client.list_tools()
        finally:
            client._task.cancel()

        assert tool.name == "search"
        assert tool.description == "Find things"
        assert tool.input_schema == {"type": "object"}
        assert tool.server_id is None

    @pytest.mark.asyncio
    async def test_prompt_without_arguments(self, client):
        client._task = asyncio.ensure_future(asyncio.sleep(60))
        client._session = MagicMock()
        client._session.list_prompts = AsyncMock(
            return_value=ListPromptsResult(prompts=[Prompt(name="intro")])
        )
        try:
            [prompt] = await client.list_prompts()
        finally:
            client._task.cancel()

        assert prompt.name == "intro"
        assert prompt.arguments == []
