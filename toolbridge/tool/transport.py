from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Awaitable, Dict, List, Optional, TextIO

import anyio
from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.shared.exceptions import McpError
from mcp.types import METHOD_NOT_FOUND, Implementation, InitializeResult
from pydantic import AnyUrl

from toolbridge.constants import (
    CALL_TIMEOUT_SECONDS,
    CLIENT_NAME,
    CLIENT_VERSION,
    CONNECT_TIMEOUT_SECONDS,
)

from .errors import (
    ConnectTimeout,
    HandshakeError,
    InvocationError,
    ProcessSpawnError,
    ProtocolUnsupported,
    TransportClosed,
)
from .model import (
    PromptDescriptor,
    PromptMessages,
    ResourceContents,
    ResourceDescriptor,
    ToolDescriptor,
    ToolOutput,
)

logger = logging.getLogger(__name__)

# mcp.types.CONNECTION_CLOSED; reported for requests pending when the pipe drops.
CONNECTION_CLOSED = -32000
CLOSE_TIMEOUT_SECONDS = 5.0

_STREAM_ERRORS = (anyio.ClosedResourceError, anyio.BrokenResourceError, anyio.EndOfStream)


def _leaf(exc: BaseException) -> BaseException:
    while isinstance(exc, BaseExceptionGroup) and exc.exceptions:
        exc = exc.exceptions[0]
    return exc


class StdioProtocolClient:
    """One MCP session over a child process's stdin/stdout.

    The stdio and session context managers are entered and exited inside a
    single runner task, so the anyio cancel scopes they open never cross
    tasks. Other tasks only issue requests on the live session.
    """

    def __init__(
        self,
        server_id: str,
        params: StdioServerParameters,
        *,
        connect_timeout: float = CONNECT_TIMEOUT_SECONDS,
        call_timeout: float = CALL_TIMEOUT_SECONDS,
        stderr_path: Optional[Path] = None,
    ) -> None:
        self.server_id = server_id
        self.params = params
        self.connect_timeout = connect_timeout
        self.call_timeout = call_timeout
        self.stderr_path = stderr_path
        self.server_info: Optional[InitializeResult] = None
        self._session: Optional[ClientSession] = None
        self._task: Optional[asyncio.Task] = None
        self._closing = asyncio.Event()
        self._errlog: Optional[TextIO] = None

    @property
    def is_alive(self) -> bool:
        return (
            self._task is not None
            and not self._task.done()
            and self._session is not None
        )

    async def connect(self) -> InitializeResult:
        if self._task is not None:
            raise HandshakeError(f"Client for '{self.server_id}' was already started")

        self._errlog = self._open_errlog()
        ready: asyncio.Future = asyncio.get_running_loop().create_future()
        self._task = asyncio.create_task(
            self._run(ready), name=f"toolbridge-session-{self.server_id}"
        )
        try:
            self.server_info = await asyncio.wait_for(ready, timeout=self.connect_timeout)
        except asyncio.TimeoutError as e:
            logger.warning(
                "Handshake with %s timed out after %ss, terminating process",
                self.server_id,
                self.connect_timeout,
            )
            await self._abort()
            raise ConnectTimeout(self.server_id, self.connect_timeout) from e
        except BaseException:
            await self._abort()
            raise
        return self.server_info

    async def _run(self, ready: asyncio.Future) -> None:
        try:
            async with stdio_client(self.params, errlog=self._errlog or sys.stderr) as (
                read,
                write,
            ):
                async with ClientSession(
                    read,
                    write,
                    client_info=Implementation(name=CLIENT_NAME, version=CLIENT_VERSION),
                ) as session:
                    result = await session.initialize()
                    self._session = session
                    if not ready.done():
                        ready.set_result(result)
                    await self._closing.wait()
        except Exception as e:
            error = self._translate_startup_error(_leaf(e))
            if not ready.done():
                ready.set_exception(error)
            else:
                logger.warning("Session for %s ended: %s", self.server_id, error)
        finally:
            self._session = None

    def _translate_startup_error(self, exc: BaseException) -> Exception:
        if isinstance(exc, OSError):
            err = ProcessSpawnError(f"Failed to start '{self.params.command}': {exc}")
        elif isinstance(exc, McpError):
            err = HandshakeError(f"Handshake with '{self.server_id}' failed: {exc.error.message}")
        else:
            detail = str(exc) or f"{type(exc).__name__}: connection closed"
            err = HandshakeError(f"Handshake with '{self.server_id}' failed: {detail}")
        err.__cause__ = exc
        return err

    def _open_errlog(self) -> Optional[TextIO]:
        if self.stderr_path is None:
            return None
        self.stderr_path.parent.mkdir(parents=True, exist_ok=True)
        return open(self.stderr_path, "a", encoding="utf-8")

    def _release(self) -> None:
        self._task = None
        self._session = None
        if self._errlog is not None:
            self._errlog.close()
            self._errlog = None

    async def _abort(self) -> None:
        # Cancelling the runner unwinds stdio_client, which terminates the child.
        if self._task is not None:
            if not self._task.done():
                self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        self._release()

    async def close(self) -> None:
        if self._task is None:
            return
        self._closing.set()
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=CLOSE_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("Session for %s did not shut down cleanly, cancelling", self.server_id)
        await self._abort()

    def _mark_closed(self) -> TransportClosed:
        # Let the runner unwind; the owner reaps it through close().
        self._session = None
        self._closing.set()
        return TransportClosed(f"Server '{self.server_id}' closed the connection")

    def _require_session(self) -> ClientSession:
        if not self.is_alive:
            raise TransportClosed(f"Server '{self.server_id}' is not running")
        return self._session

    async def _request(self, method: str, request: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(request, timeout=self.call_timeout)
        except McpError as e:
            if e.error.code == METHOD_NOT_FOUND:
                raise ProtocolUnsupported(self.server_id, method) from e
            if e.error.code == CONNECTION_CLOSED:
                raise self._mark_closed() from e
            raise InvocationError(e.error.message, code=e.error.code) from e
        except _STREAM_ERRORS as e:
            raise self._mark_closed() from e
        except asyncio.TimeoutError as e:
            raise InvocationError(f"{method} timed out after {self.call_timeout:g}s") from e

    async def list_tools(self) -> List[ToolDescriptor]:
        session = self._require_session()
        result = await self._request("tools/list", session.list_tools())
        return [ToolDescriptor.model_validate(t.model_dump(mode="json")) for t in result.tools]

    async def list_resources(self) -> List[ResourceDescriptor]:
        session = self._require_session()
        result = await self._request("resources/list", session.list_resources())
        return [
            ResourceDescriptor.model_validate(r.model_dump(mode="json"))
            for r in result.resources
        ]

    async def list_prompts(self) -> List[PromptDescriptor]:
        session = self._require_session()
        result = await self._request("prompts/list", session.list_prompts())
        prompts = []
        for p in result.prompts:
            data = p.model_dump(mode="json")
            data["arguments"] = data.get("arguments") or []
            prompts.append(PromptDescriptor.model_validate(data))
        return prompts

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> ToolOutput:
        session = self._require_session()
        result = await self._request("tools/call", session.call_tool(name, arguments=arguments))
        return ToolOutput(
            content=[c.model_dump(mode="json") for c in result.content],
            structured_content=getattr(result, "structuredContent", None),
            is_error=bool(result.isError),
        )

    async def read_resource(self, uri: str) -> ResourceContents:
        session = self._require_session()
        result = await self._request("resources/read", session.read_resource(AnyUrl(uri)))
        return ResourceContents(
            uri=uri, contents=[c.model_dump(mode="json") for c in result.contents]
        )

    async def get_prompt(self, name: str, arguments: Dict[str, str]) -> PromptMessages:
        session = self._require_session()
        result = await self._request(
            "prompts/get", session.get_prompt(name, arguments=arguments)
        )
        return PromptMessages(
            name=name,
            description=result.description,
            messages=[m.model_dump(mode="json") for m in result.messages],
        )
