from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from mcp import StdioServerParameters

from toolbridge.constants import (
    CALL_TIMEOUT_SECONDS,
    CONNECT_TIMEOUT_SECONDS,
    DISCOVERY_TIMEOUT_SECONDS,
)

from .config_loader import ServerConfigStore, build_stdio_params
from .discovery import discover_capabilities
from .errors import (
    CommandValidationError,
    PromptNotFound,
    ResourceNotFound,
    ToolBridgeError,
    TransportClosed,
)
from .executor import ConcurrentToolExecutor
from .model import (
    DetailedStatus,
    PromptDescriptor,
    PromptMessages,
    ResourceContents,
    ResourceDescriptor,
    ToolCall,
    ToolCallRequest,
    ToolCallResult,
    ToolDescriptor,
    ToolOutput,
)
from .openai_tools import call_openai_tool, to_openai_tools
from .platform_resolver import PlatformCommandResolver
from .registry import ConnectionRegistry
from .transport import StdioProtocolClient
from .types import (
    Connection,
    ConnectionEvent,
    ConnectionState,
    ConnectReport,
    FixResult,
    ServerConfig,
    ValidationResult,
)

logger = logging.getLogger(__name__)

ClientFactory = Callable[[ServerConfig, StdioServerParameters], Any]

# Fields whose change requires a fresh process for a connected server.
_RESTART_FIELDS = ("command", "args", "env")


class ConnectionManager:
    """Owns the lifecycle of every provider connection.

    Per server the state machine is Disconnected -> Validating -> Connecting
    -> Connected, falling back to Disconnected with a reason on any failure.
    Per-server failures are reported through return values and
    ``last_error``; they are never raised past this class.

    Transitions are also published on a per-server queue (``events``) that
    keeps only the newest ``event_backlog`` entries.
    """

    event_backlog = 64

    def __init__(
        self,
        config_store: ServerConfigStore,
        *,
        registry: Optional[ConnectionRegistry] = None,
        resolver: Optional[PlatformCommandResolver] = None,
        client_factory: Optional[ClientFactory] = None,
        connect_timeout: float = CONNECT_TIMEOUT_SECONDS,
        call_timeout: float = CALL_TIMEOUT_SECONDS,
        discovery_timeout: float = DISCOVERY_TIMEOUT_SECONDS,
        stderr_dir: Optional[Path] = None,
    ) -> None:
        self.config_store = config_store
        self.registry = registry if registry is not None else ConnectionRegistry()
        self.resolver = resolver or PlatformCommandResolver()
        self.executor = ConcurrentToolExecutor(self.registry)
        self.client_factory = client_factory or self._stdio_client
        self.connect_timeout = connect_timeout
        self.call_timeout = call_timeout
        self.discovery_timeout = discovery_timeout
        self.stderr_dir = Path(stderr_dir) if stderr_dir else None

        self._states: Dict[str, ConnectionState] = {}
        self._errors: Dict[str, str] = {}
        self._events: Dict[str, asyncio.Queue] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

        self.openai_tools: Optional[List[Dict[str, Any]]] = None
        self.openai_dispatch: Dict[str, tuple] = {}

    def _stdio_client(self, server: ServerConfig, params: StdioServerParameters) -> StdioProtocolClient:
        stderr_path = self.stderr_dir / f"{server.id}.stderr.log" if self.stderr_dir else None
        return StdioProtocolClient(
            server.id,
            params,
            connect_timeout=self.connect_timeout,
            call_timeout=self.call_timeout,
            stderr_path=stderr_path,
        )

    # -- state -----------------------------------------------------------------

    def events(self, server_id: str) -> "asyncio.Queue[ConnectionEvent]":
        if server_id not in self._events:
            self._events[server_id] = asyncio.Queue(maxsize=self.event_backlog)
        return self._events[server_id]

    def get_state(self, server_id: str) -> ConnectionState:
        return self._states.get(server_id, ConnectionState.DISCONNECTED)

    def last_error(self, server_id: str) -> Optional[str]:
        return self._errors.get(server_id)

    def _transition(self, server_id: str, state: ConnectionState, reason: Optional[str] = None) -> None:
        self._states[server_id] = state
        queue = self.events(server_id)
        if queue.full():
            # Nobody is draining; drop the oldest transition.
            queue.get_nowait()
        queue.put_nowait(ConnectionEvent(server_id, state, reason))
        if reason:
            logger.info("Server %s -> %s (%s)", server_id, state.value, reason)
        else:
            logger.info("Server %s -> %s", server_id, state.value)

    def _fail(self, server_id: str, reason: str) -> bool:
        self._errors[server_id] = reason
        self._transition(server_id, ConnectionState.DISCONNECTED, reason)
        return False

    def _lock_for(self, server_id: str) -> asyncio.Lock:
        if server_id not in self._locks:
            self._locks[server_id] = asyncio.Lock()
        return self._locks[server_id]

    # -- lifecycle -------------------------------------------------------------

    async def connect(self, server_id: str) -> bool:
        async with self._lock_for(server_id):
            return await self._connect(server_id)

    async def _connect(self, server_id: str) -> bool:
        if server_id in self.registry:
            logger.info("Server %s already connected", server_id)
            return True

        try:
            server = self.config_store.get_server(server_id)
        except ToolBridgeError as e:
            return self._fail(server_id, f"Failed to load server config: {e}")
        if server is None:
            return self._fail(server_id, f"Server {server_id} not found in configuration")
        if not server.enabled:
            logger.info("Server %s is disabled, skipping connection", server_id)
            return self._fail(server_id, "Server is disabled")

        self._errors.pop(server_id, None)
        try:
            command = await self._prepare_command(server)
            self._transition(server_id, ConnectionState.CONNECTING)
            logger.info("Starting MCP server process: %s %s", command, " ".join(server.args))
            params = build_stdio_params(server, command, self.resolver.environment(server))
            client = self.client_factory(server, params)
            await client.connect()
        except ToolBridgeError as e:
            self._log_troubleshooting(server, e)
            return self._fail(server_id, str(e))
        except Exception as e:
            logger.exception("Unexpected failure connecting to %s", server_id)
            return self._fail(server_id, f"{type(e).__name__}: {e}")

        self._transition(server_id, ConnectionState.CONNECTED)
        try:
            capabilities = await discover_capabilities(
                server_id, client, timeout=self.discovery_timeout
            )
        except BaseException:
            await client.close()
            self._transition(server_id, ConnectionState.DISCONNECTED, "discovery interrupted")
            raise

        self.registry.put(
            Connection(
                server_id=server_id,
                server=server,
                client=client,
                capabilities=capabilities,
                events=self.events(server_id),
            )
        )
        return True

    async def _prepare_command(self, server: ServerConfig) -> str:
        command = self.resolver.normalize(server.command)
        if self.resolver.is_trusted(command):
            logger.info("Skipping validation for %s command", command)
            return command

        self._transition(server.id, ConnectionState.VALIDATING)
        validation = await self.resolver.resolve(server)
        if not validation.valid:
            raise CommandValidationError(validation.error or f"Invalid command: {command}")
        return validation.fixed_command

    def _log_troubleshooting(self, server: ServerConfig, error: Exception) -> None:
        logger.error("Failed to connect to MCP server %s: %s", server.id, error)
        hints = [
            f"Check if the command exists: which {server.command}",
            f"Verify executable permissions: ls -la {server.command}",
            f"Try running manually: {server.command} {' '.join(server.args)}".rstrip(),
        ]
        cause = error.__cause__
        if isinstance(cause, FileNotFoundError):
            hints.append("Command not found. Install the package or fix the command path")
        elif isinstance(cause, PermissionError):
            hints.append(f"Permission denied. Try: chmod +x {server.command}")
        if self.resolver.platform == "darwin":
            hints.append("Check whether Gatekeeper is blocking the executable in Privacy & Security")
        for i, hint in enumerate(hints, start=1):
            logger.info("Troubleshooting %s [%d]: %s", server.id, i, hint)

    async def disconnect(self, server_id: str) -> None:
        async with self._lock_for(server_id):
            await self._disconnect(server_id)

    async def _disconnect(self, server_id: str) -> None:
        conn = self.registry.remove(server_id)
        if conn is None:
            logger.info("Server %s not connected", server_id)
            return
        await self._close(conn, "disconnected")

    async def _close(self, conn: Connection, reason: str) -> None:
        conn.connected = False
        try:
            await conn.client.close()
        except Exception:
            logger.exception("Error while closing transport for %s", conn.server_id)
        self._transition(conn.server_id, ConnectionState.DISCONNECTED, reason)

    async def disconnect_all(self) -> None:
        logger.info("Disconnecting all MCP servers...")
        for server_id in self.registry.server_ids():
            await self.disconnect(server_id)

    async def connect_enabled(self) -> ConnectReport:
        """Connect every enabled server one after another.

        Sequential on purpose: failures stay attributable to a single spawn.
        """
        report = ConnectReport()
        try:
            data = self.config_store.load()
        except ToolBridgeError:
            logger.exception("Failed to load server config")
            return report

        enabled = [s for s in data.servers if s.enabled]
        logger.info("Auto-connecting %d enabled servers", len(enabled))
        for server in enabled:
            report.attempted.append(server.id)
            if await self.connect(server.id):
                report.connected.append(server.id)
            else:
                report.failed[server.id] = self.last_error(server.id) or "unknown error"

        if report.failed:
            logger.error(
                "%d enabled servers failed to connect: %s",
                len(report.failed),
                sorted(report.failed),
            )
        logger.info("Auto-connection complete: %s", self.get_connected_server_ids())
        return report

    async def restart_all(self) -> ConnectReport:
        await self.disconnect_all()
        return await self.connect_enabled()

    async def prune_exited(self) -> List[str]:
        """Drop connections whose provider process is known to be gone."""
        pruned = []
        for conn in self.registry.connections():
            if getattr(conn.client, "is_alive", True):
                continue
            async with self._lock_for(conn.server_id):
                if self.registry.remove(conn.server_id) is None:
                    continue
                await self._close(conn, "process exited")
                pruned.append(conn.server_id)
        return pruned

    # -- invocation ------------------------------------------------------------

    async def call_tool(
        self, name: str, arguments: Dict[str, Any], server_id: Optional[str] = None
    ) -> ToolOutput:
        try:
            _, output = await self.executor.call_tool(name, arguments, server_id)
        except TransportClosed:
            await self.prune_exited()
            raise
        return output

    async def call_tool_batch(
        self, calls: Sequence[ToolCallRequest | Dict[str, Any]]
    ) -> List[ToolCallResult]:
        requests = [
            call if isinstance(call, ToolCallRequest) else ToolCallRequest.model_validate(call)
            for call in calls
        ]
        results = await self.executor.execute_batch(requests)
        await self.prune_exited()
        return results

    async def read_resource(self, uri: str) -> ResourceContents:
        for conn in self.registry.connected():
            if any(r.uri == uri for r in conn.resources):
                logger.info("Reading resource %s from %s", uri, conn.server_id)
                return await conn.client.read_resource(uri)
        raise ResourceNotFound(uri)

    async def get_prompt(self, name: str, arguments: Optional[Dict[str, str]] = None) -> PromptMessages:
        for conn in self.registry.connected():
            if any(p.name == name for p in conn.prompts):
                logger.info("Getting prompt %s from %s", name, conn.server_id)
                return await conn.client.get_prompt(name, arguments or {})
        raise PromptNotFound(name)

    async def list_openai_tools(self) -> List[Dict[str, Any]]:
        self.openai_tools, self.openai_dispatch = to_openai_tools(self.get_all_tools())
        return self.openai_tools

    async def call_openai_tool(self, tool_call: ToolCall) -> ToolCallResult:
        if not self.openai_dispatch:
            await self.list_openai_tools()
        return await call_openai_tool(self.executor, tool_call, self.openai_dispatch)

    # -- projections -------------------------------------------------------------

    def get_all_tools(self) -> List[ToolDescriptor]:
        return self.registry.get_all_tools()

    def get_all_resources(self) -> List[ResourceDescriptor]:
        return self.registry.get_all_resources()

    def get_all_prompts(self) -> List[PromptDescriptor]:
        return self.registry.get_all_prompts()

    def get_connection_status(self) -> Dict[str, bool]:
        return self.registry.get_connection_status()

    def get_connected_server_ids(self) -> List[str]:
        return self.registry.get_connected_server_ids()

    def is_server_connected(self, server_id: str) -> bool:
        return self.get_connection_status().get(server_id, False)

    def get_detailed_status(self) -> DetailedStatus:
        return self.registry.get_detailed_status()

    # -- validation & repair -----------------------------------------------------

    def _lookup(self, server: ServerConfig | str) -> Optional[ServerConfig]:
        if isinstance(server, ServerConfig):
            return server
        return self.config_store.get_server(server)

    async def validate_server_command(self, server: ServerConfig | str) -> ValidationResult:
        descriptor = self._lookup(server)
        if descriptor is None:
            return ValidationResult(
                valid=False, fixed_command="", error=f"Server {server} not found"
            )
        return await self.resolver.validate(descriptor)

    async def attempt_platform_fix(self, server: ServerConfig | str) -> FixResult:
        descriptor = self._lookup(server)
        if descriptor is None:
            return FixResult(success=False, message=f"Server {server} not found")

        fix = await self.resolver.attempt_fix(descriptor)
        if not fix.success:
            return fix
        validation = await self.resolver.validate(descriptor)
        if validation.valid:
            return FixResult(
                success=True,
                message=f"Fixes applied successfully: {fix.message}",
                applied=fix.applied,
            )
        return FixResult(
            success=False,
            message=f"Fixes applied but validation still fails: {validation.error}",
            applied=fix.applied,
        )

    # -- config ------------------------------------------------------------------

    def add_server(self, fields: Dict[str, Any]) -> ServerConfig:
        return self.config_store.add_server(fields)

    async def update_server(self, server_id: str, updates: Dict[str, Any]) -> bool:
        # Held across the store write so an in-flight connect settles first.
        async with self._lock_for(server_id):
            if not self.config_store.update_server(server_id, updates):
                return False

            was_connected = server_id in self.registry
            if was_connected and updates.get("enabled") is False:
                logger.info("Disconnecting MCP server after disable: %s", server_id)
                await self._disconnect(server_id)
            elif not was_connected and updates.get("enabled") is True:
                logger.info("Connecting MCP server after enable: %s", server_id)
                await self._connect(server_id)
            elif was_connected and any(field in updates for field in _RESTART_FIELDS):
                logger.info("Launch settings changed, restarting MCP server: %s", server_id)
                await self._disconnect(server_id)
                await self._connect(server_id)
            return True

    async def remove_server(self, server_id: str) -> bool:
        async with self._lock_for(server_id):
            await self._disconnect(server_id)
            return self.config_store.remove_server(server_id)
