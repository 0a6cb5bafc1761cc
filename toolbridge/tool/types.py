from __future__ import annotations

import asyncio
import enum
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from toolbridge.constants import CONFIG_VERSION


@dataclass(frozen=True)
class ServerConfig:
    """Persisted description of one tool provider process."""

    id: str
    name: str
    command: str
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    enabled: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ServerData:
    servers: List[ServerConfig] = field(default_factory=list)
    version: str = CONFIG_VERSION

    def find(self, server_id: str) -> Optional[ServerConfig]:
        for server in self.servers:
            if server.id == server_id:
                return server
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "servers": [s.to_dict() for s in self.servers],
            "version": self.version,
        }


@dataclass(frozen=True)
class CommandProbe:
    """Outcome of running a short-lived helper process.

    ``spawn_error`` is set when the OS refused to start the process at all;
    in that case ``exit_code`` is None.
    """

    exit_code: Optional[int]
    stdout: str = ""
    stderr: str = ""
    spawn_error: Optional[str] = None
    timed_out: bool = False

    @property
    def spawned(self) -> bool:
        return self.spawn_error is None

    @property
    def ok(self) -> bool:
        return self.spawned and self.exit_code == 0


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    fixed_command: str
    error: Optional[str] = None


@dataclass(frozen=True)
class FixResult:
    success: bool
    message: str
    applied: List[str] = field(default_factory=list)


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    VALIDATING = "validating"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass(frozen=True)
class ConnectionEvent:
    server_id: str
    state: ConnectionState
    reason: Optional[str] = None
    at: float = field(default_factory=time.time)


@dataclass
class Capabilities:
    tools: List[Any] = field(default_factory=list)
    resources: List[Any] = field(default_factory=list)
    prompts: List[Any] = field(default_factory=list)

    def summary(self) -> str:
        parts = []
        if self.tools:
            parts.append(f"{len(self.tools)} tools")
        if self.resources:
            parts.append(f"{len(self.resources)} resources")
        if self.prompts:
            parts.append(f"{len(self.prompts)} prompts")
        return ", ".join(parts) if parts else "no capabilities"


@dataclass
class Connection:
    server_id: str
    server: ServerConfig
    client: Any
    capabilities: Capabilities = field(default_factory=Capabilities)
    connected: bool = True
    events: "asyncio.Queue[ConnectionEvent]" = field(default_factory=asyncio.Queue)

    @property
    def tools(self) -> List[Any]:
        return self.capabilities.tools

    @property
    def resources(self) -> List[Any]:
        return self.capabilities.resources

    @property
    def prompts(self) -> List[Any]:
        return self.capabilities.prompts


@dataclass
class ConnectReport:
    attempted: List[str] = field(default_factory=list)
    connected: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed
