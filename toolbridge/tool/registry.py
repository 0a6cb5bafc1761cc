from __future__ import annotations

import threading
from typing import Dict, Iterator, List, Optional

from .errors import DuplicateConnectionError
from .model import (
    DetailedStatus,
    PromptDescriptor,
    ResourceDescriptor,
    ServerStatus,
    ToolDescriptor,
)
from .types import Connection, ConnectionState


class ConnectionRegistry:
    """In-memory map of server id to live Connection.

    Insertion order is registration order, which is what first-match name
    resolution relies on. Only the ConnectionManager writes here; every other
    method is a read-only projection.
    """

    def __init__(self) -> None:
        self._connections: Dict[str, Connection] = {}
        self._lock = threading.RLock()

    def put(self, connection: Connection) -> None:
        with self._lock:
            if connection.server_id in self._connections:
                raise DuplicateConnectionError(connection.server_id)
            self._connections[connection.server_id] = connection

    def remove(self, server_id: str) -> Optional[Connection]:
        with self._lock:
            return self._connections.pop(server_id, None)

    def get(self, server_id: str) -> Optional[Connection]:
        with self._lock:
            return self._connections.get(server_id)

    def __contains__(self, server_id: object) -> bool:
        with self._lock:
            return server_id in self._connections

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)

    def __iter__(self) -> Iterator[Connection]:
        return iter(self.connections())

    def connections(self) -> List[Connection]:
        with self._lock:
            return list(self._connections.values())

    def server_ids(self) -> List[str]:
        with self._lock:
            return list(self._connections)

    def connected(self) -> List[Connection]:
        return [c for c in self.connections() if c.connected]

    def get_all_tools(self) -> List[ToolDescriptor]:
        return [
            tool.model_copy(update={"server_id": conn.server_id})
            for conn in self.connected()
            for tool in conn.tools
        ]

    def get_all_resources(self) -> List[ResourceDescriptor]:
        return [
            resource.model_copy(update={"server_id": conn.server_id})
            for conn in self.connected()
            for resource in conn.resources
        ]

    def get_all_prompts(self) -> List[PromptDescriptor]:
        return [
            prompt.model_copy(update={"server_id": conn.server_id})
            for conn in self.connected()
            for prompt in conn.prompts
        ]

    def get_connection_status(self) -> Dict[str, bool]:
        return {conn.server_id: conn.connected for conn in self.connections()}

    def get_connected_server_ids(self) -> List[str]:
        return [conn.server_id for conn in self.connected()]

    def get_detailed_status(self) -> DetailedStatus:
        servers = []
        for conn in self.connections():
            servers.append(
                ServerStatus(
                    id=conn.server_id,
                    connected=conn.connected,
                    state=(
                        ConnectionState.CONNECTED if conn.connected else ConnectionState.DISCONNECTED
                    ).value,
                    tool_count=len(conn.tools),
                    resource_count=len(conn.resources),
                    prompt_count=len(conn.prompts),
                    tools=[{"name": t.name, "description": t.description} for t in conn.tools],
                    has_process=bool(getattr(conn.client, "is_alive", False)),
                )
            )
        return DetailedStatus(
            total_servers=len(servers),
            connected_servers=sum(1 for s in servers if s.connected),
            servers=servers,
        )
