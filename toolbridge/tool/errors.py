from __future__ import annotations

from typing import Optional


class ToolBridgeError(Exception):
    """Base class for every error raised by toolbridge."""


class ConfigError(ToolBridgeError, ValueError):
    pass


class CommandValidationError(ToolBridgeError):
    """The launch executable is missing or cannot be started."""

    def __init__(self, message: str, suggestion: Optional[str] = None) -> None:
        super().__init__(message if not suggestion else f"{message}. Suggestion: {suggestion}")
        self.suggestion = suggestion


class ConnectTimeout(ToolBridgeError, TimeoutError):
    def __init__(self, server_id: str, timeout_seconds: float) -> None:
        super().__init__(
            f"Handshake with '{server_id}' did not complete within {timeout_seconds:g}s"
        )
        self.server_id = server_id
        self.timeout_seconds = timeout_seconds


class ProcessSpawnError(ToolBridgeError):
    pass


class HandshakeError(ToolBridgeError):
    pass


class TransportClosed(ToolBridgeError):
    """The provider process is gone; the connection is stale."""


class ProtocolUnsupported(ToolBridgeError):
    def __init__(self, server_id: str, method: str) -> None:
        super().__init__(f"Server '{server_id}' does not support {method}")
        self.server_id = server_id
        self.method = method


class InvocationError(ToolBridgeError):
    def __init__(self, message: str, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code


class ToolNotFound(ToolBridgeError, LookupError):
    def __init__(self, name: str) -> None:
        super().__init__(f'Tool "{name}" not found in any connected MCP server')
        self.name = name


class ResourceNotFound(ToolBridgeError, LookupError):
    def __init__(self, uri: str) -> None:
        super().__init__(f'Resource "{uri}" not found in any connected MCP server')
        self.uri = uri


class PromptNotFound(ToolBridgeError, LookupError):
    def __init__(self, name: str) -> None:
        super().__init__(f'Prompt "{name}" not found in any connected MCP server')
        self.name = name


class DuplicateConnectionError(ToolBridgeError):
    def __init__(self, server_id: str) -> None:
        super().__init__(f"Connection for '{server_id}' is already registered")
        self.server_id = server_id
