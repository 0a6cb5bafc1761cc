from __future__ import annotations

import json
import logging
import os
import random
import string
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from mcp import StdioServerParameters

from toolbridge.constants import CONFIG_VERSION, DEFAULT_CONFIG_PATH

from .errors import ConfigError
from .types import ServerConfig, ServerData

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = ("name", "command", "args", "env", "enabled")


def _default_config_path() -> Path:
    explicit = os.getenv("TOOLBRIDGE_CONFIG_PATH")
    if explicit:
        return Path(explicit)
    return DEFAULT_CONFIG_PATH


def _interpolate_env(value: Any) -> Any:
    # format: ${env:VAR}
    if isinstance(value, str) and value.startswith("${env:") and value.endswith("}"):
        var_name = value[len("${env:") : -1]
        return os.environ.get(var_name, value)
    return value


def interpolate_env(env: Dict[str, str]) -> Dict[str, str]:
    """Expand ``${env:VAR}`` placeholders at launch time.

    Placeholders stay verbatim in the persisted file so saving a config never
    writes secrets back to disk.
    """
    return {k: str(_interpolate_env(v)) for k, v in env.items()}


def _generate_server_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"mcp-{int(time.time() * 1000)}-{suffix}"


def parse_server(item: Any, index: int) -> ServerConfig:
    if not isinstance(item, dict):
        raise ConfigError(f"Server entry at index {index} must be a mapping")

    server_id = item.get("id")
    command = item.get("command")
    name = item.get("name") or server_id
    args = item.get("args") or []
    env = item.get("env") or {}

    if not server_id or not command:
        raise ConfigError(f"Server entry at index {index} requires 'id' and 'command'")
    if not isinstance(args, list):
        raise ConfigError(f"'args' for server '{server_id}' must be a list of strings")
    if not isinstance(env, dict):
        raise ConfigError(f"'env' for server '{server_id}' must be a mapping of strings")

    return ServerConfig(
        id=str(server_id),
        name=str(name),
        command=str(command),
        args=[str(a) for a in args],
        env={str(k): str(v) for k, v in env.items()},
        enabled=bool(item.get("enabled", True)),
    )


def parse_server_data(data: Any) -> ServerData:
    if data is None:
        return ServerData()
    if not isinstance(data, dict):
        raise ConfigError("Config root must be a mapping object")

    servers = data.get("servers") or []
    if not isinstance(servers, list):
        raise ConfigError("Config 'servers' must be a list")

    parsed: List[ServerConfig] = [parse_server(item, i) for i, item in enumerate(servers)]
    seen = set()
    for server in parsed:
        if server.id in seen:
            raise ConfigError(f"Duplicate server id '{server.id}'")
        seen.add(server.id)
    return ServerData(servers=parsed, version=str(data.get("version", CONFIG_VERSION)))


class ServerConfigStore:
    """Reads and writes the persisted list of server descriptors.

    The store is the only place that touches the config file; the connection
    manager receives immutable ``ServerConfig`` snapshots from it.
    """

    def __init__(self, config_path: str | Path | None = None) -> None:
        self.config_path = Path(config_path) if config_path else _default_config_path()

    def load(self) -> ServerData:
        if not self.config_path.exists():
            return ServerData()
        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                # JSON is a subset of YAML, so both formats load here.
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to read server config {self.config_path}: {e}") from e
        return parse_server_data(data)

    def save(self, data: ServerData) -> bool:
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, "w", encoding="utf-8") as f:
                if self.config_path.suffix == ".json":
                    json.dump(data.to_dict(), f, indent=2)
                else:
                    yaml.safe_dump(data.to_dict(), f, sort_keys=False)
            return True
        except OSError:
            logger.exception("Failed to save server config to %s", self.config_path)
            return False

    def get_server(self, server_id: str) -> Optional[ServerConfig]:
        return self.load().find(server_id)

    def add_server(self, fields: Dict[str, Any]) -> ServerConfig:
        data = self.load()
        server = parse_server({**fields, "id": _generate_server_id()}, len(data.servers))
        data.servers.append(server)
        if not self.save(data):
            raise ConfigError(f"Failed to save server config to {self.config_path}")
        logger.info("Added server %s (%s)", server.id, server.name)
        return server

    def update_server(self, server_id: str, updates: Dict[str, Any]) -> bool:
        data = self.load()
        for i, server in enumerate(data.servers):
            if server.id == server_id:
                changes = {k: v for k, v in updates.items() if k in _UPDATABLE_FIELDS}
                data.servers[i] = parse_server({**server.to_dict(), **changes}, i)
                return self.save(data)
        logger.warning("Cannot update unknown server %s", server_id)
        return False

    def remove_server(self, server_id: str) -> bool:
        data = self.load()
        remaining = [s for s in data.servers if s.id != server_id]
        if len(remaining) == len(data.servers):
            logger.warning("Cannot remove unknown server %s", server_id)
            return False
        data.servers = remaining
        return self.save(data)


def build_stdio_params(
    server: ServerConfig, command: str, env: Dict[str, str]
) -> StdioServerParameters:
    """Launch parameters for one provider; ``env`` is the fully merged environment."""
    return StdioServerParameters(command=command, args=list(server.args), env=env)
