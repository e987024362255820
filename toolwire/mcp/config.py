"""
MCP Server Configuration

Typed server configurations, one variant per transport kind, plus conversion
to and from the JSON shapes used on disk.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from toolwire.utils.errors import ConfigError

log = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class TransportType(Enum):
    """Supported transport types for MCP servers."""
    STDIO = "stdio"
    HTTP = "http"
    WEBSOCKET = "websocket"


@dataclass(frozen=True, kw_only=True)
class ServerConfig:
    """Fields shared by every transport variant."""
    id: str
    name: str
    enabled: bool = True
    env: Dict[str, str] = field(default_factory=dict)

    transport = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "type": self.transport.value,
            "enabled": self.enabled,
        }
        if self.env:
            data["env"] = dict(self.env)
        return data

    def with_changes(self, **changes: Any) -> "ServerConfig":
        return replace(self, **changes)

    def __hash__(self) -> int:
        # env and headers are dicts, so hash the serialised form
        return hash(json.dumps(self.to_dict(), sort_keys=True))


@dataclass(frozen=True, kw_only=True)
class StdioServerConfig(ServerConfig):
    command: str
    args: Tuple[str, ...] = ()
    cwd: Optional[str] = None

    transport = TransportType.STDIO
    __hash__ = ServerConfig.__hash__

    def __post_init__(self):
        object.__setattr__(self, "args", tuple(self.args))

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["command"] = self.command
        data["args"] = list(self.args)
        if self.cwd:
            data["cwd"] = self.cwd
        return data


@dataclass(frozen=True, kw_only=True)
class HttpServerConfig(ServerConfig):
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    sse: bool = False

    transport = TransportType.HTTP
    __hash__ = ServerConfig.__hash__

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["url"] = self.url
        if self.headers:
            data["headers"] = dict(self.headers)
        if self.sse:
            data["sse"] = True
        return data


@dataclass(frozen=True, kw_only=True)
class WebSocketServerConfig(ServerConfig):
    url: str
    headers: Dict[str, str] = field(default_factory=dict)

    transport = TransportType.WEBSOCKET
    __hash__ = ServerConfig.__hash__

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["url"] = self.url
        if self.headers:
            data["headers"] = dict(self.headers)
        return data


CONFIG_TYPES = {
    TransportType.STDIO: StdioServerConfig,
    TransportType.HTTP: HttpServerConfig,
    TransportType.WEBSOCKET: WebSocketServerConfig,
}


def mcp_json_to_raw_configs(data: Any) -> List[Dict[str, Any]]:
    """Convert the `{"mcpServers": {name: {...}}}` format into raw config records.

    The server name doubles as its id. Entries with a url are remote servers
    (`"type": "sse"` or `"websocket"` selects the variant), everything else is
    a stdio server. Records are returned unvalidated.
    """
    if not isinstance(data, dict):
        raise ConfigError("mcp.json must contain a JSON object")
    servers = data.get("mcpServers", {})
    if not isinstance(servers, dict):
        raise ConfigError("'mcpServers' must be an object keyed by server name")

    raw_configs = []
    for name, entry in servers.items():
        if not isinstance(entry, dict):
            raw_configs.append({"id": name, "name": name, "type": None})
            continue
        record = {"id": name, "name": name, "enabled": entry.get("enabled", True)}
        declared = entry.get("type")
        if entry.get("url"):
            record["url"] = entry["url"]
            record["headers"] = entry.get("headers", {})
            if declared == "websocket" or str(entry["url"]).startswith(("ws://", "wss://")):
                record["type"] = "websocket"
            else:
                record["type"] = "http"
                record["sse"] = declared == "sse"
        else:
            record["type"] = declared or "stdio"
            record["command"] = entry.get("command")
            record["args"] = entry.get("args", [])
            if entry.get("cwd") is not None:
                record["cwd"] = entry["cwd"]
        record["env"] = entry.get("env", {})
        raw_configs.append(record)
    return raw_configs


def expand_placeholders(value: str, env: Mapping[str, str], server_id: Optional[str] = None) -> str:
    """Replace `${VAR}` with the server env value, falling back to the process environment.

    Raises:
        ConfigError: If a referenced variable is not set anywhere
    """

    def substitute(match: "re.Match[str]") -> str:
        var = match.group(1)
        if var in env:
            return env[var]
        if var in os.environ:
            return os.environ[var]
        raise ConfigError(f"Environment variable '{var}' is not set", server_id=server_id)

    return _PLACEHOLDER.sub(substitute, value)


def resolve_config(config: ServerConfig) -> ServerConfig:
    """Return a copy of the config with every `${VAR}` placeholder expanded."""
    env = {key: expand_placeholders(value, os.environ, config.id) for key, value in config.env.items()}
    changes: Dict[str, Any] = {"env": env}

    if isinstance(config, StdioServerConfig):
        changes["command"] = expand_placeholders(config.command, env, config.id)
        changes["args"] = tuple(expand_placeholders(arg, env, config.id) for arg in config.args)
        if config.cwd:
            changes["cwd"] = os.path.expanduser(expand_placeholders(config.cwd, env, config.id))
    else:
        changes["url"] = expand_placeholders(config.url, env, config.id)
        changes["headers"] = {key: expand_placeholders(value, env, config.id) for key, value in config.headers.items()}

    return replace(config, **changes)
