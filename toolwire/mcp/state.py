"""
Read-only view of the manager state, with the selectors the UI layer uses.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple

from .aggregator import Capability, CapabilityIndex
from .config import ServerConfig
from .registry import ServerSnapshot, ServerStatus


@dataclass(frozen=True)
class MCPState:
    servers: Mapping[str, ServerSnapshot] = field(default_factory=lambda: MappingProxyType({}))
    server_configs: Mapping[str, ServerConfig] = field(default_factory=lambda: MappingProxyType({}))
    available_tools: Tuple[Capability, ...] = ()
    available_resources: Tuple[Capability, ...] = ()
    available_prompts: Tuple[Capability, ...] = ()
    last_updated: float = 0.0

    @classmethod
    def capture(
        cls,
        servers: Mapping[str, ServerSnapshot],
        server_configs: Mapping[str, ServerConfig],
        index: CapabilityIndex,
    ) -> "MCPState":
        return cls(
            servers=servers,
            server_configs=server_configs,
            available_tools=index.tools,
            available_resources=index.resources,
            available_prompts=index.prompts,
            last_updated=index.last_updated,
        )

    def enabled_configs(self) -> List[ServerConfig]:
        return [config for config in self.server_configs.values() if config.enabled]

    def connected_servers(self) -> List[ServerSnapshot]:
        return [server for server in self.servers.values() if server.status is ServerStatus.CONNECTED]

    def server_stats(self) -> Dict[str, int]:
        stats = {"total": len(self.servers)}
        for status in (
            ServerStatus.CONFIGURED,
            ServerStatus.CONNECTING,
            ServerStatus.CONNECTED,
            ServerStatus.ERROR,
            ServerStatus.DISCONNECTED,
        ):
            stats[status.value] = sum(1 for server in self.servers.values() if server.status is status)
        return stats

    def capability_stats(self) -> Dict[str, int]:
        return {
            "tools": len(self.available_tools),
            "resources": len(self.available_resources),
            "prompts": len(self.available_prompts),
        }

    def capabilities_of(self, server_id: str) -> Dict[str, List[Capability]]:
        return {
            "tools": [c for c in self.available_tools if c.server_id == server_id],
            "resources": [c for c in self.available_resources if c.server_id == server_id],
            "prompts": [c for c in self.available_prompts if c.server_id == server_id],
        }

    def status_message(self, server_id: str) -> Tuple[str, str]:
        """Human readable (status, message) pair for one server."""
        server: Optional[ServerSnapshot] = self.servers.get(server_id)
        if server is None:
            return "not_added", "Not added to runtime"

        if server.status is ServerStatus.CONNECTED:
            counts = {kind: len(items) for kind, items in self.capabilities_of(server_id).items()}
            return (
                server.status.value,
                f"Connected ({counts['tools']} tools, {counts['resources']} resources, {counts['prompts']} prompts)",
            )
        if server.status is ServerStatus.CONNECTING:
            return server.status.value, "Connecting..."
        if server.status is ServerStatus.ERROR:
            return server.status.value, server.last_error or "Connection error"
        if server.status is ServerStatus.DISCONNECTED:
            return server.status.value, "Disconnected"
        if not server.enabled:
            return server.status.value, "Disabled"
        return server.status.value, "Not connected"
