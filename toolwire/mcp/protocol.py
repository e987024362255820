"""
MCP session handshake and result-shape checks shared by the registry,
aggregator and gateway.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from toolwire import __version__
from toolwire.utils.errors import ProtocolError

from .channels import MCPChannel
from .messages import MCPMessage

log = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "toolwire", "version": __version__}

LIST_CHANGED_NOTIFICATIONS = {
    "notifications/tools/list_changed": "tools",
    "notifications/resources/list_changed": "resources",
    "notifications/prompts/list_changed": "prompts",
}


@dataclass(frozen=True)
class ServerInfo:
    """What a server reported about itself during `initialize`."""
    name: str = ""
    version: str = ""
    protocol_version: str = PROTOCOL_VERSION
    capabilities: Dict[str, Any] = field(default_factory=dict)
    instructions: Optional[str] = None

    def supports(self, kind: str) -> bool:
        return kind in self.capabilities


async def initialize_session(channel: MCPChannel, timeout: float) -> ServerInfo:
    """
    Run the `initialize` / `notifications/initialized` handshake.

    Raises:
        ProtocolError: If the server's answer is not an initialize result
    """
    result = await channel.request(
        MCPMessage.request(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"roots": {"listChanged": False}},
                "clientInfo": CLIENT_INFO,
            },
        ),
        timeout=timeout,
    )
    if not isinstance(result, dict):
        raise ProtocolError("initialize returned a non-object result", server_id=channel.server_id)

    capabilities = result.get("capabilities") or {}
    if not isinstance(capabilities, dict):
        raise ProtocolError("initialize result has malformed capabilities", server_id=channel.server_id)
    server = result.get("serverInfo") if isinstance(result.get("serverInfo"), dict) else {}

    info = ServerInfo(
        name=str(server.get("name", "")),
        version=str(server.get("version", "")),
        protocol_version=str(result.get("protocolVersion", PROTOCOL_VERSION)),
        capabilities=capabilities,
        instructions=result.get("instructions") if isinstance(result.get("instructions"), str) else None,
    )
    if info.protocol_version != PROTOCOL_VERSION:
        log.info(f"[MCPSession] {channel.server_id} negotiated protocol {info.protocol_version}")

    await channel.notify(MCPMessage.notification("notifications/initialized"))
    log.debug(f"[MCPSession] {channel.server_id} initialized: {info.name} {info.version}, capabilities {list(capabilities)}")
    return info


def require_list(result: Any, key: str, server_id: Optional[str] = None) -> List[Any]:
    """Return `result[key]` when it is a list, else raise ProtocolError."""
    if not isinstance(result, dict) or not isinstance(result.get(key), list):
        raise ProtocolError(f"Malformed {key} listing: expected an object with a '{key}' list", server_id=server_id)
    return result[key]


def content_text(content: Any) -> str:
    """Join the text parts of a tool result's content list."""
    if not isinstance(content, list):
        return ""
    parts = []
    for item in content:
        if isinstance(item, dict) and item.get("type") == "text" and isinstance(item.get("text"), str):
            parts.append(item["text"])
    return "\n".join(parts)
