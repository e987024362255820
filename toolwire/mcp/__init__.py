"""
MCP (Model Context Protocol) server management.

Connects to configured MCP servers over stdio, HTTP, SSE or WebSocket, merges
their tools, resources and prompts, and routes tool calls with timeouts and a
circuit breaker.
"""

from .aggregator import Capability, CapabilityAggregator, CapabilityIndex, CapabilityKind
from .channels import HTTPChannel, MCPChannel, SSEChannel, StdioChannel, WebSocketChannel, create_channel
from .config import HttpServerConfig, ServerConfig, StdioServerConfig, TransportType, WebSocketServerConfig
from .gateway import (
    CircuitBreaker,
    ExecutionContext,
    FailureKind,
    ToolExecutionGateway,
    ToolFailure,
    ToolResult,
    ToolSuccess,
)
from .manager import MCPServerManager
from .messages import MCPMessage
from .persistence import ConfigStore, load_mcp_json
from .registry import ServerRegistry, ServerSnapshot, ServerStatus
from .state import MCPState
from .validation import ValidationReport, repair_server_configs, validate_server_config

__all__ = [
    "Capability",
    "CapabilityAggregator",
    "CapabilityIndex",
    "CapabilityKind",
    "CircuitBreaker",
    "ConfigStore",
    "ExecutionContext",
    "FailureKind",
    "HTTPChannel",
    "HttpServerConfig",
    "MCPChannel",
    "MCPMessage",
    "MCPServerManager",
    "MCPState",
    "SSEChannel",
    "ServerConfig",
    "ServerRegistry",
    "ServerSnapshot",
    "ServerStatus",
    "StdioChannel",
    "StdioServerConfig",
    "ToolExecutionGateway",
    "ToolFailure",
    "ToolResult",
    "ToolSuccess",
    "TransportType",
    "ValidationReport",
    "WebSocketChannel",
    "WebSocketServerConfig",
    "create_channel",
    "load_mcp_json",
    "repair_server_configs",
    "validate_server_config",
]
