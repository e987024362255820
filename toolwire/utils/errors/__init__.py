from .errors import (
    CircuitOpenError,
    ConfigError,
    ConnectionError,
    DispatchError,
    ExecutionError,
    MCPError,
    ProtocolError,
    RequestTimeoutError,
    ResolutionError,
    ToolwireError,
    UnknownServerError,
)

__all__ = [
    "CircuitOpenError",
    "ConfigError",
    "ConnectionError",
    "DispatchError",
    "ExecutionError",
    "MCPError",
    "ProtocolError",
    "RequestTimeoutError",
    "ResolutionError",
    "ToolwireError",
    "UnknownServerError",
]
