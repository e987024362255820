"""
MCP Message Types and Serialization

Handles the JSON-RPC 2.0 message format used by Model Context Protocol.
"""

import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from toolwire.utils.errors import ProtocolError

RequestId = Union[str, int]

METHOD_NOT_FOUND = -32601


def new_request_id() -> str:
    return str(uuid.uuid4())


@dataclass
class MCPMessage:
    """MCP JSON-RPC message representation.

    Requests get a fresh id unless one is supplied; use `notification()` to
    build a message without an id.
    """

    id: Optional[RequestId] = field(default_factory=new_request_id)
    method: Optional[str] = None
    params: Optional[Dict[str, Any]] = None
    result: Optional[Any] = None
    error: Optional[Dict[str, Any]] = None

    @classmethod
    def request(cls, method: str, params: Optional[Dict[str, Any]] = None) -> "MCPMessage":
        return cls(method=method, params=params)

    @classmethod
    def notification(cls, method: str, params: Optional[Dict[str, Any]] = None) -> "MCPMessage":
        return cls(id=None, method=method, params=params)

    @classmethod
    def response(cls, request_id: RequestId, result: Any = None, error: Optional[Dict[str, Any]] = None) -> "MCPMessage":
        if error is None and result is None:
            result = {}
        return cls(id=request_id, result=result, error=error)

    @property
    def is_request(self) -> bool:
        """Check if this is a request that expects a response."""
        return self.method is not None and self.id is not None

    @property
    def is_response(self) -> bool:
        """Check if this is a response message."""
        return self.method is None and self.id is not None and (self.result is not None or self.error is not None)

    @property
    def is_notification(self) -> bool:
        """Check if this is a notification (request without ID)."""
        return self.method is not None and self.id is None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        data: Dict[str, Any] = {"jsonrpc": "2.0"}

        if self.id is not None:
            data["id"] = self.id
        if self.method is not None:
            data["method"] = self.method
        if self.params is not None:
            data["params"] = self.params
        if self.error is not None:
            data["error"] = self.error
        elif self.result is not None:
            data["result"] = self.result

        return data

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, json_str: Union[str, bytes]) -> "MCPMessage":
        """Create message from JSON string.

        Raises:
            ProtocolError: If the payload is not a JSON-RPC object
        """
        try:
            data = json.loads(json_str)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ProtocolError(f"Invalid JSON received: {e}") from e
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Any) -> "MCPMessage":
        """Create message from dictionary."""
        if not isinstance(data, dict):
            raise ProtocolError(f"Expected a JSON-RPC object, got {type(data).__name__}")

        error = data.get("error")
        if error is not None and not isinstance(error, dict):
            raise ProtocolError("JSON-RPC error member must be an object")

        message = cls(
            id=data.get("id"),
            method=data.get("method"),
            params=data.get("params"),
            result=data.get("result"),
            error=error,
        )
        if message.method is None and message.id is None:
            raise ProtocolError("JSON-RPC message has neither method nor id")
        if message.method is None and "result" not in data and "error" not in data:
            raise ProtocolError(f"JSON-RPC response {message.id} has neither result nor error")
        if message.method is None and message.result is None and message.error is None:
            # `"result": null` is still a response
            message.result = {}
        return message
