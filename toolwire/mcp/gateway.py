"""
Tool Execution Gateway

Routes tool calls to built-in tools or to the connected server that owns the
tool, bounds every call with a timeout, and applies a circuit breaker scoped to
an execution context (one agent turn, for example).

Example:
    async with gateway.context("turn-1") as turn:
        result = await turn.execute("read_file", {"path": "README.md"})
        if not result.ok:
            print(result.error.message)
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from toolwire.events import CIRCUIT_OPENED, EventManager
from toolwire.utils.errors import (
    CircuitOpenError,
    DispatchError,
    ExecutionError,
    MCPError,
    ProtocolError,
    RequestTimeoutError,
    ResolutionError,
    ToolwireError,
)

from .aggregator import CapabilityAggregator
from .protocol import content_text, require_list
from .registry import ServerRegistry

log = logging.getLogger(__name__)


class FailureKind(Enum):
    RESOLUTION = "resolution"
    DISPATCH = "dispatch"
    EXECUTION = "execution"
    PROTOCOL = "protocol"
    TIMEOUT = "timeout"
    CIRCUIT_OPEN = "circuit_open"


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    Any success resets the failure count. Reaching `threshold` consecutive
    failures opens the circuit, and it stays open until `reset()`.
    """

    def __init__(
        self,
        threshold: int = 3,
        scope: str = "default",
        on_open: Optional[Callable[["CircuitBreaker"], Any]] = None,
    ):
        if threshold < 1:
            raise ValueError("threshold must be at least 1")
        self.threshold = threshold
        self.scope = scope
        self.on_open = on_open
        self._state = CircuitState.CLOSED
        self._failures = 0

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is CircuitState.OPEN

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    def allows(self) -> bool:
        return self._state is CircuitState.CLOSED

    def record_success(self) -> None:
        self._failures = 0

    def record_failure(self) -> bool:
        """Count a failure. Returns True if this failure opened the circuit."""
        self._failures += 1
        if self._state is CircuitState.CLOSED and self._failures >= self.threshold:
            self._state = CircuitState.OPEN
            log.warning(
                f"[CircuitBreaker] Circuit OPENED for context '{self.scope}' "
                f"after {self._failures} consecutive failures"
            )
            if self.on_open is not None:
                self.on_open(self)
            return True
        return False

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._failures = 0


@dataclass(frozen=True)
class ToolSuccess:
    tool: str
    content: List[Any] = field(default_factory=list)
    server_id: Optional[str] = None
    structured: Optional[Any] = None
    latency_ms: float = 0.0
    raw: Optional[Mapping[str, Any]] = field(default=None, repr=False)

    ok = True

    @property
    def text(self) -> str:
        return content_text(self.content)


@dataclass(frozen=True)
class ToolFailure:
    tool: str
    kind: FailureKind
    error: ToolwireError
    server_id: Optional[str] = None
    content: List[Any] = field(default_factory=list)
    latency_ms: float = 0.0

    ok = False

    @property
    def message(self) -> str:
        return self.error.message


ToolResult = Union[ToolSuccess, ToolFailure]

BuiltinImplementation = Callable[[Dict[str, Any]], Union[Dict[str, Any], Awaitable[Dict[str, Any]]]]


@dataclass(frozen=True)
class BuiltinTool:
    """A tool implemented in-process, returning `{"success": bool, "message": str, ...}`."""
    name: str
    implementation: BuiltinImplementation
    description: str = ""
    schema: Mapping[str, Any] = field(default_factory=lambda: {"type": "object"})


class ExecutionContext:
    """Scope sharing one circuit breaker across a logical sequence of calls."""

    def __init__(self, gateway: "ToolExecutionGateway", scope: str, breaker: CircuitBreaker):
        self.gateway = gateway
        self.scope = scope
        self.breaker = breaker
        self.calls = 0

    async def execute(self, tool_name: str, args: Optional[Dict[str, Any]] = None) -> ToolResult:
        return await self.gateway.execute(tool_name, args, context=self)

    async def __aenter__(self) -> "ExecutionContext":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        log.debug(
            f"[ExecutionContext] '{self.scope}' finished after {self.calls} calls "
            f"(circuit {self.breaker.state.value})"
        )


class ToolExecutionGateway:
    """Single entry point for tool invocations from the agent loop."""

    def __init__(
        self,
        registry: ServerRegistry,
        aggregator: CapabilityAggregator,
        events: Optional[EventManager] = None,
        call_timeout: float = 60.0,
        failure_threshold: int = 3,
        retries: int = 0,
    ):
        self.registry = registry
        self.aggregator = aggregator
        self.events = events or registry.events
        self.call_timeout = call_timeout
        self.failure_threshold = failure_threshold
        self.retries = retries
        self._builtins: Dict[str, BuiltinTool] = {}
        self._default_context = self.context("default")

    # Built-in tools

    def register_builtin(
        self,
        name: str,
        implementation: BuiltinImplementation,
        description: str = "",
        schema: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """Register an in-process tool. Built-ins win bare-name lookups over server tools."""
        if name in self._builtins:
            log.warning(f"[ToolGateway] Replacing built-in tool '{name}'")
        self._builtins[name] = BuiltinTool(name, implementation, description, schema or {"type": "object"})

    def unregister_builtin(self, name: str) -> None:
        self._builtins.pop(name, None)

    @property
    def builtin_tools(self) -> List[BuiltinTool]:
        return list(self._builtins.values())

    # Contexts

    def context(self, scope: Optional[str] = None) -> ExecutionContext:
        """Create a fresh execution context with its own circuit breaker."""
        scope = scope or f"context-{time.monotonic_ns()}"
        breaker = CircuitBreaker(self.failure_threshold, scope=scope)
        return ExecutionContext(self, scope, breaker)

    @property
    def default_context(self) -> ExecutionContext:
        return self._default_context

    def reset_default_context(self) -> None:
        self._default_context = self.context("default")

    # Execution

    async def execute(
        self,
        tool_name: str,
        args: Optional[Dict[str, Any]] = None,
        context: Optional[ExecutionContext] = None,
    ) -> ToolResult:
        """
        Run a tool and classify the outcome.

        Never raises for tool-level problems. Unknown tools fail with a
        RESOLUTION failure that does not touch the circuit breaker; every other
        failure counts toward it, and once it opens the context fails fast.
        """
        context = context or self._default_context
        context.calls += 1
        args = args or {}
        breaker = context.breaker

        builtin = self._builtins.get(tool_name)
        capability = None if builtin is not None else self.aggregator.resolve_tool(tool_name)
        if builtin is None and capability is None:
            log.info(f"[ToolGateway] Unknown tool '{tool_name}'")
            return ToolFailure(tool_name, FailureKind.RESOLUTION, ResolutionError(tool_name))

        if not breaker.allows():
            error = CircuitOpenError(
                f"Circuit open for context '{context.scope}' after {breaker.consecutive_failures} "
                f"consecutive failures; not calling '{tool_name}'",
                tool_name=tool_name,
                failures=breaker.consecutive_failures,
            )
            log.warning(f"[ToolGateway] {error.message}")
            return ToolFailure(tool_name, FailureKind.CIRCUIT_OPEN, error)

        started = time.monotonic()
        if builtin is not None:
            result = await self._call_builtin(builtin, args)
        else:
            result = await self._call_remote(tool_name, capability.server_id, capability.name, args)

        latency_ms = (time.monotonic() - started) * 1000
        result = _with_latency(result, latency_ms)

        if result.ok:
            breaker.record_success()
            log.debug(f"[ToolGateway] '{tool_name}' succeeded in {latency_ms:.0f}ms")
        else:
            log.warning(f"[ToolGateway] '{tool_name}' failed ({result.kind.value}): {result.message}")
            if breaker.record_failure():
                await self.events.emit(CIRCUIT_OPENED, scope=context.scope, failures=breaker.consecutive_failures)
        return result

    async def _call_builtin(self, tool: BuiltinTool, args: Dict[str, Any]) -> ToolResult:
        try:
            outcome = tool.implementation(args)
            if inspect.isawaitable(outcome):
                outcome = await asyncio.wait_for(outcome, timeout=self.call_timeout)
        except asyncio.TimeoutError:
            error = ExecutionError(f"Built-in tool '{tool.name}' timed out after {self.call_timeout}s", tool_name=tool.name)
            return ToolFailure(tool.name, FailureKind.TIMEOUT, error)
        except Exception as e:
            error = ExecutionError(f"Built-in tool '{tool.name}' raised {type(e).__name__}: {e}", tool_name=tool.name)
            return ToolFailure(tool.name, FailureKind.EXECUTION, error)

        if not isinstance(outcome, dict) or not isinstance(outcome.get("success"), bool):
            error = ProtocolError(f"Built-in tool '{tool.name}' returned {type(outcome).__name__}, expected a result object", tool_name=tool.name)
            return ToolFailure(tool.name, FailureKind.PROTOCOL, error)

        message = str(outcome.get("message", ""))
        content = [{"type": "text", "text": message}] if message else []
        if not outcome["success"]:
            error = ExecutionError(message or f"Built-in tool '{tool.name}' failed", tool_name=tool.name)
            return ToolFailure(tool.name, FailureKind.EXECUTION, error, content=content)
        return ToolSuccess(tool.name, content=content, raw=outcome)

    async def _call_remote(self, tool_name: str, server_id: str, remote_name: str, args: Dict[str, Any]) -> ToolResult:
        attempts = self.retries + 1
        for attempt in range(1, attempts + 1):
            try:
                result = await self.registry.request(
                    server_id,
                    "tools/call",
                    {"name": remote_name, "arguments": args},
                    timeout=self.call_timeout,
                )
            except RequestTimeoutError:
                error = ExecutionError(
                    f"'{tool_name}' timed out after {self.call_timeout}s", server_id=server_id, tool_name=tool_name
                )
                if attempt < attempts:
                    log.info(f"[ToolGateway] Retrying '{tool_name}' after timeout ({attempt}/{attempts})")
                    continue
                return ToolFailure(tool_name, FailureKind.TIMEOUT, error, server_id=server_id)
            except DispatchError as e:
                return ToolFailure(tool_name, FailureKind.DISPATCH, e, server_id=server_id)
            except MCPError as e:
                error = ExecutionError(f"'{tool_name}' failed: {e.message}", server_id=server_id, tool_name=tool_name)
                return ToolFailure(tool_name, FailureKind.EXECUTION, error, server_id=server_id)
            except ProtocolError as e:
                return ToolFailure(tool_name, FailureKind.PROTOCOL, e, server_id=server_id)
            return self._interpret(tool_name, server_id, result)

    def _interpret(self, tool_name: str, server_id: str, result: Any) -> ToolResult:
        if not isinstance(result, dict):
            error = ProtocolError(f"Malformed result from '{tool_name}': expected an object", server_id=server_id, tool_name=tool_name)
            return ToolFailure(tool_name, FailureKind.PROTOCOL, error, server_id=server_id)

        content = result.get("content", [] if "structuredContent" in result else None)
        if not isinstance(content, list):
            error = ProtocolError(f"Malformed result from '{tool_name}': missing content list", server_id=server_id, tool_name=tool_name)
            return ToolFailure(tool_name, FailureKind.PROTOCOL, error, server_id=server_id)

        if result.get("isError") is True:
            detail = content_text(content) or "tool reported an error"
            error = ExecutionError(f"'{tool_name}' failed: {detail}", server_id=server_id, tool_name=tool_name)
            return ToolFailure(tool_name, FailureKind.EXECUTION, error, server_id=server_id, content=content)

        return ToolSuccess(
            tool_name,
            content=content,
            server_id=server_id,
            structured=result.get("structuredContent"),
            raw=result,
        )

    # Resources and prompts

    async def read_resource(self, uri: str, timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        """
        Read a resource from the server that advertised it.

        Raises:
            ResolutionError: If no connected server lists the resource
            DispatchError: If the owning server is no longer connected
            ProtocolError: If the server answers with an error or malformed data
        """
        capability = self.aggregator.resolve_resource(uri)
        if capability is None:
            raise ResolutionError(uri, kind="resource")
        result = await self.registry.request(
            capability.server_id, "resources/read", {"uri": capability.name}, timeout=timeout or self.call_timeout
        )
        return require_list(result, "contents", capability.server_id)

    async def get_prompt(
        self, name: str, arguments: Optional[Dict[str, str]] = None, timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        """
        Render a prompt on the server that advertised it.

        Raises:
            ResolutionError: If no connected server lists the prompt
            DispatchError: If the owning server is no longer connected
            ProtocolError: If the server answers with an error or malformed data
        """
        capability = self.aggregator.resolve_prompt(name)
        if capability is None:
            raise ResolutionError(name, kind="prompt")
        result = await self.registry.request(
            capability.server_id,
            "prompts/get",
            {"name": capability.name, "arguments": {k: str(v) for k, v in (arguments or {}).items()}},
            timeout=timeout or self.call_timeout,
        )
        require_list(result, "messages", capability.server_id)
        return result


def _with_latency(result: ToolResult, latency_ms: float) -> ToolResult:
    return replace(result, latency_ms=latency_ms)
