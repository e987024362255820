"""
MCP Server Manager

Facade handed to the agent loop and UI: owns the registry, the capability
aggregator and the tool gateway, and persists configuration changes.
"""

import asyncio
import logging
import os
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from toolwire.events import EventManager
from toolwire.settings import Settings, load_settings

from .aggregator import CapabilityAggregator
from .channels import create_channel
from .config import ServerConfig
from .gateway import BuiltinImplementation, ExecutionContext, ToolExecutionGateway, ToolResult
from .persistence import ConfigStore, load_mcp_json
from .registry import ServerRegistry, ServerSnapshot, ServerStatus
from .state import MCPState
from .validation import ValidationReport

log = logging.getLogger(__name__)

RawConfig = Union[ServerConfig, Dict[str, Any]]


class MCPServerManager:
    """Lifecycle management for MCP servers."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[ConfigStore] = None,
        events: Optional[EventManager] = None,
        channel_factory: Callable = create_channel,
    ):
        self.settings = settings or Settings()
        self.store = store
        self.events = events or EventManager()
        self.registry = ServerRegistry(
            self.events,
            channel_factory=channel_factory,
            connect_timeout=self.settings.connect_timeout,
            request_timeout=self.settings.request_timeout,
            shutdown_grace=self.settings.shutdown_grace,
        )
        self.aggregator = CapabilityAggregator(self.registry, list_timeout=self.settings.request_timeout)
        self.gateway = ToolExecutionGateway(
            self.registry,
            self.aggregator,
            events=self.events,
            call_timeout=self.settings.call_timeout,
            failure_threshold=self.settings.failure_threshold,
        )

    @classmethod
    def from_environment(cls, **kwargs) -> "MCPServerManager":
        """Build a manager from TOOLWIRE_* settings, persisting to the settings home."""
        settings = load_settings()
        return cls(settings=settings, store=ConfigStore(settings.store_path), **kwargs)

    async def initialize(
        self,
        mcp_json_paths: Optional[Iterable[Union[str, os.PathLike]]] = None,
        connect: bool = True,
    ) -> ValidationReport:
        """
        Load stored configs and `mcp.json` files, register them, and optionally connect.

        Stored configs take precedence over `mcp.json` entries with the same id.
        Corrupted or invalid entries are reported, never raised.
        """
        report = self.store.load() if self.store is not None else ValidationReport()
        paths = self.settings.mcp_json_paths if mcp_json_paths is None else list(mcp_json_paths)
        from_json = load_mcp_json(paths)

        known = {config.id for config in report.configs}
        report.configs.extend(config for config in from_json.configs if config.id not in known)
        report.rejected.extend(from_json.rejected)
        report.repairs.update(from_json.repairs)
        report.errors.update(from_json.errors)

        for config in report.configs:
            if config.id not in self.registry:
                await self.registry.add_server(config)

        if report.rejected:
            log.warning(f"[MCPServerManager] Skipped invalid server configs: {', '.join(report.rejected)}")
        log.info(f"[MCPServerManager] Initialized with {len(self.registry)} servers")

        if connect:
            await self.connect_all()
        return report

    def _persist(self) -> None:
        if self.store is None:
            return
        try:
            self.store.save(self.registry.server_configs.values())
        except Exception as e:
            log.error(f"[MCPServerManager] Could not persist server configs: {e}")

    # Lifecycle

    async def add_server(self, config: RawConfig, connect: bool = False) -> ServerSnapshot:
        """
        Register a server, persist it, and optionally connect it.

        Raises:
            ConfigError: If the config is invalid or the id is taken
        """
        snapshot = await self.registry.add_server(config)
        self._persist()
        if connect:
            await self.registry.connect_server(snapshot.id)
            snapshot = self.registry.get(snapshot.id)
        return snapshot

    async def connect_server(self, server_id: str) -> ServerStatus:
        return await self.registry.connect_server(server_id)

    async def disconnect_server(self, server_id: str) -> None:
        await self.registry.disconnect_server(server_id)

    async def remove_server(self, server_id: str) -> None:
        await self.registry.remove_server(server_id)
        self._persist()

    async def update_server(self, server_id: str, **changes: Any) -> ServerSnapshot:
        snapshot = await self.registry.update_server(server_id, **changes)
        self._persist()
        return snapshot

    async def toggle_server(self, server_id: str) -> ServerSnapshot:
        """
        Flip `enabled`. A newly enabled server is connected; disabling a
        connected server disconnects it.

        Raises:
            UnknownServerError: If no server has this id
        """
        enabled = not self.registry.get(server_id).enabled
        await self.update_server(server_id, enabled=enabled)
        if enabled:
            await self.registry.connect_server(server_id)
        return self.registry.get(server_id)

    async def connect_all(self) -> Dict[str, ServerStatus]:
        """Connect every enabled server concurrently. One failure never affects the others."""
        server_ids = [sid for sid, config in self.registry.server_configs.items() if config.enabled]
        results = await asyncio.gather(
            *(self.registry.connect_server(server_id) for server_id in server_ids),
            return_exceptions=True,
        )
        statuses = {}
        for server_id, result in zip(server_ids, results):
            if isinstance(result, BaseException):
                # Removed while connecting
                log.warning(f"[MCPServerManager] Connecting '{server_id}' did not complete: {result!r}")
                continue
            statuses[server_id] = result
        connected = sum(1 for status in statuses.values() if status is ServerStatus.CONNECTED)
        log.info(f"[MCPServerManager] {connected}/{len(server_ids)} enabled servers connected")
        return statuses

    async def disconnect_all(self) -> None:
        await asyncio.gather(
            *(self.registry.disconnect_server(server_id) for server_id in list(self.registry.server_configs)),
            return_exceptions=True,
        )

    # State

    @property
    def state(self) -> MCPState:
        return MCPState.capture(self.registry.servers, self.registry.server_configs, self.aggregator.index)

    def server_status(self, server_id: str) -> Tuple[str, str]:
        return self.state.status_message(server_id)

    def on(self, event: str, listener: Callable) -> None:
        """Observe lifecycle events (`server.connected`, `circuit.opened`, ...)."""
        self.events.on_event(event, listener)

    # Execution

    def register_builtin(self, name: str, implementation: BuiltinImplementation, **kwargs) -> None:
        self.gateway.register_builtin(name, implementation, **kwargs)

    def context(self, scope: Optional[str] = None) -> ExecutionContext:
        """Start a new logical operation (one agent turn) with its own circuit breaker."""
        return self.gateway.context(scope)

    def reset_default_context(self) -> None:
        """Discard the breaker shared by calls made without a context."""
        self.gateway.reset_default_context()

    async def execute(
        self, tool_name: str, args: Optional[Dict[str, Any]] = None, context: Optional[ExecutionContext] = None
    ) -> ToolResult:
        """
        Run a tool through the gateway.

        Calls made without `context` all share one default scope, so its circuit
        stays open until `reset_default_context()` is called. Pass a context from
        `context()` per agent turn to scope failures to that turn.
        """
        return await self.gateway.execute(tool_name, args, context=context)

    async def read_resource(self, uri: str) -> List[Dict[str, Any]]:
        return await self.gateway.read_resource(uri)

    async def get_prompt(self, name: str, arguments: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        return await self.gateway.get_prompt(name, dict(arguments or {}))

    # Shutdown

    async def close(self) -> None:
        await self.registry.close()
        await self.events.close()
        log.info("[MCPServerManager] Closed")

    async def __aenter__(self) -> "MCPServerManager":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
