"""
MCP Server Registry

Single source of truth for the configured servers and their connection state.
Lifecycle operations on one server id are serialized by a per-id lock; different
servers connect, disconnect and fail independently of each other.
"""

import asyncio
import functools
import itertools
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Union

from toolwire.events import (
    SERVER_ADDED,
    SERVER_CONNECTED,
    SERVER_CONNECTING,
    SERVER_DISCONNECTED,
    SERVER_ERROR,
    SERVER_NOTIFICATION,
    SERVER_REMOVED,
    SERVER_UPDATED,
    EventManager,
)
from toolwire.utils.errors import (
    ConfigError,
    ConnectionError,
    DispatchError,
    ToolwireError,
    UnknownServerError,
)

from .channels import MCPChannel, create_channel
from .config import ServerConfig, TransportType
from .messages import MCPMessage
from .protocol import ServerInfo, initialize_session
from .validation import validate_server_config

log = logging.getLogger(__name__)


class ServerStatus(Enum):
    """Connection state of a registered server."""
    CONFIGURED = "configured"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    REMOVED = "removed"


ALLOWED_TRANSITIONS = {
    ServerStatus.CONFIGURED: {ServerStatus.CONNECTING, ServerStatus.DISCONNECTED, ServerStatus.REMOVED},
    ServerStatus.CONNECTING: {ServerStatus.CONNECTED, ServerStatus.ERROR, ServerStatus.DISCONNECTED},
    ServerStatus.CONNECTED: {ServerStatus.DISCONNECTED, ServerStatus.ERROR, ServerStatus.REMOVED},
    ServerStatus.DISCONNECTED: {ServerStatus.CONNECTING, ServerStatus.DISCONNECTED, ServerStatus.REMOVED},
    ServerStatus.ERROR: {ServerStatus.CONNECTING, ServerStatus.DISCONNECTED, ServerStatus.REMOVED},
    ServerStatus.REMOVED: set(),
}


@dataclass(frozen=True)
class ServerSnapshot:
    """Read-only view of one server handed out to callers."""
    id: str
    name: str
    transport: TransportType
    enabled: bool
    status: ServerStatus
    last_error: Optional[str] = None
    connected_at: Optional[float] = None
    disconnected_at: Optional[float] = None
    connect_order: int = 0
    server_info: Optional[ServerInfo] = None

    @property
    def is_connected(self) -> bool:
        return self.status is ServerStatus.CONNECTED


@dataclass
class ServerConnection:
    """Runtime record for one server. Owned and mutated only by ServerRegistry."""
    config: ServerConfig
    status: ServerStatus = ServerStatus.CONFIGURED
    last_error: Optional[str] = None
    channel: Optional[MCPChannel] = field(default=None, repr=False)
    server_info: Optional[ServerInfo] = None
    connected_at: Optional[float] = None
    disconnected_at: Optional[float] = None
    connect_order: int = 0
    attempt: int = 0

    def snapshot(self) -> ServerSnapshot:
        return ServerSnapshot(
            id=self.config.id,
            name=self.config.name,
            transport=self.config.transport,
            enabled=self.config.enabled,
            status=self.status,
            last_error=self.last_error,
            connected_at=self.connected_at,
            disconnected_at=self.disconnected_at,
            connect_order=self.connect_order,
            server_info=self.server_info,
        )


ChannelFactory = Callable[..., MCPChannel]


class ServerRegistry:
    """Owns every ServerConnection and drives the connection state machine."""

    def __init__(
        self,
        events: Optional[EventManager] = None,
        channel_factory: ChannelFactory = create_channel,
        connect_timeout: float = 30.0,
        request_timeout: float = 30.0,
        shutdown_grace: float = 5.0,
    ):
        self.events = events or EventManager()
        self.channel_factory = channel_factory
        self.connect_timeout = connect_timeout
        self.request_timeout = request_timeout
        self.shutdown_grace = shutdown_grace

        self._servers: Dict[str, ServerConnection] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._connect_counter = itertools.count(1)
        self._attempt_counter = itertools.count(1)

    # Read access

    @property
    def servers(self) -> Mapping[str, ServerSnapshot]:
        return MappingProxyType({server_id: record.snapshot() for server_id, record in self._servers.items()})

    @property
    def server_configs(self) -> Mapping[str, ServerConfig]:
        return MappingProxyType({server_id: record.config for server_id, record in self._servers.items()})

    def __contains__(self, server_id: str) -> bool:
        return server_id in self._servers

    def __len__(self) -> int:
        return len(self._servers)

    def get(self, server_id: str) -> ServerSnapshot:
        return self._require(server_id).snapshot()

    def connected_servers(self) -> List[ServerSnapshot]:
        """Connected servers in the order they connected."""
        connected = [r.snapshot() for r in self._servers.values() if r.status is ServerStatus.CONNECTED]
        return sorted(connected, key=lambda s: s.connect_order)

    def _require(self, server_id: str) -> ServerConnection:
        record = self._servers.get(server_id)
        if record is None:
            raise UnknownServerError(server_id)
        return record

    def _lock(self, server_id: str) -> asyncio.Lock:
        return self._locks.setdefault(server_id, asyncio.Lock())

    def _transition(self, record: ServerConnection, status: ServerStatus) -> ServerStatus:
        previous = record.status
        if status not in ALLOWED_TRANSITIONS[previous]:
            raise RuntimeError(f"Illegal transition for '{record.config.id}': {previous.value} -> {status.value}")
        record.status = status
        if status is not ServerStatus.ERROR:
            record.last_error = None
        log.debug(f"[ServerRegistry] {record.config.id}: {previous.value} -> {status.value}")
        return previous

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # Lifecycle

    async def add_server(self, config: Union[ServerConfig, Dict[str, Any]]) -> ServerSnapshot:
        """
        Validate and register a server in the Configured state.

        Raises:
            ConfigError: If the config is invalid or its id is already registered
        """
        config = validate_server_config(config)
        if config.id in self._servers:
            raise ConfigError(f"A server with id '{config.id}' already exists", server_id=config.id)

        record = ServerConnection(config=config)
        self._servers[config.id] = record
        log.info(f"[ServerRegistry] Added server '{config.id}' ({config.transport.value})")
        await self.events.emit(SERVER_ADDED, config.id, config=config)
        return record.snapshot()

    async def connect_server(self, server_id: str) -> ServerStatus:
        """
        Connect a server and run the MCP handshake.

        Failures never raise: the server lands in ERROR with `last_error` set.
        Servers already connecting or connected are left alone, and disabled
        servers are not connected.

        Raises:
            UnknownServerError: If no server has this id
        """
        self._require(server_id)
        async with self._lock(server_id):
            record = self._require(server_id)
            if record.status in (ServerStatus.CONNECTING, ServerStatus.CONNECTED):
                return record.status
            if not record.config.enabled:
                log.warning(f"[ServerRegistry] Server '{server_id}' is disabled, not connecting")
                return record.status

            self._transition(record, ServerStatus.CONNECTING)
            record.attempt = next(self._attempt_counter)
            await self.events.emit(SERVER_CONNECTING, server_id)

            channel = None
            try:
                channel = self.channel_factory(
                    record.config,
                    shutdown_grace=self.shutdown_grace,
                    on_close=functools.partial(self._channel_closed, server_id, record.attempt),
                    on_notification=functools.partial(self._channel_notification, server_id),
                )
                info = await asyncio.wait_for(self._open(channel), timeout=self.connect_timeout)
            except asyncio.CancelledError:
                await self._fail_connect(record, channel, "Connect attempt cancelled")
                raise
            except asyncio.TimeoutError:
                await self._fail_connect(record, channel, f"Timed out after {self.connect_timeout}s while connecting")
            except ToolwireError as e:
                await self._fail_connect(record, channel, e.message)
            except Exception as e:
                log.exception(f"[ServerRegistry] Unexpected error connecting '{server_id}': {e}")
                await self._fail_connect(record, channel, f"{type(e).__name__}: {e}")
            else:
                record.channel = channel
                record.server_info = info
                record.connected_at = time.time()
                record.connect_order = next(self._connect_counter)
                self._transition(record, ServerStatus.CONNECTED)
                log.info(f"[ServerRegistry] Connected '{server_id}' ({info.name or 'unnamed server'} {info.version})")
                await self.events.emit(SERVER_CONNECTED, server_id, server_info=info)

            return record.status

    async def _open(self, channel: MCPChannel) -> ServerInfo:
        await channel.connect()
        return await initialize_session(channel, timeout=self.request_timeout)

    async def _fail_connect(self, record: ServerConnection, channel: Optional[MCPChannel], reason: str) -> None:
        if channel is not None:
            await self._close_channel(record.config.id, channel)
        self._transition(record, ServerStatus.ERROR)
        record.last_error = reason
        record.disconnected_at = time.time()
        log.error(f"[ServerRegistry] Failed to connect '{record.config.id}': {reason}")
        await self.events.emit(SERVER_ERROR, record.config.id, error=reason)

    async def _close_channel(self, server_id: str, channel: MCPChannel) -> None:
        try:
            await asyncio.wait_for(channel.close(), timeout=self.shutdown_grace + 5.0)
        except asyncio.TimeoutError:
            log.warning(f"[ServerRegistry] Timed out closing transport for '{server_id}'")
        except Exception as e:
            log.warning(f"[ServerRegistry] Error closing transport for '{server_id}': {e}")

    async def disconnect_server(self, server_id: str) -> None:
        """
        Tear down the transport and mark the server Disconnected, whatever its prior state.

        Raises:
            UnknownServerError: If no server has this id
        """
        self._require(server_id)
        async with self._lock(server_id):
            await self._disconnect_locked(self._require(server_id))

    async def _disconnect_locked(self, record: ServerConnection) -> None:
        channel, record.channel = record.channel, None
        if channel is not None:
            await self._close_channel(record.config.id, channel)

        previous = self._transition(record, ServerStatus.DISCONNECTED)
        record.server_info = None
        record.disconnected_at = time.time()
        if previous is not ServerStatus.DISCONNECTED:
            log.info(f"[ServerRegistry] Disconnected '{record.config.id}' (was {previous.value})")
        await self.events.emit(SERVER_DISCONNECTED, record.config.id, previous=previous)

    async def remove_server(self, server_id: str) -> None:
        """
        Disconnect and forget a server. Its id can be reused afterwards.

        Raises:
            UnknownServerError: If no server has this id
        """
        self._require(server_id)
        lock = self._lock(server_id)
        async with lock:
            record = self._require(server_id)
            await self._disconnect_locked(record)
            self._transition(record, ServerStatus.REMOVED)
            del self._servers[server_id]
            if self._locks.get(server_id) is lock:
                del self._locks[server_id]
        log.info(f"[ServerRegistry] Removed server '{server_id}'")
        await self.events.emit(SERVER_REMOVED, server_id)

    async def update_server(self, server_id: str, **changes: Any) -> ServerSnapshot:
        """
        Replace a server's config with a revalidated copy carrying `changes`.

        A connected server is disconnected and, if still enabled, reconnected
        with the new config.

        Raises:
            UnknownServerError: If no server has this id
            ConfigError: If the merged config is invalid or tries to change the id
        """
        record = self._require(server_id)
        if changes.get("id", server_id) != server_id:
            raise ConfigError("A server's id cannot be changed", server_id=server_id)

        config = validate_server_config({**record.config.to_dict(), **changes})
        async with self._lock(server_id):
            record = self._require(server_id)
            if config == record.config:
                return record.snapshot()
            was_connected = record.status is ServerStatus.CONNECTED
            if was_connected:
                await self._disconnect_locked(record)
            record.config = config
            log.info(f"[ServerRegistry] Updated config of '{server_id}'")
            await self.events.emit(SERVER_UPDATED, server_id, config=config)

        if was_connected and config.enabled:
            await self.connect_server(server_id)
        return self.get(server_id)

    # Transport callbacks

    def _channel_closed(self, server_id: str, attempt: int, reason: str) -> None:
        self._spawn(self._handle_drop(server_id, attempt, reason), name=f"drop-{server_id}")

    async def _handle_drop(self, server_id: str, attempt: int, reason: str) -> None:
        lock = self._locks.get(server_id)
        if lock is None:
            return
        async with lock:
            record = self._servers.get(server_id)
            if record is None or record.attempt != attempt or record.status is not ServerStatus.CONNECTED:
                return
            channel, record.channel = record.channel, None
            if channel is not None:
                await self._close_channel(server_id, channel)
            self._transition(record, ServerStatus.ERROR)
            record.last_error = f"Connection lost: {reason}"
            record.server_info = None
            record.disconnected_at = time.time()
            log.error(f"[ServerRegistry] Server '{server_id}' dropped: {reason}")
            await self.events.emit(SERVER_ERROR, server_id, error=record.last_error)

    def _channel_notification(self, server_id: str, message: MCPMessage) -> None:
        self._spawn(
            self.events.emit(SERVER_NOTIFICATION, server_id, method=message.method, params=message.params or {}),
            name=f"notification-{server_id}",
        )

    # Requests

    async def request(
        self,
        server_id: str,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Send a JSON-RPC request to a connected server.

        Raises:
            DispatchError: If the server is unknown, not connected, or its transport fails
            MCPError: If the server answers with a JSON-RPC error
            RequestTimeoutError: If the server does not answer in time
        """
        record = self._servers.get(server_id)
        if record is None:
            raise DispatchError(f"Server '{server_id}' is not registered", server_id=server_id)
        channel = record.channel
        if record.status is not ServerStatus.CONNECTED or channel is None:
            raise DispatchError(f"Server '{server_id}' is not connected ({record.status.value})", server_id=server_id)

        try:
            return await channel.request(
                MCPMessage.request(method, params),
                timeout=timeout if timeout is not None else self.request_timeout,
            )
        except ConnectionError as e:
            raise DispatchError(f"Lost connection to '{server_id}': {e.message}", server_id=server_id) from e

    async def ping(self, server_id: str, timeout: Optional[float] = None) -> bool:
        try:
            await self.request(server_id, "ping", timeout=timeout)
            return True
        except ToolwireError as e:
            log.debug(f"[ServerRegistry] Ping to '{server_id}' failed: {e.message}")
            return False

    async def close(self) -> None:
        """Disconnect every server and stop background work."""
        await asyncio.gather(
            *(self.disconnect_server(server_id) for server_id in list(self._servers)),
            return_exceptions=True,
        )
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
