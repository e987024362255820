"""
MCP Transport Channels

Unified interface for the MCP transports (stdio subprocess, streamable HTTP,
HTTP+SSE and WebSocket). Every channel correlates JSON-RPC responses with
requests and bounds each request by a caller-supplied timeout.
"""

import asyncio
import collections
import json
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Callable, Deque, Dict, Optional, Tuple, Union
from urllib.parse import urljoin

import aiohttp
import websockets
from aiohttp_sse_client import client as sse_client

from toolwire.utils.errors import ConnectionError, MCPError, ProtocolError, RequestTimeoutError

from .config import (
    HttpServerConfig,
    ServerConfig,
    StdioServerConfig,
    TransportType,
    WebSocketServerConfig,
    resolve_config,
)
from .messages import METHOD_NOT_FOUND, MCPMessage

log = logging.getLogger(__name__)

# Large tool results arrive as a single line
STREAM_LIMIT = 2**22

CloseCallback = Callable[[str], Any]
NotificationCallback = Callable[[MCPMessage], Any]


class MCPChannel(ABC):
    """Abstract base for all MCP transport channels."""

    def __init__(
        self,
        server_id: str,
        on_close: Optional[CloseCallback] = None,
        on_notification: Optional[NotificationCallback] = None,
    ):
        self.server_id = server_id
        self.on_close = on_close
        self.on_notification = on_notification
        self._connected = False
        self._closing = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    @abstractmethod
    async def connect(self) -> None:
        """
        Establish the transport.

        Raises:
            ConnectionError: If the server cannot be reached or started
        """

    @abstractmethod
    async def request(self, message: MCPMessage, timeout: float) -> Any:
        """
        Send a request and wait for its result.

        Returns:
            The `result` member of the response

        Raises:
            ConnectionError: If the channel is not connected or drops
            MCPError: If the server answers with a JSON-RPC error
            RequestTimeoutError: If no response arrives within `timeout`
        """

    @abstractmethod
    async def notify(self, message: MCPMessage) -> None:
        """Send a notification, which gets no response."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection and release every resource. Safe to call twice."""

    def _require_connected(self) -> None:
        if not self._connected:
            raise ConnectionError("Channel not connected", server_id=self.server_id)

    def _result_of(self, response: MCPMessage) -> Any:
        if response.error is not None:
            raise MCPError(response.error, server_id=self.server_id)
        return response.result

    def _timeout_error(self, message: MCPMessage, timeout: float) -> RequestTimeoutError:
        return RequestTimeoutError(
            f"'{message.method}' got no response within {timeout}s",
            server_id=self.server_id,
            timeout=timeout,
        )

    def _reply_to_server_request(self, message: MCPMessage) -> MCPMessage:
        if message.method == "ping":
            return MCPMessage.response(message.id, {})
        log.debug(f"[{self.__class__.__name__}] {self.server_id} sent unsupported request {message.method}")
        return MCPMessage.response(
            message.id,
            error={"code": METHOD_NOT_FOUND, "message": f"Method not found: {message.method}"},
        )

    def _report_notification(self, message: MCPMessage) -> None:
        log.debug(f"[{self.__class__.__name__}] {self.server_id} notification: {message.method}")
        if self.on_notification is None:
            return
        try:
            self.on_notification(message)
        except Exception as e:
            log.exception(f"[{self.__class__.__name__}] Notification callback failed: {e}")

    def _report_close(self, reason: str) -> None:
        log.warning(f"[{self.__class__.__name__}] {self.server_id} connection lost: {reason}")
        if self.on_close is None:
            return
        try:
            self.on_close(reason)
        except Exception as e:
            log.exception(f"[{self.__class__.__name__}] Close callback failed: {e}")


class StreamChannel(MCPChannel):
    """Base for transports with a persistent bidirectional message stream.

    A background reader task routes responses to waiting requests. When the
    stream ends without `close()` having been called, pending requests fail
    with ConnectionError and `on_close` is invoked once.
    """

    def __init__(self, server_id: str, **callbacks):
        super().__init__(server_id, **callbacks)
        self.pending_requests: Dict[str, asyncio.Future] = {}
        self._reader_task: Optional[asyncio.Task] = None

    @abstractmethod
    async def _write(self, message: MCPMessage) -> None:
        """Put one message on the wire."""

    @abstractmethod
    async def _read(self) -> Optional[Union[str, bytes]]:
        """Return the next raw frame, or None once the stream has ended."""

    async def _loss_reason(self, reason: str) -> str:
        return reason

    def _start_reader(self) -> None:
        self._reader_task = asyncio.create_task(
            self._reader_loop(), name=f"{self.__class__.__name__}-reader-{self.server_id}"
        )

    async def _reader_loop(self) -> None:
        reason = "stream closed by server"
        try:
            while True:
                raw = await self._read()
                if raw is None:
                    break
                if not raw.strip():
                    continue
                try:
                    message = MCPMessage.from_json(raw)
                except ProtocolError as e:
                    log.warning(f"[{self.__class__.__name__}] Ignoring malformed frame from {self.server_id}: {e.message}")
                    continue
                await self._dispatch(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = f"read failed: {e}"

        if not self._closing:
            self._lost(await self._loss_reason(reason))

    async def _dispatch(self, message: MCPMessage) -> None:
        if message.method is None:
            future = self.pending_requests.pop(str(message.id), None)
            if future is None:
                log.debug(f"[{self.__class__.__name__}] Response for unknown request {message.id}")
            elif not future.done():
                future.set_result(message)
        elif message.is_request:
            try:
                await self._write(self._reply_to_server_request(message))
            except ConnectionError as e:
                log.debug(f"[{self.__class__.__name__}] Could not answer {message.method}: {e.message}")
        else:
            self._report_notification(message)

    def _fail_pending(self, reason: str) -> None:
        for future in self.pending_requests.values():
            if not future.done():
                future.set_exception(ConnectionError(reason, server_id=self.server_id))
        self.pending_requests.clear()

    def _lost(self, reason: str) -> None:
        was_connected = self._connected
        self._connected = False
        self._fail_pending(reason)
        if was_connected and not self._closing:
            self._report_close(reason)

    async def request(self, message: MCPMessage, timeout: float) -> Any:
        self._require_connected()

        key = str(message.id)
        future = asyncio.get_running_loop().create_future()
        self.pending_requests[key] = future
        try:
            await self._write(message)
            log.debug(f"[{self.__class__.__name__}] Sent {message.method} (id: {message.id}) to {self.server_id}")
            response = await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            raise self._timeout_error(message, timeout) from None
        finally:
            self.pending_requests.pop(key, None)

        return self._result_of(response)

    async def notify(self, message: MCPMessage) -> None:
        self._require_connected()
        await self._write(message)

    async def _stop_reader(self) -> None:
        task, self._reader_task = self._reader_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._fail_pending("channel closed")


class StdioChannel(StreamChannel):
    """Channel for local MCP servers spawned as subprocesses."""

    def __init__(self, config: StdioServerConfig, shutdown_grace: float = 5.0, **callbacks):
        super().__init__(config.id, **callbacks)
        self.config = config
        self.shutdown_grace = shutdown_grace
        self.process: Optional[asyncio.subprocess.Process] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._stderr_tail: Deque[str] = collections.deque(maxlen=20)

    async def connect(self) -> None:
        """Spawn the server process and start reading its stdout."""
        if self._connected:
            return

        command = [self.config.command, *self.config.args]
        log.info(f"[StdioChannel] Starting {self.server_id}: {' '.join(command)}")

        try:
            self.process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.config.cwd,
                env={**os.environ, **self.config.env},
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            log.error(f"[StdioChannel] Failed to start {self.server_id}: {e}")
            raise ConnectionError(f"Failed to start '{self.config.command}': {e}", server_id=self.server_id) from e

        self._closing = False
        self._connected = True
        self._stderr_task = asyncio.create_task(self._drain_stderr(self.process))
        self._start_reader()
        log.debug(f"[StdioChannel] {self.server_id} running as pid {self.process.pid}")

    async def _drain_stderr(self, process: asyncio.subprocess.Process) -> None:
        while True:
            line = await process.stderr.readline()
            if not line:
                return
            text = line.decode(errors="replace").rstrip()
            if text:
                self._stderr_tail.append(text)
                log.debug(f"[StdioChannel] {self.server_id} stderr: {text}")

    async def _write(self, message: MCPMessage) -> None:
        if self.process is None or self.process.stdin is None or self.process.stdin.is_closing():
            raise ConnectionError("Process stdin is closed", server_id=self.server_id)
        try:
            self.process.stdin.write((message.to_json() + "\n").encode())
            await self.process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise ConnectionError(f"Failed to write to process: {e}", server_id=self.server_id) from e

    async def _read(self) -> Optional[bytes]:
        line = await self.process.stdout.readline()
        return line or None

    async def _loss_reason(self, reason: str) -> str:
        process = self.process
        if process is None:
            return reason
        try:
            returncode = await asyncio.wait_for(process.wait(), timeout=1.0)
            reason = f"process exited with code {returncode}"
        except asyncio.TimeoutError:
            pass
        # Let the stderr drain catch up with the final lines
        if self._stderr_task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(self._stderr_task), timeout=0.5)
            except asyncio.TimeoutError:
                pass
        if self._stderr_tail:
            reason += f": {self._stderr_tail[-1]}"
        return reason

    async def close(self) -> None:
        """Stop the process and reap it, escalating to SIGKILL after the grace period."""
        self._closing = True
        self._connected = False
        process, self.process = self.process, None

        if process is not None:
            if process.stdin is not None and not process.stdin.is_closing():
                process.stdin.close()
            if process.returncode is None:
                try:
                    process.terminate()
                    await asyncio.wait_for(process.wait(), timeout=self.shutdown_grace)
                except asyncio.TimeoutError:
                    log.warning(f"[StdioChannel] {self.server_id} did not terminate gracefully, killing")
                    process.kill()
                    await process.wait()
                except ProcessLookupError:
                    pass
            else:
                await process.wait()

        await self._stop_reader()
        if self._stderr_task is not None:
            self._stderr_task.cancel()
            try:
                await self._stderr_task
            except asyncio.CancelledError:
                pass
            self._stderr_task = None
        log.info(f"[StdioChannel] Closed {self.server_id}")


async def iter_event_stream(content: aiohttp.StreamReader) -> AsyncIterator[Tuple[str, str]]:
    """Yield (event type, data) pairs from a `text/event-stream` response body."""
    event_type, data_lines = "message", []
    async for raw_line in content:
        line = raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
        if not line:
            if data_lines:
                yield event_type, "\n".join(data_lines)
            event_type, data_lines = "message", []
        elif line.startswith(":"):
            continue
        else:
            field, _, value = line.partition(":")
            value = value[1:] if value.startswith(" ") else value
            if field == "event":
                event_type = value or "message"
            elif field == "data":
                data_lines.append(value)
    if data_lines:
        yield event_type, "\n".join(data_lines)


class HTTPChannel(MCPChannel):
    """Channel for MCP servers over streamable HTTP (one POST per message)."""

    def __init__(self, config: HttpServerConfig, **callbacks):
        super().__init__(config.id, **callbacks)
        self.config = config
        self.session: Optional[aiohttp.ClientSession] = None
        self._session_id: Optional[str] = None

    async def connect(self) -> None:
        """Open the HTTP session. Reachability is established by the first request."""
        if self._connected:
            return
        log.info(f"[HTTPChannel] Connecting to {self.config.url}")
        self.session = aiohttp.ClientSession(connector=aiohttp.TCPConnector(limit=10))
        self._closing = False
        self._connected = True

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json, text/event-stream",
            "Content-Type": "application/json",
            **self.config.headers,
        }
        if self._session_id:
            headers["Mcp-Session-Id"] = self._session_id
        return headers

    async def _post(self, message: MCPMessage) -> Optional[MCPMessage]:
        try:
            async with self.session.post(self.config.url, json=message.to_dict(), headers=self._headers()) as response:
                if response.status < 200 or response.status >= 300:
                    body = await response.text()
                    raise ConnectionError(
                        f"HTTP {response.status} from {self.config.url}: {body[:200]}",
                        server_id=self.server_id,
                    )

                session_id = response.headers.get("Mcp-Session-Id")
                if session_id and session_id != self._session_id:
                    self._session_id = session_id
                    log.debug(f"[HTTPChannel] Session id for {self.server_id}: {session_id}")

                if message.id is None:
                    return None
                if response.content_type == "text/event-stream":
                    return await self._read_stream_response(response, message)
                return self._pick_response(json.loads(await response.text() or "null"), message)
        except aiohttp.ClientError as e:
            raise ConnectionError(f"Request to {self.config.url} failed: {e}", server_id=self.server_id) from e
        except json.JSONDecodeError as e:
            raise ProtocolError(f"Invalid JSON response: {e}", server_id=self.server_id) from e

    async def _read_stream_response(self, response: aiohttp.ClientResponse, request: MCPMessage) -> MCPMessage:
        async for event_type, data in iter_event_stream(response.content):
            if event_type != "message":
                continue
            reply = self._pick_response(json.loads(data), request, required=False)
            if reply is not None:
                return reply
        raise ProtocolError(f"Event stream ended without a response to {request.method}", server_id=self.server_id)

    def _pick_response(self, payload: Any, request: MCPMessage, required: bool = True) -> Optional[MCPMessage]:
        items = payload if isinstance(payload, list) else [payload]
        found = None
        for item in items:
            message = MCPMessage.from_dict(item)
            if message.method is None and str(message.id) == str(request.id):
                found = message
            elif message.is_notification:
                self._report_notification(message)
        if found is None and required:
            raise ProtocolError(f"No response to {request.method} in HTTP body", server_id=self.server_id)
        return found

    async def request(self, message: MCPMessage, timeout: float) -> Any:
        self._require_connected()
        try:
            response = await asyncio.wait_for(self._post(message), timeout=timeout)
        except asyncio.TimeoutError:
            raise self._timeout_error(message, timeout) from None
        return self._result_of(response)

    async def notify(self, message: MCPMessage) -> None:
        self._require_connected()
        await self._post(message)

    async def close(self) -> None:
        self._closing = True
        self._connected = False
        session, self.session = self.session, None
        if session is not None and not session.closed:
            await session.close()
        self._session_id = None
        log.info(f"[HTTPChannel] Closed connection to {self.config.url}")


class SSEChannel(StreamChannel):
    """Channel for MCP servers using the HTTP+SSE transport.

    Responses arrive on a long-lived event stream; requests are POSTed to the
    endpoint announced by the server's first `endpoint` event.
    """

    def __init__(self, config: HttpServerConfig, **callbacks):
        super().__init__(config.id, **callbacks)
        self.config = config
        self.session: Optional[aiohttp.ClientSession] = None
        self.event_source: Optional[sse_client.EventSource] = None
        self.endpoint: Optional[str] = None
        self._events: Optional[AsyncIterator] = None
        self._endpoint_ready: Optional[asyncio.Future] = None

    async def connect(self) -> None:
        """Open the event stream and wait for the message endpoint."""
        if self._connected:
            return
        log.info(f"[SSEChannel] Connecting to {self.config.url}")

        self.session = aiohttp.ClientSession(connector=aiohttp.TCPConnector(limit=10))
        self.event_source = sse_client.EventSource(
            self.config.url,
            session=self.session,
            max_connect_retry=0,
            headers=dict(self.config.headers),
        )
        try:
            await self.event_source.connect()
        except (OSError, aiohttp.ClientError) as e:
            await self._cleanup()
            raise ConnectionError(f"Failed to open event stream at {self.config.url}: {e}", server_id=self.server_id) from e

        self._events = self.event_source.__aiter__()
        self._endpoint_ready = asyncio.get_running_loop().create_future()
        self._closing = False
        self._connected = True
        self._start_reader()

        try:
            await self._endpoint_ready
        except BaseException:
            await self.close()
            raise
        log.info(f"[SSEChannel] {self.server_id} posting to {self.endpoint}")

    async def _read(self) -> Optional[str]:
        while True:
            try:
                event = await self._events.__anext__()
            except StopAsyncIteration:
                return None
            event_type = getattr(event, "type", None) or "message"
            if event_type == "endpoint":
                self.endpoint = urljoin(self.config.url, event.data.strip())
                if self._endpoint_ready is not None and not self._endpoint_ready.done():
                    self._endpoint_ready.set_result(self.endpoint)
            elif event_type == "message":
                return event.data

    def _lost(self, reason: str) -> None:
        if self._endpoint_ready is not None and not self._endpoint_ready.done():
            self._endpoint_ready.set_exception(ConnectionError(reason, server_id=self.server_id))
        super()._lost(reason)

    async def _write(self, message: MCPMessage) -> None:
        if self.session is None or self.endpoint is None:
            raise ConnectionError("Channel not connected", server_id=self.server_id)
        try:
            async with self.session.post(self.endpoint, json=message.to_dict(), headers=self.config.headers) as response:
                if response.status < 200 or response.status >= 300:
                    body = await response.text()
                    raise ConnectionError(f"HTTP {response.status} from {self.endpoint}: {body[:200]}", server_id=self.server_id)
        except aiohttp.ClientError as e:
            raise ConnectionError(f"Failed to post to {self.endpoint}: {e}", server_id=self.server_id) from e

    async def close(self) -> None:
        self._closing = True
        self._connected = False
        await self._stop_reader()
        await self._cleanup()
        log.info(f"[SSEChannel] Closed connection to {self.config.url}")

    async def _cleanup(self) -> None:
        if self.event_source is not None:
            try:
                await self.event_source.close()
            except (OSError, aiohttp.ClientError) as e:
                log.warning(f"[SSEChannel] Error closing event stream: {e}")
        if self.session is not None and not self.session.closed:
            await self.session.close()
        self.event_source = None
        self.session = None
        self._events = None
        self.endpoint = None


class WebSocketChannel(StreamChannel):
    """Channel for MCP servers over WebSocket, one JSON-RPC message per text frame."""

    def __init__(self, config: WebSocketServerConfig, **callbacks):
        super().__init__(config.id, **callbacks)
        self.config = config
        self.websocket = None

    async def connect(self) -> None:
        if self._connected:
            return
        log.info(f"[WebSocketChannel] Connecting to {self.config.url}")
        try:
            self.websocket = await websockets.connect(
                self.config.url,
                additional_headers=self.config.headers or None,
                subprotocols=["mcp"],
                max_size=STREAM_LIMIT,
            )
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            log.error(f"[WebSocketChannel] Failed to connect to {self.config.url}: {e}")
            raise ConnectionError(f"Failed to connect to {self.config.url}: {e}", server_id=self.server_id) from e

        self._closing = False
        self._connected = True
        self._start_reader()

    async def _write(self, message: MCPMessage) -> None:
        if self.websocket is None:
            raise ConnectionError("Channel not connected", server_id=self.server_id)
        try:
            await self.websocket.send(message.to_json())
        except websockets.exceptions.ConnectionClosed as e:
            raise ConnectionError(f"WebSocket closed: {e}", server_id=self.server_id) from e

    async def _read(self) -> Optional[Union[str, bytes]]:
        try:
            return await self.websocket.recv()
        except websockets.exceptions.ConnectionClosed:
            return None

    async def close(self) -> None:
        self._closing = True
        self._connected = False
        websocket, self.websocket = self.websocket, None
        if websocket is not None:
            await websocket.close()
        await self._stop_reader()
        log.info(f"[WebSocketChannel] Closed connection to {self.config.url}")


def create_channel(
    config: ServerConfig,
    shutdown_grace: float = 5.0,
    on_close: Optional[CloseCallback] = None,
    on_notification: Optional[NotificationCallback] = None,
) -> MCPChannel:
    """
    Build the unconnected channel matching the config's transport.

    Raises:
        ConfigError: If a `${VAR}` placeholder cannot be resolved
    """
    config = resolve_config(config)
    callbacks = {"on_close": on_close, "on_notification": on_notification}

    if config.transport is TransportType.STDIO:
        return StdioChannel(config, shutdown_grace=shutdown_grace, **callbacks)
    if config.transport is TransportType.HTTP:
        if config.sse:
            return SSEChannel(config, **callbacks)
        return HTTPChannel(config, **callbacks)
    if config.transport is TransportType.WEBSOCKET:
        return WebSocketChannel(config, **callbacks)
    raise NotImplementedError(f"Transport {config.transport} not implemented")
