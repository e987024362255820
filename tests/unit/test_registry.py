"""
Unit tests for the server registry state machine, driven through in-memory channels.
"""

import asyncio

import pytest

from toolwire.events import (
    SERVER_ADDED,
    SERVER_CONNECTED,
    SERVER_CONNECTING,
    SERVER_DISCONNECTED,
    SERVER_ERROR,
    SERVER_NOTIFICATION,
    SERVER_REMOVED,
    SERVER_UPDATED,
)
from toolwire.mcp.registry import ALLOWED_TRANSITIONS, ServerStatus
from toolwire.utils.errors import ConfigError, ConnectionError, DispatchError, MCPError, UnknownServerError

ALL_EVENTS = (
    SERVER_ADDED,
    SERVER_CONNECTING,
    SERVER_CONNECTED,
    SERVER_DISCONNECTED,
    SERVER_ERROR,
    SERVER_REMOVED,
    SERVER_UPDATED,
)


def config(server_id, **overrides):
    raw = {"id": server_id, "name": server_id.title(), "type": "stdio", "command": "fake-server"}
    raw.update(overrides)
    return raw


class TestAddServer:
    @pytest.mark.asyncio
    async def test_added_server_is_configured(self, registry, events_recorder):
        events_recorder.attach(registry.events, *ALL_EVENTS)
        snapshot = await registry.add_server(config("files"))

        assert snapshot.status is ServerStatus.CONFIGURED
        assert "files" in registry
        assert len(registry) == 1
        assert events_recorder.names() == [SERVER_ADDED]

    @pytest.mark.asyncio
    async def test_duplicate_id_is_rejected(self, registry):
        await registry.add_server(config("files"))
        with pytest.raises(ConfigError):
            await registry.add_server(config("files", name="Other"))
        assert registry.server_configs["files"].name == "Files"

    @pytest.mark.asyncio
    async def test_invalid_config_never_reaches_registry(self, registry):
        with pytest.raises(ConfigError):
            await registry.add_server({"id": "broken", "name": "Broken", "type": "stdio"})
        assert "broken" not in registry

    @pytest.mark.asyncio
    async def test_read_views_are_immutable(self, registry):
        await registry.add_server(config("files"))
        with pytest.raises(TypeError):
            registry.servers["other"] = None
        with pytest.raises(TypeError):
            registry.server_configs["files"] = None


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_runs_handshake(self, registry, channel_factory, events_recorder):
        events_recorder.attach(registry.events, *ALL_EVENTS)
        await registry.add_server(config("files"))

        status = await registry.connect_server("files")

        assert status is ServerStatus.CONNECTED
        snapshot = registry.get("files")
        assert snapshot.is_connected
        assert snapshot.server_info.name == "files"
        assert snapshot.connected_at is not None
        assert snapshot.last_error is None
        channel = channel_factory.channels["files"]
        assert [m.method for m in channel.sent] == ["initialize"]
        assert [m.method for m in channel.notified] == ["notifications/initialized"]
        assert events_recorder.names() == [SERVER_ADDED, SERVER_CONNECTING, SERVER_CONNECTED]

    @pytest.mark.asyncio
    async def test_connect_failure_lands_in_error(self, registry, channel_factory):
        channel_factory.failures["files"] = ConnectionError("spawn failed: no such file", server_id="files")
        await registry.add_server(config("files"))

        status = await registry.connect_server("files")

        assert status is ServerStatus.ERROR
        snapshot = registry.get("files")
        assert "spawn failed" in snapshot.last_error
        assert channel_factory.channels["files"].closed

    @pytest.mark.asyncio
    async def test_unexpected_exception_lands_in_error(self, registry, channel_factory):
        channel_factory.failures["files"] = ValueError("bug in transport")
        await registry.add_server(config("files"))

        assert await registry.connect_server("files") is ServerStatus.ERROR
        assert "bug in transport" in registry.get("files").last_error

    @pytest.mark.asyncio
    async def test_connect_timeout(self, registry, channel_factory):
        registry.connect_timeout = 0.05
        channel_factory.delays["files"] = 1.0
        await registry.add_server(config("files"))

        assert await registry.connect_server("files") is ServerStatus.ERROR
        assert "Timed out" in registry.get("files").last_error

    @pytest.mark.asyncio
    async def test_initialize_error_lands_in_error(self, registry, channel_factory):
        channel_factory.handlers["files"] = lambda message: {
            "jsonrpc": "2.0",
            "id": message["id"],
            "error": {"code": -32603, "message": "unsupported client"},
        }
        await registry.add_server(config("files"))

        assert await registry.connect_server("files") is ServerStatus.ERROR
        assert registry.get("files").last_error == "unsupported client"

    @pytest.mark.asyncio
    async def test_connect_is_idempotent(self, registry, channel_factory):
        await registry.add_server(config("files"))
        await registry.connect_server("files")
        await registry.connect_server("files")
        assert channel_factory.created == 1

    @pytest.mark.asyncio
    async def test_concurrent_connects_share_one_attempt(self, registry, channel_factory):
        channel_factory.delays["files"] = 0.05
        await registry.add_server(config("files"))

        statuses = await asyncio.gather(*(registry.connect_server("files") for _ in range(5)))

        assert set(statuses) == {ServerStatus.CONNECTED}
        assert channel_factory.created == 1

    @pytest.mark.asyncio
    async def test_disabled_server_is_not_connected(self, registry, channel_factory):
        await registry.add_server(config("files", enabled=False))
        assert await registry.connect_server("files") is ServerStatus.CONFIGURED
        assert channel_factory.created == 0

    @pytest.mark.asyncio
    async def test_unknown_server_raises(self, registry):
        with pytest.raises(UnknownServerError):
            await registry.connect_server("ghost")

    @pytest.mark.asyncio
    async def test_one_failure_does_not_affect_others(self, registry, channel_factory):
        channel_factory.failures["bad"] = ConnectionError("refused", server_id="bad")
        for server_id in ("good", "bad", "also-good"):
            await registry.add_server(config(server_id))

        await asyncio.gather(*(registry.connect_server(sid) for sid in ("good", "bad", "also-good")))

        assert registry.get("good").status is ServerStatus.CONNECTED
        assert registry.get("also-good").status is ServerStatus.CONNECTED
        assert registry.get("bad").status is ServerStatus.ERROR

    @pytest.mark.asyncio
    async def test_reconnect_after_error(self, registry, channel_factory):
        channel_factory.failures["files"] = ConnectionError("not yet", server_id="files")
        await registry.add_server(config("files"))
        assert await registry.connect_server("files") is ServerStatus.ERROR

        del channel_factory.failures["files"]
        assert await registry.connect_server("files") is ServerStatus.CONNECTED
        assert registry.get("files").last_error is None

    @pytest.mark.asyncio
    async def test_connect_order_is_recorded(self, registry):
        for server_id in ("b", "a"):
            await registry.add_server(config(server_id))
        await registry.connect_server("b")
        await registry.connect_server("a")
        assert [s.id for s in registry.connected_servers()] == ["b", "a"]


class TestDisconnectAndRemove:
    @pytest.mark.asyncio
    async def test_disconnect_closes_transport(self, registry, channel_factory):
        await registry.add_server(config("files"))
        await registry.connect_server("files")

        await registry.disconnect_server("files")

        snapshot = registry.get("files")
        assert snapshot.status is ServerStatus.DISCONNECTED
        assert snapshot.server_info is None
        assert channel_factory.channels["files"].closed

    @pytest.mark.asyncio
    async def test_disconnect_from_any_state(self, registry, channel_factory):
        channel_factory.failures["err"] = ConnectionError("x", server_id="err")
        await registry.add_server(config("fresh"))
        await registry.add_server(config("err"))
        await registry.connect_server("err")

        await registry.disconnect_server("fresh")
        await registry.disconnect_server("err")
        await registry.disconnect_server("err")

        assert registry.get("fresh").status is ServerStatus.DISCONNECTED
        assert registry.get("err").status is ServerStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_remove_frees_the_id(self, registry, channel_factory, events_recorder):
        await registry.add_server(config("files"))
        await registry.connect_server("files")
        events_recorder.attach(registry.events, *ALL_EVENTS)

        await registry.remove_server("files")

        assert "files" not in registry
        assert channel_factory.channels["files"].closed
        assert events_recorder.names() == [SERVER_DISCONNECTED, SERVER_REMOVED]
        with pytest.raises(UnknownServerError):
            registry.get("files")

        await registry.add_server(config("files"))
        assert await registry.connect_server("files") is ServerStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_remove_unknown_raises(self, registry):
        with pytest.raises(UnknownServerError):
            await registry.remove_server("ghost")

    @pytest.mark.asyncio
    async def test_close_disconnects_everything(self, registry):
        for server_id in ("a", "b"):
            await registry.add_server(config(server_id))
            await registry.connect_server(server_id)

        await registry.close()

        assert registry.connected_servers() == []


class TestUnexpectedDrop:
    @pytest.mark.asyncio
    async def test_drop_moves_connected_server_to_error(self, registry, channel_factory, events_recorder):
        await registry.add_server(config("files"))
        await registry.connect_server("files")
        events_recorder.attach(registry.events, SERVER_ERROR)

        channel_factory.channels["files"].drop("process exited with code 1")
        await asyncio.gather(*registry._tasks)

        snapshot = registry.get("files")
        assert snapshot.status is ServerStatus.ERROR
        assert "process exited with code 1" in snapshot.last_error
        assert events_recorder.names() == [SERVER_ERROR]

    @pytest.mark.asyncio
    async def test_stale_drop_is_ignored(self, registry, channel_factory):
        await registry.add_server(config("files"))
        await registry.connect_server("files")
        old_channel = channel_factory.channels["files"]
        await registry.disconnect_server("files")
        await registry.connect_server("files")

        old_channel.drop("late close callback")
        await asyncio.gather(*registry._tasks)

        assert registry.get("files").status is ServerStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_drop_from_removed_server_ignored_after_re_add(self, registry, channel_factory):
        await registry.add_server(config("files"))
        await registry.connect_server("files")
        old_channel = channel_factory.channels["files"]
        await registry.remove_server("files")
        await registry.add_server(config("files"))
        await registry.connect_server("files")

        old_channel.drop("late close callback")
        await asyncio.gather(*registry._tasks)

        assert registry.get("files").status is ServerStatus.CONNECTED
        assert registry.get("files").last_error is None


class TestUpdate:
    @pytest.mark.asyncio
    async def test_update_reconnects_connected_server(self, registry, channel_factory):
        await registry.add_server(config("files"))
        await registry.connect_server("files")

        snapshot = await registry.update_server("files", args=["--verbose"])

        assert snapshot.status is ServerStatus.CONNECTED
        assert registry.server_configs["files"].args == ("--verbose",)
        assert channel_factory.created == 2
        assert channel_factory.channels["files"].config.args == ("--verbose",)

    @pytest.mark.asyncio
    async def test_disabling_disconnects(self, registry):
        await registry.add_server(config("files"))
        await registry.connect_server("files")

        snapshot = await registry.update_server("files", enabled=False)

        assert snapshot.status is ServerStatus.DISCONNECTED
        assert snapshot.enabled is False

    @pytest.mark.asyncio
    async def test_update_cannot_change_id(self, registry):
        await registry.add_server(config("files"))
        with pytest.raises(ConfigError):
            await registry.update_server("files", id="other")

    @pytest.mark.asyncio
    async def test_invalid_update_keeps_old_config(self, registry):
        await registry.add_server(config("files"))
        with pytest.raises(ConfigError):
            await registry.update_server("files", command="")
        assert registry.server_configs["files"].command == "fake-server"


class TestRequests:
    @pytest.mark.asyncio
    async def test_request_to_unconnected_server_is_dispatch_error(self, registry):
        await registry.add_server(config("files"))
        with pytest.raises(DispatchError):
            await registry.request("files", "tools/list")
        with pytest.raises(DispatchError):
            await registry.request("ghost", "tools/list")

    @pytest.mark.asyncio
    async def test_request_returns_result(self, registry):
        await registry.add_server(config("files"))
        await registry.connect_server("files")
        result = await registry.request("files", "tools/call", {"name": "echo", "arguments": {"text": "hi"}})
        assert result["content"][0]["text"] == "files: hi"

    @pytest.mark.asyncio
    async def test_server_error_is_raised_as_mcp_error(self, registry):
        await registry.add_server(config("files"))
        await registry.connect_server("files")
        with pytest.raises(MCPError) as excinfo:
            await registry.request("files", "does/not/exist")
        assert excinfo.value.code == -32601

    @pytest.mark.asyncio
    async def test_ping(self, registry):
        await registry.add_server(config("files"))
        assert await registry.ping("files") is False
        await registry.connect_server("files")
        assert await registry.ping("files") is True

    @pytest.mark.asyncio
    async def test_notifications_are_forwarded_as_events(self, registry, events_recorder):
        await registry.add_server(config("files"))
        await registry.connect_server("files")
        events_recorder.attach(registry.events, SERVER_NOTIFICATION)

        await registry.request("files", "tools/call", {"name": "notify", "arguments": {}})
        await asyncio.gather(*registry._tasks)

        assert events_recorder.events == [(SERVER_NOTIFICATION, "files")]


def test_removed_is_terminal():
    assert ALLOWED_TRANSITIONS[ServerStatus.REMOVED] == set()
    assert ServerStatus.CONNECTED not in ALLOWED_TRANSITIONS[ServerStatus.CONFIGURED]
