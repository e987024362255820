import asyncio

import pytest

from toolwire.events import CAPABILITIES_REBUILT
from toolwire.mcp.aggregator import Capability, CapabilityKind, build_index
from toolwire.mcp.registry import ServerStatus


def config(server_id, **overrides):
    raw = {"id": server_id, "name": f"{server_id} server", "type": "stdio", "command": "fake-server"}
    raw.update(overrides)
    return raw


async def connect(registry, *server_ids):
    for server_id in server_ids:
        await registry.add_server(config(server_id))
        await registry.connect_server(server_id)


def tool(server_id, name):
    return Capability(kind=CapabilityKind.TOOL, name=name, server_id=server_id, server_name=server_id)


class TestBuildIndex:
    def test_first_listed_server_wins_bare_names(self):
        index = build_index(
            [("a", {CapabilityKind.TOOL: [tool("a", "search")]}), ("b", {CapabilityKind.TOOL: [tool("b", "search")]})],
            last_updated=1.0,
            revision=1,
        )
        assert index.resolve(CapabilityKind.TOOL, "search").server_id == "a"
        assert index.resolve(CapabilityKind.TOOL, "b:search").server_id == "b"
        assert index.collisions[(CapabilityKind.TOOL, "search")] == ("a", "b")
        assert len(index.tools) == 2

    def test_duplicate_within_one_server_is_kept_once(self):
        index = build_index([("a", {CapabilityKind.TOOL: [tool("a", "x"), tool("a", "x")]})], 1.0, 1)
        assert len(index.tools) == 1
        assert index.collisions == {}

    def test_unknown_name_resolves_to_none(self):
        index = build_index([], 1.0, 1)
        assert index.resolve(CapabilityKind.TOOL, "nothing") is None


class TestCapabilityAggregator:
    @pytest.mark.asyncio
    async def test_connected_server_capabilities_are_indexed(self, registry, aggregator):
        await connect(registry, "files")

        index = aggregator.index
        assert {t.name for t in index.tools} == {"echo", "fail", "slow", "crash", "notify"}
        assert index.resources[0].uri == "memo://files/notes"
        assert index.resources[0].title == "notes"
        assert index.resources[0].schema == {"mimeType": "text/plain"}
        assert index.prompts[0].schema == {"arguments": [{"name": "who", "required": True}]}
        echo = aggregator.resolve_tool("echo")
        assert echo.server_id == "files"
        assert echo.server_name == "files server"
        assert echo.schema["required"] == ["text"]
        assert aggregator.resolve_tool("files:echo") == echo

    @pytest.mark.asyncio
    async def test_collisions_resolve_by_connect_order(self, registry, aggregator):
        await connect(registry, "alpha", "beta")

        assert aggregator.resolve_tool("echo").server_id == "alpha"
        assert aggregator.resolve_tool("beta:echo").server_id == "beta"
        assert aggregator.index.collisions[(CapabilityKind.TOOL, "echo")] == ("alpha", "beta")

        await registry.disconnect_server("alpha")

        assert aggregator.resolve_tool("echo").server_id == "beta"
        assert aggregator.resolve_tool("alpha:echo") is None
        assert aggregator.index.for_server("alpha") == []

    @pytest.mark.asyncio
    async def test_index_is_replaced_not_mutated(self, registry, aggregator):
        await connect(registry, "files")
        before = aggregator.index

        await registry.remove_server("files")

        assert len(before.tools) == 5
        assert aggregator.index.tools == ()
        assert aggregator.index is not before

    @pytest.mark.asyncio
    async def test_last_updated_strictly_increases(self, registry, aggregator):
        stamps = [aggregator.last_updated]
        revisions = [aggregator.index.revision]
        for server_id in ("a", "b", "c"):
            await connect(registry, server_id)
            stamps.append(aggregator.last_updated)
            revisions.append(aggregator.index.revision)
        await aggregator.rebuild()
        await aggregator.rebuild()
        stamps.append(aggregator.last_updated)

        assert all(later > earlier for earlier, later in zip(stamps, stamps[1:]))
        assert revisions == sorted(set(revisions))

    @pytest.mark.asyncio
    async def test_rebuild_emits_event(self, registry, aggregator, events_recorder):
        events_recorder.attach(registry.events, CAPABILITIES_REBUILT)
        await connect(registry, "files")
        assert CAPABILITIES_REBUILT in events_recorder.names()

    @pytest.mark.asyncio
    async def test_malformed_listing_contributes_nothing(self, registry, aggregator, channel_factory):
        channel_factory.server("broken", malformed_tools=True)
        await connect(registry, "broken", "files")

        assert registry.get("broken").status is ServerStatus.CONNECTED
        assert aggregator.index.for_server("broken") == []
        assert aggregator.resolve_tool("echo").server_id == "files"

    @pytest.mark.asyncio
    async def test_malformed_items_are_skipped(self, registry, aggregator, channel_factory):
        def handler(message):
            if message.get("method") == "tools/list":
                tools = [{"description": "no name"}, "junk", {"name": "ok", "inputSchema": "bad"}]
                return {"jsonrpc": "2.0", "id": message["id"], "result": {"tools": tools}}
            return channel_factory.server("files").handle(message)

        channel_factory.handlers["files"] = handler
        await connect(registry, "files")

        assert [t.name for t in aggregator.index.tools] == ["ok"]
        assert aggregator.resolve_tool("ok").schema == {"type": "object"}

    @pytest.mark.asyncio
    async def test_listings_are_paginated(self, registry, aggregator, channel_factory):
        server = channel_factory.server("paged", page_size=2)
        await connect(registry, "paged")

        assert len(aggregator.index.tools) == 5
        cursors = [m["params"].get("cursor") for m in server.received if m.get("method") == "tools/list"]
        assert cursors == [None, "2", "4"]

    @pytest.mark.asyncio
    async def test_only_advertised_kinds_are_listed(self, registry, aggregator, channel_factory):
        server = channel_factory.server("tools-only", advertise=("tools",))
        await connect(registry, "tools-only")

        methods = [m.get("method") for m in server.received]
        assert "tools/list" in methods
        assert "resources/list" not in methods
        assert "prompts/list" not in methods
        assert aggregator.index.resources == ()

    @pytest.mark.asyncio
    async def test_unimplemented_list_method_is_empty(self, registry, aggregator, channel_factory):
        server = channel_factory.server("files", advertise=())

        def handler(message):
            if message.get("method") == "prompts/list":
                return {"jsonrpc": "2.0", "id": message["id"], "error": {"code": -32601, "message": "no prompts"}}
            return server.handle(message)

        channel_factory.handlers["files"] = handler
        await connect(registry, "files")

        assert aggregator.index.prompts == ()
        assert len(aggregator.index.tools) == 5

    @pytest.mark.asyncio
    async def test_list_changed_notification_triggers_refresh(self, registry, aggregator):
        await connect(registry, "files")
        assert aggregator.resolve_tool("late") is None

        await registry.request("files", "tools/call", {"name": "notify", "arguments": {}})
        await asyncio.gather(*registry._tasks)

        assert aggregator.resolve_tool("late").server_id == "files"

    @pytest.mark.asyncio
    async def test_failed_connect_contributes_nothing(self, registry, aggregator, channel_factory):
        from toolwire.utils.errors import ConnectionError

        channel_factory.failures["bad"] = ConnectionError("refused", server_id="bad")
        await connect(registry, "bad")
        assert aggregator.index.tools == ()
