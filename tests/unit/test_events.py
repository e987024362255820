import asyncio

import pytest

from toolwire.events import SERVER_ADDED, SERVER_CONNECTED, EventManager


@pytest.mark.asyncio
async def test_hooks_are_awaited_before_emit_returns():
    events = EventManager()
    calls = []

    async def slow_hook(payload):
        await asyncio.sleep(0.01)
        calls.append(("async", payload.server_id))

    def sync_hook(payload):
        calls.append(("sync", payload.data["config"]))

    events.on_hook(SERVER_ADDED, slow_hook)
    events.on_hook(SERVER_ADDED, sync_hook)

    payload = await events.emit(SERVER_ADDED, "files", config="cfg")

    assert payload.name == SERVER_ADDED
    assert sorted(calls) == [("async", "files"), ("sync", "cfg")]


@pytest.mark.asyncio
async def test_event_listeners_are_fire_and_forget():
    events = EventManager()
    seen = asyncio.Event()
    received = []

    async def listener(payload):
        received.append(payload.server_id)
        seen.set()

    events.on_event(SERVER_CONNECTED, listener)
    await events.emit(SERVER_CONNECTED, "a")
    await asyncio.wait_for(seen.wait(), timeout=1)

    assert received == ["a"]
    await events.close()


@pytest.mark.asyncio
async def test_failing_listener_does_not_break_emit():
    events = EventManager()
    calls = []

    def broken(payload):
        raise RuntimeError("listener bug")

    async def broken_hook(payload):
        raise RuntimeError("hook bug")

    events.on_event(SERVER_ADDED, broken)
    events.on_hook(SERVER_ADDED, broken_hook)
    events.on_hook(SERVER_ADDED, lambda payload: calls.append(payload.name))

    await events.emit(SERVER_ADDED, "x")
    assert calls == [SERVER_ADDED]


@pytest.mark.asyncio
async def test_off_removes_listener():
    events = EventManager()
    calls = []

    def listener(payload):
        calls.append(payload)

    events.on_hook(SERVER_ADDED, listener)
    events.off(SERVER_ADDED, listener)
    await events.emit(SERVER_ADDED, "x")
    assert calls == []


@pytest.mark.asyncio
async def test_close_cancels_running_listeners():
    events = EventManager()
    started = asyncio.Event()

    async def forever(payload):
        started.set()
        await asyncio.sleep(60)

    events.on_event(SERVER_ADDED, forever)
    await events.emit(SERVER_ADDED, "x")
    await started.wait()
    await events.close()
    assert events._tasks == set()
