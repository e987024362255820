import asyncio
import inspect
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

log = logging.getLogger(__name__)

Listener = Callable[[Any], Any]

SERVER_ADDED = "server.added"
SERVER_UPDATED = "server.updated"
SERVER_CONNECTING = "server.connecting"
SERVER_CONNECTED = "server.connected"
SERVER_DISCONNECTED = "server.disconnected"
SERVER_ERROR = "server.error"
SERVER_REMOVED = "server.removed"
SERVER_NOTIFICATION = "server.notification"
CAPABILITIES_REBUILT = "capabilities.rebuilt"
CIRCUIT_OPENED = "circuit.opened"


@dataclass(frozen=True)
class LifecycleEvent:
    """Payload delivered to every listener."""

    name: str
    server_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class EventManager:
    """Observer registry for lifecycle events:

    - Events: fire-and-forget listeners
    - Hooks: listeners that are awaited concurrently before emit returns
    """

    def __init__(self) -> None:
        self._events: Dict[str, List[Listener]] = defaultdict(list)
        self._hooks: Dict[str, List[Listener]] = defaultdict(list)
        self._tasks: Set[asyncio.Task] = set()

    def on_event(self, event: str, listener: Listener) -> None:
        """Register a fire-and-forget event listener"""
        self._events[event].append(listener)
        log.debug(f"[EventManager] Registered EVENT listener for '{event}'. Total events for this event: {len(self._events[event])}")

    def on_hook(self, event: str, listener: Listener) -> None:
        """Register a hook that emit waits for"""
        self._hooks[event].append(listener)
        log.debug(f"[EventManager] Registered HOOK listener for '{event}'. Total hooks for this event: {len(self._hooks[event])}")

    def off(self, event: str, listener: Listener) -> None:
        """Remove a listener from events or hooks"""
        for collection in [self._events, self._hooks]:
            if listener in collection.get(event, []):
                collection[event].remove(listener)

    def _execute_listener(self, listener: Listener, payload: LifecycleEvent, listener_type: str):
        """Execute listener with error handling"""
        try:
            if inspect.iscoroutinefunction(listener):
                if listener_type == "event":
                    task = asyncio.create_task(listener(payload))
                    self._tasks.add(task)
                    task.add_done_callback(self._event_task_done)
                    return None
                return listener(payload)  # Return coroutine for await
            listener(payload)
        except Exception as e:
            log.exception(f"{listener_type.capitalize()} failed for '{payload.name}': {e}")
        return None

    def _event_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error(f"[EventManager] Event listener failed: {task.exception()!r}")

    async def emit(self, event: str, server_id: Optional[str] = None, **data: Any) -> LifecycleEvent:
        """Emit an event and wait for its hooks"""
        payload = LifecycleEvent(name=event, server_id=server_id, data=data)

        for listener in list(self._events[event]):
            self._execute_listener(listener, payload, "event")

        hook_tasks = [self._execute_listener(hook, payload, "hook") for hook in list(self._hooks[event])]
        hook_tasks = [t for t in hook_tasks if t is not None]
        if hook_tasks:
            results = await asyncio.gather(*hook_tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, BaseException) and not isinstance(result, asyncio.CancelledError):
                    log.error(f"[EventManager] Hook failed for '{event}': {result!r}")

        return payload

    async def close(self) -> None:
        """Cancel event listeners that are still running"""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
