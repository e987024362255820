from .events import (
    CAPABILITIES_REBUILT,
    CIRCUIT_OPENED,
    SERVER_ADDED,
    SERVER_CONNECTED,
    SERVER_CONNECTING,
    SERVER_DISCONNECTED,
    SERVER_ERROR,
    SERVER_NOTIFICATION,
    SERVER_REMOVED,
    SERVER_UPDATED,
    EventManager,
    LifecycleEvent,
)

__all__ = [
    "CAPABILITIES_REBUILT",
    "CIRCUIT_OPENED",
    "SERVER_ADDED",
    "SERVER_CONNECTED",
    "SERVER_CONNECTING",
    "SERVER_DISCONNECTED",
    "SERVER_ERROR",
    "SERVER_NOTIFICATION",
    "SERVER_REMOVED",
    "SERVER_UPDATED",
    "EventManager",
    "LifecycleEvent",
]
