"""
MCP Capability Aggregator

Merges the tools, resources and prompts of every connected server into one
immutable CapabilityIndex, rebuilt whenever a server connects, leaves, or
reports that one of its lists changed.

Collisions: every capability is addressable as `<server_id>:<name>`. A bare
name resolves to the server that connected first among those offering it.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from toolwire.events import (
    CAPABILITIES_REBUILT,
    SERVER_CONNECTED,
    SERVER_DISCONNECTED,
    SERVER_ERROR,
    SERVER_NOTIFICATION,
    SERVER_REMOVED,
    LifecycleEvent,
)
from toolwire.utils.errors import DispatchError, MCPError, ProtocolError, RequestTimeoutError, UnknownServerError

from .messages import METHOD_NOT_FOUND
from .protocol import LIST_CHANGED_NOTIFICATIONS, require_list
from .registry import ServerRegistry, ServerSnapshot, ServerStatus

log = logging.getLogger(__name__)

MAX_PAGES = 100


class CapabilityKind(Enum):
    TOOL = "tool"
    RESOURCE = "resource"
    PROMPT = "prompt"


# list method, result key, key in the server's advertised capabilities
LIST_METHODS = {
    CapabilityKind.TOOL: ("tools/list", "tools", "tools"),
    CapabilityKind.RESOURCE: ("resources/list", "resources", "resources"),
    CapabilityKind.PROMPT: ("prompts/list", "prompts", "prompts"),
}

KIND_BY_LIST = {"tools": CapabilityKind.TOOL, "resources": CapabilityKind.RESOURCE, "prompts": CapabilityKind.PROMPT}


@dataclass(frozen=True)
class Capability:
    """A tool, resource or prompt advertised by one server.

    Resources are keyed by their uri, so `name` holds the uri for them.
    """
    kind: CapabilityKind
    name: str
    server_id: str
    server_name: str
    description: str = ""
    schema: Mapping[str, Any] = field(default_factory=dict)
    title: Optional[str] = None
    raw: Mapping[str, Any] = field(default_factory=dict, repr=False)

    @property
    def qualified_name(self) -> str:
        return f"{self.server_id}:{self.name}"

    @property
    def uri(self) -> Optional[str]:
        return self.name if self.kind is CapabilityKind.RESOURCE else None


@dataclass(frozen=True)
class CapabilityIndex:
    """Immutable snapshot of every capability currently reachable."""
    tools: Tuple[Capability, ...] = ()
    resources: Tuple[Capability, ...] = ()
    prompts: Tuple[Capability, ...] = ()
    last_updated: float = 0.0
    revision: int = 0
    lookup: Mapping[Tuple[CapabilityKind, str], Capability] = field(default_factory=dict, repr=False)
    collisions: Mapping[Tuple[CapabilityKind, str], Tuple[str, ...]] = field(default_factory=dict)

    def resolve(self, kind: CapabilityKind, name: str) -> Optional[Capability]:
        """Find a capability by bare or `server_id:name` qualified name."""
        return self.lookup.get((kind, name))

    def for_server(self, server_id: str) -> List[Capability]:
        return [c for c in self.tools + self.resources + self.prompts if c.server_id == server_id]


def build_index(
    listings: Iterable[Tuple[str, Mapping[CapabilityKind, Sequence[Capability]]]],
    last_updated: float,
    revision: int,
) -> CapabilityIndex:
    """Build an index from per-server listings given in connect order."""
    grouped: Dict[CapabilityKind, List[Capability]] = {kind: [] for kind in CapabilityKind}
    lookup: Dict[Tuple[CapabilityKind, str], Capability] = {}
    owners: Dict[Tuple[CapabilityKind, str], List[str]] = {}

    for server_id, listing in listings:
        for kind in CapabilityKind:
            for capability in listing.get(kind, ()):
                qualified = (kind, capability.qualified_name)
                if qualified in lookup:
                    log.debug(f"[CapabilityAggregator] {server_id} lists {kind.value} '{capability.name}' twice, keeping the first")
                    continue
                grouped[kind].append(capability)
                lookup[qualified] = capability
                owners.setdefault((kind, capability.name), []).append(server_id)
                lookup.setdefault((kind, capability.name), capability)

    collisions = {key: tuple(ids) for key, ids in owners.items() if len(ids) > 1}
    return CapabilityIndex(
        tools=tuple(grouped[CapabilityKind.TOOL]),
        resources=tuple(grouped[CapabilityKind.RESOURCE]),
        prompts=tuple(grouped[CapabilityKind.PROMPT]),
        last_updated=last_updated,
        revision=revision,
        lookup=MappingProxyType(lookup),
        collisions=MappingProxyType(collisions),
    )


def parse_capability(kind: CapabilityKind, server: ServerSnapshot, item: Any) -> Optional[Capability]:
    """Turn one listing entry into a Capability, or None if it is unusable."""
    if not isinstance(item, dict):
        return None
    key = "uri" if kind is CapabilityKind.RESOURCE else "name"
    name = item.get(key)
    if not isinstance(name, str) or not name:
        return None

    if kind is CapabilityKind.TOOL:
        schema = item.get("inputSchema") if isinstance(item.get("inputSchema"), dict) else {"type": "object"}
    elif kind is CapabilityKind.PROMPT:
        arguments = item.get("arguments") if isinstance(item.get("arguments"), list) else []
        schema = {"arguments": arguments}
    else:
        schema = {"mimeType": item["mimeType"]} if isinstance(item.get("mimeType"), str) else {}

    title = item.get("title") if isinstance(item.get("title"), str) else None
    if kind is CapabilityKind.RESOURCE and title is None and isinstance(item.get("name"), str):
        title = item["name"]

    return Capability(
        kind=kind,
        name=name,
        server_id=server.id,
        server_name=server.name,
        description=item.get("description") if isinstance(item.get("description"), str) else "",
        schema=schema,
        title=title,
        raw=item,
    )


class CapabilityAggregator:
    """Keeps the CapabilityIndex in step with the registry's connected servers."""

    def __init__(self, registry: ServerRegistry, list_timeout: Optional[float] = None):
        self.registry = registry
        self.events = registry.events
        self.list_timeout = list_timeout
        self._index = CapabilityIndex()
        self._listings: Dict[str, Dict[CapabilityKind, Tuple[Capability, ...]]] = {}
        self._generations: Dict[str, int] = {}

        self.events.on_hook(SERVER_CONNECTED, self._on_connected)
        for event in (SERVER_DISCONNECTED, SERVER_ERROR, SERVER_REMOVED):
            self.events.on_hook(event, self._on_left)
        self.events.on_hook(SERVER_NOTIFICATION, self._on_notification)

    @property
    def index(self) -> CapabilityIndex:
        return self._index

    @property
    def last_updated(self) -> float:
        return self._index.last_updated

    def resolve_tool(self, name: str) -> Optional[Capability]:
        return self._index.resolve(CapabilityKind.TOOL, name)

    def resolve_resource(self, uri: str) -> Optional[Capability]:
        return self._index.resolve(CapabilityKind.RESOURCE, uri)

    def resolve_prompt(self, name: str) -> Optional[Capability]:
        return self._index.resolve(CapabilityKind.PROMPT, name)

    async def _on_connected(self, event: LifecycleEvent) -> None:
        await self.refresh_server(event.server_id)

    async def _on_left(self, event: LifecycleEvent) -> None:
        server_id = event.server_id
        self._generations[server_id] = self._generations.get(server_id, 0) + 1
        self._listings.pop(server_id, None)
        if event.name == SERVER_REMOVED:
            self._generations.pop(server_id, None)
        await self.rebuild(reason=f"{event.name} {server_id}")

    async def _on_notification(self, event: LifecycleEvent) -> None:
        list_name = LIST_CHANGED_NOTIFICATIONS.get(event.data.get("method"))
        if list_name is None:
            return
        log.debug(f"[CapabilityAggregator] {event.server_id} reported {list_name} changed")
        await self.refresh_server(event.server_id, kinds=[KIND_BY_LIST[list_name]])

    async def refresh_server(self, server_id: str, kinds: Optional[Iterable[CapabilityKind]] = None) -> None:
        """
        Re-list a connected server's capabilities and rebuild the index.

        A listing that is malformed or times out leaves the server with zero
        capabilities; its connection status is not touched.
        """
        try:
            server = self.registry.get(server_id)
        except UnknownServerError:
            return
        if server.status is not ServerStatus.CONNECTED:
            return

        generation = self._generations.get(server_id, 0) + 1
        self._generations[server_id] = generation
        kinds = list(kinds) if kinds is not None else list(CapabilityKind)
        listing = dict(self._listings.get(server_id, {}))

        try:
            for kind in kinds:
                listing[kind] = await self._list_kind(server, kind)
        except DispatchError as e:
            log.debug(f"[CapabilityAggregator] {server_id} left while listing: {e.message}")
            return
        except (ProtocolError, RequestTimeoutError) as e:
            log.warning(f"[CapabilityAggregator] Listing capabilities of '{server_id}' failed, it contributes none: {e.message}")
            listing = {}

        if self._generations.get(server_id) != generation:
            log.debug(f"[CapabilityAggregator] Discarding stale listing for '{server_id}'")
            return
        self._listings[server_id] = listing
        await self.rebuild(reason=f"listed {server_id}")

    async def _list_kind(self, server: ServerSnapshot, kind: CapabilityKind) -> Tuple[Capability, ...]:
        method, result_key, capability_key = LIST_METHODS[kind]
        info = server.server_info
        if info is not None and info.capabilities and not info.supports(capability_key):
            return ()

        items: List[Any] = []
        cursor = None
        for _ in range(MAX_PAGES):
            params = {"cursor": cursor} if cursor else {}
            try:
                result = await self.registry.request(server.id, method, params, timeout=self.list_timeout)
            except MCPError as e:
                if e.code == METHOD_NOT_FOUND:
                    log.debug(f"[CapabilityAggregator] {server.id} does not implement {method}")
                    return ()
                raise
            items.extend(require_list(result, result_key, server.id))
            cursor = result.get("nextCursor")
            if not isinstance(cursor, str) or not cursor:
                break
        else:
            log.warning(f"[CapabilityAggregator] {server.id} {method} exceeded {MAX_PAGES} pages, truncating")

        capabilities = []
        for item in items:
            capability = parse_capability(kind, server, item)
            if capability is None:
                log.warning(f"[CapabilityAggregator] Skipping malformed {kind.value} from '{server.id}': {item!r:.200}")
                continue
            capabilities.append(capability)
        return tuple(capabilities)

    async def rebuild(self, reason: str = "") -> CapabilityIndex:
        """Recompute the index from the current listings and swap it in."""
        previous = self._index
        order = [server.id for server in self.registry.connected_servers()]
        listings = [(server_id, self._listings[server_id]) for server_id in order if server_id in self._listings]

        # Strictly increasing even when the clock does not advance between rebuilds
        last_updated = max(time.time(), previous.last_updated + 1e-6)
        index = build_index(listings, last_updated=last_updated, revision=previous.revision + 1)
        self._index = index

        for (kind, name), owners in index.collisions.items():
            if previous.collisions.get((kind, name)) != owners:
                log.warning(
                    f"[CapabilityAggregator] {kind.value} '{name}' offered by {', '.join(owners)}; "
                    f"'{name}' resolves to {owners[0]}, use '<server>:{name}' for the others"
                )
        log.debug(
            f"[CapabilityAggregator] Rebuilt index r{index.revision} ({reason}): "
            f"{len(index.tools)} tools, {len(index.resources)} resources, {len(index.prompts)} prompts"
        )
        await self.events.emit(
            CAPABILITIES_REBUILT,
            revision=index.revision,
            tools=len(index.tools),
            resources=len(index.resources),
            prompts=len(index.prompts),
        )
        return index
