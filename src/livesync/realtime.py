"""
Room-scoped push channel that keeps the cache in step with the backend.

On every (re)connect the channel joins the session's scope by emitting
`joinRoom` with `{role, branchId, userId, chefId?, departmentId?}`; the
server then only pushes events for that scope. Each received event is looked
up in a route table and:
1. matching cache entries are invalidated
2. subscribed handlers run
3. notifiers are told, for routes that surface a user-facing notice

Events that arrive before the join completes are dropped. Delivery is
at-most-once; TTL expiry in the cache is the backstop.
"""

from collections import defaultdict
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Protocol
import asyncio
import inspect
import logging

from .cache import CacheSynchronizer, Matcher, any_of, match_resource
from .errors import DashboardError, NetworkError

logger = logging.getLogger(__name__)

CONNECT = "connect"
DISCONNECT = "disconnect"
JOIN_EVENT = "joinRoom"

Handler = Callable[[dict], Any]


@dataclass(frozen=True)
class SessionContext:
    """Who is connected; determines which rooms the server puts us in."""

    role: str
    branch_id: str | None = None
    user_id: str | None = None
    chef_id: str | None = None
    department_id: str | None = None

    def join_payload(self) -> dict:
        payload = {"role": self.role, "branchId": self.branch_id, "userId": self.user_id}
        if self.chef_id:
            payload["chefId"] = self.chef_id
        if self.department_id:
            payload["departmentId"] = self.department_id
        return payload


def rooms_for(payload: dict) -> list[str]:
    """Rooms a `joinRoom` payload places a connection in."""
    rooms = []
    for field, prefix in (
        ("role", "role"),
        ("branchId", "branch"),
        ("userId", "user"),
        ("chefId", "chef"),
        ("departmentId", "department"),
    ):
        if payload.get(field):
            rooms.append(f"{prefix}:{payload[field]}")
    return rooms


class Transport(Protocol):
    connected: bool

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    async def emit(self, event: str, payload: dict) -> None: ...

    def on(self, event: str, handler: Handler) -> None: ...

    def off(self, event: str, handler: Handler) -> None: ...


def _report_failure(event: str, task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Async handler for %s failed", event, exc_info=exc)


def invoke_handler(fn: Callable[[Any], Any], arg: Any, event: str) -> None:
    """Run a handler; failures are logged and never stop the other handlers."""
    try:
        result = fn(arg)
    except Exception:
        logger.exception("Handler for %s failed", event)
        return
    if inspect.isawaitable(result):
        task = asyncio.ensure_future(result)
        task.add_done_callback(partial(_report_failure, event))


# =============================================================================
# IN-PROCESS TRANSPORT
# =============================================================================


class InMemoryHub:
    """
    Server side of the in-process transport: tracks rooms and fans events out.

    Used by tests and local runs; a socket.io client can stand in for
    InMemoryTransport in production as long as it satisfies `Transport`.
    """

    def __init__(self):
        self.transports: list["InMemoryTransport"] = []
        self.received: list[tuple[str, dict]] = []
        self._rooms: dict[str, set[int]] = defaultdict(set)

    def transport(self) -> "InMemoryTransport":
        transport = InMemoryTransport(self)
        self.transports.append(transport)
        return transport

    def join(self, transport: "InMemoryTransport", payload: dict) -> list[str]:
        self.leave(transport)
        rooms = rooms_for(payload)
        for room in rooms:
            self._rooms[room].add(id(transport))
        return rooms

    def leave(self, transport: "InMemoryTransport") -> None:
        for members in self._rooms.values():
            members.discard(id(transport))

    def members(self, room: str) -> int:
        return len(self._rooms.get(room, ()))

    def receive(self, transport: "InMemoryTransport", event: str, payload: dict) -> None:
        self.received.append((event, dict(payload)))
        if event == JOIN_EVENT:
            self.join(transport, payload)
        else:
            logger.debug("Hub ignoring client event %s", event)

    def publish(self, event: str, payload: dict, rooms: list[str] | None = None) -> int:
        """
        Deliver an event to connected transports.

        With `rooms=None` the event is broadcast; otherwise each transport in
        any of the rooms receives it once. Returns the number of deliveries.
        """
        if rooms is None:
            targets = [t for t in self.transports if t.connected]
        else:
            wanted = set().union(*(self._rooms.get(room, set()) for room in rooms))
            targets = [t for t in self.transports if t.connected and id(t) in wanted]

        for transport in targets:
            transport.deliver(event, payload)
        return len(targets)


class InMemoryTransport:
    def __init__(self, hub: InMemoryHub):
        self.hub = hub
        self.connected = False
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    async def connect(self) -> None:
        if self.connected:
            return
        self.connected = True
        self.deliver(CONNECT, {})

    async def disconnect(self) -> None:
        if not self.connected:
            return
        self.connected = False
        self.hub.leave(self)
        self.deliver(DISCONNECT, {"reason": "io client disconnect"})

    def drop(self) -> None:
        """Simulate the connection being lost."""
        if not self.connected:
            return
        self.connected = False
        self.hub.leave(self)
        self.deliver(DISCONNECT, {"reason": "transport close"})

    async def emit(self, event: str, payload: dict) -> None:
        if not self.connected:
            raise NetworkError(f"Cannot emit {event}: not connected")
        self.hub.receive(self, event, payload)

    def on(self, event: str, handler: Handler) -> None:
        self._handlers[event].append(handler)

    def off(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def deliver(self, event: str, payload: dict) -> None:
        for handler in list(self._handlers.get(event, ())):
            invoke_handler(handler, payload, event)


# =============================================================================
# CHANNEL
# =============================================================================


class Subscription:
    """Disposal handle for a handler registration. Closing twice is a no-op."""

    def __init__(self, release: Callable[[], None]):
        self._release = release
        self.active = True

    def close(self) -> None:
        if self.active:
            self.active = False
            self._release()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


@dataclass(frozen=True)
class Notification:
    """Handed to notifiers; presentation decides how (or whether) to show it."""

    event: str
    payload: dict
    fingerprints: tuple[str, ...]


MatcherFactory = Callable[[dict, SessionContext], Matcher]


@dataclass(frozen=True)
class Route:
    matcher: MatcherFactory
    notify: bool = True


def branch_matcher(*resources: str) -> MatcherFactory:
    """Invalidate `resources` for the event's branch (every branch if absent)."""

    def factory(payload: dict, session: SessionContext) -> Matcher:
        branch = payload.get("branchId") or payload.get("branch")
        return any_of(*(match_resource(resource, branch=branch) for resource in resources))

    return factory


_ORDER_EVENTS = (
    "orderCreated",
    "orderConfirmed",
    "orderStatusUpdated",
    "orderCompleted",
    "orderShipped",
)

DEFAULT_ROUTES = {
    "returnCreated": Route(branch_matcher("returns", "inventory")),
    "returnStatusUpdated": Route(branch_matcher("returns", "inventory")),
    "inventoryChanged": Route(branch_matcher("inventory"), notify=False),
    "inventoryUpdated": Route(branch_matcher("inventory"), notify=False),
    **{event: Route(branch_matcher("orders")) for event in _ORDER_EVENTS},
    "orderDelivered": Route(branch_matcher("orders", "inventory")),
    "saleCreated": Route(branch_matcher("sales", "sales-analytics", "inventory")),
    "saleDeleted": Route(branch_matcher("sales", "sales-analytics", "inventory"), notify=False),
}


class RealtimeChannel:
    """
    Push subscription for one session, wired to a CacheSynchronizer.

    Usage:
        channel = RealtimeChannel(transport, session, cache)
        await channel.connect()
        with channel.subscribe("returnCreated", on_return):
            ...
        await channel.close()
    """

    def __init__(
        self,
        transport: Transport,
        session: SessionContext,
        cache: CacheSynchronizer,
        routes: dict[str, Route] | None = None,
    ):
        self.transport = transport
        self.session = session
        self.cache = cache
        self.routes: dict[str, Route] = dict(DEFAULT_ROUTES if routes is None else routes)
        self.dropped = 0

        self._joined = asyncio.Event()
        self._join_task: asyncio.Task | None = None
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._notifiers: list[Callable[[Notification], Any]] = []
        self._bound: dict[str, Handler] = {}

        transport.on(CONNECT, self._on_connect)
        transport.on(DISCONNECT, self._on_disconnect)
        for event in self.routes:
            self._bind(event)

    @property
    def joined(self) -> bool:
        return self._joined.is_set()

    async def connect(self) -> None:
        """Connect and wait until the scope join has been sent."""
        await self.transport.connect()
        if self._join_task is not None:
            await self._join_task

    async def wait_joined(self) -> None:
        await self._joined.wait()

    async def close(self) -> None:
        for event, handler in self._bound.items():
            self.transport.off(event, handler)
        self._bound.clear()
        self._handlers.clear()
        self._notifiers.clear()
        self.transport.off(CONNECT, self._on_connect)
        self.transport.off(DISCONNECT, self._on_disconnect)

        if self._join_task is not None and not self._join_task.done():
            self._join_task.cancel()
        self._joined.clear()
        await self.transport.disconnect()

    def route(self, event: str, matcher: MatcherFactory, notify: bool = True) -> None:
        """Add or replace the invalidation route for an event."""
        self.routes[event] = Route(matcher, notify)
        self._bind(event)

    def subscribe(self, event: str, handler: Handler) -> Subscription:
        self._bind(event)
        handlers = self._handlers[event]
        handlers.append(handler)
        return Subscription(partial(discard_handler, handlers, handler))

    def add_notifier(self, callback: Callable[[Notification], Any]) -> Subscription:
        self._notifiers.append(callback)
        return Subscription(partial(discard_handler, self._notifiers, callback))

    def _bind(self, event: str) -> None:
        if event in self._bound:
            return
        handler = partial(self._dispatch, event)
        self._bound[event] = handler
        self.transport.on(event, handler)

    def _on_connect(self, payload: dict) -> None:
        self._joined.clear()
        self._join_task = asyncio.ensure_future(self._join())

    def _on_disconnect(self, payload: dict) -> None:
        self._joined.clear()
        logger.warning("Realtime connection lost (%s)", (payload or {}).get("reason", "unknown"))

    async def _join(self) -> None:
        payload = self.session.join_payload()
        try:
            await self.transport.emit(JOIN_EVENT, payload)
        except DashboardError as exc:
            logger.warning("Could not join realtime scope %s: %s", payload, exc)
            return
        self._joined.set()
        logger.info("Joined realtime scope %s", payload)

    def _dispatch(self, event: str, payload: dict | None) -> None:
        if not self._joined.is_set():
            self.dropped += 1
            logger.debug("Dropping %s received before scope join", event)
            return

        payload = payload or {}
        route = self.routes.get(event)
        fingerprints = []
        if route is not None:
            fingerprints = self.cache.invalidate(route.matcher(payload, self.session))

        for handler in list(self._handlers.get(event, ())):
            invoke_handler(handler, payload, event)

        if route is not None and route.notify:
            notification = Notification(event=event, payload=payload, fingerprints=tuple(fingerprints))
            for notifier in list(self._notifiers):
                invoke_handler(notifier, notification, event)


def discard_handler(items: list, item: Any) -> None:
    if item in items:
        items.remove(item)
