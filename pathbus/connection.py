"""
Resource Connection and Providers
=================================

Layered lazy activation over one shared transport:

    connection = ResourceConnection(lambda: WebSocketTransport(url), bus, workspace_id="ws-1")
    bus.register_provider([], ConnectionProvider(connection))
    bus.register_provider(["ideas"], ResourceProvider(connection, "idea"))

    bus.subscribe(["ideas", "idea-1"], on_idea)

Activation walks from the subscribed path up to the root, so the
ResourceProvider at ["ideas"] asks for "idea"/"idea-1" first and the root
ConnectionProvider then opens the transport. Resources requested while the
transport is down are remembered and sent once it opens, each with the last
version seen so the server can answer with deltas instead of a snapshot.
A lost transport is reopened reconnect_delay seconds later on a timer
thread, never from inside its own close callback; the timer is cancelled
when the last user releases the connection.

Incoming messages:
- resource_snapshot replaces local state and publishes it
- resource_delta applies when its base version matches local state,
  otherwise a snapshot is requested
- resource_updated shallow-merges into local state and publishes the result
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import partial
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple, Union

from .errors import ProtocolError
from .protocol import (
    MessageType,
    ResourceMessage,
    WireDelta,
    decode,
    encode,
    resource_key,
    resource_path,
    subscribe_resource,
    unsubscribe_resource,
)
from .provider import ActivationContext, Provider

if TYPE_CHECKING:
    from .bus import DataBus

logger = logging.getLogger(__name__)

# Returned by message handlers that have nothing to publish
_NOTHING = object()


# ============================================================================
# TRANSPORTS
# ============================================================================


class Transport(ABC):
    """
    A bidirectional text channel to the resource backend.

    open() registers the callbacks; the transport calls on_open once it is
    usable, on_message for every received frame and on_close when the
    channel goes away for any reason.
    """

    @abstractmethod
    def open(
        self,
        on_open: Callable[[], None],
        on_message: Callable[[str], None],
        on_close: Callable[[], None],
    ) -> None:
        pass

    @abstractmethod
    def send(self, text: str) -> None:
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    @property
    @abstractmethod
    def is_open(self) -> bool:
        pass


class InMemoryTransport(Transport):
    """In-process transport: opens at once, records what is sent."""

    def __init__(self):
        self.sent: List[str] = []
        self._open = False
        self._on_message: Optional[Callable[[str], None]] = None
        self._on_close: Optional[Callable[[], None]] = None

    def open(self, on_open, on_message, on_close) -> None:
        self._on_message = on_message
        self._on_close = on_close
        self._open = True
        on_open()

    def send(self, text: str) -> None:
        if not self._open:
            raise ConnectionError("Transport is closed")
        self.sent.append(text)

    def close(self) -> None:
        if self._open:
            self._open = False
            self._on_close()

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def messages(self) -> List[Dict[str, Any]]:
        """Sent frames, decoded."""
        return [json.loads(text) for text in self.sent]

    def receive(self, message: Union[str, Dict[str, Any], ResourceMessage]) -> None:
        """Deliver a frame as if the server had sent it."""
        if not self._open:
            raise ConnectionError("Transport is closed")
        if isinstance(message, ResourceMessage):
            message = encode(message)
        elif isinstance(message, dict):
            message = json.dumps(message)
        self._on_message(message)

    def drop(self) -> None:
        """Lose the connection from the server side."""
        self.close()


# ============================================================================
# CONNECTION
# ============================================================================


@dataclass
class _ResourceSnapshot:
    # None when the version is unknown, e.g. after a partial update
    version: Optional[int]
    data: Any


StateListener = Callable[[bool], None]


class ResourceConnection:
    """
    Multiplexes resource subscriptions over one transport.

    acquire()/release() count the activations using the connection; the
    transport opens on the first acquire and closes on the last release.
    Thread-safe: transports may call back from their own threads.
    """

    def __init__(
        self,
        transport_factory: Callable[[], Transport],
        bus: "DataBus",
        workspace_id: Optional[str] = None,
        auto_reconnect: bool = True,
        reconnect_delay: float = 3.0,
    ):
        self._factory = transport_factory
        self._bus = bus
        self.workspace_id = workspace_id
        self.auto_reconnect = auto_reconnect
        self.reconnect_delay = reconnect_delay

        self._lock = threading.RLock()
        self._users = 0
        self._transport: Optional[Transport] = None
        self._timer: Optional[threading.Timer] = None
        self._subscriptions: Dict[str, Tuple[str, str]] = {}
        self._states: Dict[str, _ResourceSnapshot] = {}
        self._listeners: List[StateListener] = []
        self._registry = bus.delta_registry

    @property
    def connected(self) -> bool:
        transport = self._transport
        return transport is not None and transport.is_open

    @property
    def users(self) -> int:
        return self._users

    def tracked(self) -> List[str]:
        with self._lock:
            return list(self._subscriptions)

    def version_of(self, resource_type: str, resource_id: str) -> Optional[int]:
        with self._lock:
            state = self._states.get(resource_key(resource_type, resource_id))
            return state.version if state is not None else None

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    def acquire(self) -> None:
        with self._lock:
            self._users += 1
            if self._users == 1:
                self._connect()

    def release(self) -> None:
        with self._lock:
            if self._users == 0:
                return
            self._users -= 1
            if self._users == 0:
                self._disconnect()
                self._subscriptions.clear()
                self._states.clear()

    def _connect(self) -> None:
        transport = self._factory()
        self._transport = transport
        logger.info(f"Opening resource connection (workspace={self.workspace_id})")
        transport.open(
            partial(self._on_open, transport),
            partial(self._on_message, transport),
            partial(self._on_close, transport),
        )

    def _disconnect(self) -> None:
        self._cancel_reconnect()
        transport, self._transport = self._transport, None
        if transport is not None:
            logger.info("Closing resource connection")
            transport.close()

    def _on_open(self, transport: Transport) -> None:
        with self._lock:
            if transport is not self._transport:
                return
            if self.workspace_id:
                self._send(ResourceMessage(MessageType.SUBSCRIBE, workspace_id=self.workspace_id))
            for key, (resource_type, resource_id) in self._subscriptions.items():
                state = self._states.get(key)
                self._send(
                    subscribe_resource(
                        resource_type, resource_id, state.version if state else None
                    )
                )
            listeners = list(self._listeners)
        self._notify_listeners(listeners, True)

    def _on_close(self, transport: Transport) -> None:
        with self._lock:
            if transport is not self._transport:
                return
            self._transport = None
            if self._users > 0 and self.auto_reconnect:
                self._schedule_reconnect()
            listeners = list(self._listeners)
        logger.info("Resource connection lost")
        self._notify_listeners(listeners, False)

    # ========================================================================
    # RECONNECT
    # ========================================================================

    @property
    def reconnect_pending(self) -> bool:
        return self._timer is not None

    def reconnect(self) -> bool:
        """
        Reconnect now instead of waiting for the scheduled attempt.

        Returns False when nothing uses the connection or it is already open.
        """
        with self._lock:
            self._cancel_reconnect()
            if self._users == 0 or self._transport is not None:
                return False
            logger.info("Reconnecting resource connection")
            self._connect()
            return True

    def _schedule_reconnect(self) -> None:
        # Always deferred: a transport failing inside open() must not recurse
        self._cancel_reconnect()
        timer = threading.Timer(self.reconnect_delay, self._reconnect_due)
        timer.daemon = True
        self._timer = timer
        logger.info(f"Reconnecting in {self.reconnect_delay}s")
        timer.start()

    def _cancel_reconnect(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()

    def _reconnect_due(self) -> None:
        with self._lock:
            if self._timer is not threading.current_thread():
                # Cancelled after it fired
                return
            self._timer = None
            if self._users == 0 or self._transport is not None:
                return
            logger.info("Reconnecting resource connection")
            try:
                self._connect()
            except Exception:
                logger.exception("Reconnect failed")
                self._transport = None
                if self.auto_reconnect:
                    self._schedule_reconnect()

    def add_state_listener(self, listener: StateListener) -> Callable[[], None]:
        """listener(True) after every open, listener(False) after every loss."""
        with self._lock:
            self._listeners.append(listener)

        def remove():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return remove

    def _notify_listeners(self, listeners: List[StateListener], connected: bool) -> None:
        for listener in listeners:
            try:
                listener(connected)
            except Exception:
                logger.exception(f"Connection state listener {listener!r} failed")

    # ========================================================================
    # RESOURCES
    # ========================================================================

    def subscribe_resource(self, resource_type: str, resource_id: str) -> None:
        key = resource_key(resource_type, resource_id)
        with self._lock:
            if key in self._subscriptions:
                return
            self._subscriptions[key] = (resource_type, resource_id)
            state = self._states.get(key)
            self._send(
                subscribe_resource(resource_type, resource_id, state.version if state else None)
            )

    def unsubscribe_resource(self, resource_type: str, resource_id: str) -> None:
        key = resource_key(resource_type, resource_id)
        with self._lock:
            self._subscriptions.pop(key, None)
            self._states.pop(key, None)
            self._send(unsubscribe_resource(resource_type, resource_id))

    def request_snapshot(self, resource_type: str, resource_id: str) -> bool:
        """Ask for a full snapshot. False if the transport is not open."""
        with self._lock:
            return self._send(subscribe_resource(resource_type, resource_id))

    def _send(self, message: ResourceMessage) -> bool:
        transport = self._transport
        if transport is None or not transport.is_open:
            return False
        transport.send(encode(message))
        return True

    # ========================================================================
    # INCOMING
    # ========================================================================

    def _on_message(self, transport: Transport, text: str) -> None:
        try:
            message = decode(text)
        except ProtocolError as e:
            logger.error(f"Dropping malformed message: {e}")
            return

        with self._lock:
            if transport is not self._transport:
                return
            if message.key not in self._subscriptions:
                logger.debug(f"Ignoring {message.type.value} for untracked {message.key}")
                return
            data = self._apply(message)

        if data is not _NOTHING:
            self._bus.publish(resource_path(message.resource_type, message.resource_id), data)

    def _apply(self, message: ResourceMessage) -> Any:
        """Fold a message into local state; returns the value to publish or _NOTHING."""
        key = message.key
        if message.type is MessageType.RESOURCE_SNAPSHOT:
            self._states[key] = _ResourceSnapshot(message.version or 0, message.data)
            logger.debug(f"Snapshot for {key} v{message.version}")
            return message.data

        if message.type is MessageType.RESOURCE_DELTA:
            return self._apply_delta(message)

        if message.type is MessageType.RESOURCE_UPDATED:
            if message.data is None:
                return _NOTHING
            existing = self._states.get(key)
            data = message.data
            if existing is not None and isinstance(existing.data, dict) and isinstance(data, dict):
                data = {**existing.data, **data}
            self._states[key] = _ResourceSnapshot(message.version, data)
            return data

        logger.debug(f"Ignoring client-bound {message.type.value} for {key}")
        return _NOTHING

    def _apply_delta(self, message: ResourceMessage) -> Any:
        key = message.key
        state = self._states.get(key)
        if state is None:
            logger.debug(f"No local state for {key}, requesting snapshot")
            self._send(subscribe_resource(message.resource_type, message.resource_id))
            return _NOTHING

        try:
            delta = WireDelta.from_dict(message.data)
            if delta.base_version != state.version:
                raise ValueError(
                    f"base v{delta.base_version} does not match local v{state.version}"
                )
            data = self._registry.apply_delta(state.data, delta.diff)
        except (ProtocolError, ValueError) as e:
            logger.warning(f"Cannot apply delta for {key} ({e}), requesting snapshot")
            self._send(subscribe_resource(message.resource_type, message.resource_id))
            return _NOTHING

        self._states[key] = _ResourceSnapshot(delta.version, data)
        logger.debug(f"Applied delta for {key} v{delta.version}")
        return data


# ============================================================================
# PROVIDERS
# ============================================================================


class ConnectionProvider(Provider):
    """Root provider: keeps the shared connection open while anything is subscribed."""

    def __init__(self, connection: ResourceConnection):
        self.connection = connection

    def on_activate(self, ctx: ActivationContext) -> None:
        self.connection.acquire()

    def on_deactivate(self, ctx: ActivationContext) -> None:
        self.connection.release()

    def __repr__(self) -> str:
        return "ConnectionProvider()"


class ResourceProvider(Provider):
    """
    Collection provider: subscribes one backend resource per [collection, id] path.

    Activations for other path shapes (the collection itself, deeper paths)
    are ignored.
    """

    def __init__(self, connection: ResourceConnection, resource_type: str):
        self.connection = connection
        self.resource_type = resource_type

    def _resource_id(self, ctx: ActivationContext) -> Optional[str]:
        if len(ctx.path) != 2:
            return None
        return ctx.path[1]

    def on_activate(self, ctx: ActivationContext) -> None:
        resource_id = self._resource_id(ctx)
        if resource_id is not None:
            self.connection.subscribe_resource(self.resource_type, resource_id)

    def on_deactivate(self, ctx: ActivationContext) -> None:
        resource_id = self._resource_id(ctx)
        if resource_id is not None:
            self.connection.unsubscribe_resource(self.resource_type, resource_id)

    def on_resync(self, ctx: ActivationContext) -> None:
        resource_id = self._resource_id(ctx)
        if resource_id is not None:
            self.connection.request_snapshot(self.resource_type, resource_id)

    def __repr__(self) -> str:
        return f"ResourceProvider({self.resource_type!r})"


__all__ = [
    "Transport",
    "InMemoryTransport",
    "ResourceConnection",
    "ConnectionProvider",
    "ResourceProvider",
]
