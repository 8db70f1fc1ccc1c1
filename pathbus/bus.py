"""
DataBus - Hierarchical Path-Addressed Publish/Subscribe
=======================================================

The bus holds a tree of values addressed by paths. Consumers subscribe to a
path and get called with (new, old, path) every time a value is published
there. Providers attached to nodes are activated lazily, once per concrete
subscribed path, and deactivated when the last subscription to that path is
disposed.

Usage:
    bus = DataBus()
    bus.register_provider(["ideas"], IdeaProvider())

    sub = bus.subscribe(["ideas", "idea-1"], lambda new, old, path: render(new))
    # IdeaProvider.on_activate ran for ["ideas", "idea-1"]

    bus.publish(["ideas", "idea-1"], {"title": "x"})
    sub()  # IdeaProvider.on_deactivate ran

Execution model:
- subscribe, dispose, publish and provider registration run to completion
  under one re-entrant lock; refcount transitions and their paired hooks are
  totally ordered.
- A publish issued from inside a bus operation on the same thread (a
  provider's on_activate, a subscriber callback) is queued and delivered
  after the outermost operation finishes, before that operation returns.
- A publish from another thread while the bus is busy is handed to the same
  queue and delivered by the thread that owns the bus; the publisher never
  blocks on the lock.
- Subscribers of a node are called in registration order. A failing callback
  is logged and does not stop delivery to the others.
"""

import logging
import threading
from collections import deque
from contextlib import contextmanager
from dataclasses import replace
from typing import (
    Any,
    Callable,
    Deque,
    Dict,
    Iterator,
    List,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
    overload,
)

from .config import DEFAULT_CONFIG, BusConfig, LateRegistration
from .delta_algebra import DeltaRegistry
from .delta_buffer import RESYNC_REQUIRED, DeltasOrResync
from .errors import (
    BusClosedError,
    DoubleDisposeError,
    LateRegistrationError,
    ProviderActivationError,
)
from .lifecycle import Held, ProviderLifecycle
from .node_store import MISSING, Node, NodeTree
from .path import ChangeCallback, PathLike, Segments, TypedPath, canonical_key, normalize

T = TypeVar("T")

logger = logging.getLogger(__name__)


class Subscription:
    """
    Disposer returned by DataBus.subscribe.

    Calling it (or dispose()) removes the callback and releases the provider
    refcounts taken by the subscribe call. Also usable as a context manager.
    """

    __slots__ = ("_bus", "path", "key", "callback", "_chain", "_disposed", "_held")

    def __init__(
        self,
        bus: "DataBus",
        path: Segments,
        key: str,
        callback: ChangeCallback,
        chain: List[Node],
    ):
        self._bus = bus
        self.path = path
        self.key = key
        self.callback = callback
        self._chain = chain
        self._disposed = False
        # Provider records this subscription counted on, once acquired
        self._held: Optional[Held] = None

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def node(self) -> Node:
        return self._chain[-1]

    def dispose(self) -> None:
        self._bus._run(self._bus._dispose, self)

    def __call__(self) -> None:
        self.dispose()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if not self._disposed:
            self.dispose()
        return False

    def __repr__(self) -> str:
        state = "disposed" if self._disposed else "live"
        return f"Subscription({list(self.path)}, {state})"


class DataBus:
    """
    Process-local tree of subscribable values fed by pluggable providers.

    Create one per application and pass it to whoever needs it; close() at
    shutdown disposes every remaining subscription.
    """

    def __init__(self, config: Optional[BusConfig] = None, **overrides: Any):
        config = config or DEFAULT_CONFIG
        if overrides:
            config = replace(config, **overrides)
        self._config = config

        self._tree = NodeTree(config.max_retained_deltas)
        self._lifecycle = ProviderLifecycle(self)
        self._registry = DeltaRegistry()

        self._lock = threading.RLock()
        self._owner: Optional[int] = None
        self._depth = 0
        self._pending: Deque[Tuple[Segments, Any]] = deque()

        self._live: Dict[Subscription, None] = {}
        self._closed = False

        self._stats = {
            "published": 0,
            "notifications": 0,
            "callback_errors": 0,
            "queued": 0,
            "dropped": 0,
        }

    @property
    def config(self) -> BusConfig:
        return self._config

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def delta_registry(self) -> DeltaRegistry:
        return self._registry

    def key(self, path: PathLike) -> str:
        """Canonical string key of a path."""
        return canonical_key(normalize(path), self._config.separator)

    # ========================================================================
    # SUBSCRIPTION
    # ========================================================================

    @overload
    def subscribe(
        self, path: TypedPath[T], on_change: Callable[[T, Optional[T], Segments], None]
    ) -> Subscription: ...

    @overload
    def subscribe(self, path: Sequence[str], on_change: ChangeCallback) -> Subscription: ...

    def subscribe(self, path, on_change):
        """
        Subscribe to the value at path.

        If the node already has a value, on_change(value, value, path) runs
        before this returns. Providers on the path's ancestor chain are then
        activated for this exact path if nothing else keeps them active.

        Raises:
            ProviderActivationError: A provider failed to activate; nothing
                stays registered for this call
            BusClosedError: The bus was closed
        """
        if not callable(on_change):
            raise TypeError(f"on_change must be callable, got {type(on_change).__name__}")
        return self._run(self._subscribe, normalize(path), on_change)

    def _subscribe(self, path: Segments, on_change: ChangeCallback) -> Subscription:
        if self._closed:
            raise BusClosedError("Cannot subscribe on a closed bus")

        node, chain = self._tree.get_node(path, create_if_missing=True)
        sub = Subscription(self, path, self.key(path), on_change, chain)
        node.subscribers.append(sub)
        self._live[sub] = None

        if node.has_value:
            self._notify(sub, node.value, node.value)
            if sub.disposed:
                # Disposed from inside its own initial callback
                return sub

        try:
            held = self._lifecycle.acquire(chain, sub.key, path)
        except ProviderActivationError:
            sub._disposed = True
            self._unregister(sub)
            if self._config.prune_empty_nodes:
                self._tree.prune(chain)
            raise
        if sub.disposed:
            # Disposed from inside a provider hook before acquire returned
            self._lifecycle.release(held)
            if self._config.prune_empty_nodes:
                self._tree.prune(chain)
        else:
            sub._held = held
        return sub

    def _dispose(self, sub: Subscription) -> None:
        if sub._disposed:
            if self._closed:
                # close() already disposed it
                return
            if self._config.raise_on_double_dispose:
                raise DoubleDisposeError(sub.path)
            logger.warning(f"Ignoring second dispose of subscription to {list(sub.path)}")
            return

        sub._disposed = True
        self._unregister(sub)
        held, sub._held = sub._held, None
        if held is not None:
            self._lifecycle.release(held)
        if self._config.prune_empty_nodes:
            self._tree.prune(sub._chain)

    def _unregister(self, sub: Subscription) -> None:
        subscribers = sub.node.subscribers
        for i, entry in enumerate(subscribers):
            if entry is sub:
                del subscribers[i]
                break
        self._live.pop(sub, None)

    # ========================================================================
    # PUBLISHING
    # ========================================================================

    @overload
    def publish(self, path: TypedPath[T], value: T) -> None: ...

    @overload
    def publish(self, path: Sequence[str], value: Any) -> None: ...

    def publish(self, path, value):
        """
        Set the value at path and notify its subscribers.

        From an idle bus this delivers synchronously. From inside a bus
        operation it is queued until that operation completes.
        """
        segments = normalize(path)
        if self._closed:
            logger.debug(f"Dropping publish to {list(segments)}: bus is closed")
            return

        self._pending.append((segments, value))
        if self._owner == threading.get_ident():
            self._stats["queued"] += 1
            return
        self._flush()

    def _deliver(self, path: Segments, value: Any) -> None:
        node, _ = self._tree.get_node(path, create_if_missing=True)
        previous = node.value if node.has_value else None
        diff = self._registry.compute_delta(previous, value)

        node.value = value
        node.buffer.append(value, diff)
        self._stats["published"] += 1

        for sub in list(node.subscribers):
            if not sub.disposed:
                self._notify(sub, value, previous)

    def _notify(self, sub: Subscription, new: Any, old: Any) -> None:
        self._stats["notifications"] += 1
        try:
            sub.callback(new, old, sub.path)
        except Exception:
            self._stats["callback_errors"] += 1
            logger.exception(f"Subscriber {sub.callback!r} failed for {list(sub.path)}")

    # ========================================================================
    # PROVIDERS
    # ========================================================================

    def register_provider(self, path: PathLike, provider: Any) -> None:
        """
        Attach provider at path.

        Subscriptions that already exist at or beneath path are handled by
        the late_registration policy: RETROFIT activates the provider for
        each of their concrete paths, REJECT raises LateRegistrationError.
        Registering the same provider twice at one path does nothing.
        """
        self._run(self._register, normalize(path), provider)

    def _register(self, path: Segments, provider: Any) -> None:
        if self._closed:
            raise BusClosedError("Cannot register a provider on a closed bus")

        node, chain = self._tree.get_node(path, create_if_missing=True)
        if any(p is provider for p in node.providers):
            return

        live = {}
        for descendant in self._tree.iter_subtree(node):
            subs = [s for s in descendant.subscribers if s._held is not None]
            if subs:
                live[self.key(descendant.path)] = (descendant, subs)

        if live and self._config.late_registration is LateRegistration.REJECT:
            if self._config.prune_empty_nodes:
                self._tree.prune(chain)
            raise LateRegistrationError(path, len(live))

        node.providers.append(provider)
        if live:
            activated = self._lifecycle.attach(node, provider, live)
            logger.debug(
                f"Late registration at {list(path)} activated {activated}/{len(live)} path(s)"
            )

    def unregister_provider(self, path: PathLike, provider: Any) -> bool:
        """Deactivate and detach provider. Returns False if it was not attached at path."""
        return self._run(self._unregister_provider, normalize(path), provider)

    def _unregister_provider(self, path: Segments, provider: Any) -> bool:
        node, chain = self._tree.get_node(path)
        if node is None or not any(p is provider for p in node.providers):
            return False
        self._lifecycle.detach(node, provider)
        node.providers[:] = [p for p in node.providers if p is not provider]
        if self._config.prune_empty_nodes:
            self._tree.prune(chain)
        return True

    def request_resync(self, path: PathLike) -> int:
        """
        Ask the providers active for path to send a fresh snapshot.

        Returns the number of providers asked; 0 means nobody can refresh it.
        """
        return self._run(self._request_resync, normalize(path))

    def _request_resync(self, path: Segments) -> int:
        node, chain = self._tree.get_node(path)
        if node is None:
            return 0
        return self._lifecycle.resync(chain, self.key(path))

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get_subscriber_count(self, path: PathLike) -> int:
        with self._locked():
            node, _ = self._tree.get_node(normalize(path))
            return len(node.subscribers) if node is not None else 0

    def get_value(self, path: PathLike, default: Any = None) -> Any:
        with self._locked():
            node, _ = self._tree.get_node(normalize(path))
            if node is None or not node.has_value:
                return default
            return node.value

    def get_version(self, path: PathLike) -> int:
        """Version of the current value at path; 0 if nothing was published."""
        with self._locked():
            node, _ = self._tree.get_node(normalize(path))
            return node.buffer.last_version if node is not None else 0

    def get_deltas_since(self, path: PathLike, version: int) -> DeltasOrResync:
        """
        Deltas published at path after version, or RESYNC_REQUIRED.

        An unknown path has no history: asking from version 0 yields an
        empty list, anything later needs a resync.
        """
        with self._locked():
            node, _ = self._tree.get_node(normalize(path))
            if node is None:
                return [] if version <= 0 else RESYNC_REQUIRED
            return node.buffer.get_deltas_since(version)

    def get_activation_error(self, path: PathLike) -> Optional[ProviderActivationError]:
        """The last activation failure for path, cleared by a successful activation."""
        with self._locked():
            node, _ = self._tree.get_node(normalize(path))
            return node.activation_error if node is not None else None

    def active_count(self, path: PathLike, provider: Any) -> int:
        """Live refcount of provider for exactly path (0 when inactive)."""
        segments = normalize(path)
        key = self.key(segments)
        with self._locked():
            node, chain = self._tree.get_node(segments)
            if node is None:
                return 0
            for ancestor in chain:
                record = ancestor.find_record(key, provider)
                if record is not None:
                    return record.count
            return 0

    def is_active(self, path: PathLike, provider: Any) -> bool:
        return self.active_count(path, provider) > 0

    def stats(self) -> Dict[str, Any]:
        with self._locked():
            nodes = list(self._tree.iter_subtree(self._tree.root))
            return {
                "nodes": len(nodes),
                "subscriptions": len(self._live),
                "providers": sum(len(n.providers) for n in nodes),
                "active_records": sum(
                    len(records) for n in nodes for records in n.active_providers.values()
                ),
                "pending": len(self._pending),
                **self._stats,
            }

    # ========================================================================
    # SHUTDOWN
    # ========================================================================

    def close(self) -> None:
        """Dispose every live subscription and refuse new ones. Idempotent."""
        self._run(self._close)

    def _close(self) -> None:
        if self._closed:
            return
        self._closed = True
        live = list(self._live)
        for sub in live:
            if not sub.disposed:
                self._dispose(sub)
        logger.debug(f"Bus closed, disposed {len(live)} subscription(s)")

    def __enter__(self) -> "DataBus":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"DataBus({state}, subscriptions={len(self._live)})"

    # ========================================================================
    # SERIALISATION
    # ========================================================================

    def _run(self, fn: Callable[..., T], *args: Any) -> T:
        """Run fn as one bus operation; the outermost one drains queued publishes."""
        outermost = False
        try:
            with self._lock:
                outermost = self._begin()
                try:
                    return fn(*args)
                finally:
                    self._end(outermost)
        finally:
            if outermost:
                self._flush()

    @contextmanager
    def _locked(self) -> Iterator[None]:
        """Lock for a read; afterwards drain anything queued while we held it."""
        try:
            with self._lock:
                yield
        finally:
            if self._owner != threading.get_ident():
                self._flush()

    def _begin(self) -> bool:
        outermost = self._depth == 0
        if outermost:
            self._owner = threading.get_ident()
        self._depth += 1
        return outermost

    def _end(self, outermost: bool) -> None:
        try:
            if outermost:
                self._drain()
        finally:
            self._depth -= 1
            if outermost:
                self._owner = None

    def _drain(self) -> None:
        while self._pending:
            path, value = self._pending.popleft()
            if self._closed:
                self._stats["dropped"] += 1
                logger.debug(f"Dropping queued publish to {list(path)}: bus is closed")
                continue
            self._deliver(path, value)

    def _flush(self) -> None:
        """
        Drain publishes queued by other threads, unless some thread holds the bus.

        The holder drains before releasing and re-checks afterwards, so an
        item is never stranded.
        """
        while self._pending:
            if not self._lock.acquire(blocking=False):
                return
            try:
                outermost = self._begin()
                self._end(outermost)
            finally:
                self._lock.release()


__all__ = ["DataBus", "Subscription"]
