"""
Resource Subscriptions
======================

Consumer-side state machine built on DataBus.subscribe. It tracks the last
version a consumer has seen so that after a gap it can catch up from the
node's delta buffer, or ask the providers for a full snapshot when that
history is gone.

States:

    UNSUBSCRIBED -> SUBSCRIBING -> SYNCED -> STALE -> RESYNCING -> SYNCED
    any state    -> UNSUBSCRIBED (close)

- open() subscribes; the first value moves SUBSCRIBING to SYNCED (at once if
  the bus already caches one).
- mark_stale() is the hook for a transport disconnect or detected gap.
  Values published while STALE are not applied; the consumer is behind.
- resync() replays deltas since the last seen version. If they were evicted
  it asks the providers to refresh the path (bus.request_resync) and the
  next published value completes the resync. Without any provider able to
  refresh, the bus's cached value is taken as the snapshot.

The data / is_loading / error properties are what a UI binding exposes:

    view = ResourceSubscription(bus, ["ideas", "idea-1"]).open()
    view.add_listener(lambda v: render(v.data, v.is_loading, v.error))
    ...
    view.close()
"""

import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, List, Optional

from .delta_buffer import RESYNC_REQUIRED, DeltasOrResync
from .errors import ProviderActivationError
from .path import PathLike, Segments, normalize

if TYPE_CHECKING:
    from .bus import DataBus

logger = logging.getLogger(__name__)


class ResourceState(Enum):
    UNSUBSCRIBED = "unsubscribed"
    SUBSCRIBING = "subscribing"
    SYNCED = "synced"
    STALE = "stale"
    RESYNCING = "resyncing"


Listener = Callable[["ResourceSubscription"], None]


class ResourceSubscription:
    """One consumer's view of one path, with stale/resync tracking."""

    def __init__(self, bus: "DataBus", path: PathLike):
        self._bus = bus
        self.path: Segments = normalize(path)
        self._state = ResourceState.UNSUBSCRIBED
        self._subscription = None
        self._listeners: List[Listener] = []

        self.data: Any = None
        self.version = 0
        self.error: Optional[BaseException] = None
        self.missed = 0

    @property
    def state(self) -> ResourceState:
        return self._state

    @property
    def is_loading(self) -> bool:
        return self._state in (ResourceState.SUBSCRIBING, ResourceState.RESYNCING)

    # ========================================================================
    # TRANSITIONS
    # ========================================================================

    def open(self) -> "ResourceSubscription":
        """
        Subscribe to the path.

        Raises:
            ProviderActivationError: Activation failed; the view stays
                UNSUBSCRIBED with error set
        """
        if self._state is not ResourceState.UNSUBSCRIBED:
            return self

        self.error = None
        self._set_state(ResourceState.SUBSCRIBING)
        try:
            self._subscription = self._bus.subscribe(self.path, self._on_change)
        except ProviderActivationError as e:
            self.error = e
            self._set_state(ResourceState.UNSUBSCRIBED)
            raise
        return self

    def mark_stale(self) -> None:
        """The transport lost updates; stop trusting the local view."""
        if self._state is ResourceState.SYNCED:
            self._set_state(ResourceState.STALE)

    def resync(self) -> DeltasOrResync:
        """
        Catch up after mark_stale().

        Returns the deltas replayed, or RESYNC_REQUIRED when a full snapshot
        had to be requested. Does nothing unless the view is STALE.
        """
        if self._state is not ResourceState.STALE:
            logger.debug(f"resync() ignored for {list(self.path)} in state {self._state.value}")
            return []

        self._set_state(ResourceState.RESYNCING)
        deltas = self._bus.get_deltas_since(self.path, self.version)

        if deltas is RESYNC_REQUIRED:
            logger.warning(
                f"History for {list(self.path)} evicted past v{self.version}, requesting snapshot"
            )
            asked = self._bus.request_resync(self.path)
            if asked == 0 and self._state is ResourceState.RESYNCING:
                self._apply_snapshot()
            return RESYNC_REQUIRED

        for delta in deltas:
            self.data = delta.payload
            self.version = delta.version
        self.missed = 0
        self._set_state(ResourceState.SYNCED)
        return deltas

    def close(self) -> None:
        """Dispose the underlying subscription. Safe to call more than once."""
        subscription, self._subscription = self._subscription, None
        if subscription is not None and not subscription.disposed:
            subscription.dispose()
        self._set_state(ResourceState.UNSUBSCRIBED)

    def _on_change(self, new: Any, old: Any, path: Segments) -> None:
        if self._state is ResourceState.UNSUBSCRIBED:
            return
        if self._state is ResourceState.STALE:
            self.missed += 1
            return

        self.data = new
        self.version = self._bus.get_version(path)
        self.error = None
        self.missed = 0
        if self._state is ResourceState.SYNCED:
            self._emit()
        else:
            self._set_state(ResourceState.SYNCED)

    def _apply_snapshot(self) -> None:
        self.data = self._bus.get_value(self.path)
        self.version = self._bus.get_version(self.path)
        self.missed = 0
        self._set_state(ResourceState.SYNCED)

    # ========================================================================
    # LISTENERS
    # ========================================================================

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Call listener(view) on every state or data change. Returns a remover."""
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _set_state(self, state: ResourceState) -> None:
        if state is not self._state:
            logger.debug(f"{list(self.path)}: {self._state.value} -> {state.value}")
        self._state = state
        self._emit()

    def _emit(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception(f"Listener {listener!r} failed for {list(self.path)}")

    def __enter__(self) -> "ResourceSubscription":
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __repr__(self) -> str:
        return f"ResourceSubscription({list(self.path)}, {self._state.value}, v{self.version})"


__all__ = ["ResourceState", "ResourceSubscription"]
