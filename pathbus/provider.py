"""
Providers
=========

A provider is a capability attached at one node of the bus. It is activated
separately for every concrete path subscribed at or beneath that node, and
deactivated when the last subscription to that path goes away. Providers
hold no subscriber state; the refcounts live in the bus.

Any object works as a provider; each hook is optional:

    class IdeaProvider(Provider):
        def on_activate(self, ctx):
            backend.watch(ctx.path[-1], lambda data: ctx.bus.publish(ctx.path, data))

        def on_deactivate(self, ctx):
            backend.unwatch(ctx.path[-1])

Hooks may start asynchronous work. Such work should poll ctx.is_cancelled (or
wait on ctx.cancelled) since the bus sets it right before on_deactivate.
"""

import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

from .path import Segments

if TYPE_CHECKING:
    from .bus import DataBus


@dataclass(eq=False)
class ActivationContext:
    """
    Passed to every provider hook.

    The same context object is handed to on_activate, any on_resync calls and
    the matching on_deactivate of one activation.
    """

    path: Segments
    bus: "DataBus"
    key: str = ""
    cancelled: threading.Event = field(default_factory=threading.Event)

    @property
    def is_cancelled(self) -> bool:
        return self.cancelled.is_set()


class Provider:
    """Base class with no-op hooks. Subclassing is optional."""

    def on_activate(self, ctx: ActivationContext) -> None:
        pass

    def on_deactivate(self, ctx: ActivationContext) -> None:
        pass

    def on_resync(self, ctx: ActivationContext) -> None:
        pass


def call_hook(provider: Any, name: str, ctx: ActivationContext) -> Optional[Any]:
    """Invoke provider.<name>(ctx) if the provider defines it."""
    hook = getattr(provider, name, None)
    if hook is None:
        return None
    return hook(ctx)


__all__ = ["ActivationContext", "Provider", "call_hook"]
