"""
Exception hierarchy for the path bus.

Everything the bus raises derives from DataBusError so callers can catch a
single base class. Stale history is not an error: delta lookups return the
RESYNC_REQUIRED sentinel from pathbus.delta_buffer instead of raising.
"""

from typing import Any, Optional, Tuple


class DataBusError(Exception):
    """Base class for all path bus errors."""

    pass


class ProviderActivationError(DataBusError):
    """
    Raised when a provider's on_activate fails.

    Only the subscribe call that drove the 0 -> 1 transition sees this error.
    The original exception is chained as __cause__.
    """

    def __init__(
        self,
        path: Tuple[str, ...],
        provider: Any,
        original: Optional[BaseException] = None,
    ):
        self.path = tuple(path)
        self.provider = provider
        self.original = original
        reason = f": {original!r}" if original is not None else ""
        super().__init__(
            f"Provider {provider!r} failed to activate for {list(self.path)}{reason}"
        )


class DoubleDisposeError(DataBusError):
    """Raised when a disposer runs twice and the bus is configured to be strict."""

    def __init__(self, path: Tuple[str, ...]):
        self.path = tuple(path)
        super().__init__(f"Subscription to {list(self.path)} was already disposed")


class LateRegistrationError(DataBusError):
    """Raised when a provider is registered beneath live subscriptions under the REJECT policy."""

    def __init__(self, path: Tuple[str, ...], live_paths: int):
        self.path = tuple(path)
        self.live_paths = live_paths
        super().__init__(
            f"Cannot register provider at {list(self.path)}: "
            f"{live_paths} subscribed path(s) already live beneath it"
        )


class BusClosedError(DataBusError):
    """Raised when subscribing or registering on a closed bus."""

    pass


class ProtocolError(DataBusError):
    """Raised when a wire message cannot be decoded or validated."""

    pass


__all__ = [
    "DataBusError",
    "ProviderActivationError",
    "DoubleDisposeError",
    "LateRegistrationError",
    "BusClosedError",
    "ProtocolError",
]
