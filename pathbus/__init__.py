"""
pathbus - Hierarchical Path-Addressed Publish/Subscribe

A process-local data bus: values live in a tree addressed by paths, consumers
subscribe to paths, and providers attached to nodes are activated lazily with
per-path reference counting. Every publish is versioned so lagging consumers
can catch up from deltas or ask for a fresh snapshot.
"""

from .bus import DataBus, Subscription
from .config import DEFAULT_CONFIG, BusConfig, LateRegistration
from .connection import (
    ConnectionProvider,
    InMemoryTransport,
    ResourceConnection,
    ResourceProvider,
    Transport,
)
from .delta_algebra import DeltaRegistry, DeltaType, TypedDelta
from .delta_buffer import RESYNC_REQUIRED, Delta, DeltaBuffer
from .errors import (
    BusClosedError,
    DataBusError,
    DoubleDisposeError,
    LateRegistrationError,
    ProtocolError,
    ProviderActivationError,
)
from .path import TypedPath, canonical_key, normalize
from .protocol import MessageType, ResourceMessage, WireDelta, resource_path
from .provider import ActivationContext, Provider
from .resource import ResourceState, ResourceSubscription

__version__ = "0.1.0"

__all__ = [
    # Bus
    "DataBus",
    "Subscription",
    "BusConfig",
    "DEFAULT_CONFIG",
    "LateRegistration",
    # Paths
    "TypedPath",
    "canonical_key",
    "normalize",
    # Providers
    "Provider",
    "ActivationContext",
    # Versioning
    "Delta",
    "DeltaBuffer",
    "RESYNC_REQUIRED",
    "DeltaRegistry",
    "DeltaType",
    "TypedDelta",
    # Resources
    "ResourceState",
    "ResourceSubscription",
    "MessageType",
    "ResourceMessage",
    "WireDelta",
    "resource_path",
    "Transport",
    "InMemoryTransport",
    "ResourceConnection",
    "ConnectionProvider",
    "ResourceProvider",
    # Errors
    "DataBusError",
    "ProviderActivationError",
    "DoubleDisposeError",
    "LateRegistrationError",
    "BusClosedError",
    "ProtocolError",
]
