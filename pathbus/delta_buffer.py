"""
Delta Buffer
============

Bounded, versioned history of the values published at one node. A consumer
that remembers the last version it saw can catch up by replaying the deltas
published since, as long as they are still retained. Once the requested
history has been evicted the buffer answers RESYNC_REQUIRED and the consumer
must fetch a full snapshot instead.

Versioning:
- Versions start at 1 and increase by one per append.
- oldest_version is the version of the oldest retained delta. When nothing
  is retained it is the version the next append will receive, i.e. one past
  the last evicted or cleared delta.

With max_retained=3 and versions 1..5 appended, versions 3, 4 and 5 remain,
oldest_version is 3, get_deltas_since(2) returns [3, 4, 5] and
get_deltas_since(1) returns RESYNC_REQUIRED.
"""

import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, List, Optional, Union

from .delta_algebra import TypedDelta


class _ResyncRequired:
    """Sentinel returned when the requested history has been evicted."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "RESYNC_REQUIRED"

    def __reduce__(self):
        return (_ResyncRequired, ())


RESYNC_REQUIRED = _ResyncRequired()


@dataclass(frozen=True)
class Delta:
    """
    One versioned entry of a node's history.

    Attributes:
        version: Position in the node's history, starting at 1
        payload: The full value published at this version
        diff: Structural difference from the previous payload, when one exists
        timestamp: Wall-clock time of the publish
    """

    version: int
    payload: Any
    diff: Optional[TypedDelta] = None
    timestamp: float = field(default_factory=time.time)

    @property
    def base_version(self) -> int:
        """Version this delta applies on top of."""
        return self.version - 1

    def __repr__(self) -> str:
        return f"Delta(v{self.version}: {self.payload!r})"


DeltasOrResync = Union[List[Delta], _ResyncRequired]


class DeltaBuffer:
    """Ring of the most recent deltas for one stream."""

    DEFAULT_MAX_RETAINED = 100

    def __init__(self, max_retained: int = DEFAULT_MAX_RETAINED):
        if max_retained < 1:
            raise ValueError(f"max_retained must be at least 1, got {max_retained}")
        self.max_retained = max_retained
        self._deltas: Deque[Delta] = deque()
        self._last_version = 0
        self._oldest_version = 1

    @property
    def deltas(self) -> List[Delta]:
        return list(self._deltas)

    @property
    def oldest_version(self) -> int:
        return self._oldest_version

    @property
    def last_version(self) -> int:
        return self._last_version

    @property
    def latest(self) -> Optional[Delta]:
        return self._deltas[-1] if self._deltas else None

    def __len__(self) -> int:
        return len(self._deltas)

    def append(self, payload: Any, diff: Optional[TypedDelta] = None) -> Delta:
        """Record a new version, evicting from the front beyond max_retained."""
        self._last_version += 1
        delta = Delta(self._last_version, payload, diff)
        self._deltas.append(delta)

        while len(self._deltas) > self.max_retained:
            self._deltas.popleft()
        self._oldest_version = self._deltas[0].version
        return delta

    def get_deltas_since(self, version: int) -> DeltasOrResync:
        """
        Deltas newer than version, or RESYNC_REQUIRED if some were evicted.

        A version at or past last_version yields an empty list.
        """
        if version < self._oldest_version - 1:
            return RESYNC_REQUIRED
        return [d for d in self._deltas if d.version > version]

    def clear(self) -> None:
        """Forget retained history; the version counter keeps counting."""
        self._deltas.clear()
        self._oldest_version = self._last_version + 1

    def __repr__(self) -> str:
        return (
            f"DeltaBuffer(retained={len(self._deltas)}/{self.max_retained}, "
            f"versions={self._oldest_version}..{self._last_version})"
        )


def create_delta_buffer(max_retained: int = DeltaBuffer.DEFAULT_MAX_RETAINED) -> DeltaBuffer:
    return DeltaBuffer(max_retained)


def append(buffer: DeltaBuffer, payload: Any) -> Delta:
    return buffer.append(payload)


def get_deltas_since(buffer: DeltaBuffer, version: int) -> DeltasOrResync:
    return buffer.get_deltas_since(version)


__all__ = [
    "Delta",
    "DeltaBuffer",
    "DeltasOrResync",
    "RESYNC_REQUIRED",
    "create_delta_buffer",
    "append",
    "get_deltas_since",
]
