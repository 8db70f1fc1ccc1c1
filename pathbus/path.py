"""
Paths
=====

A path is an ordered sequence of string segments naming a node in the bus
tree. The root is the empty path. For refcount bookkeeping every path is
reduced to a canonical string key; two paths are equal iff their keys are.

TypedPath ties a payload type to a path so that subscriber callbacks can be
checked statically:

    IDEA: TypedPath[dict] = TypedPath(("ideas",), resource_type="idea")

    def on_idea(new: dict, old: Optional[dict], path: Tuple[str, ...]) -> None:
        ...

    bus.subscribe(IDEA.child("idea-1"), on_idea)
"""

import threading
from typing import (
    Any,
    Callable,
    Generic,
    Iterator,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
    Union,
)

from cachetools import LRUCache, cached

T = TypeVar("T")

Segments = Tuple[str, ...]
ESCAPE = "\\"


class TypedPath(Generic[T]):
    """
    Immutable path descriptor carrying the payload type stored at it.

    The type parameter only exists for static checkers; at runtime a
    TypedPath is its segments plus an optional resource type tag.
    """

    __slots__ = ("_segments", "_resource_type")

    def __init__(self, segments: Sequence[str], resource_type: Optional[str] = None):
        self._segments: Segments = normalize(segments)
        self._resource_type = resource_type

    @property
    def segments(self) -> Segments:
        return self._segments

    @property
    def resource_type(self) -> Optional[str]:
        return self._resource_type

    @property
    def parent(self) -> Optional["TypedPath[Any]"]:
        if not self._segments:
            return None
        return TypedPath(self._segments[:-1])

    def child(self, *segments: str) -> "TypedPath[T]":
        """Extend the path, keeping the payload type and resource tag."""
        return TypedPath(self._segments + normalize(segments), self._resource_type)

    def __len__(self) -> int:
        return len(self._segments)

    def __iter__(self) -> Iterator[str]:
        return iter(self._segments)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, TypedPath):
            return self._segments == other._segments
        if isinstance(other, tuple):
            return self._segments == other
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._segments)

    def __repr__(self) -> str:
        tag = f", resource_type={self._resource_type!r}" if self._resource_type else ""
        return f"TypedPath({list(self._segments)!r}{tag})"


PathLike = Union[Sequence[str], TypedPath]

# Subscriber callback: (new value, previous value or None, path)
ChangeCallback = Callable[[Any, Any, Segments], None]


def normalize(path: PathLike) -> Segments:
    """
    Convert a path-like value into a tuple of segments.

    Raises:
        TypeError: If path is a bare string or contains non-string segments
        ValueError: If a segment is empty
    """
    if isinstance(path, TypedPath):
        return path.segments
    if isinstance(path, (str, bytes)):
        raise TypeError(
            f"Path must be a sequence of segments, not {type(path).__name__} {path!r}"
        )
    segments = tuple(path)
    for segment in segments:
        if not isinstance(segment, str):
            raise TypeError(f"Path segment must be str, got {type(segment).__name__}")
        if not segment:
            raise ValueError(f"Empty segment in path {list(segments)!r}")
    return segments


def _escape(segment: str, separator: str) -> str:
    return segment.replace(ESCAPE, ESCAPE + ESCAPE).replace(separator, ESCAPE + separator)


@cached(cache=LRUCache(maxsize=4096), lock=threading.Lock())
def canonical_key(segments: Segments, separator: str = "/") -> str:
    """
    Join segments into the canonical string key.

    Separators and backslashes inside a segment are escaped so that
    ("a/b",) and ("a", "b") never share a key.
    """
    return separator.join(_escape(segment, separator) for segment in segments)


__all__ = [
    "TypedPath",
    "PathLike",
    "ChangeCallback",
    "Segments",
    "normalize",
    "canonical_key",
]
