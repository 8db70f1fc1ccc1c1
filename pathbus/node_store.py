"""
Node Store
==========

Hierarchical storage for the bus. One Node exists per distinct path prefix
that has been touched; the root node has the empty path. Each node owns:

- value: the last published payload (MISSING until the first publish)
- subscribers: live subscriptions in registration order
- providers: providers attached at exactly this node
- active_providers: canonical descendant path -> activation records of the
  providers attached here, one per (provider, path) pair
- buffer: DeltaBuffer holding the recent history of value

get_node returns the requested node together with the chain of nodes from the
root down to it, so callers can walk ancestors without re-traversing.

The store is not synchronised; DataBus serialises every access.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .delta_buffer import DeltaBuffer
from .path import Segments
from .provider import ActivationContext


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()


@dataclass(eq=False)
class ActiveProvider:
    """Refcount of one provider for one concrete subscribed path."""

    provider: Any
    count: int
    context: ActivationContext

    def __repr__(self) -> str:
        return f"ActiveProvider({self.provider!r}, path={list(self.context.path)}, count={self.count})"


class Node:
    """A single node of the path tree."""

    __slots__ = (
        "segment",
        "path",
        "parent",
        "children",
        "value",
        "subscribers",
        "providers",
        "active_providers",
        "buffer",
        "activation_error",
    )

    def __init__(
        self,
        segment: Optional[str],
        path: Segments,
        parent: Optional["Node"],
        max_retained: int,
    ):
        self.segment = segment
        self.path = path
        self.parent = parent
        self.children: Dict[str, "Node"] = {}
        self.value: Any = MISSING
        self.subscribers: List[Any] = []
        self.providers: List[Any] = []
        self.active_providers: Dict[str, List[ActiveProvider]] = {}
        self.buffer = DeltaBuffer(max_retained)
        self.activation_error: Optional[BaseException] = None

    @property
    def has_value(self) -> bool:
        return self.value is not MISSING

    def find_record(self, key: str, provider: Any) -> Optional[ActiveProvider]:
        for record in self.active_providers.get(key, ()):
            if record.provider is provider:
                return record
        return None

    def add_record(self, key: str, record: ActiveProvider) -> None:
        self.active_providers.setdefault(key, []).append(record)

    def remove_record(self, key: str, record: ActiveProvider) -> None:
        records = self.active_providers.get(key)
        if not records:
            return
        records[:] = [r for r in records if r is not record]
        if not records:
            del self.active_providers[key]

    def records_for(self, provider: Any) -> List[Tuple[str, ActiveProvider]]:
        return [
            (key, record)
            for key, records in self.active_providers.items()
            for record in records
            if record.provider is provider
        ]

    def is_empty(self) -> bool:
        """True when nothing would be lost by dropping this node."""
        return (
            not self.subscribers
            and not self.providers
            and not self.active_providers
            and not self.children
            and not self.has_value
            and self.activation_error is None
        )

    def __repr__(self) -> str:
        return (
            f"Node({list(self.path)}, subscribers={len(self.subscribers)}, "
            f"providers={len(self.providers)}, children={len(self.children)})"
        )


class NodeTree:
    """Root of the path tree plus lookup, traversal and pruning."""

    def __init__(self, max_retained: int = DeltaBuffer.DEFAULT_MAX_RETAINED):
        self._max_retained = max_retained
        self.root = Node(None, (), None, max_retained)

    def get_node(
        self, path: Segments, create_if_missing: bool = False
    ) -> Tuple[Optional[Node], List[Node]]:
        """
        Resolve path to (node, chain from root to node inclusive).

        Without create_if_missing a missing segment yields (None, []), so
        read-only lookups never grow the tree.
        """
        node = self.root
        chain = [node]
        for depth, segment in enumerate(path):
            child = node.children.get(segment)
            if child is None:
                if not create_if_missing:
                    return None, []
                child = Node(segment, path[: depth + 1], node, self._max_retained)
                node.children[segment] = child
            node = child
            chain.append(node)
        return node, chain

    def iter_subtree(self, node: Node) -> Iterator[Node]:
        """Depth-first walk of node and all its descendants."""
        stack = [node]
        while stack:
            current = stack.pop()
            yield current
            stack.extend(reversed(list(current.children.values())))

    def prune(self, chain: List[Node]) -> int:
        """
        Drop empty nodes from the leaf of chain upwards.

        Stops at the first node that still holds something. The root is
        never removed. Returns the number of nodes dropped.
        """
        removed = 0
        for node in reversed(chain):
            if node.parent is None or not node.is_empty():
                break
            if node.parent.children.get(node.segment) is node:
                del node.parent.children[node.segment]
                removed += 1
        return removed

    def node_count(self) -> int:
        return sum(1 for _ in self.iter_subtree(self.root))


__all__ = ["MISSING", "ActiveProvider", "Node", "NodeTree"]
