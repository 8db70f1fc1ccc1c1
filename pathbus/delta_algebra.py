"""
Delta Algebras for Bus Payloads
===============================

Every publish records a Delta in the node's buffer. Besides the full payload,
a delta carries a structural diff from the previous payload so that lagging
consumers and remote peers can catch up with small messages instead of
snapshots.

For a payload type T an algebra provides:
- compute_delta(old, new) -> Δ        (None when it cannot describe the change)
- apply_delta(old, Δ) -> new
- compose_deltas(Δ1, Δ2) -> Δ1 then Δ2
- is_identity(Δ)

Sequences (strings and lists) use splice operations computed right to left,
so each operation's offsets stay valid while the operations are replayed in
order:

    ("splice", start, delete_count, inserted)

Dict diffs are {"set": {key: value}, "unset": [key, ...]}. Set diffs are
(added, removed). Numbers are plain differences. NumPy arrays use a dense or
sparse element-wise difference.

Example:
    registry = DeltaRegistry()
    d = registry.compute_delta({"title": "a"}, {"title": "b", "done": True})
    registry.apply_delta({"title": "a"}, d)   # {"title": "b", "done": True}
"""

import difflib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)

class DeltaType(Enum):
    """Classification of payloads for algebra dispatch."""

    NUMERIC = "numeric"
    STRING = "string"
    LIST = "list"
    SET = "set"
    DICT = "dict"
    ARRAY = "array"
    OPAQUE = "opaque"


@dataclass(frozen=True)
class TypedDelta:
    """A diff tagged with the algebra that produced it."""

    delta_type: DeltaType
    value: Any

    def __repr__(self) -> str:
        return f"Δ[{self.delta_type.value}]({self.value!r})"


class DeltaAlgebra(ABC):
    """Delta algebra for one payload type."""

    @abstractmethod
    def compute_delta(self, old: Any, new: Any) -> Optional[TypedDelta]:
        pass

    @abstractmethod
    def apply_delta(self, value: Any, delta: TypedDelta) -> Any:
        pass

    @abstractmethod
    def compose_deltas(self, first: TypedDelta, second: TypedDelta) -> TypedDelta:
        pass

    @abstractmethod
    def is_identity(self, delta: TypedDelta) -> bool:
        pass


class NumericAlgebra(DeltaAlgebra):
    """Δ = new - old"""

    def compute_delta(self, old: Any, new: Any) -> Optional[TypedDelta]:
        return TypedDelta(DeltaType.NUMERIC, new - old)

    def apply_delta(self, value: Any, delta: TypedDelta) -> Any:
        return value + delta.value

    def compose_deltas(self, first: TypedDelta, second: TypedDelta) -> TypedDelta:
        return TypedDelta(DeltaType.NUMERIC, first.value + second.value)

    def is_identity(self, delta: TypedDelta) -> bool:
        return delta.value == 0


def _splice_ops(old: Sequence, new: Sequence) -> List[Tuple]:
    """Splice operations turning old into new, ordered right to left."""
    ops = []
    matcher = difflib.SequenceMatcher(None, old, new, autojunk=False)
    for tag, i1, i2, j1, j2 in reversed(matcher.get_opcodes()):
        if tag == "equal":
            continue
        ops.append(("splice", i1, i2 - i1, new[j1:j2]))
    return ops


class _SequenceAlgebra(DeltaAlgebra):
    delta_type: DeltaType

    def _concat(self, head: Sequence, inserted: Sequence, tail: Sequence) -> Sequence:
        raise NotImplementedError

    def apply_delta(self, value: Sequence, delta: TypedDelta) -> Sequence:
        result = value
        for _, start, count, inserted in delta.value:
            if start < 0 or start + count > len(result):
                raise ValueError(
                    f"Splice [{start}:{start + count}] out of range for length {len(result)}"
                )
            result = self._concat(result[:start], inserted, result[start + count :])
        return result

    def compose_deltas(self, first: TypedDelta, second: TypedDelta) -> TypedDelta:
        return TypedDelta(self.delta_type, list(first.value) + list(second.value))

    def is_identity(self, delta: TypedDelta) -> bool:
        return not delta.value


class StringAlgebra(_SequenceAlgebra):
    """Δ = splices over characters"""

    delta_type = DeltaType.STRING

    # Beyond this size difflib gets slow; one replacing splice is sent instead
    MAX_DIFF_LENGTH = 2000

    def compute_delta(self, old: str, new: str) -> Optional[TypedDelta]:
        if old == new:
            return TypedDelta(DeltaType.STRING, [])
        if len(old) > self.MAX_DIFF_LENGTH or len(new) > self.MAX_DIFF_LENGTH:
            return TypedDelta(DeltaType.STRING, [("splice", 0, len(old), new)])
        return TypedDelta(DeltaType.STRING, _splice_ops(old, new))

    def _concat(self, head: str, inserted: str, tail: str) -> str:
        return head + inserted + tail


class ListAlgebra(_SequenceAlgebra):
    """Δ = splices over items"""

    delta_type = DeltaType.LIST

    def compute_delta(self, old: List, new: List) -> Optional[TypedDelta]:
        try:
            return TypedDelta(DeltaType.LIST, _splice_ops(old, new))
        except TypeError:
            # Unhashable items (dicts) defeat difflib's index
            if old == new:
                return TypedDelta(DeltaType.LIST, [])
            return TypedDelta(DeltaType.LIST, [("splice", 0, len(old), list(new))])

    def _concat(self, head: List, inserted: List, tail: List) -> List:
        return list(head) + list(inserted) + list(tail)


class SetAlgebra(DeltaAlgebra):
    """Δ = (added, removed)"""

    def compute_delta(self, old: set, new: set) -> Optional[TypedDelta]:
        return TypedDelta(DeltaType.SET, (frozenset(new - old), frozenset(old - new)))

    def apply_delta(self, value: set, delta: TypedDelta) -> set:
        added, removed = delta.value
        return (set(value) | added) - removed

    def compose_deltas(self, first: TypedDelta, second: TypedDelta) -> TypedDelta:
        add1, rem1 = first.value
        add2, rem2 = second.value
        return TypedDelta(
            DeltaType.SET, (frozenset((add1 - rem2) | add2), frozenset((rem1 - add2) | rem2))
        )

    def is_identity(self, delta: TypedDelta) -> bool:
        added, removed = delta.value
        return not added and not removed


class DictAlgebra(DeltaAlgebra):
    """Δ = {"set": {key: new}, "unset": [removed keys]}"""

    def compute_delta(self, old: Dict, new: Dict) -> Optional[TypedDelta]:
        changed = {}
        for key, value in new.items():
            if key not in old or not _values_equal(old[key], value):
                changed[key] = value
        removed = [key for key in old if key not in new]
        return TypedDelta(DeltaType.DICT, {"set": changed, "unset": removed})

    def apply_delta(self, value: Dict, delta: TypedDelta) -> Dict:
        result = dict(value)
        for key in delta.value["unset"]:
            result.pop(key, None)
        result.update(delta.value["set"])
        return result

    def compose_deltas(self, first: TypedDelta, second: TypedDelta) -> TypedDelta:
        changed = dict(first.value["set"])
        removed = [k for k in first.value["unset"] if k not in second.value["set"]]
        for key in second.value["unset"]:
            changed.pop(key, None)
            if key not in removed:
                removed.append(key)
        changed.update(second.value["set"])
        return TypedDelta(DeltaType.DICT, {"set": changed, "unset": removed})

    def is_identity(self, delta: TypedDelta) -> bool:
        return not delta.value["set"] and not delta.value["unset"]


class ArrayAlgebra(DeltaAlgebra):
    """Δ = element-wise difference, sparse when few elements change"""

    SPARSE_RATIO = 0.1

    def compute_delta(self, old: np.ndarray, new: np.ndarray) -> Optional[TypedDelta]:
        if old.shape != new.shape:
            return None
        diff = new - old
        changed = np.count_nonzero(diff)
        if 0 < changed < diff.size * self.SPARSE_RATIO:
            indices = np.nonzero(diff)
            return TypedDelta(
                DeltaType.ARRAY,
                {"sparse": True, "indices": indices, "values": diff[indices], "shape": old.shape},
            )
        return TypedDelta(DeltaType.ARRAY, {"sparse": False, "diff": diff})

    def _dense(self, delta: TypedDelta) -> np.ndarray:
        if not delta.value["sparse"]:
            return delta.value["diff"]
        values = delta.value["values"]
        dense = np.zeros(delta.value["shape"], dtype=values.dtype)
        dense[delta.value["indices"]] = values
        return dense

    def apply_delta(self, value: np.ndarray, delta: TypedDelta) -> np.ndarray:
        if delta.value["sparse"]:
            result = value.copy()
            indices = delta.value["indices"]
            result[indices] = value[indices] + delta.value["values"]
            return result
        return value + delta.value["diff"]

    def compose_deltas(self, first: TypedDelta, second: TypedDelta) -> TypedDelta:
        return TypedDelta(
            DeltaType.ARRAY, {"sparse": False, "diff": self._dense(first) + self._dense(second)}
        )

    def is_identity(self, delta: TypedDelta) -> bool:
        if delta.value["sparse"]:
            return len(delta.value["values"]) == 0
        return not np.any(delta.value["diff"])


def _values_equal(a: Any, b: Any) -> bool:
    if isinstance(a, np.ndarray) or isinstance(b, np.ndarray):
        return type(a) is type(b) and a.shape == b.shape and bool(np.array_equal(a, b))
    try:
        return bool(a == b)
    except (ValueError, TypeError):
        return False


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, complex)) and not isinstance(value, bool)


class DeltaRegistry:
    """Dispatches payloads to their delta algebra."""

    def __init__(self):
        self._algebras: Dict[DeltaType, DeltaAlgebra] = {
            DeltaType.NUMERIC: NumericAlgebra(),
            DeltaType.STRING: StringAlgebra(),
            DeltaType.LIST: ListAlgebra(),
            DeltaType.SET: SetAlgebra(),
            DeltaType.DICT: DictAlgebra(),
            DeltaType.ARRAY: ArrayAlgebra(),
        }
        self._rules: List[Tuple[Callable[[Any], bool], DeltaType]] = [
            (_is_number, DeltaType.NUMERIC),
            (lambda v: isinstance(v, str), DeltaType.STRING),
            (lambda v: isinstance(v, np.ndarray), DeltaType.ARRAY),
            (lambda v: isinstance(v, list), DeltaType.LIST),
            (lambda v: isinstance(v, (set, frozenset)), DeltaType.SET),
            (lambda v: isinstance(v, dict), DeltaType.DICT),
        ]

    def detect_type(self, value: Any) -> DeltaType:
        for predicate, delta_type in self._rules:
            if predicate(value):
                return delta_type
        return DeltaType.OPAQUE

    def compute_delta(self, old: Any, new: Any) -> Optional[TypedDelta]:
        """Diff two payloads, or None when no algebra covers the pair."""
        if old is None or new is None:
            return None
        delta_type = self.detect_type(old)
        if delta_type not in self._algebras or self.detect_type(new) is not delta_type:
            return None
        try:
            return self._algebras[delta_type].compute_delta(old, new)
        except (TypeError, ValueError) as e:
            # e.g. boolean arrays, which numpy refuses to subtract
            logger.debug(f"No {delta_type.value} delta for {type(new).__name__}: {e}")
            return None

    def apply_delta(self, value: Any, delta: Optional[TypedDelta]) -> Any:
        """
        Apply a delta to a payload.

        Raises:
            ValueError: If the delta does not fit the value
        """
        if delta is None:
            return value
        if self.detect_type(value) is not delta.delta_type:
            raise ValueError(
                f"Cannot apply {delta.delta_type.value} delta to {type(value).__name__}"
            )
        try:
            return self._algebras[delta.delta_type].apply_delta(value, delta)
        except (KeyError, IndexError, TypeError) as e:
            raise ValueError(f"Delta {delta!r} does not apply: {e}") from e

    def compose_deltas(
        self, first: Optional[TypedDelta], second: Optional[TypedDelta]
    ) -> Optional[TypedDelta]:
        if first is None or second is None:
            return None
        if first.delta_type is not second.delta_type:
            return None
        return self._algebras[first.delta_type].compose_deltas(first, second)

    def is_identity(self, delta: Optional[TypedDelta]) -> bool:
        if delta is None:
            return False
        return self._algebras[delta.delta_type].is_identity(delta)

    def register_algebra(
        self,
        delta_type: DeltaType,
        algebra: DeltaAlgebra,
        predicate: Callable[[Any], bool],
    ) -> None:
        """
        Register an algebra for a custom payload type.

        Custom predicates are checked before the built-in ones, so a
        dict subclass can get its own algebra.
        """
        self._algebras[delta_type] = algebra
        self._rules.insert(0, (predicate, delta_type))


# ============================================================================
# WIRE FORM
# ============================================================================

_WIRE_TYPES = {
    DeltaType.NUMERIC,
    DeltaType.STRING,
    DeltaType.LIST,
    DeltaType.SET,
    DeltaType.DICT,
}


def to_wire(delta: TypedDelta) -> Dict[str, Any]:
    """
    JSON-safe form of a delta.

    Raises:
        ValueError: For array, opaque and complex-number deltas, or dicts with
            non-string keys
    """
    kind = delta.delta_type
    if kind not in _WIRE_TYPES:
        raise ValueError(f"{kind.value} deltas have no wire form")
    if kind is DeltaType.NUMERIC:
        if isinstance(delta.value, complex):
            raise ValueError("complex deltas have no wire form")
        value: Any = delta.value
    elif kind in (DeltaType.STRING, DeltaType.LIST):
        value = [
            [start, count, inserted if kind is DeltaType.STRING else list(inserted)]
            for _, start, count, inserted in delta.value
        ]
    elif kind is DeltaType.SET:
        added, removed = delta.value
        value = {"added": list(added), "removed": list(removed)}
    else:
        keys = list(delta.value["set"]) + list(delta.value["unset"])
        if not all(isinstance(k, str) for k in keys):
            raise ValueError("dict deltas need string keys on the wire")
        value = {"set": dict(delta.value["set"]), "unset": list(delta.value["unset"])}
    return {"type": kind.value, "value": value}


def from_wire(data: Dict[str, Any]) -> TypedDelta:
    """
    Rebuild a delta from its wire form.

    Raises:
        ValueError: If the payload is not a well-formed wire delta
    """
    try:
        kind = DeltaType(data["type"])
        value = data["value"]
    except (KeyError, TypeError, ValueError) as e:
        raise ValueError(f"Malformed wire delta: {data!r}") from e
    if kind not in _WIRE_TYPES:
        raise ValueError(f"{kind.value} deltas have no wire form")

    try:
        if kind is DeltaType.NUMERIC:
            if not _is_number(value):
                raise ValueError(f"numeric delta must be a number, got {value!r}")
            return TypedDelta(kind, value)
        if kind is DeltaType.STRING:
            return TypedDelta(kind, [("splice", int(s), int(c), str(i)) for s, c, i in value])
        if kind is DeltaType.LIST:
            return TypedDelta(kind, [("splice", int(s), int(c), list(i)) for s, c, i in value])
        if kind is DeltaType.SET:
            return TypedDelta(kind, (frozenset(value["added"]), frozenset(value["removed"])))
        return TypedDelta(kind, {"set": dict(value["set"]), "unset": list(value["unset"])})
    except (KeyError, TypeError) as e:
        raise ValueError(f"Malformed {kind.value} wire delta: {value!r}") from e


__all__ = [
    "DeltaType",
    "TypedDelta",
    "DeltaAlgebra",
    "NumericAlgebra",
    "StringAlgebra",
    "ListAlgebra",
    "SetAlgebra",
    "DictAlgebra",
    "ArrayAlgebra",
    "DeltaRegistry",
    "to_wire",
    "from_wire",
]
