"""
Tests for payload delta algebras and their wire form.
"""

from collections import OrderedDict

import numpy as np
import pytest

from pathbus.delta_algebra import (
    ArrayAlgebra,
    DeltaAlgebra,
    DeltaRegistry,
    DeltaType,
    DictAlgebra,
    ListAlgebra,
    NumericAlgebra,
    SetAlgebra,
    StringAlgebra,
    TypedDelta,
    from_wire,
    to_wire,
)


@pytest.fixture
def registry():
    return DeltaRegistry()


class TestBuiltinAlgebras:
    """Each algebra reproduces the new value from the old one."""

    def test_numeric(self):
        algebra = NumericAlgebra()
        delta = algebra.compute_delta(5, 7)
        assert delta == TypedDelta(DeltaType.NUMERIC, 2)
        assert algebra.apply_delta(5, delta) == 7
        assert algebra.compose_deltas(delta, delta).value == 4
        assert algebra.is_identity(TypedDelta(DeltaType.NUMERIC, 0))
        assert not algebra.is_identity(delta)

    def test_string_insert_is_a_single_splice(self):
        algebra = StringAlgebra()
        delta = algebra.compute_delta("abc", "abXc")
        assert delta.value == [("splice", 2, 0, "X")]
        assert algebra.apply_delta("abc", delta) == "abXc"

    @pytest.mark.parametrize(
        "old,new",
        [
            ("hello world", "hello there"),
            ("aaaa", "abab"),
            ("", "new text"),
            ("removed entirely", ""),
            ("xyz", "xyz"),
        ],
    )
    def test_string_splices_replay_in_order(self, old, new):
        algebra = StringAlgebra()
        assert algebra.apply_delta(old, algebra.compute_delta(old, new)) == new

    def test_long_string_falls_back_to_full_replace(self):
        algebra = StringAlgebra()
        old = "a" * (StringAlgebra.MAX_DIFF_LENGTH + 1)
        delta = algebra.compute_delta(old, "b")
        assert delta.value == [("splice", 0, len(old), "b")]
        assert algebra.apply_delta(old, delta) == "b"

    def test_list(self):
        algebra = ListAlgebra()
        old, new = [1, 2, 3, 4], [1, 3, 4, 5, 6]
        delta = algebra.compute_delta(old, new)
        assert algebra.apply_delta(old, delta) == new
        assert old == [1, 2, 3, 4]

    def test_list_of_unhashable_items(self):
        algebra = ListAlgebra()
        old, new = [{"id": 1}], [{"id": 1}, {"id": 2}]
        delta = algebra.compute_delta(old, new)
        assert delta.value == [("splice", 0, 1, new)]
        assert algebra.apply_delta(old, delta) == new
        assert algebra.is_identity(algebra.compute_delta(old, [{"id": 1}]))

    def test_splice_out_of_range(self):
        algebra = ListAlgebra()
        with pytest.raises(ValueError, match="out of range"):
            algebra.apply_delta([1], TypedDelta(DeltaType.LIST, [("splice", 3, 1, [])]))

    def test_set(self):
        algebra = SetAlgebra()
        delta = algebra.compute_delta({1, 2}, {2, 3})
        assert delta.value == (frozenset({3}), frozenset({1}))
        assert algebra.apply_delta({1, 2}, delta) == {2, 3}

        undo = algebra.compute_delta({2, 3}, {1, 2})
        assert algebra.apply_delta({1, 2}, algebra.compose_deltas(delta, undo)) == {1, 2}

    def test_dict_set_and_unset(self):
        algebra = DictAlgebra()
        old = {"a": 1, "b": 2}
        new = {"b": 3, "c": None}
        delta = algebra.compute_delta(old, new)
        assert delta.value == {"set": {"b": 3, "c": None}, "unset": ["a"]}
        assert algebra.apply_delta(old, delta) == new

    def test_dict_compose(self):
        algebra = DictAlgebra()
        first = TypedDelta(DeltaType.DICT, {"set": {"b": 3}, "unset": ["a"]})
        second = TypedDelta(DeltaType.DICT, {"set": {"a": 5}, "unset": ["c"]})
        composed = algebra.compose_deltas(first, second)

        assert composed.value == {"set": {"b": 3, "a": 5}, "unset": ["c"]}
        start = {"a": 1, "c": 2}
        assert algebra.apply_delta(start, composed) == algebra.apply_delta(
            algebra.apply_delta(start, first), second
        )

    def test_dict_with_array_values(self):
        algebra = DictAlgebra()
        old = {"v": np.zeros(3)}
        delta = algebra.compute_delta(old, {"v": np.zeros(3)})
        assert algebra.is_identity(delta)

    def test_array_sparse(self):
        algebra = ArrayAlgebra()
        old = np.zeros(100)
        new = old.copy()
        new[7] = 5.0
        delta = algebra.compute_delta(old, new)

        assert delta.value["sparse"] is True
        np.testing.assert_array_equal(algebra.apply_delta(old, delta), new)

    def test_array_dense_and_compose(self):
        algebra = ArrayAlgebra()
        a, b, c = np.zeros(4), np.array([1.0, 2.0, 3.0, 4.0]), np.ones(4)
        first = algebra.compute_delta(a, b)
        second = algebra.compute_delta(b, c)

        assert first.value["sparse"] is False
        np.testing.assert_array_equal(algebra.apply_delta(a, algebra.compose_deltas(first, second)), c)

    def test_array_shape_change(self):
        assert ArrayAlgebra().compute_delta(np.zeros(2), np.zeros(3)) is None


class TestDeltaRegistry:
    def test_detect_type(self, registry):
        assert registry.detect_type(1.5) is DeltaType.NUMERIC
        assert registry.detect_type("s") is DeltaType.STRING
        assert registry.detect_type([]) is DeltaType.LIST
        assert registry.detect_type(frozenset()) is DeltaType.SET
        assert registry.detect_type({}) is DeltaType.DICT
        assert registry.detect_type(np.zeros(1)) is DeltaType.ARRAY
        assert registry.detect_type(True) is DeltaType.OPAQUE
        assert registry.detect_type(object()) is DeltaType.OPAQUE

    def test_no_delta_without_a_common_algebra(self, registry):
        assert registry.compute_delta(None, 1) is None
        assert registry.compute_delta(1, None) is None
        assert registry.compute_delta(1, "one") is None
        assert registry.compute_delta(object(), object()) is None

    def test_unsupported_array_dtype(self, registry):
        assert registry.compute_delta(np.array([True]), np.array([False])) is None

    def test_apply_type_mismatch(self, registry):
        with pytest.raises(ValueError, match="Cannot apply"):
            registry.apply_delta("abc", TypedDelta(DeltaType.NUMERIC, 1))

    def test_apply_none_is_identity(self, registry):
        assert registry.apply_delta({"a": 1}, None) == {"a": 1}

    def test_compose_and_identity(self, registry):
        first = registry.compute_delta(1, 4)
        second = registry.compute_delta(4, 1)
        assert registry.is_identity(registry.compose_deltas(first, second))
        assert registry.compose_deltas(first, None) is None
        assert registry.compose_deltas(first, registry.compute_delta("a", "b")) is None
        assert registry.is_identity(None) is False

    def test_custom_algebra_takes_precedence(self, registry):
        class ReplaceAlgebra(DeltaAlgebra):
            def compute_delta(self, old, new):
                return TypedDelta(DeltaType.OPAQUE, new)

            def apply_delta(self, value, delta):
                return delta.value

            def compose_deltas(self, first, second):
                return second

            def is_identity(self, delta):
                return False

        registry.register_algebra(
            DeltaType.OPAQUE, ReplaceAlgebra(), lambda v: isinstance(v, OrderedDict)
        )
        old, new = OrderedDict(a=1), OrderedDict(b=2)
        delta = registry.compute_delta(old, new)

        assert delta == TypedDelta(DeltaType.OPAQUE, new)
        assert registry.apply_delta(old, delta) is new
        # Plain dicts still use the dict algebra
        assert registry.detect_type({"a": 1}) is DeltaType.DICT


class TestWireForm:
    def test_string_delta(self):
        delta = TypedDelta(DeltaType.STRING, [("splice", 2, 0, "X")])
        wire = to_wire(delta)
        assert wire == {"type": "string", "value": [[2, 0, "X"]]}
        assert from_wire(wire) == delta

    def test_dict_and_set_deltas(self, registry):
        dict_delta = registry.compute_delta({"a": 1}, {"b": [1, 2]})
        assert from_wire(to_wire(dict_delta)) == dict_delta

        set_delta = registry.compute_delta({"x"}, {"y"})
        assert to_wire(set_delta)["value"] == {"added": ["y"], "removed": ["x"]}
        assert from_wire(to_wire(set_delta)) == set_delta

    def test_unsupported_deltas(self, registry):
        with pytest.raises(ValueError, match="no wire form"):
            to_wire(registry.compute_delta(np.zeros(2), np.ones(2)))
        with pytest.raises(ValueError, match="complex"):
            to_wire(TypedDelta(DeltaType.NUMERIC, 1j))
        with pytest.raises(ValueError, match="string keys"):
            to_wire(registry.compute_delta({1: "a"}, {1: "b"}))

    @pytest.mark.parametrize(
        "payload",
        [
            None,
            {"type": "unknown", "value": 1},
            {"type": "array", "value": []},
            {"type": "numeric", "value": "1"},
            {"type": "set", "value": {}},
            {"type": "string", "value": [[0, 1]]},
        ],
    )
    def test_malformed_wire_delta(self, payload):
        with pytest.raises(ValueError):
            from_wire(payload)
