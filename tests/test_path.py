"""
Tests for path normalisation, canonical keys and typed paths.
"""

import pytest

from pathbus.path import TypedPath, canonical_key, normalize


class TestNormalize:
    def test_accepts_sequences(self):
        assert normalize(["a", "b"]) == ("a", "b")
        assert normalize(("a",)) == ("a",)
        assert normalize([]) == ()

    def test_accepts_typed_path(self):
        assert normalize(TypedPath(["ideas", "x"])) == ("ideas", "x")

    def test_rejects_bare_string(self):
        """A string would otherwise be split into characters."""
        with pytest.raises(TypeError, match="sequence of segments"):
            normalize("ideas")

    def test_rejects_non_string_segments(self):
        with pytest.raises(TypeError, match="must be str"):
            normalize(["ideas", 1])

    def test_rejects_empty_segment(self):
        with pytest.raises(ValueError, match="Empty segment"):
            normalize(["ideas", ""])


class TestCanonicalKey:
    def test_join(self):
        assert canonical_key(("ideas", "idea-1")) == "ideas/idea-1"
        assert canonical_key(()) == ""

    def test_separator_inside_segment_is_escaped(self):
        assert canonical_key(("a/b",)) != canonical_key(("a", "b"))
        assert canonical_key(("a/b",)) == "a\\/b"

    def test_backslash_is_escaped(self):
        assert canonical_key(("a\\", "b")) != canonical_key(("a\\/b",))

    def test_custom_separator(self):
        assert canonical_key(("a", "b"), ".") == "a.b"
        assert canonical_key(("a.b",), ".") == "a\\.b"

    def test_memoised(self):
        assert canonical_key(("x", "y")) is canonical_key(("x", "y"))


class TestTypedPath:
    def test_segments_and_tag(self):
        ideas: TypedPath[dict] = TypedPath(["ideas"], resource_type="idea")
        idea = ideas.child("idea-1")

        assert idea.segments == ("ideas", "idea-1")
        assert idea.resource_type == "idea"
        assert len(idea) == 2
        assert list(idea) == ["ideas", "idea-1"]

    def test_parent(self):
        path = TypedPath(["a", "b"])
        assert path.parent == TypedPath(["a"])
        assert path.parent.parent == TypedPath([])
        assert TypedPath([]).parent is None

    def test_equality_and_hash(self):
        assert TypedPath(["a"]) == TypedPath(("a",), resource_type="tag")
        assert TypedPath(["a"]) == ("a",)
        assert {TypedPath(["a"]): 1}[TypedPath(["a"])] == 1
        assert TypedPath(["a"]) != TypedPath(["b"])

    def test_validates_segments(self):
        with pytest.raises(TypeError):
            TypedPath("abc")
        with pytest.raises(TypeError):
            TypedPath(["a"]).child(3)
