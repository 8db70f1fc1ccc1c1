"""
Tests for the path tree.
"""

from pathbus.node_store import MISSING, ActiveProvider, Node, NodeTree
from pathbus.provider import ActivationContext


class TestNodeTree:
    def test_root(self):
        tree = NodeTree()
        node, chain = tree.get_node(())
        assert node is tree.root
        assert chain == [tree.root]
        assert tree.root.path == ()

    def test_lookup_does_not_create(self):
        tree = NodeTree()
        assert tree.get_node(("a", "b")) == (None, [])
        assert tree.node_count() == 1

    def test_create_chain(self):
        tree = NodeTree()
        node, chain = tree.get_node(("a", "b"), create_if_missing=True)

        assert [n.path for n in chain] == [(), ("a",), ("a", "b")]
        assert node.segment == "b"
        assert node.parent is chain[1]
        assert tree.get_node(("a", "b"))[0] is node
        assert tree.node_count() == 3

    def test_iter_subtree_depth_first(self):
        tree = NodeTree()
        for path in [("a", "x"), ("a", "y"), ("b",)]:
            tree.get_node(path, create_if_missing=True)

        paths = [n.path for n in tree.iter_subtree(tree.root)]
        assert paths == [(), ("a",), ("a", "x"), ("a", "y"), ("b",)]

    def test_prune_stops_at_non_empty_node(self):
        tree = NodeTree()
        _, chain = tree.get_node(("a", "b", "c"), create_if_missing=True)
        chain[1].providers.append(object())

        assert tree.prune(chain) == 2
        assert tree.get_node(("a",))[0] is chain[1]
        assert tree.get_node(("a", "b"))[0] is None

    def test_prune_keeps_root_and_valued_nodes(self):
        tree = NodeTree()
        _, chain = tree.get_node(("a",), create_if_missing=True)
        chain[1].value = 0

        assert tree.prune(chain) == 0
        chain[1].value = MISSING
        assert tree.prune(chain) == 1
        assert tree.node_count() == 1

    def test_buffers_use_tree_retention(self):
        tree = NodeTree(max_retained=7)
        node, _ = tree.get_node(("a",), create_if_missing=True)
        assert node.buffer.max_retained == 7


class TestNode:
    def test_empty_node(self):
        node = Node("a", ("a",), None, 10)
        assert node.is_empty()
        assert not node.has_value
        assert not MISSING

    def test_falsy_values_count_as_values(self):
        node = Node("a", ("a",), None, 10)
        node.value = None
        assert node.has_value
        assert not node.is_empty()

    def test_records_match_provider_by_identity(self):
        node = Node("a", ("a",), None, 10)
        provider, other = object(), object()
        record = ActiveProvider(provider, 1, ActivationContext(("a", "x"), None, "a/x"))
        node.add_record("a/x", record)

        assert node.find_record("a/x", provider) is record
        assert node.find_record("a/x", other) is None
        assert node.records_for(provider) == [("a/x", record)]
        assert not node.is_empty()

        node.remove_record("a/x", record)
        assert node.active_providers == {}
        assert node.is_empty()
