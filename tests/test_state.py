"""Tests for the state store."""

import pytest

from patchgraph import Graph, Node, StateStore


class TestSlots:
    def test_get_or_init_runs_initializer_once(self) -> None:
        store = StateStore("g")
        calls: list[int] = []

        def init() -> int:
            calls.append(1)
            return 0

        assert store.get_or_init(3, init) == 0
        store.set(3, 5)
        assert store.get_or_init((3,), init) == 5
        assert calls == [1]

    def test_get_missing(self) -> None:
        with pytest.raises(KeyError, match="No state slot"):
            StateStore("g").get(1)

    def test_int_and_path_are_equivalent(self) -> None:
        store = StateStore("g")
        store.set(2, "x")
        assert 2 in store
        assert (2,) in store
        assert store.get((2,)) == "x"
        assert "2" not in store

    def test_drop_includes_nested_slots(self) -> None:
        store = StateStore("g", {(1,): 1, (1, 0): 2, (1, 0, 4): 3, (2,): 4, (10,): 5})
        assert store.drop(1) == [(1,), (1, 0), (1, 0, 4)]
        assert store.paths() == [(2,), (10,)]

    def test_retain(self) -> None:
        store = StateStore("g", {(1,): 1, (2,): 2, (3, 1): 3})
        assert store.retain([2, (3, 1)]) == [(1,)]
        assert list(store) == [(2,), (3, 1)]
        assert len(store) == 2

    def test_snapshot_is_a_copy(self) -> None:
        store = StateStore("g", {(0,): [1]})
        snapshot = store.snapshot()
        store.get(0).append(2)
        assert snapshot == {(0,): [1]}

        store.restore(snapshot)
        assert store.get(0) == [1]
        snapshot[(0,)].append(3)
        assert store.get(0) == [1]


class TestAttach:
    def test_removed_node_loses_slot(self) -> None:
        graph = Graph()
        a = graph.add_node(Node.expr("(state, state)", inputs=[], state=0))
        b = graph.add_node(Node.expr("(state, state)", inputs=[], state=0))
        store = StateStore(graph.graph_id, {(a,): 7, (b,): 8})
        store.attach(graph)

        graph.remove_node(a)

        assert (a,) not in store
        assert store.get(b) == 8

    def test_nested_graph_slots(self) -> None:
        inner = Graph()
        counter = inner.add_node(Node.expr("(state, state)", inputs=[], state=0))
        other = inner.add_node(Node.expr("(state, state)", inputs=[], state=0))
        outer = Graph()
        sub = outer.add_node(Node.graph(inner))
        store = StateStore(outer.graph_id, {(sub, counter): 1, (sub, other): 2})
        store.attach(outer)

        inner.remove_node(counter)
        assert store.paths() == [(sub, other)]

        outer.remove_node(sub)
        assert len(store) == 0

    def test_nested_graph_added_later(self) -> None:
        outer = Graph()
        store = StateStore(outer.graph_id)
        store.attach(outer)
        inner = Graph()
        counter = inner.add_node(Node.expr("(state, state)", inputs=[], state=0))
        sub = outer.add_node(Node.graph(inner))
        store.set((sub, counter), 1)

        inner.remove_node(counter)

        assert len(store) == 0

    def test_detach(self) -> None:
        graph = Graph()
        a = graph.add_node(Node.expr("(state, state)", inputs=[], state=0))
        store = StateStore(graph.graph_id, {(a,): 1})
        detach = store.attach(graph)

        detach()
        graph.remove_node(a)

        assert store.get(a) == 1
