"""End-to-end behaviour of editing, compiling and evaluating graphs."""

from pathlib import Path

import pytest

import patchgraph as pg


def _coordinator(graph: pg.Graph, store: pg.StateStore | None = None) -> pg.EvaluationCoordinator:
    coordinator = pg.EvaluationCoordinator(store=store)
    coordinator.load(pg.compile_graph(graph))
    return coordinator


class TestScenarios:
    def test_add(self) -> None:
        """An entrypoint feeding a=2, b=3 into Add gives c=5 when c is pulled."""
        graph = pg.Graph()
        entry = graph.add_node(pg.Node.entry(["a", "b"]), label="entry")
        add = graph.add_node(pg.Node.fn("operator:add", ["a", "b"], ["c"]), label="add")
        graph.add_edge(entry, 0, add, 0)
        graph.add_edge(entry, 1, add, 1)
        graph.expose_output("c", add, 0)

        result = _coordinator(graph).pull("c", inputs={"entry": (2, 3)})

        assert result.output("c") == 5

    def test_counter(self) -> None:
        """Three pushes into a counter starting at 0 give 1, 2 and 3."""
        graph = pg.Graph()
        bang = graph.add_node(pg.Node.entry(), label="bang")
        counter = graph.add_node(pg.Node.expr("(state + 1, state + 1)", inputs=["bang"], state=0))
        graph.add_edge(bang, 0, counter, 0)
        coordinator = _coordinator(graph)

        assert [coordinator.push("bang").value(counter) for _ in range(3)] == [1, 2, 3]

    def test_gate(self) -> None:
        """A false condition fires only the gate's else output."""
        graph = pg.Graph()
        entry = graph.add_node(pg.Node.entry(["cond", "x"]))
        gate = graph.add_node(
            pg.Node.expr(
                "(0 if $cond else 1, $x, $x)",
                outputs=["then", "else"],
                branches=[[0], [1]],
            ),
        )
        then_node = graph.add_node(pg.Node.expr("$v * 10"))
        else_node = graph.add_node(pg.Node.expr("$v * 100"))
        graph.add_edge(entry, 0, gate, 0)
        graph.add_edge(entry, 1, gate, 1)
        graph.add_edge(gate, 0, then_node, 0)
        graph.add_edge(gate, 1, else_node, 0)
        coordinator = _coordinator(graph)

        result = coordinator.push(entry, False, 5)

        assert result.ran(else_node)
        assert not result.ran(then_node)
        assert result.value(else_node) == 500
        assert ((gate,), 0) not in result.fired

        result = coordinator.push(entry, True, 5)
        assert result.ran(then_node)
        assert not result.ran(else_node)

    def test_removed_node_state_reinitialized(self) -> None:
        """Re-adding a node under a removed id starts from the initializer again."""
        graph = pg.Graph()
        bang = graph.add_node(pg.Node.entry(), label="bang")
        counter_node = pg.Node.expr("(state + 1, state + 1)", inputs=["bang"], state=0)
        counter = graph.add_node(counter_node)
        graph.add_edge(bang, 0, counter, 0)
        coordinator = _coordinator(graph)
        store = coordinator.store
        assert store is not None
        coordinator.push("bang")
        coordinator.push("bang")
        assert store.get(counter) == 2

        graph.remove_node(counter)
        assert counter not in store

        graph.add_node(counter_node, node_id=counter)
        graph.add_edge(bang, 0, counter, 0)
        coordinator.reload(pg.compile_graph(graph))

        assert coordinator.push("bang").value(counter) == 1


class TestProperties:
    def test_compile_is_deterministic(self) -> None:
        graph = pg.Graph()
        entry = graph.add_node(pg.Node.entry())
        nodes = [graph.add_node(pg.Node.expr(f"$x + {i}")) for i in range(5)]
        for node_id in nodes:
            graph.add_edge(entry, 0, node_id, 0)
        total = graph.add_node(pg.Node.fn("builtins:max", ["a", "b"]))
        graph.add_edge(nodes[3], 0, total, 0)
        graph.add_edge(nodes[1], 0, total, 1)

        assert pg.compile_graph(graph).source == pg.compile_graph(graph).source

    def test_fan_in_rejected(self) -> None:
        graph = pg.Graph()
        a = graph.add_node(pg.Node.expr("1"))
        b = graph.add_node(pg.Node.expr("2"))
        c = graph.add_node(pg.Node.expr("$x"))
        graph.add_edge(a, 0, c, 0)

        with pytest.raises(pg.PortAlreadyConnected):
            graph.add_edge(b, 0, c, 0)
        assert graph.edges == [pg.Edge(a, 0, c, 0)]

    def test_push_pull_consistency(self) -> None:
        graph = pg.Graph()
        entry = graph.add_node(pg.Node.entry(), label="entry")
        scaled = graph.add_node(pg.Node.expr("$x * 2 + 1"))
        graph.add_edge(entry, 0, scaled, 0)
        graph.expose_output("y", scaled, 0)

        pushed = _coordinator(graph).push("entry", 4).output("y")
        pulled = _coordinator(graph).pull("y", inputs={"entry": [4]}).output("y")
        merged = _coordinator(graph).evaluate(pushes={"entry": [4]}, pulls=["y"]).output("y")

        assert pushed == pulled == merged == 9

    def test_shared_upstream_runs_once(self) -> None:
        graph = pg.Graph()
        calls = graph.add_node(pg.Node.expr("(state + 1, state + 1)", inputs=[], state=0))
        left = graph.add_node(pg.Node.expr("$v * 2"))
        right = graph.add_node(pg.Node.expr("$v * 3"))
        graph.add_edge(calls, 0, left, 0)
        graph.add_edge(calls, 0, right, 0)
        coordinator = _coordinator(graph)

        result = coordinator.evaluate(pulls=[left, right])

        assert result.evaluated.count((calls,)) == 1
        assert (result.value(left), result.value(right)) == (2, 3)
        assert coordinator.store is not None
        assert coordinator.store.get(calls) == 1

    @pytest.mark.parametrize("suffix", [".toml", ".json"])
    def test_round_trip(self, tmp_path: Path, suffix: str) -> None:
        graph = pg.Graph()
        entry = graph.add_node(pg.Node.entry(), label="tick")
        total = graph.add_node(pg.Node.expr("($x + state, $x + state)", state=0))
        history = graph.add_node(pg.Node.delay(0))
        diff = graph.add_node(pg.Node.fn("operator:sub", ["a", "b"]))
        graph.add_edge(entry, 0, total, 0)
        graph.add_edge(total, 0, history, 0)
        graph.add_edge(total, 0, diff, 0)
        graph.add_edge(history, 0, diff, 1)
        graph.expose_output("diff", diff, 0)
        coordinator = _coordinator(graph)
        for value in (3, 4):
            coordinator.push("tick", value)
        assert coordinator.store is not None

        path = tmp_path / f"patch{suffix}"
        pg.save_graph(path, graph, coordinator.store)
        loaded_graph, loaded_store = pg.load_graph(path)
        restored = _coordinator(loaded_graph, loaded_store)

        assert loaded_graph.topological_order() == graph.topological_order()
        for value in (5, -2):
            assert restored.push("tick", value).outputs == coordinator.push("tick", value).outputs
