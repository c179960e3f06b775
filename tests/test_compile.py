"""Tests for lowering graphs into compiled units."""

import pytest

from patchgraph import Graph, Node, Runtime, SignatureMismatch, UnsupportedBody, compile_graph, eval_order
from patchgraph._compile import cycle_roots, flatten, required_nodes


def _diamond() -> Graph:
    """Build ``0, 1 -> 2 -> 3`` plus entrypoint ``4`` and ``2`` feeding ``5``."""
    graph = Graph()
    a = graph.add_node(Node.expr("1"))
    b = graph.add_node(Node.expr("2"))
    c = graph.add_node(Node.expr("$x + $y"))
    d = graph.add_node(Node.expr("$v * 10"))
    entry = graph.add_node(Node.entry(), label="tick")
    e = graph.add_node(Node.expr("$t + $v"))
    graph.add_edge(a, 0, c, 0)
    graph.add_edge(b, 0, c, 1)
    graph.add_edge(c, 0, d, 0)
    graph.add_edge(entry, 0, e, 0)
    graph.add_edge(c, 0, e, 1)
    graph.expose_output("result", d, 0)
    return graph


def _nested() -> Graph:
    inner = Graph()
    double = inner.add_node(Node.expr("$x * 2"))
    inc = inner.add_node(Node.expr("$x + 1"))
    inner.add_edge(double, 0, inc, 0)
    inner.expose_input("x", double, 0)
    inner.expose_output("y", inc, 0)

    outer = Graph()
    entry = outer.add_node(Node.entry())
    sub = outer.add_node(Node.graph(inner))
    sink = outer.add_node(Node.expr("$y - 1"))
    outer.add_edge(entry, 0, sub, 0)
    outer.add_edge(sub, 0, sink, 0)
    return outer


class TestFlatten:
    def test_nested_nodes_get_paths(self) -> None:
        flat = flatten(_nested())
        assert list(flat.nodes) == [(0,), (1, 0), (1, 1), (2,)]

    def test_edges_rewired_through_exposed_ports(self) -> None:
        flat = flatten(_nested())
        assert flat.incoming((1, 0)) == {0: ((0,), 0)}
        assert flat.incoming((2,)) == {0: ((1, 1), 0)}
        assert flat.deps.ancestors((2,)) == frozenset({(0,), (1, 0), (1, 1)})

    def test_stale_nested_node(self) -> None:
        inner = Graph()
        node_id = inner.add_node(Node.expr("$a + $b"))
        inner.expose_input("a", node_id, 0)
        outer = Graph()
        outer.add_node(Node.graph(inner))
        inner.expose_input("b", node_id, 1)

        with pytest.raises(SignatureMismatch, match="replace the node"):
            compile_graph(outer)


class TestSchedule:
    def test_pull_order(self) -> None:
        flat = flatten(_diamond())
        assert eval_order(flat, pull=[(3,)]) == [(0,), (1,), (2,), (3,)]

    def test_push_order_includes_side_inputs(self) -> None:
        flat = flatten(_diamond())
        assert eval_order(flat, push=[(4,)]) == [(0,), (1,), (2,), (4,), (5,)]
        assert (3,) not in required_nodes(flat, push=[(4,)])

    def test_merged_order_is_single_pass(self) -> None:
        flat = flatten(_diamond())
        assert eval_order(flat, push=[(4,)], pull=[(3,)]) == [(0,), (1,), (2,), (3,), (4,), (5,)]
        assert required_nodes(flat, push=[(4,)], pull=[(2,)]) == frozenset({(0,), (1,), (2,), (4,), (5,)})

    def test_roots(self) -> None:
        flat = flatten(_diamond())
        assert cycle_roots(flat, push=[(4,)]) == frozenset({(0,), (1,), (4,)})
        assert cycle_roots(flat, pull=[(3,)]) == frozenset({(0,), (1,)})

    def test_unknown_path(self) -> None:
        with pytest.raises(KeyError):
            eval_order(flatten(_diamond()), pull=[(9,)])

    def test_push_includes_fed_delay(self) -> None:
        graph = Graph()
        entry = graph.add_node(Node.entry())
        acc = graph.add_node(Node.expr("$x + $prev"))
        delay = graph.add_node(Node.delay(0))
        graph.add_edge(entry, 0, acc, 0)
        graph.add_edge(acc, 0, delay, 0)
        graph.add_edge(delay, 0, acc, 1)

        assert eval_order(flatten(graph), push=[(entry,)]) == [(entry,), (delay,), (acc,)]


class TestEmit:
    def test_deterministic(self) -> None:
        graph = _diamond()
        first = compile_graph(graph)
        second = compile_graph(graph)
        assert first.source == second.source
        assert first.fingerprint == second.fingerprint

    def test_symbols_named_after_paths(self) -> None:
        unit = compile_graph(_nested())
        assert unit.entrypoints == {(0,): "push_0"}
        assert unit.pulls == {(2,): "pull_2"}
        assert unit.steps[(1, 1)] == "step_1_1"
        assert "def node_fn_1_0(in_x):" in unit.source
        assert "def push_0(cx):" in unit.source

    def test_exposed_outputs_get_pull_functions(self) -> None:
        unit = compile_graph(_diamond())
        assert (3,) in unit.pulls
        assert unit.outputs == {"result": ((3,), 0)}

    def test_fn_body_imports_module(self) -> None:
        graph = Graph()
        graph.add_node(Node.fn("operator:add", ["a", "b"]))
        unit = compile_graph(graph)
        assert "import operator" in unit.source
        assert "return operator.add(in_a, in_b)" in unit.source

    def test_stateful_initializer(self) -> None:
        graph = Graph()
        graph.add_node(Node.expr("(state + 1, state + 1)", inputs=[], state={"n": 0}))
        graph.add_node(Node.expr("(state, state)", inputs=[], state_ref="builtins:list"))
        unit = compile_graph(graph)
        assert "return {'n': 0}" in unit.source
        assert "return builtins.list()" in unit.source
        assert unit.stateful_paths == frozenset({(0,), (1,)})

    def test_state_only_result_unpacked(self) -> None:
        graph = Graph()
        entry = graph.add_node(Node.entry())
        graph.add_edge(entry, 0, graph.add_node(Node.expr("(state + $x,)", outputs=[], state=0)), 0)
        unit = compile_graph(graph)
        assert "(state,) = node_fn_1(in_x, state)" in unit.source
        assert "cx.fire((1,), ())" in unit.source

    def test_function_value_nests_body(self) -> None:
        graph = Graph()
        graph.add_node(Node.function(Node.expr("$a * $b")))
        unit = compile_graph(graph)
        assert "    def function_0(in_a, in_b):\n        return in_a * in_b\n    return function_0" in unit.source

    def test_non_literal_initial_state(self) -> None:
        graph = Graph()
        graph.add_node(Node.expr("(state, state)", inputs=[], state=object()))
        with pytest.raises(UnsupportedBody, match="literal form"):
            compile_graph(graph)


class TestValidateBodies:
    @pytest.mark.parametrize(
        ("src", "reason"),
        [
            ("open($path)", "name 'open'"),
            ("$x.__class__", "dunder"),
            ("(y := $x)", "assignment expressions"),
            ("$x +", "invalid expression"),
            ("state + $x", "name 'state'"),
        ],
    )
    def test_rejected(self, src: str, reason: str) -> None:
        graph = Graph()
        graph.add_node(Node.expr(src))
        with pytest.raises(UnsupportedBody, match=reason) as exc_info:
            compile_graph(graph)
        assert exc_info.value.path == (0,)

    def test_lambdas_and_comprehensions(self) -> None:
        graph = Graph()
        graph.add_node(Node.expr("sorted([v * 2 for v in $xs], key=lambda k: -k)"))
        compile_graph(graph)

    def test_registered_primitive(self) -> None:
        graph = Graph()
        graph.add_node(Node.expr("clamp($x, 0, 1)"))
        with pytest.raises(UnsupportedBody):
            compile_graph(graph)

        runtime = Runtime()
        runtime.register("clamp", lambda x, lo, hi: max(lo, min(hi, x)))
        assert "clamp(in_x, 0, 1)" in compile_graph(graph, runtime).source

    def test_local_function_rejected(self) -> None:
        def local(a: int) -> int:
            return a

        graph = Graph()
        graph.add_node(Node.fn(local, ["a"]))
        with pytest.raises(UnsupportedBody):
            compile_graph(graph)
