"""Tests for the node model."""

from dataclasses import FrozenInstanceError

import pytest

from patchgraph import Graph, Initializer, Node, NodeKind, Port, PortSignature, SignatureMismatch, UnsupportedBody
from patchgraph._node import ExprBody, expr_vars


class TestPort:
    def test_parse_plain(self) -> None:
        assert Port.parse("x") == Port("x")
        assert str(Port("x")) == "x"

    def test_parse_with_hint(self) -> None:
        port = Port.parse("x: float")
        assert port == Port("x", "float")
        assert str(port) == "x:float"


class TestExprVars:
    def test_order_of_first_appearance(self) -> None:
        assert expr_vars("$b * $a + $b") == ("b", "a")

    def test_no_vars(self) -> None:
        assert expr_vars("1 + 2") == ()


class TestExprNode:
    def test_inputs_discovered_from_placeholders(self) -> None:
        node = Node.expr("$a + $b")
        assert node.port_names() == PortSignature(("a", "b"), ("out",))
        assert node.kind is NodeKind.STATELESS
        assert node.tag == "expr"

    def test_explicit_inputs_may_be_unused(self) -> None:
        node = Node.expr("(state + 1, state + 1)", inputs=["bang"], state=0)
        assert node.stateful
        assert node.port_names().inputs == ("bang",)
        assert node.initializer == Initializer(value=0)

    def test_signature_includes_type_hints(self) -> None:
        node = Node.expr("$x * 2", inputs=["x:int"], outputs=["y:int"])
        assert node.signature == PortSignature(("x:int",), ("y:int",))
        assert node.port_names() == PortSignature(("x",), ("y",))

    def test_undeclared_placeholder(self) -> None:
        with pytest.raises(SignatureMismatch, match="undeclared"):
            Node.expr("$a + $b", inputs=["a"])

    def test_duplicate_port_names(self) -> None:
        with pytest.raises(SignatureMismatch, match="duplicate"):
            Node.expr("$a", inputs=["a", "a"])

    def test_invalid_port_name(self) -> None:
        with pytest.raises(SignatureMismatch, match="identifier"):
            Node.expr("1", outputs=["not valid"])

    def test_branch_index_out_of_range(self) -> None:
        with pytest.raises(SignatureMismatch, match="out of range"):
            Node.expr("(0, $x)", branches=[[1]])

    def test_branching(self) -> None:
        node = Node.expr("(0 if $c else 1, $x, $x)", outputs=["then", "else"], branches=[[0], [1]])
        assert node.branching
        assert node.branches == ((0,), (1,))
        assert node.params["branches"] == [[0], [1]]

    def test_params_rebuild_node(self) -> None:
        node = Node.expr("$x + 1", state=None)
        assert node.params == {
            "src": "$x + 1",
            "inputs": ["x"],
            "outputs": ["out"],
            "entrypoint": False,
            "branches": None,
            "stateful": True,
        }


class TestFnNode:
    def test_from_reference(self) -> None:
        node = Node.fn("operator:add", ["a", "b"])
        assert node.params["ref"] == "operator:add"
        assert node.tag == "fn"

    def test_arity_checked(self) -> None:
        with pytest.raises(SignatureMismatch, match="positional arguments"):
            Node.fn("operator:add", ["a"])

    def test_state_counts_as_argument(self) -> None:
        with pytest.raises(SignatureMismatch, match="3 positional arguments"):
            Node.fn("operator:add", ["a", "b"], state=0)

    def test_malformed_reference(self) -> None:
        with pytest.raises(UnsupportedBody, match="module.path:attribute"):
            Node.fn("operator", ["a"])

    def test_unimportable_reference(self) -> None:
        with pytest.raises(UnsupportedBody, match="cannot import"):
            Node.fn("no_such_module_here:f", ["a"])

    def test_not_callable(self) -> None:
        with pytest.raises(UnsupportedBody, match="not callable"):
            Node.fn("math:pi", [])


class TestSpecialNodes:
    def test_delay(self) -> None:
        node = Node.delay(5)
        assert node.is_delay
        assert node.stateful
        assert node.port_names() == PortSignature(("in",), ("out",))
        assert node.initializer == Initializer(value=5)

    def test_delay_defaults_to_none(self) -> None:
        assert Node.delay().initializer == Initializer(value=None)

    def test_entry(self) -> None:
        node = Node.entry(["a", "b"])
        assert node.entrypoint
        assert node.tag == "entry"
        assert node.params == {"outputs": ["a", "b"]}
        assert node.port_names() == PortSignature(("a", "b"), ("a", "b"))
        assert node.body == ExprBody("($a, $b)")

    def test_graph(self) -> None:
        inner = Graph()
        node_id = inner.add_node(Node.expr("$x * 2"))
        inner.expose_input("x", node_id, 0)
        inner.expose_output("y", node_id, 0)

        node = Node.graph(inner)

        assert node.kind is NodeKind.GRAPH
        assert node.port_names() == PortSignature(("x",), ("y",))

    def test_function(self) -> None:
        node = Node.function(Node.expr("$a * $b"))
        assert node.kind is NodeKind.STATELESS
        assert node.tag == "function"
        assert node.port_names() == PortSignature(("bang",), ("fn",))
        assert node.params["node"]["tag"] == "expr"
        assert "branches" not in node.params["node"]["params"]

    @pytest.mark.parametrize(
        "inner",
        [
            Node.expr("(state, state)", inputs=[], state=0),
            Node.expr("($x, $x)", branches=[[0]]),
            Node.expr("($x, $x)", outputs=["a", "b"]),
            Node.entry(),
            Node.delay(),
        ],
        ids=["stateful", "branching", "two-outputs", "entry", "delay"],
    )
    def test_function_rejects(self, inner: Node) -> None:
        with pytest.raises(SignatureMismatch, match="used as functions"):
            Node.function(inner)

    def test_apply(self) -> None:
        node = Node.apply()
        assert node.tag == "apply"
        assert node.params == {}
        assert node.port_names() == PortSignature(("fn", "args"), ("out",))


class TestNodeInvariants:
    def test_stateful_needs_initializer(self) -> None:
        with pytest.raises(SignatureMismatch, match="initializer"):
            Node(kind=NodeKind.STATEFUL, inputs=(), outputs=(Port("out"),), body=ExprBody("(state, state)"))

    def test_stateless_rejects_initializer(self) -> None:
        with pytest.raises(SignatureMismatch, match="initializer"):
            Node(
                kind=NodeKind.STATELESS,
                inputs=(),
                outputs=(Port("out"),),
                body=ExprBody("1"),
                initializer=Initializer(value=0),
            )

    def test_with_initializer_requires_state(self) -> None:
        with pytest.raises(SignatureMismatch):
            Node.expr("1").with_initializer(Initializer(value=0))

    def test_with_initializer(self) -> None:
        node = Node.expr("(state, state)", inputs=[], state=0).with_initializer(Initializer(ref="builtins:list"))
        assert node.initializer == Initializer(ref="builtins:list")

    def test_frozen(self) -> None:
        node = Node.expr("1")
        with pytest.raises(FrozenInstanceError):
            node.entrypoint = True  # type: ignore[misc]

    def test_port_index_lookup(self) -> None:
        node = Node.expr("$a + $b", outputs=["sum"])
        assert node.input_index("b") == 1
        assert node.output_index("sum") == 0
        with pytest.raises(KeyError):
            node.input_index("c")


class TestInitializer:
    def test_describe(self) -> None:
        assert Initializer(ref="builtins:dict").describe() == "builtins:dict"
        assert Initializer(value=0).describe() == "literal:0"
