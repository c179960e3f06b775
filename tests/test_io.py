"""Tests for persisted graph and state documents in patchgraph._io."""

import json
from pathlib import Path

import pytest

import patchgraph as pg
from patchgraph._io import (
    EdgeRecord,
    ExposedPortRecord,
    InitializerRecord,
    StateDocument,
    parse_path,
    records_to_state,
    state_to_records,
)

# --- Test Fixtures ---


def build_graph() -> pg.Graph:
    """Entrypoint -> counter -> add(counter, ten) -> delay, plus a nested graph."""
    inner = pg.Graph()
    double = inner.add_node(pg.Node.expr("$x * 2"))
    inner.expose_input("x", double, 0)
    inner.expose_output("y", double, 0)

    graph = pg.Graph()
    tick = graph.add_node(pg.Node.entry(), label="tick")
    counter = graph.add_node(pg.Node.expr("(state + $bang, state + $bang)", state=0), label="counter")
    ten = graph.add_node(pg.Node.expr("10"))
    add = graph.add_node(pg.Node.fn("operator:add", ["a", "b"], ["sum"]))
    delay = graph.add_node(pg.Node.delay([0]))
    sub = graph.add_node(pg.Node.graph(inner))
    graph.add_edge(tick, 0, counter, 0)
    graph.add_edge(counter, 0, add, 0)
    graph.add_edge(ten, 0, add, 1)
    graph.add_edge(add, 0, delay, 0)
    graph.add_edge(add, 0, sub, 0)
    graph.expose_output("total", add, 0)
    graph.expose_output("doubled", sub, 0)
    return graph


def with_double(expr: str) -> pg.NodeRegistry:
    registry = pg.default_registry()
    registry.register("double", lambda: pg.Node.expr(expr))
    return registry


# --- Document conversion ---


class TestGraphToDocument:
    def test_nodes(self) -> None:
        doc = pg.graph_to_document(build_graph())
        counter = doc.nodes[1]
        assert counter.tag == "expr"
        assert counter.label == "counter"
        assert counter.inputs == ["bang"]
        assert counter.outputs == ["out"]
        assert counter.initializer == InitializerRecord(literal="0")
        assert "branches" not in counter.params

    def test_edges_and_ports_by_name(self) -> None:
        doc = pg.graph_to_document(build_graph())
        assert EdgeRecord(source=1, output="out", target=3, input="a") in doc.edges
        assert EdgeRecord(source=3, output="sum", target=4, input="in") in doc.edges
        assert doc.exposed_outputs == [
            ExposedPortRecord(name="total", node=3, port="sum"),
            ExposedPortRecord(name="doubled", node=5, port="y"),
        ]

    def test_nested_graph_stored_inline(self) -> None:
        doc = pg.graph_to_document(build_graph())
        nested = doc.nodes[5]
        assert nested.tag == "graph"
        assert nested.params["document"]["nodes"][0]["params"]["src"] == "$x * 2"

    def test_state_included_when_given(self) -> None:
        graph = build_graph()
        store = pg.StateStore(graph.graph_id, {(1,): 3, (4,): [13]})
        doc = pg.graph_to_document(graph, store)
        assert doc.state == {"1": "3", "4": "[13]"}


class TestStateRecords:
    def test_parse_path(self) -> None:
        assert parse_path("3") == (3,)
        assert parse_path("3/1") == (3, 1)
        with pytest.raises(pg.DocumentError):
            parse_path("a/b")

    def test_round_trip(self) -> None:
        store = pg.StateStore("g", {(1,): {"n": 1}, (2, 0): "x"})
        restored = records_to_state("g", state_to_records(store))
        assert restored.snapshot() == {(1,): {"n": 1}, (2, 0): "x"}

    def test_tuples_come_back_as_lists(self) -> None:
        restored = records_to_state("g", state_to_records(pg.StateStore("g", {(0,): (1, 2)})))
        assert restored.get(0) == [1, 2]

    def test_unserializable_state(self) -> None:
        with pytest.raises(pg.DocumentError, match="not JSON serializable"):
            state_to_records(pg.StateStore("g", {(0,): object()}))

    @pytest.mark.parametrize("state", [{0: "a"}, {"outer": {(1, 2): "b"}}, [{None: 1}]])
    def test_non_string_keys_rejected(self, state: object) -> None:
        with pytest.raises(pg.DocumentError, match="is not a string"):
            state_to_records(pg.StateStore("g", {(0,): state}))

    def test_non_string_keys_in_initializer_rejected(self) -> None:
        graph = pg.Graph()
        graph.add_node(pg.Node.expr("(state, state)", inputs=[], state={1: "one"}))
        with pytest.raises(pg.DocumentError, match="is not a string"):
            pg.graph_to_document(graph)


# --- Files ---


class TestSaveLoad:
    @pytest.mark.parametrize("suffix", [".toml", ".json"])
    def test_round_trip(self, tmp_path: Path, suffix: str) -> None:
        graph = build_graph()
        store = pg.StateStore(graph.graph_id, {(1,): 4, (4,): [14]})
        path = tmp_path / f"graph{suffix}"

        pg.save_graph(path, graph, store)
        loaded, loaded_store = pg.load_graph(path)

        assert loaded.graph_id == graph.graph_id
        assert loaded.topological_order() == graph.topological_order()
        assert loaded.edges == graph.edges
        assert loaded.labels == graph.labels
        assert loaded.exposed_outputs == graph.exposed_outputs
        assert loaded.node(4).initializer == pg.Initializer(value=[0])
        assert loaded_store.snapshot() == {(1,): 4, (4,): [14]}
        assert pg.compile_graph(loaded).source == pg.compile_graph(graph).source

    def test_state_file(self, tmp_path: Path) -> None:
        path = tmp_path / "state.toml"
        pg.save_state(path, pg.StateStore("g", {(1,): 2, (3, 0): "x"}))

        store = pg.load_state(path)

        assert store.graph_id == "g"
        assert store.snapshot() == {(1,): 2, (3, 0): "x"}

    def test_string_paths(self, tmp_path: Path) -> None:
        graph = build_graph()
        graph_path = str(tmp_path / "graph.toml")
        state_path = str(tmp_path / "state.json")

        pg.save_graph(graph_path, graph)
        pg.save_state(state_path, pg.StateStore(graph.graph_id, {(1,): 5}))

        assert pg.load_graph(graph_path)[0].graph_id == graph.graph_id
        assert pg.load_state(state_path).get(1) == 5

    def test_unsupported_suffix(self, tmp_path: Path) -> None:
        with pytest.raises(pg.DocumentError, match="Unsupported file type"):
            pg.save_graph(tmp_path / "graph.yaml", build_graph())
        with pytest.raises(pg.DocumentError, match="Unsupported file type"):
            pg.load_state(tmp_path / "state.txt")

    def test_invalid_toml(self, tmp_path: Path) -> None:
        path = tmp_path / "graph.toml"
        path.write_text("nodes = [[[")
        with pytest.raises(pg.DocumentError, match="Invalid TOML"):
            pg.load_graph(path)

    def test_unknown_field(self, tmp_path: Path) -> None:
        path = tmp_path / "graph.json"
        path.write_text(json.dumps({"graph_id": "g", "bogus": 1}))
        with pytest.raises(pg.DocumentError, match="Invalid document"):
            pg.load_graph(path)

    def test_format_version(self, tmp_path: Path) -> None:
        path = tmp_path / "graph.json"
        path.write_text(json.dumps({"graph_id": "g", "format_version": 99}))
        with pytest.raises(pg.DocumentError, match="format version"):
            pg.load_graph(path)

    def test_state_format_version(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        path.write_text(StateDocument(graph_id="g", format_version=2).model_dump_json())
        with pytest.raises(pg.DocumentError, match="format version"):
            pg.load_state(path)


class TestDocumentValidation:
    def test_unknown_node_kind(self, tmp_path: Path) -> None:
        graph = pg.Graph()
        graph.add_node(with_double("$x * 2").create("double"))
        path = tmp_path / "graph.json"
        pg.save_graph(path, graph)

        with pytest.raises(pg.UnknownNodeKind, match="double"):
            pg.load_graph(path)
        loaded, _ = pg.load_graph(path, with_double("$x * 2"))
        assert loaded.node(0).tag == "double"

    def test_port_signature_drift(self, tmp_path: Path) -> None:
        graph = pg.Graph()
        graph.add_node(with_double("$x * 2").create("double"))
        path = tmp_path / "graph.toml"
        pg.save_graph(path, graph)

        with pytest.raises(pg.PortSignatureDrift) as exc_info:
            pg.load_graph(path, with_double("$y * 2"))

        assert exc_info.value.node_id == 0
        assert exc_info.value.tag == "double"

    def test_unknown_port_name(self) -> None:
        doc = pg.graph_to_document(build_graph())
        doc.edges[0] = EdgeRecord(source=0, output="nope", target=1, input="bang")
        with pytest.raises(pg.DocumentError, match="Inconsistent"):
            pg.document_to_graph(doc)

    def test_initializer_on_stateless_kind(self) -> None:
        doc = pg.graph_to_document(build_graph())
        doc.nodes[2].initializer = InitializerRecord(literal="1")
        with pytest.raises(pg.DocumentError, match="not stateful"):
            pg.document_to_graph(doc)

    def test_nested_graph_uses_given_registry(self) -> None:
        inner = pg.Graph()
        node_id = inner.add_node(with_double("$x * 2").create("double"))
        inner.expose_input("x", node_id, 0)
        graph = pg.Graph()
        graph.add_node(pg.Node.graph(inner))
        doc = pg.graph_to_document(graph)

        with pytest.raises(pg.UnknownNodeKind):
            pg.document_to_graph(doc)
        loaded, _ = pg.document_to_graph(doc, with_double("$x * 2"))
        assert loaded.node(0).port_names().inputs == ("x",)
