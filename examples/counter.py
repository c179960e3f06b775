"""Counter Example for patchgraph.

This example builds a small graph and evaluates it both ways:
- An entrypoint "tick" pushes values into a stateful accumulator
- A branching "gate" routes each value to the "small" or "large" side
- A nested graph computes a scaled copy that is exposed as an output
- The graph and its state are saved to TOML and loaded back

Run it with:
    python examples/counter.py
"""

from pathlib import Path

import patchgraph as pg

# -----------------------------------------------------------------------------
# Nested graph: scale by a constant
# -----------------------------------------------------------------------------

scale = pg.Graph()
scaler = scale.add_node(pg.Node.expr("$x * 10"))
scale.expose_input("x", scaler, 0)
scale.expose_output("y", scaler, 0)

# -----------------------------------------------------------------------------
# Top-level graph
# -----------------------------------------------------------------------------

graph = pg.Graph()
tick = graph.add_node(pg.Node.entry(("value",)), label="tick")
total = graph.add_node(pg.Node.expr("($value + state, $value + state)", state=0), label="total")
gate = graph.add_node(
    pg.Node.expr("(0 if $x < 5 else 1, $x, $x)", outputs=("small", "large"), branches=[[0], [1]]),
    label="gate",
)
small = graph.add_node(pg.Node.fn("builtins:repr", ["x"]), label="small")
large = graph.add_node(pg.Node.expr("-$x"), label="large")
scaled = graph.add_node(pg.Node.graph(scale), label="scaled")

graph.add_edge(tick, 0, total, 0)
graph.add_edge(tick, 0, gate, 0)
graph.add_edge(gate, 0, small, 0)
graph.add_edge(gate, 1, large, 0)
graph.add_edge(total, 0, scaled, 0)
graph.expose_output("total", total, 0)
graph.expose_output("scaled", scaled, 0)


def main() -> None:
    """Push a few values, then persist and reload the graph."""
    coordinator = pg.EvaluationCoordinator()
    coordinator.load(pg.compile_graph(graph, coordinator.runtime))

    for value in (1, 7, 3):
        result = coordinator.push("tick", value)
        side = "small" if result.ran(small) else "large"
        print(f"push {value}: total={result.output('total')} scaled={result.output('scaled')} ({side})")

    path = Path("counter.toml")
    pg.save_graph(path, graph, coordinator.store)
    loaded, store = pg.load_graph(path)
    print(f"reloaded {len(loaded)} nodes, total state = {store.get(total)}")


if __name__ == "__main__":
    main()
