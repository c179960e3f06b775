import importlib
import json
import logging
import sys
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from patchgraph._compile import compile_graph, path_suffix
from patchgraph._errors import PatchGraphError
from patchgraph._eval_engine import CycleResult, EvaluationCoordinator
from patchgraph._graph import Graph
from patchgraph._io import load_graph, load_state, save_state
from patchgraph._registry import NodeRegistry, default_registry
from patchgraph._state import StateStore

from .config import ConfigError, PatchGraphConfig, get_config

app = typer.Typer()

logger = logging.getLogger(__name__)
# Console for stderr (info/errors)
err_console = Console(stderr=True)
# Console for stdout (results)
out_console = Console()


@app.callback()
def callback(
    ctx: typer.Context,
    *,
    verbose: bool = typer.Option(default=False, help="Enable verbose output"),
    plugin: Annotated[
        list[str] | None,
        typer.Option(help="Module registering extra node kinds ('module' or 'module:function'); repeatable"),
    ] = None,
) -> None:
    """Patchgraph CLI."""
    log_level = logging.DEBUG if verbose else logging.INFO

    # Configure rich logging handler to output to stderr
    logging.basicConfig(
        level=log_level,
        format="%(message)s",
        handlers=[
            RichHandler(
                console=err_console,
                show_time=False,
                show_path=verbose,
                rich_tracebacks=True,
            ),
        ],
    )
    ctx.obj = {"plugins": list(plugin or [])}


@contextmanager
def _reported_errors() -> Iterator[None]:
    """Turn library and configuration errors into a red message and exit code 1."""
    try:
        yield
    except (PatchGraphError, ConfigError) as e:
        err_console.print(f"[red]✗ {escape(type(e).__name__)}:[/red] {escape(str(e))}")
        raise typer.Exit(code=1) from e


def load_plugin(spec: str, registry: NodeRegistry) -> None:
    """Import a plugin and let it register node kinds.

    ``module:function`` calls ``function(registry)``; a bare module path calls
    the module's ``register(registry)``.
    """
    module_name, _, func_name = spec.partition(":")
    module = importlib.import_module(module_name)
    func = getattr(module, func_name or "register", None)
    if func is None:
        msg = f"Plugin '{spec}' has no function '{func_name or 'register'}'"
        raise ConfigError(msg)
    func(registry)
    logger.debug("Loaded plugin %s", spec)


def _registry(ctx: typer.Context, config: PatchGraphConfig) -> NodeRegistry:
    registry = default_registry()
    # Make plugin modules next to pyproject.toml importable
    if config.project_root is not None and str(config.project_root) not in sys.path:
        sys.path.insert(0, str(config.project_root))
    for spec in [*config.plugins, *(ctx.obj or {}).get("plugins", [])]:
        load_plugin(spec, registry)
    return registry


def _graph_path(graph: Path | None, config: PatchGraphConfig) -> Path:
    path = graph if graph is not None else config.graph
    if path is None:
        msg = "No graph given and no [tool.patchgraph].graph configured"
        raise ConfigError(msg)
    return path


def _load(ctx: typer.Context, graph: Path | None) -> tuple[Graph, StateStore, PatchGraphConfig]:
    config = get_config()
    path = _graph_path(graph, config)
    err_console.print(f"[cyan]Loading graph from:[/cyan] {path}")
    loaded_graph, store = load_graph(path, _registry(ctx, config))
    return loaded_graph, store, config


def _node_ref(text: str) -> int | str:
    """Interpret a command line node reference: an integer id or a label/output name."""
    return int(text) if text.isdigit() else text


def _parse_value(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        msg = f"Invalid JSON value: {text!r}"
        raise typer.BadParameter(msg) from e


def _parse_inputs(items: list[str]) -> dict[int | str, Any]:
    inputs: dict[int | str, Any] = {}
    for item in items:
        name, sep, value = item.partition("=")
        if not sep:
            msg = f"Expected NAME=VALUE, got {item!r}"
            raise typer.BadParameter(msg)
        inputs[_node_ref(name)] = _parse_value(value)
    return inputs


def _print_result(result: CycleResult) -> None:
    table = Table(show_header=True, header_style="bold cyan", box=None)
    table.add_column("Output", style="bold")
    table.add_column("Value")
    for name, value in sorted(result.outputs.items()):
        table.add_row(escape(name), escape(json.dumps(value, default=repr)))
    if result.outputs:
        out_console.print(Panel(table, title="[bold]Outputs[/bold]", border_style="cyan"))
    evaluated = ", ".join(path_suffix(path) for path in result.evaluated) or "(none)"
    err_console.print(f"[cyan]Evaluated:[/cyan] {evaluated}")


def _state_file(state: Path | None, config: PatchGraphConfig) -> Path | None:
    return state if state is not None else config.state


def _run_cycle(
    graph: Graph,
    store: StateStore,
    state_file: Path | None,
    run: Callable[[EvaluationCoordinator], CycleResult],
) -> CycleResult:
    if state_file is not None and state_file.exists():
        store = load_state(state_file)
        if store.graph_id != graph.graph_id:
            msg = f"State file {state_file} belongs to graph {store.graph_id}, not {graph.graph_id}"
            raise ConfigError(msg)
    coordinator = EvaluationCoordinator(store=store)
    coordinator.load(compile_graph(graph, coordinator.runtime))
    result = run(coordinator)
    if state_file is not None:
        save_state(state_file, store)
        err_console.print(f"[cyan]Saved state to:[/cyan] {state_file}")
    return result


GraphArgument = Annotated[
    Path | None,
    typer.Argument(help="Path to a graph document (.toml or .json); defaults to [tool.patchgraph].graph"),
]
StateOption = Annotated[
    Path | None,
    typer.Option("--state", help="State snapshot file read before and written after the cycle"),
]
InputOption = Annotated[
    list[str] | None,
    typer.Option("--input", "-i", help="External input as NAME=JSON (exposed input, label or node id)"),
]


@app.command()
def check(ctx: typer.Context, graph: GraphArgument = None) -> None:
    """Validate a graph document and list its nodes."""
    with _reported_errors():
        loaded, _, _ = _load(ctx, graph)
        unit = compile_graph(loaded)

    table = Table(show_header=True, header_style="bold cyan", box=None)
    table.add_column("Id", justify="right")
    table.add_column("Label")
    table.add_column("Kind")
    table.add_column("Tag")
    table.add_column("Ports")
    table.add_column("Flags")
    table.add_column("State")
    for node_id, node in loaded.nodes.items():
        flags = [
            name
            for name, on in (("entry", node.entrypoint), ("branching", node.branching), ("delay", node.is_delay))
            if on
        ]
        table.add_row(
            str(node_id),
            escape(loaded.label_of(node_id) or ""),
            str(node.kind),
            escape(node.tag),
            escape(str(node.signature)),
            ", ".join(flags),
            escape(node.initializer.describe()) if node.initializer is not None else "",
        )
    out_console.print(Panel(table, title="[bold]Nodes[/bold]", border_style="cyan"))
    err_console.print(
        f"[green]✓ {len(loaded)} node(s), {len(loaded.edges)} edge(s); fingerprint {unit.fingerprint[:12]}[/green]",
    )


@app.command()
def order(
    ctx: typer.Context,
    graph: GraphArgument = None,
    *,
    root: Annotated[
        list[int] | None,
        typer.Option("--root", help="Only order nodes downstream of this node id; repeatable"),
    ] = None,
) -> None:
    """Print the topological order of a graph."""
    with _reported_errors():
        loaded, _, _ = _load(ctx, graph)
        try:
            ids = loaded.topological_order(root or None)
        except KeyError as e:
            err_console.print(f"[red]✗ {escape(str(e))}[/red]")
            raise typer.Exit(code=1) from e
    for node_id in ids:
        label = loaded.label_of(node_id)
        out_console.print(f"{node_id}" + (f"  {escape(label)}" if label else ""))


@app.command(name="compile")
def compile_command(
    ctx: typer.Context,
    graph: GraphArgument = None,
    *,
    output: Annotated[
        Path | None,
        typer.Option("-o", "--output", help="Write the compiled source here instead of stdout"),
    ] = None,
) -> None:
    """Compile a graph and emit the generated Python source."""
    with _reported_errors():
        loaded, _, config = _load(ctx, graph)
        unit = compile_graph(loaded)
    target = output if output is not None else config.output
    if target is None:
        sys.stdout.write(unit.source)
        return
    target.write_text(unit.source, encoding="utf-8")
    err_console.print(f"[green]✓ Wrote {target} (fingerprint {unit.fingerprint[:12]})[/green]")


@app.command()
def push(  # noqa: PLR0913
    ctx: typer.Context,
    graph: Annotated[Path, typer.Argument(help="Path to a graph document (.toml or .json)")],
    entry: Annotated[str, typer.Argument(help="Entrypoint label or node id")],
    values: Annotated[list[str] | None, typer.Argument(help="JSON values for the entrypoint's inputs")] = None,
    *,
    inputs: InputOption = None,
    state: StateOption = None,
) -> None:
    """Push values into an entrypoint and run one cycle."""
    parsed = [_parse_value(value) for value in values or []]
    bindings = _parse_inputs(inputs or [])
    with _reported_errors():
        loaded, store, config = _load(ctx, graph)
        try:
            result = _run_cycle(
                loaded,
                store,
                _state_file(state, config),
                lambda coordinator: coordinator.push(_node_ref(entry), *parsed, inputs=bindings),
            )
        except (KeyError, ValueError, TypeError) as e:
            err_console.print(f"[red]✗ {escape(str(e))}[/red]")
            raise typer.Exit(code=1) from e
    _print_result(result)


@app.command()
def pull(
    ctx: typer.Context,
    graph: Annotated[Path, typer.Argument(help="Path to a graph document (.toml or .json)")],
    output: Annotated[str, typer.Argument(help="Exposed output name, label or node id")],
    *,
    inputs: InputOption = None,
    state: StateOption = None,
) -> None:
    """Evaluate what an output needs and print the result."""
    bindings = _parse_inputs(inputs or [])
    with _reported_errors():
        loaded, store, config = _load(ctx, graph)
        try:
            result = _run_cycle(
                loaded,
                store,
                _state_file(state, config),
                lambda coordinator: coordinator.pull(_node_ref(output), inputs=bindings),
            )
        except (KeyError, ValueError, TypeError) as e:
            err_console.print(f"[red]✗ {escape(str(e))}[/red]")
            raise typer.Exit(code=1) from e
    _print_result(result)
    if not result.outputs and result.evaluated:
        # Pulled a plain node rather than an exposed output: show its fired values.
        path = result.evaluated[-1]
        fired = [index for (node, index) in sorted(result.fired) if node == path]
        for index in fired:
            value = json.dumps(result.values[path][index], default=repr)
            out_console.print(f"{path_suffix(path)}:{index} = {escape(value)}")
