"""Evaluation coordinator: runs push and pull cycles against a loaded unit."""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum, auto
from typing import TYPE_CHECKING, Any, Literal, TypeAlias

from .._errors import CycleCancelled, CycleInProgress, InvalidStateTransition, RuntimeEvaluationError
from .._runtime import Runtime
from .._state import StateStore
from ._cycle import CycleContext

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from .._compile import CompiledUnit
    from .._graph import Graph
    from .._node import NodePath
    from .._runtime import LoadedUnit

logger = logging.getLogger(__name__)

NodeRef: TypeAlias = int | str | tuple[int, ...]
InputBindings: TypeAlias = Mapping[NodeRef, Any]


class CoordinatorState(StrEnum):
    """Lifecycle of a coordinator."""

    UNLOADED = auto()
    LOADED = auto()  # Unit accepted by the runtime, no cycle run yet
    RUNNING = auto()
    RELOADING = auto()
    STOPPED = auto()


@dataclass(frozen=True, slots=True)
class CycleResult:
    """Outcome of one evaluation cycle.

    Attributes:
        values: All outputs of every evaluated node, by path.
        evaluated: Paths of the nodes that ran, in order.
        fired: (path, output index) pairs that fired.
        outputs: Values of the exposed outputs that fired, by name.

    """

    values: dict[NodePath, tuple[Any, ...]]
    evaluated: tuple[NodePath, ...]
    fired: frozenset[tuple[NodePath, int]]
    outputs: dict[str, Any] = field(default_factory=dict)

    def value(self, node: int | tuple[int, ...], port: int = 0) -> Any:
        """Value of a fired output.

        Raises:
            KeyError: If the output did not fire in this cycle.

        """
        path = (node,) if isinstance(node, int) else tuple(node)
        if (path, port) not in self.fired:
            msg = f"Output {port} of node {path} did not fire in this cycle"
            raise KeyError(msg)
        return self.values[path][port]

    def output(self, name: str) -> Any:
        """Value of an exposed output that fired."""
        return self.outputs[name]

    def ran(self, node: int | tuple[int, ...]) -> bool:
        """Whether a node was evaluated in this cycle."""
        path = (node,) if isinstance(node, int) else tuple(node)
        return path in self.evaluated


@dataclass(slots=True, eq=False)
class Request:
    """A queued push or pull waiting for :meth:`EvaluationCoordinator.run_pending`."""

    kind: Literal["push", "pull"]
    target: NodePath
    values: tuple[Any, ...] = ()
    inputs: InputBindings | None = None
    cancelled: bool = False

    def cancel(self) -> None:
        """Drop the request if its cycle has not started."""
        self.cancelled = True


CycleListener: TypeAlias = "Callable[[CycleResult], None]"
Step: TypeAlias = "Callable[[CycleContext], None]"


class EvaluationCoordinator:
    """Runs evaluation cycles of one compiled unit at a time.

    Only one cycle runs at a time; a request made while a cycle is running
    raises :class:`CycleInProgress`. State slots live in a :class:`StateStore`
    that outlives any single unit, so reloading a recompiled unit keeps the
    state of every stateful node that still exists.

    Example:
        >>> coordinator = EvaluationCoordinator()
        >>> coordinator.load(compile_graph(graph))
        >>> coordinator.push("tick", 1).value(counter)
        1

    """

    def __init__(self, runtime: Runtime | None = None, store: StateStore | None = None) -> None:
        self.runtime = runtime if runtime is not None else Runtime()
        self.store = store
        self._state = CoordinatorState.UNLOADED
        self._unit: CompiledUnit | None = None
        self._loaded: LoadedUnit | None = None
        self._lock = threading.Lock()
        self._cancel = threading.Event()
        self._pending: list[Request] = []
        self._listeners: list[CycleListener] = []
        self._detach: Callable[[], None] | None = None

    @property
    def state(self) -> CoordinatorState:
        """Current lifecycle state."""
        return self._state

    @property
    def unit(self) -> CompiledUnit:
        """The loaded compiled unit."""
        if self._unit is None:
            msg = "No compiled unit loaded"
            raise InvalidStateTransition(msg)
        return self._unit

    # -- Lifecycle ---------------------------------------------------------------

    def load(self, unit: CompiledUnit) -> None:
        """Hand a compiled unit to the runtime.

        The state store follows the unit's graph from then on, so removing a
        node from the graph drops its slots.
        """
        if self._state is not CoordinatorState.UNLOADED:
            msg = f"Cannot load a unit while {self._state}; use reload()"
            raise InvalidStateTransition(msg)
        if self.store is not None and self.store.graph_id != unit.graph_id:
            msg = f"State store belongs to graph {self.store.graph_id}, unit to {unit.graph_id}"
            raise ValueError(msg)
        self._loaded = self.runtime.load(unit)
        self._unit = unit
        if self.store is None:
            self.store = StateStore(unit.graph_id)
        self._follow(unit.graph)
        self._state = CoordinatorState.LOADED
        logger.info("Loaded unit %s for graph %s", unit.fingerprint[:12], unit.graph_id)

    def reload(self, unit: CompiledUnit, *, cancel: bool = False) -> None:
        """Swap in a recompiled unit of the same graph.

        Waits for the in-flight cycle, or cancels it when ``cancel`` is set.
        Slots of stateful nodes that no longer exist are dropped.
        """
        if self._state not in (CoordinatorState.LOADED, CoordinatorState.RUNNING):
            msg = f"Cannot reload while {self._state}"
            raise InvalidStateTransition(msg)
        if unit.graph_id != self.unit.graph_id:
            msg = f"Unit belongs to graph {unit.graph_id}, coordinator runs {self.unit.graph_id}"
            raise ValueError(msg)
        if cancel:
            self._cancel.set()
        with self._lock:
            previous = self._state
            self._state = CoordinatorState.RELOADING
            try:
                loaded = self.runtime.load(unit)
            except Exception:
                self._state = previous
                raise
            if unit.graph is not self.unit.graph:
                self._follow(unit.graph)
            self._loaded = loaded
            self._unit = unit
            assert self.store is not None  # noqa: S101
            self.store.retain(unit.stateful_paths)
            self._cancel.clear()
            self._state = previous
        logger.info("Reloaded graph %s with unit %s", unit.graph_id, unit.fingerprint[:12])

    def stop(self) -> None:
        """Stop accepting requests."""
        self._cancel.set()
        with self._lock:
            self._state = CoordinatorState.STOPPED
            self._pending.clear()
            self._follow(None)
            if self._unit is not None:
                self.runtime.unload(self._unit.graph_id)

    def cancel(self) -> None:
        """Ask the running cycle to stop before its next node."""
        self._cancel.set()

    def _follow(self, graph: Graph | None) -> None:
        """Attach the store to ``graph`` instead of the previously followed one."""
        if self._detach is not None:
            self._detach()
            self._detach = None
        if graph is not None:
            assert self.store is not None  # noqa: S101
            self._detach = self.store.attach(graph)

    def add_listener(self, listener: CycleListener) -> Callable[[], None]:
        """Register a callback receiving every completed cycle's result."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    # -- Requests ----------------------------------------------------------------

    def push(self, entry: NodeRef, *values: Any, inputs: InputBindings | None = None) -> CycleResult:
        """Run a cycle rooted at an entrypoint whose input ports receive ``values``."""
        path = self._entry_path(entry, values)
        return self._run([(path, values)], [], inputs)

    def pull(self, output: NodeRef, inputs: InputBindings | None = None) -> CycleResult:
        """Run a cycle evaluating what an exposed output or node needs."""
        return self._run([], [self._pull_path(output)], inputs)

    def evaluate(
        self,
        pushes: Mapping[NodeRef, Sequence[Any]] | None = None,
        pulls: Iterable[NodeRef] = (),
        inputs: InputBindings | None = None,
    ) -> CycleResult:
        """Run one cycle serving several pushes and pulls at once.

        Pushes run one after the other in the given order, each as its own
        pass, so a stateful node reached by two of them steps twice. The pulls
        share a single pass with the last push; a node needed by both runs once
        there.
        """
        push_list = [
            (self._entry_path(entry, tuple(values)), tuple(values)) for entry, values in (pushes or {}).items()
        ]
        pull_list = [self._pull_path(output) for output in pulls]
        if not push_list and not pull_list:
            msg = "Nothing to evaluate"
            raise ValueError(msg)
        return self._run(push_list, pull_list, inputs)

    def submit_push(self, entry: NodeRef, *values: Any, inputs: InputBindings | None = None) -> Request:
        """Queue a push for the next :meth:`run_pending`."""
        request = Request("push", self._entry_path(entry, values), tuple(values), inputs)
        self._pending.append(request)
        return request

    def submit_pull(self, output: NodeRef, inputs: InputBindings | None = None) -> Request:
        """Queue a pull for the next :meth:`run_pending`."""
        request = Request("pull", self._pull_path(output), inputs=inputs)
        self._pending.append(request)
        return request

    def run_pending(self) -> CycleResult | None:
        """Run queued requests as one cycle, as :meth:`evaluate` would.

        Pushes keep the order they were submitted in. Cancelled requests are
        dropped. A second push to an entrypoint that is already part of the
        cycle stays queued for the next call. Returns None when nothing was
        left to run.
        """
        self._require_ready()
        pending = [request for request in self._pending if not request.cancelled]
        pushes: dict[NodePath, tuple[Any, ...]] = {}
        pulls: list[NodePath] = []
        inputs: dict[NodeRef, Any] = {}
        deferred: list[Request] = []
        for request in pending:
            if request.kind == "push":
                if request.target in pushes:
                    deferred.append(request)
                    continue
                pushes[request.target] = request.values
            elif request.target not in pulls:
                pulls.append(request.target)
            inputs.update(request.inputs or {})
        if not pushes and not pulls:
            self._pending.clear()
            return None
        result = self._run(list(pushes.items()), pulls, inputs)
        self._pending = deferred
        return result

    # -- Cycle -------------------------------------------------------------------

    def _require_ready(self) -> None:
        if self._state in (CoordinatorState.UNLOADED, CoordinatorState.STOPPED):
            msg = f"Cannot evaluate while {self._state}"
            raise InvalidStateTransition(msg)

    def _run(
        self,
        pushes: list[tuple[NodePath, tuple[Any, ...]]],
        pulls: list[NodePath],
        inputs: InputBindings | None,
    ) -> CycleResult:
        self._require_ready()
        if not self._lock.acquire(blocking=False):
            msg = "An evaluation cycle is already running"
            raise CycleInProgress(msg)
        try:
            self._cancel.clear()
            self._state = CoordinatorState.RUNNING
            result = self._cycle(pushes, pulls, inputs)
        finally:
            self._lock.release()
        for listener in list(self._listeners):
            listener(result)
        return result

    def _cycle(
        self,
        pushes: list[tuple[NodePath, tuple[Any, ...]]],
        pulls: list[NodePath],
        inputs: InputBindings | None,
    ) -> CycleResult:
        unit = self.unit
        assert self.store is not None  # noqa: S101
        push_paths = [path for path, _ in pushes]

        bindings = self._bindings(inputs)
        for path, values in pushes:
            bindings.setdefault(path, {}).update(enumerate(values))

        passes = self._passes(push_paths, pulls)
        cx = CycleContext(
            state=self.store,
            roots=frozenset(),
            bindings=bindings,
            cancel_event=self._cancel,
        )
        logger.debug("Cycle on graph %s: push=%s pull=%s", unit.graph_id, push_paths, pulls)

        try:
            for roots, runners in passes:
                cx.begin(roots)
                for runner in runners:
                    runner(cx)
                cx.finish()
        except CycleCancelled:
            logger.info("Cycle on graph %s cancelled at node %s", unit.graph_id, cx.current)
            raise
        except Exception as e:
            path = cx.current if cx.current is not None else ()
            logger.warning("Node %s failed at position %d: %s", path, cx.position, e)
            raise RuntimeEvaluationError(path, cx.position, e) from e

        outputs = {
            name: cx.values[path][index]
            for name, (path, index) in unit.outputs.items()
            if (path, index) in cx.fired
        }
        return CycleResult(
            values=dict(cx.values),
            evaluated=tuple(cx.evaluated),
            fired=frozenset(cx.fired),
            outputs=outputs,
        )

    def _passes(
        self, push_paths: list[NodePath], pulls: list[NodePath]
    ) -> list[tuple[frozenset[NodePath], list[Step]]]:
        """Roots and runners of each pass: one per push, the pulls merged into the last."""
        unit = self.unit
        loaded = self._loaded
        assert loaded is not None  # noqa: S101
        passes = [(unit.roots([path]), [loaded.push_fn(path)]) for path in push_paths[:-1]]
        last = push_paths[-1:]
        # Single requests use the unit's own runner; merged ones step through the shared order.
        if last and not pulls:
            runners = [loaded.push_fn(last[0])]
        elif not last and len(pulls) == 1 and pulls[0] in unit.pulls:
            runners = [loaded.pull_fn(pulls[0])]
        else:
            runners = [loaded.step(path) for path in unit.order(last, pulls)]
        passes.append((unit.roots(last, pulls), runners))
        return passes

    # -- Resolution --------------------------------------------------------------

    def _node_path(self, ref: NodeRef) -> NodePath:
        unit = self.unit
        if isinstance(ref, int):
            path: NodePath = (ref,)
        elif isinstance(ref, str):
            if ref not in unit.labels:
                msg = f"No node labelled '{ref}'"
                raise KeyError(msg)
            path = unit.labels[ref]
        else:
            path = tuple(ref)
        if path not in unit.flat.nodes:
            msg = f"No node at path {path}"
            raise KeyError(msg)
        return path

    def _entry_path(self, entry: NodeRef, values: Sequence[Any]) -> NodePath:
        path = self._node_path(entry)
        node = self.unit.flat.nodes[path]
        if not node.entrypoint:
            msg = f"Node {path} is not an entrypoint"
            raise ValueError(msg)
        if len(values) > len(node.inputs):
            msg = f"Entrypoint {path} takes {len(node.inputs)} values, got {len(values)}"
            raise ValueError(msg)
        return path

    def _pull_path(self, output: NodeRef) -> NodePath:
        if isinstance(output, str) and output in self.unit.outputs:
            return self.unit.outputs[output][0]
        return self._node_path(output)

    def _bindings(self, inputs: InputBindings | None) -> dict[NodePath, dict[int, Any]]:
        """Per-node input values from exposed input names or node references."""
        bindings: dict[NodePath, dict[int, Any]] = {}
        for key, value in (inputs or {}).items():
            if isinstance(key, str) and key in self.unit.inputs:
                for path, index in self.unit.inputs[key]:
                    bindings.setdefault(path, {})[index] = value
                continue
            path = self._node_path(key)
            if not isinstance(value, Sequence) or isinstance(value, str):
                msg = f"Values bound to node {path} must be a sequence, one per input port"
                raise TypeError(msg)
            bindings.setdefault(path, {}).update(enumerate(value))
        return bindings
