"""
Tick Scheduler: synchronous double-buffered rule application.

Each tick:
1. Freeze the current layer buffers as the read side
2. Copy them into write buffers
3. For every layer, then z, y, x ascending: evaluate each active rule in
   registration order against the frozen read side; a defined result is
   written to the cell in the write buffer (last matching rule wins)
4. Diff write against read into a changeset, then swap and advance the
   step counter in one locked commit

Nothing is committed if a rule raises or the tick is cancelled, so the grid
and the step counter stay exactly as they were before the tick.
"""

from __future__ import annotations
from dataclasses import dataclass, field
import logging
import threading
import time
from typing import TYPE_CHECKING, Any, Optional, Sequence

import numpy as np

from mplcore.core.grid import NeighborhoodField, VoxelGrid
from mplcore.lang.errors import ExecutionCancelled, TypeMismatch
from mplcore.lang.tracing import RuleDebugTrace, RuleDebugTracer, VoxelPos
from mplcore.lang.values import NEIGHBORS, to_cell_value

if TYPE_CHECKING:
    from mplcore.core.registry import ActiveRule
    from mplcore.lang.interpreter import Interpreter

logger = logging.getLogger(__name__)


@dataclass
class Changeset:
    """Voxels whose value differs after a tick, as flat indices per layer."""

    step: int
    indices: dict[int, np.ndarray] = field(default_factory=dict)

    @property
    def count(self) -> int:
        return int(sum(len(ix) for ix in self.indices.values()))


@dataclass
class TickResult:
    changeset: Changeset
    duration_ms: float
    trace: Optional[RuleDebugTrace] = None


class CellView:
    """
    The cell under evaluation, read from the frozen pre-tick buffer.

    ``bindings`` holds the names a rule sees for the current cell. It is
    built once per layer and rewritten in place by ``move``, so every rule
    evaluated during the tick shares one binding scope.
    """

    __slots__ = (
        "buffer", "field", "layer", "size", "step", "x", "y", "z", "value",
        "bindings", "_cells", "_alive",
    )

    def __init__(self, buffer: np.ndarray, field_: NeighborhoodField, layer: int, step: int):
        self.buffer = buffer
        self.field = field_
        self.layer = layer
        self.step = step
        nz, ny, nx = buffer.shape
        self.size = (nx, ny, nz)
        # Nested lists index faster than numpy scalars in the per-cell loop
        self._cells = buffer.tolist()
        self._alive = field_.alive.tolist()
        self.bindings: dict[str, Any] = {
            "cell": 0.0,
            "alive": False,
            "cellX": 0.0,
            "cellY": 0.0,
            "cellZ": 0.0,
            "cellLayer": float(layer),
            "neighbors": NEIGHBORS,
            "neighborsAlive": 0.0,
            "gridWidth": float(nx),
            "gridHeight": float(ny),
            "gridDepth": float(nz),
            "currentStep": float(step),
        }
        self.x = self.y = self.z = 0
        self.value = 0
        if buffer.size:
            self.move(0, 0, 0)

    def move(self, x: int, y: int, z: int) -> None:
        self.x, self.y, self.z = x, y, z
        value = self._cells[z][y][x]
        self.value = value
        bindings = self.bindings
        bindings["cell"] = float(value)
        bindings["alive"] = value > 0
        bindings["cellX"] = float(x)
        bindings["cellY"] = float(y)
        bindings["cellZ"] = float(z)
        bindings["neighborsAlive"] = float(self._alive[z][y][x])

    def read(self, dx: int, dy: int, dz: int) -> int:
        x, y, z = self.x + dx, self.y + dy, self.z + dz
        nx, ny, nz = self.size
        if 0 <= x < nx and 0 <= y < ny and 0 <= z < nz:
            return self._cells[z][y][x]
        return 0

    @property
    def neighbors_alive(self) -> int:
        return self._alive[self.z][self.y][self.x]

    @property
    def neighbor_sum(self) -> int:
        return int(self.field.total[self.z, self.y, self.x])

    @property
    def neighbor_max(self) -> int:
        return int(self.field.maximum[self.z, self.y, self.x])

    @property
    def neighbor_min(self) -> int:
        return int(self.field.minimum[self.z, self.y, self.x])


class TickScheduler:
    """
    Drives ticks over a VoxelGrid with an Interpreter.

    While a tick runs, ``write_cell``/``read_cell`` give the grid API the
    tick semantics: ``set()`` lands in the write buffer of the layer being
    ticked, ``get()`` reads the frozen pre-tick buffer. At a traced voxel
    each ``set()`` is also recorded as an action of the rule that made it.
    """

    def __init__(self, grid: VoxelGrid, interpreter: "Interpreter", cancel_event: threading.Event):
        self.grid = grid
        self.interpreter = interpreter
        self.cancel_event = cancel_event
        self._read: Optional[np.ndarray] = None
        self._write: Optional[np.ndarray] = None
        self._tracer: Optional[RuleDebugTracer] = None
        self._traced_rule: Optional[str] = None

    @property
    def ticking(self) -> bool:
        return self._write is not None

    def write_cell(self, x: int, y: int, z: int) -> None:
        if self._write is None or not self.grid.in_bounds(x, y, z):
            return
        full = self.grid.config.full_intensity
        if self._tracer is not None and self._traced_rule is not None:
            before = int(self._write[z, y, x])
            self._tracer.action(
                self._traced_rule,
                f"set({x}, {y}, {z})",
                {"at": {"x": x, "y": y, "z": z}, "from": before, "to": full},
            )
        self._write[z, y, x] = full

    def read_cell(self, x: int, y: int, z: int) -> int:
        if self._read is None or not self.grid.in_bounds(x, y, z):
            return 0
        return int(self._read[z, y, x])

    def tick(
        self,
        rules: Sequence["ActiveRule"],
        tracer: Optional[RuleDebugTracer] = None,
    ) -> TickResult:
        """Run one tick; returns the committed changeset and timing."""
        start = time.perf_counter()
        step = self.grid.step_count
        self.interpreter.reset_budget()
        trace: Optional[RuleDebugTrace] = None

        if not rules:
            committed = self.grid.commit_tick(None)
            return TickResult(Changeset(committed), _elapsed_ms(start))

        frozen = self.grid.layers_view()
        written: dict[int, np.ndarray] = {}
        with self.interpreter.recursion_headroom():
            for n in sorted(frozen):
                written[n], captured = self._tick_layer(n, frozen[n], step, rules, tracer)
                trace = captured or trace

        changeset = Changeset(step + 1)
        for n, buffer in written.items():
            changed = np.flatnonzero(buffer != frozen[n])
            if len(changed):
                changeset.indices[n] = changed
        changeset.step = self.grid.commit_tick(written)
        logger.debug("Tick %d changed %d voxel(s)", changeset.step, changeset.count)
        return TickResult(changeset, _elapsed_ms(start), trace)

    def _tick_layer(
        self,
        n: int,
        buffer: np.ndarray,
        step: int,
        rules: Sequence["ActiveRule"],
        tracer: Optional[RuleDebugTracer],
    ) -> tuple[np.ndarray, Optional[RuleDebugTrace]]:
        out = buffer.copy()
        view = CellView(buffer, NeighborhoodField(buffer), n, step)
        full = self.grid.config.full_intensity
        evaluate_rule = self.interpreter.evaluate_rule
        cancel_event = self.cancel_event
        trace = None
        self._read, self._write = buffer, out
        try:
            for x, y, z in self.grid.iter_voxels():
                if cancel_event.is_set():
                    cancel_event.clear()
                    raise ExecutionCancelled(f"Tick {step + 1} cancelled")
                view.move(x, y, z)
                if tracer is not None and tracer.captures(n, x, y, z):
                    trace = self._evaluate_traced(view, out, rules, tracer)
                    continue
                for active in rules:
                    result = evaluate_rule(active.function, view, active.parameters)
                    value = _cell_value(result, full, active)
                    if value is not None:
                        out[z, y, x] = value
        finally:
            self._read = self._write = None
        return out, trace

    def _evaluate_traced(
        self,
        view: CellView,
        out: np.ndarray,
        rules: Sequence["ActiveRule"],
        tracer: RuleDebugTracer,
    ) -> Optional[RuleDebugTrace]:
        full = self.grid.config.full_intensity
        tracer.begin(view.step + 1, VoxelPos(view.x, view.y, view.z))
        self._tracer = tracer
        try:
            for active in rules:
                tracer.rule_start(active.rule_id)
                self._traced_rule = active.rule_id
                try:
                    result = self.interpreter.evaluate_rule(
                        active.function, view, active.parameters, tracer
                    )
                finally:
                    self._traced_rule = None
                value = _cell_value(result, full, active)
                if value is not None:
                    before = int(out[view.z, view.y, view.x])
                    out[view.z, view.y, view.x] = value
                    tracer.action(active.rule_id, f"cell := {value}", {"from": before, "to": value})
                tracer.rule_end(active.rule_id)
        finally:
            self._tracer = None
        return tracer.end()

    def probe(
        self,
        rules: Sequence["ActiveRule"],
        tracer: RuleDebugTracer,
    ) -> Optional[RuleDebugTrace]:
        """
        Evaluate every rule at the tracer's target without committing anything.

        Writes made by the rules go to a scratch copy that is discarded.
        """
        target = tracer.target
        if target is None or not rules:
            return None
        if not self.grid.has_layer(tracer.layer) or not self.grid.in_bounds(*target):
            return None
        buffer = self.grid.layers_view()[tracer.layer]
        scratch = buffer.copy()
        view = CellView(buffer, NeighborhoodField(buffer), tracer.layer, self.grid.step_count)
        view.move(*target)
        self.interpreter.reset_budget()
        self._read, self._write = buffer, scratch
        try:
            with self.interpreter.recursion_headroom():
                return self._evaluate_traced(view, scratch, rules, tracer)
        finally:
            self._read = self._write = None


def _cell_value(result: Any, full: int, active: "ActiveRule") -> Optional[int]:
    try:
        return to_cell_value(result, full)
    except TypeMismatch as err:
        body = active.function.body
        raise TypeMismatch(f"Rule '{active.rule_id}': {err.message}", body.line, body.col) from None


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000.0
