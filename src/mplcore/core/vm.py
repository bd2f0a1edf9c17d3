"""
VM: one self-contained MPL engine instance.

A VM owns its grid, interpreter, scheduler, rule registry, event bus,
snapshot publisher and debug tracer. Several VMs can live side by side;
nothing is shared through module globals.
"""

from __future__ import annotations
from dataclasses import dataclass, field
import logging
import threading
from typing import Any, Mapping, Optional, Union

from mplcore.core.events import ERROR, RULE_DEBUG, TICK, ErrorEvent, EventBus, TickEvent
from mplcore.core.grid import GridConfig, VoxelGrid
from mplcore.core.registry import (
    ActiveRule,
    ActiveRuleSet,
    CompilationUnit,
    CompileResult,
    RegistryStatus,
    RuleRegistry,
)
from mplcore.core.scheduler import Changeset, TickScheduler
from mplcore.core.snapshot import GridSnapshot, LayerSnapshot, SnapshotPublisher, SnapshotProvider
from mplcore.lang import ast
from mplcore.lang.errors import MPLError, MPLRuntimeError, ParseErrorGroup
from mplcore.lang.interpreter import DEFAULT_MAX_CALL_DEPTH, Interpreter
from mplcore.lang.parser import DEFAULT_MAX_ERRORS, parse_source
from mplcore.lang.tracing import RuleDebugTrace, RuleDebugTracer
from mplcore.lang.values import FunctionValue

logger = logging.getLogger(__name__)


@dataclass
class VMConfig:
    """Configuration for a VM."""

    grid: GridConfig
    max_call_depth: int = DEFAULT_MAX_CALL_DEPTH
    max_parse_errors: int = DEFAULT_MAX_ERRORS
    max_statements: Optional[int] = None  # Statement budget per run (None = unlimited)
    seed: int = 0  # Seed for random()
    continue_on_error: bool = False  # Skip failing top-level statements


@dataclass
class ExecutionReport:
    ok: bool
    error: Optional[str] = None
    errors: list[MPLError] = field(default_factory=list)
    output: list[str] = field(default_factory=list)


class VM:
    """
    Runs MPL programs against a voxel grid and simulates it.

    Example:
        vm = create_vm(5, 5)
        vm.run("set(2, 2); set(2, 1); set(2, 3);")
        vm.stage_rules("rule life() { ... }")
        vm.apply_staged()
        vm.tick()
    """

    def __init__(self, config: VMConfig):
        self.config = config
        self.grid = VoxelGrid(config.grid)
        self.events = EventBus()
        self._cancel = threading.Event()
        self.interpreter = Interpreter(
            self,
            max_call_depth=config.max_call_depth,
            max_statements=config.max_statements,
            seed=config.seed,
            cancel_event=self._cancel,
        )
        self.scheduler = TickScheduler(self.grid, self.interpreter, self._cancel)
        self.registry = RuleRegistry(self._activate, events=self.events, max_errors=config.max_parse_errors)
        self.snapshots = SnapshotPublisher(self.grid)
        self.debugger = RuleDebugTracer()
        self.last_changeset: Optional[Changeset] = None
        self.last_trace: Optional[RuleDebugTrace] = None

    # ─────────────────────────────────────────────────────────────
    # Grid API used by the interpreter
    # ─────────────────────────────────────────────────────────────

    def set_cell(self, x: int, y: int, z: int) -> None:
        if self.scheduler.ticking:
            self.scheduler.write_cell(x, y, z)
        else:
            self.grid.set(x, y, z)

    def get_cell(self, x: int, y: int, z: int) -> int:
        if self.scheduler.ticking:
            return self.scheduler.read_cell(x, y, z)
        return self.grid.get(x, y, z)

    def clear(self) -> None:
        self.grid.clear()

    def step(self) -> None:
        self.tick()

    def select_layer(self, n: int) -> None:
        self.grid.select_layer(n)

    # ─────────────────────────────────────────────────────────────
    # Programs
    # ─────────────────────────────────────────────────────────────

    def compile(self, source: str) -> ast.Program:
        """Lex and parse; raises LexError or ParseErrorGroup."""
        return parse_source(source, self.config.max_parse_errors)

    def run(self, source: Union[str, ast.Program]) -> list[MPLRuntimeError]:
        """
        Execute a program in the VM's global scope.

        Raises on the first error unless ``continue_on_error`` is configured,
        in which case the skipped statements' errors are returned.
        """
        program = self.compile(source) if isinstance(source, str) else source
        return self.interpreter.run(program, continue_on_error=self.config.continue_on_error)

    def execute(self, source: str) -> ExecutionReport:
        """Like ``run`` but reports every MPLError instead of raising it."""
        start = len(self.interpreter.output)
        try:
            skipped = self.run(source)
        except ParseErrorGroup as group:
            self._report(group)
            return ExecutionReport(
                ok=False,
                error=str(group),
                errors=list(group.errors),
                output=self.interpreter.output[start:],
            )
        except MPLError as err:
            self._report(err)
            return ExecutionReport(ok=False, error=str(err), errors=[err], output=self.interpreter.output[start:])
        return ExecutionReport(
            ok=not skipped,
            error=str(skipped[0]) if skipped else None,
            errors=list(skipped),
            output=self.interpreter.output[start:],
        )

    def lint(self, source: str) -> list[MPLError]:
        """Syntax diagnostics for a program, without running it."""
        try:
            self.compile(source)
        except ParseErrorGroup as group:
            return list(group.errors)
        except MPLError as err:
            return [err]
        return []

    def _report(self, err: MPLError) -> None:
        logger.error("Execution failed: %s", err)
        self.events.emit(ERROR, ErrorEvent(err.message, err.line, err.col, type(err).__name__))

    # ─────────────────────────────────────────────────────────────
    # Simulation
    # ─────────────────────────────────────────────────────────────

    def tick(self, steps: int = 1) -> Optional[Changeset]:
        """Advance the simulation; returns the last tick's changeset."""
        for _ in range(steps):
            tracer = self.debugger if self.debugger.has_target() else None
            result = self.scheduler.tick(self.registry.active_rules, tracer)
            self.last_changeset = result.changeset
            self.events.emit(
                TICK, TickEvent(result.changeset.step, result.changeset.count, result.duration_ms)
            )
            if result.trace is not None:
                self.last_trace = result.trace
                self.events.emit(RULE_DEBUG, result.trace)
        return self.last_changeset

    def cancel(self) -> None:
        """Ask the running program or tick to stop at the next check."""
        self._cancel.set()

    def reset(self) -> None:
        """Back to a freshly constructed state: empty grid, no rules, no globals."""
        self._cancel.clear()
        self.grid.reset()
        self.registry.clear()
        self.interpreter.reset(self.config.seed)
        self.last_changeset = None
        self.last_trace = None

    @property
    def step_count(self) -> int:
        return self.grid.step_count

    # ─────────────────────────────────────────────────────────────
    # Rule hot reload
    # ─────────────────────────────────────────────────────────────

    def _activate(self, unit: CompilationUnit) -> ActiveRuleSet:
        scope = self.interpreter.globals.child()
        self.interpreter.run(unit.program, scope)
        rules = tuple(
            ActiveRule(rule, FunctionValue(rule.id, rule.params, rule.body, scope, kind="rule"))
            for rule in unit.rules
        )
        return ActiveRuleSet(unit, rules)

    def validate_source(self, source: str) -> CompileResult:
        return self.registry.validate(source)

    def stage_rules(self, source: str) -> CompileResult:
        return self.registry.stage(source)

    def apply_staged(self) -> bool:
        return self.registry.apply_staged()

    def rollback_staged(self) -> None:
        self.registry.rollback_staged()

    def rule_status(self) -> RegistryStatus:
        return self.registry.status()

    def load_rules(self, source: str) -> CompileResult:
        """Stage and apply in one go; the result is not ok if either step fails."""
        result = self.stage_rules(source)
        if result.ok and not self.apply_staged():
            result.ok = False
        return result

    def set_rule_parameters(self, rule_id: str, values: Mapping[str, Any]) -> None:
        if self.registry.active is None:
            raise KeyError(f"No active rule named {rule_id!r}")
        self.registry.active.set_parameters(rule_id, values)

    # ─────────────────────────────────────────────────────────────
    # Snapshots
    # ─────────────────────────────────────────────────────────────

    def get_snapshot(self) -> tuple[int, GridSnapshot]:
        return self.snapshots.get_snapshot()

    def get_layers(self) -> tuple[int, list[LayerSnapshot]]:
        return self.snapshots.get_layers()

    def set_external_snapshot(self, provider: Optional[SnapshotProvider]) -> None:
        self.snapshots.set_external_snapshot(provider)

    # ─────────────────────────────────────────────────────────────
    # Rule debugging
    # ─────────────────────────────────────────────────────────────

    def set_debug_target(self, pos: Optional[tuple[int, int, int]], layer: int = 0) -> None:
        self.debugger.set_target(pos, layer)

    def debug_step_once(self) -> Optional[RuleDebugTrace]:
        """Trace every active rule at the debug target without committing."""
        trace = self.scheduler.probe(self.registry.active_rules, self.debugger)
        if trace is not None:
            self.last_trace = trace
            self.events.emit(RULE_DEBUG, trace)
        return trace

    # ─────────────────────────────────────────────────────────────
    # Introspection
    # ─────────────────────────────────────────────────────────────

    def get_variables(self) -> dict[str, Any]:
        """Global variables defined by programs (callables and Math excluded)."""
        return {
            name: value
            for name, value in self.interpreter.globals.values.items()
            if name != "Math" and not isinstance(value, FunctionValue)
        }

    def get_functions(self) -> list[str]:
        return list(self.interpreter.functions)

    def get_rules(self) -> list[str]:
        """Names of the active simulation rules, in evaluation order."""
        return [r.rule_id for r in self.registry.active_rules]

    @property
    def output(self) -> list[str]:
        return self.interpreter.output


def create_vm(nx: int, ny: int, nz: int = 1, **options: Any) -> VM:
    """Convenience constructor; ``options`` go to VMConfig."""
    max_layers = options.pop("max_layers", 8)
    return VM(VMConfig(grid=GridConfig(nx, ny, nz, max_layers=max_layers), **options))
