"""
Engine layer: grid, tick scheduling, rule registry and the VM facade.

- VoxelGrid: layered uint8 buffers behind one lock
- TickScheduler: double-buffered synchronous rule application
- RuleRegistry: stage / validate / apply / rollback of rule sets
- SnapshotPublisher: versioned read-only copies for observers
- VM: owns one of each and implements the interpreter's grid API
"""

from mplcore.core.grid import GridConfig, VoxelGrid, NeighborhoodField
from mplcore.core.events import EventBus, TickEvent, RulesReloaded, RulesReloadError, ErrorEvent
from mplcore.core.scheduler import TickScheduler, Changeset
from mplcore.core.registry import (
    Rule,
    CompilationUnit,
    CompileResult,
    RuleRegistry,
    compile_rules,
    fnv1a_hash,
)
from mplcore.core.snapshot import GridSnapshot, LayerSnapshot, SnapshotPublisher, common_size, layer_stats
from mplcore.core.vm import VM, VMConfig, ExecutionReport, create_vm

__all__ = [
    "GridConfig",
    "VoxelGrid",
    "NeighborhoodField",
    "EventBus",
    "TickEvent",
    "RulesReloaded",
    "RulesReloadError",
    "ErrorEvent",
    "TickScheduler",
    "Changeset",
    "Rule",
    "CompilationUnit",
    "CompileResult",
    "RuleRegistry",
    "compile_rules",
    "fnv1a_hash",
    "GridSnapshot",
    "LayerSnapshot",
    "SnapshotPublisher",
    "common_size",
    "layer_stats",
    "VM",
    "VMConfig",
    "ExecutionReport",
    "create_vm",
]
