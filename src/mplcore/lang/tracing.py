"""
Rule-evaluation tracing.

The interpreter and the scheduler report every rule evaluation to a tracer.
With nothing attached they talk to ``NULL_TRACER``, whose ``enabled`` flag
lets callers skip building labels at all. ``RuleDebugTracer`` records the
evaluations that touch one target voxel and folds them into a
``RuleDebugTrace`` per tick.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, NamedTuple, Optional, Protocol


class VoxelPos(NamedTuple):
    x: int
    y: int
    z: int


@dataclass
class TraceEntry:
    kind: str  # "start" | "predicate" | "action" | "end"
    rule_id: str
    label: Optional[str] = None
    ok: Optional[bool] = None
    desc: Optional[str] = None
    details: Any = None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"kind": self.kind, "ruleId": self.rule_id}
        if self.kind == "predicate":
            data.update(label=self.label, ok=self.ok)
            if self.details is not None:
                data["details"] = self.details
        elif self.kind == "action":
            data["desc"] = self.desc
            if self.details is not None:
                data["delta"] = self.details
        return data


@dataclass
class RuleDebugTrace:
    step: int
    pos: VoxelPos
    layer: int
    entries: list[TraceEntry] = field(default_factory=list)
    summary: dict[str, list[str]] = field(default_factory=dict)

    @property
    def matched_rules(self) -> list[str]:
        return self.summary.get("matchedRules", [])

    def to_dict(self) -> dict:
        return {
            "step": self.step,
            "pos": self.pos._asdict(),
            "layer": self.layer,
            "entries": [e.to_dict() for e in self.entries],
            "summary": dict(self.summary),
        }


class Tracer(Protocol):
    enabled: bool

    def rule_start(self, rule_id: str) -> None: ...

    def predicate(self, rule_id: str, label: str, ok: bool, details: Any = None) -> None: ...

    def action(self, rule_id: str, desc: str, delta: Any = None) -> None: ...

    def rule_end(self, rule_id: str) -> None: ...


class NullTracer:
    enabled = False

    def rule_start(self, rule_id: str) -> None:
        pass

    def predicate(self, rule_id: str, label: str, ok: bool, details: Any = None) -> None:
        pass

    def action(self, rule_id: str, desc: str, delta: Any = None) -> None:
        pass

    def rule_end(self, rule_id: str) -> None:
        pass


NULL_TRACER = NullTracer()


class RuleDebugTracer:
    """Captures the evaluation of all rules at a single target voxel."""

    enabled = True

    def __init__(self, target: Optional[VoxelPos] = None, layer: int = 0):
        self.target = target
        self.layer = layer
        self._entries: list[TraceEntry] = []
        self._step = 0
        self._pos: Optional[VoxelPos] = None

    def set_target(self, pos: Optional[tuple[int, int, int]], layer: int = 0) -> None:
        self.target = VoxelPos(*pos) if pos is not None else None
        self.layer = layer

    def has_target(self) -> bool:
        return self.target is not None

    def captures(self, layer: int, x: int, y: int, z: int) -> bool:
        t = self.target
        return t is not None and layer == self.layer and t.x == x and t.y == y and t.z == z

    def begin(self, step: int, pos: VoxelPos) -> None:
        self._step = step
        self._pos = pos
        self._entries = []

    def rule_start(self, rule_id: str) -> None:
        self._entries.append(TraceEntry("start", rule_id))

    def predicate(self, rule_id: str, label: str, ok: bool, details: Any = None) -> None:
        self._entries.append(TraceEntry("predicate", rule_id, label=label, ok=ok, details=details))

    def action(self, rule_id: str, desc: str, delta: Any = None) -> None:
        self._entries.append(TraceEntry("action", rule_id, desc=desc, details=delta))

    def rule_end(self, rule_id: str) -> None:
        self._entries.append(TraceEntry("end", rule_id))

    def end(self) -> Optional[RuleDebugTrace]:
        """Close the current capture; a rule matched if a predicate held and it acted."""
        if not self._entries or self._pos is None:
            return None

        states: dict[str, list[int]] = {}  # rule_id -> [matched, actions]
        for entry in self._entries:
            if entry.kind == "start":
                states[entry.rule_id] = [0, 0]
            elif entry.kind == "predicate" and entry.ok and entry.rule_id in states:
                states[entry.rule_id][0] = 1
            elif entry.kind == "action" and entry.rule_id in states:
                states[entry.rule_id][1] += 1

        matched = [rule_id for rule_id, (hit, actions) in states.items() if hit and actions > 0]
        trace = RuleDebugTrace(
            step=self._step,
            pos=self._pos,
            layer=self.layer,
            entries=self._entries,
            summary={"matchedRules": matched},
        )
        self._entries = []
        self._pos = None
        return trace
