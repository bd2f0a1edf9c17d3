"""
Rule Registry: compiles rule sets and hot-swaps the active one.

A rule set is MPL source whose top-level ``rule`` declarations become the
simulation rules, in declaration order. Its other top-level statements run
once, when the set is applied, in a fresh scope under the VM globals.

Reloading is build-then-swap:
1. ``stage(source)`` compiles into an immutable CompilationUnit
2. ``apply_staged()`` hands the unit to the activation handler, which builds
   the runtime rule set without touching the active one
3. only if that succeeds does ``active`` change, in a single assignment

A failed apply leaves both the active and the staged unit as they were.
"""

from __future__ import annotations
from dataclasses import dataclass, field
import logging
import time
from types import MappingProxyType
from typing import Any, Callable, Iterator, Mapping, Optional

from mplcore.core.events import RULES_RELOAD_ERROR, RULES_RELOADED, EventBus, RulesReloaded, RulesReloadError
from mplcore.lang import ast
from mplcore.lang.builtins import CELL_BINDINGS, RESERVED_NAMES
from mplcore.lang.errors import LexError, MPLError, ParseErrorGroup, RuleValidationError
from mplcore.lang.parser import DEFAULT_MAX_ERRORS, parse_source
from mplcore.lang.values import FunctionValue, from_python

logger = logging.getLogger(__name__)

_FNV_OFFSET = 0x811C9DC5
_FNV_PRIME = 0x01000193


def fnv1a_hash(text: str) -> str:
    """32-bit FNV-1a over the UTF-8 bytes, as 8 hex digits."""
    h = _FNV_OFFSET
    for byte in text.encode("utf-8"):
        h ^= byte
        h = (h * _FNV_PRIME) & 0xFFFFFFFF
    return f"{h:08x}"


@dataclass(frozen=True)
class Rule:
    id: str
    parameter_names: tuple[str, ...]
    body: ast.Block
    params: tuple[ast.Param, ...] = ()
    line: int = 0
    col: int = 0

    @classmethod
    def from_decl(cls, decl: ast.RuleDecl) -> "Rule":
        return cls(
            id=decl.name,
            parameter_names=tuple(p.name for p in decl.params),
            body=decl.body,
            params=decl.params,
            line=decl.line,
            col=decl.col,
        )


@dataclass(frozen=True)
class CompilationUnit:
    source_hash: str
    source_text: str
    program: ast.Program
    rule_table: Mapping[str, Rule]
    compiled_at: float = field(default_factory=time.time)

    @property
    def rules(self) -> list[Rule]:
        return list(self.rule_table.values())

    @property
    def byte_size(self) -> int:
        return len(self.source_text.encode("utf-8"))


@dataclass
class CompileResult:
    ok: bool
    rules: Optional[list[Rule]] = None
    errors: list[MPLError] = field(default_factory=list)
    unit: Optional[CompilationUnit] = None

    @property
    def messages(self) -> list[str]:
        return [str(e) for e in self.errors]


@dataclass
class ActiveRule:
    """A simulation rule bound to the scope of the rule set that declared it."""

    rule: Rule
    function: FunctionValue
    parameters: dict[str, Any] = field(default_factory=dict)

    @property
    def rule_id(self) -> str:
        return self.rule.id


@dataclass
class ActiveRuleSet:
    unit: CompilationUnit
    rules: tuple[ActiveRule, ...]

    def __iter__(self) -> Iterator[ActiveRule]:
        return iter(self.rules)

    def __len__(self) -> int:
        return len(self.rules)

    def get(self, rule_id: str) -> ActiveRule:
        for active in self.rules:
            if active.rule_id == rule_id:
                return active
        raise KeyError(f"No active rule named {rule_id!r}")

    def set_parameters(self, rule_id: str, values: Mapping[str, Any]) -> None:
        """Override parameter values; unknown names raise KeyError."""
        active = self.get(rule_id)
        unknown = set(values) - set(active.rule.parameter_names)
        if unknown:
            raise KeyError(f"Rule {rule_id!r} has no parameter(s) {sorted(unknown)}")
        for name, value in values.items():
            active.parameters[name] = from_python(value)


# ═══════════════════════════════════════════════════════════════
# Compilation
# ═══════════════════════════════════════════════════════════════


def _nested_statements(stmt: ast.Stmt) -> Iterator[ast.Stmt]:
    if isinstance(stmt, ast.Block):
        yield from stmt.body
    elif isinstance(stmt, ast.If):
        yield stmt.then_branch
        if stmt.else_branch is not None:
            yield stmt.else_branch
    elif isinstance(stmt, (ast.While, ast.ForOf)):
        yield stmt.body
    elif isinstance(stmt, ast.For):
        if stmt.init is not None:
            yield stmt.init
        yield stmt.body
    elif isinstance(stmt, (ast.FunctionDecl, ast.RuleDecl)):
        yield stmt.body


def _inner_rules(stmt: ast.Stmt) -> Iterator[ast.RuleDecl]:
    for inner in _nested_statements(stmt):
        if isinstance(inner, ast.RuleDecl):
            yield inner
        yield from _inner_rules(inner)


def validate_rule_program(program: ast.Program) -> list[RuleValidationError]:
    """Check a parsed program is acceptable as a rule set."""
    errors: list[RuleValidationError] = []
    seen: set[str] = set()

    for stmt in program.statements:
        for nested in _inner_rules(stmt):
            errors.append(RuleValidationError(
                f"Rule '{nested.name}' must be declared at the top level", nested.line, nested.col
            ))

    for decl in program.rule_decls:
        if decl.name in seen:
            errors.append(RuleValidationError(
                f"Duplicate rule name '{decl.name}'", decl.line, decl.col
            ))
        seen.add(decl.name)
        if decl.name in RESERVED_NAMES:
            errors.append(RuleValidationError(
                f"Rule name '{decl.name}' collides with a builtin", decl.line, decl.col
            ))
        params: set[str] = set()
        for param in decl.params:
            if param.name in params:
                errors.append(RuleValidationError(
                    f"Duplicate parameter '{param.name}' in rule '{decl.name}'", decl.line, decl.col
                ))
            elif param.name in CELL_BINDINGS:
                errors.append(RuleValidationError(
                    f"Parameter '{param.name}' of rule '{decl.name}' shadows a cell binding",
                    decl.line,
                    decl.col,
                ))
            params.add(param.name)
    return errors


def compile_rules(source: str, max_errors: int = DEFAULT_MAX_ERRORS) -> CompileResult:
    """Lex, parse and validate a rule set."""
    try:
        program = parse_source(source, max_errors)
    except LexError as err:
        return CompileResult(ok=False, errors=[err])
    except ParseErrorGroup as group:
        return CompileResult(ok=False, errors=list(group.errors))

    problems = validate_rule_program(program)
    if problems:
        return CompileResult(ok=False, errors=list(problems))

    table = {decl.name: Rule.from_decl(decl) for decl in program.rule_decls}
    unit = CompilationUnit(
        source_hash=fnv1a_hash(source),
        source_text=source,
        program=program,
        rule_table=MappingProxyType(table),
    )
    return CompileResult(ok=True, rules=unit.rules, unit=unit)


# ═══════════════════════════════════════════════════════════════
# Registry
# ═══════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class RegistryStatus:
    has_staged: bool
    staged_hash: Optional[str]
    active_hash: Optional[str]
    active_rules: tuple[str, ...]


class RuleRegistry:
    """
    Holds the active rule set and at most one staged compilation unit.

    Args:
        activate: Builds the runtime rule set for a unit; raising MPLError
            rejects the unit
        events: Bus receiving ``rulesReloaded`` / ``rulesReloadError``
        max_errors: Syntax error cap per compile
    """

    def __init__(
        self,
        activate: Callable[[CompilationUnit], ActiveRuleSet],
        events: Optional[EventBus] = None,
        max_errors: int = DEFAULT_MAX_ERRORS,
    ):
        self._activate = activate
        self.events = events if events is not None else EventBus()
        self.max_errors = max_errors
        self.active: Optional[ActiveRuleSet] = None
        self.staged: Optional[CompilationUnit] = None

    def validate(self, source: str) -> CompileResult:
        """Compile without touching the staged slot."""
        return compile_rules(source, self.max_errors)

    def stage(self, source: str) -> CompileResult:
        result = compile_rules(source, self.max_errors)
        if result.ok:
            self.staged = result.unit
            logger.debug("Staged rule set %s (%d rules)", result.unit.source_hash, len(result.rules))
        else:
            logger.debug("Rejected rule set: %s", "; ".join(result.messages))
        return result

    def apply_staged(self) -> bool:
        unit = self.staged
        if unit is None:
            return False
        try:
            activated = self._activate(unit)
        except MPLError as err:
            logger.warning("Applying rule set %s failed: %s", unit.source_hash, err)
            self.events.emit(RULES_RELOAD_ERROR, RulesReloadError(errors=[str(err)]))
            return False

        self.active = activated
        self.staged = None
        logger.info("Rules reloaded: %s (%d rules)", unit.source_hash, len(activated))
        self.events.emit(RULES_RELOADED, RulesReloaded(source_hash=unit.source_hash, byte_size=unit.byte_size))
        return True

    def rollback_staged(self) -> None:
        self.staged = None

    def clear(self) -> None:
        """Drop both the active and the staged rule set."""
        self.active = None
        self.staged = None

    def status(self) -> RegistryStatus:
        active = self.active
        return RegistryStatus(
            has_staged=self.staged is not None,
            staged_hash=self.staged.source_hash if self.staged is not None else None,
            active_hash=active.unit.source_hash if active is not None else None,
            active_rules=tuple(r.rule_id for r in active) if active is not None else (),
        )

    @property
    def active_rules(self) -> tuple[ActiveRule, ...]:
        return self.active.rules if self.active is not None else ()
