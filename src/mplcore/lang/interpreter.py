"""
Tree-walking evaluator for MPL programs.

Statements and expressions are dispatched on their node type. Side effects
are limited to:
- scope mutation (``var``, assignment)
- grid mutation through the GridAPI the interpreter was built with
- diagnostics (``print`` output, logging, the tracing port)

The same interpreter evaluates simulation rules during a tick: the scheduler
hands it one cell at a time through ``evaluate_rule`` and the cell's
pre-tick state is bound into the rule scope.
"""

from __future__ import annotations
from contextlib import contextmanager
import logging
import math
import sys
import threading
from typing import Any, Callable, ContextManager, Iterator, Optional, Protocol

import numpy as np

from mplcore.lang import ast
from mplcore.lang import builtins
from mplcore.lang.builtins import CellContext
from mplcore.lang.environment import CellScope, Environment
from mplcore.lang.errors import (
    BudgetExceeded,
    ExecutionCancelled,
    InvalidContext,
    MPLRuntimeError,
    NotIterable,
    StackOverflow,
    TypeMismatch,
    UndefinedCallable,
)
from mplcore.lang.tracing import NULL_TRACER, Tracer
from mplcore.lang.values import (
    UNDEFINED,
    FunctionValue,
    NativeFunction,
    from_python,
    is_callable,
    is_numeric_like,
    strict_equals,
    to_display,
    to_index,
    to_number,
    truthy,
    type_name,
)

logger = logging.getLogger(__name__)


DEFAULT_MAX_CALL_DEPTH = 1000

# Python frames consumed per MPL call level, used to size the host recursion limit.
_FRAMES_PER_CALL = 24


class GridAPI(Protocol):
    """Grid operations the evaluator may perform."""

    def set_cell(self, x: int, y: int, z: int) -> None: ...

    def get_cell(self, x: int, y: int, z: int) -> int: ...

    def clear(self) -> None: ...

    def step(self) -> None: ...

    def select_layer(self, n: int) -> None: ...


class _ReturnSignal(Exception):
    def __init__(self, value: Any):
        super().__init__("return")
        self.value = value


class _BreakSignal(Exception):
    pass


class _ContinueSignal(Exception):
    pass


@contextmanager
def _recursion_headroom(max_depth: int) -> Iterator[None]:
    needed = max_depth * _FRAMES_PER_CALL + 1000
    current = sys.getrecursionlimit()
    if needed > current:
        sys.setrecursionlimit(needed)
    try:
        yield
    finally:
        if needed > current:
            sys.setrecursionlimit(current)


class Interpreter:
    """
    Evaluates programs against a global scope and a grid.

    Args:
        grid: Grid operations used by ``set``/``clear``/``step``/``layer``/``get``
        max_call_depth: Deepest allowed function/rule nesting
        max_statements: Optional statement budget per run (None = unlimited)
        seed: Seed for ``random()``/``Math.random()``
        cancel_event: Cooperative cancellation flag checked between statements
    """

    def __init__(
        self,
        grid: GridAPI,
        *,
        max_call_depth: int = DEFAULT_MAX_CALL_DEPTH,
        max_statements: Optional[int] = None,
        seed: int = 0,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.grid = grid
        self.max_call_depth = max_call_depth
        self.max_statements = max_statements
        self.cancel_event = cancel_event if cancel_event is not None else threading.Event()
        self.output: list[str] = []

        # Program-declared callables, by name (rules here are callables only)
        self.functions: dict[str, FunctionValue] = {}
        self.rules: dict[str, FunctionValue] = {}

        self.cell: Optional[CellContext] = None
        self.tracer: Tracer = NULL_TRACER
        self._rule_id: Optional[str] = None
        self._scope_cell: Optional[CellContext] = None
        self._cell_scopes: dict[int, CellScope] = {}

        self._depth = 0
        self._run_depth = 0
        self._statements = 0

        self._stmt_handlers: dict[type, Callable[[Any, Environment], None]] = {
            ast.VarDecl: self._exec_var_decl,
            ast.ExprStmt: self._exec_expr_stmt,
            ast.Block: self._exec_block,
            ast.If: self._exec_if,
            ast.While: self._exec_while,
            ast.For: self._exec_for,
            ast.ForOf: self._exec_for_of,
            ast.FunctionDecl: self._exec_function_decl,
            ast.RuleDecl: self._exec_rule_decl,
            ast.Return: self._exec_return,
            ast.Break: self._exec_break,
            ast.Continue: self._exec_continue,
        }
        self._expr_handlers: dict[type, Callable[[Any, Environment], Any]] = {
            ast.Literal: self._eval_literal,
            ast.Identifier: self._eval_identifier,
            ast.Binary: self._eval_binary,
            ast.Logical: self._eval_logical,
            ast.Unary: self._eval_unary,
            ast.Call: self._eval_call,
            ast.Assign: self._eval_assign,
            ast.Member: self._eval_member,
            ast.ArrayLit: self._eval_array,
            ast.ObjectLit: self._eval_object,
            ast.FunctionExpr: self._eval_function_expr,
        }
        self._builtins: dict[str, Callable[[list[Any], ast.Call], Any]] = {
            "set": self._builtin_set,
            "clear": self._builtin_clear,
            "step": self._builtin_step,
            "layer": self._builtin_layer,
            "get": self._builtin_get,
            "neighbor": self._builtin_neighbor,
            "print": self._builtin_print,
            "random": lambda args, node: float(self.rng.random()),
            "seed": self._builtin_seed,
            "len": lambda args, node: builtins.length(args),
            "sum": lambda args, node: builtins.total(args, self.cell),
            "count": lambda args, node: builtins.count(args, self.cell),
            "avg": lambda args, node: builtins.average(args, self.cell),
            "min": lambda args, node: builtins.minimum(args, self.cell),
            "max": lambda args, node: builtins.maximum(args, self.cell),
        }

        self.reset(seed)

    def reset(self, seed: int = 0) -> None:
        """Drop all program state and start from a fresh global scope."""
        self.rng = np.random.default_rng(seed)
        self.globals = Environment()
        self.globals.define("Math", builtins.make_math_object(lambda: self.rng.random()))
        self.functions.clear()
        self.rules.clear()
        self.output.clear()
        self._scope_cell = None
        self._cell_scopes = {}
        self._depth = 0
        self._statements = 0

    def define_global(self, name: str, value: Any) -> None:
        """Expose a host value to programs."""
        self.globals.define(name, from_python(value))

    @property
    def running(self) -> bool:
        return self._run_depth > 0

    # ─────────────────────────────────────────────────────────────
    # Entry points
    # ─────────────────────────────────────────────────────────────

    def run(
        self,
        program: ast.Program,
        env: Optional[Environment] = None,
        *,
        continue_on_error: bool = False,
    ) -> list[MPLRuntimeError]:
        """
        Execute top-level statements in order.

        With ``continue_on_error`` a failing statement is logged and skipped;
        the collected errors are returned. Otherwise the first error raises.
        """
        env = env if env is not None else self.globals
        errors: list[MPLRuntimeError] = []
        if self._run_depth == 0:
            self._statements = 0
        self._run_depth += 1
        try:
            with _recursion_headroom(self.max_call_depth):
                for stmt in program.statements:
                    try:
                        self._run_top_level(stmt, env)
                    except MPLRuntimeError as err:
                        if not continue_on_error:
                            raise
                        logger.warning("Skipping statement at %d:%d: %s", stmt.line, stmt.col, err)
                        errors.append(err)
        finally:
            self._run_depth -= 1
        return errors

    def _run_top_level(self, stmt: ast.Stmt, env: Environment) -> None:
        try:
            self.execute(stmt, env)
        except RecursionError:
            raise StackOverflow("Host recursion limit reached", stmt.line, stmt.col) from None

    def recursion_headroom(self) -> ContextManager[None]:
        """Raise the host recursion limit for a batch of rule evaluations."""
        return _recursion_headroom(self.max_call_depth)

    def evaluate_rule(
        self,
        rule: FunctionValue,
        cell: CellContext,
        parameters: Optional[dict[str, Any]] = None,
        tracer: Tracer = NULL_TRACER,
    ) -> Any:
        """
        Evaluate an active simulation rule for one cell.

        The returned value is the rule's action (``undefined`` = no match).
        Callers evaluating many cells enter ``recursion_headroom`` once around
        the batch; the cell's bindings are read from ``cell.bindings`` in place.
        """
        saved = (self.cell, self.tracer, self._rule_id)
        self.cell, self.tracer, self._rule_id = cell, tracer, rule.name
        try:
            try:
                result = self.invoke(
                    rule,
                    [],
                    line=rule.body.line,
                    col=rule.body.col,
                    parent=self._cell_scope(cell, rule.closure),
                    overrides=parameters,
                )
            except RecursionError:
                raise StackOverflow(
                    f"Host recursion limit reached in rule '{rule.name}'",
                    rule.body.line,
                    rule.body.col,
                ) from None
            if tracer.enabled:
                tracer.predicate(
                    rule.name, "match", result is not UNDEFINED, {"result": to_display(result)}
                )
            return result
        finally:
            self.cell, self.tracer, self._rule_id = saved

    def reset_budget(self) -> None:
        if self._run_depth == 0:
            self._statements = 0

    def _cell_scope(self, cell: CellContext, closure: Environment) -> CellScope:
        # One scope per (cell view, closure); the view rewrites its bindings per cell
        if self._scope_cell is not cell:
            self._scope_cell = cell
            self._cell_scopes = {}
        scope = self._cell_scopes.get(id(closure))
        if scope is None or scope.parent is not closure:
            scope = self._cell_scopes[id(closure)] = CellScope(cell.bindings, closure)
        return scope

    # ─────────────────────────────────────────────────────────────
    # Statements
    # ─────────────────────────────────────────────────────────────

    def execute(self, stmt: ast.Stmt, env: Environment) -> None:
        self._statements += 1
        if self.max_statements is not None and self._statements > self.max_statements:
            raise BudgetExceeded(
                f"Statement budget of {self.max_statements} exhausted", stmt.line, stmt.col
            )
        if self.cancel_event.is_set():
            self.cancel_event.clear()
            raise ExecutionCancelled("Execution cancelled", stmt.line, stmt.col)
        self._stmt_handlers[type(stmt)](stmt, env)

    def _exec_var_decl(self, stmt: ast.VarDecl, env: Environment) -> None:
        for binding in stmt.bindings:
            value = self.evaluate(binding.init, env) if binding.init is not None else UNDEFINED
            env.define(binding.name, value)

    def _exec_expr_stmt(self, stmt: ast.ExprStmt, env: Environment) -> None:
        self.evaluate(stmt.expr, env)

    def _exec_block(self, stmt: ast.Block, env: Environment) -> None:
        scope = env.child()
        for inner in stmt.body:
            self.execute(inner, scope)

    def _condition(self, kind: str, expr: ast.Expr, env: Environment) -> bool:
        value = self.evaluate(expr, env)
        ok = truthy(value)
        if self.tracer.enabled and self._rule_id is not None:
            self.tracer.predicate(
                self._rule_id, f"{kind}@{expr.line}:{expr.col}", ok, {"value": to_display(value)}
            )
        return ok

    def _exec_if(self, stmt: ast.If, env: Environment) -> None:
        if self._condition("if", stmt.condition, env):
            self.execute(stmt.then_branch, env)
        elif stmt.else_branch is not None:
            self.execute(stmt.else_branch, env)

    def _exec_while(self, stmt: ast.While, env: Environment) -> None:
        while self._condition("while", stmt.condition, env):
            try:
                self.execute(stmt.body, env)
            except _BreakSignal:
                break
            except _ContinueSignal:
                continue

    def _exec_for(self, stmt: ast.For, env: Environment) -> None:
        scope = env.child()
        if stmt.init is not None:
            self.execute(stmt.init, scope)
        while stmt.condition is None or self._condition("for", stmt.condition, scope):
            try:
                self.execute(stmt.body, scope)
            except _BreakSignal:
                break
            except _ContinueSignal:
                pass
            if stmt.update is not None:
                self.evaluate(stmt.update, scope)

    def _exec_for_of(self, stmt: ast.ForOf, env: Environment) -> None:
        iterable = self.evaluate(stmt.iterable, env)
        if isinstance(iterable, list):
            items = list(iterable)
        elif isinstance(iterable, dict):
            items = list(iterable.values())
        elif isinstance(iterable, str):
            items = list(iterable)
        else:
            raise NotIterable(
                f"Cannot iterate over {type_name(iterable)}", stmt.iterable.line, stmt.iterable.col
            )
        scope = env.child()
        for item in items:
            scope.define(stmt.name, item)
            try:
                self.execute(stmt.body, scope)
            except _BreakSignal:
                break
            except _ContinueSignal:
                continue

    def _exec_function_decl(self, stmt: ast.FunctionDecl, env: Environment) -> None:
        fn = FunctionValue(stmt.name, stmt.params, stmt.body, env, kind="function")
        env.define(stmt.name, fn)
        if env is self.globals:
            self.functions[stmt.name] = fn

    def _exec_rule_decl(self, stmt: ast.RuleDecl, env: Environment) -> None:
        rule = FunctionValue(stmt.name, stmt.params, stmt.body, env, kind="rule")
        env.define(stmt.name, rule)
        if env is self.globals:
            self.rules[stmt.name] = rule

    def _exec_return(self, stmt: ast.Return, env: Environment) -> None:
        value = self.evaluate(stmt.value, env) if stmt.value is not None else UNDEFINED
        raise _ReturnSignal(value)

    def _exec_break(self, stmt: ast.Break, env: Environment) -> None:
        raise _BreakSignal()

    def _exec_continue(self, stmt: ast.Continue, env: Environment) -> None:
        raise _ContinueSignal()

    # ─────────────────────────────────────────────────────────────
    # Expressions
    # ─────────────────────────────────────────────────────────────

    def evaluate(self, expr: ast.Expr, env: Environment) -> Any:
        return self._expr_handlers[type(expr)](expr, env)

    def _eval_literal(self, expr: ast.Literal, env: Environment) -> Any:
        return expr.value

    def _eval_identifier(self, expr: ast.Identifier, env: Environment) -> Any:
        return env.lookup(expr.name, expr.line, expr.col)

    def _eval_array(self, expr: ast.ArrayLit, env: Environment) -> list:
        return [self.evaluate(item, env) for item in expr.items]

    def _eval_object(self, expr: ast.ObjectLit, env: Environment) -> dict:
        return {key: self.evaluate(value, env) for key, value in expr.entries}

    def _eval_function_expr(self, expr: ast.FunctionExpr, env: Environment) -> FunctionValue:
        return FunctionValue("", expr.params, expr.body, env, kind="function")

    def _eval_unary(self, expr: ast.Unary, env: Environment) -> Any:
        operand = self.evaluate(expr.operand, env)
        if expr.op == "!":
            return not truthy(operand)
        num = self._number(operand, expr.op, expr)
        return -num if expr.op == "-" else num

    def _eval_logical(self, expr: ast.Logical, env: Environment) -> Any:
        left = self.evaluate(expr.left, env)
        if expr.op == "||":
            return left if truthy(left) else self.evaluate(expr.right, env)
        return self.evaluate(expr.right, env) if truthy(left) else left

    def _eval_binary(self, expr: ast.Binary, env: Environment) -> Any:
        left = self.evaluate(expr.left, env)
        right = self.evaluate(expr.right, env)
        return self.binary(expr.op, left, right, expr)

    def binary(self, op: str, a: Any, b: Any, node: ast.Node) -> Any:
        if op == "==":
            return strict_equals(a, b)
        if op == "!=":
            return not strict_equals(a, b)

        both_numeric = is_numeric_like(a) and is_numeric_like(b)

        if op == "+" and not both_numeric and (isinstance(a, str) or isinstance(b, str)):
            return to_display(a) + to_display(b)

        if op in ("<", "<=", ">", ">="):
            if isinstance(a, str) and isinstance(b, str) and not both_numeric:
                x, y = a, b
            else:
                x, y = self._operands(op, a, b, node)
            if op == "<":
                return x < y
            if op == "<=":
                return x <= y
            if op == ">":
                return x > y
            return x >= y

        x, y = self._operands(op, a, b, node)
        if op == "+":
            return x + y
        if op == "-":
            return x - y
        if op == "*":
            return x * y
        if op == "/":
            return _divide(x, y)
        if op == "%":
            return _modulo(x, y)
        raise TypeMismatch(f"Unknown operator '{op}'", node.line, node.col)

    def _operands(self, op: str, a: Any, b: Any, node: ast.Node) -> tuple[float, float]:
        if not (is_numeric_like(a) and is_numeric_like(b)):
            raise TypeMismatch(
                f"Cannot apply '{op}' to {type_name(a)} and {type_name(b)}", node.line, node.col
            )
        return to_number(a), to_number(b)

    def _number(self, value: Any, op: str, node: ast.Node) -> float:
        if not is_numeric_like(value):
            raise TypeMismatch(f"Cannot apply '{op}' to {type_name(value)}", node.line, node.col)
        return to_number(value)

    def _eval_assign(self, expr: ast.Assign, env: Environment) -> Any:
        target = expr.target
        if isinstance(target, ast.Identifier):
            value = self.evaluate(expr.value, env)
            env.assign(target.name, value, target.line, target.col)
            return value
        obj = self.evaluate(target.obj, env)
        key = self._member_key(target, env)
        value = self.evaluate(expr.value, env)
        self._set_member(obj, key, value, target)
        return value

    def _member_key(self, expr: ast.Member, env: Environment) -> Any:
        if expr.computed:
            return self.evaluate(expr.prop, env)
        return expr.prop.value

    def _eval_member(self, expr: ast.Member, env: Environment) -> Any:
        obj = self.evaluate(expr.obj, env)
        return self._get_member(obj, self._member_key(expr, env), expr)

    def _get_member(self, obj: Any, key: Any, node: ast.Node) -> Any:
        if isinstance(obj, dict):
            return obj.get(to_display(key), UNDEFINED)
        if isinstance(obj, (list, str)):
            if key == "length":
                return float(len(obj))
            index = to_index(key)
            if index is not None and 0 <= index < len(obj):
                return obj[index]
            return UNDEFINED
        raise TypeMismatch(
            f"Cannot read property '{to_display(key)}' of {type_name(obj)}", node.line, node.col
        )

    def _set_member(self, obj: Any, key: Any, value: Any, node: ast.Node) -> None:
        if isinstance(obj, dict):
            obj[to_display(key)] = value
            return
        if isinstance(obj, list):
            index = to_index(key)
            if index is not None and 0 <= index < len(obj):
                obj[index] = value
                return
            if index == len(obj):
                obj.append(value)
                return
            raise TypeMismatch(f"Array index {to_display(key)} out of range", node.line, node.col)
        raise TypeMismatch(
            f"Cannot set property '{to_display(key)}' on {type_name(obj)}", node.line, node.col
        )

    # ─────────────────────────────────────────────────────────────
    # Calls
    # ─────────────────────────────────────────────────────────────

    def _eval_call(self, expr: ast.Call, env: Environment) -> Any:
        callee = expr.callee
        if isinstance(callee, ast.Identifier):
            name = callee.name
            scope = env.resolve(name)
            target = scope.values[name] if scope is not None else None
            args = [self.evaluate(arg, env) for arg in expr.args]
            if target is not None and is_callable(target):
                return self.call(target, args, expr)
            builtin = self._builtins.get(name)
            if builtin is not None:
                with _located(expr):
                    return builtin(args, expr)
            if scope is not None:
                raise TypeMismatch(
                    f"'{name}' is a {type_name(target)}, not a function", expr.line, expr.col
                )
            raise UndefinedCallable(f"Undefined function or rule '{name}'", callee.line, callee.col)

        fn = self.evaluate(callee, env)
        args = [self.evaluate(arg, env) for arg in expr.args]
        if not is_callable(fn):
            raise TypeMismatch(f"Cannot call a {type_name(fn)}", expr.line, expr.col)
        return self.call(fn, args, expr)

    def call(self, fn: Any, args: list[Any], node: Optional[ast.Node] = None) -> Any:
        line = node.line if node is not None else 0
        col = node.col if node is not None else 0
        if isinstance(fn, NativeFunction):
            with _located(node):
                return fn(args)
        return self.invoke(fn, args, line=line, col=col)

    def invoke(
        self,
        fn: FunctionValue,
        args: list[Any],
        *,
        line: int = 0,
        col: int = 0,
        parent: Optional[Environment] = None,
        overrides: Optional[dict[str, Any]] = None,
    ) -> Any:
        """Call a user function or rule in a fresh child scope of ``parent`` (default: its closure)."""
        if self._depth >= self.max_call_depth:
            raise StackOverflow(
                f"Maximum call depth of {self.max_call_depth} exceeded in '{fn.name}'", line, col
            )
        scope = (parent if parent is not None else fn.closure).child()
        for i, param in enumerate(fn.params):
            if i < len(args):
                value = args[i]
            elif overrides and param.name in overrides:
                value = overrides[param.name]
            elif param.default is not None:
                value = self.evaluate(param.default, scope)
            else:
                value = UNDEFINED
            scope.define(param.name, value)

        self._depth += 1
        try:
            for stmt in fn.body.body:
                self.execute(stmt, scope)
        except _ReturnSignal as ret:
            return ret.value
        finally:
            self._depth -= 1
        return UNDEFINED

    # ─────────────────────────────────────────────────────────────
    # Builtins
    # ─────────────────────────────────────────────────────────────

    def _coordinates(self, args: list[Any], node: ast.Call, name: str) -> Optional[tuple[int, int, int]]:
        if len(args) < 2:
            raise TypeMismatch(f"{name}() expects at least x and y", node.line, node.col)
        try:
            x = builtins.coordinate(args[0], f"{name}() x")
            y = builtins.coordinate(args[1], f"{name}() y")
            z = builtins.coordinate(args[2], f"{name}() z") if len(args) > 2 else 0
        except TypeMismatch as err:
            raise TypeMismatch(err.message, node.line, node.col) from None
        if x is None or y is None or z is None:
            return None
        return x, y, z

    def _forbid_in_tick(self, name: str, node: ast.Call) -> None:
        if self.cell is not None:
            raise InvalidContext(f"{name}() cannot be called while a tick is running", node.line, node.col)

    def _builtin_set(self, args: list[Any], node: ast.Call) -> Any:
        coords = self._coordinates(args, node, "set")
        if coords is not None:
            self.grid.set_cell(*coords)
        return UNDEFINED

    def _builtin_get(self, args: list[Any], node: ast.Call) -> Any:
        coords = self._coordinates(args, node, "get")
        if coords is None:
            return 0.0
        return float(self.grid.get_cell(*coords))

    def _builtin_clear(self, args: list[Any], node: ast.Call) -> Any:
        self._forbid_in_tick("clear", node)
        self.grid.clear()
        return UNDEFINED

    def _builtin_step(self, args: list[Any], node: ast.Call) -> Any:
        self._forbid_in_tick("step", node)
        self.grid.step()
        return UNDEFINED

    def _builtin_layer(self, args: list[Any], node: ast.Call) -> Any:
        self._forbid_in_tick("layer", node)
        if not args:
            raise TypeMismatch("layer() expects a layer number", node.line, node.col)
        n = builtins.coordinate(args[0], "layer()")
        if n is not None:
            self.grid.select_layer(n)
        return UNDEFINED

    def _builtin_neighbor(self, args: list[Any], node: ast.Call) -> Any:
        if self.cell is None:
            raise InvalidContext("neighbor() is only available inside a tick", node.line, node.col)
        coords = self._coordinates(args, node, "neighbor")
        if coords is None:
            return 0.0
        return float(self.cell.read(*coords))

    def _builtin_print(self, args: list[Any], node: ast.Call) -> Any:
        message = " ".join(to_display(a) for a in args)
        self.output.append(message)
        logger.info("mpl: %s", message)
        return UNDEFINED

    def _builtin_seed(self, args: list[Any], node: ast.Call) -> Any:
        value = to_number(args[0] if args else UNDEFINED, "seed()")
        self.rng = np.random.default_rng(abs(int(value)) if math.isfinite(value) else 0)
        return UNDEFINED


def _divide(x: float, y: float) -> float:
    if y == 0.0:
        if x == 0.0 or math.isnan(x):
            return math.nan
        return math.copysign(math.inf, x) * math.copysign(1.0, y)
    return x / y


def _modulo(x: float, y: float) -> float:
    if y == 0.0 or math.isnan(x) or math.isnan(y) or math.isinf(x):
        return math.nan
    return math.fmod(x, y)


@contextmanager
def _located(node: Optional[ast.Node]) -> Iterator[None]:
    """Attach the call site position to runtime errors raised without one."""
    try:
        yield
    except MPLRuntimeError as err:
        if err.line or node is None:
            raise
        raise type(err)(err.message, node.line, node.col) from None
