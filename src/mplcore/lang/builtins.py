"""
Host-provided library: the ``Math`` object and the neighbourhood aggregates.

Grid builtins (``set``, ``clear``, ``step`` ...) need the interpreter's grid
API and live in the interpreter; this module holds the pieces that are pure
functions of their arguments and the cell under evaluation.
"""

from __future__ import annotations
from typing import Any, Callable, Optional, Protocol

import numpy as np

from mplcore.lang.errors import InvalidContext, TypeMismatch
from mplcore.lang.values import (
    NativeFunction,
    Neighborhood,
    UNDEFINED,
    to_number,
    type_name,
)


# Size of the 3D Moore neighbourhood; out-of-bounds members count as zeros.
MOORE_NEIGHBORHOOD_SIZE = 26

GRID_BUILTINS = frozenset({"set", "clear", "step", "layer", "get", "neighbor"})
LIBRARY_BUILTINS = frozenset({
    "print", "random", "seed", "len", "sum", "count", "avg", "min", "max",
})
GLOBAL_OBJECTS = frozenset({"Math"})

# Names bound for each cell while a tick evaluates a rule.
CELL_BINDINGS = frozenset({
    "cell", "alive", "cellX", "cellY", "cellZ", "cellLayer", "neighbors",
    "neighborsAlive", "gridWidth", "gridHeight", "gridDepth", "currentStep",
})

RESERVED_NAMES = GRID_BUILTINS | LIBRARY_BUILTINS | GLOBAL_OBJECTS


class CellContext(Protocol):
    """The cell a rule is being evaluated for, read from the pre-tick buffer."""

    layer: int
    x: int
    y: int
    z: int
    value: int
    step: int
    size: tuple[int, int, int]  # (x, y, z)
    bindings: dict[str, Any]  # CELL_BINDINGS names for the current cell

    def read(self, dx: int, dy: int, dz: int) -> int: ...

    @property
    def neighbors_alive(self) -> int: ...

    @property
    def neighbor_sum(self) -> int: ...

    @property
    def neighbor_max(self) -> int: ...

    @property
    def neighbor_min(self) -> int: ...


def _unary(name: str, ufunc: Callable[[Any], Any]) -> NativeFunction:
    def fn(x: Any) -> float:
        with np.errstate(all="ignore"):
            return float(ufunc(to_number(x, f"Math.{name}")))
    return NativeFunction(f"Math.{name}", fn, arity=1)


def _binary(name: str, ufunc: Callable[[Any, Any], Any]) -> NativeFunction:
    def fn(a: Any, b: Any) -> float:
        with np.errstate(all="ignore"):
            return float(ufunc(to_number(a, f"Math.{name}"), to_number(b, f"Math.{name}")))
    return NativeFunction(f"Math.{name}", fn, arity=2)


def _js_round(x: Any) -> Any:
    # Halves round up; x + 0.5 would lose the fraction of 0.49999999999999994
    floor = np.floor(x)
    return floor + 1.0 if x - floor >= 0.5 else floor


def make_math_object(random_source: Callable[[], float]) -> dict[str, Any]:
    """Build the ``Math`` global; ``random_source`` supplies seeded draws."""
    math_obj: dict[str, Any] = {
        "PI": float(np.pi),
        "E": float(np.e),
    }
    for name, ufunc in (
        ("floor", np.floor),
        ("ceil", np.ceil),
        ("round", _js_round),
        ("trunc", np.trunc),
        ("abs", np.abs),
        ("sign", np.sign),
        ("sqrt", np.sqrt),
        ("cbrt", np.cbrt),
        ("exp", np.exp),
        ("log", np.log),
        ("log2", np.log2),
        ("log10", np.log10),
        ("sin", np.sin),
        ("cos", np.cos),
        ("tan", np.tan),
        ("asin", np.arcsin),
        ("acos", np.arccos),
        ("atan", np.arctan),
    ):
        math_obj[name] = _unary(name, ufunc)
    for name, ufunc in (
        ("atan2", np.arctan2),
        ("pow", np.power),
        ("hypot", np.hypot),
    ):
        math_obj[name] = _binary(name, ufunc)
    math_obj["min"] = NativeFunction("Math.min", lambda *args: minimum(list(args), None))
    math_obj["max"] = NativeFunction("Math.max", lambda *args: maximum(list(args), None))
    math_obj["random"] = NativeFunction("Math.random", lambda: float(random_source()), arity=0)
    return math_obj


def _require_cell(cell: Optional[CellContext], what: str) -> CellContext:
    if cell is None:
        raise InvalidContext(f"{what} is only available while a rule runs in a tick")
    return cell


def _numbers(values: list[Any], what: str) -> list[float]:
    return [to_number(v, what) for v in values]


def _spread(args: list[Any]) -> Optional[list[Any]]:
    """Single array argument spreads into its elements."""
    if len(args) == 1 and isinstance(args[0], list):
        return args[0]
    return None


def total(args: list[Any], cell: Optional[CellContext]) -> float:
    if len(args) == 1 and isinstance(args[0], Neighborhood):
        return float(_require_cell(cell, "sum(neighbors)").neighbor_sum)
    items = _spread(args)
    return float(sum(_numbers(items if items is not None else args, "sum")))


def count(args: list[Any], cell: Optional[CellContext]) -> float:
    if not args:
        raise TypeMismatch("count() expects an argument")
    target = args[0]
    if isinstance(target, Neighborhood):
        _require_cell(cell, "count(neighbors)")
        return float(MOORE_NEIGHBORHOOD_SIZE)
    if isinstance(target, (list, str, dict)):
        return float(len(target))
    raise TypeMismatch(f"count() cannot measure {type_name(target)}")


def average(args: list[Any], cell: Optional[CellContext]) -> float:
    n = count(args, cell)
    if n == 0:
        return float("nan")
    return total(args, cell) / n


def maximum(args: list[Any], cell: Optional[CellContext]) -> float:
    if len(args) == 1 and isinstance(args[0], Neighborhood):
        return float(_require_cell(cell, "max(neighbors)").neighbor_max)
    items = _spread(args)
    nums = _numbers(items if items is not None else args, "max")
    if any(n != n for n in nums):
        return float("nan")
    return max(nums, default=float("-inf"))


def minimum(args: list[Any], cell: Optional[CellContext]) -> float:
    if len(args) == 1 and isinstance(args[0], Neighborhood):
        return float(_require_cell(cell, "min(neighbors)").neighbor_min)
    items = _spread(args)
    nums = _numbers(items if items is not None else args, "min")
    if any(n != n for n in nums):
        return float("nan")
    return min(nums, default=float("inf"))


def length(args: list[Any]) -> float:
    target = args[0] if args else UNDEFINED
    if isinstance(target, (list, str, dict)):
        return float(len(target))
    raise TypeMismatch(f"len() cannot measure {type_name(target)}")


def coordinate(value: Any, what: str) -> Optional[int]:
    """Grid coordinate from an MPL number; None for NaN/infinite values."""
    num = to_number(value, what)
    if not np.isfinite(num):
        return None
    return int(np.floor(num))
