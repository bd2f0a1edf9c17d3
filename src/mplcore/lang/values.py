"""
Runtime values and the coercion rules that apply to them.

MPL values map onto plain Python objects:

    Number     float (always float, never int)
    String     str
    Bool       bool
    Array      list
    Object     dict (insertion ordered)
    Function   FunctionValue / NativeFunction
    Undefined  UNDEFINED

plus the Neighborhood marker bound as ``neighbors`` while a tick runs.
Every implicit conversion lives in this module so call sites never improvise
their own.
"""

from __future__ import annotations
from dataclasses import dataclass
import math
import re
from typing import TYPE_CHECKING, Any, Callable, Optional

from mplcore.lang.errors import TypeMismatch

if TYPE_CHECKING:
    from mplcore.lang import ast
    from mplcore.lang.environment import Environment


class _Undefined:
    _instance: Optional["_Undefined"] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "undefined"

    def __bool__(self) -> bool:
        return False


UNDEFINED = _Undefined()


@dataclass(eq=False)
class FunctionValue:
    """A user function or rule closed over its defining scope."""

    name: str
    params: tuple["ast.Param", ...]
    body: "ast.Block"
    closure: "Environment"
    kind: str = "function"  # "function" or "rule"

    def __repr__(self) -> str:
        return f"<{self.kind} {self.name or 'anonymous'}>"


@dataclass(eq=False)
class NativeFunction:
    """A host-implemented callable reachable as a value (e.g. ``Math.floor``)."""

    name: str
    fn: Callable[..., Any]
    arity: Optional[int] = None  # None means variadic

    def __call__(self, args: list[Any]) -> Any:
        if self.arity is not None:
            args = list(args[:self.arity]) + [UNDEFINED] * max(0, self.arity - len(args))
        return self.fn(*args)

    def __repr__(self) -> str:
        return f"<native {self.name}>"


class Neighborhood:
    """Stand-in for the 26-cell Moore neighbourhood of the cell under evaluation.

    Aggregate builtins (``sum``, ``max``, ``count`` ...) recognise it and read
    precomputed per-tick fields instead of materialising the neighbours.
    """

    __slots__ = ()

    def __repr__(self) -> str:
        return "<neighbors>"


NEIGHBORS = Neighborhood()

_NUMERIC_STRING = re.compile(r"^\s*[+-]?(\d+(\.\d*)?|\.\d+)\s*$")


def is_number(value: Any) -> bool:
    return isinstance(value, float) and not isinstance(value, bool)


def is_numeric_like(value: Any) -> bool:
    if is_number(value):
        return True
    return isinstance(value, str) and bool(_NUMERIC_STRING.match(value))


def is_callable(value: Any) -> bool:
    return isinstance(value, (FunctionValue, NativeFunction))


def to_number(value: Any, context: str = "operand") -> float:
    """Coerce a number or numeric-like string; anything else is a TypeMismatch."""
    if is_number(value):
        return value
    if isinstance(value, str) and _NUMERIC_STRING.match(value):
        return float(value)
    raise TypeMismatch(f"Expected a number for {context}, got {type_name(value)}")


def truthy(value: Any) -> bool:
    if value is UNDEFINED or value is False:
        return False
    if is_number(value):
        return value != 0.0 and not math.isnan(value)
    if isinstance(value, str):
        return value != ""
    return True


def type_name(value: Any) -> str:
    if value is UNDEFINED:
        return "undefined"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    if is_callable(value):
        return "function"
    if isinstance(value, Neighborhood):
        return "neighbors"
    return type(value).__name__


def format_number(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    if value.is_integer():
        return str(int(value))
    return repr(value)


def to_display(value: Any) -> str:
    """String form used by ``print`` and string concatenation."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return format_number(value)
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return "[" + ", ".join(to_display(v) for v in value) + "]"
    if isinstance(value, dict):
        inner = ", ".join(f"{k}: {to_display(v)}" for k, v in value.items())
        return "{" + inner + "}"
    return repr(value)


def from_python(value: Any) -> Any:
    """Normalise a host value (ints, tuples, numpy scalars) into an MPL value."""
    if value is None:
        return UNDEFINED
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return float(value)
    if hasattr(value, "item") and not isinstance(value, (list, dict, str)):
        return from_python(value.item())
    if isinstance(value, (list, tuple)):
        return [from_python(v) for v in value]
    if isinstance(value, dict):
        return {str(k): from_python(v) for k, v in value.items()}
    return value


def strict_equals(a: Any, b: Any) -> bool:
    if is_number(a) and is_number(b):
        return a == b
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a is b
    if isinstance(a, str) and isinstance(b, str):
        return a == b
    return a is b


def to_index(value: Any) -> Optional[int]:
    """Integral array index, or None when the value cannot index anything."""
    if is_number(value) and math.isfinite(value) and value.is_integer():
        return int(value)
    if isinstance(value, str) and _NUMERIC_STRING.match(value):
        return to_index(float(value))
    return None


def to_cell_value(value: Any, full_intensity: int = 255) -> Optional[int]:
    """Byte written to the grid for a rule result; None means "no write"."""
    if value is UNDEFINED:
        return None
    if isinstance(value, bool):
        return full_intensity if value else 0
    if is_number(value):
        if math.isnan(value):
            return 0
        return int(round(min(255.0, max(0.0, value))))
    raise TypeMismatch(f"Rule result must be a number or bool, got {type_name(value)}")
