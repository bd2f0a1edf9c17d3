"""
Lexical scope chain.

A scope maps names to values and links to its parent for lookup. Calls and
blocks create child scopes; closures keep their defining scope alive.
"""

from __future__ import annotations
from typing import Any, Optional

from mplcore.lang.errors import InvalidContext, UndefinedVariable


class Environment:
    __slots__ = ("values", "parent")

    read_only = False

    def __init__(self, parent: Optional["Environment"] = None):
        self.values: dict[str, Any] = {}
        self.parent = parent

    def child(self) -> "Environment":
        return Environment(self)

    def define(self, name: str, value: Any) -> None:
        """Bind in this scope; redeclaration overwrites."""
        self.values[name] = value

    def resolve(self, name: str) -> Optional["Environment"]:
        """Scope that binds ``name``, or None."""
        env: Optional[Environment] = self
        while env is not None:
            if name in env.values:
                return env
            env = env.parent
        return None

    def lookup(self, name: str, line: int = 0, col: int = 0) -> Any:
        env = self.resolve(name)
        if env is None:
            raise UndefinedVariable(f"Undefined variable '{name}'", line, col)
        return env.values[name]

    def assign(self, name: str, value: Any, line: int = 0, col: int = 0) -> None:
        env = self.resolve(name)
        if env is None:
            raise UndefinedVariable(f"Assignment to undeclared variable '{name}'", line, col)
        if env.read_only:
            raise InvalidContext(f"Cannot assign to cell binding '{name}'", line, col)
        env.values[name] = value

    def __contains__(self, name: str) -> bool:
        return self.resolve(name) is not None


class CellScope(Environment):
    """
    Bindings of the cell under evaluation, shared by every rule that runs for it.

    ``values`` is the tick's own binding dict, updated in place as the tick
    moves from cell to cell, so programs may read but not assign it.
    """

    __slots__ = ()

    read_only = True

    def __init__(self, bindings: dict[str, Any], parent: Optional[Environment] = None):
        super().__init__(parent)
        self.values = bindings
