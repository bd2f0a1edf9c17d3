"""
AST node types.

Every node is a frozen dataclass with tuple children, so a parsed program can
be shared between the staged and active rule sets without copying.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Optional, Union


@dataclass(frozen=True)
class Node:
    line: int
    col: int


# Expressions

@dataclass(frozen=True)
class Literal(Node):
    value: Any


@dataclass(frozen=True)
class Identifier(Node):
    name: str


@dataclass(frozen=True)
class Binary(Node):
    op: str
    left: "Expr"
    right: "Expr"


@dataclass(frozen=True)
class Logical(Node):
    op: str  # "&&" or "||"
    left: "Expr"
    right: "Expr"


@dataclass(frozen=True)
class Unary(Node):
    op: str
    operand: "Expr"


@dataclass(frozen=True)
class Call(Node):
    callee: "Expr"
    args: tuple["Expr", ...]


@dataclass(frozen=True)
class Assign(Node):
    target: "Expr"  # Identifier or Member
    value: "Expr"


@dataclass(frozen=True)
class Member(Node):
    obj: "Expr"
    prop: "Expr"  # Literal name for ``a.b``, any expression for ``a[b]``
    computed: bool


@dataclass(frozen=True)
class ArrayLit(Node):
    items: tuple["Expr", ...]


@dataclass(frozen=True)
class ObjectLit(Node):
    entries: tuple[tuple[str, "Expr"], ...]


@dataclass(frozen=True)
class Param:
    name: str
    default: Optional["Expr"] = None


@dataclass(frozen=True)
class FunctionExpr(Node):
    params: tuple[Param, ...]
    body: "Block"


Expr = Union[
    Literal, Identifier, Binary, Logical, Unary, Call, Assign, Member,
    ArrayLit, ObjectLit, FunctionExpr,
]


# Statements

@dataclass(frozen=True)
class VarBinding:
    name: str
    init: Optional[Expr]


@dataclass(frozen=True)
class VarDecl(Node):
    bindings: tuple[VarBinding, ...]


@dataclass(frozen=True)
class ExprStmt(Node):
    expr: Expr


@dataclass(frozen=True)
class Block(Node):
    body: tuple["Stmt", ...]


@dataclass(frozen=True)
class If(Node):
    condition: Expr
    then_branch: "Stmt"
    else_branch: Optional["Stmt"]


@dataclass(frozen=True)
class While(Node):
    condition: Expr
    body: "Stmt"


@dataclass(frozen=True)
class For(Node):
    init: Optional["Stmt"]
    condition: Optional[Expr]
    update: Optional[Expr]
    body: "Stmt"


@dataclass(frozen=True)
class ForOf(Node):
    name: str
    iterable: Expr
    body: "Stmt"


@dataclass(frozen=True)
class FunctionDecl(Node):
    name: str
    params: tuple[Param, ...]
    body: Block


@dataclass(frozen=True)
class RuleDecl(Node):
    name: str
    params: tuple[Param, ...]
    body: Block


@dataclass(frozen=True)
class Return(Node):
    value: Optional[Expr]


@dataclass(frozen=True)
class Break(Node):
    pass


@dataclass(frozen=True)
class Continue(Node):
    pass


Stmt = Union[
    VarDecl, ExprStmt, Block, If, While, For, ForOf, FunctionDecl, RuleDecl,
    Return, Break, Continue,
]


@dataclass(frozen=True)
class Program:
    statements: tuple[Stmt, ...]

    @property
    def rule_decls(self) -> tuple[RuleDecl, ...]:
        """Top-level rule declarations, in declaration order."""
        return tuple(s for s in self.statements if isinstance(s, RuleDecl))
