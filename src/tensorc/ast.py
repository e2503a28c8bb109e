"""Abstract syntax tree handed over by the parser.

The AST is produced once by the (external) parser and is read-only afterwards.
Only the node shapes matter here; any parser that builds these nodes can feed
the compiler.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union


@dataclass(frozen=True, slots=True)
class Location:
    """Source location for diagnostics."""

    file: str | None
    line: int
    column: int

    def __str__(self) -> str:
        if self.file:
            return f"{self.file}:{self.line}:{self.column}"
        return f"line {self.line}, column {self.column}"


@dataclass(frozen=True, slots=True)
class VarType:
    """Declared type of a variable or parameter.

    `shape` is the explicit `<d1, d2, ...>` annotation (None when absent);
    `struct_name` is set for struct-typed declarations.
    """

    shape: tuple[int, ...] | None = None
    struct_name: str | None = None


@dataclass(slots=True)
class Expr:
    loc: Location | None = field(default=None, kw_only=True)


@dataclass(slots=True)
class NumberExpr(Expr):
    value: float


@dataclass(slots=True)
class LiteralExpr(Expr):
    """Array literal: `[[1, 2], [3, 4]]`. Elements are numbers or literals."""

    values: list[Expr]


@dataclass(slots=True)
class StructLiteralExpr(Expr):
    """Struct literal: `{[1, 2], 3}`, fields in declaration order."""

    values: list[Expr]


@dataclass(slots=True)
class VariableExpr(Expr):
    name: str


@dataclass(slots=True)
class BinaryExpr(Expr):
    """`+` and `*` are element-wise; `.` is struct field access."""

    op: str
    lhs: Expr
    rhs: Expr


@dataclass(slots=True)
class CallExpr(Expr):
    callee: str
    args: list[Expr]


@dataclass(slots=True)
class PrintExpr(Expr):
    arg: Expr


@dataclass(slots=True)
class ReturnExpr(Expr):
    value: Expr | None = None


@dataclass(slots=True)
class VarDeclExpr(Expr):
    name: str
    type: VarType
    init: Expr | None = None


ExprNode = Union[
    NumberExpr,
    LiteralExpr,
    StructLiteralExpr,
    VariableExpr,
    BinaryExpr,
    CallExpr,
    PrintExpr,
    ReturnExpr,
    VarDeclExpr,
]


@dataclass(slots=True)
class Param:
    name: str
    type: VarType = field(default_factory=VarType)
    loc: Location | None = None


@dataclass(slots=True)
class Prototype:
    name: str
    params: list[Param] = field(default_factory=list)
    loc: Location | None = None


@dataclass(slots=True)
class FunctionAST:
    proto: Prototype
    body: list[Expr] = field(default_factory=list)


@dataclass(slots=True)
class StructAST:
    name: str
    fields: list[Param] = field(default_factory=list)
    loc: Location | None = None


@dataclass(slots=True)
class ModuleAST:
    structs: list[StructAST] = field(default_factory=list)
    functions: list[FunctionAST] = field(default_factory=list)
