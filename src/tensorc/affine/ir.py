"""Affine IR: explicit loop nests over scalar elements of named buffers.

Buffers are flat, row-major regions with a fixed shape. Allocations and calls
only appear at function top level; a buffer belongs to the function that
allocated it (or received it from a call) unless it is returned, in which
case ownership moves to the caller.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, Union

from tensorc.errors import IRValidationError
from tensorc.ir.types import ScalarType, Shape, f64, numel, row_major_strides


# =============================================================================
# Index expressions
# =============================================================================


@dataclass(frozen=True, slots=True)
class IndexVar:
    """Loop induction variable."""

    name: str

    def __str__(self) -> str:
        return f"%{self.name}"


@dataclass(frozen=True, slots=True)
class LinearExpr:
    """`constant + sum(coeff * iv)` over induction variables."""

    terms: tuple[tuple[IndexVar, int], ...] = ()
    constant: int = 0

    @staticmethod
    def of(iv: IndexVar) -> LinearExpr:
        return LinearExpr(((iv, 1),), 0)

    @staticmethod
    def const(value: int) -> LinearExpr:
        return LinearExpr((), int(value))

    @staticmethod
    def dot(ivs: tuple[IndexVar, ...], coeffs: tuple[int, ...]) -> LinearExpr:
        return LinearExpr(tuple((iv, c) for iv, c in zip(ivs, coeffs) if c != 0), 0)

    @property
    def is_constant(self) -> bool:
        return not self.terms

    def evaluate(self, env: dict[IndexVar, int]) -> int:
        return self.constant + sum(c * env[iv] for iv, c in self.terms)

    def __str__(self) -> str:
        parts = [str(iv) if c == 1 else f"{iv}*{c}" for iv, c in self.terms]
        if self.constant or not parts:
            parts.append(str(self.constant))
        return " + ".join(parts)


# =============================================================================
# Buffers and scalars
# =============================================================================


@dataclass(frozen=True, slots=True)
class MemRefType:
    element: ScalarType
    shape: Shape

    def __post_init__(self) -> None:
        if any(d < 0 for d in self.shape):
            raise IRValidationError(f"memref shape {self.shape} has a negative dimension")

    @property
    def numel(self) -> int:
        return numel(self.shape)

    @property
    def nbytes(self) -> int:
        return self.numel * self.element.itemsize

    def __str__(self) -> str:
        dims = "".join(f"{d}x" for d in self.shape)
        return f"memref<{dims}{self.element}>"


@dataclass(slots=True, eq=False)
class Buffer:
    """A named, fixed-size memory region. Compared by identity."""

    name: str
    type: MemRefType

    @property
    def shape(self) -> Shape:
        return self.type.shape

    @property
    def rank(self) -> int:
        return len(self.type.shape)

    @property
    def strides(self) -> Shape:
        return row_major_strides(self.type.shape)

    def __str__(self) -> str:
        return f"%{self.name}"


@dataclass(slots=True, eq=False)
class Scalar:
    name: str
    type: ScalarType = f64

    def __str__(self) -> str:
        return f"%{self.name}"


# =============================================================================
# Operations
# =============================================================================


@dataclass(slots=True, eq=False)
class AllocOp:
    buffer: Buffer

    def __str__(self) -> str:
        return f"{self.buffer} = alloc : {self.buffer.type}"


@dataclass(slots=True, eq=False)
class ForOp:
    """`for iv in [lower, upper) step 1 { body }`"""

    iv: IndexVar
    lower: int
    upper: int
    body: list[AffineOp] = field(default_factory=list)

    def __str__(self) -> str:
        return f"for {self.iv} = {self.lower} to {self.upper}"


PREDICATES = ("slt", "sle", "sgt", "sge", "eq", "ne")


@dataclass(slots=True, eq=False)
class IfOp:
    """`if (lhs <predicate> rhs) { then } else { else }`"""

    lhs: LinearExpr
    predicate: str
    rhs: int
    then_body: list[AffineOp] = field(default_factory=list)
    else_body: list[AffineOp] = field(default_factory=list)

    def __str__(self) -> str:
        return f"if {self.lhs} {self.predicate} {self.rhs}"


@dataclass(slots=True, eq=False)
class ConstantOp:
    result: Scalar
    value: float

    def __str__(self) -> str:
        return f"{self.result} = constant {self.value!r}"


@dataclass(slots=True, eq=False)
class LoadOp:
    """Read one element. With `flat`, `indices` is a single row-major offset."""

    result: Scalar
    buffer: Buffer
    indices: tuple[LinearExpr, ...]
    flat: bool = False

    def __str__(self) -> str:
        idx = ", ".join(str(i) for i in self.indices)
        tag = "load.flat" if self.flat else "load"
        return f"{self.result} = {tag} {self.buffer}[{idx}]"


@dataclass(slots=True, eq=False)
class StoreOp:
    value: Scalar
    buffer: Buffer
    indices: tuple[LinearExpr, ...]
    flat: bool = False

    def __str__(self) -> str:
        idx = ", ".join(str(i) for i in self.indices)
        tag = "store.flat" if self.flat else "store"
        return f"{tag} {self.value}, {self.buffer}[{idx}]"


@dataclass(slots=True, eq=False)
class BinaryOp:
    result: Scalar
    kind: str
    lhs: Scalar
    rhs: Scalar

    def __str__(self) -> str:
        return f"{self.result} = {self.kind}f {self.lhs}, {self.rhs}"


@dataclass(slots=True, eq=False)
class PrintOp:
    buffer: Buffer

    def __str__(self) -> str:
        return f"print {self.buffer} : {self.buffer.type}"


@dataclass(slots=True, eq=False)
class CallOp:
    """Results are fresh buffers owned by the caller after the call."""

    callee: str
    args: list[Buffer]
    results: list[Buffer] = field(default_factory=list)

    def __str__(self) -> str:
        args = ", ".join(str(b) for b in self.args)
        res = ", ".join(str(b) for b in self.results)
        prefix = f"{res} = " if res else ""
        return f"{prefix}call @{self.callee}({args})"


@dataclass(slots=True, eq=False)
class ReturnOp:
    buffers: list[Buffer] = field(default_factory=list)

    def __str__(self) -> str:
        return f"return {', '.join(str(b) for b in self.buffers)}".rstrip()


AffineOp = Union[
    AllocOp, ForOp, IfOp, ConstantOp, LoadOp, StoreOp, BinaryOp, PrintOp, CallOp, ReturnOp
]


# =============================================================================
# Functions and modules
# =============================================================================


@dataclass(eq=False)
class AffineFunction:
    name: str
    params: list[Buffer] = field(default_factory=list)
    result_types: list[MemRefType] = field(default_factory=list)
    body: list[AffineOp] = field(default_factory=list)

    def walk(self) -> Iterator[AffineOp]:
        def visit(ops: list[AffineOp]) -> Iterator[AffineOp]:
            for op in ops:
                yield op
                if isinstance(op, ForOp):
                    yield from visit(op.body)
                elif isinstance(op, IfOp):
                    yield from visit(op.then_body)
                    yield from visit(op.else_body)

        return visit(self.body)

    @property
    def allocations(self) -> list[Buffer]:
        return [op.buffer for op in self.body if isinstance(op, AllocOp)]

    def verify(self) -> None:
        """Structural checks for lowered or injected Affine IR."""
        known: set[int] = {id(b) for b in self.params}

        def use(buf: Buffer, what: str) -> None:
            if id(buf) not in known:
                raise IRValidationError(f"{what} uses undefined buffer {buf} in @{self.name}")

        def check_exprs(exprs: tuple[LinearExpr, ...], ivs: set[IndexVar], what: str) -> None:
            for e in exprs:
                for iv, _ in e.terms:
                    if iv not in ivs:
                        raise IRValidationError(f"{what} in @{self.name} uses unbound {iv}")

        def check_access(
            buf: Buffer, indices: tuple[LinearExpr, ...], flat: bool, ivs: set[IndexVar], what: str
        ) -> None:
            use(buf, what)
            check_exprs(indices, ivs, what)
            expected = 1 if flat else buf.rank
            if len(indices) != expected:
                raise IRValidationError(
                    f"{what} of {buf} in @{self.name} has {len(indices)} indices, expected {expected}"
                )

        def visit(ops: list[AffineOp], ivs: set[IndexVar], top: bool) -> None:
            for op in ops:
                if isinstance(op, AllocOp):
                    if not top:
                        raise IRValidationError(f"alloc of {op.buffer} in @{self.name} is not at top level")
                    known.add(id(op.buffer))
                elif isinstance(op, CallOp):
                    if not top:
                        raise IRValidationError(f"call to @{op.callee} in @{self.name} is not at top level")
                    for b in op.args:
                        use(b, "call")
                    known.update(id(b) for b in op.results)
                elif isinstance(op, ForOp):
                    if op.iv in ivs:
                        raise IRValidationError(f"induction variable {op.iv} is rebound in @{self.name}")
                    visit(op.body, ivs | {op.iv}, False)
                elif isinstance(op, IfOp):
                    if op.predicate not in PREDICATES:
                        raise IRValidationError(f"unknown predicate '{op.predicate}'")
                    check_exprs((op.lhs,), ivs, "if")
                    visit(op.then_body, ivs, False)
                    visit(op.else_body, ivs, False)
                elif isinstance(op, LoadOp):
                    check_access(op.buffer, op.indices, op.flat, ivs, "load")
                elif isinstance(op, StoreOp):
                    check_access(op.buffer, op.indices, op.flat, ivs, "store")
                elif isinstance(op, PrintOp):
                    use(op.buffer, "print")
                elif isinstance(op, ReturnOp):
                    for b in op.buffers:
                        use(b, "return")
                    if [b.type for b in op.buffers] != self.result_types:
                        raise IRValidationError(f"return in @{self.name} does not match its result types")

        visit(self.body, set(), True)

    def format(self) -> str:
        params = ", ".join(f"{b}: {b.type}" for b in self.params)
        results = ", ".join(str(t) for t in self.result_types)
        ret = f" -> ({results})" if results else ""
        lines = [f"func @{self.name}({params}){ret} {{"]

        def emit(ops: list[AffineOp], indent: str) -> None:
            for op in ops:
                lines.append(f"{indent}{op}" + (" {" if isinstance(op, (ForOp, IfOp)) else ""))
                if isinstance(op, ForOp):
                    emit(op.body, indent + "  ")
                    lines.append(f"{indent}}}")
                elif isinstance(op, IfOp):
                    emit(op.then_body, indent + "  ")
                    if op.else_body:
                        lines.append(f"{indent}}} else {{")
                        emit(op.else_body, indent + "  ")
                    lines.append(f"{indent}}}")

        emit(self.body, "  ")
        lines.append("}")
        return "\n".join(lines)


@dataclass(eq=False)
class AffineModule:
    functions: dict[str, AffineFunction] = field(default_factory=dict)

    def add(self, fn: AffineFunction) -> AffineFunction:
        if fn.name in self.functions:
            raise IRValidationError(f"function @{fn.name} is defined twice")
        self.functions[fn.name] = fn
        return fn

    def verify(self) -> None:
        for fn in self.functions.values():
            fn.verify()
            for op in fn.walk():
                if isinstance(op, CallOp):
                    callee = self.functions.get(op.callee)
                    if callee is None:
                        raise IRValidationError(f"call to undefined function @{op.callee}")
                    if [b.type for b in op.args] != [b.type for b in callee.params]:
                        raise IRValidationError(f"call to @{op.callee} has mismatched argument buffers")
                    if [b.type for b in op.results] != callee.result_types:
                        raise IRValidationError(f"call to @{op.callee} has mismatched result buffers")

    def format(self) -> str:
        return "\n\n".join(fn.format() for fn in self.functions.values())
