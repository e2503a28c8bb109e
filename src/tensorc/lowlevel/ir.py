"""Low-level IR: flat scalar code over explicit addresses and basic blocks.

Every value lives in a typed virtual register assigned exactly once. Control
flow is explicit: each block ends in one terminator (`br`, `condbr`, `ret`),
and loop counters are carried by `phi` nodes in loop header blocks. Memory is
reached only through pointers returned by the runtime `rt.alloc` call or
passed in as parameters; addresses are byte offsets from those pointers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, Union

from tensorc.errors import IRValidationError

KINDS = ("i64", "f64", "ptr", "i1")

# Runtime support surface.
RT_ALLOC = "rt.alloc"
RT_FREE = "rt.free"
RT_PRINT = "rt.print"
RUNTIME_FUNCTIONS = (RT_ALLOC, RT_FREE, RT_PRINT)

INT_OPS = ("add", "mul")
FLOAT_OPS = ("fadd", "fmul")
ICMP_PREDICATES = ("slt", "sle", "sgt", "sge", "eq", "ne")

ELEMENT_BYTES = 8


@dataclass(frozen=True, slots=True)
class Reg:
    name: str
    kind: str

    def __post_init__(self) -> None:
        if self.kind not in KINDS:
            raise IRValidationError(f"unknown register kind '{self.kind}' for %{self.name}")

    def __str__(self) -> str:
        return f"%{self.name}"


@dataclass(frozen=True, slots=True)
class Imm:
    value: int | float
    kind: str = "i64"

    def __str__(self) -> str:
        return repr(self.value)


Operand = Union[Reg, Imm]


# =============================================================================
# Instructions
# =============================================================================


@dataclass(slots=True, eq=False)
class Const:
    dst: Reg
    value: int | float

    def __str__(self) -> str:
        return f"{self.dst} = const {self.dst.kind} {self.value!r}"


@dataclass(slots=True, eq=False)
class BinOp:
    dst: Reg
    op: str
    lhs: Operand
    rhs: Operand

    def __str__(self) -> str:
        return f"{self.dst} = {self.op} {self.dst.kind} {self.lhs}, {self.rhs}"


@dataclass(slots=True, eq=False)
class ICmp:
    dst: Reg
    pred: str
    lhs: Operand
    rhs: Operand

    def __str__(self) -> str:
        return f"{self.dst} = icmp {self.pred} {self.lhs}, {self.rhs}"


@dataclass(slots=True, eq=False)
class PtrAdd:
    """`dst = base + offset` with `offset` in bytes."""

    dst: Reg
    base: Reg
    offset: Operand

    def __str__(self) -> str:
        return f"{self.dst} = ptradd {self.base}, {self.offset}"


@dataclass(slots=True, eq=False)
class Load:
    dst: Reg
    addr: Reg

    def __str__(self) -> str:
        return f"{self.dst} = load {self.dst.kind}, {self.addr}"


@dataclass(slots=True, eq=False)
class Store:
    value: Operand
    addr: Reg

    def __str__(self) -> str:
        return f"store {self.value}, {self.addr}"


@dataclass(slots=True, eq=False)
class Phi:
    dst: Reg
    incoming: list[tuple[Operand, str]] = field(default_factory=list)

    def __str__(self) -> str:
        pairs = ", ".join(f"[{v}, {label}]" for v, label in self.incoming)
        return f"{self.dst} = phi {self.dst.kind} {pairs}"


@dataclass(slots=True, eq=False)
class Call:
    """Call to a runtime function or another function of the module.

    `shape` is the shape descriptor passed to `rt.print`.
    """

    callee: str
    args: list[Operand] = field(default_factory=list)
    results: list[Reg] = field(default_factory=list)
    shape: tuple[int, ...] | None = None

    def __str__(self) -> str:
        args = ", ".join(str(a) for a in self.args)
        if self.shape is not None:
            args += f", <{format_dims(self.shape)}>"
        res = ", ".join(str(r) for r in self.results)
        prefix = f"{res} = " if res else ""
        return f"{prefix}call @{self.callee}({args})"


Instr = Union[Const, BinOp, ICmp, PtrAdd, Load, Store, Phi, Call]


@dataclass(slots=True, eq=False)
class Br:
    target: str

    def __str__(self) -> str:
        return f"br {self.target}"


@dataclass(slots=True, eq=False)
class CondBr:
    cond: Reg
    then_target: str
    else_target: str

    def __str__(self) -> str:
        return f"condbr {self.cond}, {self.then_target}, {self.else_target}"


@dataclass(slots=True, eq=False)
class Ret:
    values: list[Operand] = field(default_factory=list)

    def __str__(self) -> str:
        return f"ret {', '.join(str(v) for v in self.values)}".rstrip()


Terminator = Union[Br, CondBr, Ret]


def format_dims(shape: tuple[int, ...]) -> str:
    return "x".join(str(d) for d in shape)


def defined_reg(instr: Instr) -> list[Reg]:
    if isinstance(instr, Call):
        return list(instr.results)
    if isinstance(instr, Store):
        return []
    return [instr.dst]


def used_operands(instr: Instr | Terminator) -> list[Operand]:
    if isinstance(instr, (BinOp, ICmp)):
        return [instr.lhs, instr.rhs]
    if isinstance(instr, PtrAdd):
        return [instr.base, instr.offset]
    if isinstance(instr, Load):
        return [instr.addr]
    if isinstance(instr, Store):
        return [instr.value, instr.addr]
    if isinstance(instr, Phi):
        return [v for v, _ in instr.incoming]
    if isinstance(instr, Call):
        return list(instr.args)
    if isinstance(instr, CondBr):
        return [instr.cond]
    if isinstance(instr, Ret):
        return list(instr.values)
    return []


# =============================================================================
# Blocks, functions, modules
# =============================================================================


@dataclass(slots=True, eq=False)
class Block:
    label: str
    instrs: list[Instr] = field(default_factory=list)
    terminator: Terminator | None = None

    @property
    def terminated(self) -> bool:
        return self.terminator is not None

    @property
    def successors(self) -> tuple[str, ...]:
        t = self.terminator
        if isinstance(t, Br):
            return (t.target,)
        if isinstance(t, CondBr):
            return (t.then_target, t.else_target)
        return ()

    @property
    def phis(self) -> list[Phi]:
        return [i for i in self.instrs if isinstance(i, Phi)]


@dataclass(eq=False)
class LowLevelFunction:
    """A function over pointer parameters. `blocks[0]` is the entry block."""

    name: str
    params: list[Reg] = field(default_factory=list)
    param_shapes: list[tuple[int, ...]] = field(default_factory=list)
    result_shapes: list[tuple[int, ...]] = field(default_factory=list)
    blocks: list[Block] = field(default_factory=list)

    @property
    def entry(self) -> Block:
        return self.blocks[0]

    def block(self, label: str) -> Block:
        for b in self.blocks:
            if b.label == label:
                return b
        raise IRValidationError(f"no block '{label}' in @{self.name}")

    def instructions(self) -> Iterator[Instr]:
        for b in self.blocks:
            yield from b.instrs

    def reachable(self) -> set[str]:
        labels = {b.label: b for b in self.blocks}
        seen: set[str] = set()
        stack = [self.entry.label] if self.blocks else []
        while stack:
            label = stack.pop()
            if label in seen or label not in labels:
                continue
            seen.add(label)
            stack.extend(labels[label].successors)
        return seen

    def prune_unreachable(self) -> int:
        """Drop blocks the entry cannot reach, and their phi edges. Returns the count dropped."""
        live = self.reachable()
        before = len(self.blocks)
        self.blocks = [b for b in self.blocks if b.label in live]
        for b in self.blocks:
            for phi in b.phis:
                phi.incoming = [(v, label) for v, label in phi.incoming if label in live]
        return before - len(self.blocks)

    def verify(self) -> None:
        if not self.blocks:
            raise IRValidationError(f"@{self.name} has no blocks")
        labels = [b.label for b in self.blocks]
        if len(set(labels)) != len(labels):
            raise IRValidationError(f"@{self.name} has duplicate block labels")
        if len(self.param_shapes) != len(self.params):
            raise IRValidationError(f"@{self.name} has {len(self.params)} params but {len(self.param_shapes)} shapes")
        for shape in [*self.param_shapes, *self.result_shapes]:
            if any(d < 0 for d in shape):
                raise IRValidationError(f"@{self.name} has a negative dimension in shape {tuple(shape)}")

        defined: set[str] = {p.name for p in self.params}
        for b in self.blocks:
            if b.terminator is None:
                raise IRValidationError(f"block '{b.label}' in @{self.name} has no terminator")
            for target in b.successors:
                if target not in labels:
                    raise IRValidationError(f"block '{b.label}' in @{self.name} branches to unknown '{target}'")
            for instr in b.instrs:
                for reg in defined_reg(instr):
                    if reg.name in defined:
                        raise IRValidationError(f"register {reg} is assigned twice in @{self.name}")
                    defined.add(reg.name)
            if isinstance(b.terminator, Ret) and len(b.terminator.values) != len(self.result_shapes):
                raise IRValidationError(f"ret in '{b.label}' of @{self.name} does not match its results")

        for b in self.blocks:
            for instr in [*b.instrs, b.terminator]:
                for v in used_operands(instr):
                    if isinstance(v, Reg) and v.name not in defined:
                        raise IRValidationError(f"@{self.name} uses undefined register {v}")

    def format(self) -> str:
        """Text form; parameter and result pointers carry the shape they point to."""
        params = ", ".join(f"{p}: {p.kind}<{format_dims(s)}>" for p, s in zip(self.params, self.param_shapes))
        results = ", ".join(f"ptr<{format_dims(s)}>" for s in self.result_shapes)
        ret = f" -> ({results})" if results else ""
        lines = [f"func @{self.name}({params}){ret} {{"]
        for b in self.blocks:
            lines.append(f"{b.label}:")
            lines.extend(f"  {i}" for i in b.instrs)
            lines.append(f"  {b.terminator}")
        lines.append("}")
        return "\n".join(lines)


@dataclass(eq=False)
class LowLevelModule:
    functions: dict[str, LowLevelFunction] = field(default_factory=dict)

    def add(self, fn: LowLevelFunction) -> LowLevelFunction:
        if fn.name in self.functions or fn.name in RUNTIME_FUNCTIONS:
            raise IRValidationError(f"function @{fn.name} is defined twice")
        self.functions[fn.name] = fn
        return fn

    def verify(self) -> None:
        for fn in self.functions.values():
            fn.verify()
            for instr in fn.instructions():
                if isinstance(instr, Call) and instr.callee not in RUNTIME_FUNCTIONS:
                    callee = self.functions.get(instr.callee)
                    if callee is None:
                        raise IRValidationError(f"call to undefined function @{instr.callee}")
                    if len(instr.args) != len(callee.params) or len(instr.results) != len(callee.result_shapes):
                        raise IRValidationError(f"call to @{instr.callee} has the wrong arity")

    def format(self) -> str:
        return "\n\n".join(fn.format() for fn in self.functions.values())
