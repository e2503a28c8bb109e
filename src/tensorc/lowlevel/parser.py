"""Reader for the text form produced by `LowLevelModule.format`.

Example:
    func @f(%p: ptr<2>) -> (ptr<2>) {
    entry:
      %a = call @rt.alloc(16)
      br loop0.header
    loop0.header:
      %i0 = phi i64 [0, entry], [%i0.next, loop0.body]
      %i0.cond = icmp slt %i0, 2
      condbr %i0.cond, loop0.body, loop0.exit
    ...
    }

A phi may name a register defined further down, so the kind of every
register is collected before any instruction is built. The module is
returned unverified.
"""

from __future__ import annotations

import re

from tensorc.irtext import NAME, NAMES, SYMBOL, Line, LineCursor, parse_dims, read_lines, split_names
from tensorc.lowlevel.ir import (
    FLOAT_OPS,
    ICMP_PREDICATES,
    INT_OPS,
    KINDS,
    BinOp,
    Block,
    Br,
    Call,
    CondBr,
    Const,
    ICmp,
    Imm,
    Instr,
    Load,
    LowLevelFunction,
    LowLevelModule,
    Operand,
    Phi,
    PtrAdd,
    Reg,
    Ret,
    Store,
    Terminator,
)

OPERAND = r"([^,\s]+)"
LABEL = r"([\w.]+)"

_HEADER = re.compile(rf"^func {SYMBOL}\((.*)\)(?: -> \((.*)\))? \{{$")
_PARAM = re.compile(rf"^{NAME}: ptr<(.*)>$")
_RESULT = re.compile(r"^ptr<(.*)>$")
_LABEL = re.compile(rf"^{LABEL}:$")
_INT = re.compile(r"^-?\d+$")
_DEF = re.compile(rf"^({NAMES}) = (\w+)(?: (\w+))?")

_CONST = re.compile(rf"^{NAME} = const (\w+) (\S+)$")
_BINOP = re.compile(rf"^{NAME} = ({'|'.join(INT_OPS + FLOAT_OPS)}) (\w+) {OPERAND}, {OPERAND}$")
_ICMP = re.compile(rf"^{NAME} = icmp (\w+) {OPERAND}, {OPERAND}$")
_PTRADD = re.compile(rf"^{NAME} = ptradd {NAME}, {OPERAND}$")
_LOAD = re.compile(rf"^{NAME} = load (\w+), {NAME}$")
_STORE = re.compile(rf"^store {OPERAND}, {NAME}$")
_PHI = re.compile(rf"^{NAME} = phi (\w+) (.+)$")
_INCOMING = re.compile(rf"\[{OPERAND}, {LABEL}\]")
_CALL = re.compile(rf"^(?:({NAMES}) = )?call {SYMBOL}\((.*)\)$")
_SHAPE_ARG = re.compile(r"^<(.*)>$")

_BR = re.compile(rf"^br {LABEL}$")
_CONDBR = re.compile(rf"^condbr {NAME}, {LABEL}, {LABEL}$")
_RET = re.compile(r"^ret(?: (.+))?$")

CLOSE = "}"


def parse_lowlevel(text: str) -> LowLevelModule:
    """Parse the text of a Low-level IR module.

    Raises:
        IRValidationError: On malformed text, with the line and column.
    """
    module = LowLevelModule()
    cursor = LineCursor(read_lines(text))
    while not cursor.done:
        header = cursor.next("a function")
        body = []
        while True:
            line = cursor.next(f"'}}' closing the function on line {header.number}")
            if line.text == CLOSE:
                break
            body.append(line)
        fn = _FunctionParser(header, body).parse()
        if fn.name in module.functions:
            raise header.error(f"function @{fn.name} is defined twice")
        module.add(fn)
    return module


def _defined_kind(mnemonic: str, detail: str | None, line: Line) -> str:
    """Kind of the register(s) an instruction defines, from its mnemonic."""
    if mnemonic == "icmp":
        return "i1"
    if mnemonic in ("ptradd", "call"):
        return "ptr"
    if mnemonic in ("const", "load", "phi") or mnemonic in INT_OPS + FLOAT_OPS:
        if detail not in KINDS:
            raise line.error(f"unknown register kind '{detail}'")
        return detail
    raise line.error(f"unrecognized instruction '{line.text}'")


class _FunctionParser:
    def __init__(self, header: Line, body: list[Line]) -> None:
        self.header = header
        self.body = body
        self.name = ""
        self.regs: dict[str, Reg] = {}

    def parse(self) -> LowLevelFunction:
        m = _HEADER.match(self.header.text)
        if m is None:
            raise self.header.error(f"expected a function header, got '{self.header.text}'")
        name, params_text, results_text = m.groups()
        self.name = name

        params, param_shapes = [], []
        for item in params_text.split(", ") if params_text else []:
            pm = _PARAM.match(item)
            if pm is None:
                raise self.header.error(f"malformed parameter '{item}'")
            params.append(self._define(pm.group(1), "ptr", self.header))
            param_shapes.append(parse_dims(pm.group(2), self.header))
        result_shapes = []
        for item in results_text.split(", ") if results_text else []:
            rm = _RESULT.match(item)
            if rm is None:
                raise self.header.error(f"malformed result '{item}'")
            result_shapes.append(parse_dims(rm.group(1), self.header))

        self._collect_registers()
        return LowLevelFunction(
            name=name,
            params=params,
            param_shapes=param_shapes,
            result_shapes=result_shapes,
            blocks=self._blocks(),
        )

    # ------------------------------------------------------------------
    # Registers and operands
    # ------------------------------------------------------------------

    def _define(self, name: str, kind: str, line: Line) -> Reg:
        if name in self.regs:
            raise line.error(f"register %{name} is assigned twice in @{self.name}")
        reg = self.regs[name] = Reg(name, kind)
        return reg

    def _collect_registers(self) -> None:
        for line in self.body:
            m = _DEF.match(line.text)
            if m is None:
                continue
            kind = _defined_kind(m.group(2), m.group(3), line)
            for name in split_names(m.group(1), line):
                self._define(name, kind, line)

    def _reg(self, name: str, line: Line) -> Reg:
        reg = self.regs.get(name)
        if reg is None:
            raise line.error(f"@{self.name} uses undefined register %{name}")
        return reg

    def _operand(self, text: str, line: Line) -> Operand:
        if text.startswith("%"):
            return self._reg(text[1:], line)
        if _INT.match(text):
            return Imm(int(text))
        try:
            return Imm(float(text), "f64")
        except ValueError:
            raise line.error(f"malformed operand '{text}'") from None

    # ------------------------------------------------------------------
    # Blocks
    # ------------------------------------------------------------------

    def _blocks(self) -> list[Block]:
        blocks: list[Block] = []
        block: Block | None = None
        for line in self.body:
            m = _LABEL.match(line.text)
            if m is not None:
                if block is not None and not block.terminated:
                    raise line.error(f"block '{block.label}' in @{self.name} has no terminator")
                block = Block(m.group(1))
                blocks.append(block)
                continue
            if block is None:
                raise line.error(f"instruction before the first label of @{self.name}")
            if block.terminated:
                raise line.error(f"instruction after the terminator of block '{block.label}'")
            term = self._terminator(line)
            if term is not None:
                block.terminator = term
            else:
                block.instrs.append(self._instr(line))
        return blocks

    def _terminator(self, line: Line) -> Terminator | None:
        m = _BR.match(line.text)
        if m is not None:
            return Br(m.group(1))
        m = _CONDBR.match(line.text)
        if m is not None:
            return CondBr(self._reg(m.group(1), line), m.group(2), m.group(3))
        m = _RET.match(line.text)
        if m is not None:
            values = m.group(1).split(", ") if m.group(1) else []
            return Ret([self._operand(v, line) for v in values])
        return None

    def _instr(self, line: Line) -> Instr:
        for pattern, handler in (
            (_CONST, self._const),
            (_BINOP, self._binop),
            (_ICMP, self._icmp),
            (_PTRADD, self._ptradd),
            (_LOAD, self._load),
            (_STORE, self._store),
            (_PHI, self._phi),
            (_CALL, self._call),
        ):
            m = pattern.match(line.text)
            if m is not None:
                return handler(m, line)
        raise line.error(f"unrecognized instruction '{line.text}'")

    def _const(self, m: re.Match, line: Line) -> Const:
        dst = self._reg(m.group(1), line)
        try:
            value = float(m.group(3)) if dst.kind == "f64" else int(m.group(3))
        except ValueError:
            raise line.error(f"malformed {dst.kind} constant '{m.group(3)}'") from None
        return Const(dst, value)

    def _binop(self, m: re.Match, line: Line) -> BinOp:
        lhs, rhs = self._operand(m.group(4), line), self._operand(m.group(5), line)
        return BinOp(self._reg(m.group(1), line), m.group(2), lhs, rhs)

    def _icmp(self, m: re.Match, line: Line) -> ICmp:
        if m.group(2) not in ICMP_PREDICATES:
            raise line.error(f"unknown icmp predicate '{m.group(2)}'")
        lhs, rhs = self._operand(m.group(3), line), self._operand(m.group(4), line)
        return ICmp(self._reg(m.group(1), line), m.group(2), lhs, rhs)

    def _ptradd(self, m: re.Match, line: Line) -> PtrAdd:
        base = self._reg(m.group(2), line)
        return PtrAdd(self._reg(m.group(1), line), base, self._operand(m.group(3), line))

    def _load(self, m: re.Match, line: Line) -> Load:
        return Load(self._reg(m.group(1), line), self._reg(m.group(3), line))

    def _store(self, m: re.Match, line: Line) -> Store:
        return Store(self._operand(m.group(1), line), self._reg(m.group(2), line))

    def _phi(self, m: re.Match, line: Line) -> Phi:
        pairs = _INCOMING.findall(m.group(3))
        if ", ".join(f"[{v}, {label}]" for v, label in pairs) != m.group(3):
            raise line.error(f"malformed phi incoming list '{m.group(3)}'")
        incoming = [(self._operand(v, line), label) for v, label in pairs]
        return Phi(self._reg(m.group(1), line), incoming)

    def _call(self, m: re.Match, line: Line) -> Call:
        results = [self._reg(n, line) for n in split_names(m.group(1), line)]
        args = m.group(3).split(", ") if m.group(3) else []
        shape = None
        if args:
            sm = _SHAPE_ARG.match(args[-1])
            if sm is not None:
                shape = parse_dims(sm.group(1), line)
                args = args[:-1]
        return Call(m.group(2), [self._operand(a, line) for a in args], results, shape=shape)
