"""Reader for the text form produced by `AffineModule.format`.

Example:
    func @double(%p: memref<2xf64>) -> (memref<2xf64>) {
      %a = alloc : memref<2xf64>
      for %i0 = 0 to 2 {
        %s0 = load %p[%i0]
        %s1 = addf %s0, %s0
        store %s1, %a[%i0]
      }
      return %a
    }

Call results take their types from the callee's header, so headers are read
before any body. The module is returned unverified.
"""

from __future__ import annotations

import re

from tensorc.affine.ir import (
    PREDICATES,
    AffineFunction,
    AffineModule,
    AffineOp,
    AllocOp,
    BinaryOp,
    Buffer,
    CallOp,
    ConstantOp,
    ForOp,
    IfOp,
    IndexVar,
    LinearExpr,
    LoadOp,
    MemRefType,
    PrintOp,
    ReturnOp,
    Scalar,
    StoreOp,
)
from tensorc.ir.types import f64
from tensorc.irtext import NAME, NAMES, SYMBOL, Line, LineCursor, parse_dims, read_lines, split_names

ELEMENT_TYPES = {f64.name: f64}
BINARY_KINDS = ("add", "mul")

_MEMREF = re.compile(r"^memref<((?:\d+x)*)(\w+)>$")
_PARAM = re.compile(rf"^{NAME}: (\S+)$")
_HEADER = re.compile(rf"^func {SYMBOL}\((.*)\)(?: -> \((.*)\))? \{{$")

_ALLOC = re.compile(rf"^{NAME} = alloc : (\S+)$")
_FOR = re.compile(rf"^for {NAME} = (-?\d+) to (-?\d+) \{{$")
_IF = re.compile(rf"^if (.+) ({'|'.join(PREDICATES)}) (-?\d+) \{{$")
_CONSTANT = re.compile(rf"^{NAME} = constant (\S+)$")
_LOAD = re.compile(rf"^{NAME} = load(\.flat)? {NAME}\[(.*)\]$")
_STORE = re.compile(rf"^store(\.flat)? {NAME}, {NAME}\[(.*)\]$")
_BINARY = re.compile(rf"^{NAME} = (\w+)f {NAME}, {NAME}$")
_PRINT = re.compile(rf"^print {NAME} : (\S+)$")
_CALL = re.compile(rf"^(?:({NAMES}) = )?call {SYMBOL}\((.*)\)$")
_RETURN = re.compile(r"^return(?: (.+))?$")
_TERM = re.compile(rf"^{NAME}(?:\*(-?\d+))?$")

CLOSE = "}"
ELSE = "} else {"


def parse_memref(text: str, line: Line) -> MemRefType:
    m = _MEMREF.match(text)
    if m is None:
        raise line.error(f"malformed type '{text}'")
    element = ELEMENT_TYPES.get(m.group(2))
    if element is None:
        raise line.error(f"unknown element type '{m.group(2)}'")
    return MemRefType(element, parse_dims(m.group(1).rstrip("x"), line))


def _header(line: Line) -> tuple[str, list[Buffer], list[MemRefType]]:
    m = _HEADER.match(line.text)
    if m is None:
        raise line.error(f"expected a function header, got '{line.text}'")
    name, params_text, results_text = m.groups()
    params = []
    for item in params_text.split(", ") if params_text else []:
        pm = _PARAM.match(item)
        if pm is None:
            raise line.error(f"malformed parameter '{item}'")
        params.append(Buffer(pm.group(1), parse_memref(pm.group(2), line)))
    results = [parse_memref(t, line) for t in results_text.split(", ")] if results_text else []
    return name, params, results


def parse_affine(text: str) -> AffineModule:
    """Parse the text of an Affine IR module.

    Raises:
        IRValidationError: On malformed text, with the line and column.
    """
    lines = read_lines(text)
    signatures: dict[str, list[MemRefType]] = {}
    for line in lines:
        if line.text.startswith("func "):
            name, _, results = _header(line)
            signatures[name] = results

    module = AffineModule()
    cursor = LineCursor(lines)
    while not cursor.done:
        line = cursor.next("a function")
        name, params, results = _header(line)
        if name in module.functions:
            raise line.error(f"function @{name} is defined twice")
        body = _FunctionParser(name, params, signatures, cursor).parse()
        module.add(AffineFunction(name, params=params, result_types=results, body=body))
    return module


class _FunctionParser:
    def __init__(
        self,
        name: str,
        params: list[Buffer],
        signatures: dict[str, list[MemRefType]],
        cursor: LineCursor,
    ) -> None:
        self.name = name
        self.signatures = signatures
        self.cursor = cursor
        self.buffers: dict[str, Buffer] = {}
        self.scalars: dict[str, Scalar] = {}
        self.ivs: set[str] = set()
        header = cursor.lines[cursor.pos - 1]
        for buf in params:
            self._define_buffer(buf, header)

    def parse(self) -> list[AffineOp]:
        ops, end = self._block()
        if end.text != CLOSE:
            raise end.error(f"unexpected '{end.text}' at the top level of @{self.name}")
        return ops

    def _block(self) -> tuple[list[AffineOp], Line]:
        """Ops up to the closing `}` or `} else {`, which is returned too."""
        ops: list[AffineOp] = []
        while True:
            line = self.cursor.next(f"'}}' closing @{self.name}")
            if line.text in (CLOSE, ELSE):
                return ops, line
            ops.append(self._op(line))

    # ------------------------------------------------------------------
    # Names
    # ------------------------------------------------------------------

    def _define_buffer(self, buf: Buffer, line: Line) -> Buffer:
        if buf.name in self.buffers:
            raise line.error(f"buffer %{buf.name} is defined twice in @{self.name}")
        self.buffers[buf.name] = buf
        return buf

    def _buffer(self, name: str, line: Line) -> Buffer:
        buf = self.buffers.get(name)
        if buf is None:
            raise line.error(f"unknown buffer %{name} in @{self.name}")
        return buf

    def _define_scalar(self, name: str, line: Line) -> Scalar:
        if name in self.scalars:
            raise line.error(f"scalar %{name} is defined twice in @{self.name}")
        s = self.scalars[name] = Scalar(name)
        return s

    def _scalar(self, name: str, line: Line) -> Scalar:
        s = self.scalars.get(name)
        if s is None:
            raise line.error(f"scalar %{name} is used before it is defined in @{self.name}")
        return s

    def _linear(self, text: str, line: Line) -> LinearExpr:
        """`%i + %j*3 + 2` as a LinearExpr over the enclosing loops' variables."""
        terms: list[tuple[IndexVar, int]] = []
        constant = 0
        for part in text.split(" + "):
            m = _TERM.match(part)
            if m is not None:
                if m.group(1) not in self.ivs:
                    raise line.error(f"unbound index variable %{m.group(1)} in @{self.name}")
                terms.append((IndexVar(m.group(1)), int(m.group(2) or 1)))
            elif re.fullmatch(r"-?\d+", part):
                constant += int(part)
            else:
                raise line.error(f"malformed index expression '{text}'")
        return LinearExpr(tuple(terms), constant)

    def _indices(self, text: str, line: Line) -> tuple[LinearExpr, ...]:
        if not text:
            return ()
        return tuple(self._linear(part, line) for part in text.split(", "))

    # ------------------------------------------------------------------
    # Ops
    # ------------------------------------------------------------------

    def _op(self, line: Line) -> AffineOp:
        for pattern, handler in (
            (_FOR, self._for),
            (_IF, self._if),
            (_ALLOC, self._alloc),
            (_CONSTANT, self._constant),
            (_LOAD, self._load),
            (_STORE, self._store),
            (_BINARY, self._binary),
            (_PRINT, self._print),
            (_CALL, self._call),
            (_RETURN, self._return),
        ):
            m = pattern.match(line.text)
            if m is not None:
                return handler(m, line)
        raise line.error(f"unrecognized operation '{line.text}'")

    def _alloc(self, m: re.Match, line: Line) -> AllocOp:
        buf = Buffer(m.group(1), parse_memref(m.group(2), line))
        return AllocOp(self._define_buffer(buf, line))

    def _constant(self, m: re.Match, line: Line) -> ConstantOp:
        try:
            value = float(m.group(2))
        except ValueError:
            raise line.error(f"malformed constant '{m.group(2)}'") from None
        return ConstantOp(self._define_scalar(m.group(1), line), value)

    def _load(self, m: re.Match, line: Line) -> LoadOp:
        buf = self._buffer(m.group(3), line)
        indices = self._indices(m.group(4), line)
        return LoadOp(self._define_scalar(m.group(1), line), buf, indices, flat=bool(m.group(2)))

    def _store(self, m: re.Match, line: Line) -> StoreOp:
        value = self._scalar(m.group(2), line)
        buf = self._buffer(m.group(3), line)
        return StoreOp(value, buf, self._indices(m.group(4), line), flat=bool(m.group(1)))

    def _binary(self, m: re.Match, line: Line) -> BinaryOp:
        if m.group(2) not in BINARY_KINDS:
            raise line.error(f"unknown operation '{m.group(2)}f'")
        lhs, rhs = self._scalar(m.group(3), line), self._scalar(m.group(4), line)
        return BinaryOp(self._define_scalar(m.group(1), line), m.group(2), lhs, rhs)

    def _print(self, m: re.Match, line: Line) -> PrintOp:
        buf = self._buffer(m.group(1), line)
        if parse_memref(m.group(2), line) != buf.type:
            raise line.error(f"print of {buf} names type {m.group(2)}, but {buf} is {buf.type}")
        return PrintOp(buf)

    def _return(self, m: re.Match, line: Line) -> ReturnOp:
        return ReturnOp([self._buffer(n, line) for n in split_names(m.group(1), line)])

    def _for(self, m: re.Match, line: Line) -> ForOp:
        name = m.group(1)
        if name in self.ivs:
            raise line.error(f"induction variable %{name} is rebound in @{self.name}")
        self.ivs.add(name)
        body, end = self._block()
        self.ivs.remove(name)
        if end.text != CLOSE:
            raise end.error("a loop body has no else branch")
        return ForOp(IndexVar(name), int(m.group(2)), int(m.group(3)), body)

    def _if(self, m: re.Match, line: Line) -> IfOp:
        lhs = self._linear(m.group(1), line)
        then_body, end = self._block()
        else_body: list[AffineOp] = []
        if end.text == ELSE:
            else_body, end = self._block()
            if end.text != CLOSE:
                raise end.error("an if has at most one else branch")
        return IfOp(lhs, m.group(2), int(m.group(3)), then_body, else_body)

    def _call(self, m: re.Match, line: Line) -> CallOp:
        result_names = split_names(m.group(1), line)
        callee = m.group(2)
        result_types = self.signatures.get(callee)
        if result_types is None:
            raise line.error(f"call to undefined function @{callee}")
        if len(result_names) != len(result_types):
            raise line.error(
                f"call to @{callee} binds {len(result_names)} result(s), it returns {len(result_types)}"
            )
        args = [self._buffer(n, line) for n in split_names(m.group(3), line)]
        results = [
            self._define_buffer(Buffer(n, t), line) for n, t in zip(result_names, result_types)
        ]
        return CallOp(callee, args, results)
