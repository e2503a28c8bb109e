"""Affine IR -> Low-level IR.

Loops become header/body/exit blocks with a phi counter, buffers become
`rt.alloc`/`rt.free` calls and indexing becomes byte-offset arithmetic on
the buffer pointer. Every `ret` is preceded by one `rt.free` per buffer the
function owns at that point and does not return, so each buffer is released
exactly once on every path.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field

from tensorc.affine import ir as aff
from tensorc.errors import ElementCountOverflowError, IRValidationError
from tensorc.lowlevel import ir as ll

logger = logging.getLogger(__name__)


@dataclass
class LowLevelLoweringPass:
    max_buffer_bytes: int = (1 << 63) - 1
    stats: Counter = field(default_factory=Counter)

    def run(self, module: aff.AffineModule) -> ll.LowLevelModule:
        module.verify()
        out = ll.LowLevelModule()
        for fn in module.functions.values():
            out.add(_FunctionLowering(fn, self).lower())
        out.verify()
        logger.info(
            f"low-level lowering: {len(out.functions)} functions, "
            f"{self.stats['blocks']} blocks, {self.stats['frees']} frees"
        )
        return out


class _FunctionLowering:
    def __init__(self, fn: aff.AffineFunction, owner: LowLevelLoweringPass) -> None:
        self.fn = fn
        self.owner = owner
        self.blocks: list[ll.Block] = []
        self.current: ll.Block = self._new_block("entry")
        self.regs: dict[int, ll.Reg] = {}
        self.ivs: dict[aff.IndexVar, ll.Reg] = {}
        self.owned: list[aff.Buffer] = []
        self._names: Counter = Counter()
        self._used: set[str] = set()
        self._labels: Counter = Counter()

    # ------------------------------------------------------------------
    # Naming and block management
    # ------------------------------------------------------------------

    def _reg(self, hint: str, kind: str) -> ll.Reg:
        name = hint
        while name in self._used:
            self._names[hint] += 1
            name = f"{hint}.{self._names[hint]}"
        self._used.add(name)
        return ll.Reg(name, kind)

    def _label(self, prefix: str) -> str:
        n = self._labels[prefix]
        self._labels[prefix] += 1
        return f"{prefix}{n}"

    def _new_block(self, label: str) -> ll.Block:
        block = ll.Block(label)
        self.blocks.append(block)
        return block

    def _unreachable(self, block: ll.Block) -> bool:
        """True when no path from the entry reaches `block` in the blocks built so far."""
        built = ll.LowLevelFunction(self.fn.name, blocks=self.blocks)
        return block.label not in built.reachable()

    def _emit(self, instr: ll.Instr) -> None:
        self.current.instrs.append(instr)

    def _terminate(self, term: ll.Terminator) -> None:
        self.current.terminator = term

    def _buffer(self, buf: aff.Buffer) -> ll.Reg:
        reg = self.regs.get(id(buf))
        if reg is None:
            raise IRValidationError(f"buffer {buf} has no pointer in @{self.fn.name}")
        return reg

    # ------------------------------------------------------------------
    # Entry
    # ------------------------------------------------------------------

    def lower(self) -> ll.LowLevelFunction:
        fn = self.fn
        params = []
        for buf in fn.params:
            reg = self._reg(buf.name, "ptr")
            self.regs[id(buf)] = reg
            params.append(reg)

        self._lower_ops(fn.body)

        if not self.current.terminated:
            if self._unreachable(self.current):
                self._terminate(ll.Ret([]))
            elif fn.result_types:
                raise IRValidationError(f"@{fn.name} can fall off its end without returning")
            else:
                self._return([])

        out = ll.LowLevelFunction(
            name=fn.name,
            params=params,
            param_shapes=[b.shape for b in fn.params],
            result_shapes=[t.shape for t in fn.result_types],
            blocks=self.blocks,
        )
        dropped = out.prune_unreachable()
        self.owner.stats["blocks"] += len(out.blocks)
        logger.debug(f"lowered @{fn.name} to {len(out.blocks)} blocks ({dropped} unreachable dropped)")
        return out

    def _lower_ops(self, ops: list[aff.AffineOp]) -> None:
        for op in ops:
            if self.current.terminated:
                # Code after a return; it is unreachable and pruned later.
                self.current = self._new_block(self._label("dead"))
            self._lower_op(op)

    def _lower_op(self, op: aff.AffineOp) -> None:
        if isinstance(op, aff.AllocOp):
            self._alloc(op.buffer)
        elif isinstance(op, aff.ForOp):
            self._loop(op)
        elif isinstance(op, aff.IfOp):
            self._if(op)
        elif isinstance(op, aff.ConstantOp):
            reg = self._reg(op.result.name, "f64")
            self.regs[id(op.result)] = reg
            self._emit(ll.Const(reg, float(op.value)))
        elif isinstance(op, aff.LoadOp):
            addr = self._address(op.buffer, op.indices, op.flat)
            reg = self._reg(op.result.name, "f64")
            self.regs[id(op.result)] = reg
            self._emit(ll.Load(reg, addr))
        elif isinstance(op, aff.StoreOp):
            addr = self._address(op.buffer, op.indices, op.flat)
            self._emit(ll.Store(self._scalar(op.value), addr))
        elif isinstance(op, aff.BinaryOp):
            reg = self._reg(op.result.name, "f64")
            self.regs[id(op.result)] = reg
            self._emit(ll.BinOp(reg, f"f{op.kind}", self._scalar(op.lhs), self._scalar(op.rhs)))
        elif isinstance(op, aff.PrintOp):
            self._emit(ll.Call(ll.RT_PRINT, [self._buffer(op.buffer)], shape=op.buffer.shape))
        elif isinstance(op, aff.CallOp):
            self._call(op)
        elif isinstance(op, aff.ReturnOp):
            self._return(op.buffers)
        else:
            raise IRValidationError(f"no low-level lowering for {type(op).__name__}")

    def _scalar(self, s: aff.Scalar) -> ll.Reg:
        reg = self.regs.get(id(s))
        if reg is None:
            raise IRValidationError(f"scalar {s} is used before it is defined in @{self.fn.name}")
        return reg

    # ------------------------------------------------------------------
    # Buffers
    # ------------------------------------------------------------------

    def _alloc(self, buf: aff.Buffer) -> None:
        nbytes = buf.type.nbytes
        if nbytes > self.owner.max_buffer_bytes:
            raise ElementCountOverflowError(
                f"buffer {buf} of type {buf.type} needs {nbytes} bytes, "
                f"more than the addressable {self.owner.max_buffer_bytes}"
            )
        reg = self._reg(buf.name, "ptr")
        self.regs[id(buf)] = reg
        self._emit(ll.Call(ll.RT_ALLOC, [ll.Imm(nbytes)], [reg]))
        self.owned.append(buf)

    def _call(self, op: aff.CallOp) -> None:
        results = []
        for buf in op.results:
            reg = self._reg(buf.name, "ptr")
            self.regs[id(buf)] = reg
            results.append(reg)
        self._emit(ll.Call(op.callee, [self._buffer(b) for b in op.args], results))
        self.owned.extend(op.results)

    def _return(self, buffers: list[aff.Buffer]) -> None:
        returned = {id(b) for b in buffers}
        if len(returned) != len(buffers):
            raise IRValidationError(f"@{self.fn.name} returns the same buffer twice")
        owned = {id(b) for b in self.owned}
        for b in buffers:
            if id(b) not in owned:
                raise IRValidationError(f"@{self.fn.name} returns {b}, which it does not own")

        for buf in self.owned:
            if id(buf) not in returned:
                self._emit(ll.Call(ll.RT_FREE, [self._buffer(buf)]))
                self.owner.stats["frees"] += 1
        self._terminate(ll.Ret([self._buffer(b) for b in buffers]))

    def _address(self, buf: aff.Buffer, indices: tuple[aff.LinearExpr, ...], flat: bool) -> ll.Reg:
        """`base + sum(i_k * stride_k)` scaled to bytes, folded into one linear form."""
        strides = (1,) if flat else buf.strides
        coeffs: dict[aff.IndexVar, int] = {}
        constant = 0
        for expr, stride in zip(indices, strides):
            constant += expr.constant * stride
            for iv, c in expr.terms:
                coeffs[iv] = coeffs.get(iv, 0) + c * stride

        offset: ll.Operand = ll.Imm(constant * ll.ELEMENT_BYTES)
        for iv, c in coeffs.items():
            if c == 0:
                continue
            term = self._reg("off", "i64")
            self._emit(ll.BinOp(term, "mul", self._iv(iv), ll.Imm(c * ll.ELEMENT_BYTES)))
            if isinstance(offset, ll.Imm) and offset.value == 0:
                offset = term
                continue
            acc = self._reg("off", "i64")
            self._emit(ll.BinOp(acc, "add", offset, term))
            offset = acc

        addr = self._reg(f"{buf.name}.addr", "ptr")
        self._emit(ll.PtrAdd(addr, self._buffer(buf), offset))
        return addr

    def _iv(self, iv: aff.IndexVar) -> ll.Reg:
        reg = self.ivs.get(iv)
        if reg is None:
            raise IRValidationError(f"unbound induction variable {iv} in @{self.fn.name}")
        return reg

    # ------------------------------------------------------------------
    # Control flow
    # ------------------------------------------------------------------

    def _loop(self, op: aff.ForOp) -> None:
        name = self._label("loop")
        header_label, body_label, exit_label = f"{name}.header", f"{name}.body", f"{name}.exit"

        pre = self.current
        self._terminate(ll.Br(header_label))

        header = self._new_block(header_label)
        self.current = header
        counter = self._reg(op.iv.name, "i64")
        phi = ll.Phi(counter, [(ll.Imm(op.lower), pre.label)])
        self._emit(phi)
        cond = self._reg(f"{op.iv.name}.cond", "i1")
        self._emit(ll.ICmp(cond, "slt", counter, ll.Imm(op.upper)))
        self._terminate(ll.CondBr(cond, body_label, exit_label))

        self.current = self._new_block(body_label)
        self.ivs[op.iv] = counter
        self._lower_ops(op.body)
        del self.ivs[op.iv]

        if not self.current.terminated:
            nxt = self._reg(f"{op.iv.name}.next", "i64")
            self._emit(ll.BinOp(nxt, "add", counter, ll.Imm(1)))
            phi.incoming.append((nxt, self.current.label))
            self._terminate(ll.Br(header_label))

        self.current = self._new_block(exit_label)

    def _if(self, op: aff.IfOp) -> None:
        name = self._label("if")
        then_label, else_label, end_label = f"{name}.then", f"{name}.else", f"{name}.end"

        lhs = self._linear(op.lhs)
        cond = self._reg(f"{name}.cond", "i1")
        self._emit(ll.ICmp(cond, op.predicate, lhs, ll.Imm(op.rhs)))
        self._terminate(ll.CondBr(cond, then_label, else_label))

        for label, body in ((then_label, op.then_body), (else_label, op.else_body)):
            self.current = self._new_block(label)
            self._lower_ops(body)
            if not self.current.terminated:
                self._terminate(ll.Br(end_label))

        self.current = self._new_block(end_label)

    def _linear(self, expr: aff.LinearExpr) -> ll.Operand:
        value: ll.Operand = ll.Imm(expr.constant)
        for iv, c in expr.terms:
            term = self._reg("idx", "i64")
            self._emit(ll.BinOp(term, "mul", self._iv(iv), ll.Imm(c)))
            acc = self._reg("idx", "i64")
            self._emit(ll.BinOp(acc, "add", value, term))
            value = acc
        return value


def lower_to_lowlevel(module: aff.AffineModule, max_buffer_bytes: int = (1 << 63) - 1) -> ll.LowLevelModule:
    return LowLevelLoweringPass(max_buffer_bytes=max_buffer_bytes).run(module)
