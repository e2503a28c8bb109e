"""Reference backend: interprets Low-level IR over a simulated heap.

It stands in for the native code generator and JIT. It executes the same
contract: run the entry function, return its result buffers as arrays and
report what `print` wrote. Faults raised by the heap or the interpreter are
reported as `BackendFailure`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

import numpy as np

from tensorc.errors import BackendFailure
from tensorc.lowlevel import ir as ll

from .memory import HeapConfig, HeapError, VirtualHeap

logger = logging.getLogger(__name__)

__all__ = ["Engine", "ExecutionResult", "ExecutionStats", "execute", "format_tensor"]


@dataclass
class ExecutionStats:
    steps: int = 0
    calls: int = 0
    loads: int = 0
    stores: int = 0
    allocations: int = 0
    frees: int = 0
    peak_bytes: int = 0


@dataclass
class ExecutionResult:
    results: list[np.ndarray] = field(default_factory=list)
    output: list[str] = field(default_factory=list)
    stats: ExecutionStats = field(default_factory=ExecutionStats)


def format_tensor(array: np.ndarray) -> str:
    """Render a buffer the way `print` shows it."""
    return np.array2string(np.asarray(array, dtype=np.float64), separator=", ", precision=6)


class Engine:
    """Executes a `LowLevelModule`.

    Example:
        >>> engine = Engine(heap_bytes=64 * 1024)
        >>> result = engine.execute(module, "main")
        >>> result.output, result.stats.peak_bytes
    """

    def __init__(
        self,
        heap_bytes: int = 1024 * 1024,
        alignment: int = 64,
        max_steps: int = 10_000_000,
    ) -> None:
        self.config = HeapConfig(total_bytes=heap_bytes, alignment=alignment)
        self.max_steps = max_steps
        self.heap = VirtualHeap(self.config)
        self.stats = ExecutionStats()
        self.output: list[str] = []
        self._module: ll.LowLevelModule | None = None

    def execute(
        self,
        module: ll.LowLevelModule,
        entry: str = "main",
        args: Sequence[np.ndarray] = (),
    ) -> ExecutionResult:
        """Run `entry` with `args` copied into fresh heap buffers.

        The entry's results are copied out and freed; anything still live on
        the heap afterwards is a leak.
        """
        self.heap = VirtualHeap(self.config)
        self.stats = ExecutionStats()
        self.output = []
        self._module = module

        try:
            fn = self._lookup(entry)
            if len(args) != len(fn.params):
                raise BackendFailure(f"@{entry} takes {len(fn.params)} argument(s), got {len(args)}")

            pointers = []
            for i, (arg, shape) in enumerate(zip(args, fn.param_shapes)):
                array = np.asarray(arg, dtype=np.float64)
                if array.shape != tuple(shape):
                    raise BackendFailure(f"argument {i} of @{entry} has shape {array.shape}, expected {tuple(shape)}")
                addr = self.heap.alloc(array.size * ll.ELEMENT_BYTES, tag=f"arg{i}")
                self.heap.write_array(addr, array)
                pointers.append(addr)

            returned = self._call(fn, pointers)

            results = []
            for addr, shape in zip(returned, fn.result_shapes):
                results.append(self.heap.read_array(addr, tuple(shape)))
                self.heap.free(addr)
            for addr in pointers:
                self.heap.free(addr)

            leaked = self.heap.get_allocations()
            if leaked:
                tags = ", ".join(a.tag for a in leaked)
                raise BackendFailure(f"{len(leaked)} buffer(s) leaked at exit: {tags}")
        except HeapError as e:
            raise BackendFailure(str(e)) from e

        self.stats.allocations = self.heap.alloc_count
        self.stats.frees = self.heap.free_count
        self.stats.peak_bytes = self.heap.peak_bytes
        logger.info(
            f"executed @{entry}: {self.stats.steps} steps, {self.stats.calls} calls, "
            f"peak heap {self.stats.peak_bytes} bytes"
        )
        return ExecutionResult(results=results, output=list(self.output), stats=self.stats)

    # -------------------------------------------------------------------------
    # Interpreter
    # -------------------------------------------------------------------------

    def _lookup(self, name: str) -> ll.LowLevelFunction:
        fn = self._module.functions.get(name)
        if fn is None:
            raise BackendFailure(f"unknown function @{name}")
        return fn

    def _call(self, fn: ll.LowLevelFunction, args: list[int]) -> list[int]:
        self.stats.calls += 1
        regs: dict[str, int | float | bool] = {p.name: a for p, a in zip(fn.params, args)}
        blocks = {b.label: b for b in fn.blocks}

        def value(op: ll.Operand) -> int | float | bool:
            if isinstance(op, ll.Imm):
                return op.value
            try:
                return regs[op.name]
            except KeyError:
                raise BackendFailure(f"register {op} read before it is written in @{fn.name}") from None

        prev: str | None = None
        block = fn.entry
        while True:
            # Phi nodes read their inputs on block entry, all at once.
            phis = block.phis
            if phis:
                incoming = {}
                for phi in phis:
                    for v, label in phi.incoming:
                        if label == prev:
                            incoming[phi.dst.name] = value(v)
                            break
                    else:
                        raise BackendFailure(f"phi {phi.dst} in '{block.label}' has no edge from '{prev}'")
                regs.update(incoming)

            for instr in block.instrs:
                self._tick()
                if isinstance(instr, ll.Phi):
                    continue
                if isinstance(instr, ll.Const):
                    regs[instr.dst.name] = instr.value
                elif isinstance(instr, ll.BinOp):
                    regs[instr.dst.name] = self._binop(instr.op, value(instr.lhs), value(instr.rhs))
                elif isinstance(instr, ll.ICmp):
                    regs[instr.dst.name] = _compare(instr.pred, value(instr.lhs), value(instr.rhs))
                elif isinstance(instr, ll.PtrAdd):
                    regs[instr.dst.name] = int(value(instr.base)) + int(value(instr.offset))
                elif isinstance(instr, ll.Load):
                    self.stats.loads += 1
                    regs[instr.dst.name] = self.heap.load_f64(int(value(instr.addr)))
                elif isinstance(instr, ll.Store):
                    self.stats.stores += 1
                    self.heap.store_f64(int(value(instr.addr)), float(value(instr.value)))
                elif isinstance(instr, ll.Call):
                    results = self._dispatch(instr, [value(a) for a in instr.args])
                    if len(results) != len(instr.results):
                        raise BackendFailure(f"@{instr.callee} returned {len(results)} value(s), expected {len(instr.results)}")
                    for reg, v in zip(instr.results, results):
                        regs[reg.name] = v
                else:
                    raise BackendFailure(f"cannot execute {type(instr).__name__}")

            self._tick()
            term = block.terminator
            if isinstance(term, ll.Ret):
                return [int(value(v)) for v in term.values]
            if isinstance(term, ll.Br):
                target = term.target
            elif isinstance(term, ll.CondBr):
                target = term.then_target if value(term.cond) else term.else_target
            else:
                raise BackendFailure(f"block '{block.label}' in @{fn.name} has no terminator")
            if target not in blocks:
                raise BackendFailure(f"branch to unknown block '{target}' in @{fn.name}")
            prev, block = block.label, blocks[target]

    def _dispatch(self, call: ll.Call, args: list) -> list:
        if call.callee == ll.RT_ALLOC:
            return [self.heap.alloc(int(args[0]), tag=", ".join(str(r) for r in call.results))]
        if call.callee == ll.RT_FREE:
            self.heap.free(int(args[0]))
            return []
        if call.callee == ll.RT_PRINT:
            shape = tuple(call.shape or ())
            self.output.append(format_tensor(self.heap.read_array(int(args[0]), shape)))
            return []
        return self._call(self._lookup(call.callee), [int(a) for a in args])

    def _tick(self) -> None:
        self.stats.steps += 1
        if self.stats.steps > self.max_steps:
            raise BackendFailure(f"step limit of {self.max_steps} exceeded")

    @staticmethod
    def _binop(op: str, lhs, rhs):
        if op == "add":
            return int(lhs) + int(rhs)
        if op == "mul":
            return int(lhs) * int(rhs)
        if op == "fadd":
            return float(lhs) + float(rhs)
        if op == "fmul":
            return float(lhs) * float(rhs)
        raise BackendFailure(f"unknown binary operator '{op}'")


def _compare(pred: str, lhs, rhs) -> bool:
    if pred == "slt":
        return lhs < rhs
    if pred == "sle":
        return lhs <= rhs
    if pred == "sgt":
        return lhs > rhs
    if pred == "sge":
        return lhs >= rhs
    if pred == "eq":
        return lhs == rhs
    if pred == "ne":
        return lhs != rhs
    raise BackendFailure(f"unknown comparison '{pred}'")


def execute(
    module: ll.LowLevelModule,
    entry: str = "main",
    args: Sequence[np.ndarray] = (),
    **engine_kwargs,
) -> ExecutionResult:
    return Engine(**engine_kwargs).execute(module, entry, args)
