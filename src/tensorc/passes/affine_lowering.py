from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Union

import numpy as np

from tensorc.affine import ir as aff
from tensorc.errors import ElementCountOverflowError, TypeMismatchError, UnresolvedShapeError
from tensorc.ir import (
    CastOp,
    ConstantOp,
    ElementwiseOp,
    Function,
    GenericCallOp,
    Module,
    Op,
    PrintOp,
    ReshapeOp,
    ReturnOp,
    StructAccessOp,
    StructType,
    TensorType,
    TransposeOp,
    Type,
    Value,
)
from tensorc.ir.ops import Payload

logger = logging.getLogger(__name__)

# A lowered value is one buffer for a tensor and an ordered field -> lowered
# mapping for a struct.
Lowered = Union[aff.Buffer, dict]


def memref_types(t: Type | None) -> list[aff.MemRefType]:
    """Flat list of buffer types for a tensor or (nested) struct type."""
    if t is None:
        return []
    if isinstance(t, TensorType):
        if not t.ranked:
            raise UnresolvedShapeError(f"cannot lower unranked type {t}")
        return [aff.MemRefType(t.element, t.shape)]
    if isinstance(t, StructType):
        out: list[aff.MemRefType] = []
        for _, ft in t.fields:
            out.extend(memref_types(ft))
        return out
    raise TypeMismatchError(f"cannot lower value of type {t}")


def flatten(lowered: Lowered) -> list[aff.Buffer]:
    if isinstance(lowered, aff.Buffer):
        return [lowered]
    out: list[aff.Buffer] = []
    for sub in lowered.values():
        out.extend(flatten(sub))
    return out


@dataclass
class AffineLoweringPass:
    """Lowers a fully ranked Tensor IR module into loop nests over buffers.

    One buffer is allocated per computed tensor value (transpose and reshape
    results are materialized eagerly). Structs become one buffer per field.
    Generic templates are not lowered.
    """

    max_buffer_bytes: int = (1 << 63) - 1
    stats: Counter = field(default_factory=Counter)

    def run(self, module: Module) -> aff.AffineModule:
        out = aff.AffineModule()
        for fn in module.functions.values():
            out.add(_FunctionLowering(fn, self).lower())
        out.verify()
        logger.info(
            f"affine lowering: {len(out.functions)} functions, "
            f"{self.stats['buffers']} buffers, {self.stats['loops']} loops"
        )
        return out


class _FunctionLowering:
    def __init__(self, fn: Function, owner: AffineLoweringPass) -> None:
        self.fn = fn
        self.owner = owner
        self.body: list[aff.AffineOp] = []
        self.env: dict[int, Lowered] = {}
        self.owned: set[int] = set()
        self._counters: Counter = Counter()

    def _fresh(self, prefix: str) -> str:
        n = self._counters[prefix]
        self._counters[prefix] += 1
        return f"{prefix}{n}"

    # ------------------------------------------------------------------
    # Entry
    # ------------------------------------------------------------------

    def lower(self) -> aff.AffineFunction:
        fn = self.fn
        params: list[aff.Buffer] = []
        for p in fn.params:
            lowered = self._declare(p.type, p.name)
            self.env[id(p)] = lowered
            params.extend(flatten(lowered))

        for op in fn.ops:
            self._lower_op(op)

        logger.debug(f"lowered @{fn.name} to affine ({len(self.body)} top-level ops)")
        return aff.AffineFunction(
            name=fn.name,
            params=params,
            result_types=memref_types(fn.result_type),
            body=self.body,
        )

    def _declare(self, t: Type, name: str) -> Lowered:
        """Buffers for a value without allocating them (parameters, call results)."""
        if isinstance(t, StructType):
            return {fname: self._declare(ft, f"{name}.{fname}") for fname, ft in t.fields}
        (mt,) = memref_types(t)
        return aff.Buffer(name, mt)

    def _alloc(self, shape: tuple[int, ...] | None, name: str) -> aff.Buffer:
        if shape is None:
            raise UnresolvedShapeError(f"shape of '%{name}' could not be inferred")
        buf = aff.Buffer(name, aff.MemRefType(self._element(), shape))
        if buf.type.nbytes > self.owner.max_buffer_bytes:
            raise ElementCountOverflowError(
                f"buffer %{name} of type {buf.type} needs {buf.type.nbytes} bytes, "
                f"more than the addressable {self.owner.max_buffer_bytes}"
            )
        self.body.append(aff.AllocOp(buf))
        self.owned.add(id(buf))
        self.owner.stats["buffers"] += 1
        return buf

    @staticmethod
    def _element():
        return TensorType().element

    def _tensor(self, v: Value) -> aff.Buffer:
        lowered = self.env[id(v)]
        if not isinstance(lowered, aff.Buffer):
            raise TypeMismatchError(f"expected a tensor, got struct value %{v.name}")
        return lowered

    def _scalar(self) -> aff.Scalar:
        return aff.Scalar(self._fresh("s"))

    def _loop_nest(
        self,
        shape: tuple[int, ...],
        make_body: Callable[[tuple[aff.IndexVar, ...]], list[aff.AffineOp]],
    ) -> None:
        """Emit one loop per dimension; the innermost body comes from `make_body`."""
        ivs = tuple(aff.IndexVar(self._fresh("i")) for _ in shape)
        inner = make_body(ivs)
        for iv, extent in reversed(list(zip(ivs, shape))):
            inner = [aff.ForOp(iv, 0, extent, inner)]
            self.owner.stats["loops"] += 1
        self.body.extend(inner)

    # ------------------------------------------------------------------
    # Ops
    # ------------------------------------------------------------------

    def _lower_op(self, op: Op) -> None:
        if isinstance(op, ConstantOp):
            self.env[id(op.result)] = self._constant(op.value, op.result.type, op.result.name)
        elif isinstance(op, ElementwiseOp):
            self._elementwise(op)
        elif isinstance(op, TransposeOp):
            self._transpose(op)
        elif isinstance(op, ReshapeOp):
            self._reshape(op)
        elif isinstance(op, (CastOp, StructAccessOp)):
            self._alias(op)
        elif isinstance(op, GenericCallOp):
            self._call(op)
        elif isinstance(op, PrintOp):
            self.body.append(aff.PrintOp(self._tensor(op.operands[0])))
        elif isinstance(op, ReturnOp):
            self._return(op)
        else:
            raise TypeMismatchError(f"no affine lowering for {op.kind}", op.loc)

    def _constant(self, payload: Payload, t: Type, name: str) -> Lowered:
        if isinstance(payload, tuple):
            if not isinstance(t, StructType):
                raise TypeMismatchError(f"struct constant %{name} has non-struct type {t}")
            return {
                fname: self._constant(p, ft, f"{name}.{fname}")
                for (fname, ft), p in zip(t.fields, payload)
            }

        buf = self._alloc(tuple(payload.shape), name)
        for index in np.ndindex(*payload.shape):
            s = self._scalar()
            self.body.append(aff.ConstantOp(s, float(payload[index])))
            self.body.append(
                aff.StoreOp(s, buf, tuple(aff.LinearExpr.const(i) for i in index))
            )
        return buf

    def _elementwise(self, op: ElementwiseOp) -> None:
        lhs = self._tensor(op.operands[0])
        rhs = self._tensor(op.operands[1])
        out = self._alloc(op.result.shape, op.result.name)
        kind = op.mnemonic

        def body(ivs: tuple[aff.IndexVar, ...]) -> list[aff.AffineOp]:
            idx = tuple(aff.LinearExpr.of(iv) for iv in ivs)
            a, b, r = self._scalar(), self._scalar(), self._scalar()
            return [
                aff.LoadOp(a, lhs, idx),
                aff.LoadOp(b, rhs, idx),
                aff.BinaryOp(r, kind, a, b),
                aff.StoreOp(r, out, idx),
            ]

        self._loop_nest(out.shape, body)
        self.env[id(op.result)] = out

    def _transpose(self, op: TransposeOp) -> None:
        src = self._tensor(op.operands[0])
        out = self._alloc(op.result.shape, op.result.name)

        def body(ivs: tuple[aff.IndexVar, ...]) -> list[aff.AffineOp]:
            idx = tuple(aff.LinearExpr.of(iv) for iv in ivs)
            s = self._scalar()
            return [
                aff.LoadOp(s, src, tuple(reversed(idx))),
                aff.StoreOp(s, out, idx),
            ]

        self._loop_nest(out.shape, body)
        self.env[id(op.result)] = out

    def _reshape(self, op: ReshapeOp) -> None:
        src = self._tensor(op.operands[0])
        out = self._alloc(op.result.shape, op.result.name)

        def body(ivs: tuple[aff.IndexVar, ...]) -> list[aff.AffineOp]:
            idx = tuple(aff.LinearExpr.of(iv) for iv in ivs)
            s = self._scalar()
            return [
                aff.LoadOp(s, src, (aff.LinearExpr.dot(ivs, out.strides),), flat=True),
                aff.StoreOp(s, out, idx),
            ]

        self._loop_nest(out.shape, body)
        self.env[id(op.result)] = out

    def _alias(self, op: Op) -> None:
        src = self.env[id(op.operands[0])]
        if isinstance(op, StructAccessOp):
            struct_type = op.operands[0].type
            if not isinstance(src, dict) or not isinstance(struct_type, StructType):
                raise TypeMismatchError(f"field access on non-struct %{op.operands[0].name}", op.loc)
            src = list(src.values())[struct_type.field_index(op.field)]
        self.env[id(op.result)] = src

    def _call(self, op: GenericCallOp) -> None:
        args: list[aff.Buffer] = []
        for v in op.operands:
            args.extend(flatten(self.env[id(v)]))
        results: list[aff.Buffer] = []
        if op.result is not None:
            lowered = self._declare(op.result.type, op.result.name)
            results = flatten(lowered)
            self.env[id(op.result)] = lowered
            self.owned.update(id(b) for b in results)
        self.body.append(aff.CallOp(op.callee, args, results))

    def _return(self, op: ReturnOp) -> None:
        buffers: list[aff.Buffer] = []
        if op.value is not None:
            seen: set[int] = set()
            for buf in flatten(self.env[id(op.value)]):
                if id(buf) not in self.owned or id(buf) in seen:
                    buf = self._copy(buf)
                seen.add(id(buf))
                buffers.append(buf)
        self.body.append(aff.ReturnOp(buffers))

    def _copy(self, src: aff.Buffer) -> aff.Buffer:
        """Copy a buffer the function does not own into one it can hand to the caller."""
        out = self._alloc(src.shape, self._fresh(f"{src.name}.ret"))

        def body(ivs: tuple[aff.IndexVar, ...]) -> list[aff.AffineOp]:
            idx = tuple(aff.LinearExpr.of(iv) for iv in ivs)
            s = self._scalar()
            return [aff.LoadOp(s, src, idx), aff.StoreOp(s, out, idx)]

        self._loop_nest(out.shape, body)
        return out


def lower_to_affine(module: Module, max_buffer_bytes: int = (1 << 63) - 1) -> aff.AffineModule:
    return AffineLoweringPass(max_buffer_bytes=max_buffer_bytes).run(module)
