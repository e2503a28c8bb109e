from __future__ import annotations

import logging
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Callable

import numpy as np

from tensorc.config import InlinePolicy
from tensorc.ir import (
    CastOp,
    ConstantOp,
    Function,
    GenericCallOp,
    Module,
    Op,
    PrintOp,
    ReshapeOp,
    ReturnOp,
    TransposeOp,
)

logger = logging.getLogger(__name__)


def compute_purity(module: Module) -> dict[str, bool]:
    """A function is pure iff it prints nothing and calls only pure functions."""
    purity: dict[str, bool] = {}

    def visit(name: str, stack: tuple[str, ...]) -> bool:
        if name in purity:
            return purity[name]
        fn = module.functions.get(name)
        if fn is None or name in stack:
            return False
        pure = True
        for op in fn.ops:
            if isinstance(op, PrintOp):
                pure = False
            elif isinstance(op, GenericCallOp) and not visit(op.callee, stack + (name,)):
                pure = False
        purity[name] = pure
        return pure

    for name in module.functions:
        visit(name, ())
    return purity


def inline_call(caller: Function, call: GenericCallOp, callee: Function) -> None:
    """Replace `call` by a copy of `callee`'s body with parameters bound to the arguments."""
    mapping = {id(p): arg for p, arg in zip(callee.params, call.operands)}
    returned = None
    for op in callee.ops:
        if isinstance(op, ReturnOp):
            returned = mapping[id(op.value)] if op.value is not None else None
            break
        copy = op.clone([mapping[id(v)] for v in op.operands])
        out = caller.insert_before(call, copy)
        if op.result is not None:
            mapping[id(op.result)] = out
        elif copy.result is not None:
            copy.result = None

    if call.result is not None and returned is not None:
        call.result.replace_all_uses_with(returned)
    caller.erase(call)


Rule = Callable[[Function, Op], "list[Op] | None"]


@dataclass
class CanonicalizePass:
    """Inlines calls per policy, then rewrites every function to a fixed point.

    Rules (each returns the ops to revisit, or None when it does not apply):
    - dead pure ops are erased
    - transpose(transpose(x)) -> x
    - reshape(reshape(x, s1), s2) -> reshape(x, s2)
    - reshape(x, s) -> x and cast(x) -> x when the type does not change
    - reshape(constant) -> constant
    Running the pass on its own output changes nothing.
    """

    inline_policy: InlinePolicy = InlinePolicy.ALWAYS
    entry: str = "main"
    stats: Counter = field(default_factory=Counter)
    _purity: dict[str, bool] = field(default_factory=dict, repr=False)
    _live: set[int] = field(default_factory=set, repr=False)

    def run(self, module: Module) -> Module:
        if self.inline_policy != InlinePolicy.NEVER:
            self._inline(module)
        self._purity = compute_purity(module)
        for fn in module.functions.values():
            self.simplify(fn)
        if self.stats:
            logger.info(f"canonicalize: {dict(self.stats)}")
        return module

    # ------------------------------------------------------------------
    # Inlining
    # ------------------------------------------------------------------

    def _should_inline(self, module: Module, callee: str) -> bool:
        if self.inline_policy == InlinePolicy.ALWAYS:
            return True
        return len(module.call_sites(callee)) == 1

    def _inline(self, module: Module) -> None:
        progress = True
        while progress:
            progress = False
            for fn in list(module.functions.values()):
                if module.functions.get(fn.name) is not fn:
                    continue
                for op in list(fn.ops):
                    if not isinstance(op, GenericCallOp) or not self._should_inline(module, op.callee):
                        continue
                    callee = module.functions[op.callee]
                    inline_call(fn, op, callee)
                    self.stats["inline"] += 1
                    progress = True
                    if callee.name != self.entry and not module.call_sites(callee.name):
                        del module.functions[callee.name]
                        self.stats["drop_function"] += 1
                        logger.debug(f"dropped fully inlined function {callee.name}")

    # ------------------------------------------------------------------
    # Local rewriting
    # ------------------------------------------------------------------

    @property
    def rules(self) -> list[Rule]:
        return [
            self._erase_dead,
            self._fold_double_transpose,
            self._fold_reshape_chain,
            self._fold_identity,
            self._fold_constant_reshape,
        ]

    def simplify(self, fn: Function) -> int:
        """Apply the rules to `fn` until none fires. Returns the number of rewrites."""
        self._live = {id(op) for op in fn.ops}
        worklist: deque[Op] = deque(fn.ops)
        queued = {id(op) for op in fn.ops}
        fired = 0

        def push(op: Op | None) -> None:
            if op is not None and id(op) in self._live and id(op) not in queued:
                worklist.append(op)
                queued.add(id(op))

        while worklist:
            op = worklist.popleft()
            queued.discard(id(op))
            if id(op) not in self._live:
                continue
            for rule in self.rules:
                touched = rule(fn, op)
                if touched is None:
                    continue
                fired += 1
                self.stats[rule.__name__.lstrip("_")] += 1
                for t in touched:
                    push(t)
                push(op)
                break
        return fired

    def _is_pure(self, op: Op) -> bool:
        if isinstance(op, GenericCallOp):
            return self._purity.get(op.callee, False)
        return op.pure

    def _erase_dead(self, fn: Function, op: Op) -> list[Op] | None:
        if isinstance(op, (PrintOp, ReturnOp)) or not self._is_pure(op):
            return None
        if op.result is not None and op.result.users:
            return None
        producers = [v.producer for v in op.operands if v.producer is not None]
        fn.erase(op)
        self._live.discard(id(op))
        return producers

    def _fold_double_transpose(self, fn: Function, op: Op) -> list[Op] | None:
        if not isinstance(op, TransposeOp):
            return None
        inner = op.operands[0].producer
        if not isinstance(inner, TransposeOp):
            return None
        users = list(op.result.users)
        op.result.replace_all_uses_with(inner.operands[0])
        return users + [inner]

    def _fold_reshape_chain(self, fn: Function, op: Op) -> list[Op] | None:
        if not isinstance(op, ReshapeOp):
            return None
        inner = op.operands[0].producer
        if not isinstance(inner, ReshapeOp):
            return None
        op.replace_operand(op.operands[0], inner.operands[0])
        return [inner]

    def _fold_identity(self, fn: Function, op: Op) -> list[Op] | None:
        if not isinstance(op, (ReshapeOp, CastOp)):
            return None
        src = op.operands[0]
        if src.type != op.result.type:
            return None
        users = list(op.result.users)
        op.result.replace_all_uses_with(src)
        return users

    def _fold_constant_reshape(self, fn: Function, op: Op) -> list[Op] | None:
        if not isinstance(op, ReshapeOp):
            return None
        inner = op.operands[0].producer
        if not isinstance(inner, ConstantOp) or not isinstance(inner.value, np.ndarray):
            return None
        folded = ConstantOp(operands=[], attrs={"value": inner.value.reshape(op.shape)}, loc=op.loc)
        out = fn.insert_before(op, folded)
        self._live.add(id(folded))
        users = list(op.result.users)
        op.result.replace_all_uses_with(out)
        return users + [inner]


def canonicalize(module: Module, inline_policy: InlinePolicy = InlinePolicy.ALWAYS, entry: str = "main") -> Module:
    return CanonicalizePass(inline_policy=inline_policy, entry=entry).run(module)
