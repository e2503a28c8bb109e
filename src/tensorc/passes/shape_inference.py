"""Shape/type inference with per-call-site specialization of generic functions.

Resolution is driven top-down by call-site argument types. Each distinct
(callee, argument types) signature is solved exactly once: the generic body is
cloned, its parameters are bound to the argument types and the clone is
inferred in program order. A single forward walk is enough per body because
the IR is in SSA form and only references earlier values.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterator

from tensorc.errors import (
    RecursiveSpecializationError,
    ShapeMismatchError,
    TypeMismatchError,
    UndefinedSymbolError,
    UnresolvedShapeError,
)
from tensorc.ir import Function, FunctionSignature, GenericCallOp, Module, ReturnOp, Type, is_ranked

logger = logging.getLogger(__name__)


class _InProgress:
    def __repr__(self) -> str:  # pragma: no cover
        return "<in progress>"


IN_PROGRESS = _InProgress()


@dataclass
class SpecializationCache:
    """Signature -> concrete function, with an explicit in-progress marker.

    Scoped to one compilation; hitting an in-progress entry while resolving
    means a specialization depends on its own unresolved signature.
    """

    _entries: dict[FunctionSignature, Function | _InProgress] = field(default_factory=dict)
    hits: int = 0

    def lookup(self, sig: FunctionSignature) -> Function | _InProgress | None:
        return self._entries.get(sig)

    def begin(self, sig: FunctionSignature) -> None:
        self._entries[sig] = IN_PROGRESS

    def finish(self, sig: FunctionSignature, fn: Function) -> None:
        self._entries[sig] = fn

    def specializations(self, template: str) -> dict[FunctionSignature, Function]:
        return {
            sig: fn
            for sig, fn in self._entries.items()
            if sig.name == template and isinstance(fn, Function)
        }

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[FunctionSignature]:
        return iter(self._entries)


@dataclass
class ShapeInferencePass:
    """Resolves every shape in the functions reachable from the seeds.

    Seeds are the entry function (when present) followed by every other
    function whose parameters are all concrete. Generic functions move to
    `module.templates`; their specializations are added to `module.functions`.
    """

    entry: str = "main"
    cache: SpecializationCache = field(default_factory=SpecializationCache)
    module: Module | None = field(default=None, repr=False)

    def run(self, module: Module) -> Module:
        self.module = module
        for name, fn in list(module.functions.items()):
            if fn.is_generic:
                module.templates[name] = module.functions.pop(name)

        seeds = sorted(module.functions, key=lambda n: n != self.entry)
        logger.debug(f"shape inference: seeds={seeds}, templates={list(module.templates)}")
        for name in seeds:
            fn = module.functions[name]
            self.specialize(fn.signature)

        created = sum(1 for fn in module.functions.values() if fn.specialized_from is not None)
        logger.info(
            f"shape inference: {len(module.functions)} concrete functions "
            f"({created} specializations, {self.cache.hits} cache hits)"
        )
        module.verify()
        return module

    # ------------------------------------------------------------------
    # Specialization
    # ------------------------------------------------------------------

    def specialize(self, sig: FunctionSignature, loc=None) -> Function:
        """Look up or create the concrete function for `sig`."""
        state = self.cache.lookup(sig)
        if state is IN_PROGRESS:
            raise RecursiveSpecializationError(
                f"specialization {sig} depends on its own unresolved signature",
                loc,
                hint="a function cannot call itself with the same argument shapes",
            )
        if state is not None:
            self.cache.hits += 1
            return state

        module = self.module
        template = module.templates.get(sig.name)
        if template is None:
            fn = module.functions.get(sig.name)
            if fn is None:
                raise UndefinedSymbolError("function", sig.name, loc)
            self._check_args(fn, sig, loc)
            self.cache.begin(sig)
            self._infer_body(fn)
            self.cache.finish(sig, fn)
            return fn

        self._check_args(template, sig, loc)
        self.cache.begin(sig)
        clone = template.clone(self._unique_name(sig))
        clone.specialized_from = template.name
        for param, t in zip(clone.params, sig.param_types):
            param.type = t
        self._infer_body(clone)
        module.add_function(clone)
        self.cache.finish(sig, clone)
        logger.debug(f"specialized {template.name} as {clone.name} for {sig}")
        return clone

    def _unique_name(self, sig: FunctionSignature) -> str:
        base = sig.mangled_name()
        name, n = base, 1
        while self.module.lookup(name) is not None:
            name = f"{base}_{n}"
            n += 1
        return name

    @staticmethod
    def _check_args(fn: Function, sig: FunctionSignature, loc) -> None:
        if len(fn.params) != len(sig.param_types):
            raise TypeMismatchError(
                f"'{fn.name}' expects {len(fn.params)} argument(s), got {len(sig.param_types)}", loc
            )
        for i, (param, arg) in enumerate(zip(fn.params, sig.param_types)):
            if type(param.type) is not type(arg):
                raise TypeMismatchError(
                    f"argument {i} of '{fn.name}': expected {param.type}, got {arg}", loc
                )
            if not param.type.compatible(arg):
                raise ShapeMismatchError(
                    f"argument {i} of '{fn.name}': expected {param.type}, got {arg}", loc
                )

    # ------------------------------------------------------------------
    # Intra-procedural propagation
    # ------------------------------------------------------------------

    def _infer_body(self, fn: Function) -> None:
        fn.result_type = None
        returned = False
        for op in fn.ops:
            if isinstance(op, GenericCallOp):
                self._resolve_call(op)
                continue

            out = op.infer_output()
            if op.result is not None:
                op.result.type = out

            if isinstance(op, ReturnOp):
                t = op.value.type if op.value is not None else None
                if returned and t != fn.result_type:
                    raise ShapeMismatchError(
                        f"'{fn.name}' returns both {fn.result_type} and {t}", op.loc
                    )
                fn.result_type = t
                returned = True

    def _resolve_call(self, op: GenericCallOp) -> None:
        arg_types: list[Type] = []
        for v in op.operands:
            if not is_ranked(v.type):
                raise UnresolvedShapeError(
                    f"shape of '%{v.name}' (argument of call to '{op.callee}') could not be inferred",
                    op.loc,
                )
            arg_types.append(v.type)

        callee = self.specialize(FunctionSignature(op.callee, tuple(arg_types)), op.loc)
        op.attrs["callee"] = callee.name

        if callee.result_type is None:
            if op.result is not None and op.result.users:
                raise TypeMismatchError(f"call to '{callee.name}' produces no value", op.loc)
            op.result = None
            op.attrs.pop("result_type", None)
            return
        op.attrs["result_type"] = callee.result_type
        op.result.type = callee.result_type


def infer_shapes(module: Module, entry: str = "main", cache: SpecializationCache | None = None) -> Module:
    if cache is None:
        cache = SpecializationCache()
    return ShapeInferencePass(entry=entry, cache=cache).run(module)
