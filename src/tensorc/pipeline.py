"""Compilation pipeline.

The stages are, in order:
1. AST -> Tensor IR (irgen)
2. Shape inference and specialization
3. Canonicalization (inlining + local rewrites)
4. Affine lowering
5. Low-level lowering

Input may enter at any level (AST, Tensor IR module, Affine module or
Low-level module, the last two also as text); only the remaining stages
run. The reference backend can then execute the Low-level IR.

Example usage:
    from tensorc.pipeline import Compiler, Stage

    compiler = Compiler(CompilerOptions(inline_policy=InlinePolicy.NEVER))
    result = compiler.compile(tree, until=Stage.AFFINE)
    print(result.dump(Stage.AFFINE))

    outcome = compiler.run(tree)
    print("\\n".join(outcome.output))
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Callable, Sequence, Union

import numpy as np

from tensorc.affine.ir import AffineModule
from tensorc.affine.parser import parse_affine
from tensorc.ast import Location, ModuleAST
from tensorc.config import CompilerOptions
from tensorc.errors import BackendFailure, CompileError, IRValidationError
from tensorc.ir import Module
from tensorc.irgen import IRGen
from tensorc.lowlevel.ir import LowLevelModule
from tensorc.lowlevel.parser import parse_lowlevel
from tensorc.passes.affine_lowering import AffineLoweringPass
from tensorc.passes.canonicalize import CanonicalizePass
from tensorc.passes.lowlevel_lowering import LowLevelLoweringPass
from tensorc.passes.shape_inference import ShapeInferencePass, SpecializationCache
from tensorc.runtime import Engine, ExecutionResult

logger = logging.getLogger(__name__)

Source = Union[ModuleAST, Module, AffineModule, LowLevelModule, str]

# Block labels only appear in Low-level text, unindented and alone on their line.
_LABEL_LINE = re.compile(r"^[\w.]+:$", re.MULTILINE)


class Stage(IntEnum):
    AST = 0
    TENSOR = 1
    SPECIALIZED = 2
    CANONICAL = 3
    AFFINE = 4
    LOWLEVEL = 5


PARSERS: dict[Stage, Callable[[str], Source]] = {
    Stage.AFFINE: parse_affine,
    Stage.LOWLEVEL: parse_lowlevel,
}


def stage_of(source: Source) -> Stage:
    """The level an input object belongs to.

    Text is Affine IR or Low-level IR, told apart by the block labels only the
    latter has.
    """
    if isinstance(source, str):
        if not source.lstrip().startswith("func @"):
            raise IRValidationError("IR text must start with a function header", Location(None, 1, 1))
        return Stage.LOWLEVEL if _LABEL_LINE.search(source) else Stage.AFFINE
    if isinstance(source, ModuleAST):
        return Stage.AST
    if isinstance(source, Module):
        return Stage.TENSOR
    if isinstance(source, AffineModule):
        return Stage.AFFINE
    if isinstance(source, LowLevelModule):
        return Stage.LOWLEVEL
    raise TypeError(f"cannot compile a {type(source).__name__}")


# =============================================================================
# Context and result
# =============================================================================


@dataclass
class CompilationContext:
    """State shared by the passes of one compilation.

    A fresh context is created per `Compiler.compile` call; nothing is shared
    between compilations.
    """

    options: CompilerOptions = field(default_factory=CompilerOptions)
    cache: SpecializationCache = field(default_factory=SpecializationCache)
    stats: Counter = field(default_factory=Counter)


@dataclass
class CompilationResult:
    """IR produced by each stage that ran.

    Tensor IR is rewritten in place by inference and canonicalization, so
    `levels[Stage.TENSOR]` and `levels[Stage.CANONICAL]` are the same object;
    `dumps` keeps the text of each stage as it was when the stage finished.
    """

    context: CompilationContext
    start: Stage = Stage.AST
    levels: dict[Stage, Source] = field(default_factory=dict)
    dumps: dict[Stage, str] = field(default_factory=dict)

    def record(self, stage: Stage, ir: Source) -> None:
        self.levels[stage] = ir
        if isinstance(ir, Module):
            self.dumps[stage] = ir.summary()
        elif isinstance(ir, (AffineModule, LowLevelModule)):
            self.dumps[stage] = ir.format()

    def dump(self, stage: Stage) -> str:
        if stage not in self.dumps:
            raise KeyError(f"stage {stage.name} was not produced by this compilation")
        return self.dumps[stage]

    @property
    def module(self) -> Module | None:
        for stage in (Stage.CANONICAL, Stage.SPECIALIZED, Stage.TENSOR):
            if stage in self.levels:
                return self.levels[stage]
        return None

    @property
    def affine(self) -> AffineModule | None:
        return self.levels.get(Stage.AFFINE)

    @property
    def lowlevel(self) -> LowLevelModule | None:
        return self.levels.get(Stage.LOWLEVEL)


# =============================================================================
# Compiler
# =============================================================================


class Compiler:
    """Runs the pipeline with one set of options."""

    def __init__(self, options: CompilerOptions | None = None, name: str = "module") -> None:
        self.options = options or CompilerOptions()
        self.name = name
        self._setup_logging()

    def _setup_logging(self) -> None:
        logging.getLogger("tensorc").setLevel(self.options.log_level)

    def compile(self, source: Source, until: Stage = Stage.LOWLEVEL) -> CompilationResult:
        """Run every stage after the one `source` belongs to, up to `until`.

        Affine IR and Low-level IR text is parsed first, then verified like an
        injected module.

        Raises:
            CompileError: The first error found; compilation stops there.
            ValueError: If `until` is earlier than the input level.
        """
        start = stage_of(source)
        if until < start:
            raise ValueError(f"cannot compile a {start.name} input back to {until.name}")

        ctx = CompilationContext(self.options)
        result = CompilationResult(context=ctx, start=start)

        steps: list[tuple[Stage, Callable[[Source, CompilationContext], Source]]] = [
            (Stage.TENSOR, self._irgen),
            (Stage.SPECIALIZED, self._infer),
            (Stage.CANONICAL, self._canonicalize),
            (Stage.AFFINE, self._lower_affine),
            (Stage.LOWLEVEL, self._lower_lowlevel),
        ]

        current = source
        try:
            if isinstance(current, str):
                current = PARSERS[start](current)
            result.record(start, current)
            if start is not Stage.AST:
                current.verify()
            for stage, step in steps:
                if stage <= start:
                    continue
                if stage > until:
                    break
                logger.info(f"stage {stage.name}")
                current = step(current, ctx)
                result.record(stage, current)
        except CompileError as e:
            logger.error(f"compilation failed: {e}")
            raise

        return result

    def run(
        self,
        source: Source,
        args: Sequence[np.ndarray] = (),
        engine: Engine | None = None,
    ) -> ExecutionResult:
        """Compile `source` to Low-level IR and execute the entry function."""
        lowered = self.compile(source, until=Stage.LOWLEVEL).lowlevel
        engine = engine or Engine(
            heap_bytes=self.options.heap_bytes,
            alignment=self.options.heap_alignment,
            max_steps=self.options.max_steps,
        )
        try:
            return engine.execute(lowered, self.options.entry, args)
        except BackendFailure as e:
            logger.error(f"execution failed: {e}")
            raise

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    def _irgen(self, tree: ModuleAST, ctx: CompilationContext) -> Module:
        return IRGen(self.name).generate(tree)

    def _infer(self, module: Module, ctx: CompilationContext) -> Module:
        return ShapeInferencePass(entry=ctx.options.entry, cache=ctx.cache).run(module)

    def _canonicalize(self, module: Module, ctx: CompilationContext) -> Module:
        if not ctx.options.canonicalize:
            logger.debug("canonicalization disabled")
            return module
        return CanonicalizePass(
            inline_policy=ctx.options.inline_policy,
            entry=ctx.options.entry,
            stats=ctx.stats,
        ).run(module)

    def _lower_affine(self, module: Module, ctx: CompilationContext) -> AffineModule:
        return AffineLoweringPass(max_buffer_bytes=ctx.options.max_buffer_bytes, stats=ctx.stats).run(module)

    def _lower_lowlevel(self, module: AffineModule, ctx: CompilationContext) -> LowLevelModule:
        return LowLevelLoweringPass(max_buffer_bytes=ctx.options.max_buffer_bytes, stats=ctx.stats).run(module)


def compile_module(
    source: Source,
    options: CompilerOptions | None = None,
    until: Stage = Stage.LOWLEVEL,
) -> CompilationResult:
    return Compiler(options).compile(source, until)


def run_module(
    source: Source,
    args: Sequence[np.ndarray] = (),
    options: CompilerOptions | None = None,
) -> ExecutionResult:
    return Compiler(options).run(source, args)
