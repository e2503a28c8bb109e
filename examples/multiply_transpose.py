#!/usr/bin/env python3
"""End-to-end demo: a generic function specialized per call site.

    def multiply_transpose(a, b) { return a * transpose(b); }

    def main() {
      var a<2, 3> = [[1, 2, 3], [4, 5, 6]];
      var b<3, 2> = [1, 2, 3, 4, 5, 6];
      var c = multiply_transpose(a, b);
      var d = multiply_transpose(b, a);
      print(c);
      print(d);
    }

Every stage of the pipeline is dumped, then the reference backend runs the
Low-level IR.

Run with:
    python examples/multiply_transpose.py [--inline {always,single_use,never}]
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

repo_root = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(repo_root / "src"))

from tensorc import Compiler, CompilerOptions, InlinePolicy, Stage
from tensorc.ast import (
    BinaryExpr,
    CallExpr,
    FunctionAST,
    LiteralExpr,
    Location,
    ModuleAST,
    NumberExpr,
    Param,
    PrintExpr,
    Prototype,
    ReturnExpr,
    VarDeclExpr,
    VariableExpr,
    VarType,
)


def literal(values) -> LiteralExpr:
    return LiteralExpr([literal(v) if isinstance(v, list) else NumberExpr(float(v)) for v in values])


def build_program() -> ModuleAST:
    untyped = VarType()
    a, b = VariableExpr("a"), VariableExpr("b")
    generic = FunctionAST(
        Prototype("multiply_transpose", [Param("a", untyped), Param("b", untyped)]),
        [ReturnExpr(BinaryExpr("*", a, CallExpr("transpose", [b]), loc=Location("demo.toy", 1, 40)))],
    )
    main = FunctionAST(
        Prototype("main", []),
        [
            VarDeclExpr("a", VarType((2, 3)), literal([[1, 2, 3], [4, 5, 6]])),
            VarDeclExpr("b", VarType((3, 2)), literal([1, 2, 3, 4, 5, 6])),
            VarDeclExpr("c", untyped, CallExpr("multiply_transpose", [a, b])),
            VarDeclExpr("d", untyped, CallExpr("multiply_transpose", [b, a])),
            PrintExpr(VariableExpr("c")),
            PrintExpr(VariableExpr("d")),
        ],
    )
    return ModuleAST([], [generic, main])


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--inline", default="never", choices=[p.value for p in InlinePolicy])
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(format="%(levelname)s %(name)s: %(message)s")
    options = CompilerOptions(
        inline_policy=InlinePolicy(args.inline),
        log_level=logging.DEBUG if args.verbose else logging.WARNING,
    )
    compiler = Compiler(options, name="demo")

    tree = build_program()
    result = compiler.compile(tree)
    for stage in Stage:
        if stage in result.dumps:
            print(f"=== {stage.name} ===")
            print(result.dump(stage))
            print()

    print("=== EXECUTION ===")
    outcome = compiler.run(tree)
    for line in outcome.output:
        print(line)
    stats = outcome.stats
    print(
        f"\n{stats.steps} steps, {stats.calls} calls, "
        f"{stats.allocations} allocations, peak heap {stats.peak_bytes} bytes"
    )


if __name__ == "__main__":
    main()
