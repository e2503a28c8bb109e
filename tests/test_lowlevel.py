"""Affine IR -> Low-level IR lowering and Low-level IR validation."""

import numpy as np
import pytest

from tensorc.affine import ir as aff
from tensorc.errors import ElementCountOverflowError, IRValidationError
from tensorc.ir import Function, Module, TensorType, f64
from tensorc.lowlevel import ir as ll
from tensorc.passes import LowLevelLoweringPass, lower_to_affine, lower_to_lowlevel
from tensorc.runtime import Engine


def memref(*shape: int) -> aff.MemRefType:
    return aff.MemRefType(f64, tuple(shape))


def buffer(name: str, *shape: int) -> aff.Buffer:
    return aff.Buffer(name, memref(*shape))


def copy_loop(src: aff.Buffer, *dsts: aff.Buffer, iv: str) -> aff.ForOp:
    i = aff.IndexVar(iv)
    idx = (aff.LinearExpr.of(i),)
    s = aff.Scalar(f"{iv}.s")
    body = [aff.LoadOp(s, src, idx)] + [aff.StoreOp(s, d, idx) for d in dsts]
    return aff.ForOp(i, 0, src.shape[0], body)


def module_of(*fns: aff.AffineFunction) -> aff.AffineModule:
    module = aff.AffineModule()
    for fn in fns:
        module.add(fn)
    return module


def transpose_module() -> ll.LowLevelModule:
    fn = Function("f")
    p = fn.add_param("p", TensorType(f64, (2, 3)))
    fn.ret(fn.transpose(p))
    fn.result_type = TensorType(f64, (3, 2))
    module = Module()
    module.add_function(fn)
    return lower_to_lowlevel(lower_to_affine(module))


def frees(block: ll.Block) -> set[str]:
    return {
        i.args[0].name for i in block.instrs if isinstance(i, ll.Call) and i.callee == ll.RT_FREE
    }


# =============================================================================
# 1. Loops
# =============================================================================


class TestLoops:
    def test_loop_nest_block_structure(self):
        fn = transpose_module().functions["f"]
        assert [b.label for b in fn.blocks] == [
            "entry",
            "loop0.header",
            "loop0.body",
            "loop1.header",
            "loop1.body",
            "loop1.exit",
            "loop0.exit",
        ]
        assert isinstance(fn.block("loop0.exit").terminator, ll.Ret)

    def test_counters_are_phis(self):
        fn = transpose_module().functions["f"]
        (outer,) = fn.block("loop0.header").phis
        (inner,) = fn.block("loop1.header").phis
        assert [label for _, label in outer.incoming] == ["entry", "loop1.exit"]
        assert [label for _, label in inner.incoming] == ["loop0.body", "loop1.body"]
        assert outer.incoming[0][0] == ll.Imm(0)

        (cmp,) = [i for i in fn.block("loop0.header").instrs if isinstance(i, ll.ICmp)]
        assert cmp.pred == "slt"
        assert cmp.rhs == ll.Imm(3)

    def test_addresses_are_byte_offsets(self):
        fn = transpose_module().functions["f"]
        body = fn.block("loop1.body")
        # p[%i1, %i0] with row stride 3: %i1 * 24 + %i0 * 8
        scales = [i.rhs for i in body.instrs if isinstance(i, ll.BinOp) and i.op == "mul"]
        assert ll.Imm(24) in scales
        assert ll.Imm(8) in scales
        (load,) = [i for i in body.instrs if isinstance(i, ll.Load)]
        addr = next(i for i in body.instrs if isinstance(i, ll.PtrAdd) and i.dst == load.addr)
        assert addr.base.name == "p"

    def test_execution_matches_numpy(self):
        data = np.arange(6.0).reshape(2, 3)
        result = Engine().execute(transpose_module(), "f", [data])
        np.testing.assert_array_equal(result.results[0], data.T)


# =============================================================================
# 2. Buffer lifetimes
# =============================================================================


def early_return_module(k: int) -> aff.AffineModule:
    """@f returns %a when k == 0, %b when k == 1 and %c otherwise; all hold copies of %p."""
    p = buffer("p", 4)
    a, b, c = buffer("a", 4), buffer("b", 4), buffer("c", 4)
    f = aff.AffineFunction(
        "f",
        params=[p],
        result_types=[memref(4)],
        body=[
            aff.AllocOp(a),
            aff.AllocOp(b),
            copy_loop(p, a, b, iv="i"),
            aff.IfOp(aff.LinearExpr.const(k), "eq", 0, then_body=[aff.ReturnOp([a])]),
            aff.IfOp(aff.LinearExpr.const(k), "eq", 1, then_body=[aff.ReturnOp([b])]),
            aff.AllocOp(c),
            copy_loop(p, c, iv="j"),
            aff.ReturnOp([c]),
        ],
    )
    x = buffer("x", 4)
    r = buffer("r", 4)
    main = aff.AffineFunction(
        "main",
        params=[x],
        body=[aff.CallOp("f", [x], [r]), aff.PrintOp(r), aff.ReturnOp()],
    )
    return module_of(f, main)


class TestBufferLifetimes:
    def test_each_return_frees_what_it_does_not_return(self):
        fn = lower_to_lowlevel(early_return_module(0)).functions["f"]
        freed_by_return = {
            b.terminator.values[0].name: frees(b)
            for b in fn.blocks
            if isinstance(b.terminator, ll.Ret)
        }
        assert freed_by_return == {"a": {"b"}, "b": {"a"}, "c": {"a", "b"}}

    def test_caller_frees_call_results(self):
        main = lower_to_lowlevel(early_return_module(0)).functions["main"]
        (block,) = main.blocks
        assert frees(block) == {"r"}
        assert block.terminator.values == []

    @pytest.mark.parametrize("k", [0, 1, 2])
    def test_every_path_releases_everything(self, k):
        data = np.arange(4.0)
        module = lower_to_lowlevel(early_return_module(k))
        result = Engine().execute(module, "f", [data])

        np.testing.assert_array_equal(result.results[0], data)
        assert result.stats.allocations == result.stats.frees
        assert result.stats.allocations == (4 if k == 2 else 3)

    def test_printed_call_result(self):
        module = lower_to_lowlevel(early_return_module(2))
        result = Engine().execute(module, "main", [np.arange(4.0)])
        assert result.output == ["[0., 1., 2., 3.]"]
        assert result.results == []

    def test_returning_a_parameter_is_rejected(self):
        p = buffer("p", 4)
        g = aff.AffineFunction("g", params=[p], result_types=[memref(4)], body=[aff.ReturnOp([p])])
        with pytest.raises(IRValidationError, match="does not own"):
            lower_to_lowlevel(module_of(g))

    def test_returning_a_buffer_twice_is_rejected(self):
        a = buffer("a", 4)
        g = aff.AffineFunction(
            "g",
            result_types=[memref(4), memref(4)],
            body=[aff.AllocOp(a), aff.ReturnOp([a, a])],
        )
        with pytest.raises(IRValidationError, match="same buffer twice"):
            lower_to_lowlevel(module_of(g))

    def test_missing_return_with_results(self):
        a = buffer("a", 4)
        g = aff.AffineFunction("g", result_types=[memref(4)], body=[aff.AllocOp(a)])
        with pytest.raises(IRValidationError, match="fall off"):
            lower_to_lowlevel(module_of(g))

    def test_void_function_gets_implicit_return(self):
        a = buffer("a", 4)
        g = aff.AffineFunction("g", body=[aff.AllocOp(a)])
        (block,) = lower_to_lowlevel(module_of(g)).functions["g"].blocks
        assert frees(block) == {"a"}
        assert isinstance(block.terminator, ll.Ret)

    def test_code_after_return_is_pruned(self):
        a = buffer("a", 4)
        g = aff.AffineFunction(
            "g",
            result_types=[memref(4)],
            body=[aff.AllocOp(a), aff.ReturnOp([a]), aff.PrintOp(a)],
        )
        fn = lower_to_lowlevel(module_of(g)).functions["g"]
        assert [b.label for b in fn.blocks] == ["entry"]

    def test_code_after_returning_if_is_unreachable(self):
        """Both arms return, so the loop after the if is dead even though it has predecessors."""
        a = buffer("a", 2)
        i = aff.IndexVar("i")
        g = aff.AffineFunction(
            "g",
            result_types=[memref(2)],
            body=[
                aff.AllocOp(a),
                aff.IfOp(
                    aff.LinearExpr.const(0),
                    "eq",
                    0,
                    then_body=[aff.ReturnOp([a])],
                    else_body=[aff.ReturnOp([a])],
                ),
                aff.ForOp(i, 0, 2, [aff.LoadOp(aff.Scalar("s"), a, (aff.LinearExpr.of(i),))]),
            ],
        )
        module = lower_to_lowlevel(module_of(g))
        assert [b.label for b in module.functions["g"].blocks] == ["entry", "if0.then", "if0.else"]

        result = Engine().execute(module, "g")
        assert result.results[0].shape == (2,)
        assert result.stats.allocations == result.stats.frees == 1

    @staticmethod
    def return_in_loop(*tail) -> aff.AffineModule:
        """@f copies %p into %a element by element; each of `tail` builds one more op of the loop body from (iv, %a)."""
        p, a, b = buffer("p", 4), buffer("a", 4), buffer("b", 4)
        i = aff.IndexVar("i")
        s = aff.Scalar("s")
        idx = (aff.LinearExpr.of(i),)
        body = [aff.LoadOp(s, p, idx), aff.StoreOp(s, a, idx)]
        body += [op(i, a) for op in tail]
        f = aff.AffineFunction(
            "f",
            params=[p],
            result_types=[memref(4)],
            body=[aff.AllocOp(a), aff.AllocOp(b), aff.ForOp(i, 0, 4, body), aff.ReturnOp([b])],
        )
        return module_of(f)

    def test_unconditional_return_in_loop_body(self):
        module = lower_to_lowlevel(self.return_in_loop(lambda i, a: aff.ReturnOp([a])))
        fn = module.functions["f"]
        (phi,) = fn.block("loop0.header").phis
        assert [label for _, label in phi.incoming] == ["entry"]
        assert frees(fn.block("loop0.body")) == {"b"}
        assert frees(fn.block("loop0.exit")) == {"a"}

        data = np.arange(1.0, 5.0)
        result = Engine().execute(module, "f", [data])
        assert result.results[0][0] == data[0]
        assert result.stats.allocations == result.stats.frees == 3

    def test_conditional_return_in_loop_body(self):
        def return_at_two(i, a):
            return aff.IfOp(aff.LinearExpr.of(i), "eq", 2, then_body=[aff.ReturnOp([a])])

        module = lower_to_lowlevel(self.return_in_loop(return_at_two))
        (phi,) = module.functions["f"].block("loop0.header").phis
        assert [label for _, label in phi.incoming] == ["entry", "if0.end"]

        data = np.arange(1.0, 5.0)
        result = Engine().execute(module, "f", [data])
        np.testing.assert_array_equal(result.results[0][:3], data[:3])
        assert result.stats.allocations == result.stats.frees == 3

    def test_allocation_larger_than_address_space(self):
        g = aff.AffineFunction("g", body=[aff.AllocOp(buffer("a", 4)), aff.ReturnOp()])
        with pytest.raises(ElementCountOverflowError):
            LowLevelLoweringPass(max_buffer_bytes=16).run(module_of(g))


# =============================================================================
# 3. Validation
# =============================================================================


def function_of(*blocks: ll.Block, results=()) -> ll.LowLevelFunction:
    return ll.LowLevelFunction("g", result_shapes=list(results), blocks=list(blocks))


class TestValidation:
    def test_register_kind(self):
        with pytest.raises(IRValidationError):
            ll.Reg("x", "f32")

    def test_single_assignment(self):
        r = ll.Reg("x", "f64")
        fn = function_of(ll.Block("entry", [ll.Const(r, 1.0), ll.Const(r, 2.0)], ll.Ret()))
        with pytest.raises(IRValidationError, match="assigned twice"):
            fn.verify()

    def test_unknown_branch_target(self):
        fn = function_of(ll.Block("entry", [], ll.Br("nowhere")))
        with pytest.raises(IRValidationError, match="unknown 'nowhere'"):
            fn.verify()

    def test_missing_terminator(self):
        fn = function_of(ll.Block("entry"))
        with pytest.raises(IRValidationError, match="no terminator"):
            fn.verify()

    def test_undefined_register(self):
        fn = function_of(ll.Block("entry", [], ll.Ret([ll.Reg("ghost", "ptr")])), results=[(1,)])
        with pytest.raises(IRValidationError, match="undefined register"):
            fn.verify()

    def test_ret_arity(self):
        fn = function_of(ll.Block("entry", [], ll.Ret()), results=[(1,)])
        with pytest.raises(IRValidationError, match="does not match"):
            fn.verify()

    def test_runtime_names_are_reserved(self):
        module = ll.LowLevelModule()
        with pytest.raises(IRValidationError):
            module.add(ll.LowLevelFunction(ll.RT_ALLOC, blocks=[ll.Block("entry", [], ll.Ret())]))

    def test_call_arity(self):
        module = ll.LowLevelModule()
        module.add(function_of(ll.Block("entry", [], ll.Ret())))
        call = ll.Call("g", [ll.Imm(1)])
        module.add(ll.LowLevelFunction("main", blocks=[ll.Block("entry", [call], ll.Ret())]))
        with pytest.raises(IRValidationError, match="wrong arity"):
            module.verify()

    def test_prune_drops_phi_edges(self):
        i = ll.Reg("i", "i64")
        phi = ll.Phi(i, [(ll.Imm(0), "entry"), (ll.Imm(1), "orphan")])
        fn = function_of(
            ll.Block("entry", [], ll.Br("next")),
            ll.Block("orphan", [], ll.Br("next")),
            ll.Block("next", [phi], ll.Ret()),
        )
        assert fn.prune_unreachable() == 1
        assert phi.incoming == [(ll.Imm(0), "entry")]
        fn.verify()

    def test_format(self):
        text = transpose_module().format()
        assert text.startswith("func @f(%p: ptr<2x3>) -> (ptr<3x2>) {")
        assert "call @rt.alloc(48)" in text
        assert "loop0.header:" in text
