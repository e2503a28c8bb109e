"""Tensor IR -> Affine IR lowering."""

import pytest

from programs import multiply_transpose_program, struct_program
from tensorc.affine import ir as aff
from tensorc.config import CompilerOptions, InlinePolicy
from tensorc.errors import ElementCountOverflowError, IRValidationError, UnresolvedShapeError
from tensorc.ir import Function, Module, TensorType, f64
from tensorc.irgen import generate
from tensorc.passes import AffineLoweringPass, canonicalize, infer_shapes, lower_to_affine


def t(*shape: int) -> TensorType:
    return TensorType(f64, tuple(shape))


def single(build, *param_shapes, result=None) -> aff.AffineFunction:
    """Lower a one-function module built by `build(fn, *params)`."""
    fn = Function("f")
    params = [fn.add_param(f"p{i}", t(*s)) for i, s in enumerate(param_shapes)]
    fn.ret(build(fn, *params))
    fn.result_type = result
    module = Module()
    module.add_function(fn)
    return lower_to_affine(module).functions["f"]


def of_type(fn: aff.AffineFunction, cls) -> list:
    return [op for op in fn.walk() if isinstance(op, cls)]


class TestLoopNests:
    def test_transpose_reverses_indices(self):
        fn = single(lambda f, p: f.transpose(p), (2, 3), result=t(3, 2))
        (load,) = of_type(fn, aff.LoadOp)
        (store,) = of_type(fn, aff.StoreOp)
        assert [str(i) for i in load.indices] == ["%i1", "%i0"]
        assert [str(i) for i in store.indices] == ["%i0", "%i1"]
        loops = of_type(fn, aff.ForOp)
        assert [(lp.lower, lp.upper) for lp in loops] == [(0, 3), (0, 2)]

    def test_reshape_reads_flat_offset(self):
        fn = single(lambda f, p: f.reshape(p, (3, 2)), (6,), result=t(3, 2))
        (load,) = of_type(fn, aff.LoadOp)
        assert load.flat
        assert str(load.indices[0]) == "%i0*2 + %i1"

    def test_elementwise_body(self):
        fn = single(lambda f, a, b: f.add(a, b), (2, 2), (2, 2), result=t(2, 2))
        (op,) = of_type(fn, aff.BinaryOp)
        assert op.kind == "add"
        assert len(of_type(fn, aff.LoadOp)) == 2
        assert fn.allocations[0].type == aff.MemRefType(f64, (2, 2))
        assert fn.body[-1].buffers == [fn.allocations[0]]

    def test_constant_stores_every_element(self):
        def build(f, p):
            return f.mul(p, f.constant([[1, 2], [3, 4]]))

        fn = single(build, (2, 2), result=t(2, 2))
        consts = [op for op in fn.body if isinstance(op, aff.ConstantOp)]
        assert [c.value for c in consts] == [1.0, 2.0, 3.0, 4.0]

    def test_format_shows_nesting(self):
        fn = single(lambda f, p: f.transpose(p), (2, 3), result=t(3, 2))
        text = fn.format()
        assert "for %i0 = 0 to 3 {" in text
        assert "    for %i1 = 0 to 2 {" in text
        assert text.endswith("}")


class TestOwnership:
    def test_returning_a_parameter_copies_it(self):
        fn = single(lambda f, p: p, (2, 2), result=t(2, 2))
        (ret,) = of_type(fn, aff.ReturnOp)
        (copy,) = ret.buffers
        assert copy.name == "p0.ret0"
        assert copy is not fn.params[0]
        assert fn.allocations == [copy]

    def test_owned_result_is_returned_directly(self):
        fn = single(lambda f, p: f.transpose(p), (2, 3), result=t(3, 2))
        (ret,) = of_type(fn, aff.ReturnOp)
        assert ret.buffers == fn.allocations

    def test_struct_parameters_are_split_per_field(self):
        module = canonicalize(infer_shapes(generate(struct_program())), InlinePolicy.NEVER)
        lowered = lower_to_affine(module)

        sum_fn = lowered.functions["sum_Pair_2_2"]
        assert [b.name for b in sum_fn.params] == ["p.a", "p.b"]
        assert sum_fn.result_types == [aff.MemRefType(f64, (2,))]

        (call,) = of_type(lowered.functions["main"], aff.CallOp)
        assert call.callee == "sum_Pair_2_2"
        assert len(call.args) == 2
        assert len(call.results) == 1


class TestErrors:
    def test_buffer_larger_than_address_space(self):
        opts = CompilerOptions(address_bits=8)
        fn = Function("f")
        p = fn.add_param("p", t(4, 4))
        fn.ret(fn.transpose(p))
        fn.result_type = t(4, 4)
        module = Module()
        module.add_function(fn)
        with pytest.raises(ElementCountOverflowError):
            AffineLoweringPass(max_buffer_bytes=opts.max_buffer_bytes).run(module)

    def test_unspecialized_module_is_rejected(self):
        module = generate(multiply_transpose_program((3, 2)))
        with pytest.raises(UnresolvedShapeError):
            lower_to_affine(module)

    def test_verify_rejects_undefined_buffer(self):
        stray = aff.Buffer("stray", aff.MemRefType(f64, (2,)))
        fn = aff.AffineFunction("f", body=[aff.PrintOp(stray), aff.ReturnOp()])
        with pytest.raises(IRValidationError, match="undefined buffer"):
            fn.verify()

    def test_verify_rejects_nested_alloc(self):
        buf = aff.Buffer("b", aff.MemRefType(f64, (2,)))
        loop = aff.ForOp(aff.IndexVar("i"), 0, 2, [aff.AllocOp(buf)])
        fn = aff.AffineFunction("f", body=[loop, aff.ReturnOp()])
        with pytest.raises(IRValidationError, match="not at top level"):
            fn.verify()

    def test_verify_rejects_unbound_index(self):
        buf = aff.Buffer("b", aff.MemRefType(f64, (2,)))
        s = aff.Scalar("s")
        load = aff.LoadOp(s, buf, (aff.LinearExpr.of(aff.IndexVar("i")),))
        fn = aff.AffineFunction("f", params=[buf], body=[load, aff.ReturnOp()])
        with pytest.raises(IRValidationError, match="unbound"):
            fn.verify()

    def test_module_verify_checks_call_signature(self):
        buf = aff.Buffer("b", aff.MemRefType(f64, (2,)))
        module = aff.AffineModule()
        module.add(aff.AffineFunction("g", params=[aff.Buffer("x", aff.MemRefType(f64, (3,)))]))
        module.add(aff.AffineFunction("f", params=[buf], body=[aff.CallOp("g", [buf]), aff.ReturnOp()]))
        with pytest.raises(IRValidationError, match="mismatched argument"):
            module.verify()
