"""Shape inference and per-call-site specialization."""

import pytest

from programs import (
    array,
    call,
    decl,
    func,
    multiply_transpose_program,
    param,
    program,
    ret,
    show,
    struct_program,
    transpose,
    var,
)
from tensorc.errors import ErrorKind, RecursiveSpecializationError, ShapeMismatchError, TypeMismatchError
from tensorc.ir import GenericCallOp, StructType, TensorType, f64
from tensorc.irgen import generate
from tensorc.passes import IN_PROGRESS, ShapeInferencePass, SpecializationCache, infer_shapes


def t(*shape: int) -> TensorType:
    return TensorType(f64, tuple(shape))


def infer(tree, **kwargs):
    return infer_shapes(generate(tree), **kwargs)


class TestMultiplyTranspose:
    def test_compatible_shapes_specialize(self):
        module = infer(multiply_transpose_program((3, 2)))
        fn = module.functions["multiply_transpose_2x3_3x2"]
        assert fn.specialized_from == "multiply_transpose"
        assert fn.param_types == (t(2, 3), t(3, 2))
        assert fn.result_type == t(2, 3)

        main = module.functions["main"]
        call_op = next(op for op in main.ops if isinstance(op, GenericCallOp))
        assert call_op.callee == fn.name
        assert call_op.result.type == t(2, 3)

    def test_same_shapes_raise_shape_mismatch(self):
        with pytest.raises(ShapeMismatchError) as info:
            infer(multiply_transpose_program((2, 3)))
        assert info.value.kind is ErrorKind.SHAPE_MISMATCH
        assert info.value.location.line == 1

    def test_generic_moves_to_templates(self):
        module = infer(multiply_transpose_program((3, 2)))
        assert "multiply_transpose" not in module.functions
        assert "multiply_transpose" in module.templates
        assert module.templates["multiply_transpose"].is_generic

    def test_every_value_is_ranked(self):
        module = infer(multiply_transpose_program((3, 2)))
        for fn in module.functions.values():
            for op in fn.ops:
                if op.result is not None:
                    assert op.result.type.ranked, op.render()


class TestSpecializationUniqueness:
    def test_one_specialization_per_distinct_signature(self):
        # (2x3, 3x2) twice and (3x2, 2x3) once
        tree = multiply_transpose_program((3, 2), ("a", "b"), ("b", "a"))
        cache = SpecializationCache()
        module = infer(tree, cache=cache)

        specs = module.specializations_of("multiply_transpose")
        assert sorted(fn.name for fn in specs) == [
            "multiply_transpose_2x3_3x2",
            "multiply_transpose_3x2_2x3",
        ]
        assert len(cache.specializations("multiply_transpose")) == 2
        assert cache.hits == 1

    def test_identical_call_sites_share_specialization(self):
        tree = multiply_transpose_program((3, 2), ("a", "b"))
        module = infer(tree)
        callees = [
            op.callee for op in module.functions["main"].ops if isinstance(op, GenericCallOp)
        ]
        assert callees == ["multiply_transpose_2x3_3x2"] * 2

    def test_reinference_is_stable(self):
        module = infer(multiply_transpose_program((3, 2), ("b", "a")))
        before = module.summary()
        infer_shapes(module)
        assert module.summary() == before


class TestRecursion:
    def test_self_call_with_same_signature(self):
        tree = program(
            func("f", ["a"], [ret(call("f", var("a")))]),
            func("main", [], [show(call("f", array([1, 2])))]),
        )
        with pytest.raises(RecursiveSpecializationError) as info:
            infer(tree)
        assert info.value.kind is ErrorKind.RECURSIVE_SPECIALIZATION

    def test_recursion_cycling_through_shapes(self):
        tree = program(
            func("f", ["a"], [ret(call("f", transpose(var("a"))))]),
            func("main", [], [show(call("f", array([[1, 2, 3]])))]),
        )
        with pytest.raises(RecursiveSpecializationError):
            infer(tree)

    def test_cache_marks_in_progress(self):
        cache = SpecializationCache()
        module = generate(multiply_transpose_program((3, 2)))
        sig = module.functions["main"].signature
        cache.begin(sig)
        assert cache.lookup(sig) is IN_PROGRESS
        with pytest.raises(RecursiveSpecializationError):
            ShapeInferencePass(cache=cache).run(module)


def test_struct_parameter_specialization() -> None:
    module = infer(struct_program())
    fn = module.functions["sum_Pair_2_2"]
    assert isinstance(fn.params[0].type, StructType)
    assert fn.result_type == t(2)


def test_chained_generics() -> None:
    tree = program(
        func("inner", ["x"], [ret(transpose(var("x")))]),
        func("outer", ["x"], [ret(call("inner", call("inner", var("x"))))]),
        func("main", [], [show(call("outer", array([[1, 2, 3]])))]),
    )
    module = infer(tree)
    assert set(module.functions) == {"main", "outer_1x3", "inner_1x3", "inner_3x1"}
    assert module.functions["outer_1x3"].result_type == t(1, 3)


def test_argument_kind_mismatch() -> None:
    tree = struct_program()
    tree.functions[1].body[1] = show(call("sum", array([1, 2])))
    with pytest.raises(TypeMismatchError):
        infer(tree)


def test_void_call_result_cannot_be_used() -> None:
    tree = program(
        func("noop", ["x"], [show(var("x"))]),
        func("main", [], [decl("y", call("noop", array([1]))), show(var("y"))]),
    )
    with pytest.raises(TypeMismatchError):
        infer(tree)


def test_explicitly_shaped_function_is_checked_in_place() -> None:
    tree = program(
        func("f", [param("x", shape=(2,))], [ret(var("x"))]),
        func("main", [], [show(call("f", array([1, 2])))]),
    )
    module = infer(tree)
    assert set(module.functions) == {"main", "f"}
    assert module.functions["f"].result_type == t(2)
