import numpy as np
import pytest

from tensorc.errors import (
	IRValidationError,
	ReshapeSizeMismatchError,
	ShapeMismatchError,
	TypeMismatchError,
	UndefinedSymbolError,
	UnresolvedShapeError,
)
from tensorc.ir import UNRANKED, Function, FunctionSignature, Module, StructType, TensorType, f64


def t(*shape: int) -> TensorType:
	return TensorType(f64, tuple(shape))


def test_tensor_type_equality_and_compatibility() -> None:
	assert t(2, 3) == t(2, 3)
	assert t(2, 3) != t(3, 2)
	assert UNRANKED != t(2, 3)
	assert UNRANKED.compatible(t(2, 3))
	assert t(2, 3).compatible(UNRANKED)
	assert not t(2, 3).compatible(t(3, 2))
	assert str(t(2, 3)) == "tensor<2x3xf64>"
	assert str(UNRANKED) == "tensor<*xf64>"
	assert str(t()) == "tensor<f64>"


def test_signature_mangling() -> None:
	sig = FunctionSignature("multiply_transpose", (t(2, 3), t(3, 2)))
	assert sig.concrete
	assert sig.mangled_name() == "multiply_transpose_2x3_3x2"
	assert not FunctionSignature("f", (UNRANKED,)).concrete
	assert FunctionSignature("f", (t(),)).mangled_name() == "f_s"


def test_elementwise_shape_inference() -> None:
	fn = Function("f")
	a = fn.add_param("a", t(2, 3))
	b = fn.add_param("b", t(2, 3))
	assert fn.add(a, b).type == t(2, 3)
	assert fn.mul(a, b).type == t(2, 3)


def test_elementwise_requires_identical_shapes() -> None:
	fn = Function("f")
	a = fn.add_param("a", t(2, 3))
	b = fn.add_param("b", t(3, 2))
	with pytest.raises(ShapeMismatchError):
		fn.mul(a, b)


def test_transpose_reverses_dimensions() -> None:
	fn = Function("f")
	x = fn.add_param("x", t(2, 3, 4))
	assert fn.transpose(x).type == t(4, 3, 2)


def test_reshape_checks_element_count() -> None:
	fn = Function("f")
	x = fn.add_param("x", t(2, 3))
	assert fn.reshape(x, (6,)).type == t(6)
	with pytest.raises(ReshapeSizeMismatchError):
		fn.reshape(x, (4,))


def test_unranked_operand_is_left_unranked_until_inference() -> None:
	fn = Function("f")
	x = fn.add_param("x")
	y = fn.transpose(x)
	assert y.type == UNRANKED
	with pytest.raises(UnresolvedShapeError):
		y.producer.infer_output()


def test_struct_access() -> None:
	pair = StructType("Pair", (("a", t(2)), ("b", t(3))))
	fn = Function("f")
	p = fn.add_param("p", pair)
	assert fn.struct_access(p, "b").type == t(3)
	with pytest.raises(UndefinedSymbolError):
		fn.struct_access(p, "c")
	x = fn.add_param("x", t(2))
	with pytest.raises(TypeMismatchError):
		fn.struct_access(x, "a")


def test_constant_payload_types() -> None:
	fn = Function("f")
	assert fn.constant(3.0).type == t()
	assert fn.constant([[1, 2], [3, 4]]).type == t(2, 2)
	decl = StructType("Pair", (("a", UNRANKED), ("b", UNRANKED)))
	v = fn.constant((np.ones(2), np.ones((1, 3))), struct=decl)
	assert v.type == StructType("Pair", (("a", t(2)), ("b", t(1, 3))))


def test_users_are_tracked_and_rewired() -> None:
	fn = Function("f")
	x = fn.add_param("x", t(2))
	y = fn.add_param("y", t(2))
	s = fn.add(x, x)
	assert len(x.users) == 2
	s.producer.replace_operand(x, y)
	assert x.users == []
	assert len(y.users) == 2


def test_erase_refuses_used_value() -> None:
	fn = Function("f")
	x = fn.add_param("x", t(2))
	s = fn.add(x, x)
	fn.print(s)
	with pytest.raises(IRValidationError):
		fn.erase(s.producer)


def test_clone_creates_fresh_values() -> None:
	fn = Function("f")
	x = fn.add_param("x", t(2))
	fn.ret(fn.add(x, x))
	copy = fn.clone("g")
	assert copy.name == "g"
	assert copy.params[0] is not x
	assert copy.ops[0].operands[0] is copy.params[0]
	assert copy.summary().replace("@g", "@f") == fn.summary()


def test_summary_rendering() -> None:
	fn = Function("f")
	x = fn.add_param("x", t(2, 3))
	fn.ret(fn.reshape(fn.transpose(x), (6,)))
	assert fn.summary() == "\n".join([
		"func @f(%x: tensor<2x3xf64>) {",
		"  %0 = transpose(%x) : tensor<3x2xf64>",
		"  %1 = reshape(%0) to <6> : tensor<6xf64>",
		"  return %1",
		"}",
	])


def test_module_rejects_duplicate_function() -> None:
	m = Module()
	m.add_function(Function("f"))
	with pytest.raises(IRValidationError):
		m.add_function(Function("f"))


def test_module_rejects_recursive_struct() -> None:
	m = Module()
	inner = StructType("A", (("b", StructType("B", (("a", UNRANKED),))),))
	m.add_struct(inner)
	m.add_struct(StructType("B", (("a", StructType("A", ())),)))
	with pytest.raises(TypeMismatchError):
		m.verify()


def test_module_rejects_duplicate_specialization() -> None:
	m = Module()
	for name in ("f_2", "f_2_1"):
		fn = Function(name, specialized_from="f")
		fn.add_param("x", t(2))
		fn.ret()
		m.add_function(fn)
	with pytest.raises(IRValidationError, match="share signature f\\(tensor<2xf64>\\)"):
		m.verify()


def test_same_parameter_types_under_different_names() -> None:
	m = Module()
	for name, origin in (("f_2", "f"), ("g_2", "g"), ("h", None)):
		fn = Function(name, specialized_from=origin)
		fn.add_param("x", t(2))
		fn.ret()
		m.add_function(fn)
	m.verify()
