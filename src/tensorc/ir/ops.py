from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, ClassVar, Iterable, Union

import numpy as np

from tensorc.errors import (
	IRValidationError,
	ReshapeSizeMismatchError,
	ShapeMismatchError,
	TypeMismatchError,
	UndefinedSymbolError,
	UnresolvedShapeError,
)

from .types import StructType, TensorType, Type, as_shape, f64, is_ranked, numel

if TYPE_CHECKING:
	from tensorc.ast import Location

	from .value import Value


# A constant payload is a float64 array for tensors and a tuple of payloads
# (one per field, in declaration order) for structs.
Payload = Union[np.ndarray, tuple]


@dataclass(slots=True, eq=False)
class Op:
	"""Base class for Tensor IR operations.

	Operands are referenced, not owned: the op that defines a Value owns it.
	`result` is created and assigned by `Function` when the op is built.
	"""

	operands: list[Value]
	attrs: dict[str, object] = field(default_factory=dict)
	result: Value | None = None
	loc: Location | None = None

	mnemonic: ClassVar[str] = "op"
	pure: ClassVar[bool] = True
	has_result: ClassVar[bool] = True

	@property
	def kind(self) -> str:
		return self.__class__.__name__

	def ready(self) -> bool:
		"""True when every operand type is fully known."""
		return all(is_ranked(v.type) for v in self.operands)

	def infer_output(self) -> Type | None:
		raise NotImplementedError

	def replace_operand(self, old: Value, new: Value) -> None:
		for i, v in enumerate(self.operands):
			if v is old:
				self.operands[i] = new
				old.remove_user(self)
				new.add_user(self)

	def clone(self, operands: list[Value]) -> Op:
		return type(self)(operands=list(operands), attrs=dict(self.attrs), loc=self.loc)

	def render(self) -> str:
		text = self._body()
		if self.result is not None:
			return f"%{self.result.name} = {text} : {self.result.type}"
		return text

	def _args(self) -> str:
		return ", ".join(f"%{v.name}" for v in self.operands)

	def _body(self) -> str:
		return f"{self.mnemonic}({self._args()})"


def _expect_arity(op: Op, n: int) -> None:
	if len(op.operands) != n:
		raise IRValidationError(
			f"{op.mnemonic} expects {n} operand(s), got {len(op.operands)}", op.loc
		)


def _tensor_operand(op: Op, v: Value) -> TensorType:
	if not isinstance(v.type, TensorType):
		raise TypeMismatchError(
			f"{op.mnemonic} expects a tensor operand, got {v.type} for '%{v.name}'", op.loc
		)
	if not v.type.ranked:
		raise UnresolvedShapeError(
			f"shape of '%{v.name}' (operand of {op.mnemonic}) could not be inferred", op.loc
		)
	return v.type


def check_shape(dims: Iterable[int], loc: Location | None = None) -> tuple[int, ...]:
	"""`dims` as a shape tuple; every dimension must be non-negative."""
	shape = as_shape(dims)
	if any(d < 0 for d in shape):
		text = ", ".join(str(d) for d in shape)
		raise ShapeMismatchError(f"shape <{text}> has a negative dimension", loc)
	return shape


def payload_type(payload: Payload, declared: Type | None, loc: Location | None = None) -> Type:
	"""Type of a constant payload, checked against an optional declared type."""
	if isinstance(payload, np.ndarray):
		if declared is not None and not isinstance(declared, TensorType):
			raise TypeMismatchError(f"tensor literal used where {declared} is expected", loc)
		t = TensorType(f64, as_shape(payload.shape))
		if declared is not None and not declared.compatible(t):
			raise ShapeMismatchError(f"literal of type {t} does not match declared {declared}", loc)
		return t

	if not isinstance(declared, StructType):
		raise TypeMismatchError("struct literal used without a struct type", loc)
	if len(payload) != len(declared.fields):
		raise TypeMismatchError(
			f"struct '{declared.name}' has {len(declared.fields)} fields, "
			f"literal provides {len(payload)}",
			loc,
		)
	fields = tuple(
		(name, payload_type(p, ftype, loc)) for (name, ftype), p in zip(declared.fields, payload)
	)
	return StructType(declared.name, fields)


def format_payload(payload: Payload) -> str:
	if isinstance(payload, np.ndarray):
		return f"dense<{payload.tolist()}>"
	return "{" + ", ".join(format_payload(p) for p in payload) + "}"


@dataclass(slots=True, eq=False)
class ConstantOp(Op):
	"""Literal tensor or struct value. attrs: value, struct (declared type)."""

	mnemonic = "constant"

	@property
	def value(self) -> Payload:
		return self.attrs["value"]

	def infer_output(self) -> Type:
		_expect_arity(self, 0)
		return payload_type(self.value, self.attrs.get("struct"), self.loc)

	def _body(self) -> str:
		return f"constant {format_payload(self.value)}"


@dataclass(slots=True, eq=False)
class ElementwiseOp(Op):
	"""Element-wise binary op: identical shapes only (no broadcasting)."""

	def infer_output(self) -> Type:
		_expect_arity(self, 2)
		a = _tensor_operand(self, self.operands[0])
		b = _tensor_operand(self, self.operands[1])
		if a.shape != b.shape:
			raise ShapeMismatchError(
				f"{self.mnemonic} requires identical shapes (no broadcasting), got {a} and {b}",
				self.loc,
			)
		if a.element != b.element:
			raise TypeMismatchError(f"{self.mnemonic} element type mismatch: {a} vs {b}", self.loc)
		return a


@dataclass(slots=True, eq=False)
class AddOp(ElementwiseOp):
	mnemonic = "add"


@dataclass(slots=True, eq=False)
class MulOp(ElementwiseOp):
	mnemonic = "mul"


@dataclass(slots=True, eq=False)
class TransposeOp(Op):
	"""Reverses the dimension order."""

	mnemonic = "transpose"

	def infer_output(self) -> Type:
		_expect_arity(self, 1)
		t = _tensor_operand(self, self.operands[0])
		return TensorType(t.element, tuple(reversed(t.shape)))


@dataclass(slots=True, eq=False)
class ReshapeOp(Op):
	"""Reshape to attrs['shape'], preserving row-major element order."""

	mnemonic = "reshape"

	@property
	def shape(self) -> tuple[int, ...]:
		return self.attrs["shape"]

	def infer_output(self) -> Type:
		_expect_arity(self, 1)
		t = _tensor_operand(self, self.operands[0])
		target = check_shape(self.shape, self.loc)
		if numel(target) != t.numel:
			dims = "x".join(str(d) for d in target)
			raise ReshapeSizeMismatchError(
				f"cannot reshape {t} ({t.numel} elements) to <{dims}> ({numel(target)} elements)",
				self.loc,
			)
		return TensorType(t.element, target)

	def _body(self) -> str:
		return f"reshape({self._args()}) to <{', '.join(str(d) for d in self.shape)}>"


@dataclass(slots=True, eq=False)
class StructAccessOp(Op):
	"""Reads field attrs['field'] of a struct value."""

	mnemonic = "struct_access"

	@property
	def field(self) -> str:
		return self.attrs["field"]

	def ready(self) -> bool:
		if not self.operands:
			return False
		t = self.operands[0].type
		if isinstance(t, TensorType) and not t.ranked:
			# e.g. a call result; it may still turn out to be a struct
			return False
		if not isinstance(t, StructType):
			return True
		ft = t.field_type(self.field)
		return ft is None or is_ranked(ft)

	def infer_output(self) -> Type:
		_expect_arity(self, 1)
		v = self.operands[0]
		if not isinstance(v.type, StructType):
			raise TypeMismatchError(
				f"field access '.{self.field}' on non-struct value '%{v.name}' of type {v.type}",
				self.loc,
			)
		ft = v.type.field_type(self.field)
		if ft is None:
			raise UndefinedSymbolError("field", f"{v.type.name}.{self.field}", self.loc)
		if not is_ranked(ft):
			raise UnresolvedShapeError(
				f"field '{self.field}' of struct '{v.type.name}' has no inferred shape", self.loc
			)
		return ft

	def _body(self) -> str:
		return f"struct_access({self._args()}) .{self.field}"


@dataclass(slots=True, eq=False)
class GenericCallOp(Op):
	"""Call to a user function. attrs: callee, result_type (set by inference)."""

	mnemonic = "call"
	pure = False

	@property
	def callee(self) -> str:
		return self.attrs["callee"]

	def ready(self) -> bool:
		return "result_type" in self.attrs

	def infer_output(self) -> Type:
		rt = self.attrs.get("result_type")
		if rt is None:
			raise UnresolvedShapeError(f"result of call to '{self.callee}' is not resolved", self.loc)
		return rt

	def _body(self) -> str:
		return f"call @{self.callee}({self._args()})"


@dataclass(slots=True, eq=False)
class CastOp(Op):
	"""Refines a value to a compatible type (attrs['type']).

	Struct casts also check the struct name: a value of one struct type never
	stands in for another, even when the fields line up.
	"""

	mnemonic = "cast"

	@property
	def target(self) -> Type:
		return self.attrs["type"]

	def infer_output(self) -> Type:
		_expect_arity(self, 1)
		v = self.operands[0]
		target = self.target
		if isinstance(target, TensorType) and target.ranked:
			check_shape(target.shape, self.loc)
		if type(v.type) is not type(target):
			raise TypeMismatchError(f"cannot cast '%{v.name}' of type {v.type} to {target}", self.loc)
		if isinstance(target, StructType) and v.type.name != target.name:
			raise TypeMismatchError(
				f"'%{v.name}' is a struct '{v.type.name}', expected struct '{target.name}'", self.loc
			)
		if not is_ranked(v.type):
			raise UnresolvedShapeError(f"shape of '%{v.name}' could not be inferred", self.loc)
		if not target.compatible(v.type):
			raise ShapeMismatchError(f"cannot cast '%{v.name}' of type {v.type} to {target}", self.loc)
		return v.type


@dataclass(slots=True, eq=False)
class PrintOp(Op):
	mnemonic = "print"
	pure = False
	has_result = False

	def infer_output(self) -> None:
		_expect_arity(self, 1)
		_tensor_operand(self, self.operands[0])
		return None


@dataclass(slots=True, eq=False)
class ReturnOp(Op):
	mnemonic = "return"
	pure = False
	has_result = False

	@property
	def value(self) -> Value | None:
		return self.operands[0] if self.operands else None

	def infer_output(self) -> None:
		if len(self.operands) > 1:
			raise IRValidationError("return takes at most one operand", self.loc)
		return None

	def _body(self) -> str:
		return f"return {self._args()}".rstrip()
