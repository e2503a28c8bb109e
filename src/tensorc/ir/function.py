from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable

import numpy as np

from tensorc.errors import IRValidationError

from .ops import (
	AddOp,
	CastOp,
	ConstantOp,
	GenericCallOp,
	MulOp,
	Op,
	Payload,
	PrintOp,
	ReshapeOp,
	ReturnOp,
	StructAccessOp,
	TransposeOp,
)
from .types import UNRANKED, FunctionSignature, StructType, Type, as_shape, is_ranked
from .value import Value

if TYPE_CHECKING:
	from tensorc.ast import Location


@dataclass(eq=False)
class Function:
	"""A Tensor IR function.

	Design choices (on purpose):
	- Ops are appended in program order; operands always refer to values
	  defined earlier (or to parameters), so one forward walk visits
	  definitions before uses.
	- Values know their producer and users (needed for rewriting and DCE).
	- A result type is inferred eagerly when all operand types are known and
	  left unranked otherwise; shape inference fills in the rest.
	"""

	name: str
	params: list[Value] = field(default_factory=list)
	ops: list[Op] = field(default_factory=list)
	result_type: Type | None = None
	specialized_from: str | None = None
	loc: Location | None = None
	_name_counters: dict[str, int] = field(default_factory=dict, repr=False)

	def _fresh_name(self, prefix: str = "") -> str:
		n = self._name_counters.get(prefix, 0)
		self._name_counters[prefix] = n + 1
		return f"{prefix}{n}"

	# ------------------------------------------------------------------
	# Signature
	# ------------------------------------------------------------------

	@property
	def param_types(self) -> tuple[Type, ...]:
		return tuple(p.type for p in self.params)

	@property
	def signature(self) -> FunctionSignature:
		return FunctionSignature(self.name, self.param_types)

	@property
	def is_generic(self) -> bool:
		return not all(is_ranked(t) for t in self.param_types)

	@property
	def return_ops(self) -> list[ReturnOp]:
		return [op for op in self.ops if isinstance(op, ReturnOp)]

	def add_param(self, name: str, type: Type = UNRANKED) -> Value:
		if any(p.name == name for p in self.params):
			raise IRValidationError(f"duplicate parameter '{name}' in function '{self.name}'")
		v = Value(name=name, type=type)
		self.params.append(v)
		return v

	# ------------------------------------------------------------------
	# Building
	# ------------------------------------------------------------------

	def _attach(self, op: Op, *, name: str | None = None) -> Value | None:
		for v in op.operands:
			v.add_user(op)

		out_type = op.infer_output() if op.ready() else None
		if op.has_result:
			out = Value(name=name or self._fresh_name(), type=out_type or UNRANKED)
			out.producer = op
			op.result = out
			return out
		return None

	def append(self, op: Op, *, name: str | None = None) -> Value | None:
		out = self._attach(op, name=name)
		self.ops.append(op)
		return out

	def insert_before(self, anchor: Op, op: Op, *, name: str | None = None) -> Value | None:
		out = self._attach(op, name=name)
		self.ops.insert(self._index_of(anchor), op)
		return out

	def constant(
		self,
		value: Payload | Iterable | float,
		*,
		struct: StructType | None = None,
		loc: Location | None = None,
	) -> Value:
		if not isinstance(value, (np.ndarray, tuple)):
			value = np.asarray(value, dtype=np.float64)
		elif isinstance(value, np.ndarray):
			value = value.astype(np.float64, copy=False)
		attrs: dict[str, object] = {"value": value}
		if struct is not None:
			attrs["struct"] = struct
		return self.append(ConstantOp(operands=[], attrs=attrs, loc=loc))

	def add(self, a: Value, b: Value, *, loc: Location | None = None) -> Value:
		return self.append(AddOp(operands=[a, b], loc=loc))

	def mul(self, a: Value, b: Value, *, loc: Location | None = None) -> Value:
		return self.append(MulOp(operands=[a, b], loc=loc))

	def transpose(self, x: Value, *, loc: Location | None = None) -> Value:
		return self.append(TransposeOp(operands=[x], loc=loc))

	def reshape(self, x: Value, shape: Iterable[int], *, loc: Location | None = None) -> Value:
		return self.append(ReshapeOp(operands=[x], attrs={"shape": as_shape(shape)}, loc=loc))

	def struct_access(self, x: Value, field_name: str, *, loc: Location | None = None) -> Value:
		return self.append(StructAccessOp(operands=[x], attrs={"field": field_name}, loc=loc))

	def call(self, callee: str, args: list[Value], *, loc: Location | None = None) -> Value:
		return self.append(GenericCallOp(operands=list(args), attrs={"callee": callee}, loc=loc))

	def cast(self, x: Value, type: Type, *, loc: Location | None = None) -> Value:
		return self.append(CastOp(operands=[x], attrs={"type": type}, loc=loc))

	def print(self, x: Value, *, loc: Location | None = None) -> None:
		self.append(PrintOp(operands=[x], loc=loc))

	def ret(self, x: Value | None = None, *, loc: Location | None = None) -> None:
		self.append(ReturnOp(operands=[x] if x is not None else [], loc=loc))

	# ------------------------------------------------------------------
	# Rewriting
	# ------------------------------------------------------------------

	def _index_of(self, op: Op) -> int:
		for i, candidate in enumerate(self.ops):
			if candidate is op:
				return i
		raise IRValidationError(f"op {op.mnemonic} is not part of function '{self.name}'")

	def erase(self, op: Op) -> None:
		"""Remove an op whose result (if any) has no users."""
		if op.result is not None and op.result.users:
			raise IRValidationError(
				f"cannot erase {op.mnemonic}: result '%{op.result.name}' still has users"
			)
		for v in op.operands:
			v.remove_user(op)
		del self.ops[self._index_of(op)]

	def clone(self, name: str | None = None) -> Function:
		"""Deep copy with fresh Value objects (value names are preserved)."""
		new = Function(
			name=name or self.name,
			result_type=self.result_type,
			specialized_from=self.specialized_from,
			loc=self.loc,
		)
		new._name_counters = dict(self._name_counters)
		mapping: dict[int, Value] = {}
		for p in self.params:
			mapping[id(p)] = new.add_param(p.name, p.type)
		for op in self.ops:
			copy = op.clone([mapping[id(v)] for v in op.operands])
			for v in copy.operands:
				v.add_user(copy)
			if op.result is not None:
				out = Value(name=op.result.name, type=op.result.type, producer=copy)
				copy.result = out
				mapping[id(op.result)] = out
			new.ops.append(copy)
		return new

	# ------------------------------------------------------------------
	# Checks and rendering
	# ------------------------------------------------------------------

	def verify(self) -> None:
		"""Every operand must be a parameter or defined by an earlier op."""
		defined: set[int] = {id(p) for p in self.params}
		for op in self.ops:
			for v in op.operands:
				if id(v) not in defined:
					raise IRValidationError(
						f"'%{v.name}' used by {op.mnemonic} in '{self.name}' before definition",
						op.loc,
					)
			if op.result is not None:
				defined.add(id(op.result))

	def summary(self) -> str:
		params = ", ".join(f"%{p.name}: {p.type}" for p in self.params)
		ret = f" -> {self.result_type}" if self.result_type is not None else ""
		lines = [f"func @{self.name}({params}){ret} {{"]
		for op in self.ops:
			lines.append(f"  {op.render()}")
		lines.append("}")
		return "\n".join(lines)
