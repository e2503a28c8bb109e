from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Union


Shape = tuple[int, ...]


@dataclass(frozen=True, slots=True)
class ScalarType:
	"""Scalar element type.

	Only one numeric kind exists for now: double-precision float.
	"""

	name: str
	itemsize: int

	def mangle(self) -> str:
		return self.name

	def __str__(self) -> str:
		return self.name


f64 = ScalarType("f64", 8)


@dataclass(frozen=True, slots=True)
class TensorType:
	"""`tensor<d1 x ... x dn x T>`, or unranked when `shape` is None."""

	element: ScalarType = f64
	shape: Shape | None = None

	@property
	def ranked(self) -> bool:
		return self.shape is not None

	@property
	def rank(self) -> int:
		if self.shape is None:
			raise ValueError("unranked tensor has no rank")
		return len(self.shape)

	@property
	def numel(self) -> int:
		if self.shape is None:
			raise ValueError("unranked tensor has no element count")
		return numel(self.shape)

	def compatible(self, other: object) -> bool:
		"""Equal, or equal up to one side being unranked."""
		if not isinstance(other, TensorType) or other.element != self.element:
			return False
		return self.shape is None or other.shape is None or self.shape == other.shape

	def mangle(self) -> str:
		if self.shape is None:
			return "u"
		if not self.shape:
			return "s"
		return "x".join(str(d) for d in self.shape)

	def __str__(self) -> str:
		if self.shape is None:
			return f"tensor<*x{self.element}>"
		dims = "".join(f"{d}x" for d in self.shape)
		return f"tensor<{dims}{self.element}>"


@dataclass(frozen=True, slots=True)
class StructType:
	"""Named struct with ordered fields.

	The declared type may have unranked fields; values built from a struct
	literal carry the same name with every field resolved.
	"""

	name: str
	fields: tuple[tuple[str, "Type"], ...]

	@property
	def field_names(self) -> tuple[str, ...]:
		return tuple(n for n, _ in self.fields)

	def field_type(self, name: str) -> Type | None:
		for n, t in self.fields:
			if n == name:
				return t
		return None

	def field_index(self, name: str) -> int:
		return self.field_names.index(name)

	@property
	def ranked(self) -> bool:
		return all(is_ranked(t) for _, t in self.fields)

	def compatible(self, other: object) -> bool:
		if not isinstance(other, StructType) or other.name != self.name:
			return False
		if other.field_names != self.field_names:
			return False
		return all(a.compatible(b) for (_, a), (_, b) in zip(self.fields, other.fields))

	def mangle(self) -> str:
		return self.name + "_" + "_".join(t.mangle() for _, t in self.fields)

	def __str__(self) -> str:
		body = ", ".join(f"{n}: {t}" for n, t in self.fields)
		return f"!{self.name}{{{body}}}"


Type = Union[ScalarType, TensorType, StructType]

UNRANKED = TensorType(f64, None)


def is_ranked(t: Type) -> bool:
	if isinstance(t, TensorType):
		return t.ranked
	if isinstance(t, StructType):
		return t.ranked
	return True


def as_shape(dims: Iterable[int]) -> Shape:
	return tuple(int(d) for d in dims)


def numel(shape: Shape) -> int:
	n = 1
	for dim in shape:
		n *= dim
	return n


def row_major_strides(shape: Shape) -> Shape:
	"""Element strides of a contiguous row-major layout."""
	strides = [1] * len(shape)
	for k in range(len(shape) - 2, -1, -1):
		strides[k] = strides[k + 1] * shape[k + 1]
	return tuple(strides)


@dataclass(frozen=True, slots=True)
class FunctionSignature:
	"""Function name plus ordered parameter types: the specialization key."""

	name: str
	param_types: tuple[Type, ...]

	@property
	def concrete(self) -> bool:
		return all(is_ranked(t) for t in self.param_types)

	def mangled_name(self) -> str:
		if not self.param_types:
			return self.name
		return self.name + "_" + "_".join(t.mangle() for t in self.param_types)

	def __str__(self) -> str:
		return f"{self.name}({', '.join(str(t) for t in self.param_types)})"
