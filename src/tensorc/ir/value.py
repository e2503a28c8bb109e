from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .types import StructType, TensorType, Type

if TYPE_CHECKING:
	from .ops import Op


@dataclass(slots=True, eq=False)
class Value:
	"""An SSA value.

	A Value has a single producer op (None for function parameters) and a list
	of ops that consume it. Values are compared by identity.
	"""

	name: str
	type: Type
	producer: Op | None = None
	users: list[Op] = field(default_factory=list)

	def add_user(self, op: Op) -> None:
		self.users.append(op)

	def remove_user(self, op: Op) -> None:
		# an op may use the same value twice; drop one occurrence
		for i, user in enumerate(self.users):
			if user is op:
				del self.users[i]
				return

	def replace_all_uses_with(self, other: Value) -> None:
		for op in list(self.users):
			op.replace_operand(self, other)

	@property
	def is_param(self) -> bool:
		return self.producer is None

	@property
	def is_struct(self) -> bool:
		return isinstance(self.type, StructType)

	@property
	def shape(self) -> tuple[int, ...] | None:
		if isinstance(self.type, TensorType):
			return self.type.shape
		return None

	def __repr__(self) -> str:  # pragma: no cover
		return f"Value(name={self.name!r}, type={self.type})"
