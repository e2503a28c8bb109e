from __future__ import annotations

from dataclasses import dataclass, field

from tensorc.errors import IRValidationError, TypeMismatchError

from .function import Function
from .ops import GenericCallOp
from .types import FunctionSignature, StructType, Type


@dataclass(eq=False)
class Module:
	"""Top-level container: struct declarations and functions.

	`functions` holds every callable (concrete) function. After shape inference
	the generic originals move to `templates`; they are kept for reference and
	are never lowered.
	"""

	name: str = "module"
	structs: dict[str, StructType] = field(default_factory=dict)
	functions: dict[str, Function] = field(default_factory=dict)
	templates: dict[str, Function] = field(default_factory=dict)

	def add_struct(self, struct: StructType) -> None:
		if struct.name in self.structs:
			raise TypeMismatchError(f"struct '{struct.name}' is declared twice")
		self.structs[struct.name] = struct

	def add_function(self, fn: Function) -> Function:
		if fn.name in self.functions:
			raise IRValidationError(f"function '{fn.name}' is defined twice", fn.loc)
		self.functions[fn.name] = fn
		return fn

	def lookup(self, name: str) -> Function | None:
		fn = self.functions.get(name)
		if fn is None:
			fn = self.templates.get(name)
		return fn

	def call_sites(self, callee: str) -> list[tuple[Function, GenericCallOp]]:
		sites: list[tuple[Function, GenericCallOp]] = []
		for fn in self.functions.values():
			for op in fn.ops:
				if isinstance(op, GenericCallOp) and op.callee == callee:
					sites.append((fn, op))
		return sites

	def specializations_of(self, template: str) -> list[Function]:
		return [fn for fn in self.functions.values() if fn.specialized_from == template]

	def verify(self) -> None:
		"""Check the module invariants.

		- no two functions share a signature (a specialization is keyed by
		  the template it came from)
		- no struct contains itself, directly or through other structs
		- every operand is defined before use
		"""
		seen: dict[FunctionSignature, str] = {}
		for fn in self.functions.values():
			sig = FunctionSignature(fn.specialized_from or fn.name, fn.param_types)
			if sig in seen:
				raise IRValidationError(
					f"functions '{seen[sig]}' and '{fn.name}' share signature {sig}", fn.loc
				)
			seen[sig] = fn.name
			fn.verify()
		for struct in self.structs.values():
			check_not_recursive(struct, self.structs)

	def summary(self) -> str:
		parts: list[str] = []
		for struct in self.structs.values():
			parts.append(f"struct {struct}")
		for fn in self.functions.values():
			parts.append(fn.summary())
		return "\n\n".join(parts)


def check_not_recursive(struct: StructType, structs: dict[str, StructType]) -> None:
	def visit(t: Type, path: tuple[str, ...]) -> None:
		if not isinstance(t, StructType):
			return
		if t.name in path:
			cycle = " -> ".join(path + (t.name,))
			raise TypeMismatchError(f"recursive struct definition: {cycle}")
		decl = structs.get(t.name, t)
		for _, ft in decl.fields:
			visit(ft, path + (t.name,))

	visit(struct, ())
