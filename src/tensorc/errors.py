"""Compiler diagnostics.

Every compile error carries a machine-distinguishable kind and, where the
failing construct can be traced back to source, a location. Compilation of a
module stops at the first error; there is no multi-error recovery.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tensorc.ast import Location


class ErrorKind(str, Enum):
    """Error kinds reported by the compiler core and the backend."""

    SHAPE_MISMATCH = "ShapeMismatch"
    UNRESOLVED_SHAPE = "UnresolvedShape"
    UNDEFINED_SYMBOL = "UndefinedSymbol"
    RECURSIVE_SPECIALIZATION = "RecursiveSpecialization"
    RESHAPE_SIZE_MISMATCH = "ReshapeSizeMismatch"
    TYPE_MISMATCH = "TypeMismatch"
    ELEMENT_COUNT_OVERFLOW = "ElementCountOverflow"
    INVALID_IR = "InvalidIR"
    BACKEND_FAILURE = "BackendFailure"


class CompileError(ValueError):
    """Base exception for all compile errors."""

    kind: ErrorKind = ErrorKind.INVALID_IR

    def __init__(
        self,
        message: str,
        location: Location | None = None,
        hint: str | None = None,
    ) -> None:
        self.message = message
        self.location = location
        self.hint = hint
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        parts = [f"[{self.kind.value}]"]
        if self.location is not None:
            parts.append(f" at {self.location}:")
        parts.append(f" {self.message}")
        if self.hint:
            parts.append(f"\n  hint: {self.hint}")
        return "".join(parts)


class ShapeMismatchError(CompileError):
    """Operand shapes are incompatible for an operation."""

    kind = ErrorKind.SHAPE_MISMATCH


class UnresolvedShapeError(CompileError):
    """A shape could not be determined after specialization."""

    kind = ErrorKind.UNRESOLVED_SHAPE


class UndefinedSymbolError(CompileError):
    """A call, field or variable reference has no binding."""

    kind = ErrorKind.UNDEFINED_SYMBOL

    def __init__(
        self,
        what: str,
        name: str,
        location: Location | None = None,
        hint: str | None = None,
    ) -> None:
        self.name = name
        super().__init__(f"undefined {what} '{name}'", location, hint)


class RecursiveSpecializationError(CompileError):
    """A specialization depends on its own not-yet-resolved signature."""

    kind = ErrorKind.RECURSIVE_SPECIALIZATION


class ReshapeSizeMismatchError(CompileError):
    """Element-count mismatch on reshape."""

    kind = ErrorKind.RESHAPE_SIZE_MISMATCH


class TypeMismatchError(CompileError):
    """An operation was applied to incompatible struct/scalar/tensor kinds."""

    kind = ErrorKind.TYPE_MISMATCH


class ElementCountOverflowError(CompileError):
    """Buffer size computation exceeds the addressable range."""

    kind = ErrorKind.ELEMENT_COUNT_OVERFLOW


class IRValidationError(CompileError):
    """Structurally malformed IR (usually IR injected below the AST level)."""

    kind = ErrorKind.INVALID_IR


class BackendFailure(RuntimeError):
    """Opaque failure reported by the code generator / execution backend."""

    kind = ErrorKind.BACKEND_FAILURE
