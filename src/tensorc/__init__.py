"""tensorc: a multi-level IR compiler for a small tensor DSL.

Source ASTs are turned into Tensor IR, specialized per call-site shape,
simplified, and lowered through Affine IR to Low-level IR. A reference
backend executes the result.
"""

from .config import CompilerOptions, InlinePolicy
from .errors import BackendFailure, CompileError, ErrorKind
from .pipeline import CompilationContext, CompilationResult, Compiler, Stage, compile_module, run_module

__all__ = [
    "CompilerOptions",
    "InlinePolicy",
    "BackendFailure",
    "CompileError",
    "ErrorKind",
    "CompilationContext",
    "CompilationResult",
    "Compiler",
    "Stage",
    "compile_module",
    "run_module",
]
