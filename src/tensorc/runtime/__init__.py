"""Reference backend for Low-level IR."""

from .engine import Engine, ExecutionResult, ExecutionStats, execute, format_tensor
from .memory import HeapConfig, HeapError, HeapOutOfMemoryError, VirtualHeap

__all__ = [
    "Engine",
    "ExecutionResult",
    "ExecutionStats",
    "execute",
    "format_tensor",
    "HeapConfig",
    "HeapError",
    "HeapOutOfMemoryError",
    "VirtualHeap",
]
