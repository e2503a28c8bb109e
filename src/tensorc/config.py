"""Compiler configuration."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum


class InlinePolicy(str, Enum):
    """Which calls the canonicalizer replaces by the callee body."""

    ALWAYS = "always"
    SINGLE_USE = "single_use"
    NEVER = "never"


@dataclass(frozen=True, slots=True)
class CompilerOptions:
    """Options for one compilation.

    Attributes:
        entry: Name of the entry function. Shape inference is seeded from it
            and the backend executes it.
        inline_policy: Inlining policy applied by the canonicalizer.
        canonicalize: Run the canonicalizer between inference and lowering.
        address_bits: Width of the target address space. A buffer whose byte
            size does not fit in a signed address is rejected.
        heap_bytes: Heap size of the reference backend.
        heap_alignment: Allocation alignment of the reference backend.
                        Must be a power of 2.
        max_steps: Instruction budget of the reference backend.
        log_level: Level applied to the ``tensorc`` logger.
    """

    entry: str = "main"
    inline_policy: InlinePolicy = InlinePolicy.ALWAYS
    canonicalize: bool = True
    address_bits: int = 64
    heap_bytes: int = 1024 * 1024
    heap_alignment: int = 64
    max_steps: int = 10_000_000
    log_level: int = logging.WARNING

    def __post_init__(self) -> None:
        if not self.entry:
            raise ValueError("entry must be a non-empty function name")
        if not isinstance(self.inline_policy, InlinePolicy):
            raise ValueError(f"unknown inline policy {self.inline_policy!r}")
        if not 8 <= self.address_bits <= 64:
            raise ValueError(f"address_bits must be in [8, 64], got {self.address_bits}")
        if self.heap_bytes <= 0:
            raise ValueError(f"heap_bytes must be positive, got {self.heap_bytes}")
        if self.heap_alignment <= 0 or (self.heap_alignment & (self.heap_alignment - 1)) != 0:
            raise ValueError(
                f"heap_alignment must be a positive power of 2, got {self.heap_alignment}"
            )
        if self.max_steps <= 0:
            raise ValueError(f"max_steps must be positive, got {self.max_steps}")

    @property
    def max_buffer_bytes(self) -> int:
        """Largest byte size a single buffer may have."""
        return (1 << (self.address_bits - 1)) - 1
