"""Simulated heap for the reference backend.

A deterministic first-fit allocator over a numpy byte buffer. Addresses are
plain integers into that buffer; every load and store is checked against the
live allocation that contains it, so use-after-free, double free and
out-of-bounds accesses surface as errors instead of silent corruption.
"""

from __future__ import annotations

import bisect
from dataclasses import dataclass, field
from typing import NamedTuple

import numpy as np


@dataclass(frozen=True, slots=True)
class HeapConfig:
    """Size of the heap and the alignment of every allocation (a power of 2)."""

    total_bytes: int
    alignment: int = 64

    def __post_init__(self) -> None:
        if self.total_bytes <= 0:
            raise ValueError(f"total_bytes must be positive, got {self.total_bytes}")
        if self.alignment <= 0 or self.alignment & (self.alignment - 1):
            raise ValueError(f"alignment must be a positive power of 2, got {self.alignment}")


class Allocation(NamedTuple):
    """A live block. `size` is what was requested, `reserved` what was carved out."""

    addr: int
    size: int
    reserved: int
    tag: str


class Hole(NamedTuple):
    """A free range `[addr, addr + size)`."""

    addr: int
    size: int

    @property
    def end(self) -> int:
        return self.addr + self.size


class HeapError(Exception):
    """Invalid heap operation (bad free, out-of-bounds access)."""


class HeapOutOfMemoryError(HeapError):
    pass


@dataclass
class VirtualHeap:
    """First-fit heap with live and peak accounting.

    Holes are kept sorted by address and merged with their neighbours on
    free, so the same sequence of calls always yields the same addresses.

    Example:
        >>> heap = VirtualHeap(HeapConfig(total_bytes=4096))
        >>> addr = heap.alloc(48, tag="%0")
        >>> heap.store_f64(addr + 8, 2.5)
        >>> heap.load_f64(addr + 8)
        2.5
        >>> heap.free(addr)
    """

    config: HeapConfig

    live_bytes: int = field(default=0, init=False)
    peak_bytes: int = field(default=0, init=False)
    alloc_count: int = field(default=0, init=False)
    free_count: int = field(default=0, init=False)
    _allocations: dict[int, Allocation] = field(default_factory=dict, init=False, repr=False)
    _starts: list[int] = field(default_factory=list, init=False, repr=False)
    _holes: list[Hole] = field(init=False, repr=False)
    _data: np.ndarray = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._holes = [Hole(0, self.config.total_bytes)]
        self._data = np.zeros(self.config.total_bytes, dtype=np.uint8)

    @property
    def free_bytes(self) -> int:
        """Bytes not reserved by a live allocation, fragmented or not."""
        return self.config.total_bytes - self.live_bytes

    # -------------------------------------------------------------------------
    # Allocation
    # -------------------------------------------------------------------------

    def alloc(self, size: int, tag: str) -> int:
        """Reserve `size` bytes at the lowest aligned address that fits.

        Zero-sized requests still take one aligned slot so live allocations
        never share an address.

        Raises:
            HeapOutOfMemoryError: If no hole is large enough.
        """
        if size < 0:
            raise HeapError(f"allocation size must be non-negative, got {size}")

        reserved = self._round_up(max(size, 1))
        for i, hole in enumerate(self._holes):
            start = self._round_up(hole.addr)
            if start + reserved <= hole.end:
                self._split(i, start, reserved)
                break
        else:
            raise HeapOutOfMemoryError(self._oom_report(size, reserved, tag))

        self._allocations[start] = Allocation(start, size, reserved, tag)
        bisect.insort(self._starts, start)
        self.live_bytes += reserved
        self.peak_bytes = max(self.peak_bytes, self.live_bytes)
        self.alloc_count += 1
        return start

    def free(self, addr: int) -> None:
        """Release the allocation starting at `addr`.

        Raises:
            HeapError: If addr was not allocated or already freed.
        """
        alloc = self._allocations.pop(addr, None)
        if alloc is None:
            raise HeapError(f"cannot free address 0x{addr:04X}: not allocated or already freed")
        self._starts.remove(addr)
        self.live_bytes -= alloc.reserved
        self.free_count += 1
        self._merge(Hole(addr, alloc.reserved))

    def get_allocations(self) -> list[Allocation]:
        """Live allocations in address order."""
        return [self._allocations[a] for a in self._starts]

    # -------------------------------------------------------------------------
    # Element access
    # -------------------------------------------------------------------------

    def owner_of(self, addr: int, nbytes: int) -> Allocation:
        """The live allocation containing `[addr, addr + nbytes)`."""
        i = bisect.bisect_right(self._starts, addr) - 1
        if i >= 0:
            alloc = self._allocations[self._starts[i]]
            if addr + nbytes <= alloc.addr + alloc.size:
                return alloc
        raise HeapError(f"access of {nbytes} bytes at 0x{addr:04X} is outside every live allocation")

    def load_f64(self, addr: int) -> float:
        self.owner_of(addr, 8)
        return float(self._data[addr : addr + 8].view(np.float64)[0])

    def store_f64(self, addr: int, value: float) -> None:
        self.owner_of(addr, 8)
        self._data[addr : addr + 8] = np.array([value], dtype=np.float64).view(np.uint8)

    def read_array(self, addr: int, shape: tuple[int, ...]) -> np.ndarray:
        if any(d < 0 for d in shape):
            raise HeapError(f"cannot read an array of shape {tuple(shape)}")
        n = int(np.prod(shape, dtype=np.int64))
        self.owner_of(addr, n * 8)
        return self._data[addr : addr + n * 8].view(np.float64).reshape(shape).copy()

    def write_array(self, addr: int, array: np.ndarray) -> None:
        flat = np.ascontiguousarray(array, dtype=np.float64).reshape(-1)
        self.owner_of(addr, flat.size * 8)
        self._data[addr : addr + flat.size * 8] = flat.view(np.uint8)

    # -------------------------------------------------------------------------
    # Free list
    # -------------------------------------------------------------------------

    def _round_up(self, value: int) -> int:
        mask = self.config.alignment - 1
        return (value + mask) & ~mask

    def _split(self, i: int, start: int, reserved: int) -> None:
        """Replace hole `i` by what is left of it around `[start, start + reserved)`."""
        hole = self._holes[i]
        before = Hole(hole.addr, start - hole.addr)
        after = Hole(start + reserved, hole.end - start - reserved)
        self._holes[i : i + 1] = [h for h in (before, after) if h.size > 0]

    def _merge(self, hole: Hole) -> None:
        """Insert a released range, joined with the holes it touches."""
        i = bisect.bisect_left(self._holes, hole)
        start, end = hole.addr, hole.end
        first, last = i, i
        if i > 0 and self._holes[i - 1].end == start:
            first = i - 1
            start = self._holes[first].addr
        if i < len(self._holes) and self._holes[i].addr == end:
            last = i + 1
            end = self._holes[i].end
        self._holes[first:last] = [Hole(start, end - start)]

    def _oom_report(self, size: int, reserved: int, tag: str) -> str:
        largest = max((h.size for h in self._holes), default=0)
        lines = [
            f"heap out of memory: cannot allocate {size} bytes (aligned: {reserved}) for '{tag}'",
            f"  Total capacity:  {self.config.total_bytes:,} bytes",
            f"  Currently live:  {self.live_bytes:,} bytes",
            f"  Largest hole:    {largest:,} bytes",
        ]
        biggest = sorted(self.get_allocations(), key=lambda a: -a.size)[:5]
        lines.extend(f"  @0x{a.addr:04X}: {a.size:,} bytes [{a.tag}]" for a in biggest)
        return "\n".join(lines)
