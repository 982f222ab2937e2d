"""Simulated physical memory and the kernel's memory layout constants."""

from __future__ import annotations

from .x86 import PAGESIZE, from_le, to_le

# Kernel start address
KERNEL_START_ADDR = 0x40000
# Top of the kernel stack
KERNEL_STACK_TOP = 0x80000
# First application-accessible address
PROC_START_ADDR = 0x100000
# Physical memory size
MEMSIZE_PHYSICAL = 0x200000
# Number of physical pages
NPAGES = MEMSIZE_PHYSICAL // PAGESIZE
# Virtual memory size
MEMSIZE_VIRTUAL = 0x300000


class PhysicalMemory:
    """A byte-addressable block of physical memory, initially zero."""

    def __init__(self, size: int = MEMSIZE_PHYSICAL) -> None:
        if size <= 0 or size % PAGESIZE:
            raise ValueError(
                f"memory size must be a positive multiple of {PAGESIZE}, got {size}"
            )
        self._data = bytearray(size)

    def __len__(self) -> int:
        return len(self._data)

    @property
    def size(self) -> int:
        return len(self._data)

    def _check(self, addr: int, size: int) -> None:
        if size < 0 or addr < 0 or addr + size > len(self._data):
            raise IndexError(
                f"physical range [{addr:#x}, {addr + size:#x}) is outside memory"
            )

    def read_u64(self, addr: int) -> int:
        """Return the little-endian 64-bit word at `addr`."""
        self._check(addr, 8)
        return from_le(bytes(self._data[addr:addr + 8]))

    def write_u64(self, addr: int, value: int) -> None:
        """Store `value` as a little-endian 64-bit word at `addr`."""
        encoded = to_le(value, 8)
        self._check(addr, 8)
        self._data[addr:addr + 8] = encoded

    def read(self, addr: int, size: int) -> bytes:
        """Return `size` bytes starting at `addr`."""
        self._check(addr, size)
        return bytes(self._data[addr:addr + size])

    def write(self, addr: int, data: bytes) -> None:
        """Copy `data` into memory starting at `addr`."""
        data = bytes(data)
        self._check(addr, len(data))
        self._data[addr:addr + len(data)] = data

    def fill(self, addr: int, value: int, size: int) -> None:
        """Set `size` bytes at `addr` to the low byte of `value`."""
        self._check(addr, size)
        self._data[addr:addr + size] = bytes([value & 0xFF]) * size