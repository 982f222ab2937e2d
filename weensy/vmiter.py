"""Iteration over virtual address mappings in x86-64 page tables."""

from __future__ import annotations

from typing import Callable, Optional

from .memory import PhysicalMemory
from .x86 import (
    MASK64,
    PAGEINDEXBITS,
    PAGEOFFBITS,
    PAGESIZE,
    PTE_P,
    PTE_PAMASK,
    PTE_PS,
    PTE_U,
    PTE_W,
    VA_HIGHMIN,
    va_is_canonical,
)

INITIAL_LBITS = PAGEOFFBITS + 3 * PAGEINDEXBITS
NONCANONICAL_LBITS = 47
DONE_LBITS = 64

_INITIAL_PERM = 0xFFF
_ENTRY_SIZE = 8
_PWU = PTE_P | PTE_W | PTE_U

Allocator = Callable[[], Optional[int]]


class PageTableError(RuntimeError):
    """Raised when a page table appears to hold garbage."""


class MappingError(RuntimeError):
    """Raised for an invalid or failed mapping change."""


def _lbits_mask(lbits: int) -> int:
    return (1 << lbits) - 1


class VMIter:
    """A cursor over the virtual address space described by a page table.

    `pagetable` is the physical address of the level-4 page table in
    `memory`. `alloc`, if given, returns the physical address of a free
    page (or None when memory is exhausted); it supplies new page-table
    pages when mappings are installed.
    """

    def __init__(self, memory: PhysicalMemory, pagetable: int, va: int = 0,
                 alloc: Optional[Allocator] = None) -> None:
        self.memory = memory
        self.pagetable = pagetable
        self._alloc = alloc
        self._pep: Optional[int] = pagetable
        self._lbits = INITIAL_LBITS
        self._perm = _INITIAL_PERM
        self._va = 0
        self._real_find(va & MASK64, False)

    def __repr__(self) -> str:
        return f"VMIter(pagetable={self.pagetable:#x}, va={self._va:#x})"

    # Internal traversal

    def _entry(self) -> int:
        return 0 if self._pep is None else self.memory.read_u64(self._pep)

    def _down(self) -> None:
        entry = self._entry()
        while self._lbits > PAGEOFFBITS and entry & (PTE_P | PTE_PS) == PTE_P:
            self._perm &= entry | ~_PWU
            self._lbits -= PAGEINDEXBITS
            table = entry & PTE_PAMASK
            index = (self._va >> self._lbits) & 0x1FF
            self._pep = table + index * _ENTRY_SIZE
            entry = self._entry()
        if (entry & PTE_PAMASK) >= 0x100000000 \
                and self._lbits < PAGEOFFBITS + 2 * PAGEINDEXBITS:
            raise PageTableError(
                f"page table {self.pagetable:#x} may contain uninitialized "
                f"memory (entry {entry:#x})"
            )

    def _real_find(self, va: int, stepping: bool) -> None:
        if stepping and va == 0:
            self._lbits = DONE_LBITS
            self._perm = 0
            self._pep = None
        elif (self._lbits < INITIAL_LBITS
              and ((self._va ^ va)
                   & (MASK64 << (self._lbits + PAGEINDEXBITS)) & MASK64) == 0):
            # stepping to another entry in the current page-table page
            curidx = (self._pep % PAGESIZE) >> 3
            newidx = (va >> self._lbits) & 0x1FF
            self._pep += (newidx - curidx) * _ENTRY_SIZE
        elif not va_is_canonical(va):
            self._lbits = NONCANONICAL_LBITS
            self._perm = 0
            self._pep = None
        else:
            self._lbits = INITIAL_LBITS
            self._perm = _INITIAL_PERM
            index = (va >> self._lbits) & 0x1FF
            self._pep = self.pagetable + index * _ENTRY_SIZE
        self._va = va
        self._down()

    # Address queries

    def va(self) -> int:
        """Return the current virtual address."""
        return self._va

    def last_va(self) -> int:
        """Return one past the last virtual address in this mapping range."""
        if self._lbits == NONCANONICAL_LBITS:
            return VA_HIGHMIN
        return ((self._va | _lbits_mask(self._lbits)) + 1) & MASK64

    def range_size(self) -> int:
        """Return the number of bytes left in this mapping range."""
        return (self.last_va() - self._va) & MASK64

    def done(self) -> bool:
        """Return true once iteration has moved past the last address."""
        return self._lbits == DONE_LBITS

    def pa(self) -> Optional[int]:
        """Return the physical address mapped at `va()`, or None if unmapped."""
        entry = self._entry()
        if not entry & PTE_P:
            return None
        pa = entry & PTE_PAMASK
        if self._lbits > PAGEOFFBITS:
            pa &= ~0x1000
        return pa + (self._va & _lbits_mask(self._lbits))

    # Permissions

    def perm(self) -> int:
        """Return the permissions at `va()` (0 unless present)."""
        ph = self._entry() & self._perm
        return ph if ph & PTE_P else 0

    def has_perm(self, desired: int) -> bool:
        return (self.perm() & desired) == desired

    def present(self) -> bool:
        return self.has_perm(PTE_P)

    def writable(self) -> bool:
        return self.has_perm(PTE_P | PTE_W)

    def user(self) -> bool:
        return self.has_perm(PTE_P | PTE_U)

    def range_perm(self, size: int) -> int:
        """Return the intersection of permissions over [va(), va() + size).

        An empty range gives all bits set (2**64 - 1).
        """
        p = self.perm() if size > 0 else MASK64
        start = self._va
        while p and size > self.range_size():
            size -= self.range_size()
            self.next_range()
            p &= self.perm() if self._va else 0
        self.find(start)
        return p

    def has_range_perm(self, size: int, desired: int) -> bool:
        return (self.range_perm(size) & desired) == desired

    # Traversal

    def find(self, va: int) -> "VMIter":
        """Move to virtual address `va`; return self."""
        va &= MASK64
        if va != self._va:
            self._real_find(va, False)
        return self

    def __iadd__(self, delta: int) -> "VMIter":
        return self.find(self._va + delta)

    def __isub__(self, delta: int) -> "VMIter":
        return self.find(self._va - delta)

    def __add__(self, delta: int) -> "VMIter":
        return self.copy().find(self._va + delta)

    def __sub__(self, delta: int) -> "VMIter":
        return self.copy().find(self._va - delta)

    def copy(self) -> "VMIter":
        """Return an independent iterator at the same position."""
        other = VMIter.__new__(VMIter)
        other.__dict__.update(self.__dict__)
        return other

    def next(self) -> None:
        """Move to the next page, skipping large unmapped regions."""
        lbits = PAGEOFFBITS
        if self._lbits > PAGEOFFBITS and not self.perm():
            lbits = self._lbits
        self._real_find(((self._va | _lbits_mask(lbits)) + 1) & MASK64, True)

    def next_range(self) -> None:
        """Move to `last_va()`."""
        self._real_find(self.last_va(), True)

    # Mapping modification

    def try_map(self, pa: Optional[int], perm: int) -> bool:
        """Map `va()` to `pa` with `perm`; return False if a page-table page
        could not be allocated, in which case no mapping changes.

        `pa` of None means no page; it is allowed only with `perm == 0`.
        """
        if pa is None and perm == 0:
            pa = 0
        if self._va % PAGESIZE:
            raise MappingError(f"va {self._va:#x} not page-aligned")
        if perm & PTE_P:
            if pa is None:
                raise MappingError("cannot map a nonexistent physical address")
            if pa & PTE_PAMASK != pa:
                raise MappingError(f"pa {pa:#x} not page-aligned")
        elif pa is None or pa & PTE_P:
            raise MappingError("invalid physical address for a non-present entry")
        if perm & ~self._perm & _PWU:
            raise MappingError(
                f"permissions {perm:#x} exceed those of higher-level tables"
            )

        while self._lbits > PAGEOFFBITS and perm:
            if self._pep is None:
                raise MappingError(f"va {self._va:#x} cannot be mapped")
            if self._entry() & PTE_P:
                raise MappingError("unexpected present entry at higher level")
            if self._alloc is None:
                raise MappingError("no page allocator for new page tables")
            table = self._alloc()
            if table is None:
                return False
            if table % PAGESIZE:
                raise MappingError(f"allocated page {table:#x} not aligned")
            self.memory.fill(table, 0, PAGESIZE)
            self.memory.write_u64(self._pep, table | _PWU)
            self._down()

        if self._lbits == PAGEOFFBITS:
            self.memory.write_u64(self._pep, pa | perm)
        return True

    def map(self, pa: Optional[int], perm: int) -> None:
        """Like `try_map`, but raise MappingError if allocation fails."""
        if not self.try_map(pa, perm):
            raise MappingError(f"mapping va {self._va:#x} failed: out of memory")