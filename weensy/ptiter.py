"""Depth-first iteration over the page-table pages of an x86-64 page table."""

from __future__ import annotations

from typing import Iterator

from .memory import PhysicalMemory
from .vmiter import DONE_LBITS, INITIAL_LBITS
from .x86 import (
    MASK64,
    PAGEINDEXBITS,
    PAGEOFFBITS,
    PTE_P,
    PTE_PAMASK,
    PTE_PS,
    VA_HIGHMIN,
    va_is_canonical,
)

_ENTRY_SIZE = 8
_STOP_LBITS = PAGEOFFBITS + PAGEINDEXBITS


def _lbits_mask(lbits: int) -> int:
    return (1 << lbits) - 1


class PTIter:
    """Walks the page-table pages below the root of `pagetable`.

    Pages are visited depth first, each after all of the pages beneath
    it, so a page may be freed as soon as it has been visited. The root
    (level-4) page is never visited.
    """

    def __init__(self, memory: PhysicalMemory, pagetable: int) -> None:
        self.memory = memory
        self.pagetable = pagetable
        self._pep = pagetable
        self._lbits = INITIAL_LBITS
        self._va = 0
        self._down(False)

    def __repr__(self) -> str:
        return f"PTIter(pagetable={self.pagetable:#x}, va={self._va:#x})"

    def __iter__(self) -> Iterator[int]:
        """Yield the physical address of each remaining page-table page."""
        while not self.done():
            yield self.pa()
            self.next()

    def _entry(self) -> int:
        return self.memory.read_u64(self._pep)

    def _down(self, skip: bool) -> None:
        stop_lbits = _STOP_LBITS
        while self._lbits < DONE_LBITS:
            entry = self._entry()
            if not skip and entry & (PTE_P | PTE_PS) == PTE_P:
                if self._lbits == stop_lbits:
                    break
                self._lbits -= PAGEINDEXBITS
                table = entry & PTE_PAMASK
                index = (self._va >> self._lbits) & 0x1FF
                self._pep = table + index * _ENTRY_SIZE
            else:
                va = ((self._va | _lbits_mask(self._lbits)) + 1) & MASK64
                upper = MASK64 & ~_lbits_mask(self._lbits + PAGEINDEXBITS)
                if (va ^ self._va) & upper:
                    # finished this table: climb back to its parent entry
                    if va == 0 and self._lbits == INITIAL_LBITS:
                        self._lbits = DONE_LBITS
                        break
                    stop_lbits = self._lbits + PAGEINDEXBITS
                    self._lbits = INITIAL_LBITS
                    index = (self._va >> self._lbits) & 0x1FF
                    self._pep = self.pagetable + index * _ENTRY_SIZE
                else:
                    self._pep += _ENTRY_SIZE
                    self._va = va if va_is_canonical(va) else VA_HIGHMIN
                skip = False

    def done(self) -> bool:
        """Return true once every page-table page has been visited."""
        return self._lbits == DONE_LBITS

    def pa(self) -> int:
        """Return the physical address of the current page-table page."""
        return self._entry() & PTE_PAMASK

    def va(self) -> int:
        """Return the first virtual address covered by the current page."""
        return self._va & ~_lbits_mask(self._lbits) & MASK64

    def last_va(self) -> int:
        """Return one past the last virtual address covered by the current page."""
        return ((self._va | _lbits_mask(self._lbits)) + 1) & MASK64

    def level(self) -> int:
        """Return the level of the current page-table page (0-2)."""
        return (self._lbits - PAGEOFFBITS - PAGEINDEXBITS) // PAGEINDEXBITS

    def next(self) -> None:
        """Move to the next page-table page in depth-first order."""
        self._down(True)