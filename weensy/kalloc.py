"""The kernel's physical page allocator and per-page bookkeeping."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .arith import PID_MAX
from .memory import (
    KERNEL_STACK_TOP,
    KERNEL_START_ADDR,
    PhysicalMemory,
)
from .x86 import PA_IOLOWEND, PA_IOLOWMIN, PAGESIZE

# Freshly allocated pages are filled with this byte (the `int3` opcode).
KALLOC_FILL = 0xCC


@dataclass
class PhysPage:
    """Status of one physical page: how many times it is in use."""

    refcount: int = 0

    def used(self) -> bool:
        return self.refcount != 0

    def valid(self) -> bool:
        return self.refcount <= PID_MAX


class PageAllocator:
    """Allocates whole physical pages out of `memory`.

    The search for a free page starts at page 0 and advances by
    `page_increment` pages at a time (wrapping around), so consecutive
    allocations are not physically adjacent.
    """

    def __init__(self, memory: PhysicalMemory, page_increment: int = 3) -> None:
        if page_increment <= 0:
            raise ValueError(
                f"page increment must be positive, got {page_increment}"
            )
        self.memory = memory
        self.page_increment = page_increment
        self.physpages = [PhysPage() for _ in range(len(memory) // PAGESIZE)]

    @property
    def npages(self) -> int:
        return len(self.physpages)

    def reserved_physical_address(self, pa: int) -> bool:
        """Return true iff `pa` is reserved: the null page or low I/O memory."""
        return pa < PAGESIZE or PA_IOLOWMIN <= pa < PA_IOLOWEND

    def allocatable_physical_address(self, pa: int) -> bool:
        """Return true iff `pa` lies in a page that may be handed out."""
        return (
            0 <= pa < len(self.memory)
            and not self.reserved_physical_address(pa)
            and not KERNEL_START_ADDR <= pa < KERNEL_STACK_TOP
        )

    def kalloc(self, size: int = PAGESIZE) -> Optional[int]:
        """Allocate one page; return its physical address, or None.

        Fails if `size` exceeds a page or no free page remains. The new
        page is filled with 0xCC.
        """
        if size > PAGESIZE:
            return None
        pageno = 0
        for _ in range(self.npages):
            pa = pageno * PAGESIZE
            page = self.physpages[pageno]
            if self.allocatable_physical_address(pa) and page.refcount == 0:
                page.refcount += 1
                self.memory.fill(pa, KALLOC_FILL, PAGESIZE)
                return pa
            pageno = (pageno + self.page_increment) % self.npages
        return None

    def kfree(self, pa: Optional[int]) -> None:
        """Free the page at `pa`, previously returned by `kalloc`.

        None is ignored. A page whose reference count is not exactly 1 is
        left alone. A freed page is zeroed.
        """
        if pa is None:
            return
        if pa % PAGESIZE:
            raise ValueError(f"kfree of unaligned address {pa:#x}")
        if not self.allocatable_physical_address(pa):
            return
        page = self.physpages[pa // PAGESIZE]
        if page.refcount == 1:
            page.refcount = 0
            self.memory.fill(pa, 0, PAGESIZE)

    def kalloc_pagetable(self) -> Optional[int]:
        """Allocate an empty (all-zero) page table; return its address or None."""
        pa = self.kalloc(PAGESIZE)
        if pa is not None:
            self.memory.fill(pa, 0, PAGESIZE)
        return pa