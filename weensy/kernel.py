"""The kernel: process table, program loading, fork, exit, page
allocation system calls and round-robin scheduling."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Iterable, Optional

from .arith import PID_MAX, round_down
from .elf import ElfError, ElfHeader, program_headers
from .kalloc import PageAllocator
from .memory import (
    KERNEL_STACK_TOP,
    KERNEL_START_ADDR,
    MEMSIZE_PHYSICAL,
    MEMSIZE_VIRTUAL,
    PROC_START_ADDR,
    PhysicalMemory,
)
from .ptiter import PTIter
from .vmiter import VMIter
from .x86 import CONSOLE_ADDR, PAGESIZE, PTE_P, PTE_U, PTE_W

_PWU = PTE_P | PTE_W | PTE_U


class ProcState(enum.IntEnum):
    FREE = 0
    RUNNABLE = 1
    BLOCKED = 2
    FAULTED = 3


class Syscall(enum.IntEnum):
    GETPID = 1
    YIELD = 2
    PANIC = 3
    PAGE_ALLOC = 4
    FORK = 5
    EXIT = 6


class KernelPanic(RuntimeError):
    """Raised when the kernel hits an unrecoverable condition."""


@dataclass(frozen=True)
class Segment:
    """A loadable program segment: `size` bytes at `va`, starting with `data`."""

    va: int
    size: int
    data: bytes = b""
    writable: bool = False

    def __post_init__(self) -> None:
        if self.va < 0 or self.size < 0:
            raise ValueError("segment address and size must not be negative")
        if len(self.data) > self.size:
            raise ValueError(
                f"segment data ({len(self.data)} bytes) exceeds its size {self.size}"
            )

    @property
    def data_size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class ProgramImage:
    """A program: its entry point and loadable segments."""

    entry: int
    segments: tuple[Segment, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "segments", tuple(self.segments))

    @classmethod
    def from_elf(cls, data: bytes) -> "ProgramImage":
        """Build an image from the loadable segments of an ELF executable."""
        header = ElfHeader.unpack(data)
        segments = []
        for ph in program_headers(data):
            if not ph.is_load():
                continue
            end = ph.p_offset + ph.p_filesz
            if end > len(data):
                raise ElfError(f"segment at {ph.p_va:#x} runs past end of file")
            if ph.p_filesz > ph.p_memsz:
                raise ElfError(f"segment at {ph.p_va:#x} has filesz > memsz")
            segments.append(
                Segment(ph.p_va, ph.p_memsz, bytes(data[ph.p_offset:end]),
                        ph.writable())
            )
        return cls(header.e_entry, tuple(segments))


@dataclass
class Proc:
    """A process descriptor."""

    pid: int
    state: ProcState = ProcState.FREE
    pagetable: Optional[int] = None
    rip: int = 0
    rsp: int = 0
    rax: int = 0


class Kernel:
    """A kernel managing processes over simulated physical memory."""

    def __init__(self, memory: Optional[PhysicalMemory] = None,
                 page_increment: int = 3) -> None:
        self.memory = memory if memory is not None else PhysicalMemory(MEMSIZE_PHYSICAL)
        if len(self.memory) < MEMSIZE_PHYSICAL:
            raise ValueError(f"memory must hold at least {MEMSIZE_PHYSICAL:#x} bytes")
        self.allocator = PageAllocator(self.memory, page_increment)
        self.ptable = [Proc(pid) for pid in range(PID_MAX)]
        self.current: Optional[Proc] = None
        self._kernel_pages = iter(range(KERNEL_START_ADDR, KERNEL_STACK_TOP, PAGESIZE))
        root = self._kernel_page()
        if root is None:
            raise KernelPanic("no room for the kernel page table")
        self.kernel_pagetable = root
        self._map_kernel()

    # Helpers

    def _kernel_page(self) -> Optional[int]:
        return next(self._kernel_pages, None)

    def _kalloc_page(self) -> Optional[int]:
        return self.allocator.kalloc(PAGESIZE)

    def _vmiter(self, pt: int, va: int) -> VMIter:
        return VMIter(self.memory, pt, va, alloc=self._kalloc_page)

    @staticmethod
    def _must_map(it: VMIter, pa: Optional[int], perm: int) -> None:
        if not it.try_map(pa, perm):
            raise KernelPanic(f"out of memory mapping va {it.va():#x}")

    def _require_current(self) -> Proc:
        if self.current is None:
            raise KernelPanic("no current process")
        return self.current

    def _map_kernel(self) -> None:
        for addr in range(0, MEMSIZE_PHYSICAL, PAGESIZE):
            if addr == 0:
                perm = 0  # nullptr is inaccessible even to the kernel
            elif addr < PROC_START_ADDR and addr != CONSOLE_ADDR:
                perm = PTE_P | PTE_W
            else:
                perm = _PWU
            it = VMIter(self.memory, self.kernel_pagetable, addr,
                        alloc=self._kernel_page)
            if not it.try_map(addr, perm):
                raise KernelPanic("kernel page table mapping failed")

    @staticmethod
    def _pages(seg: Segment) -> range:
        return range(round_down(seg.va, PAGESIZE), seg.va + seg.size, PAGESIZE)

    def _load(self, pt: int, seg: Segment) -> None:
        end = seg.va + seg.size
        data_end = seg.va + len(seg.data)
        for page in self._pages(seg):
            lo = max(page, seg.va)
            hi = min(page + PAGESIZE, end)
            pa = VMIter(self.memory, pt, lo).pa()
            if pa is None:
                raise KernelPanic(f"segment page {page:#x} is not mapped")
            self.memory.fill(pa, 0, hi - lo)
            if lo < data_end:
                self.memory.write(pa, seg.data[lo - seg.va:min(hi, data_end) - seg.va])

    def _release(self, pa: int) -> None:
        page = self.allocator.physpages[pa // PAGESIZE]
        if page.refcount > 1:
            page.refcount -= 1
        else:
            self.allocator.kfree(pa)

    def _abandon(self, proc: Proc) -> None:
        if proc.pagetable is not None:
            self.free_everything(proc.pagetable)
        proc.pagetable = None

    # Process management

    def start(self, images: Iterable[ProgramImage]) -> None:
        """Load `images` as processes 1, 2, ... and run process 1."""
        images = list(images)
        if not images:
            raise ValueError("at least one program image is required")
        if len(images) >= PID_MAX:
            raise ValueError(f"at most {PID_MAX - 1} programs can be loaded")
        self.ptable = [Proc(pid) for pid in range(PID_MAX)]
        self.current = None
        for pid, image in enumerate(images, start=1):
            self.process_setup(pid, image)
        self.run(1)

    def process_setup(self, pid: int, image: ProgramImage) -> None:
        """Load `image` as process `pid` with its own page table and stack."""
        if not 0 < pid < PID_MAX:
            raise ValueError(f"pid {pid} out of range")
        proc = self.ptable[pid]
        proc.rip = proc.rsp = proc.rax = 0
        pt = self.allocator.kalloc_pagetable()
        if pt is None:
            raise KernelPanic(f"out of memory for the page table of process {pid}")
        proc.pagetable = pt

        kernel_it = VMIter(self.memory, self.kernel_pagetable, PAGESIZE)
        new_it = self._vmiter(pt, PAGESIZE)
        while kernel_it.va() < PROC_START_ADDR:
            self._must_map(new_it, kernel_it.pa(), kernel_it.perm())
            kernel_it += PAGESIZE
            new_it += PAGESIZE

        for seg in image.segments:
            perm = PTE_P | PTE_U | (PTE_W if seg.writable else 0)
            for page in self._pages(seg):
                pa = self.allocator.kalloc(PAGESIZE)
                if pa is None:
                    raise KernelPanic(f"out of memory loading process {pid}")
                self._must_map(new_it.find(page), pa, perm)
        for seg in image.segments:
            self._load(pt, seg)

        proc.rip = image.entry

        stack_addr = MEMSIZE_VIRTUAL - PAGESIZE
        pa = self.allocator.kalloc(PAGESIZE)
        if pa is None:
            raise KernelPanic(f"out of memory for the stack of process {pid}")
        self._must_map(new_it.find(stack_addr), pa, _PWU)
        proc.rsp = stack_addr + PAGESIZE
        proc.state = ProcState.RUNNABLE

    def free_everything(self, pt: int) -> None:
        """Release the user pages mapped by `pt` and all its page-table pages."""
        it = VMIter(self.memory, pt, 0)
        while it.va() < MEMSIZE_VIRTUAL:
            if it.user() and it.va() != CONSOLE_ADDR:
                self._release(it.pa())
            it += PAGESIZE
        for page in PTIter(self.memory, pt):
            self.allocator.kfree(page)
        self.allocator.kfree(pt)

    def fork(self) -> int:
        """Copy the current process; return the child's pid, or -1 on failure."""
        parent_proc = self._require_current()
        child = next(
            (p for p in self.ptable[1:] if p.state == ProcState.FREE), None
        )
        if child is None:
            return -1
        pt = self.allocator.kalloc_pagetable()
        if pt is None:
            return -1
        child.pagetable = pt

        for addr in range(0, MEMSIZE_VIRTUAL, PAGESIZE):
            parent = VMIter(self.memory, parent_proc.pagetable, addr)
            if not parent.present():
                continue
            child_it = self._vmiter(pt, addr)
            if addr != CONSOLE_ADDR and parent.writable() and parent.user():
                page = self.allocator.kalloc(PAGESIZE)
                if page is None:
                    self._abandon(child)
                    return -1
                if not child_it.try_map(page, parent.perm()):
                    self._abandon(child)
                    self.allocator.kfree(page)
                    return -1
                self.memory.write(page, self.memory.read(parent.pa(), PAGESIZE))
            elif addr != CONSOLE_ADDR and parent.user():
                shared = parent.pa()
                if not child_it.try_map(shared, parent.perm()):
                    self._abandon(child)
                    return -1
                self.allocator.physpages[shared // PAGESIZE].refcount += 1
            elif not child_it.try_map(parent.pa(), parent.perm()):
                self._abandon(child)
                return -1

        child.rip = parent_proc.rip
        child.rsp = parent_proc.rsp
        child.rax = 0
        child.state = ProcState.RUNNABLE
        return child.pid

    def exit(self) -> None:
        """Free the current process's memory and mark its slot free."""
        proc = self._require_current()
        if proc.pagetable is not None:
            self.free_everything(proc.pagetable)
        proc.pagetable = None
        proc.state = ProcState.FREE

    def page_alloc(self, addr: int) -> int:
        """Map a fresh zeroed page at `addr` for the current process.

        Return 0 on success or -1 when no physical page is free.
        """
        proc = self._require_current()
        pa = self.allocator.kalloc(PAGESIZE)
        if pa is None:
            return -1
        self.memory.fill(pa, 0, PAGESIZE)
        self._must_map(self._vmiter(proc.pagetable, addr), pa, _PWU)
        return 0

    def syscall(self, number: int, arg: object = 0) -> Optional[int]:
        """Handle system call `number` for the current process.

        Return the value the calling process receives, or None for exit.
        """
        proc = self._require_current()
        try:
            call = Syscall(number)
        except ValueError:
            raise KernelPanic(
                f"Unhandled system call {number} (pid={proc.pid}, rip={proc.rip:#x})!"
            ) from None

        if call is Syscall.PANIC:
            raise KernelPanic(f"user panic (pid {proc.pid}): {arg}")
        if call is Syscall.GETPID:
            result = proc.pid
        elif call is Syscall.YIELD:
            proc.rax = 0
            self.schedule()
            return 0
        elif call is Syscall.PAGE_ALLOC:
            result = self.page_alloc(int(arg))
        elif call is Syscall.FORK:
            result = self.fork()
        else:
            self.exit()
            self.schedule()
            return None
        proc.rax = result
        return result

    def schedule(self) -> Optional[int]:
        """Run the next runnable process after the current one.

        Return its pid, or None when no process is runnable.
        """
        pid = self.current.pid if self.current is not None else 0
        for _ in range(PID_MAX):
            pid = (pid + 1) % PID_MAX
            if self.ptable[pid].state == ProcState.RUNNABLE:
                self.run(pid)
                return pid
        return None

    def run(self, pid: int) -> None:
        """Make process `pid` the current process."""
        proc = self.ptable[pid]
        if proc.state != ProcState.RUNNABLE:
            raise KernelPanic(f"process {pid} is not runnable")
        if proc.pagetable is None:
            raise KernelPanic(f"process {pid} has no page table")
        self.current = proc