# weensy

A small teaching kernel that runs entirely in Python. It simulates
x86-64 physical memory, four-level page tables and a page-based
physical allocator. On top of those it provides the kernel's process
management: loading program images, `fork`, `exit`, page allocation
and round-robin scheduling.

## Installation

```
pip install .
```

To run the test suite:

```
pip install .[test]
pytest
```

## What is inside

- `weensy.x86`: paging constants and helpers (`pageindex`, `pageoffmask`,
  `pageoffset`, `va_is_canonical`) and little-endian conversion
  (`to_le`, `from_le`).
- `weensy.elf`: readers and writers for ELF headers, program headers,
  sections and symbols (`ElfHeader`, `ElfProgram`, `ElfSection`,
  `ElfSymbol`, `program_headers`), raising `ElfError` on malformed data.
- `weensy.arith`: bit and rounding helpers (`msb`, `lsb`, `round_down`,
  `round_up`, `round_down_pow2`, `round_up_pow2`, `is_error`) and the
  system-call error codes.
- `weensy.libc`: a small C-library subset over byte strings: character
  classes, `memcmp`, `memchr`, `strlen`, `strcmp`, `strstr` and friends,
  `from_chars`, `from_chars_signed`, `strtol`, `strtoul`, and a
  deterministic linear congruential `Rng`.
- `weensy.memory`: byte-addressable `PhysicalMemory` and the memory
  layout constants (`PROC_START_ADDR`, `MEMSIZE_PHYSICAL`,
  `MEMSIZE_VIRTUAL`, ...).
- `weensy.vmiter`: `VMIter`, which walks and edits page-table mappings,
  raising `MappingError` or `PageTableError` on bad input.
- `weensy.ptiter`: `PTIter`, which visits page-table pages depth-first.
- `weensy.kalloc`: `PageAllocator`, with a `PhysPage` reference-count
  record for each physical page.
- `weensy.kernel`: `Kernel`, `Proc`, `ProgramImage`, `Segment`,
  `Syscall`, `ProcState` and `KernelPanic`.

## Example

Build a program image by hand (or load one with
`ProgramImage.from_elf(data)`), start the kernel and issue system calls
on behalf of the current process:

```python
from weensy.kernel import Kernel, ProgramImage, Segment, Syscall

image = ProgramImage(
    entry=0x100000,
    segments=[
        Segment(va=0x100000, size=0x1000, data=b"\x90" * 16),
        Segment(va=0x101000, size=0x2000, data=b"hello", writable=True),
    ],
)

kernel = Kernel()
kernel.start([image])

pid = kernel.syscall(Syscall.GETPID)       # 1
child = kernel.syscall(Syscall.FORK)       # pid of the new process, or -1
kernel.syscall(Syscall.PAGE_ALLOC, 0x200000)
kernel.syscall(Syscall.YIELD)              # switches to the next runnable process
```

Walk a process's mappings:

```python
from weensy.vmiter import VMIter

proc = kernel.ptable[1]
it = VMIter(kernel.memory, proc.pagetable, 0)
while it.va() < 0x300000:
    if it.user():
        print(hex(it.va()), hex(it.pa()), it.perm())
    it.find(it.va() + 4096)
```

Free every page-table page below a root:

```python
from weensy.ptiter import PTIter

for page in PTIter(kernel.memory, proc.pagetable):
    kernel.allocator.kfree(page)
```

## What it does not do

- It does not execute program code. A process is a descriptor with a
  page table and saved `rip`, `rsp` and `rax`; the caller drives it by
  calling `Kernel.syscall` (or `fork`, `exit`, `page_alloc`, `schedule`)
  on behalf of the current process.
- There is no timer, interrupt or page-fault handling.
- There is no text console, memory viewer or printf-style formatting.
- There are no command-line tools.