import pytest

from weensy.arith import PID_MAX
from weensy.elf import (
    ELF_PFLAG_READ,
    ELF_PFLAG_WRITE,
    ELF_PTYPE_LOAD,
    ElfError,
    ElfHeader,
    ElfProgram,
)
from weensy.kernel import (
    Kernel,
    KernelPanic,
    ProcState,
    ProgramImage,
    Segment,
    Syscall,
)
from weensy.memory import MEMSIZE_VIRTUAL, PROC_START_ADDR
from weensy.vmiter import VMIter
from weensy.x86 import CONSOLE_ADDR, PAGESIZE

ENTRY = PROC_START_ADDR + 0x10
CODE = b"\x90\x90\xc3"
DATA = b"data"
CODE_VA = PROC_START_ADDR
DATA_VA = PROC_START_ADDR + 2 * PAGESIZE


def make_image():
    return ProgramImage(
        ENTRY,
        (
            Segment(CODE_VA, 2 * PAGESIZE, CODE, False),
            Segment(DATA_VA, PAGESIZE, DATA, True),
        ),
    )


@pytest.fixture
def kernel():
    k = Kernel()
    k.start([make_image()])
    return k


def translate(k, pid, va):
    return VMIter(k.memory, k.ptable[pid].pagetable, va)


def used_pages(k):
    return sum(page.used() for page in k.allocator.physpages)


def test_start_runs_first_process(kernel):
    proc = kernel.current
    assert proc.pid == 1
    assert proc.state == ProcState.RUNNABLE
    assert proc.rip == ENTRY
    assert proc.rsp == MEMSIZE_VIRTUAL


def test_kernel_pagetable_identity_map(kernel):
    def kit(va):
        return VMIter(kernel.memory, kernel.kernel_pagetable, va)

    assert not kit(0).present()
    assert kit(PAGESIZE).pa() == PAGESIZE
    assert kit(PAGESIZE).writable() and not kit(PAGESIZE).user()
    assert kit(CONSOLE_ADDR).user()
    assert kit(PROC_START_ADDR).pa() == PROC_START_ADDR
    assert kit(PROC_START_ADDR).user()


def test_process_shares_kernel_mappings(kernel):
    low = translate(kernel, 1, PAGESIZE)
    assert low.pa() == PAGESIZE
    assert low.present() and not low.user()
    assert translate(kernel, 1, CONSOLE_ADDR).pa() == CONSOLE_ADDR
    assert translate(kernel, 1, CONSOLE_ADDR).user()
    assert not translate(kernel, 1, 0).present()


def test_segments_are_loaded(kernel):
    code = translate(kernel, 1, CODE_VA)
    assert code.user() and not code.writable()
    pa = code.pa()
    assert kernel.memory.read(pa, len(CODE)) == CODE
    assert kernel.memory.read(pa + len(CODE), PAGESIZE - len(CODE)) == bytes(PAGESIZE - len(CODE))
    second = translate(kernel, 1, CODE_VA + PAGESIZE)
    assert kernel.memory.read(second.pa(), PAGESIZE) == bytes(PAGESIZE)
    data = translate(kernel, 1, DATA_VA)
    assert data.writable() and data.user()
    assert kernel.memory.read(data.pa(), len(DATA)) == DATA


def test_stack_is_mapped(kernel):
    stack = translate(kernel, 1, MEMSIZE_VIRTUAL - PAGESIZE)
    assert stack.writable() and stack.user()


def test_getpid(kernel):
    assert kernel.syscall(Syscall.GETPID) == 1
    assert kernel.current.rax == 1


def test_page_alloc_maps_zeroed_page(kernel):
    addr = PROC_START_ADDR + 16 * PAGESIZE
    assert kernel.syscall(Syscall.PAGE_ALLOC, addr) == 0
    it = translate(kernel, 1, addr)
    assert it.writable() and it.user()
    assert kernel.memory.read(it.pa(), PAGESIZE) == bytes(PAGESIZE)


def test_page_alloc_fails_when_memory_is_exhausted(kernel):
    while kernel.allocator.kalloc() is not None:
        pass
    assert kernel.page_alloc(PROC_START_ADDR + 16 * PAGESIZE) == -1


def test_fork_creates_runnable_child(kernel):
    child = kernel.syscall(Syscall.FORK)
    assert child == 2
    assert kernel.current.rax == child
    proc = kernel.ptable[child]
    assert proc.state == ProcState.RUNNABLE
    assert proc.rax == 0
    assert proc.rip == kernel.current.rip
    assert proc.rsp == kernel.current.rsp


def test_fork_copies_writable_pages(kernel):
    child = kernel.fork()
    parent_data = translate(kernel, 1, DATA_VA)
    child_data = translate(kernel, child, DATA_VA)
    assert child_data.pa() != parent_data.pa()
    assert kernel.memory.read(child_data.pa(), PAGESIZE) == kernel.memory.read(parent_data.pa(), PAGESIZE)
    kernel.memory.write(parent_data.pa(), b"XXXX")
    assert kernel.memory.read(child_data.pa(), len(DATA)) == DATA


def test_fork_shares_read_only_pages(kernel):
    child = kernel.fork()
    parent_code = translate(kernel, 1, CODE_VA).pa()
    assert translate(kernel, child, CODE_VA).pa() == parent_code
    assert kernel.allocator.physpages[parent_code // PAGESIZE].refcount == 2
    assert not translate(kernel, child, CODE_VA).writable()


def test_exit_releases_child_memory(kernel):
    before = used_pages(kernel)
    code_page = translate(kernel, 1, CODE_VA).pa() // PAGESIZE
    child = kernel.fork()
    assert used_pages(kernel) > before
    kernel.run(child)
    assert kernel.syscall(Syscall.EXIT) is None
    assert kernel.ptable[child].state == ProcState.FREE
    assert kernel.current.pid == 1
    assert used_pages(kernel) == before
    assert kernel.allocator.physpages[code_page].refcount == 1


def test_yield_switches_process(kernel):
    child = kernel.fork()
    assert kernel.syscall(Syscall.YIELD) == 0
    assert kernel.current.pid == child
    kernel.syscall(Syscall.YIELD)
    assert kernel.current.pid == 1


def test_fork_fails_when_table_is_full(kernel):
    results = [kernel.fork() for _ in range(PID_MAX)]
    assert results[:PID_MAX - 2] == list(range(2, PID_MAX))
    assert results[-2:] == [-1, -1]
    runnable = [p for p in kernel.ptable if p.state == ProcState.RUNNABLE]
    assert len(runnable) == PID_MAX - 1


def test_fork_out_of_memory_cleans_up(kernel):
    held = []
    while (pa := kernel.allocator.kalloc()) is not None:
        held.append(pa)
    for pa in held[:3]:
        kernel.allocator.kfree(pa)
    before = used_pages(kernel)
    assert kernel.fork() == -1
    assert used_pages(kernel) == before
    assert all(p.state == ProcState.FREE for p in kernel.ptable[2:])


def test_exit_of_last_process_leaves_nothing_runnable(kernel):
    kernel.syscall(Syscall.EXIT)
    assert kernel.ptable[1].state == ProcState.FREE
    assert kernel.schedule() is None


def test_panic_syscall_raises(kernel):
    with pytest.raises(KernelPanic):
        kernel.syscall(Syscall.PANIC, "boom")


def test_unknown_syscall_raises(kernel):
    with pytest.raises(KernelPanic):
        kernel.syscall(99)


def test_run_requires_runnable_process(kernel):
    with pytest.raises(KernelPanic):
        kernel.run(5)


def test_start_requires_images():
    with pytest.raises(ValueError):
        Kernel().start([])


def test_segment_data_must_fit():
    with pytest.raises(ValueError):
        Segment(PROC_START_ADDR, 2, b"abc")


def _elf_bytes(filesz=len(DATA)):
    phoff = ElfHeader.SIZE
    data_off = phoff + 2 * ElfProgram.SIZE
    header = ElfHeader(e_entry=ENTRY, e_phoff=phoff, e_phnum=2)
    load = ElfProgram(
        p_type=ELF_PTYPE_LOAD,
        p_flags=ELF_PFLAG_READ | ELF_PFLAG_WRITE,
        p_offset=data_off,
        p_va=DATA_VA,
        p_filesz=filesz,
        p_memsz=PAGESIZE,
    )
    other = ElfProgram(p_type=ELF_PTYPE_LOAD + 5)
    return header.pack() + load.pack() + other.pack() + DATA


def test_program_image_from_elf():
    image = ProgramImage.from_elf(_elf_bytes())
    assert image.entry == ENTRY
    assert image.segments == (Segment(DATA_VA, PAGESIZE, DATA, True),)


def test_program_image_from_elf_rejects_truncated_data():
    with pytest.raises(ElfError):
        ProgramImage.from_elf(_elf_bytes(filesz=len(DATA) + 100))


def test_start_with_elf_image_loads_data():
    k = Kernel()
    k.start([ProgramImage.from_elf(_elf_bytes())])
    it = translate(k, 1, DATA_VA)
    assert k.memory.read(it.pa(), len(DATA)) == DATA
    assert k.current.rip == ENTRY