import pytest

from weensy.arith import PID_MAX
from weensy.kalloc import KALLOC_FILL, PageAllocator, PhysPage
from weensy.memory import KERNEL_START_ADDR, MEMSIZE_PHYSICAL, PhysicalMemory
from weensy.x86 import CONSOLE_ADDR, PAGESIZE


@pytest.fixture
def alloc():
    return PageAllocator(PhysicalMemory())


def test_physpage_used_and_valid():
    page = PhysPage()
    assert not page.used()
    assert page.valid()
    page.refcount = 1
    assert page.used()
    page.refcount = PID_MAX + 1
    assert not page.valid()


def test_allocatable_addresses(alloc):
    assert not alloc.allocatable_physical_address(0)
    assert not alloc.allocatable_physical_address(CONSOLE_ADDR)
    assert not alloc.allocatable_physical_address(KERNEL_START_ADDR)
    assert not alloc.allocatable_physical_address(MEMSIZE_PHYSICAL)
    assert alloc.allocatable_physical_address(PAGESIZE)
    assert alloc.allocatable_physical_address(MEMSIZE_PHYSICAL - PAGESIZE)


def test_first_allocation_skips_null_page(alloc):
    assert alloc.kalloc(PAGESIZE) == 3 * PAGESIZE


def test_kalloc_fills_with_int3(alloc):
    pa = alloc.kalloc(16)
    assert alloc.memory.read(pa, PAGESIZE) == bytes([KALLOC_FILL]) * PAGESIZE
    assert alloc.physpages[pa // PAGESIZE].refcount == 1


def test_kalloc_too_large(alloc):
    assert alloc.kalloc(PAGESIZE + 1) is None


def test_allocations_are_not_adjacent(alloc):
    a = alloc.kalloc()
    b = alloc.kalloc()
    assert a != b
    assert abs(a - b) != PAGESIZE


def test_exhaustion_hands_out_every_allocatable_page(alloc):
    pages = []
    while (pa := alloc.kalloc()) is not None:
        pages.append(pa)
    expected = sum(
        alloc.allocatable_physical_address(n * PAGESIZE)
        for n in range(alloc.npages)
    )
    assert len(pages) == expected
    assert len(set(pages)) == len(pages)
    assert all(pa % PAGESIZE == 0 for pa in pages)
    assert all(alloc.allocatable_physical_address(pa) for pa in pages)


def test_kfree_releases_and_zeroes(alloc):
    pa = alloc.kalloc()
    alloc.kfree(pa)
    assert alloc.physpages[pa // PAGESIZE].refcount == 0
    assert alloc.memory.read(pa, PAGESIZE) == bytes(PAGESIZE)
    assert alloc.kalloc() == pa


def test_kfree_none_and_double_free(alloc):
    pa = alloc.kalloc()
    alloc.kfree(None)
    assert alloc.physpages[pa // PAGESIZE].refcount == 1
    alloc.kfree(pa)
    alloc.kfree(pa)
    assert alloc.physpages[pa // PAGESIZE].refcount == 0


def test_kfree_shared_page_is_kept(alloc):
    pa = alloc.kalloc()
    alloc.physpages[pa // PAGESIZE].refcount = 2
    alloc.kfree(pa)
    assert alloc.physpages[pa // PAGESIZE].refcount == 2
    assert alloc.memory.read(pa, 1) == bytes([KALLOC_FILL])


def test_kfree_unaligned_raises(alloc):
    with pytest.raises(ValueError):
        alloc.kfree(PAGESIZE + 8)


def test_kalloc_pagetable_is_zeroed(alloc):
    pt = alloc.kalloc_pagetable()
    assert pt % PAGESIZE == 0
    assert alloc.memory.read(pt, PAGESIZE) == bytes(PAGESIZE)
    assert alloc.physpages[pt // PAGESIZE].used()


def test_kalloc_pagetable_when_full(alloc):
    while alloc.kalloc() is not None:
        pass
    assert alloc.kalloc_pagetable() is None


def test_bad_increment():
    with pytest.raises(ValueError):
        PageAllocator(PhysicalMemory(), page_increment=0)