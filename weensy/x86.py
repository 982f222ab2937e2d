"""x86-64 paging constants, address helpers and little-endian conversion."""

from __future__ import annotations

MASK64 = (1 << 64) - 1

# Paged memory constants
PAGEOFFBITS = 12
PAGEINDEXBITS = 9
PAGESIZE = 1 << PAGEOFFBITS
PAGEOFFMASK = PAGESIZE - 1
NENTRIES = 1 << PAGEINDEXBITS

# Permission flags
PTE_P = 0x1
PTE_W = 0x2
PTE_U = 0x4
PTE_PWU = 0x7
PTE_A = 0x20
PTE_D = 0x40
PTE_PS = 0x80
PTE_PWT = 0x8
PTE_PCD = 0x10
PTE_XD = 0x8000000000000000
PTE_OS1 = 0x200
PTE_OS2 = 0x400
PTE_OS3 = 0x800

PTE_PAMASK = 0x000FFFFFFFFFF000
PTE_PS_PAMASK = 0x000FFFFFFFFFE000

VA_LOWMIN = 0
VA_LOWMAX = 0x00007FFFFFFFFFFF
VA_LOWEND = 0x0000800000000000
VA_HIGHMIN = 0xFFFF800000000000
VA_HIGHMAX = 0xFFFFFFFFFFFFFFFF
VA_NONCANONMAX = 0x0000FFFFFFFFFFFF
VA_NONCANONEND = 0x0001000000000000

PA_IOLOWMIN = 0x00000000000A0000
PA_IOLOWEND = 0x0000000000100000
PA_IOHIGHMIN = 0x00000000C0000000
PA_IOHIGHEND = 0x0000000100000000

# Page fault error flags
PFERR_PRESENT = PTE_P
PFERR_WRITE = PTE_W
PFERR_USER = PTE_U

# Interrupt numbers
INT_DE = 0
INT_DB = 1
INT_NM = 2
INT_BP = 3
INT_OF = 4
INT_UD = 6
INT_DF = 8
INT_TS = 10
INT_NP = 11
INT_SS = 12
INT_GP = 13
INT_PF = 14
INT_AC = 17
INT_MC = 18

# CGA console memory-mapped I/O
CONSOLE_ADDR = 0xB8000

# Integer limits
CHAR_MAX = 0x7F
CHAR_MIN = -0x80
UCHAR_MAX = 0xFF
SHORT_MIN = -0x8000
SHORT_MAX = 0x7FFF
USHORT_MAX = 0xFFFF
INT_MIN = -0x80000000
INT_MAX = 0x7FFFFFFF
UINT_MAX = 0xFFFFFFFF
LONG_MIN = -0x8000000000000000
LONG_MAX = 0x7FFFFFFFFFFFFFFF
ULONG_MAX = 0xFFFFFFFFFFFFFFFF
SIZE_MAX = ULONG_MAX
SSIZE_MAX = LONG_MAX

_LE_SIZES = (1, 2, 4, 8)


def pageindex(addr: int, level: int) -> int:
    """Return the page-table index of `addr` at page-table `level` (0-3)."""
    return (addr >> (PAGEOFFBITS + level * PAGEINDEXBITS)) & 0x1FF


def pageoffmask(level: int) -> int:
    """Return the mask of offset bits for a mapping at `level`."""
    bits = PAGEOFFBITS + level * PAGEINDEXBITS
    return ((1 << bits) - 1) & MASK64


def pageoffset(addr: int, level: int) -> int:
    """Return the offset of `addr` within its mapping at `level`."""
    return addr & pageoffmask(level)


def va_is_canonical(va: int) -> bool:
    """Return true iff `va` is a canonical x86-64 virtual address."""
    return va <= VA_LOWMAX or va >= VA_HIGHMIN


def to_le(value: int, size: int) -> bytes:
    """Encode unsigned `value` as `size` little-endian bytes (1, 2, 4 or 8)."""
    if size not in _LE_SIZES:
        raise ValueError(f"unsupported integer size {size}")
    if not 0 <= value < 1 << (8 * size):
        raise ValueError(f"value {value:#x} does not fit in {size} bytes")
    return value.to_bytes(size, "little")


def from_le(data: bytes) -> int:
    """Decode a 1, 2, 4 or 8 byte little-endian unsigned integer."""
    if len(data) not in _LE_SIZES:
        raise ValueError(f"unsupported integer size {len(data)}")
    return int.from_bytes(data, "little")