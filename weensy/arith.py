"""Integer helpers shared by the kernel and processes: bit scans, rounding
and system-call error codes."""

from __future__ import annotations

from .x86 import MASK64

# System call error return values
E_AGAIN = -11
E_NOMEM = -12
E_INVAL = -22
E_RANGE = -34
E_MINERROR = -100

# Maximum number of processes
PID_MAX = 16


def _require_unsigned(x: int) -> None:
    if x < 0:
        raise ValueError(f"expected an unsigned value, got {x}")


def msb(x: int) -> int:
    """Return the index of the most significant one bit in `x`, plus one.

    Returns 0 for 0. Negative values are read as 64-bit two's complement.
    """
    return (x & MASK64 if x < 0 else x).bit_length()


def lsb(x: int) -> int:
    """Return the index of the least significant one bit in `x`, plus one.

    Returns 0 for 0.
    """
    return (x & -x).bit_length()


def round_down(x: int, m: int) -> int:
    """Round unsigned `x` down to the nearest multiple of `m`."""
    _require_unsigned(x)
    if m <= 0:
        raise ValueError(f"rounding multiple must be positive, got {m}")
    return x - x % m


def round_up(x: int, m: int) -> int:
    """Round unsigned `x` up to the nearest multiple of `m`."""
    _require_unsigned(x)
    if m <= 0:
        raise ValueError(f"rounding multiple must be positive, got {m}")
    return round_down(x + m - 1, m)


def round_down_pow2(x: int) -> int:
    """Return the largest power of 2 not above unsigned `x` (0 for 0)."""
    _require_unsigned(x)
    return 1 << (msb(x) - 1) if x else 0


def round_up_pow2(x: int) -> int:
    """Return the smallest power of 2 not below unsigned `x` (0 for 0)."""
    _require_unsigned(x)
    return 1 << msb(x - 1) if x else 0


def is_error(r: int) -> bool:
    """Return true iff system-call result `r` encodes an error code."""
    return (r & MASK64) >= (E_MINERROR & MASK64)