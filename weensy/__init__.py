"""Simulated teaching kernel: page tables, page allocation and processes."""

__version__ = "0.1.0"

__all__ = [
    "arith",
    "elf",
    "kalloc",
    "kernel",
    "libc",
    "memory",
    "ptiter",
    "vmiter",
    "x86",
]