"""Structures and constants for 64-bit little-endian ELF executables."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import ClassVar

ELF_MAGIC = 0x464C457F  # "\x7FELF" read as a little-endian word

ELF_ET_EXEC = 2

ELF_PTYPE_LOAD = 1

ELF_PFLAG_EXEC = 1
ELF_PFLAG_WRITE = 2
ELF_PFLAG_READ = 4

ELF_SHT_NULL = 0
ELF_SHT_PROGBITS = 1
ELF_SHT_SYMTAB = 2
ELF_SHT_STRTAB = 3
ELF_SHT_NOBITS = 8

ELF_SHF_ALLOC = 2

ELF_STN_UNDEF = 0

ELF_SHN_UNDEF = 0
ELF_SHN_ABS = 0xFFF1
ELF_SHN_COMMON = 0xFFF2

ELF_STB_MASK = 0xF0
ELF_STB_LOCAL = 0x00
ELF_STB_GLOBAL = 0x10
ELF_STB_WEAK = 0x20
ELF_STT_MASK = 0x0F
ELF_STT_OBJECT = 0x01
ELF_STT_FUNC = 0x02


class ElfError(ValueError):
    """Raised for malformed ELF data."""


def _unpack(fmt: struct.Struct, data: bytes, offset: int, what: str) -> tuple:
    if offset < 0 or offset + fmt.size > len(data):
        raise ElfError(f"{what} at offset {offset:#x} runs past end of data")
    return fmt.unpack_from(data, offset)


def _pack(fmt: struct.Struct, what: str, *values) -> bytes:
    try:
        return fmt.pack(*values)
    except struct.error as exc:
        raise ElfError(f"cannot encode {what}: {exc}") from exc


@dataclass
class ElfHeader:
    """The ELF executable header."""

    e_magic: int = ELF_MAGIC
    e_elf: bytes = field(default=bytes(12))
    e_type: int = ELF_ET_EXEC
    e_machine: int = 0
    e_version: int = 0
    e_entry: int = 0
    e_phoff: int = 0
    e_shoff: int = 0
    e_flags: int = 0
    e_ehsize: int = 64
    e_phentsize: int = 56
    e_phnum: int = 0
    e_shentsize: int = 64
    e_shnum: int = 0
    e_shstrndx: int = 0

    _STRUCT: ClassVar[struct.Struct] = struct.Struct("<I12sHHIQQQIHHHHHH")
    SIZE: ClassVar[int] = _STRUCT.size

    @classmethod
    def unpack(cls, data: bytes) -> "ElfHeader":
        """Parse the header at the start of `data`; check the magic number."""
        header = cls(*_unpack(cls._STRUCT, data, 0, "ELF header"))
        if header.e_magic != ELF_MAGIC:
            raise ElfError(f"bad ELF magic {header.e_magic:#x}")
        return header

    def pack(self) -> bytes:
        if len(self.e_elf) != 12:
            raise ElfError("e_elf must be exactly 12 bytes")
        return _pack(
            self._STRUCT, "ELF header",
            self.e_magic, bytes(self.e_elf), self.e_type, self.e_machine,
            self.e_version, self.e_entry, self.e_phoff, self.e_shoff,
            self.e_flags, self.e_ehsize, self.e_phentsize, self.e_phnum,
            self.e_shentsize, self.e_shnum, self.e_shstrndx,
        )


@dataclass
class ElfProgram:
    """A program header, describing a segment for the loader."""

    p_type: int = ELF_PTYPE_LOAD
    p_flags: int = 0
    p_offset: int = 0
    p_va: int = 0
    p_pa: int = 0
    p_filesz: int = 0
    p_memsz: int = 0
    p_align: int = 0

    _STRUCT: ClassVar[struct.Struct] = struct.Struct("<IIQQQQQQ")
    SIZE: ClassVar[int] = _STRUCT.size

    @classmethod
    def unpack(cls, data: bytes, offset: int = 0) -> "ElfProgram":
        return cls(*_unpack(cls._STRUCT, data, offset, "program header"))

    def pack(self) -> bytes:
        return _pack(
            self._STRUCT, "program header",
            self.p_type, self.p_flags, self.p_offset, self.p_va,
            self.p_pa, self.p_filesz, self.p_memsz, self.p_align,
        )

    def is_load(self) -> bool:
        """Return true iff this segment is loadable."""
        return self.p_type == ELF_PTYPE_LOAD

    def writable(self) -> bool:
        """Return true iff this segment is writable."""
        return bool(self.p_flags & ELF_PFLAG_WRITE)


@dataclass
class ElfSection:
    """A section header."""

    sh_name: int = 0
    sh_type: int = ELF_SHT_NULL
    sh_flags: int = 0
    sh_addr: int = 0
    sh_offset: int = 0
    sh_size: int = 0
    sh_link: int = 0
    sh_info: int = 0
    sh_addralign: int = 0
    sh_entsize: int = 0

    _STRUCT: ClassVar[struct.Struct] = struct.Struct("<IIQQQQIIQQ")
    SIZE: ClassVar[int] = _STRUCT.size

    @classmethod
    def unpack(cls, data: bytes, offset: int = 0) -> "ElfSection":
        return cls(*_unpack(cls._STRUCT, data, offset, "section header"))

    def pack(self) -> bytes:
        return _pack(
            self._STRUCT, "section header",
            self.sh_name, self.sh_type, self.sh_flags, self.sh_addr,
            self.sh_offset, self.sh_size, self.sh_link, self.sh_info,
            self.sh_addralign, self.sh_entsize,
        )


@dataclass
class ElfSymbol:
    """A symbol table entry."""

    st_name: int = ELF_STN_UNDEF
    st_info: int = 0
    st_other: int = 0
    st_shndx: int = ELF_SHN_UNDEF
    st_value: int = 0
    st_size: int = 0

    _STRUCT: ClassVar[struct.Struct] = struct.Struct("<IBBHQQ")
    SIZE: ClassVar[int] = _STRUCT.size

    @classmethod
    def unpack(cls, data: bytes, offset: int = 0) -> "ElfSymbol":
        return cls(*_unpack(cls._STRUCT, data, offset, "symbol"))

    def pack(self) -> bytes:
        return _pack(
            self._STRUCT, "symbol",
            self.st_name, self.st_info, self.st_other, self.st_shndx,
            self.st_value, self.st_size,
        )

    def binding(self) -> int:
        """Return the binding bits (ELF_STB_*) of `st_info`."""
        return self.st_info & ELF_STB_MASK

    def kind(self) -> int:
        """Return the type bits (ELF_STT_*) of `st_info`."""
        return self.st_info & ELF_STT_MASK


def program_headers(data: bytes) -> list[ElfProgram]:
    """Parse the header of `data` and return all of its program headers."""
    header = ElfHeader.unpack(data)
    if header.e_phnum and header.e_phentsize != ElfProgram.SIZE:
        raise ElfError(
            f"program header size {header.e_phentsize} != {ElfProgram.SIZE}"
        )
    return [
        ElfProgram.unpack(data, header.e_phoff + i * ElfProgram.SIZE)
        for i in range(header.e_phnum)
    ]