"""ELF image inspection.

This module parses just enough of an ELF file to answer two questions: which
memory ranges the program occupies at runtime, and what a named section
contains. Both 32-bit and 64-bit, little- and big-endian files are accepted.

Header layouts (``e`` is the endian prefix):

    ELF32 file header    e16sHHIIIIIHHHHHH   52 bytes
    ELF64 file header    e16sHHIQQQIHHHHHH   64 bytes
    ELF32 section header e10I                40 bytes
    ELF64 section header eIIQQQQIIQQ         64 bytes
    ELF32 program header e8I                 32 bytes
    ELF64 program header eIIQQQQQQ           56 bytes
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field

from hilprobe_core.errors import InvalidBinaryError

ELF_MAGIC = b"\x7fELF"

ELFCLASS32 = 1
ELFCLASS64 = 2
ELFDATA2LSB = 1
ELFDATA2MSB = 2

SHT_NOBITS = 8
SHF_WRITE = 0x1
SHF_ALLOC = 0x2
SHF_EXECINSTR = 0x4

PT_LOAD = 1
PF_X = 0x1
PF_W = 0x2
PF_R = 0x4

_FORMATS = {
    ELFCLASS32: ("16sHHIIIIIHHHHHH", "10I", "8I"),
    ELFCLASS64: ("16sHHIQQQIHHHHHH", "IIQQQQIIQQ", "IIQQQQQQ"),
}


@dataclass(frozen=True)
class Section:
    """An ELF section header.

    Attributes:
        name: Section name from the section header string table.
        sh_type: Section type (SHT_*).
        flags: Section flags (SHF_*).
        address: Runtime (virtual) address.
        offset: File offset of the contents.
        size: Size in bytes.
    """

    name: str
    sh_type: int
    flags: int
    address: int
    offset: int
    size: int

    @property
    def is_alloc(self) -> bool:
        return bool(self.flags & SHF_ALLOC)

    @property
    def is_writable(self) -> bool:
        return bool(self.flags & SHF_WRITE)

    @property
    def is_executable(self) -> bool:
        return bool(self.flags & SHF_EXECINSTR)


@dataclass(frozen=True)
class Segment:
    """An ELF program header.

    Attributes:
        p_type: Segment type (PT_*).
        flags: Segment flags (PF_*).
        vaddr: Runtime (virtual) address.
        paddr: Load (physical) address.
        offset: File offset of the contents.
        filesz: Bytes present in the file.
        memsz: Bytes occupied in memory.
    """

    p_type: int
    flags: int
    vaddr: int
    paddr: int
    offset: int
    filesz: int
    memsz: int


@dataclass(frozen=True)
class MemoryRegion:
    """A contiguous runtime memory range.

    Attributes:
        name: Section name, or ``"segment[i]"`` when derived from program headers.
        start: First address.
        size: Size in bytes.
    """

    name: str
    start: int
    size: int

    @property
    def end(self) -> int:
        return self.start + self.size


@dataclass(frozen=True)
class ElfImage:
    """A parsed ELF file.

    Attributes:
        data: Raw file contents.
        elf_class: ELFCLASS32 or ELFCLASS64.
        entry: Entry point address.
        sections: Section headers in file order.
        segments: Program headers in file order.
    """

    data: bytes = field(repr=False)
    elf_class: int
    entry: int
    sections: tuple[Section, ...]
    segments: tuple[Segment, ...]

    def section(self, name: str) -> Section | None:
        """Return the first section called ``name``, or None."""
        for section in self.sections:
            if section.name == name:
                return section
        return None

    def section_data(self, section: Section) -> bytes:
        """Return the file contents of a section.

        Args:
            section: A section of this image.

        Returns:
            The section bytes; empty for SHT_NOBITS sections.

        Raises:
            InvalidBinaryError: If the section extends past the end of the file.
        """
        if section.sh_type == SHT_NOBITS:
            return b""
        end = section.offset + section.size
        if end > len(self.data):
            raise InvalidBinaryError(f"section '{section.name}' extends past end of file")
        return self.data[section.offset : end]

    def footprint(self) -> tuple[MemoryRegion, ...]:
        """Return the memory the program writes to or executes from at runtime.

        Uses allocated sections flagged writable or executable. Falls back to
        PT_LOAD segments flagged writable or executable when the file has no
        section headers. Empty ranges are skipped.
        """
        if self.sections:
            return tuple(
                MemoryRegion(s.name, s.address, s.size)
                for s in self.sections
                if s.is_alloc and (s.is_writable or s.is_executable) and s.size > 0
            )
        return tuple(
            MemoryRegion(f"segment[{i}]", seg.vaddr, seg.memsz)
            for i, seg in enumerate(self.segments)
            if seg.p_type == PT_LOAD and seg.flags & (PF_W | PF_X) and seg.memsz > 0
        )


def is_elf(data: bytes) -> bool:
    """Return True if ``data`` starts with the ELF magic."""
    return data[:4] == ELF_MAGIC


def parse_elf(data: bytes) -> ElfImage:
    """Parse the headers of an ELF file.

    Args:
        data: Raw file contents.

    Returns:
        The parsed image.

    Raises:
        InvalidBinaryError: If the data is not a well-formed ELF file.
    """
    if len(data) < 16 or not is_elf(data):
        raise InvalidBinaryError("image is not an ELF file")

    elf_class, elf_data = data[4], data[5]
    if elf_class not in _FORMATS:
        raise InvalidBinaryError(f"unsupported ELF class {elf_class}")
    if elf_data not in (ELFDATA2LSB, ELFDATA2MSB):
        raise InvalidBinaryError(f"unsupported ELF data encoding {elf_data}")

    endian = "<" if elf_data == ELFDATA2LSB else ">"
    hdr_fmt, sh_fmt, ph_fmt = (endian + f for f in _FORMATS[elf_class])

    try:
        (
            _ident,
            _e_type,
            _e_machine,
            _e_version,
            e_entry,
            e_phoff,
            e_shoff,
            _e_flags,
            _e_ehsize,
            e_phentsize,
            e_phnum,
            e_shentsize,
            e_shnum,
            e_shstrndx,
        ) = struct.unpack_from(hdr_fmt, data, 0)
    except struct.error as exc:
        raise InvalidBinaryError(f"truncated ELF header: {exc}") from exc

    segments = _parse_segments(data, elf_class, ph_fmt, e_phoff, e_phentsize, e_phnum)
    raw_sections = _parse_section_headers(data, sh_fmt, e_shoff, e_shentsize, e_shnum)
    sections = _name_sections(data, raw_sections, e_shstrndx)

    return ElfImage(
        data=data,
        elf_class=elf_class,
        entry=e_entry,
        sections=sections,
        segments=segments,
    )


def _check_table(
    data: bytes, what: str, offset: int, entsize: int, count: int, minsize: int
) -> None:
    if count == 0:
        return
    if entsize < minsize:
        raise InvalidBinaryError(f"{what} entry size {entsize} too small")
    if offset + entsize * count > len(data):
        raise InvalidBinaryError(f"{what} table extends past end of file")


def _parse_segments(
    data: bytes, elf_class: int, fmt: str, offset: int, entsize: int, count: int
) -> tuple[Segment, ...]:
    _check_table(data, "program header", offset, entsize, count, struct.calcsize(fmt))
    segments: list[Segment] = []
    for i in range(count):
        fields = struct.unpack_from(fmt, data, offset + i * entsize)
        if elf_class == ELFCLASS32:
            p_type, p_offset, vaddr, paddr, filesz, memsz, flags, _align = fields
        else:
            p_type, flags, p_offset, vaddr, paddr, filesz, memsz, _align = fields
        segments.append(Segment(p_type, flags, vaddr, paddr, p_offset, filesz, memsz))
    return tuple(segments)


def _parse_section_headers(
    data: bytes, fmt: str, offset: int, entsize: int, count: int
) -> list[tuple[int, ...]]:
    _check_table(data, "section header", offset, entsize, count, struct.calcsize(fmt))
    return [struct.unpack_from(fmt, data, offset + i * entsize) for i in range(count)]


def _name_sections(
    data: bytes, raw: list[tuple[int, ...]], shstrndx: int
) -> tuple[Section, ...]:
    strtab = b""
    if 0 < shstrndx < len(raw):
        _, str_type, _, _, str_off, str_size, *_ = raw[shstrndx]
        if str_type != SHT_NOBITS and str_off + str_size <= len(data):
            strtab = data[str_off : str_off + str_size]

    sections: list[Section] = []
    for name_off, sh_type, flags, addr, sh_offset, size, *_ in raw:
        sections.append(
            Section(
                name=_string_at(strtab, name_off),
                sh_type=sh_type,
                flags=flags,
                address=addr,
                offset=sh_offset,
                size=size,
            )
        )
    return tuple(sections)


def _string_at(table: bytes, offset: int) -> str:
    if offset >= len(table):
        return ""
    end = table.find(b"\x00", offset)
    if end == -1:
        end = len(table)
    return table[offset:end].decode("ascii", errors="replace")
