"""Shared fixtures for hilprobe-server unit tests."""

from __future__ import annotations

import struct
from typing import Callable, Iterable

import pytest

from hilprobe_core.types.target import ProbeSpecifier, Target

from hilprobe_server.config import ServerSettings

SHT_PROGBITS = 1
SHT_STRTAB = 3
SHT_NOBITS = 8

# Section flags
WA = 0x1 | 0x2
AX = 0x2 | 0x4
A = 0x2

# (name, address, contents or NOBITS size, flags)
SectionSpec = tuple[str, int, "bytes | int", int]
# (p_type, p_flags, vaddr, memsz)
SegmentSpec = tuple[int, int, int, int]

ElfBuilder = Callable[..., bytes]


def build_elf(
    sections: Iterable[SectionSpec] = (),
    segments: Iterable[SegmentSpec] = (),
    *,
    elf64: bool = False,
    big_endian: bool = False,
    entry: int = 0x2000_0000,
) -> bytes:
    """Assemble a minimal ELF executable.

    Section contents given as an int produce an SHT_NOBITS section of that size.
    A ``.shstrtab`` section is appended whenever any sections are given.
    """
    e = ">" if big_endian else "<"
    if elf64:
        hdr_fmt, sh_fmt, ph_fmt = e + "16sHHIQQQIHHHHHH", e + "IIQQQQIIQQ", e + "IIQQQQQQ"
    else:
        hdr_fmt, sh_fmt, ph_fmt = e + "16sHHIIIIIHHHHHH", e + "10I", e + "8I"
    ehsize, shentsize, phentsize = (struct.calcsize(f) for f in (hdr_fmt, sh_fmt, ph_fmt))

    sections = list(sections)
    segments = list(segments)
    data_start = ehsize + phentsize * len(segments)

    body = bytearray()
    shstrtab = bytearray(b"\x00")
    headers: list[tuple[int, int, int, int, int, int]] = []
    for name, address, contents, flags in sections:
        name_off = len(shstrtab)
        shstrtab += name.encode() + b"\x00"
        if isinstance(contents, int):
            headers.append((name_off, SHT_NOBITS, flags, address, data_start + len(body), contents))
        else:
            headers.append(
                (name_off, SHT_PROGBITS, flags, address, data_start + len(body), len(contents))
            )
            body += contents
    if sections:
        name_off = len(shstrtab)
        shstrtab += b".shstrtab\x00"
        headers.append((name_off, SHT_STRTAB, 0, 0, data_start + len(body), len(shstrtab)))
        body += shstrtab

    shoff = data_start + len(body) if headers else 0
    shnum = len(headers) + 1 if headers else 0
    ident = b"\x7fELF" + bytes((2 if elf64 else 1, 2 if big_endian else 1, 1))
    header = struct.pack(
        hdr_fmt,
        ident.ljust(16, b"\x00"),
        2,  # ET_EXEC
        40,  # EM_ARM
        1,
        entry,
        ehsize if segments else 0,
        shoff,
        0,
        ehsize,
        phentsize,
        len(segments),
        shentsize,
        shnum,
        shnum - 1 if shnum else 0,
    )

    phdrs = bytearray()
    for p_type, p_flags, vaddr, memsz in segments:
        if elf64:
            phdrs += struct.pack(ph_fmt, p_type, p_flags, 0, vaddr, vaddr, 0, memsz, 4)
        else:
            phdrs += struct.pack(ph_fmt, p_type, 0, vaddr, vaddr, 0, memsz, p_flags, 4)

    shdrs = bytearray()
    if headers:
        shdrs += struct.pack(sh_fmt, *([0] * 10))
        for entry_fields in headers:
            shdrs += struct.pack(sh_fmt, *entry_fields, 0, 0, 4, 0)

    return bytes(header + phdrs + body + shdrs)


@pytest.fixture
def elf_builder() -> ElfBuilder:
    """Return the minimal ELF assembler."""
    return build_elf


@pytest.fixture
def ram_image() -> bytes:
    """An image that fits in the RAM of an STM32F429."""
    return build_elf(
        [
            (".text", 0x2000_0000, b"\x00\xbf" * 64, AX),
            (".data", 0x2000_0080, b"\x01" * 32, WA),
            (".bss", 0x2000_00A0, 256, WA),
        ]
    )


@pytest.fixture
def flash_image() -> bytes:
    """An image linked to run from internal flash."""
    return build_elf(
        [
            (".isr_vector", 0x0800_0000, b"\x00" * 64, A),
            (".text", 0x0800_0040, b"\x00\xbf" * 128, AX),
            (".data", 0x2000_0000, b"\x01" * 16, WA),
        ]
    )


@pytest.fixture
def nucleo() -> Target:
    return Target(
        name="nucleo",
        chip="stm32f429zi",
        probe=ProbeSpecifier.parse("0483:374b:0671FF"),
        default_timeout=30,
    )


@pytest.fixture
def discovery() -> Target:
    return Target(
        name="discovery",
        chip="stm32f407vg",
        probe=ProbeSpecifier.parse("0483:3748:066DFF"),
    )


@pytest.fixture
def settings() -> ServerSettings:
    """Fast settings for tests."""
    return ServerSettings(default_timeout=2.0, max_timeout=60.0, probe_retries=3, retry_delay=0.0)
