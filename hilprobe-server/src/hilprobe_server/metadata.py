"""Embedded binary metadata extraction.

A test binary can carry its own default target name and execution timeout, so
that callers do not need to pass them on every run. Two encodings are
recognised, in this order:

1. A marked block anywhere in the image (little-endian)::

       offset  size  field
       0       8     magic b"HILPMETA"
       8       1     version (1)
       9       1     name length n (0: no target)
       10      n     target name, UTF-8
       10+n    4     timeout seconds, u32 (0: no timeout)

2. For ELF images, the sections ``.hilprobe.target`` (raw name bytes) and
   ``.hilprobe.timeout`` (exactly 4 bytes, u32).

Extraction never raises. Anything missing, truncated or malformed is reported
as absent, and the caller falls back to request-level or configured defaults.

Example:
    >>> block = build_metadata_block(target_name="nucleo", timeout_seconds=5)
    >>> extract(b"\\x00" * 16 + block)
    BinaryMetadata(target_name='nucleo', timeout_seconds=5)
"""

from __future__ import annotations

import logging
import struct

from hilprobe_core.errors import InvalidBinaryError
from hilprobe_core.types.job import BinaryMetadata

from hilprobe_server.image import is_elf, parse_elf

logger = logging.getLogger(__name__)

MAGIC = b"HILPMETA"
VERSION = 1
TARGET_SECTION = ".hilprobe.target"
TIMEOUT_SECTION = ".hilprobe.timeout"

_HEADER_SIZE = 2  # version, name length
_TIMEOUT_FORMAT = "<I"
_TIMEOUT_SIZE = struct.calcsize(_TIMEOUT_FORMAT)


def extract(image: bytes) -> BinaryMetadata:
    """Recover default target name and timeout from an image.

    Args:
        image: Raw binary image.

    Returns:
        The recovered metadata; fields that cannot be recovered are None.
    """
    meta = _scan_blocks(image)
    if meta is None:
        meta = _from_elf_sections(image)
    if not meta.is_empty:
        logger.debug(
            "Embedded metadata: target=%s timeout=%s", meta.target_name, meta.timeout_seconds
        )
    return meta


def build_metadata_block(
    target_name: str | None = None, timeout_seconds: int | None = None
) -> bytes:
    """Encode a metadata block.

    Args:
        target_name: Default target name, or None.
        timeout_seconds: Default timeout in seconds, or None.

    Returns:
        The encoded block, ready to be embedded in an image.

    Raises:
        ValueError: If the name is longer than 255 bytes or the timeout is out of range.
    """
    name = (target_name or "").encode("utf-8")
    if len(name) > 0xFF:
        raise ValueError(f"target name too long: {len(name)} bytes (max 255)")
    timeout = timeout_seconds or 0
    if not 0 <= timeout <= 0xFFFF_FFFF:
        raise ValueError(f"timeout out of range: {timeout}")
    return MAGIC + bytes((VERSION, len(name))) + name + struct.pack(_TIMEOUT_FORMAT, timeout)


def _scan_blocks(image: bytes) -> BinaryMetadata | None:
    pos = image.find(MAGIC)
    while pos != -1:
        meta = _parse_block(image, pos + len(MAGIC))
        if meta is not None:
            return meta
        pos = image.find(MAGIC, pos + 1)
    return None


def _parse_block(image: bytes, offset: int) -> BinaryMetadata | None:
    name_start = offset + _HEADER_SIZE
    if name_start > len(image):
        return None
    version, name_len = image[offset], image[offset + 1]
    if version != VERSION:
        logger.debug("Ignoring metadata block with unknown version %d", version)
        return None
    name_end = name_start + name_len
    if name_end + _TIMEOUT_SIZE > len(image):
        logger.debug("Ignoring truncated metadata block at offset %d", offset)
        return None
    (timeout,) = struct.unpack_from(_TIMEOUT_FORMAT, image, name_end)
    return BinaryMetadata(
        target_name=_decode_name(image[name_start:name_end]),
        timeout_seconds=timeout or None,
    )


def _from_elf_sections(image: bytes) -> BinaryMetadata:
    if not is_elf(image):
        return BinaryMetadata()
    try:
        elf = parse_elf(image)
        target = elf.section(TARGET_SECTION)
        timeout_section = elf.section(TIMEOUT_SECTION)
        name_bytes = elf.section_data(target) if target is not None else b""
        timeout_bytes = elf.section_data(timeout_section) if timeout_section is not None else b""
    except InvalidBinaryError as exc:
        logger.debug("No ELF metadata sections: %s", exc)
        return BinaryMetadata()

    timeout: int | None = None
    if len(timeout_bytes) == _TIMEOUT_SIZE:
        (timeout,) = struct.unpack(_TIMEOUT_FORMAT, timeout_bytes)
    elif timeout_section is not None:
        logger.warning("%s is not a valid u32, ignoring", TIMEOUT_SECTION)

    return BinaryMetadata(
        target_name=_decode_name(name_bytes.rstrip(b"\x00")),
        timeout_seconds=timeout or None,
    )


def _decode_name(raw: bytes) -> str | None:
    if not raw:
        return None
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        logger.warning("Embedded target name is not valid UTF-8, ignoring")
        return None
