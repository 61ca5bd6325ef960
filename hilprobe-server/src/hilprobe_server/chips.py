"""Chip memory-map catalogue.

Run-mode selection needs to know where a chip's RAM lives and how large it is.
This module ships a small built-in catalogue of common debug targets and lets
the server configuration add or override entries.

Example YAML configuration:
    chips:
      - name: stm32h743zi
        ram: {start: 0x24000000, size: 0x80000}
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator


@dataclass(frozen=True)
class ChipSpec:
    """RAM map of a chip.

    Only the contiguous RAM region that a debugger can load and execute code
    from is described.

    Attributes:
        name: Chip name as used in target configuration (case-insensitive).
        ram_start: First RAM address.
        ram_size: RAM size in bytes.
    """

    name: str
    ram_start: int
    ram_size: int

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("chip name must be non-empty")
        if self.ram_start < 0:
            raise ValueError(f"chip '{self.name}': ram start must be non-negative")
        if self.ram_size <= 0:
            raise ValueError(f"chip '{self.name}': ram size must be positive")

    @property
    def ram_end(self) -> int:
        """Address one past the last RAM byte."""
        return self.ram_start + self.ram_size

    def contains(self, start: int, size: int) -> bool:
        """Check whether ``[start, start + size)`` lies inside RAM."""
        return self.ram_start <= start and start + size <= self.ram_end


BUILTIN_CHIPS: tuple[ChipSpec, ...] = (
    ChipSpec("stm32f103c8", 0x2000_0000, 0x5000),
    ChipSpec("stm32f407vg", 0x2000_0000, 0x2_0000),
    ChipSpec("stm32f429zi", 0x2000_0000, 0x3_0000),
    ChipSpec("stm32g474re", 0x2000_0000, 0x2_0000),
    ChipSpec("stm32h743zi", 0x2400_0000, 0x8_0000),
    ChipSpec("stm32l073rz", 0x2000_0000, 0x5000),
    ChipSpec("nrf52832_xxaa", 0x2000_0000, 0x1_0000),
    ChipSpec("nrf52840_xxaa", 0x2000_0000, 0x4_0000),
    ChipSpec("rp2040", 0x2000_0000, 0x4_2000),
)


class ChipCatalogue:
    """Case-insensitive lookup of chip RAM maps.

    Args:
        chips: Extra entries. Later entries override built-in ones of the same name.
        include_builtin: Seed the catalogue with :data:`BUILTIN_CHIPS`.
    """

    def __init__(self, chips: Iterable[ChipSpec] = (), *, include_builtin: bool = True) -> None:
        self._chips: dict[str, ChipSpec] = {}
        if include_builtin:
            for chip in BUILTIN_CHIPS:
                self._chips[chip.name.lower()] = chip
        for chip in chips:
            self._chips[chip.name.lower()] = chip

    def get(self, name: str) -> ChipSpec | None:
        """Return the RAM map for ``name``, or None if the chip is unknown."""
        return self._chips.get(name.lower())

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._chips

    def __iter__(self) -> Iterator[ChipSpec]:
        return iter(self._chips.values())

    def __len__(self) -> int:
        return len(self._chips)
