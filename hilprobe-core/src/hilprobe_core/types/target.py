"""Target and probe identification types.

Classes:
    ProbeSpecifier: Parsed debug probe selector (VID/PID and/or serial).
    Target: Logical target name bound to a chip and a probe.

Example:
    >>> spec = ProbeSpecifier.parse("0483:374b:0671FF")
    >>> spec.probe_id
    '0483:374b:0671FF'
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ProbeSpecifier:
    """Selector for a physical debug probe.

    Accepted textual forms are ``SERIAL``, ``VID:PID`` and ``VID:PID:SERIAL``
    with VID and PID in hexadecimal.

    Attributes:
        vid: USB vendor ID, if given.
        pid: USB product ID, if given.
        serial: Probe serial number, if given.
    """

    vid: int | None = None
    pid: int | None = None
    serial: str | None = None

    def __post_init__(self) -> None:
        if (self.vid is None) != (self.pid is None):
            raise ValueError("vid and pid must be given together")
        if self.vid is None and not self.serial:
            raise ValueError("probe specifier needs a serial or a vid:pid pair")
        for name, value in (("vid", self.vid), ("pid", self.pid)):
            if value is not None and not 0 <= value <= 0xFFFF:
                raise ValueError(f"{name} out of range: {value:#x}")

    @classmethod
    def parse(cls, text: str) -> ProbeSpecifier:
        """Parse a probe specifier string.

        Args:
            text: ``SERIAL``, ``VID:PID`` or ``VID:PID:SERIAL``.

        Returns:
            Parsed specifier.

        Raises:
            ValueError: If the string has the wrong shape or bad hex fields.
        """
        parts = text.strip().split(":")
        try:
            if len(parts) == 1 and parts[0]:
                return cls(serial=parts[0])
            if len(parts) == 2:
                return cls(vid=int(parts[0], 16), pid=int(parts[1], 16))
            if len(parts) == 3 and parts[2]:
                return cls(vid=int(parts[0], 16), pid=int(parts[1], 16), serial=parts[2])
        except ValueError as exc:
            raise ValueError(f"Invalid probe specifier {text!r}: {exc}") from exc
        raise ValueError(f"Invalid probe specifier {text!r}")

    @property
    def probe_id(self) -> str:
        """Canonical string form, used as the probe lock key."""
        if self.vid is None or self.pid is None:
            return str(self.serial)
        vid_pid = f"{self.vid:04x}:{self.pid:04x}"
        return f"{vid_pid}:{self.serial}" if self.serial else vid_pid

    def __str__(self) -> str:
        return self.probe_id


@dataclass(frozen=True)
class Target:
    """A logical target name mapped to a chip type and probe.

    Attributes:
        name: Unique logical name (e.g., "nucleo").
        chip: Chip name understood by the probe driver (e.g., "stm32f429zi").
        probe: Probe selector for the debug adapter wired to this chip.
        default_timeout: Per-target execution timeout in seconds, if configured.
        connect_under_reset: Ask the driver to attach while NRST is asserted.
        speed_khz: Probe clock frequency override, in kHz.
        power_reset: Ask the driver to power-cycle the probe before attaching.
    """

    name: str
    chip: str
    probe: ProbeSpecifier
    default_timeout: float | None = None
    connect_under_reset: bool = False
    speed_khz: int | None = None
    power_reset: bool = False

    @property
    def probe_id(self) -> str:
        """Return the canonical probe identifier."""
        return self.probe.probe_id
