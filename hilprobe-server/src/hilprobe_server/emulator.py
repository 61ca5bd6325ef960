"""In-process emulated debug probe.

Provides a probe driver that behaves like a connected target without any
hardware: it accepts images, records the calls made to it and plays back a
scripted sequence of output lines. Useful for running the server locally and
for exercising the orchestrator in tests.

Example YAML configuration:
    driver:
      factory: "hilprobe_server.emulator:create_driver"
      kwargs:
        lines: ["boot", "test ok", "HILPROBE:PASS"]
        line_delay: 0.05
      presence: "hilprobe_server.emulator:probe_present"
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Sequence

from hilprobe_core.errors import InvalidBinaryError, ProbeCommunicationError
from hilprobe_core.types.target import Target

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EmulatorConfig:
    """Behaviour of an emulated probe.

    Args:
        lines: Output lines played back after the program starts.
        line_delay: Seconds between output lines.
        hang: Keep the output stream open after the last line, as a device
            that never terminates would.
        connect_failures: Number of upload attempts that fail with a
            transient communication error before one succeeds.
        reject_images: Reject every image as unusable.
        min_image_size: Images shorter than this are rejected as unusable.
        stall_upload: Never return from an upload, as a wedged adapter would.
        attached: Whether the probe reports as plugged in. A detached probe
            fails every upload.
    """

    lines: tuple[str, ...] = ("HILPROBE:PASS",)
    line_delay: float = 0.0
    hang: bool = False
    connect_failures: int = 0
    reject_images: bool = False
    min_image_size: int = 0
    stall_upload: bool = False
    attached: bool = True

    def __post_init__(self) -> None:
        if self.line_delay < 0:
            raise ValueError("line_delay must be non-negative")
        if self.connect_failures < 0:
            raise ValueError("connect_failures must be non-negative")


# ---------------------------------------------------------------------------
# Emulated probe
# ---------------------------------------------------------------------------


class EmulatedProbe:
    """Probe driver emulating one target.

    Attributes:
        target: The emulated target.
        config: Emulator behaviour.
        calls: Names of driver operations in call order, for inspection.
        image: The last image accepted, or None.
        closed: True once :meth:`close` has been called.
    """

    def __init__(self, target: Target, config: EmulatorConfig | None = None) -> None:
        self.target = target
        self.config = config or EmulatorConfig()
        self.calls: list[str] = []
        self.image: bytes | None = None
        self.closed = False
        self._failures_left = self.config.connect_failures
        self._running = False

    async def flash(self, image: bytes) -> None:
        self.calls.append("flash")
        await self._load(image)

    async def run_from_ram(self, image: bytes) -> None:
        self.calls.append("run_from_ram")
        await self._load(image)
        self._running = True

    async def reset(self, *, halt: bool = False) -> None:
        self.calls.append("reset_halt" if halt else "reset")
        self._running = not halt and self.image is not None

    async def read_output(self) -> AsyncIterator[bytes]:
        """Play back the configured lines, then end or hang."""
        self.calls.append("read_output")
        if not self._running:
            raise ProbeCommunicationError(f"{self.target.name}: target is not running")
        for line in self.config.lines:
            if self.config.line_delay:
                await asyncio.sleep(self.config.line_delay)
            yield (line + "\n").encode("utf-8")
        if self.config.hang:
            await asyncio.Event().wait()

    def close(self) -> None:
        self.calls.append("close")
        self.closed = True

    async def _load(self, image: bytes) -> None:
        if self.config.stall_upload:
            await asyncio.Event().wait()
        if not self.config.attached:
            raise ProbeCommunicationError(
                f"{self.target.name}: probe {self.target.probe_id} not attached"
            )
        if self._failures_left > 0:
            self._failures_left -= 1
            raise ProbeCommunicationError(
                f"{self.target.name}: probe {self.target.probe_id} not responding"
            )
        if self.config.reject_images or len(image) < self.config.min_image_size:
            raise InvalidBinaryError(f"{self.target.name}: image rejected")
        self.image = image
        logger.debug("Emulated probe %s loaded %d bytes", self.target.probe_id, len(image))


def create_driver(
    target: Target,
    lines: Sequence[str] | None = None,
    line_delay: float = 0.0,
    hang: bool = False,
    connect_failures: int = 0,
    reject_images: bool = False,
    min_image_size: int = 0,
    stall_upload: bool = False,
    attached: bool = True,
) -> EmulatedProbe:
    """Create an emulated probe for a target.

    Standard factory entry point, loaded by ``"module:function"`` path from the
    server configuration.

    Args:
        target: Target to emulate.
        lines: Output lines to play back (default: a single pass marker).
        line_delay: Seconds between output lines.
        hang: Keep the stream open after the last line.
        connect_failures: Transient failures before an upload succeeds.
        reject_images: Reject every image.
        min_image_size: Reject images shorter than this many bytes.
        stall_upload: Hang forever inside every upload.
        attached: Report the probe as plugged in.

    Returns:
        The emulated probe.
    """
    config = EmulatorConfig(
        lines=tuple(lines) if lines is not None else EmulatorConfig.lines,
        line_delay=line_delay,
        hang=hang,
        connect_failures=connect_failures,
        reject_images=reject_images,
        min_image_size=min_image_size,
        stall_upload=stall_upload,
        attached=attached,
    )
    return EmulatedProbe(target, config)


def probe_present(target: Target, attached: bool = True, **kwargs: Any) -> bool:
    """Report whether the emulated probe for a target is plugged in.

    Presence check entry point, configured as ``driver.presence``. Receives the
    same keyword arguments as :func:`create_driver`; only ``attached`` matters.
    """
    del target, kwargs
    return attached
