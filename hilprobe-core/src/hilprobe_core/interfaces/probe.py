"""Probe driver interface.

This module defines the capability surface the orchestrator needs from a debug
probe. Concrete drivers talk to physical adapters and live outside hilprobe;
the server loads them by ``"module:function"`` factory path.

Protocols:
    ProbeDriver: Flash, run, reset and capture output on one target.

Types:
    ProbeDriverFactory: Callable building a driver for a target.
    ProbePresenceCheck: Callable reporting whether a target's probe is attached.
"""

# pylint: disable=unnecessary-ellipsis  # Ellipsis required for Protocol method stubs

from __future__ import annotations

from typing import AsyncIterator, Callable, Protocol


class ProbeDriver(Protocol):
    """Protocol for a driver bound to a single target and probe.

    Drivers raise :class:`~hilprobe_core.errors.ProbeCommunicationError` for
    transient adapter failures (retried by the caller) and
    :class:`~hilprobe_core.errors.InvalidBinaryError` for images they reject
    outright (never retried).

    A driver may also expose ``close()`` (sync or async); it is called once the
    job holding the probe terminates.
    """

    async def flash(self, image: bytes) -> None:
        """Program the image into non-volatile memory.

        The target is left halted; the caller starts it with :meth:`reset`.

        Args:
            image: Raw image bytes.

        Raises:
            ProbeCommunicationError: On transient adapter failure.
            InvalidBinaryError: If the driver rejects the image.
        """
        ...

    async def run_from_ram(self, image: bytes) -> None:
        """Load the image into RAM and start execution from its entry point.

        Args:
            image: Raw image bytes.

        Raises:
            ProbeCommunicationError: On transient adapter failure.
            InvalidBinaryError: If the driver rejects the image.
        """
        ...

    async def reset(self, *, halt: bool = False) -> None:
        """Hardware-reset the target.

        With ``halt=False`` the target starts running its flashed program.

        Args:
            halt: Keep the core halted after reset.

        Raises:
            ProbeCommunicationError: On adapter failure.
        """
        ...

    def read_output(self) -> AsyncIterator[bytes]:
        """Stream device output.

        Yields chunks as the probe delivers them. The iterator ends when the
        device terminates execution.

        Returns:
            Async iterator of raw output chunks.
        """
        ...


ProbeDriverFactory = Callable[..., ProbeDriver]
"""Factory signature: ``factory(target, **kwargs) -> ProbeDriver``."""

ProbePresenceCheck = Callable[..., bool]
"""Presence check signature: ``check(target, **kwargs) -> bool``.

Optional. Receives the same keyword arguments as the driver factory and must
not disturb a job currently using the probe.
"""
