"""Unit tests for the emulated probe driver."""

from __future__ import annotations

import asyncio

import pytest

from hilprobe_core.errors import InvalidBinaryError, ProbeCommunicationError
from hilprobe_core.interfaces.probe import ProbeDriver
from hilprobe_core.types.target import Target

from hilprobe_server.emulator import EmulatedProbe, EmulatorConfig, create_driver, probe_present


async def _read_all(probe: EmulatedProbe) -> list[bytes]:
    return [chunk async for chunk in probe.read_output()]


class TestEmulatorConfig:
    def test_defaults(self) -> None:
        config = EmulatorConfig()
        assert config.lines == ("HILPROBE:PASS",)
        assert not config.hang

    def test_negative_delay(self) -> None:
        with pytest.raises(ValueError, match="line_delay"):
            EmulatorConfig(line_delay=-1)

    def test_negative_failures(self) -> None:
        with pytest.raises(ValueError, match="connect_failures"):
            EmulatorConfig(connect_failures=-1)


class TestEmulatedProbe:
    def test_satisfies_protocol(self, nucleo: Target) -> None:
        probe: ProbeDriver = create_driver(nucleo)
        assert isinstance(probe, EmulatedProbe)

    @pytest.mark.asyncio
    async def test_run_from_ram_plays_lines(self, nucleo: Target) -> None:
        probe = create_driver(nucleo, lines=["boot", "HILPROBE:PASS"])
        await probe.run_from_ram(b"image")
        assert await _read_all(probe) == [b"boot\n", b"HILPROBE:PASS\n"]
        assert probe.image == b"image"
        assert probe.calls == ["run_from_ram", "read_output"]

    @pytest.mark.asyncio
    async def test_flash_needs_reset_to_run(self, nucleo: Target) -> None:
        probe = create_driver(nucleo)
        await probe.flash(b"image")
        with pytest.raises(ProbeCommunicationError, match="not running"):
            await _read_all(probe)

        await probe.reset()
        assert await _read_all(probe) == [b"HILPROBE:PASS\n"]

    @pytest.mark.asyncio
    async def test_reset_halt_stops_target(self, nucleo: Target) -> None:
        probe = create_driver(nucleo)
        await probe.run_from_ram(b"image")
        await probe.reset(halt=True)
        assert probe.calls[-1] == "reset_halt"
        with pytest.raises(ProbeCommunicationError):
            await _read_all(probe)

    @pytest.mark.asyncio
    async def test_connect_failures(self, nucleo: Target) -> None:
        probe = create_driver(nucleo, connect_failures=2)
        for _ in range(2):
            with pytest.raises(ProbeCommunicationError, match="not responding"):
                await probe.run_from_ram(b"image")
        await probe.run_from_ram(b"image")
        assert probe.image == b"image"

    @pytest.mark.asyncio
    async def test_reject_images(self, nucleo: Target) -> None:
        probe = create_driver(nucleo, reject_images=True)
        with pytest.raises(InvalidBinaryError, match="rejected"):
            await probe.flash(b"image")

    @pytest.mark.asyncio
    async def test_min_image_size(self, nucleo: Target) -> None:
        probe = create_driver(nucleo, min_image_size=10)
        with pytest.raises(InvalidBinaryError):
            await probe.run_from_ram(b"short")

    @pytest.mark.asyncio
    async def test_hang_keeps_stream_open(self, nucleo: Target) -> None:
        probe = create_driver(nucleo, lines=["boot"], hang=True)
        await probe.run_from_ram(b"image")
        received: list[bytes] = []

        async def consume() -> None:
            async for chunk in probe.read_output():
                received.append(chunk)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(consume(), timeout=0.05)
        assert received == [b"boot\n"]

    @pytest.mark.asyncio
    async def test_stall_upload(self, nucleo: Target) -> None:
        probe = create_driver(nucleo, stall_upload=True)
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(probe.flash(b"image"), timeout=0.05)
        assert probe.image is None

    @pytest.mark.asyncio
    async def test_detached_probe_fails_uploads(self, nucleo: Target) -> None:
        probe = create_driver(nucleo, attached=False)
        with pytest.raises(ProbeCommunicationError, match="not attached"):
            await probe.run_from_ram(b"image")

    def test_close(self, nucleo: Target) -> None:
        probe = create_driver(nucleo)
        probe.close()
        assert probe.closed
        assert probe.calls == ["close"]


class TestProbePresent:
    def test_attached_by_default(self, nucleo: Target) -> None:
        assert probe_present(nucleo) is True

    def test_ignores_other_driver_options(self, nucleo: Target) -> None:
        assert probe_present(nucleo, lines=["boot"], attached=False, hang=True) is False
