"""Job execution: run-mode selection, probe exclusivity and deadlines.

Every accepted run request becomes a :class:`~hilprobe_core.types.job.Job`
driven by its own asyncio task::

    QUEUED --probe acquired--> UPLOADING --image loaded--> EXECUTING --+--> COMPLETED
      |                           |                                    +--> TIMED_OUT
      +---------------------------+------------------------------------+--> ERROR

Jobs for the same probe run one at a time in arrival order; jobs for different
probes run in parallel. A caller going away while its job is queued cancels
the job. Once the probe is held the job always runs to a terminal state, and
the target is reset halted before the probe is handed on.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Mapping

from hilprobe_core.errors import (
    ExecutionTimeoutError,
    InvalidBinaryError,
    ProbeCommunicationError,
)
from hilprobe_core.interfaces.probe import ProbeDriver, ProbeDriverFactory
from hilprobe_core.types.job import BinaryMetadata, ExecutionResult, Job, JobState, RunMode
from hilprobe_core.types.target import Target

from hilprobe_server.chips import ChipCatalogue, ChipSpec
from hilprobe_server.config import ServerSettings
from hilprobe_server.image import parse_elf
from hilprobe_server.locks import ProbeLockTable
from hilprobe_server.reporter import ResultReporter

logger = logging.getLogger(__name__)

_MAX_LINE = 4096


def select_run_mode(image: bytes, chip: ChipSpec | None) -> RunMode:
    """Decide whether an image can run straight from RAM.

    RAM execution is chosen when every writable or executable region of the
    image lies inside the chip's RAM and their total size does not exceed it.

    Args:
        image: Raw ELF image.
        chip: RAM map of the target chip, or None if unknown.

    Returns:
        RAM if the image fits, FLASH otherwise (always FLASH for unknown chips).

    Raises:
        InvalidBinaryError: If the image is not ELF or has nothing to load.
    """
    regions = parse_elf(image).footprint()
    if not regions:
        raise InvalidBinaryError("image has no writable or executable sections")
    if chip is None:
        return RunMode.FLASH
    total = sum(region.size for region in regions)
    if total <= chip.ram_size and all(chip.contains(r.start, r.size) for r in regions):
        return RunMode.RAM
    return RunMode.FLASH


def resolve_timeout(
    settings: ServerSettings,
    target: Target,
    metadata: BinaryMetadata | None = None,
    override: float | None = None,
) -> float:
    """Compute a job's effective timeout in seconds.

    Precedence: request override, embedded metadata, the target's default,
    then the server default. The result is capped at ``max_timeout``.

    Raises:
        ValueError: If the override is not positive.
    """
    if override is not None and override <= 0:
        raise ValueError("timeout override must be positive")
    candidates = (
        override,
        metadata.timeout_seconds if metadata is not None else None,
        target.default_timeout,
    )
    chosen = next((c for c in candidates if c is not None), settings.default_timeout)
    return settings.clamp_timeout(float(chosen))


class OutputScanner:
    """Line-oriented search for completion markers in device output.

    Args:
        pass_marker: Text ending a run as passed.
        fail_marker: Text ending a run as failed. Wins over the pass marker
            on the same line.
    """

    def __init__(self, pass_marker: str, fail_marker: str) -> None:
        self._pass = pass_marker.encode("utf-8")
        self._fail = fail_marker.encode("utf-8")
        self._keep = max(len(self._pass), len(self._fail)) - 1
        self._partial = b""

    def feed(self, chunk: bytes) -> bool | None:
        """Scan a chunk; return the verdict of the first marker line, else None."""
        *lines, self._partial = (self._partial + chunk).split(b"\n")
        for line in lines:
            verdict = self._check(line)
            if verdict is not None:
                return verdict
        if len(self._partial) > _MAX_LINE:
            verdict = self._check(self._partial)
            self._partial = self._partial[-self._keep :] if self._keep else b""
            return verdict
        return None

    def finish(self) -> bool | None:
        """Scan the trailing unterminated line."""
        partial, self._partial = self._partial, b""
        return self._check(partial)

    def _check(self, line: bytes) -> bool | None:
        if self._fail in line:
            return False
        if self._pass in line:
            return True
        return None


@dataclass
class JobHandle:
    """A submitted job and the means to follow it.

    Attributes:
        job: The job.
        reporter: Event stream of the job's output and final record.
        task: Task driving the job.
    """

    job: Job
    reporter: ResultReporter
    task: asyncio.Task[None] = field(repr=False)

    def cancel(self) -> bool:
        """Give up on the job because the caller went away.

        A queued job is withdrawn and ends in ERROR. A job that already holds
        the probe keeps running; its result is discarded.

        Returns:
            True if the job was withdrawn.
        """
        if self.reporter.finished:
            return False
        if self.job.state is JobState.QUEUED:
            self.task.cancel()
            return True
        self.job.detached = True
        self.reporter.detach()
        return False

    async def wait(self) -> ExecutionResult:
        """Wait for the terminal result."""
        return await self.reporter.wait()


class ExecutionOrchestrator:
    """Runs jobs against probe drivers.

    Args:
        driver_factory: Builds a driver for a target; called once per job.
        settings: Server settings (timeouts, retries, markers).
        chips: Chip RAM maps for run-mode selection.
        locks: Probe lock table; share one across orchestrators that drive
            the same hardware.
        driver_kwargs: Extra keyword arguments for the driver factory.
    """

    def __init__(
        self,
        driver_factory: ProbeDriverFactory,
        *,
        settings: ServerSettings | None = None,
        chips: ChipCatalogue | None = None,
        locks: ProbeLockTable | None = None,
        driver_kwargs: Mapping[str, Any] | None = None,
    ) -> None:
        self._driver_factory = driver_factory
        self._settings = settings or ServerSettings()
        self._chips = chips if chips is not None else ChipCatalogue()
        self._locks = locks if locks is not None else ProbeLockTable()
        self._driver_kwargs = dict(driver_kwargs or {})
        self._jobs: dict[str, JobHandle] = {}

    @property
    def settings(self) -> ServerSettings:
        return self._settings

    @property
    def locks(self) -> ProbeLockTable:
        return self._locks

    @property
    def jobs(self) -> list[Job]:
        """Jobs not yet terminated and delivered."""
        return [handle.job for handle in self._jobs.values()]

    def get(self, job_id: str) -> JobHandle | None:
        return self._jobs.get(job_id)

    def resolve_timeout(
        self,
        target: Target,
        metadata: BinaryMetadata | None = None,
        override: float | None = None,
    ) -> float:
        """Compute the effective timeout with this orchestrator's settings."""
        return resolve_timeout(self._settings, target, metadata, override)

    def submit(
        self,
        image: bytes,
        target: Target,
        *,
        metadata: BinaryMetadata | None = None,
        timeout: float | None = None,
    ) -> JobHandle:
        """Accept a job and start driving it.

        Args:
            image: Raw ELF image.
            target: Resolved target.
            metadata: Metadata embedded in the image.
            timeout: Request-level timeout override in seconds.

        Returns:
            Handle to follow or cancel the job.
        """
        job = Job(
            binary_image=image,
            resolved_target=target,
            timeout=self.resolve_timeout(target, metadata, timeout),
        )
        reporter = ResultReporter(job.id)
        task = asyncio.create_task(self._run_job(job, reporter), name=f"hilprobe-job-{job.id}")
        handle = JobHandle(job=job, reporter=reporter, task=task)
        self._jobs[job.id] = handle
        task.add_done_callback(functools.partial(self._job_done, handle))
        logger.info(
            "Job %s accepted: target=%s probe=%s timeout=%gs size=%d",
            job.id,
            target.name,
            target.probe_id,
            job.timeout,
            len(image),
        )
        return handle

    async def run(
        self,
        image: bytes,
        target: Target,
        *,
        metadata: BinaryMetadata | None = None,
        timeout: float | None = None,
    ) -> ExecutionResult:
        """Submit a job and wait for its terminal result."""
        handle = self.submit(image, target, metadata=metadata, timeout=timeout)
        return await handle.wait()

    async def shutdown(self) -> None:
        """Cancel every outstanding job and wait for the tasks to finish."""
        handles = list(self._jobs.values())
        for handle in handles:
            handle.task.cancel()
        if handles:
            await asyncio.gather(*(h.task for h in handles), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Job driving
    # -------------------------------------------------------------------------

    async def _run_job(self, job: Job, reporter: ResultReporter) -> None:
        target = job.resolved_target
        try:
            job.run_mode = select_run_mode(job.binary_image, self._chips.get(target.chip))
        except InvalidBinaryError as exc:
            logger.warning("Job %s rejected: %s", job.id, exc)
            self._finish(job, reporter, JobState.ERROR, message=f"Invalid binary: {exc}")
            return

        lock = self._locks.get(target.probe_id)
        try:
            await lock.acquire(job.id)
        except asyncio.CancelledError:
            logger.info("Job %s cancelled while queued", job.id)
            self._finish(job, reporter, JobState.ERROR, message="cancelled")
            raise

        try:
            await self._execute(job, reporter)
        finally:
            lock.release(job.id)

    async def _execute(self, job: Job, reporter: ResultReporter) -> None:
        settings = self._settings
        job.started_at = time.monotonic()
        self._advance(job, JobState.UPLOADING)
        driver: ProbeDriver | None = None
        try:
            driver = self._driver_factory(job.resolved_target, **self._driver_kwargs)
            await self._upload(job, driver)

            self._advance(job, JobState.EXECUTING)
            job.deadline = time.monotonic() + job.timeout
            scanner = OutputScanner(settings.pass_marker, settings.fail_marker)
            passed = await self._capture_until_deadline(job, driver, reporter, scanner)
            await self._reset(job, driver)
            self._finish(
                job,
                reporter,
                JobState.COMPLETED,
                passed=passed,
                message="passed" if passed else "failed",
            )

        except ExecutionTimeoutError as exc:
            logger.warning("Job %s: %s", job.id, exc)
            await self._reset(job, driver)
            self._finish(job, reporter, JobState.TIMED_OUT, message=str(exc))
        except InvalidBinaryError as exc:
            logger.warning("Job %s: driver rejected image: %s", job.id, exc)
            await self._reset(job, driver)
            self._finish(job, reporter, JobState.ERROR, message=f"Invalid binary: {exc}")
        except ProbeCommunicationError as exc:
            logger.error("Job %s: probe communication failed: %s", job.id, exc)
            await self._reset(job, driver)
            self._finish(
                job, reporter, JobState.ERROR, message=f"Probe communication failed: {exc}"
            )
        except asyncio.CancelledError:
            logger.warning(
                "Job %s cancelled while holding probe %s", job.id, job.resolved_target.probe_id
            )
            await self._reset(job, driver)
            self._finish(job, reporter, JobState.ERROR, message="cancelled")
            raise
        except Exception:  # pylint: disable=broad-exception-caught
            logger.exception("Job %s failed unexpectedly", job.id)
            await self._reset(job, driver)
            self._finish(job, reporter, JobState.ERROR, message="Internal error")
        finally:
            if driver is not None:
                await self._close(job, driver)

    async def _upload(self, job: Job, driver: ProbeDriver) -> None:
        # The job timeout also bounds the upload, retries included.
        try:
            await asyncio.wait_for(self._upload_with_retries(job, driver), timeout=job.timeout)
        except asyncio.TimeoutError as exc:
            raise ProbeCommunicationError(
                f"Upload did not finish within {job.timeout:g}s"
            ) from exc

    async def _upload_with_retries(self, job: Job, driver: ProbeDriver) -> None:
        attempts = self._settings.probe_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                if job.run_mode is RunMode.RAM:
                    await driver.run_from_ram(job.binary_image)
                else:
                    await driver.flash(job.binary_image)
                    await driver.reset(halt=False)
                return
            except ProbeCommunicationError as exc:
                if attempt == attempts:
                    raise
                logger.warning(
                    "Job %s: upload attempt %d/%d failed: %s; retrying in %gs",
                    job.id,
                    attempt,
                    attempts,
                    exc,
                    self._settings.retry_delay,
                )
                await asyncio.sleep(self._settings.retry_delay)

    async def _capture_until_deadline(
        self, job: Job, driver: ProbeDriver, reporter: ResultReporter, scanner: OutputScanner
    ) -> bool:
        try:
            return await asyncio.wait_for(
                self._capture(driver, reporter, scanner), timeout=job.timeout
            )
        except asyncio.TimeoutError as exc:
            raise ExecutionTimeoutError(f"Timed out after {job.timeout:g}s") from exc

    async def _capture(
        self, driver: ProbeDriver, reporter: ResultReporter, scanner: OutputScanner
    ) -> bool:
        stream = driver.read_output()
        try:
            async for chunk in stream:
                reporter.emit(chunk)
                verdict = scanner.feed(chunk)
                if verdict is not None:
                    return verdict
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        verdict = scanner.finish()
        return True if verdict is None else verdict

    async def _reset(self, job: Job, driver: ProbeDriver | None) -> None:
        if driver is None:
            return
        try:
            await driver.reset(halt=True)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            logger.warning(
                "Job %s: reset of probe %s failed: %s", job.id, job.resolved_target.probe_id, exc
            )

    async def _close(self, job: Job, driver: ProbeDriver) -> None:
        close = getattr(driver, "close", None)
        if close is None:
            return
        try:
            result = close()
            if inspect.isawaitable(result):
                await result
        except Exception as exc:  # pylint: disable=broad-exception-caught
            logger.warning("Job %s: closing driver failed: %s", job.id, exc)

    def _advance(self, job: Job, state: JobState) -> None:
        job.advance(state)
        logger.info("Job %s -> %s", job.id, state.value)

    def _finish(
        self,
        job: Job,
        reporter: ResultReporter,
        status: JobState,
        *,
        passed: bool = False,
        message: str = "",
    ) -> ExecutionResult:
        if not job.state.is_terminal:
            self._advance(job, status)
        duration = time.monotonic() - job.started_at if job.started_at is not None else 0.0
        if job.detached:
            logger.info("Job %s result discarded; caller detached", job.id)
        logger.info("Job %s finished: %s (%s) in %.2fs", job.id, status.value, message, duration)
        return reporter.finish(
            status, duration=duration, passed=passed, message=message, run_mode=job.run_mode
        )

    def _job_done(self, handle: JobHandle, task: asyncio.Task[None]) -> None:
        self._jobs.pop(handle.job.id, None)
        if not handle.reporter.finished:
            # Cancelled before the task ever ran.
            self._finish(handle.job, handle.reporter, JobState.ERROR, message="cancelled")
        if not task.cancelled() and task.exception() is not None:
            logger.error("Job %s task failed: %r", handle.job.id, task.exception())
