"""Incremental delivery of device output and the final job record.

Each job gets one :class:`ResultReporter`. The orchestrator pushes output
chunks into it as the probe delivers them and finishes it exactly once with
the terminal status; the request handler consumes the resulting event stream.
Output emitted before the job terminates is always delivered ahead of the
final record, whatever the terminal status.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Union

from hilprobe_core.types.job import ExecutionResult, JobState, RunMode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutputChunk:
    """One chunk of device output, as emitted by the probe."""

    data: bytes


@dataclass(frozen=True)
class FinalRecord:
    """Terminal record closing a job's event stream.

    Attributes:
        job_id: The job's ID.
        result: The terminal result.
        run_mode: Selected run mode, or None if the job failed before selection.
    """

    job_id: str
    result: ExecutionResult
    run_mode: RunMode | None = None


ReportEvent = Union[OutputChunk, FinalRecord]


class ResultReporter:
    """Event queue between a running job and its caller.

    Args:
        job_id: ID of the job being reported.
    """

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        self._queue: asyncio.Queue[ReportEvent] = asyncio.Queue()
        self._chunks: list[bytes] = []
        self._final: FinalRecord | None = None
        self._done = asyncio.Event()
        self._detached = False

    @property
    def finished(self) -> bool:
        return self._final is not None

    @property
    def detached(self) -> bool:
        return self._detached

    @property
    def result(self) -> ExecutionResult | None:
        """The terminal result, once finished."""
        return self._final.result if self._final is not None else None

    @property
    def captured_output(self) -> tuple[bytes, ...]:
        return tuple(self._chunks)

    def emit(self, data: bytes) -> None:
        """Forward one output chunk to the caller.

        No-op for empty chunks, after :meth:`finish`, or once detached.
        """
        if not data or self._final is not None or self._detached:
            return
        self._chunks.append(data)
        self._queue.put_nowait(OutputChunk(data))

    def finish(
        self,
        status: JobState,
        *,
        duration: float = 0.0,
        passed: bool = False,
        message: str = "",
        run_mode: RunMode | None = None,
    ) -> ExecutionResult:
        """Close the stream with the terminal result.

        Idempotent: later calls return the first result unchanged.

        Args:
            status: Terminal job state.
            duration: Seconds from probe acquisition to termination.
            passed: Verdict.
            message: Opaque summary for the caller.
            run_mode: Selected run mode.

        Returns:
            The terminal result, including all captured output.
        """
        if self._final is not None:
            return self._final.result
        result = ExecutionResult(
            status=status,
            captured_output=tuple(self._chunks),
            duration=duration,
            passed=passed,
            message=message,
        )
        self._final = FinalRecord(job_id=self.job_id, result=result, run_mode=run_mode)
        if not self._detached:
            self._queue.put_nowait(self._final)
        self._done.set()
        return result

    def detach(self) -> None:
        """Stop delivering events; the caller has gone away."""
        if self._detached:
            return
        self._detached = True
        while not self._queue.empty():
            self._queue.get_nowait()
        logger.debug("Reporter for job %s detached", self.job_id)

    async def wait(self) -> ExecutionResult:
        """Wait for the terminal result."""
        await self._done.wait()
        assert self._final is not None
        return self._final.result

    async def events(self) -> AsyncIterator[ReportEvent]:
        """Yield output chunks in arrival order, then the final record."""
        while True:
            event = await self._queue.get()
            yield event
            if isinstance(event, FinalRecord):
                return
