"""Job lifecycle and execution result types.

A job moves strictly forward through its states::

    QUEUED -> UPLOADING -> EXECUTING -> COMPLETED | TIMED_OUT | ERROR
       |          |
       +----------+-----> ERROR

Terminal states are final. :meth:`JobState.can_transition_to` encodes the
permitted edges; the orchestrator refuses anything else.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum

from hilprobe_core.errors import StateTransitionError
from hilprobe_core.types.target import Target


class JobState(str, Enum):
    """State of a job.

    Attributes:
        QUEUED: Accepted, waiting for the probe lock.
        UPLOADING: Holding the probe; writing the image.
        EXECUTING: Device running; output being captured under the deadline.
        COMPLETED: Device finished (pass or fail verdict).
        TIMED_OUT: Deadline elapsed before completion.
        ERROR: Job failed (invalid image, probe failure, cancellation).
    """

    QUEUED = "queued"
    UPLOADING = "uploading"
    EXECUTING = "executing"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        """Return True for COMPLETED, TIMED_OUT and ERROR."""
        return self in _TERMINAL

    def can_transition_to(self, new: JobState) -> bool:
        """Check whether moving to ``new`` is a forward, permitted transition.

        Args:
            new: Proposed next state.

        Returns:
            True if the transition is allowed.
        """
        return new in _TRANSITIONS[self]


_TERMINAL = frozenset({JobState.COMPLETED, JobState.TIMED_OUT, JobState.ERROR})

_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.QUEUED: frozenset({JobState.UPLOADING, JobState.ERROR}),
    JobState.UPLOADING: frozenset({JobState.EXECUTING, JobState.ERROR}),
    JobState.EXECUTING: _TERMINAL,
    JobState.COMPLETED: frozenset(),
    JobState.TIMED_OUT: frozenset(),
    JobState.ERROR: frozenset(),
}


class RunMode(str, Enum):
    """How the image reaches the device.

    Attributes:
        RAM: Write code/data straight to RAM and jump to it.
        FLASH: Program non-volatile memory, then reset and run.
    """

    RAM = "ram"
    FLASH = "flash"


@dataclass(frozen=True)
class BinaryMetadata:
    """Defaults recovered from an image's embedded metadata.

    Attributes:
        target_name: Default target name, or None if absent.
        timeout_seconds: Default execution timeout, or None if absent.
    """

    target_name: str | None = None
    timeout_seconds: int | None = None

    @property
    def is_empty(self) -> bool:
        """Return True if neither field is present."""
        return self.target_name is None and self.timeout_seconds is None


@dataclass(frozen=True)
class ExecutionResult:
    """Terminal outcome of a job.

    Attributes:
        status: Terminal job state.
        captured_output: Output chunks in arrival order.
        duration: Seconds from acquiring the probe to termination.
        passed: Verdict; only True for COMPLETED without a failure marker.
        message: Opaque human-readable summary (never device output or secrets).
    """

    status: JobState
    captured_output: tuple[bytes, ...] = ()
    duration: float = 0.0
    passed: bool = False
    message: str = ""

    def __post_init__(self) -> None:
        if not self.status.is_terminal:
            raise ValueError(f"ExecutionResult status must be terminal, got {self.status.value}")

    @property
    def output(self) -> bytes:
        """Return all captured output concatenated."""
        return b"".join(self.captured_output)


@dataclass
class Job:
    """A single run request owned by the orchestrator.

    Attributes:
        binary_image: Raw image bytes.
        resolved_target: Target the job runs on.
        timeout: Effective execution timeout in seconds.
        id: Unique job identifier.
        state: Current state; change it only through :meth:`advance`.
        run_mode: Selected run mode, once decided.
        deadline: Monotonic deadline, set on entering EXECUTING.
        created_at: Monotonic creation time.
        started_at: Monotonic time the probe was acquired.
        detached: True once the caller has gone away; results are discarded.
    """

    binary_image: bytes = field(repr=False)
    resolved_target: Target
    timeout: float
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: JobState = JobState.QUEUED
    run_mode: RunMode | None = None
    deadline: float | None = None
    created_at: float = field(default_factory=time.monotonic)
    started_at: float | None = None
    detached: bool = False

    def advance(self, new: JobState) -> None:
        """Move the job forward to ``new``.

        Args:
            new: Next state.

        Raises:
            StateTransitionError: If the transition is not permitted.
        """
        if not self.state.can_transition_to(new):
            raise StateTransitionError(
                f"Job {self.id}: illegal transition {self.state.value} -> {new.value}"
            )
        self.state = new
