"""Pydantic models for REST API requests and responses.

This module defines the data models used by the hilprobe REST API. Run
requests answer with newline-delimited JSON: zero or more
:class:`OutputEvent` lines followed by exactly one :class:`ResultEvent`.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel

from hilprobe_core.types.job import JobState, RunMode


class HealthResponse(BaseModel):
    """Health check response for monitoring and load balancers.

    Attributes:
        status: Health status ("ok" once configuration is loaded).
        targets: Number of configured targets.
    """

    status: str
    targets: int


class TargetStatus(BaseModel):
    """A target as visible to an authenticated caller.

    Probe identifiers are deliberately not exposed.

    Attributes:
        name: Logical target name.
        chip: Chip type.
        busy: True while a job holds the target's probe.
        queued: Number of jobs waiting for the probe.
        up: Whether the probe is attached; None when the driver cannot tell.
    """

    name: str
    chip: str
    busy: bool
    queued: int
    up: bool | None = None


class OutputEvent(BaseModel):
    """One chunk of device output.

    Attributes:
        type: Always "output".
        data: Output text (invalid UTF-8 replaced).
    """

    type: Literal["output"] = "output"
    data: str


class ResultEvent(BaseModel):
    """Terminal record of a run.

    Attributes:
        type: Always "result".
        job_id: Job identifier.
        status: Terminal job state.
        passed: Verdict.
        duration: Seconds from probe acquisition to termination.
        run_mode: How the image was loaded, if decided.
        message: Human-readable summary.
    """

    type: Literal["result"] = "result"
    job_id: str
    status: JobState
    passed: bool
    duration: float
    run_mode: RunMode | None = None
    message: str = ""


class ErrorResponse(BaseModel):
    """Error body returned with 4xx responses.

    Attributes:
        detail: Error description.
    """

    detail: str
