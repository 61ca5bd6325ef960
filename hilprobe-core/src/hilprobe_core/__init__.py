"""Core library for hardware-in-the-loop test execution.

This package provides the shared data types, the probe driver interface and
the error hierarchy used by the hilprobe server and client. It has no external
dependencies (stdlib-only) so that probe driver packages can depend on it
cheaply.

Key components:
    - Types: ProbeSpecifier and Target, authorization rules and Principal,
      job state machine (JobState, Job), RunMode, BinaryMetadata and
      ExecutionResult.
    - Interfaces: ProbeDriver protocol implemented by debug probe drivers.
    - Errors: Hierarchy of exception types rooted at HilprobeError.

Example:
    >>> from hilprobe_core import ProbeSpecifier, Target
    >>> target = Target("nucleo", "stm32f429zi", ProbeSpecifier.parse("0483:374b"))
    >>> target.probe_id
    '0483:374b'
"""

from hilprobe_core.errors import (
    AuthError,
    AuthFailure,
    ConfigError,
    ExecutionTimeoutError,
    HilprobeError,
    InternalError,
    InvalidBinaryError,
    NotFoundError,
    ProbeCommunicationError,
    StateTransitionError,
)
from hilprobe_core.interfaces import ProbeDriver, ProbeDriverFactory
from hilprobe_core.types import (
    AuthRule,
    BinaryMetadata,
    ExecutionResult,
    FederatedRule,
    Job,
    JobState,
    Principal,
    ProbeSpecifier,
    RunMode,
    StaticToken,
    Target,
)

__version__ = "0.1.0"

__all__ = [
    # Errors
    "AuthError",
    "AuthFailure",
    "ConfigError",
    "ExecutionTimeoutError",
    "HilprobeError",
    "InternalError",
    "InvalidBinaryError",
    "NotFoundError",
    "ProbeCommunicationError",
    "StateTransitionError",
    # Interfaces
    "ProbeDriver",
    "ProbeDriverFactory",
    # Types
    "AuthRule",
    "BinaryMetadata",
    "ExecutionResult",
    "FederatedRule",
    "Job",
    "JobState",
    "Principal",
    "ProbeSpecifier",
    "RunMode",
    "StaticToken",
    "Target",
]
