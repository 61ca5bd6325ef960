"""Data types for hilprobe.

Modules:
    target: ProbeSpecifier and Target.
    auth: Authorization rule variants and Principal.
    job: Job state machine, run modes, metadata and execution results.
"""

from hilprobe_core.types.auth import AuthRule, FederatedRule, Principal, StaticToken
from hilprobe_core.types.job import (
    BinaryMetadata,
    ExecutionResult,
    Job,
    JobState,
    RunMode,
)
from hilprobe_core.types.target import ProbeSpecifier, Target

__all__ = [
    # Target types
    "ProbeSpecifier",
    "Target",
    # Auth types
    "AuthRule",
    "FederatedRule",
    "Principal",
    "StaticToken",
    # Job types
    "BinaryMetadata",
    "ExecutionResult",
    "Job",
    "JobState",
    "RunMode",
]
