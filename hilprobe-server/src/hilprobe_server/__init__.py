"""Hardware-in-the-loop test execution server.

This package accepts firmware images over HTTP, runs them on microcontrollers
attached through debug probes and streams the device output back to the
caller together with a pass/fail verdict.

Key components:
    - AuthEngine: Authorizes callers against static tokens and federated
      identity (OIDC) rules.
    - TargetRegistry: Maps logical target names to chip and probe.
    - ExecutionOrchestrator: Chooses RAM or flash execution, serializes access
      to each probe and enforces execution deadlines.
    - ResultReporter: Streams device output and the terminal result.
    - REST API: FastAPI application serving the above.

Example:
    from hilprobe_server import HilprobeService

    service = HilprobeService.from_file("hilprobe.yaml")
    snapshot = service.snapshot
    target = snapshot.registry.resolve("nucleo")
    result = await snapshot.orchestrator.run(image, target)
"""

from hilprobe_server.auth import AuthEngine, JwksCache
from hilprobe_server.chips import ChipCatalogue, ChipSpec
from hilprobe_server.config import (
    DriverConfig,
    HilprobeConfig,
    ServerSettings,
    load_config,
    parse_config,
)
from hilprobe_server.loader import load_driver
from hilprobe_server.locks import ProbeLockTable
from hilprobe_server.metadata import build_metadata_block, extract
from hilprobe_server.orchestrator import ExecutionOrchestrator, JobHandle, select_run_mode
from hilprobe_server.registry import TargetRegistry
from hilprobe_server.reporter import ResultReporter
from hilprobe_server.service import HilprobeService, ServerSnapshot

__all__ = [
    # Config
    "DriverConfig",
    "HilprobeConfig",
    "ServerSettings",
    "load_config",
    "parse_config",
    "load_driver",
    # Service
    "HilprobeService",
    "ServerSnapshot",
    # Components
    "AuthEngine",
    "JwksCache",
    "TargetRegistry",
    "ExecutionOrchestrator",
    "JobHandle",
    "ResultReporter",
    "ProbeLockTable",
    # Images
    "ChipCatalogue",
    "ChipSpec",
    "build_metadata_block",
    "extract",
    "select_run_mode",
]
