"""Client tooling for the hilprobe server.

Example:
    from hilprobe_client import HilprobeClient

    async with HilprobeClient("http://probes.lab:8000", token) as client:
        result = await client.run(elf_bytes, target="nucleo")
"""

from hilprobe_client.cache import PassCache, digest
from hilprobe_client.client import HilprobeClient, RunResult, TargetInfo

__all__ = [
    "HilprobeClient",
    "RunResult",
    "TargetInfo",
    "PassCache",
    "digest",
]
