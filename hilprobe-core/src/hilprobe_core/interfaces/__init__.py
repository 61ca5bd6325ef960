"""Protocol-based interface definitions for hilprobe.

Interfaces:
    Probe: ProbeDriver - flash/run/reset/read-output on one target
"""

from hilprobe_core.interfaces.probe import ProbeDriver, ProbeDriverFactory

__all__ = [
    "ProbeDriver",
    "ProbeDriverFactory",
]
