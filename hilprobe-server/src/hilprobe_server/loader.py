"""Dynamic probe driver loading via importlib.

Probe drivers live outside hilprobe. The server configuration names a driver
factory as ``"module:function"``; the factory is imported at startup and
called once per job with the resolved target.

Example:
    factory = load_driver("hilprobe_server.emulator:create_driver")
    driver = factory(target, lines=["HILPROBE:PASS"])
"""

from __future__ import annotations

import importlib

from hilprobe_core.interfaces.probe import ProbeDriverFactory


def load_driver(driver_path: str) -> ProbeDriverFactory:
    """Load a probe driver factory from a module path.

    Args:
        driver_path: Path in "module:function" format
            (e.g., "hilprobe_server.emulator:create_driver").

    Returns:
        The loaded factory function.

    Raises:
        ValueError: If the driver path format is invalid.
        ImportError: If the module cannot be imported.
        AttributeError: If the function doesn't exist in the module.
        TypeError: If the attribute is not callable.
    """
    module_path, sep, func_name = driver_path.rpartition(":")
    if not sep:
        raise ValueError(
            f"Invalid driver path '{driver_path}': must be in 'module:function' format"
        )
    if not module_path or not func_name:
        raise ValueError(f"Invalid driver path '{driver_path}': module and function names required")

    try:
        module = importlib.import_module(module_path)
    except ImportError as exc:
        raise ImportError(f"Failed to import driver module '{module_path}': {exc}") from exc

    factory = getattr(module, func_name, None)
    if factory is None:
        raise AttributeError(f"Driver module '{module_path}' has no attribute '{func_name}'")
    if not callable(factory):
        raise TypeError(f"Driver '{driver_path}' is not callable")
    return factory
