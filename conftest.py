"""Root conftest.py for the hilprobe monorepo.

Puts every package's ``src`` directory on the import path, registers the
shared markers and marks tests that use mocking, so coverage reports can tell
emulator-backed coverage from mock-only coverage.
"""

from __future__ import annotations

import ast
import inspect
import sys
import textwrap
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

if TYPE_CHECKING:
    from _pytest.config import Config
    from _pytest.nodes import Item


# Add all package src directories to path for imports
PROJECT_ROOT = Path(__file__).parent
for pkg_dir in sorted(PROJECT_ROOT.glob("hilprobe-*/src")):
    if str(pkg_dir) not in sys.path:
        sys.path.insert(0, str(pkg_dir))

# Names whose use in a test body counts as mocking
MOCK_NAMES = frozenset({
    "MagicMock",
    "Mock",
    "AsyncMock",
    "PropertyMock",
    "create_autospec",
    "patch",
    "MockTransport",
    "mocker",
})


def pytest_configure(config: Config) -> None:
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "uses_mock: Test uses mocking (auto-detected or manually marked)",
    )
    config.addinivalue_line(
        "markers",
        "integration: Integration test requiring a real probe and target",
    )
    config.addinivalue_line(
        "markers",
        "slow: Slow-running test",
    )


def _source_uses_mock(source: str) -> bool:
    """Return True if the source calls or references a mocking helper.

    Args:
        source: Source code of a test function.
    """
    try:
        tree = ast.parse(textwrap.dedent(source))
    except SyntaxError:
        return False

    for node in ast.walk(tree):
        if isinstance(node, ast.Name) and node.id in MOCK_NAMES:
            return True
        if isinstance(node, ast.Attribute) and node.attr in MOCK_NAMES:
            return True
        if isinstance(node, ast.arg) and ("mock" in node.arg.lower() or node.arg == "mocker"):
            return True
    return False


def _uses_mock(item: Item) -> bool:
    name = item.name.lower()
    if "mock" in name or "fake" in name or "stub" in name:
        return True

    obj = getattr(item, "obj", None)
    if obj is None:
        return False
    try:
        source = inspect.getsource(obj)
    except (OSError, TypeError):
        return False
    return _source_uses_mock(source)


def pytest_collection_modifyitems(config: Config, items: list[Item]) -> None:
    """Mark tests that use mocking.

    Args:
        config: pytest configuration object.
        items: List of collected test items.
    """
    for item in items:
        if item.get_closest_marker("uses_mock") is None and _uses_mock(item):
            item.add_marker(pytest.mark.uses_mock)


def pytest_report_header(config: Config) -> list[str]:
    """Add suite info to the pytest header."""
    lines = ["hilprobe monorepo test suite"]
    if getattr(config.option, "cov_source", None):
        lines.append("Coverage: enabled with mock detection")
    return lines
