#!/usr/bin/env python3
"""Coverage runner for hilprobe.

Runs each package's unit tests with coverage, combines the results and
reports how much of the covered code is exercised only by mocked tests
(tests marked ``uses_mock`` by the root conftest) rather than through the
emulated probe.

Usage:
    # Run all unit tests with coverage
    python scripts/run_coverage.py

    # Run one package
    python scripts/run_coverage.py --package hilprobe-server

    # Include integration tests (needs real probes)
    python scripts/run_coverage.py --include-integration

    # Report mock-only coverage from the last run
    python scripts/run_coverage.py --skip-tests --analyze-mocks
"""

from __future__ import annotations

import argparse
import json
import os
import subprocess
import sys
import webbrowser
from dataclasses import dataclass, field
from pathlib import Path

# Project root directory
PROJECT_ROOT = Path(__file__).parent.parent
COVERAGE_DIR = PROJECT_ROOT / "coverage"

# All packages in the monorepo
PACKAGES = [
    "hilprobe-core",
    "hilprobe-server",
    "hilprobe-client",
]


@dataclass
class FileStats:
    """Coverage of one source file."""

    total: int = 0
    covered: int = 0
    mocked_only: int = 0


@dataclass
class CoverageStats:
    """Coverage totals across the analyzed files."""

    files: dict[str, FileStats] = field(default_factory=dict)

    @property
    def total_lines(self) -> int:
        return sum(f.total for f in self.files.values())

    @property
    def covered_lines(self) -> int:
        return sum(f.covered for f in self.files.values())

    @property
    def mocked_only_lines(self) -> int:
        return sum(f.mocked_only for f in self.files.values())

    @property
    def coverage_percent(self) -> float:
        if self.total_lines == 0:
            return 100.0
        return self.covered_lines / self.total_lines * 100

    @property
    def mocked_only_percent(self) -> float:
        if self.covered_lines == 0:
            return 0.0
        return self.mocked_only_lines / self.covered_lines * 100


def _coverage(args: list[str], data_file: Path) -> int:
    env = dict(os.environ, COVERAGE_FILE=str(data_file))
    return subprocess.run(
        [sys.executable, "-m", "coverage", *args], cwd=PROJECT_ROOT, env=env
    ).returncode


def run_tests(
    packages: list[str],
    include_integration: bool = False,
    verbose: bool = True,
) -> int:
    """Run each package's tests under coverage and combine the data.

    Packages run in separate pytest processes so their test modules do not
    collide.

    Args:
        packages: Package directories to test.
        include_integration: Also run ``tests/integration`` where present.
        verbose: Pass ``-v`` to pytest.

    Returns:
        0 if every run passed, 1 otherwise.
    """
    COVERAGE_DIR.mkdir(exist_ok=True)
    data_files: list[Path] = []
    failed = False

    suites = ["unit", "integration"] if include_integration else ["unit"]
    for pkg in packages:
        pkg_path = PROJECT_ROOT / pkg
        for suite in suites:
            test_path = pkg_path / "tests" / suite
            if not test_path.exists():
                continue

            print(f"\n{'=' * 60}\nTesting: {pkg} ({suite})\n{'=' * 60}")
            data_file = COVERAGE_DIR / f".coverage.{pkg}.{suite}"
            data_files.append(data_file)
            cmd = [
                sys.executable,
                "-m",
                "pytest",
                f"--cov={pkg_path / 'src'}",
                "--cov-report=",
                "--cov-context=test",
                str(test_path),
            ]
            if verbose:
                cmd.append("-v")
            env = dict(os.environ, COVERAGE_FILE=str(data_file))
            if subprocess.run(cmd, cwd=PROJECT_ROOT, env=env).returncode != 0:
                failed = True

    existing = [str(f) for f in data_files if f.exists()]
    if existing:
        combined = COVERAGE_DIR / ".coverage"
        _coverage(["combine", "--keep", *existing], combined)
        _coverage(["report", "--show-missing"], combined)
        _coverage(["html", "-d", str(COVERAGE_DIR / "html")], combined)
        _coverage(["json", "--show-contexts", "-o", str(COVERAGE_DIR / "coverage.json")], combined)
        print(f"\nCoverage HTML report: {COVERAGE_DIR / 'html' / 'index.html'}")

    return 1 if failed else 0


def _is_mocked_context(context: str) -> bool:
    lowered = context.lower()
    return "mock" in lowered or "fake" in lowered or "patch" in lowered


def analyze_mocked_coverage(coverage_json: Path = COVERAGE_DIR / "coverage.json") -> CoverageStats:
    """Find lines covered only by tests that use mocking.

    Args:
        coverage_json: JSON report written with per-line test contexts.

    Returns:
        Per-file statistics; empty if no report exists.
    """
    stats = CoverageStats()
    if not coverage_json.exists():
        print(f"Coverage data not found at {coverage_json}")
        print("Run coverage first: python scripts/run_coverage.py")
        return stats

    with open(coverage_json, encoding="utf-8") as f:
        data = json.load(f)

    for filename, file_data in data.get("files", {}).items():
        if "/tests/" in filename:
            continue
        executed = file_data.get("executed_lines", [])
        missing = file_data.get("missing_lines", [])
        contexts = file_data.get("contexts", {})
        mocked_only = sum(
            1
            for line_contexts in contexts.values()
            if line_contexts and all(_is_mocked_context(ctx) for ctx in line_contexts if ctx)
        )
        rel_path = filename.replace(str(PROJECT_ROOT) + "/", "")
        stats.files[rel_path] = FileStats(
            total=len(executed) + len(missing),
            covered=len(executed),
            mocked_only=mocked_only,
        )
    return stats


def print_mock_analysis(stats: CoverageStats) -> None:
    """Print the mock-only coverage summary."""
    print("\n" + "=" * 80)
    print("MOCK COVERAGE ANALYSIS")
    print("=" * 80)
    print(f"Total lines:            {stats.total_lines:,}")
    print(f"Covered lines:          {stats.covered_lines:,} ({stats.coverage_percent:.1f}%)")
    print(
        f"Covered by mocks only:  {stats.mocked_only_lines:,} "
        f"({stats.mocked_only_percent:.1f}% of covered)"
    )

    worst = sorted(stats.files.items(), key=lambda item: item[1].mocked_only, reverse=True)
    worst = [(name, f) for name, f in worst[:20] if f.mocked_only > 0]
    if worst:
        print("\nFiles with mock-only coverage (candidates for emulator-backed tests):")
        print("-" * 80)
        for name, file_stats in worst:
            print(
                f"  {name}: {file_stats.mocked_only} lines mock-only "
                f"({file_stats.covered}/{file_stats.total} covered)"
            )


def main() -> int:
    """Main entry point.

    Returns:
        Exit code.
    """
    parser = argparse.ArgumentParser(
        description="Run coverage and analyze mock usage",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--package", "-p",
        action="append",
        dest="packages",
        choices=PACKAGES,
        help="Specific package(s) to test (can specify multiple)",
    )
    parser.add_argument(
        "--include-integration", "-i",
        action="store_true",
        help="Include integration tests in coverage",
    )
    parser.add_argument(
        "--analyze-mocks", "-m",
        action="store_true",
        help="Report mock-only coverage",
    )
    parser.add_argument(
        "--skip-tests",
        action="store_true",
        help="Skip running tests, only analyze existing coverage data",
    )
    parser.add_argument(
        "--open", "-o",
        action="store_true",
        help="Open HTML report in browser after running",
    )
    parser.add_argument(
        "--quiet", "-q",
        action="store_true",
        help="Minimal output",
    )
    args = parser.parse_args()

    exit_code = 0
    if not args.skip_tests:
        exit_code = run_tests(
            args.packages or PACKAGES,
            include_integration=args.include_integration,
            verbose=not args.quiet,
        )

    if args.analyze_mocks or args.skip_tests:
        print_mock_analysis(analyze_mocked_coverage())

    if args.open:
        html_report = COVERAGE_DIR / "html" / "index.html"
        if html_report.exists():
            webbrowser.open(f"file://{html_report}")
        else:
            print(f"HTML report not found at {html_report}")

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
