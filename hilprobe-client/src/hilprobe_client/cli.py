"""Command-line interface for hilprobe.

Usage:
    # List the targets a server offers
    hilprobe --host http://probes.lab:8000 --token "$TOKEN" list-targets

    # Run binaries on the target named inside each ELF
    hilprobe run build/tests/*.elf

    # Run a whole directory on one target, skipping binaries that passed before
    hilprobe run -r build/tests --target nucleo --cache .hilprobe-cache.json

The server URL and credential default to the HILPROBE_HOST and HILPROBE_TOKEN
environment variables.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Sequence

import httpx

from hilprobe_core.errors import HilprobeError

from hilprobe_client.cache import PassCache, digest
from hilprobe_client.client import HilprobeClient

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO") -> None:
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def collect_files(paths: Sequence[str | Path], recursive: bool = False) -> list[Path]:
    """Expand the command-line paths into the list of binaries to run.

    Args:
        paths: Files, or directories when ``recursive`` is set.
        recursive: Walk directories (following symlinks) for every file below them.

    Returns:
        The files, in a stable order.
    """
    files: list[Path] = []
    for raw in paths:
        path = Path(raw)
        if recursive and path.is_dir():
            for root, dirs, names in os.walk(path, followlinks=True):
                dirs.sort()
                files.extend(Path(root) / name for name in sorted(names))
        else:
            files.append(path)
    return files


def _make_client(args: argparse.Namespace) -> HilprobeClient:
    return HilprobeClient(args.host, args.token, timeout=args.http_timeout)


# -----------------------------------------------------------------------------
# list-targets
# -----------------------------------------------------------------------------


async def _list_targets(args: argparse.Namespace) -> int:
    async with _make_client(args) as client:
        targets = await client.list_targets()

    print("hilprobe server offers the following targets:")
    print(f"{'name':20} {'chip':14} {'state':6} {'queued':>6}")
    for target in targets:
        if target.up is False:
            state = "down"
        else:
            state = "busy" if target.busy else "idle"
        print(f"{target.name:20} {target.chip:14} {state:6} {target.queued:>6}")
    return 0


def cmd_list_targets(args: argparse.Namespace) -> int:
    """List the server's targets."""
    try:
        return asyncio.run(_list_targets(args))
    except (HilprobeError, httpx.HTTPError) as exc:
        print(f"Error getting list of targets: {exc}")
        return 1


# -----------------------------------------------------------------------------
# run
# -----------------------------------------------------------------------------


async def _run_one(
    client: HilprobeClient,
    semaphore: asyncio.Semaphore,
    path: Path,
    image: bytes,
    args: argparse.Namespace,
) -> bool:
    label = f"{args.target or '(embedded)'} {path}"
    async with semaphore:
        try:
            result = await client.run(image, target=args.target, timeout=args.timeout)
        except (HilprobeError, httpx.HTTPError) as exc:
            logger.error("=== %s: FAILED: %s", label, exc)
            return False

    if result.passed:
        logger.info("=== %s: OK (%s, %.2fs)", label, result.run_mode, result.duration)
        if args.show_output and result.output:
            logger.info("%s", result.output.rstrip("\n"))
        return True

    logger.error("=== %s: FAILED (%s): %s", label, result.status, result.message)
    if result.output:
        logger.error("%s", result.output.rstrip("\n"))
    return False


async def _run(args: argparse.Namespace) -> int:
    files = collect_files(args.files, args.recursive)
    if not files:
        logger.error("No files to run")
        return 1

    before = PassCache.load(args.cache)
    after = PassCache(before.path)
    jobs: list[tuple[Path, bytes, str]] = []
    for path in files:
        try:
            image = path.read_bytes()
        except OSError as exc:
            logger.error("Cannot read %s: %s", path, exc)
            return 1
        key = digest(image)
        if key in before:
            logger.info("=== %s: SKIPPED", path)
            after.add(key)
            continue
        jobs.append((path, image, key))

    logger.info("Running %d jobs (%d skipped)...", len(jobs), len(files) - len(jobs))
    semaphore = asyncio.Semaphore(args.jobs)
    async with _make_client(args) as client:
        results = await asyncio.gather(
            *(_run_one(client, semaphore, path, image, args) for path, image, _ in jobs)
        )

    for (_, _, key), passed in zip(jobs, results):
        if passed:
            after.add(key)
    if after.path is not None:
        after.save()

    succeeded = sum(1 for passed in results if passed)
    failed = len(results) - succeeded
    if failed:
        logger.error("%d succeeded, %d failed", succeeded, failed)
        return 1
    logger.info("All %d succeeded", succeeded)
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    """Run binaries on the server."""
    return asyncio.run(_run(args))


# -----------------------------------------------------------------------------
# Entry point
# -----------------------------------------------------------------------------


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError("must be at least 1")
    return number


def _positive_float(value: str) -> float:
    number = float(value)
    if number <= 0:
        raise argparse.ArgumentTypeError("must be positive")
    return number


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="hilprobe",
        description="Run firmware tests on a remote hilprobe server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--host",
        default=os.environ.get("HILPROBE_HOST"),
        help="Server URL (default: $HILPROBE_HOST)",
    )
    parser.add_argument(
        "--token",
        default=os.environ.get("HILPROBE_TOKEN"),
        help="Bearer credential (default: $HILPROBE_TOKEN)",
    )
    parser.add_argument(
        "--http-timeout",
        type=_positive_float,
        default=10.0,
        help="HTTP connect timeout in seconds (default: 10)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("list-targets", help="List the server's targets")

    run_parser = subparsers.add_parser("run", help="Run ELF binaries")
    run_parser.add_argument("files", nargs="+", help="ELF files to run")
    run_parser.add_argument(
        "-r", "--recursive", action="store_true",
        help="Run every file under the given directories"
    )
    run_parser.add_argument(
        "--target",
        help="Target to run on (default: the target embedded in each binary)"
    )
    run_parser.add_argument(
        "--timeout", type=_positive_float,
        help="Execution timeout in seconds (default: embedded or target default)"
    )
    run_parser.add_argument(
        "--cache", default=os.environ.get("HILPROBE_CACHE"),
        help="Cache file; binaries that passed before are skipped (default: $HILPROBE_CACHE)"
    )
    run_parser.add_argument(
        "-s", "--show-output", action="store_true",
        help="Show device output for passing runs, not just failures"
    )
    run_parser.add_argument(
        "--jobs", "-j", type=_positive_int, default=4,
        help="Maximum concurrent runs (default: 4)"
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    setup_logging(args.log_level)

    if not args.host or not args.host.startswith("http"):
        print("Error: --host (or HILPROBE_HOST) must be an http(s) URL")
        return 1
    if not args.token:
        print("Error: --token (or HILPROBE_TOKEN) is required")
        return 1

    if args.command == "list-targets":
        return cmd_list_targets(args)
    elif args.command == "run":
        return cmd_run(args)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
