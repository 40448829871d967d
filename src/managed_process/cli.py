"""Command line entry point.

Runs one command as a managed operation and prints its CaptureResult as JSON::

    python -m managed_process.cli --timeout-ms 5000 -- borg --version
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from managed_process import __version__
from managed_process.capture import CaptureResult
from managed_process.process_manager import ProcessManager

EXIT_TIMEOUT = 124
EXIT_SPAWN_ERROR = 127


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="managed-process",
        description="Run a command with timeout enforcement and print the captured result as JSON.",
    )
    parser.add_argument("--timeout-ms", type=float, default=None, help="Kill the command after this many ms")
    parser.add_argument("--encoding", default="utf-8", help="Text encoding of the command's output")
    parser.add_argument("--stdin", default=None, help="Text written to the command's stdin")
    parser.add_argument("--cwd", default=None, help="Working directory for the command")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("command", nargs=argparse.REMAINDER, help="Command and arguments")
    return parser.parse_args(argv)


async def _run(args: argparse.Namespace) -> CaptureResult:
    manager = ProcessManager()
    program, *rest = args.command
    return await manager.run(
        program,
        rest,
        timeout_ms=args.timeout_ms,
        encoding=args.encoding,
        stdin=args.stdin,
        cwd=args.cwd,
    )


def exit_status(result: CaptureResult) -> int:
    if result.timed_out:
        return EXIT_TIMEOUT
    if result.error is not None:
        return EXIT_SPAWN_ERROR
    return result.exit_code if result.exit_code is not None else 1


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    if args.command and args.command[0] == "--":
        args.command = args.command[1:]
    if not args.command:
        print(f"managed-process {__version__}: no command given (see --help)")
        return 0

    result = asyncio.run(_run(args))
    print(json.dumps(result.to_dict(), indent=2))
    return exit_status(result)


if __name__ == "__main__":
    sys.exit(main())
