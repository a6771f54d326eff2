#!/usr/bin/env python3
"""
cli.py - uqdev command line

Usage:
    uqdev run-tests                      # uses ./tests.toml
    uqdev run-tests -c my_tests.toml --fail-fast
    uqdev build path/to/package -q
    uqdev inject-message -u http://localhost:8080 -p tester:tester:uqbar -i '"Pass"'
    uqdev start-package -p path/to/package -u http://localhost:8080

run-tests exits 0 only if every test passed.
"""

import argparse
import asyncio
import logging
import signal
import sys
from dataclasses import replace
from pathlib import Path

import requests

from uqdev import __version__, build, inject_message, start_package
from uqdev.config import load_config
from uqdev.errors import HarnessError
from uqdev.harness.coordinator import TestRunCoordinator

LOG_FORMAT = '[%(name)s] %(levelname)s: %(message)s'


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="uqdev",
        description="Development tools for Uqbar.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the tests described in ./tests.toml
  uqdev run-tests

  # Stop at the first failing test
  uqdev run-tests -c tests.toml --fail-fast
        """
    )
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Verbose output (debug logging)"
    )

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    build_cmd = subparsers.add_parser("build", help="Build an Uqbar package")
    build_cmd.add_argument(
        "project_dir",
        type=Path,
        nargs="?",
        default=Path.cwd(),
        help="The package directory to build (default: current directory)"
    )
    build_cmd.add_argument(
        "--quiet", "-q",
        action="store_true",
        help="Do not print cargo stdout/stderr"
    )

    inject_cmd = subparsers.add_parser("inject-message", help="Inject a message to a running node")
    inject_cmd.add_argument("--url", "-u", required=True, help="Node URL, e.g. http://localhost:8080")
    inject_cmd.add_argument("--process", "-p", required=True, help="Process to send message to")
    inject_cmd.add_argument("--ipc", "-i", required=True, help="IPC in JSON format")
    inject_cmd.add_argument("--node", "-n", default=None, help="Node ID (default: our)")
    inject_cmd.add_argument("--bytes", "-b", default=None, help="Send bytes from this file")

    start_cmd = subparsers.add_parser("start-package", help="Start a built Uqbar process on a node")
    start_cmd.add_argument(
        "--pkg-dir", "-p",
        type=Path,
        default=Path.cwd(),
        help="The package directory to start (default: current directory)"
    )
    start_cmd.add_argument("--url", "-u", required=True, help="Node URL, e.g. http://localhost:8080")
    start_cmd.add_argument("--node", "-n", default=None, help="Node ID (default: our)")

    run_cmd = subparsers.add_parser("run-tests", help="Run Uqbar tests")
    run_cmd.add_argument(
        "--config", "-c",
        type=Path,
        default=Path("tests.toml"),
        help="Path to tests configuration file (default: tests.toml)"
    )
    run_cmd.add_argument(
        "--fail-fast",
        action="store_true",
        help="Skip remaining tests after the first one that doesn't pass"
    )

    return parser


def configure_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        stream=sys.stderr,
    )


async def _run_cancellable(coordinator: TestRunCoordinator):
    # SIGTERM cancels the run so cleanup still happens.
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    loop.add_signal_handler(signal.SIGTERM, task.cancel)
    try:
        return await coordinator.run()
    finally:
        loop.remove_signal_handler(signal.SIGTERM)


def run_tests(args, usage: str) -> int:
    if not args.config.exists():
        print(f"Configuration file not found: {args.config}\nUsage:\n{usage}")
        return 1

    print(f"Loading config from: {args.config}")
    config = load_config(args.config)
    if args.fail_fast:
        config = replace(config, fail_fast=True)

    try:
        summary = asyncio.run(_run_cancellable(TestRunCoordinator(config)))
    except (KeyboardInterrupt, asyncio.CancelledError):
        print("\n✗ Interrupted (all nodes cleaned up)")
        return 130

    print("\n" + "=" * 60)
    print("Results")
    print("=" * 60)
    for result in summary.results:
        mark = "✓" if result.passed else "✗"
        print(f"  {mark} Test {result.index + 1}: {result.describe()}")

    if summary.success:
        print("\n✓ SUCCESS")
    else:
        failed = sum(1 for r in summary.results if not r.passed)
        print(f"\n✗ FAILED ({failed}/{len(summary.results)} test(s) did not pass)")
    return summary.exit_code


def main(argv=None) -> int:
    """
    Main entry point.

    Returns:
        Process exit code
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    try:
        if args.command == "build":
            build.compile_package(args.project_dir, verbose=not args.quiet)
            return 0

        elif args.command == "inject-message":
            inject_message.execute(args.url, args.process, args.ipc,
                                   node=args.node, bytes_path=args.bytes)
            return 0

        elif args.command == "start-package":
            start_package.execute(args.pkg_dir, args.url, node=args.node)
            return 0

        elif args.command == "run-tests":
            return run_tests(args, parser.format_usage())

    except FileNotFoundError as e:
        print(f"\nERROR: File not found: {e}", file=sys.stderr)
        return 1

    except ValueError as e:
        print(f"\nERROR: Invalid configuration:", file=sys.stderr)
        print(f"  {e}", file=sys.stderr)
        return 1

    except (HarnessError, inject_message.InjectMessageError, requests.RequestException) as e:
        print(f"\nERROR: {e}", file=sys.stderr)
        return 1

    parser.print_usage()
    return 1


if __name__ == "__main__":
    sys.exit(main())
