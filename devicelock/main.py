"""devicelock command-line interface."""

from __future__ import annotations

import argparse
import asyncio
import logging
import subprocess
import sys

from devicelock.config import LauncherConfig
from devicelock.device.registry import get_device_registry
from devicelock.models import DeviceRegistryError, Platform, RunnerError
from devicelock.runner.launcher import prepare_invocation, reset_lock_file, run_test_runner_with_retries


def _split_passthrough(argv: list[str]) -> tuple[list[str], list[str]]:
    """Everything after a bare ``--`` goes to the test runner untouched."""
    if "--" in argv:
        idx = argv.index("--")
        return argv[:idx], argv[idx + 1:]
    return argv, []


def _add_platform_flag(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--platform",
        required=True,
        choices=[p.value for p in Platform],
        help="Platform family whose device registry to use",
    )


def _add_test_flags(parser: argparse.ArgumentParser) -> None:
    """Flags for the test command. Unset flags fall back to the user config file."""
    parser.add_argument("specs", nargs="*", help="Spec files or directories to run")
    parser.add_argument("--test-runner", "-r", default=None, help="Test runner command (default: jest)")
    parser.add_argument("--runner-config", "-o", default=None, help="Test runner config file")
    parser.add_argument(
        "--device-type", "-t", default=None,
        help="Device type, e.g. ios.simulator or android.emulator",
    )
    parser.add_argument("--configuration", "-c", default=None, help="Device configuration name")
    parser.add_argument("--workers", "-w", type=int, default=None, help="Number of parallel workers")
    parser.add_argument("--retries", type=int, default=None, help="Re-run failed specs up to N times")
    parser.add_argument(
        "--keep-lockfile", action="store_true", default=None,
        help="Do not reset the device registry before the run",
    )
    parser.add_argument("--loglevel", "-l", default=None, help="Log level forwarded to workers")
    parser.add_argument("--cleanup", action="store_true", default=None, help="Shut devices down after the run")
    parser.add_argument("--reuse", action="store_true", default=None, help="Reuse installed apps")
    parser.add_argument("--headless", action="store_true", default=None, help="Run devices headless")
    parser.add_argument("--record-logs", default=None, help="Which device logs to record")
    parser.add_argument("--device-name", "-n", default=None, help="Override the device name")
    parser.add_argument("--no-color", action="store_true", default=None, help="Disable colors in output")
    parser.add_argument(
        "--inspect-brk", action="store_true", default=None,
        help="Run the test runner under the node inspector",
    )


def _cmd_test(args: argparse.Namespace, passthrough: list[str]) -> None:
    """Reset the registry and run the configured test runner."""
    config = LauncherConfig.from_user_config(
        test_runner=args.test_runner,
        runner_config=args.runner_config,
        device_type=args.device_type,
        configuration=args.configuration,
        workers=args.workers,
        retries=args.retries,
        keep_lockfile=args.keep_lockfile,
        loglevel=args.loglevel,
        cleanup=args.cleanup,
        reuse=args.reuse,
        headless=args.headless,
        record_logs=args.record_logs,
        device_name=args.device_name,
        no_color=args.no_color,
        inspect_brk=args.inspect_brk,
    )

    try:
        invocation, platform = prepare_invocation(config, passthrough, args.specs)
        if platform is not None and not config.keep_lockfile:
            asyncio.run(reset_lock_file(platform))
        run_test_runner_with_retries(invocation, config.retries)
    except (RunnerError, DeviceRegistryError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except subprocess.CalledProcessError as e:
        sys.exit(e.returncode or 1)


def _cmd_reset(args: argparse.Namespace) -> None:
    registry = get_device_registry(args.platform)
    try:
        asyncio.run(registry.reset())
    except DeviceRegistryError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    print(f"Reset {registry.registry_file}")


def _cmd_status(args: argparse.Namespace) -> None:
    registry = get_device_registry(args.platform)
    try:
        busy = asyncio.run(registry.busy_devices())
    except DeviceRegistryError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"Registry:  {registry.registry_file}")
    if not busy:
        print("Busy:      (none)")
        return
    print(f"Busy:      {len(busy)}")
    for device_id in busy:
        print(f"  {device_id}")


def cli(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    argv, passthrough = _split_passthrough(list(sys.argv[1:] if argv is None else argv))

    parser = argparse.ArgumentParser(
        prog="devicelock",
        description="Share test devices between parallel test workers",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # test
    test_parser = subparsers.add_parser("test", help="Run the test suite with a clean device registry")
    _add_test_flags(test_parser)

    # reset
    reset_parser = subparsers.add_parser("reset", help="Mark every device as free")
    _add_platform_flag(reset_parser)

    # status
    status_parser = subparsers.add_parser("status", help="Show busy devices")
    _add_platform_flag(status_parser)

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    # Dispatch
    if args.command == "test":
        _cmd_test(args, passthrough)
    elif args.command == "reset":
        _cmd_reset(args)
    elif args.command == "status":
        _cmd_status(args)


if __name__ == "__main__":
    cli()
