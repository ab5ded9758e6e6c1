"""Launch jest or mocha with a freshly reset device registry.

The launcher runs once per test session, before any worker exists:
it clears the busy list left behind by earlier (possibly crashed) runs,
turns the launcher settings into a runner command line, and re-runs the
failed specs when retries are requested.
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from devicelock.config import LauncherConfig, get_last_failed_file
from devicelock.device.registry import get_device_registry
from devicelock.models import Platform, RunnerError
from devicelock.runner.last_failed import clear_last_failed_specs, load_last_failed_specs

logger = logging.getLogger("devicelock.launcher")

ENV_PREFIX = "DEVICELOCK_"
LOCAL_BIN_DIR = Path("node_modules") / ".bin"


@dataclass
class RunnerInvocation:
    """A fully prepared test runner command."""

    command: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    specs: list[str] = field(default_factory=list)

    def command_line(self) -> list[str]:
        return [*shlex.split(self.command), *self.args, *self.specs]


def deduce_test_runner(command: str) -> str:
    """Map a runner command to "mocha" or "jest", or return it unchanged."""
    if "mocha" in command:
        return "mocha"
    if "jest" in command:
        return "jest"
    return command


def platform_from_device_type(device_type: str) -> Platform:
    """``"ios.simulator"`` -> ``Platform.IOS``."""
    prefix = device_type.split(".", 1)[0]
    try:
        return Platform(prefix)
    except ValueError:
        raise RunnerError(
            f'Unsupported device type "{device_type}"',
            hint="Device types start with the platform, e.g. ios.simulator or android.emulator",
        ) from None


def platform_exclusion_tag(platform: Platform | None) -> str | None:
    """Tag marking tests that belong to the other platform."""
    if platform == Platform.IOS:
        return ":android:"
    if platform == Platform.ANDROID:
        return ":ios:"
    return None


def has_multiple_workers(config: LauncherConfig) -> bool:
    return config.workers != 1


def _env_name(key: str) -> str:
    return ENV_PREFIX + key.upper()


def _shared_env(config: LauncherConfig) -> dict[str, str]:
    """Variables every runner gets: where to record failed specs, plus user extras."""
    env = {_env_name("last_failed_file"): str(get_last_failed_file())}
    env.update({k: _env_value(v) for k, v in config.extra_env.items() if v is not None})
    return env


def resolve_runner_executable(name: str) -> str:
    """Prefer the project's ``node_modules/.bin`` copy of a runner, then ``PATH``.

    Names that already contain a path are returned unchanged. An unresolvable
    name is returned as-is so the spawn error names what was missing.
    """
    if os.sep in name:
        return name
    local = shutil.which(name, path=str(Path.cwd() / LOCAL_BIN_DIR))
    if local:
        logger.debug("Using local %s at %s", name, local)
        return local
    return shutil.which(name) or name


def prepare_jest_args(
    config: LauncherConfig,
    platform: Platform | None,
    passthrough: list[str],
    specs: list[str],
) -> RunnerInvocation:
    """Jest receives options through the environment of its workers."""
    args: list[str] = []
    if config.no_color:
        args.append("--color=false")
    if config.runner_config:
        args += ["--config", config.runner_config]

    tag = platform_exclusion_tag(platform)
    if tag:
        args += ["--testNamePattern", f"^((?!{tag}).)*$"]
    args += ["--maxWorkers", str(config.workers)]
    args += passthrough

    options = {
        "configuration": config.configuration,
        "loglevel": config.loglevel,
        "cleanup": config.cleanup,
        "reuse": config.reuse,
        "headless": config.headless,
        "record_logs": config.record_logs,
        "device_name": config.device_name,
    }
    env = {_env_name(k): _env_value(v) for k, v in options.items() if v}
    env[_env_name("start_timestamp")] = str(int(time.time() * 1000))

    if platform == Platform.ANDROID:
        env[_env_name("read_only_emu")] = _env_value(has_multiple_workers(config))

    report_specs = config.report_specs
    if report_specs is None:
        report_specs = not has_multiple_workers(config)
    env[_env_name("report_specs")] = _env_value(report_specs)
    env.update(_shared_env(config))

    return RunnerInvocation(
        command=config.test_runner,
        args=args,
        env=env,
        specs=specs or [config.specs],
    )


def prepare_mocha_args(
    config: LauncherConfig,
    platform: Platform | None,
    passthrough: list[str],
    specs: list[str],
) -> RunnerInvocation:
    """Mocha receives options as command-line flags."""
    args: list[str] = []
    if config.runner_config:
        param = "--opts" if Path(config.runner_config).suffix == ".opts" else "--config"
        args += [param, config.runner_config]
    if config.no_color:
        args.append("--no-colors")

    tag = platform_exclusion_tag(platform)
    if tag:
        args += ["--grep", tag, "--invert"]

    flags = {
        "--configuration": config.configuration,
        "--loglevel": config.loglevel,
        "--record-logs": config.record_logs,
        "--device-name": config.device_name,
    }
    for flag, value in flags.items():
        if value:
            args += [flag, value]
    for flag, enabled in (
        ("--cleanup", config.cleanup),
        ("--reuse", config.reuse),
        ("--headless", config.headless),
    ):
        if enabled:
            args.append(flag)
    args += passthrough

    return RunnerInvocation(
        command=config.test_runner,
        args=args,
        env=_shared_env(config),
        specs=specs or [config.specs],
    )


PrepareArgs = Callable[[LauncherConfig, Platform | None, list[str], list[str]], RunnerInvocation]


def choose_prepare_args(runner: str, config: LauncherConfig, platform: Platform | None) -> PrepareArgs:
    """Pick the argument builder for a runner, warning about unsupported combos."""
    if runner == "mocha":
        if has_multiple_workers(config):
            logger.warning(
                "Can not use --workers. Parallel test execution is only supported with Jest"
            )
        return prepare_mocha_args

    if runner == "jest":
        if platform == Platform.ANDROID and has_multiple_workers(config):
            logger.warning(
                "Multiple workers is an experimental feature on Android and needs "
                "an emulator that supports read-only mode"
            )
        return prepare_jest_args

    raise RunnerError(
        f'"{runner}" is not supported by the devicelock launcher.',
        hint="You can still run your tests with the runner's own CLI tool",
    )


def prepare_invocation(
    config: LauncherConfig,
    passthrough: list[str] | None = None,
    specs: list[str] | None = None,
) -> tuple[RunnerInvocation, Platform | None]:
    """Build the runner command for a launcher config."""
    platform = platform_from_device_type(config.device_type) if config.device_type else None
    runner = deduce_test_runner(config.test_runner)
    prepare = choose_prepare_args(runner, config, platform)
    invocation = prepare(config, platform, list(passthrough or []), list(specs or []))

    command = shlex.split(invocation.command)
    if command:
        command[0] = resolve_runner_executable(command[0])
    if config.inspect_brk:
        command = ["node", "--inspect-brk", *command]
    invocation.command = shlex.join(command)
    return invocation, platform


def _env_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _format_env(env: dict[str, str]) -> str:
    return "".join(f"{key}={shlex.quote(value)} " for key, value in env.items())


def launch_test_runner(invocation: RunnerInvocation) -> None:
    """Run the test runner to completion.

    Raises:
        subprocess.CalledProcessError: If the runner exits non-zero.
    """
    command = invocation.command_line()
    logger.info("%s%s", _format_env(invocation.env), shlex.join(command))
    subprocess.run(command, env={**os.environ, **invocation.env}, check=True)


def run_test_runner_with_retries(invocation: RunnerInvocation, retries: int = 0) -> None:
    """Run the tests, then re-run only the failed specs up to ``retries`` times."""
    runs_left = 1 + max(retries, 0)
    clear_last_failed_specs()

    while True:
        try:
            launch_test_runner(invocation)
            return
        except subprocess.CalledProcessError:
            runs_left -= 1
            last_failed = load_last_failed_specs()
            if not last_failed or runs_left <= 0:
                raise

            invocation.specs = last_failed
            logger.error(
                "Test run has failed for the following specs:\n%s", "\n".join(last_failed)
            )
            logger.error("Re-running tests for the failed specs...")


async def reset_lock_file(platform: Platform) -> None:
    """Clear the platform's busy list before workers start allocating."""
    await get_device_registry(platform).reset()
