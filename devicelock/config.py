"""Configuration paths and user settings for devicelock."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path

from devicelock.models import Platform


logger = logging.getLogger("devicelock.config")


def _resolve_config_dir() -> Path:
    override = os.environ.get("DEVICELOCK_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".devicelock"


CONFIG_DIR = _resolve_config_dir()
USER_CONFIG_FILE = CONFIG_DIR / "config.json"

REGISTRY_FILE_NAMES = {
    Platform.IOS: "device.registry.json",
    Platform.ANDROID: "android-device.registry.json",
}
LAST_FAILED_FILE_NAME = "last-failed-specs.json"

DEFAULT_LOCK_TIMEOUT = 300.0  # seconds; selectors may boot devices while holding the lock


def read_user_config() -> dict:
    """Read user config from ~/.devicelock/config.json. Returns {} if missing or invalid."""
    if not USER_CONFIG_FILE.exists():
        return {}
    try:
        config = json.loads(USER_CONFIG_FILE.read_text())
    except Exception as e:
        logger.warning("Failed to read config file %s: %s", USER_CONFIG_FILE, e)
        return {}
    if not isinstance(config, dict):
        logger.warning("Ignoring config file %s: expected a JSON object", USER_CONFIG_FILE)
        return {}
    return config


def get_registry_file(platform: Platform | str) -> Path:
    """Return the busy-list document path for a platform family."""
    return CONFIG_DIR / REGISTRY_FILE_NAMES[Platform(platform)]


def get_last_failed_file() -> Path:
    """Return the file where test runs record the specs that failed."""
    return CONFIG_DIR / LAST_FAILED_FILE_NAME


def get_lock_timeout() -> float | None:
    """Seconds to wait for the registry lock. ``null`` in config means wait forever."""
    config = read_user_config()
    if "lock_timeout" not in config:
        return DEFAULT_LOCK_TIMEOUT
    value = config["lock_timeout"]
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning("Invalid lock_timeout %r, using %ss", value, DEFAULT_LOCK_TIMEOUT)
        return DEFAULT_LOCK_TIMEOUT


def get_selector_timeout() -> float | None:
    """Ceiling on how long an async selector may hold the lock. Unbounded by default."""
    value = read_user_config().get("selector_timeout")
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning("Invalid selector_timeout %r, leaving selectors unbounded", value)
        return None


@dataclass
class LauncherConfig:
    """Settings for one `devicelock test` invocation.

    Values come from the ``launcher`` section of the user config file and
    are overridden by command-line flags.
    """

    test_runner: str = "jest"
    runner_config: str = ""
    specs: str = "e2e"
    device_type: str = ""
    configuration: str = ""
    retries: int = 0
    workers: int = 1
    keep_lockfile: bool = False
    loglevel: str = ""
    cleanup: bool = False
    reuse: bool = False
    headless: bool = False
    record_logs: str = ""
    device_name: str = ""
    no_color: bool = False
    inspect_brk: bool = False
    report_specs: bool | None = None
    extra_env: dict[str, object] = field(default_factory=dict)

    @classmethod
    def from_user_config(cls, **overrides) -> LauncherConfig:
        """Build from the user config file, letting non-None overrides win."""
        known = {f.name for f in fields(cls)}
        section = read_user_config().get("launcher", {})
        if not isinstance(section, dict):
            section = {}

        values = {k: v for k, v in section.items() if k in known}
        unknown = sorted(set(section) - known)
        if unknown:
            logger.warning("Ignoring unknown launcher settings: %s", ", ".join(unknown))
        if not isinstance(values.get("extra_env", {}), dict):
            logger.warning("Ignoring launcher extra_env: expected an object of variables")
            del values["extra_env"]

        values.update({k: v for k, v in overrides.items() if v is not None and k in known})
        return cls(**values)
