"""Specs recorded as failed by the previous test run."""

from __future__ import annotations

import json
import logging

from devicelock.config import get_last_failed_file

logger = logging.getLogger("devicelock.launcher")


def load_last_failed_specs() -> list[str] | None:
    """Return the specs that failed last run, or None if nothing usable was recorded."""
    path = get_last_failed_file()
    if not path.exists():
        return None

    try:
        specs = json.loads(path.read_text())
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Failed to read last failed specs from %s: %s", path, e)
        return None

    if not isinstance(specs, list):
        logger.warning("Ignoring %s: expected a JSON list of spec paths", path)
        return None

    specs = [str(s) for s in specs if s]
    return specs or None


def save_last_failed_specs(specs: list[str]) -> None:
    """Record failed specs so the launcher can re-run just those."""
    path = get_last_failed_file()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(specs, indent=2))


def clear_last_failed_specs() -> None:
    """Forget earlier failures and leave the runner somewhere to record new ones."""
    path = get_last_failed_file()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.unlink(missing_ok=True)
