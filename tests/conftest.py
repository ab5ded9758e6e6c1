"""Shared fixtures: keep every test away from the real ~/.devicelock."""

from __future__ import annotations

import pytest


@pytest.fixture(autouse=True)
def tmp_config_dir(tmp_path, monkeypatch):
    """Redirect CONFIG_DIR and USER_CONFIG_FILE to a temp directory."""
    config_dir = tmp_path / "devicelock-home"
    monkeypatch.setattr("devicelock.config.CONFIG_DIR", config_dir)
    monkeypatch.setattr("devicelock.config.USER_CONFIG_FILE", config_dir / "config.json")
    monkeypatch.setattr("devicelock.device.registry._registries", {})
    return config_dir
