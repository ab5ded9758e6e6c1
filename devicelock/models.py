"""Core data models and error types for the device registry."""

from __future__ import annotations

import enum
from pathlib import Path

from pydantic import Field, RootModel, field_validator


class Platform(str, enum.Enum):
    """Platform families that each own a separate device registry."""

    IOS = "ios"
    ANDROID = "android"


class BusyList(RootModel[list[str]]):
    """Device ids currently allocated, in allocation order.

    This is the whole persisted document: a JSON array of strings.
    """

    root: list[str] = Field(default_factory=list)

    @field_validator("root")
    @classmethod
    def _drop_duplicates(cls, value: list[str]) -> list[str]:
        # Keep the first occurrence so allocation order survives.
        return list(dict.fromkeys(value))

    def __contains__(self, device_id: object) -> bool:
        return device_id in self.root

    def __len__(self) -> int:
        return len(self.root)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class DeviceRegistryError(Exception):
    """Base class for device registry failures."""


class LockTimeoutError(DeviceRegistryError):
    """The registry lock could not be acquired within the allowed time."""

    def __init__(self, lock_path: Path, timeout: float):
        self.lock_path = lock_path
        self.timeout = timeout
        super().__init__(
            f"Timed out after {timeout}s waiting for exclusive lock on {lock_path}"
        )


class TransactionContextError(DeviceRegistryError):
    """Busy status was queried with no allocation or disposal in progress."""


class DeviceAlreadyAllocatedError(DeviceRegistryError):
    """A selector returned a device id that is already in the busy list."""

    def __init__(self, device_id: str):
        self.device_id = device_id
        super().__init__(f"Device {device_id} is already allocated")


class InvalidDeviceIdError(DeviceRegistryError):
    """A selector returned something that is not a usable device id."""


class RunnerError(Exception):
    """The test runner could not be launched as configured."""

    def __init__(self, message: str, hint: str = ""):
        self.message = message
        self.hint = hint
        super().__init__(message)

    def __str__(self) -> str:
        if self.hint:
            return f"{self.message}\nHINT: {self.hint}"
        return self.message
