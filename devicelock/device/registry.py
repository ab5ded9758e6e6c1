"""Cross-process registry of busy test devices."""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from pathlib import Path

from pydantic import ValidationError

from devicelock.config import get_lock_timeout, get_registry_file, get_selector_timeout
from devicelock.device.lockfile import ExclusiveLockFile
from devicelock.models import (
    BusyList,
    DeviceAlreadyAllocatedError,
    InvalidDeviceIdError,
    Platform,
    TransactionContextError,
)

logger = logging.getLogger("devicelock.registry")

# Zero-argument callable returning the chosen device id, or an awaitable of it.
Selector = Callable[[], str | Awaitable[str]]


class DeviceRegistry:
    """Tracks which devices are busy across every test worker on this host.

    The busy list lives in a JSON document and is only read or rewritten
    while holding an exclusive file lock. Allocation and disposal each run
    a caller-supplied selector inside that lock; the selector may call
    :meth:`is_device_busy` to consult the snapshot taken when the lock was
    acquired.

    One handle must not run two transactions at once. Use separate handles
    (or separate processes) for concurrent workers.
    """

    def __init__(
        self,
        registry_file: Path,
        lock_timeout: float | None = None,
        selector_timeout: float | None = None,
    ):
        self.registry_file = Path(registry_file)
        self._lock = ExclusiveLockFile(self.registry_file, timeout=lock_timeout)
        self._selector_timeout = selector_timeout
        self._snapshot: tuple[str, ...] | None = None

    # ----------------------------------------------------------------
    # Platform handles
    # ----------------------------------------------------------------

    @classmethod
    def for_platform(cls, platform: Platform | str) -> DeviceRegistry:
        """Build a handle bound to the platform's registry document."""
        return cls(
            get_registry_file(platform),
            lock_timeout=get_lock_timeout(),
            selector_timeout=get_selector_timeout(),
        )

    @classmethod
    def ios(cls) -> DeviceRegistry:
        return cls.for_platform(Platform.IOS)

    @classmethod
    def android(cls) -> DeviceRegistry:
        return cls.for_platform(Platform.ANDROID)

    # ----------------------------------------------------------------
    # Public API
    # ----------------------------------------------------------------

    async def reset(self) -> None:
        """Forget every busy device.

        Only safe before a test run starts, when nothing can be mid-allocation.
        """
        async with self._lock.hold():
            self._write_state(BusyList())
        logger.info("Device registry reset: %s", self.registry_file)

    async def allocate_device(self, selector: Selector) -> str:
        """Run ``selector`` under the lock and mark the device it returns busy.

        Returns:
            The allocated device id.

        Raises:
            DeviceAlreadyAllocatedError: If the selector picked a busy device.
            InvalidDeviceIdError: If the selector returned a non-string or empty id.
            LockTimeoutError: If the registry lock could not be acquired.

        Anything the selector raises propagates unchanged and leaves the
        registry document as it was.
        """
        async with self._transaction() as busy:
            device_id = await self._run_selector(selector)
            if device_id in busy:
                raise DeviceAlreadyAllocatedError(device_id)

            self._write_state(BusyList([*busy, device_id]))

        logger.info("Device allocated: %s (%d busy)", device_id, len(busy) + 1)
        return device_id

    async def dispose_device(self, selector: Selector) -> str:
        """Run ``selector`` under the lock and mark the device it returns free.

        While the selector runs, the device being freed still reports busy.
        Disposing a device that is not busy only logs a warning.
        """
        async with self._transaction() as busy:
            device_id = await self._run_selector(selector)
            if device_id not in busy:
                logger.warning("Device %s was not allocated, ignoring disposal", device_id)

            self._write_state(BusyList([d for d in busy if d != device_id]))

        logger.info("Device disposed: %s", device_id)
        return device_id

    def is_device_busy(self, device_id: str) -> bool:
        """Check the snapshot of the transaction in progress.

        Raises:
            TransactionContextError: If called outside an allocate/dispose selector.
        """
        if self._snapshot is None:
            raise TransactionContextError(
                f"Cannot check whether device {device_id} is busy outside of "
                "an allocation or disposal"
            )
        return device_id in self._snapshot

    async def busy_devices(self) -> list[str]:
        """Return a copy of the busy list, read under the lock."""
        async with self._lock.hold():
            return list(self._read_state().root)

    # ----------------------------------------------------------------
    # Internal helpers
    # ----------------------------------------------------------------

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[tuple[str, ...]]:
        if self._snapshot is not None:
            raise RuntimeError("A device registry transaction is already open on this handle")

        async with self._lock.hold():
            self._snapshot = tuple(self._read_state().root)
            try:
                yield self._snapshot
            finally:
                self._snapshot = None

    async def _run_selector(self, selector: Selector) -> str:
        result = selector()
        if inspect.isawaitable(result):
            if self._selector_timeout is not None:
                result = await asyncio.wait_for(result, self._selector_timeout)
            else:
                result = await result

        if not isinstance(result, str) or not result:
            raise InvalidDeviceIdError(
                f"Device selector must return a non-empty device id, got {result!r}"
            )
        return result

    def _read_state(self) -> BusyList:
        """Read the busy list from disk. Missing or malformed reads as empty."""
        if not self.registry_file.exists():
            return BusyList()

        try:
            return BusyList.model_validate_json(self.registry_file.read_bytes())
        except ValidationError as e:
            logger.warning(
                "Ignoring malformed device registry %s: %s",
                self.registry_file,
                e.errors()[0]["msg"],
            )
            return BusyList()

    def _write_state(self, state: BusyList) -> None:
        """Atomically replace the document on disk."""
        self.registry_file.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.registry_file.with_name(self.registry_file.name + ".tmp")
        try:
            tmp.write_text(state.model_dump_json())
            os.replace(tmp, self.registry_file)
        except Exception:
            tmp.unlink(missing_ok=True)
            raise


_registries: dict[Platform, DeviceRegistry] = {}


def get_device_registry(platform: Platform | str) -> DeviceRegistry:
    """Return the process-wide handle for a platform, creating it on first use."""
    platform = Platform(platform)
    registry = _registries.get(platform)
    if registry is None:
        registry = _registries.setdefault(platform, DeviceRegistry.for_platform(platform))
    return registry
