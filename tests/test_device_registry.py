"""Unit tests for the device registry."""

from __future__ import annotations

import asyncio
import json

import pytest

from devicelock.config import get_registry_file
from devicelock.device.lockfile import ExclusiveLockFile
from devicelock.device.registry import DeviceRegistry, get_device_registry
from devicelock.models import (
    DeviceAlreadyAllocatedError,
    InvalidDeviceIdError,
    LockTimeoutError,
    Platform,
    TransactionContextError,
)


@pytest.fixture
def registry_file(tmp_path):
    return tmp_path / "device.registry.json"


@pytest.fixture
def registry(registry_file):
    """DeviceRegistry with a temp document and a short lock timeout."""
    return DeviceRegistry(registry_file, lock_timeout=2.0)


def _busy(registry_file) -> list[str]:
    return json.loads(registry_file.read_text())


class TestTransactionContext:
    """is_device_busy only works inside a selector."""

    def test_query_outside_transaction_fails(self, registry):
        with pytest.raises(TransactionContextError):
            registry.is_device_busy("emulator-5554")

    async def test_query_forbidden_between_transactions(self, registry):
        """Mirrors the lifecycle: allocate, dispose, failed allocate."""
        device_id = "emulator-5554"

        def allocate():
            assert registry.is_device_busy(device_id) is False
            return device_id

        assert await registry.allocate_device(allocate) == device_id
        with pytest.raises(TransactionContextError):
            registry.is_device_busy(device_id)

        def dispose():
            assert registry.is_device_busy(device_id) is True
            return device_id

        await registry.dispose_device(dispose)
        with pytest.raises(TransactionContextError):
            registry.is_device_busy(device_id)

        def failing():
            assert registry.is_device_busy(device_id) is False
            raise RuntimeError("boot failed")

        with pytest.raises(RuntimeError, match="boot failed"):
            await registry.allocate_device(failing)
        with pytest.raises(TransactionContextError):
            registry.is_device_busy(device_id)

    async def test_async_selector_sees_snapshot(self, registry):
        """Async selectors run inside the same transaction."""
        await registry.allocate_device(lambda: "emu-1")

        async def select():
            await asyncio.sleep(0)
            return "emu-2" if registry.is_device_busy("emu-1") else "emu-1"

        assert await registry.allocate_device(select) == "emu-2"


class TestAllocateDevice:
    """Allocation appends to the busy list."""

    async def test_allocate_then_dispose_scenario(self, registry, registry_file):
        """Empty -> emu-1 -> emu-1, emu-2 -> emu-2 -> empty."""
        assert await registry.allocate_device(lambda: "emu-1") == "emu-1"
        assert _busy(registry_file) == ["emu-1"]

        def pick_free():
            assert registry.is_device_busy("emu-1") is True
            return "emu-2"

        assert await registry.allocate_device(pick_free) == "emu-2"
        assert _busy(registry_file) == ["emu-1", "emu-2"]

        assert await registry.dispose_device(lambda: "emu-1") == "emu-1"
        assert _busy(registry_file) == ["emu-2"]

        await registry.reset()
        assert registry_file.read_text() == "[]"

    async def test_allocate_creates_missing_document(self, registry, registry_file):
        assert not registry_file.exists()
        await registry.allocate_device(lambda: "emu-1")
        assert _busy(registry_file) == ["emu-1"]

    async def test_allocate_busy_device_rejected(self, registry, registry_file):
        """A selector returning an already busy id leaves the document alone."""
        await registry.allocate_device(lambda: "emu-1")
        before = registry_file.read_bytes()

        with pytest.raises(DeviceAlreadyAllocatedError, match="emu-1"):
            await registry.allocate_device(lambda: "emu-1")

        assert registry_file.read_bytes() == before

    async def test_selector_failure_leaves_document_untouched(self, registry, registry_file):
        await registry.allocate_device(lambda: "emu-1")
        before = registry_file.read_bytes()

        class BootError(Exception):
            pass

        def select():
            raise BootError("emulator did not boot")

        with pytest.raises(BootError, match="did not boot"):
            await registry.allocate_device(select)

        assert registry_file.read_bytes() == before

    async def test_selector_failure_on_missing_document(self, registry, registry_file):
        """No document is created when the first allocation fails."""
        def select():
            raise ValueError("no emulator available")

        with pytest.raises(ValueError):
            await registry.allocate_device(select)
        assert not registry_file.exists()

    @pytest.mark.parametrize("bad", [None, "", 42])
    async def test_invalid_device_id_rejected(self, registry, registry_file, bad):
        await registry.reset()
        with pytest.raises(InvalidDeviceIdError):
            await registry.allocate_device(lambda: bad)
        assert registry_file.read_text() == "[]"

    async def test_malformed_document_reads_as_empty(self, registry, registry_file, caplog):
        registry_file.write_text("{ something }")

        def select():
            assert registry.is_device_busy("emu-1") is False
            return "emu-1"

        with caplog.at_level("WARNING", logger="devicelock.registry"):
            await registry.allocate_device(select)

        assert _busy(registry_file) == ["emu-1"]
        assert "malformed" in caplog.text

    async def test_non_string_entries_read_as_empty(self, registry, registry_file):
        registry_file.write_text("[1, 2, 3]")
        await registry.allocate_device(lambda: "emu-1")
        assert _busy(registry_file) == ["emu-1"]

    async def test_duplicate_entries_collapsed(self, registry, registry_file):
        registry_file.write_text('["emu-1", "emu-2", "emu-1"]')
        assert await registry.busy_devices() == ["emu-1", "emu-2"]

    async def test_selector_timeout(self, registry_file):
        registry = DeviceRegistry(registry_file, lock_timeout=2.0, selector_timeout=0.05)
        await registry.reset()

        async def slow_boot():
            await asyncio.sleep(5)
            return "emu-1"

        with pytest.raises(asyncio.TimeoutError):
            await registry.allocate_device(slow_boot)

        assert registry_file.read_text() == "[]"
        assert await registry.allocate_device(lambda: "emu-2") == "emu-2"

    async def test_cancelled_selector_releases_lock(self, registry, registry_file):
        await registry.reset()
        started = asyncio.Event()

        async def hang():
            started.set()
            await asyncio.sleep(60)
            return "emu-1"

        task = asyncio.create_task(registry.allocate_device(hang))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert registry_file.read_text() == "[]"
        with pytest.raises(TransactionContextError):
            registry.is_device_busy("emu-1")
        assert await registry.allocate_device(lambda: "emu-2") == "emu-2"


class TestDisposeDevice:
    """Disposal removes from the busy list."""

    async def test_dispose_reports_busy_until_commit(self, registry, registry_file):
        await registry.allocate_device(lambda: "emu-1")
        await registry.allocate_device(lambda: "emu-2")

        seen = []

        def select():
            seen.append(registry.is_device_busy("emu-1"))
            return "emu-1"

        await registry.dispose_device(select)
        assert seen == [True]
        assert _busy(registry_file) == ["emu-2"]

    async def test_dispose_unknown_device_is_noop(self, registry, registry_file, caplog):
        await registry.allocate_device(lambda: "emu-1")

        with caplog.at_level("WARNING", logger="devicelock.registry"):
            assert await registry.dispose_device(lambda: "emu-9") == "emu-9"

        assert _busy(registry_file) == ["emu-1"]
        assert "was not allocated" in caplog.text

    async def test_dispose_selector_failure_leaves_document_untouched(self, registry, registry_file):
        await registry.allocate_device(lambda: "emu-1")
        before = registry_file.read_bytes()

        def select():
            raise OSError("adb went away")

        with pytest.raises(OSError, match="adb went away"):
            await registry.dispose_device(select)

        assert registry_file.read_bytes() == before


class TestLockContention:
    """A handle that cannot get the lock gives up without touching the document."""

    @pytest.mark.parametrize("operation", ["allocate_device", "dispose_device"])
    async def test_lock_timeout_propagates(self, registry, registry_file, operation):
        await registry.allocate_device(lambda: "emu-1")
        before = registry_file.read_bytes()
        impatient = DeviceRegistry(registry_file, lock_timeout=0.2)
        calls = []

        def select():
            calls.append(True)
            return "emu-1"

        async with ExclusiveLockFile(registry_file).hold():
            with pytest.raises(LockTimeoutError):
                await getattr(impatient, operation)(select)

        assert calls == []
        assert registry_file.read_bytes() == before
        with pytest.raises(TransactionContextError):
            impatient.is_device_busy("emu-1")
        assert await impatient.dispose_device(select) == "emu-1"
        assert _busy(registry_file) == []


class TestReset:
    """reset() always produces an empty list."""

    async def test_reset_creates_missing_file(self, registry, registry_file):
        assert not registry_file.exists()
        await registry.reset()
        assert registry_file.read_text() == "[]"

    async def test_reset_overwrites_corrupt_file(self, registry, registry_file):
        registry_file.write_text("{ something }")
        await registry.reset()
        assert registry_file.read_text() == "[]"

    async def test_reset_clears_busy_devices(self, registry, registry_file):
        await registry.allocate_device(lambda: "emu-1")
        await registry.reset()
        assert await registry.busy_devices() == []

    async def test_reset_leaves_no_temp_file(self, registry, registry_file):
        await registry.reset()
        assert not list(registry_file.parent.glob("*.tmp"))


class TestPlatformHandles:
    """ios()/android() bind to fixed per-platform documents."""

    def test_ios(self, tmp_config_dir):
        registry = DeviceRegistry.ios()
        assert isinstance(registry, DeviceRegistry)
        assert registry.registry_file == get_registry_file(Platform.IOS)
        assert registry.registry_file == tmp_config_dir / "device.registry.json"

    def test_android(self, tmp_config_dir):
        registry = DeviceRegistry.android()
        assert registry.registry_file == tmp_config_dir / "android-device.registry.json"

    def test_construction_touches_no_disk(self, tmp_config_dir):
        DeviceRegistry.ios()
        DeviceRegistry.android()
        assert not tmp_config_dir.exists()

    def test_handles_are_fresh(self):
        assert DeviceRegistry.ios() is not DeviceRegistry.ios()

    def test_cached_registry_per_platform(self):
        ios = get_device_registry("ios")
        assert get_device_registry(Platform.IOS) is ios
        assert get_device_registry(Platform.ANDROID) is not ios

    def test_unknown_platform(self):
        with pytest.raises(ValueError):
            get_device_registry("windows")

    def test_timeouts_from_user_config(self, tmp_config_dir):
        tmp_config_dir.mkdir()
        (tmp_config_dir / "config.json").write_text(
            json.dumps({"lock_timeout": 12, "selector_timeout": 3.5})
        )
        registry = DeviceRegistry.android()
        assert registry._lock.timeout == 12.0
        assert registry._selector_timeout == 3.5
