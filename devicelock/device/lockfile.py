"""Cross-process exclusive lock backed by flock(2)."""

from __future__ import annotations

import asyncio
import fcntl
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import IO

from devicelock.models import LockTimeoutError

logger = logging.getLogger("devicelock.lockfile")

DEFAULT_POLL_INTERVAL = 0.05


class ExclusiveLockFile:
    """Exclusive lock on a sidecar ``<path>.lock`` file.

    The kernel drops a flock when the holding process exits, so a crashed
    holder never leaves the lock stuck. Separate instances exclude each
    other even inside one process, because each acquisition opens its own
    file description.
    """

    def __init__(
        self,
        path: Path,
        timeout: float | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self.path = Path(path)
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._fd: IO[str] | None = None

    @property
    def lock_path(self) -> Path:
        return self.path.with_name(self.path.name + ".lock")

    @property
    def locked(self) -> bool:
        """Whether this instance currently holds the lock."""
        return self._fd is not None

    async def acquire(self) -> None:
        """Wait until the lock is ours.

        Raises:
            LockTimeoutError: If ``timeout`` seconds pass without getting the lock.
            RuntimeError: If this instance already holds the lock.
        """
        if self._fd is not None:
            raise RuntimeError(f"Lock {self.lock_path} is already held by this instance")

        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = open(self.lock_path, "a")

        start = time.monotonic()
        waited = False
        try:
            while True:
                try:
                    fcntl.flock(fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    elapsed = time.monotonic() - start
                    if self.timeout is not None and elapsed >= self.timeout:
                        raise LockTimeoutError(self.lock_path, self.timeout)
                    if not waited:
                        logger.debug("Waiting for lock %s", self.lock_path)
                        waited = True
                    await asyncio.sleep(self.poll_interval)
        except BaseException:
            fd.close()
            raise

        if waited:
            logger.debug(
                "Acquired lock %s after %.2fs", self.lock_path, time.monotonic() - start
            )
        self._fd = fd

    def release(self) -> None:
        """Give the lock up. Does nothing if it is not held."""
        fd, self._fd = self._fd, None
        if fd is None:
            return
        try:
            fcntl.flock(fd.fileno(), fcntl.LOCK_UN)
        finally:
            fd.close()

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[None]:
        """Context manager for exclusive file locking."""
        await self.acquire()
        try:
            yield
        finally:
            self.release()
