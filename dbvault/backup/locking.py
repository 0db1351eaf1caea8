"""Exclusive lock serializing backup cycles and ledger mutations."""

from __future__ import annotations

import asyncio
import fcntl
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from dbvault.backup.errors import CycleInProgressError, StorageError
from dbvault.utils import LoggerMixin


class CycleLock(LoggerMixin):
    """In-process mutex plus an optional advisory lock file.

    The lock is reentrant for the task that holds it, so a cycle can call
    locked service operations without deadlocking on itself. Other tasks
    queue, or fail fast with ``CycleInProgressError`` when ``wait=False``.
    The lock file guards against a second process using the same backup
    directory.
    """

    def __init__(self, lock_path: Path | None = None) -> None:
        self.lock_path = Path(lock_path) if lock_path is not None else None
        self._lock = asyncio.Lock()
        self._owner: asyncio.Task | None = None
        self._depth = 0
        self._fd: int | None = None

    def locked(self) -> bool:
        return self._lock.locked()

    @asynccontextmanager
    async def hold(self, *, wait: bool = True) -> AsyncIterator[None]:
        task = asyncio.current_task()
        if self._owner is not None and self._owner is task:
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1
            return

        if not wait and self._lock.locked():
            raise CycleInProgressError("A backup cycle is already in progress")

        await self._lock.acquire()
        try:
            if self.lock_path is not None:
                await self._acquire_file_lock(wait)
            self._owner = task
            self._depth = 1
            try:
                yield
            finally:
                self._owner = None
                self._depth = 0
                self._release_file_lock()
        finally:
            self._lock.release()

    async def _acquire_file_lock(self, wait: bool) -> None:
        assert self.lock_path is not None
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o600)
        except OSError as e:
            raise StorageError(f"Cannot open lock file {self.lock_path}: {e}") from e

        try:
            if wait:
                await asyncio.to_thread(fcntl.flock, fd, fcntl.LOCK_EX)
            else:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            os.close(fd)
            raise CycleInProgressError(
                "Another process holds the backup directory lock"
            ) from e
        except BaseException:
            os.close(fd)
            raise
        self._fd = fd
        self.logger.debug("Lock file acquired", path=str(self.lock_path))

    def _release_file_lock(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
