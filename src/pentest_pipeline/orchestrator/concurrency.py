"""Concurrency primitives: key-scoped mutex, FIFO semaphore and cross-process file lock."""

from __future__ import annotations

import asyncio
import atexit
import json
import logging
import os
import random
import time
from collections import deque
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from pathlib import Path

from pentest_pipeline.orchestrator.errors import LockTimeoutError

logger = logging.getLogger(__name__)


class SessionMutex:
    """In-process mutual exclusion keyed by session id.

    Each acquirer chains onto the release future of the previous holder, which
    gives strict FIFO ordering per key. The key entry is dropped once the last
    queued holder releases.
    """

    def __init__(self) -> None:
        self._tails: dict[str, asyncio.Future[None]] = {}

    async def lock(self, key: str) -> Callable[[], None]:
        """Wait for the key and return the matching `unlock` callable."""

        loop = asyncio.get_running_loop()
        previous = self._tails.get(key)
        released: asyncio.Future[None] = loop.create_future()
        self._tails[key] = released

        def unlock() -> None:
            if not released.done():
                released.set_result(None)
            if self._tails.get(key) is released:
                del self._tails[key]

        if previous is not None and not previous.done():
            try:
                await asyncio.shield(previous)
            except asyncio.CancelledError:
                previous.add_done_callback(lambda _: unlock())
                raise
        return unlock

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        unlock = await self.lock(key)
        try:
            yield
        finally:
            unlock()

    def is_locked(self, key: str) -> bool:
        return key in self._tails


class FifoSemaphore:
    """Counting semaphore that hands permits to waiters strictly in arrival order."""

    def __init__(self, permits: int = 1) -> None:
        if permits <= 0:
            raise ValueError("permits must be > 0")
        self._permits = permits
        self._waiters: deque[asyncio.Future[None]] = deque()

    async def acquire(self) -> None:
        if self._permits > 0 and not self._waiters:
            self._permits -= 1
            return
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Permit was handed over right before cancellation; pass it on.
                self.release()
            raise

    def release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self._permits += 1

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())


git_semaphore = FifoSemaphore(1)

_HELD_LOCKS: set[Path] = set()


def _release_held_locks() -> None:
    for path in list(_HELD_LOCKS):
        try:
            path.unlink(missing_ok=True)
        except OSError:
            logger.debug("Could not remove lock file %s at exit", path, exc_info=True)
    _HELD_LOCKS.clear()


atexit.register(_release_held_locks)


class FileLock:
    """Cross-process exclusive lock backed by an atomically created lock file.

    The lock file holds ``{"pid": ..., "time": <epoch ms>}``. A lock older than
    ``stale_seconds`` or held by a dead process is removed. An empty or
    half-written lock file is treated as being written, never as stale.
    """

    def __init__(
        self,
        path: Path,
        *,
        stale_seconds: float = 30.0,
        timeout_seconds: float = 10.0,
        retry_interval_seconds: float = 0.05,
    ) -> None:
        self.path = Path(path)
        self.stale_seconds = stale_seconds
        self.timeout_seconds = timeout_seconds
        self.retry_interval_seconds = retry_interval_seconds
        self._held = False
        self._random = random.Random()  # noqa: S311

    @property
    def held(self) -> bool:
        return self._held

    async def acquire(self) -> None:
        deadline = time.monotonic() + self.timeout_seconds
        self.path.parent.mkdir(parents=True, exist_ok=True)
        while True:
            if self._try_create():
                self._held = True
                _HELD_LOCKS.add(self.path)
                return
            if self._remove_if_stale():
                continue
            if time.monotonic() >= deadline:
                raise LockTimeoutError(
                    f"Timed out acquiring lock {self.path} after {self.timeout_seconds:.1f}s",
                    context={"lock_path": str(self.path), "holder": self._read_holder()},
                )
            jitter = self._random.uniform(0, self.retry_interval_seconds)
            await asyncio.sleep(self.retry_interval_seconds + jitter)

    def release(self) -> None:
        if not self._held:
            return
        self.path.unlink(missing_ok=True)
        _HELD_LOCKS.discard(self.path)
        self._held = False

    async def __aenter__(self) -> FileLock:
        await self.acquire()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.release()

    def is_stale(self) -> bool:
        try:
            raw = self.path.read_text("utf-8")
        except OSError:
            return False
        return self._is_stale_content(raw)

    def _is_stale_content(self, raw: str) -> bool:
        if not raw.strip():
            return False
        try:
            holder = json.loads(raw)
        except json.JSONDecodeError:
            return False
        if not isinstance(holder, dict):
            return False

        acquired_ms = holder.get("time")
        if isinstance(acquired_ms, int | float):
            age_ms = time.time() * 1000 - acquired_ms
            if age_ms > self.stale_seconds * 1000:
                return True
        pid = holder.get("pid")
        if isinstance(pid, int) and not pid_alive(pid):
            return True
        return False

    def _remove_if_stale(self) -> bool:
        """Remove the lock file only if it still holds the stale holder record."""

        try:
            raw = self.path.read_text("utf-8")
        except FileNotFoundError:
            return True
        except OSError:
            return False
        if not self._is_stale_content(raw):
            return False
        try:
            if self.path.read_text("utf-8") != raw:
                return True
        except FileNotFoundError:
            return True
        logger.warning("Removing stale lock file %s", self.path)
        self.path.unlink(missing_ok=True)
        return True

    def _try_create(self) -> bool:
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump({"pid": os.getpid(), "time": int(time.time() * 1000)}, handle)
            handle.flush()
            os.fsync(handle.fileno())
        return True

    def _read_holder(self) -> str:
        try:
            return self.path.read_text("utf-8")
        except OSError:
            return ""


def pid_alive(pid: int) -> bool:
    """Return True when a process with `pid` exists."""

    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
