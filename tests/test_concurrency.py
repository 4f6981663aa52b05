from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from pathlib import Path

import allure
import pytest

from pentest_pipeline.orchestrator.concurrency import FifoSemaphore, FileLock, SessionMutex
from pentest_pipeline.orchestrator.context import (
    UnitContext,
    UnitContextFilter,
    current_unit_context,
    set_attempt,
    unit_context,
)
from pentest_pipeline.orchestrator.contracts import atomic_write_json, load_json
from pentest_pipeline.orchestrator.errors import LockTimeoutError

pytestmark = [
    allure.epic("Crash Safety"),
    allure.feature("Concurrency Primitives"),
]

DEAD_PID = 99_999_999


@pytest.mark.asyncio
async def test_session_mutex_serializes_holders_in_arrival_order() -> None:
    mutex = SessionMutex()
    order: list[str] = []

    async def worker(name: str, delay: float) -> None:
        async with mutex.hold("session-1"):
            order.append(f"{name}:enter")
            await asyncio.sleep(delay)
            order.append(f"{name}:exit")

    await asyncio.gather(worker("a", 0.02), worker("b", 0.0), worker("c", 0.0))

    assert order == ["a:enter", "a:exit", "b:enter", "b:exit", "c:enter", "c:exit"]
    assert not mutex.is_locked("session-1")


@pytest.mark.asyncio
async def test_session_mutex_keys_are_independent() -> None:
    mutex = SessionMutex()
    unlock_a = await mutex.lock("a")
    unlock_b = await asyncio.wait_for(mutex.lock("b"), timeout=1)

    assert mutex.is_locked("a")
    assert mutex.is_locked("b")
    unlock_a()
    unlock_b()
    assert not mutex.is_locked("a")


@pytest.mark.asyncio
async def test_fifo_semaphore_hands_single_slot_in_order() -> None:
    semaphore = FifoSemaphore(1)
    active = 0
    peak = 0
    order: list[int] = []

    async def command(index: int) -> None:
        nonlocal active, peak
        async with semaphore.slot():
            active += 1
            peak = max(peak, active)
            order.append(index)
            await asyncio.sleep(0)
            active -= 1

    await asyncio.gather(*(command(index) for index in range(5)))

    assert peak == 1
    assert order == [0, 1, 2, 3, 4]
    assert semaphore.waiting == 0


@pytest.mark.asyncio
async def test_file_lock_second_acquirer_waits_for_release(tmp_path: Path) -> None:
    path = tmp_path / "store.json.lock"
    first = FileLock(path, timeout_seconds=2.0, retry_interval_seconds=0.01)
    second = FileLock(path, timeout_seconds=2.0, retry_interval_seconds=0.01)

    await first.acquire()
    holder = json.loads(path.read_text("utf-8"))
    assert holder["pid"] == os.getpid()

    waiter = asyncio.create_task(second.acquire())
    await asyncio.sleep(0.05)
    assert not waiter.done()

    first.release()
    await asyncio.wait_for(waiter, timeout=2)
    assert second.held
    second.release()
    assert not path.exists()


@pytest.mark.asyncio
async def test_file_lock_times_out_while_holder_is_alive(tmp_path: Path) -> None:
    path = tmp_path / "busy.lock"
    holder = FileLock(path)
    await holder.acquire()

    contender = FileLock(path, timeout_seconds=0.1, retry_interval_seconds=0.01)
    with pytest.raises(LockTimeoutError):
        await contender.acquire()
    holder.release()


@pytest.mark.asyncio
async def test_file_lock_takes_over_lock_of_dead_process(tmp_path: Path) -> None:
    path = tmp_path / "dead.lock"
    path.write_text(json.dumps({"pid": DEAD_PID, "time": int(time.time() * 1000)}), "utf-8")

    lock = FileLock(path, timeout_seconds=1.0)
    assert lock.is_stale()
    await lock.acquire()
    assert json.loads(path.read_text("utf-8"))["pid"] == os.getpid()
    lock.release()


@pytest.mark.asyncio
async def test_file_lock_takes_over_lock_past_age_threshold(tmp_path: Path) -> None:
    path = tmp_path / "old.lock"
    an_hour_ago = int((time.time() - 3600) * 1000)
    path.write_text(json.dumps({"pid": os.getpid(), "time": an_hour_ago}), "utf-8")

    lock = FileLock(path, stale_seconds=30.0, timeout_seconds=1.0)
    await lock.acquire()
    assert lock.held
    lock.release()


def test_file_lock_treats_empty_or_partial_file_as_being_written(tmp_path: Path) -> None:
    path = tmp_path / "partial.lock"
    lock = FileLock(path)

    path.write_text("", "utf-8")
    assert not lock.is_stale()
    path.write_text('{"pid": 12', "utf-8")
    assert not lock.is_stale()


def test_atomic_write_keeps_previous_document_when_rename_never_happens(tmp_path: Path) -> None:
    path = tmp_path / "session.json"
    atomic_write_json(path, {"version": 1})

    # Simulate a crash after the temp file was written but before the rename.
    tmp_file = path.with_name(f"{path.name}.tmp")
    tmp_file.write_text('{"version": 2, "agents": {', "utf-8")

    assert load_json(path) == {"version": 1}

    atomic_write_json(path, {"version": 2})
    assert load_json(path) == {"version": 2}
    assert not tmp_file.exists()


@pytest.mark.asyncio
async def test_unit_context_is_isolated_per_task(tmp_path: Path) -> None:
    seen: dict[str, tuple[str, int]] = {}

    async def run(unit: str, attempt: int) -> None:
        with unit_context(UnitContext(session_id="s", unit=unit, workspace=tmp_path)):
            set_attempt(attempt)
            await asyncio.sleep(0.01)
            context = current_unit_context()
            assert context is not None
            seen[unit] = (context.unit, context.attempt)

    await asyncio.gather(run("xss-vuln", 2), run("sqli-vuln", 3))

    assert seen == {"xss-vuln": ("xss-vuln", 2), "sqli-vuln": ("sqli-vuln", 3)}
    assert current_unit_context() is None


def test_unit_context_filter_tags_log_records(tmp_path: Path) -> None:
    record = logging.LogRecord("test", logging.INFO, __file__, 1, "message", None, None)
    context_filter = UnitContextFilter()

    context_filter.filter(record)
    assert (record.unit, record.attempt) == ("-", 0)

    with unit_context(UnitContext(session_id="s", unit="recon", workspace=tmp_path, attempt=2)):
        context_filter.filter(record)
    assert (record.unit, record.attempt) == ("recon", 2)
