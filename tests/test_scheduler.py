from __future__ import annotations

import asyncio
from datetime import time

import pytest

from pyhassd.exceptions import HassError
from pyhassd.scheduler import Scheduler


async def _until(predicate, timeout: float = 1.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_poll(), timeout)


@pytest.mark.asyncio
async def test_run_in_fires_once() -> None:
    scheduler = Scheduler()
    fired = asyncio.Event()
    calls: list[int] = []

    async def job() -> None:
        calls.append(1)
        fired.set()

    handle = scheduler.run_in(0.01, job)
    assert handle.next_run_time is not None
    await asyncio.wait_for(fired.wait(), 1.0)
    await _until(lambda: handle.done)

    assert calls == [1]
    assert handle.runs == 1
    assert scheduler.pending_jobs == 0
    await scheduler.stop()


@pytest.mark.asyncio
async def test_run_every_survives_failing_callback() -> None:
    scheduler = Scheduler()
    calls: list[int] = []

    def flaky() -> None:
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("first run fails")

    handle = scheduler.run_every(0.01, flaky, name="flaky")
    await _until(lambda: len(calls) >= 3)

    assert not handle.done
    await scheduler.stop()
    assert handle.done


@pytest.mark.asyncio
async def test_run_daily_and_cron_compute_next_run() -> None:
    scheduler = Scheduler()

    daily = scheduler.run_daily(time(3, 15), lambda: None)
    cron = scheduler.run_cron("*/5 * * * *", lambda: None, name="every-five")

    assert daily.next_run_time is not None
    assert (daily.next_run_time.hour, daily.next_run_time.minute) == (3, 15)
    assert cron.next_run_time is not None
    assert cron.next_run_time.minute % 5 == 0
    assert cron.name == "every-five"
    assert scheduler.pending_jobs == 2
    await scheduler.stop()


@pytest.mark.asyncio
async def test_run_cron_rejects_malformed_expression() -> None:
    scheduler = Scheduler()
    with pytest.raises(ValueError):
        scheduler.run_cron("not a crontab", lambda: None)
    await scheduler.stop()


@pytest.mark.asyncio
async def test_cancel_single_job() -> None:
    scheduler = Scheduler()
    calls: list[int] = []
    handle = scheduler.run_in(0.01, lambda: calls.append(1))

    handle.cancel()
    handle.cancel()
    await asyncio.sleep(0.03)

    assert handle.done
    assert handle.next_run_time is None
    assert calls == []
    assert scheduler.pending_jobs == 0
    await scheduler.stop()


@pytest.mark.asyncio
async def test_stop_cancels_running_job_and_waits() -> None:
    scheduler = Scheduler()
    started = asyncio.Event()
    outcome: list[str] = []

    async def long_job() -> None:
        started.set()
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            outcome.append("cancelled")
            raise

    scheduler.run_in(0.0, long_job)
    await asyncio.wait_for(started.wait(), 1.0)

    await asyncio.wait_for(scheduler.stop(), 1.0)
    assert outcome == ["cancelled"]


@pytest.mark.asyncio
async def test_stop_is_idempotent_and_rejects_new_jobs() -> None:
    scheduler = Scheduler()
    scheduler.run_daily(time(3, 0), lambda: None)
    assert scheduler.pending_jobs == 1

    await scheduler.stop()
    await scheduler.stop()

    assert not scheduler.is_running
    assert scheduler.pending_jobs == 0
    with pytest.raises(HassError):
        scheduler.run_in(1, lambda: None)


def test_run_every_rejects_non_positive_interval() -> None:
    with pytest.raises(ValueError):
        Scheduler().run_every(0, lambda: None)
