"""
Tests for the interval job scheduler.
"""

import asyncio
from datetime import timedelta

import pytest

from app.infrastructure.scheduler import JobScheduler

from conftest import T0, FakeClock


class Recorder:
    def __init__(self, fail: bool = False):
        self.calls = []
        self.fail = fail

    async def __call__(self, now):
        self.calls.append(now)
        if self.fail:
            raise RuntimeError("database unavailable")


@pytest.fixture
def scheduler(clock):
    return JobScheduler(clock=clock)


@pytest.mark.asyncio
async def test_job_runs_once_per_interval(scheduler, clock):
    job = Recorder()
    scheduler.add_job("sweep", 60, job)

    assert await scheduler.run_pending() == []

    assert await scheduler.run_pending(clock.advance(seconds=60)) == ["sweep"]
    assert await scheduler.run_pending(clock.advance(seconds=30)) == []
    assert await scheduler.run_pending(clock.advance(seconds=30)) == ["sweep"]

    assert job.calls == [T0 + timedelta(seconds=60), T0 + timedelta(seconds=120)]


@pytest.mark.asyncio
async def test_run_immediately(scheduler):
    job = Recorder()
    registered = scheduler.add_job("sweep", 300, job, run_immediately=True)

    assert registered.next_run == T0
    assert await scheduler.run_pending() == ["sweep"]
    assert registered.next_run == T0 + timedelta(seconds=300)


def test_duplicate_job_name(scheduler):
    scheduler.add_job("sweep", 60, Recorder())
    with pytest.raises(ValueError):
        scheduler.add_job("sweep", 120, Recorder())


@pytest.mark.asyncio
async def test_failing_job_is_isolated(scheduler, clock):
    """One job raising neither stops the others nor its own next run."""
    broken = Recorder(fail=True)
    healthy = Recorder()
    scheduler.add_job("broken", 10, broken, run_immediately=True)
    scheduler.add_job("healthy", 10, healthy, run_immediately=True)

    started = await scheduler.run_pending()

    assert sorted(started) == ["broken", "healthy"]
    assert scheduler.jobs["broken"].last_error == "database unavailable"
    assert scheduler.jobs["broken"].running is False
    assert scheduler.jobs["healthy"].last_error is None

    broken.fail = False
    await scheduler.run_pending(clock.advance(seconds=10))
    assert len(broken.calls) == 2
    assert scheduler.jobs["broken"].last_error is None


@pytest.mark.asyncio
async def test_overlapping_run_is_skipped(scheduler, clock):
    release = asyncio.Event()
    calls = []

    async def slow(now):
        calls.append(now)
        await release.wait()

    job = scheduler.add_job("slow", 10, slow, run_immediately=True)
    first = asyncio.create_task(scheduler.run_job(job, clock()))
    await asyncio.sleep(0)
    assert job.running is True

    assert await scheduler.run_pending() == []
    assert await scheduler.run_job(job, clock()) is False

    release.set()
    assert await first is True
    assert len(calls) == 1
    # The skipped tick still moved the schedule forward
    assert job.next_run == T0 + timedelta(seconds=10)


@pytest.mark.asyncio
async def test_start_and_stop():
    clock = FakeClock()
    ticks = []

    async def fake_sleep(seconds):
        clock.advance(seconds=seconds)
        await asyncio.sleep(0)

    scheduler = JobScheduler(clock=clock, sleep=fake_sleep, poll_interval=5)

    async def job(now):
        ticks.append(now)

    scheduler.add_job("tick", 5, job, run_immediately=True)
    scheduler.start()
    assert scheduler.running is True

    while len(ticks) < 3:
        await asyncio.sleep(0)

    await scheduler.stop()

    assert scheduler.running is False
    assert ticks[:3] == [T0, T0 + timedelta(seconds=5), T0 + timedelta(seconds=10)]


@pytest.mark.asyncio
async def test_stop_cancels_jobs_in_flight(clock):
    started = asyncio.Event()
    cancelled = []

    async def hang(now):
        started.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            cancelled.append(now)
            raise

    async def idle(seconds):
        await asyncio.Event().wait()

    scheduler = JobScheduler(clock=clock, sleep=idle)
    scheduler.add_job("hang", 60, hang, run_immediately=True)
    scheduler.start()
    await started.wait()

    await scheduler.stop()

    assert cancelled == [T0]
    assert scheduler.jobs["hang"].running is False
