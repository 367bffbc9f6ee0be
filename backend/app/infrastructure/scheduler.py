"""
In-process interval job scheduler.

Each job runs every `interval` seconds. The loop wakes up every
`poll_interval`, runs whatever is due and goes back to sleep. Both the clock
and the sleep function are injected, so tests can call run_pending() with a
fake "now" instead of waiting.

A job never overlaps itself: if its previous run is still going when it
comes due again, that tick is skipped. A failing job is logged and counted;
it neither stops the loop nor affects other jobs.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from app.core.clock import Clock, utcnow
from app.core.logging import get_logger
from app.core.metrics import record_job_run

logger = get_logger(__name__)

JobFunc = Callable[[datetime], Awaitable[object]]
Sleep = Callable[[float], Awaitable[None]]


@dataclass
class ScheduledJob:
    name: str
    interval: timedelta
    func: JobFunc
    next_run: Optional[datetime] = None
    running: bool = False
    last_error: Optional[str] = None


class JobScheduler:
    def __init__(
        self,
        clock: Clock = utcnow,
        sleep: Sleep = asyncio.sleep,
        poll_interval: float = 1.0,
    ):
        self.clock = clock
        self.sleep = sleep
        self.poll_interval = poll_interval
        self.jobs: dict[str, ScheduledJob] = {}
        self._task: Optional[asyncio.Task] = None
        self._in_flight: set[asyncio.Task] = set()

    def add_job(
        self,
        name: str,
        interval_seconds: float,
        func: JobFunc,
        *,
        run_immediately: bool = False,
    ) -> ScheduledJob:
        if name in self.jobs:
            raise ValueError(f"Job {name!r} is already registered")

        interval = timedelta(seconds=interval_seconds)
        now = self.clock()
        job = ScheduledJob(
            name=name,
            interval=interval,
            func=func,
            next_run=now if run_immediately else now + interval,
        )
        self.jobs[name] = job
        logger.info("job_registered", job=name, interval_seconds=interval_seconds)
        return job

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_job(self, job: ScheduledJob, now: datetime) -> bool:
        """Run one job to completion. Returns False if it failed or was skipped."""
        if job.running:
            record_job_run(job.name, "skipped")
            logger.warning("job_skipped_still_running", job=job.name)
            return False

        job.running = True
        try:
            await job.func(now)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            job.last_error = str(e)
            record_job_run(job.name, "error")
            logger.exception("job_failed", job=job.name, error=str(e))
            return False
        finally:
            job.running = False

        job.last_error = None
        record_job_run(job.name, "ok")
        return True

    async def run_pending(self, now: Optional[datetime] = None) -> list[str]:
        """
        Run every job that is due at `now`, concurrently, and wait for them.
        Returns the names of the jobs that were started.
        """
        now = now or self.clock()
        due = [job for job in self.jobs.values() if job.next_run is not None and job.next_run <= now]

        started = []
        runs = []
        for job in due:
            job.next_run = now + job.interval
            if job.running:
                record_job_run(job.name, "skipped")
                logger.warning("job_skipped_still_running", job=job.name)
                continue
            started.append(job.name)
            runs.append(self.run_job(job, now))

        if runs:
            await asyncio.gather(*runs)
        return started

    async def _tick(self, now: datetime) -> None:
        # Due jobs run as their own tasks so a slow one does not hold up the loop
        for job in self.jobs.values():
            if job.next_run is None or job.next_run > now:
                continue
            job.next_run = now + job.interval
            if job.running:
                record_job_run(job.name, "skipped")
                logger.warning("job_skipped_still_running", job=job.name)
                continue
            task = asyncio.create_task(self.run_job(job, now), name=f"job:{job.name}")
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)

    async def _loop(self) -> None:
        logger.info("scheduler_started", jobs=list(self.jobs))
        while True:
            await self._tick(self.clock())
            await self.sleep(self.poll_interval)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="job-scheduler")

    async def stop(self) -> None:
        """Cancel the loop and any job still in flight, and wait for them to unwind."""
        tasks = list(self._in_flight)
        if self._task is not None:
            tasks.append(self._task)
            self._task = None

        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._in_flight.clear()
        logger.info("scheduler_stopped")
