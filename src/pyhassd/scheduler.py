"""Time-based triggers for automations.

APScheduler's :class:`AsyncIOScheduler` handles timing. Every run goes through
:meth:`Scheduler._invoke` on the event loop, so a callback may be a regular
function or a coroutine function. A failing callback is logged and the job
keeps its schedule.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, time, timedelta, tzinfo
from typing import Any

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from pyhassd.dispatch.tracker import TaskTracker
from pyhassd.exceptions import HassError

_logger = logging.getLogger(__name__)

JobCallback = Callable[[], Awaitable[None] | None]

_JOB_DEFAULTS: dict[str, Any] = {
    "coalesce": True,
    "max_instances": 1,
    "misfire_grace_time": 60,
}


class ScheduledJob:
    """Handle returned by the ``run_*`` methods."""

    def __init__(self, scheduler: Scheduler, job_id: str, name: str, trigger: BaseTrigger) -> None:
        self.id = job_id
        self.name = name
        self.trigger = trigger
        self.runs = 0
        self._scheduler = scheduler
        self._done = False

    @property
    def done(self) -> bool:
        """``True`` once cancelled, stopped, or (for one-shot jobs) run."""
        return self._done

    @property
    def next_run_time(self) -> datetime | None:
        if self._done:
            return None
        return self._scheduler._next_run_time(self.id)

    def cancel(self) -> None:
        self._scheduler._remove(self)

    def __repr__(self) -> str:
        return f"ScheduledJob(name={self.name!r}, trigger={self.trigger}, runs={self.runs})"


class Scheduler:
    """One-shot, interval, daily and cron jobs on the running event loop.

    The underlying :class:`AsyncIOScheduler` is started lazily by the first
    ``run_*`` call, which must therefore happen inside the loop.
    """

    def __init__(
        self,
        *,
        timezone: tzinfo | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._timezone = timezone
        self._logger = logger or _logger
        self._aps: AsyncIOScheduler | None = None
        self._jobs: dict[str, ScheduledJob] = {}
        self._invocations = TaskTracker()
        self._next_id = 0
        self._stopped = False

    @property
    def is_running(self) -> bool:
        return not self._stopped

    @property
    def pending_jobs(self) -> int:
        return len(self._jobs)

    def run_in(self, seconds: float, func: JobCallback, *, name: str | None = None) -> ScheduledJob:
        """Call *func* once after *seconds*."""
        run_date = datetime.now(UTC) + timedelta(seconds=max(0.0, seconds))
        return self._schedule(DateTrigger(run_date=run_date), func, name)

    def run_every(self, interval: float, func: JobCallback, *, name: str | None = None) -> ScheduledJob:
        """Call *func* every *interval* seconds, first call after one interval."""
        if interval <= 0:
            raise ValueError("interval must be positive")
        return self._schedule(IntervalTrigger(seconds=interval, timezone=self._timezone), func, name)

    def run_daily(self, at: time, func: JobCallback, *, name: str | None = None) -> ScheduledJob:
        """Call *func* every day at *at* (local time unless a timezone was given)."""
        trigger = CronTrigger(hour=at.hour, minute=at.minute, second=at.second, timezone=self._timezone)
        return self._schedule(trigger, func, name)

    def run_cron(self, crontab: str, func: JobCallback, *, name: str | None = None) -> ScheduledJob:
        """Call *func* on a standard five-field crontab expression.

        Raises ``ValueError`` for a malformed expression.
        """
        return self._schedule(CronTrigger.from_crontab(crontab, timezone=self._timezone), func, name)

    async def stop(self) -> None:
        """Remove every job, cancel runs in progress and wait for them."""
        if self._stopped:
            return
        self._stopped = True
        for job in list(self._jobs.values()):
            self._finish(job)
        if self._aps is not None and self._aps.running:
            self._aps.shutdown(wait=False)
        self._invocations.cancel_all()
        await self._invocations.wait()
        self._logger.debug("Scheduler stopped")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_started(self) -> AsyncIOScheduler:
        if self._aps is None:
            options: dict[str, Any] = {
                "event_loop": asyncio.get_running_loop(),
                "job_defaults": dict(_JOB_DEFAULTS),
            }
            if self._timezone is not None:
                options["timezone"] = self._timezone
            self._aps = AsyncIOScheduler(**options)
            self._aps.start()
        return self._aps

    def _schedule(self, trigger: BaseTrigger, func: JobCallback, name: str | None) -> ScheduledJob:
        if self._stopped:
            raise HassError("Scheduler is stopped")
        aps = self._ensure_started()
        self._next_id += 1
        job_name = name or getattr(func, "__qualname__", repr(func))
        job = ScheduledJob(self, f"pyhassd-job-{self._next_id}", job_name, trigger)
        aps.add_job(self._invoke, trigger=trigger, id=job.id, name=job.name, args=[job, func])
        self._jobs[job.id] = job
        self._logger.debug("Scheduled %s (%s)", job.name, trigger)
        return job

    async def _invoke(self, job: ScheduledJob, func: JobCallback) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._invocations.track(task)
        job.runs += 1
        try:
            result = func()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            self._logger.debug("Scheduled job %s cancelled", job.name)
        except Exception:
            self._logger.exception("Scheduled job %s failed", job.name)
        finally:
            if isinstance(job.trigger, DateTrigger):
                self._finish(job)

    def _next_run_time(self, job_id: str) -> datetime | None:
        aps_job = self._aps.get_job(job_id) if self._aps is not None else None
        return aps_job.next_run_time if aps_job is not None else None

    def _remove(self, job: ScheduledJob) -> None:
        if job.done:
            return
        self._finish(job)
        if self._aps is None:
            return
        try:
            self._aps.remove_job(job.id)
        except JobLookupError:
            self._logger.debug("Job %s already gone", job.name)

    def _finish(self, job: ScheduledJob) -> None:
        job._done = True
        self._jobs.pop(job.id, None)
