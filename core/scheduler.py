"""
Timer supervision for the notifier.

Wraps APScheduler's ``AsyncIOScheduler``: recurring checks and per-room
reminders are interval jobs. Every job is reachable through a ``JobHandle``
whose ``cancel()`` may be called any number of times.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, JobExecutionEvent
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)

JobFunc = Callable[[], Awaitable[Any]]


@dataclass
class TaskStatus:
    """Status information for a scheduled job."""

    task_id: str
    next_run_time: datetime | None = None
    last_run_time: datetime | None = None
    last_error: str | None = None
    error_count: int = 0
    total_runs: int = 0


class JobHandle:
    """Cancellable reference to a scheduled job."""

    def __init__(self, manager: SchedulerManager, job_id: str):
        self._manager = manager
        self.job_id = job_id
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self):
        """Remove the job; repeated calls are no-ops."""
        if self._cancelled:
            return
        self._cancelled = True
        self._manager.remove_job(self.job_id)

    def __repr__(self) -> str:
        return f"JobHandle({self.job_id!r}, cancelled={self._cancelled})"


class SchedulerManager:
    """
    Owns one APScheduler instance and the jobs of a single component.

    Job bodies are wrapped so an exception is logged and recorded instead of
    surfacing through the scheduler.
    """

    def __init__(self, name: str = "scheduler", scheduler: AsyncIOScheduler | None = None):
        """
        Initialize scheduler manager.

        Args:
            name: Label used in log lines
            scheduler: Pre-built scheduler, mostly for tests
        """
        self.name = name
        self.scheduler = scheduler or AsyncIOScheduler()
        self.task_status: dict[str, TaskStatus] = {}
        self.is_running = False
        self.scheduler.add_listener(self._on_job_executed, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR)

    def start(self):
        """Start the scheduler; must be called from the running event loop."""
        if self.is_running:
            return
        self.scheduler.start()
        self.is_running = True
        logger.debug(f"[{self.name}] scheduler started")

    def stop(self):
        """Drop every job and shut the scheduler down."""
        if not self.is_running:
            return
        self.is_running = False
        self.scheduler.remove_all_jobs()
        self.scheduler.shutdown(wait=False)
        self.task_status.clear()
        logger.debug(f"[{self.name}] scheduler stopped")

    def add_interval(
        self,
        job_id: str,
        func: JobFunc,
        seconds: float,
        *,
        first_run_in: float | None = None,
    ) -> JobHandle:
        """
        Schedule ``func`` every ``seconds``.

        Args:
            job_id: Unique id, an existing job with the same id is replaced
            func: Coroutine function taking no arguments
            seconds: Interval between runs
            first_run_in: Delay before the first run, defaults to one interval

        Returns:
            Handle for cancelling the job
        """
        kwargs: dict[str, Any] = {}
        if first_run_in is not None:
            kwargs["next_run_time"] = datetime.now() + timedelta(seconds=first_run_in)
        self._add_job(job_id, func, IntervalTrigger(seconds=seconds), **kwargs)
        logger.debug(f"[{self.name}] job '{job_id}' every {seconds:.0f}s")
        return JobHandle(self, job_id)

    def _add_job(self, job_id: str, func: JobFunc, trigger: Any, **kwargs: Any):
        self.task_status[job_id] = TaskStatus(task_id=job_id)
        self.scheduler.add_job(
            self._execute_safely,
            trigger=trigger,
            args=[job_id, func],
            id=job_id,
            name=job_id,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
            misfire_grace_time=30,
            **kwargs,
        )

    async def _execute_safely(self, job_id: str, func: JobFunc):
        status = self.task_status.setdefault(job_id, TaskStatus(task_id=job_id))
        status.last_run_time = datetime.now()
        status.total_runs += 1
        try:
            await func()
            status.last_error = None
        except Exception as e:
            status.last_error = str(e)
            status.error_count += 1
            logger.error(f"[{self.name}] job '{job_id}' failed: {e}", exc_info=True)

    def _on_job_executed(self, event: JobExecutionEvent):
        """Handle job execution events from APScheduler."""
        status = self.task_status.get(event.job_id)
        if status is None:
            return
        job = self.scheduler.get_job(event.job_id)
        status.next_run_time = job.next_run_time if job else None

    def remove_job(self, job_id: str):
        self.task_status.pop(job_id, None)
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            # Already gone, e.g. after stop()
            pass

    def has_job(self, job_id: str) -> bool:
        return self.scheduler.get_job(job_id) is not None

    def get_task_status(self, job_id: str) -> TaskStatus | None:
        return self.task_status.get(job_id)
