"""
Delayed-task primitive - one-shot timers on APScheduler.

Every scheduled call is a DateTrigger job whose id is the opaque handle callers
persist (schedule timers, retry timers). Sync callables run in the executor
thread pool; the event loop is never blocked by database or provider calls.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)


def _run_task(func: Callable, *args):
    """Run a task, logging failures instead of letting them reach the scheduler."""
    try:
        func(*args)
    except Exception as e:
        logger.exception(f"[TASKS] {func.__name__}{args} failed: {e}")


def _as_utc(when: datetime) -> datetime:
    if when.tzinfo is None:
        return when.replace(tzinfo=timezone.utc)
    return when.astimezone(timezone.utc)


class TaskScheduler:
    """Runs functions at an instant, after a delay, or on an interval."""

    def __init__(self):
        self.scheduler = AsyncIOScheduler(timezone=timezone.utc)

    def start(self):
        if not self.scheduler.running:
            self.scheduler.start()
        logger.info("[TASKS] Started with %d pending tasks", len(self.scheduler.get_jobs()))

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("[TASKS] Shutdown complete")

    def run_at(self, when: datetime, func: Callable, *args, task_id: Optional[str] = None) -> str:
        """Schedule `func(*args)` at `when` (naive values are UTC). Returns the task handle."""
        task_id = task_id or uuid.uuid4().hex
        self.scheduler.add_job(
            _run_task,
            trigger=DateTrigger(run_date=_as_utc(when), timezone=timezone.utc),
            args=[func, *args],
            id=task_id,
            name=func.__name__,
            replace_existing=True,
            misfire_grace_time=None,  # run late rather than never
        )
        return task_id

    def run_after(self, delay_seconds: float, func: Callable, *args) -> str:
        when = datetime.now(timezone.utc) + timedelta(seconds=delay_seconds)
        return self.run_at(when, func, *args)

    def enqueue(self, func: Callable, *args) -> str:
        """Run as soon as a worker is free."""
        return self.run_after(0, func, *args)

    def cancel(self, task_id: Optional[str]) -> bool:
        """Cancel by handle. Missing or already-fired handles are ignored."""
        if not task_id:
            return False
        try:
            self.scheduler.remove_job(task_id)
        except JobLookupError:
            return False
        logger.info(f"[TASKS] Cancelled task {task_id}")
        return True

    def every(self, seconds: int, func: Callable, task_id: str):
        """Register a recurring maintenance task."""
        self.scheduler.add_job(
            _run_task,
            trigger=IntervalTrigger(seconds=seconds, timezone=timezone.utc),
            args=[func],
            id=task_id,
            name=func.__name__,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        logger.info(f"[TASKS] Registered '{task_id}' every {seconds}s")

    def get_pending(self) -> list[dict]:
        """Pending tasks, soonest first."""
        result = []
        for job in self.scheduler.get_jobs():
            next_run = getattr(job, "next_run_time", None)  # unset until the scheduler starts
            result.append({
                "task_id": job.id,
                "name": job.name,
                "next_run": next_run.isoformat() if next_run else None,
            })
        return result


# Global instance
tasks = TaskScheduler()
