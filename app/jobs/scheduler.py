"""APScheduler setup for the loan scans.

Two daily jobs, both at SCANNER_HOUR:SCANNER_MINUTE (UTC):

1. loan_reminders - loans due within the reminder window
2. overdue_scan   - loans past their due date

Every job is a ScheduledTask (trigger + handler) run through ``run_task``,
which gives it an application context and isolates its failures: a run
that raises is logged and counted, and the job simply fires again on its
next cycle.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable

from apscheduler.events import EVENT_JOB_MISSED
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from app.extensions import db
from app.services.reminder_service import run_loan_reminders, run_overdue_scan

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: BackgroundScheduler = None

# Consecutive failures per task id
_task_failures: dict[str, int] = defaultdict(int)


@dataclass
class ScheduledTask:
    """A handler and the trigger that fires it."""

    id: str
    name: str
    trigger: Any
    handler: Callable[[], Any]


def _record_failure(app, task_id, error):
    _task_failures[task_id] += 1
    failures = _task_failures[task_id]
    threshold = app.config.get("JOB_FAILURE_THRESHOLD", 3)

    if failures >= threshold:
        logger.error(
            f"Task '{task_id}' has failed {failures} times in a row. Last error: {error}"
        )
    else:
        logger.warning(f"Task '{task_id}' failed (failure {failures}/{threshold}): {error}")


def run_task(app, task: ScheduledTask):
    """Run one task inside an application context. Never raises."""
    with app.app_context():
        try:
            result = task.handler()
        except Exception as e:
            db.session.rollback()
            logger.exception(f"Task '{task.id}' raised")
            _record_failure(app, task.id, e)
            return None

    _task_failures.pop(task.id, None)
    logger.info(f"Task '{task.id}' finished: {result}")
    return result


def get_task_failures(task_id: str) -> int:
    return _task_failures.get(task_id, 0)


def job_listener(event):
    """Warn when a run was skipped (e.g. the process was down at fire time)."""
    logger.warning(f"Job '{event.job_id}' missed its run at {event.scheduled_run_time}")


def build_tasks(app) -> list[ScheduledTask]:
    """The ledger's scheduled tasks, using the app's scanner settings."""
    hour = app.config.get("SCANNER_HOUR", 0)
    minute = app.config.get("SCANNER_MINUTE", 0)

    return [
        ScheduledTask(
            id="loan_reminders",
            name="Loan Reminders",
            trigger=CronTrigger(hour=hour, minute=minute, timezone="UTC"),
            handler=run_loan_reminders,
        ),
        ScheduledTask(
            id="overdue_scan",
            name="Overdue Loans Scan",
            trigger=CronTrigger(hour=hour, minute=minute, timezone="UTC"),
            handler=run_overdue_scan,
        ),
    ]


def init_scheduler(app, start: bool = True) -> BackgroundScheduler:
    """Create the background scheduler and register every task."""
    global scheduler

    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_listener(job_listener, EVENT_JOB_MISSED)

    for task in build_tasks(app):
        scheduler.add_job(
            run_task,
            task.trigger,
            args=[app, task],
            id=task.id,
            name=task.name,
            replace_existing=True,
            coalesce=True,
            misfire_grace_time=3600,
        )

    if start:
        scheduler.start()
        logger.info(f"Scheduler started with {len(scheduler.get_jobs())} jobs")

    return scheduler


def shutdown_scheduler():
    global scheduler

    if scheduler is not None and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
    scheduler = None
