"""
Cron Scheduling for Backup Runs
===============================

Runs the backup pass (and optionally the maintenance cleanup) on cron
expressions using APScheduler in the foreground.

Features:
- Standard five-field crontab expressions
- One instance per job; runs missed while a previous one is active are coalesced
- Executed, failed and missed runs are logged
"""

import logging
from typing import Any, Callable, Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, EVENT_JOB_MISSED
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from .error_handling import ConfigurationError

logger = logging.getLogger(__name__)

BACKUP_JOB_ID = "backup"
CLEANUP_JOB_ID = "cleanup"


class BackupScheduler:
    """Foreground cron scheduler for backup and maintenance jobs."""

    def __init__(self, scheduler: Optional[Any] = None,
                 misfire_grace_time: int = 300,
                 logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self.scheduler = scheduler or BlockingScheduler(job_defaults={
            'coalesce': True,
            'max_instances': 1,
            'misfire_grace_time': misfire_grace_time,
        })

        self.scheduler.add_listener(self._job_executed_listener, EVENT_JOB_EXECUTED)
        self.scheduler.add_listener(self._job_error_listener, EVENT_JOB_ERROR)
        self.scheduler.add_listener(self._job_missed_listener, EVENT_JOB_MISSED)

    def _job_executed_listener(self, event):
        """Handle job execution completion."""
        if event.retval:
            self.logger.warning(f"Job {event.job_id} finished with exit code {event.retval}")
        else:
            self.logger.info(f"Job {event.job_id} executed successfully")

    def _job_error_listener(self, event):
        """Handle job execution errors."""
        self.logger.error(f"Job {event.job_id} failed with error: {event.exception}")

    def _job_missed_listener(self, event):
        """Handle missed job executions."""
        self.logger.warning(f"Job {event.job_id} missed execution at {event.scheduled_run_time}")

    def add_cron_job(self, job_id: str, func: Callable[[], Any], cron_expression: str):
        """Register ``func`` to run on a crontab expression."""
        try:
            trigger = CronTrigger.from_crontab(cron_expression)
        except ValueError as e:
            raise ConfigurationError(f"Invalid cron expression '{cron_expression}' for {job_id}: {e}") from e

        job = self.scheduler.add_job(
            func,
            trigger=trigger,
            id=job_id,
            name=job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.logger.info(f"Scheduled job {job_id} with cron '{cron_expression}'")
        return job

    def start(self):
        """Start scheduling; blocks until the scheduler is shut down."""
        self.logger.info("Backup scheduler started")
        try:
            self.scheduler.start()
        except (KeyboardInterrupt, SystemExit):
            self.logger.info("Backup scheduler interrupted")
        finally:
            self.shutdown()

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)
            self.logger.info("Backup scheduler stopped")
