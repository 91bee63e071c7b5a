"""
APScheduler configuration for snapvault.

Manages:
- Daily backup job (BACKUP_SCHEDULE_DAILY)
- Weekly backup job (BACKUP_SCHEDULE_WEEKLY)

Both jobs call the same JobOrchestrator as the manual trigger, so its run
lock decides which of them actually runs.
"""

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from snapvault.backup.models import JobType


logger = logging.getLogger(__name__)

# Global scheduler instance and the orchestrator its jobs run
scheduler = None
orchestrator = None

DAILY_JOB_ID = 'backup_daily'
WEEKLY_JOB_ID = 'backup_weekly'


def init_scheduler(app, job_orchestrator):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance
        job_orchestrator: JobOrchestrator the cron jobs run

    Returns:
        The BackgroundScheduler
    """
    global scheduler, orchestrator

    if scheduler is not None:
        return scheduler

    orchestrator = job_orchestrator
    settings = job_orchestrator.settings
    timezone = app.config.get('SCHEDULER_TIMEZONE', 'UTC')

    executors = {
        'default': ThreadPoolExecutor(max_workers=2)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone=timezone
    )

    scheduler.add_job(
        func=_run_scheduled_backup,
        args=[JobType.SCHEDULED_DAILY],
        trigger=CronTrigger.from_crontab(settings.daily_schedule, timezone=timezone),
        id=DAILY_JOB_ID,
        name=JobType.SCHEDULED_DAILY.label,
        replace_existing=True
    )

    scheduler.add_job(
        func=_run_scheduled_backup,
        args=[JobType.SCHEDULED_WEEKLY],
        trigger=CronTrigger.from_crontab(settings.weekly_schedule, timezone=timezone),
        id=WEEKLY_JOB_ID,
        name=JobType.SCHEDULED_WEEKLY.label,
        replace_existing=True
    )

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after init_scheduler().
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info(f"APScheduler started (state={scheduler.state})")

        for job in scheduler.get_jobs():
            next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
            logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler():
    """Stop the APScheduler."""
    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def _run_scheduled_backup(job_type: JobType):
    """
    Entry point APScheduler calls on each cron tick.

    A tick that finds another run in progress is dropped.

    Args:
        job_type: SCHEDULED_DAILY or SCHEDULED_WEEKLY
    """
    if orchestrator is None:
        logger.error(f"{job_type.label} fired before the scheduler was initialized")
        return None

    try:
        result = orchestrator.run_job(job_type)
    except Exception:
        logger.exception(f"Scheduled {job_type.label.lower()} failed")
        return None

    if result.skipped:
        logger.debug(result.summary_message)
    elif result.rejected:
        logger.warning(f"{job_type.label} tick dropped: {result.summary_message}")
    else:
        logger.info(f"{job_type.label} finished: {result.summary_message}")
    return result


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    if scheduler is None:
        return []

    jobs = []

    for job in scheduler.get_jobs():
        next_run_time = getattr(job, 'next_run_time', None)
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': next_run_time.isoformat() if next_run_time else None,
            'trigger': str(job.trigger)
        })

    return jobs


def is_scheduler_running() -> bool:
    """Check if the scheduler is running in this process."""
    return scheduler is not None and scheduler.running
