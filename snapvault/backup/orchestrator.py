"""
Job orchestrator - runs the backup executor over every configured path.

Only one run may be in progress per process. A trigger that arrives
while a run holds the lock is rejected immediately and dropped; it is
never queued or retried.
"""

import time
import logging
import threading
from typing import Optional

from snapvault.config import BackupSettings
from .executor import BackupExecutor
from .models import BackupOutcome, JobResult, JobType
from .snapshot import create_snapshot_provider
from .storage import S3Uploader, load_s3_config


logger = logging.getLogger(__name__)


class JobOrchestrator:
    """
    Single-flight backup job runner.

    State machine: IDLE -> RUNNING -> IDLE. The transition to RUNNING is a
    non-blocking acquire of the run lock; the transition back happens in a
    finally block so an exception cannot leave the lock held.
    """

    def __init__(self, settings: BackupSettings, executor):
        """
        Initialize the orchestrator.

        Args:
            settings: Backup settings (validated here)
            executor: BackupExecutor used for every path

        Raises:
            ConfigurationError: If the settings are invalid
        """
        settings.validate()
        self.settings = settings
        self.executor = executor
        self._run_lock = threading.Lock()
        self._last_result = None

        logger.info(f"JobOrchestrator initialized with {len(settings.paths)} backup paths configured")

    @property
    def last_result(self) -> Optional[JobResult]:
        return self._last_result

    def is_running(self) -> bool:
        """Return True while a backup run holds the lock."""
        return self._run_lock.locked()

    def run_daily(self) -> JobResult:
        return self.run_job(JobType.SCHEDULED_DAILY)

    def run_weekly(self) -> JobResult:
        return self.run_job(JobType.SCHEDULED_WEEKLY)

    def run_manual(self) -> JobResult:
        return self.run_job(JobType.MANUAL)

    def run_job(self, job_type: JobType) -> JobResult:
        """
        Run one backup job over all configured paths.

        Args:
            job_type: What triggered the run

        Returns:
            JobResult; never raises
        """
        skip_reason = self._skip_reason(job_type)
        if skip_reason:
            logger.debug(f"{job_type.label} skipped: {skip_reason}")
            return JobResult.skip(job_type, skip_reason)

        if not self._run_lock.acquire(blocking=False):
            result = JobResult.rejection(job_type)
            logger.warning(result.summary_message)
            return result

        result = None
        try:
            logger.info(f"Starting {job_type.label.lower()} job")
            result = self._execute(job_type)
        except Exception as e:
            logger.exception(f"{job_type.label} job failed")
            result = JobResult(
                job_type=job_type,
                success_count=0,
                failure_count=len(self.settings.paths),
                summary_message=f"{job_type.label} failed: {e}"
            )
        finally:
            # last_result is only written while the lock is held
            if result is not None:
                self._last_result = result
            self._run_lock.release()

        return result

    def _skip_reason(self, job_type: JobType) -> Optional[str]:
        if job_type is JobType.MANUAL:
            return None
        if not self.settings.enabled:
            return "backup scheduling is disabled"
        if job_type is JobType.SCHEDULED_WEEKLY and not self.settings.weekly_enabled:
            return "weekly backup is disabled"
        return None

    def _execute(self, job_type: JobType) -> JobResult:
        """Core loop shared by the daily, weekly and manual entry points."""
        started = time.monotonic()
        deadline = started + self.settings.timeout_minutes * 60
        bucket = self.settings.bucket
        outcomes = []

        logger.info(f"Executing {job_type.label} for {len(self.settings.paths)} paths to bucket: {bucket}")

        for path in self.settings.paths:
            if time.monotonic() > deadline:
                reason = f"Not started: run timeout exceeded ({self.settings.timeout_minutes} minutes)"
                logger.error(f"Skipping {path}: {reason}")
                outcomes.append(BackupOutcome.failure(path, reason))
                continue

            logger.info(f"Backing up path: {path}")
            try:
                outcome = self.executor.perform_backup(path, bucket)
            except Exception as e:
                logger.exception(f"Error backing up path: {path}")
                outcome = BackupOutcome.failure(path, f"Backup failed: {e}")

            if outcome.succeeded:
                logger.info(f"Successfully backed up: {path} -> {outcome.upload_result.s3_url}")
            else:
                logger.error(f"Failed to back up path: {path} - {outcome.failure_reason}")
            outcomes.append(outcome)

        result = JobResult.completed(job_type, outcomes, time.monotonic() - started)
        logger.info(result.summary_message)
        return result


def create_orchestrator(app_config, environ=None) -> JobOrchestrator:
    """
    Build an orchestrator with the real snapshot provider and S3 uploader.

    Args:
        app_config: Flask config (or mapping) with BACKUP_* and SNAPSHOT_* keys
        environ: Environment for S3 credentials (default: os.environ)

    Returns:
        JobOrchestrator ready to run

    Raises:
        ConfigurationError: If backup settings are invalid
        ValueError: If S3 credentials or the snapshot provider are invalid
    """
    settings = BackupSettings.from_config(app_config)
    settings.validate()

    provider = create_snapshot_provider(
        app_config.get('SNAPSHOT_PROVIDER', 'vss'),
        app_config.get('SNAPSHOT_TIMEOUT_MINUTES', 30)
    )
    uploader = S3Uploader(load_s3_config(environ))
    executor = BackupExecutor(provider, uploader, temp_dir=app_config.get('TEMP_DIR'))

    return JobOrchestrator(settings, executor)
