"""
Unit tests for the job orchestrator (snapvault/backup/orchestrator.py).

Tests the single-flight run lock, per-path isolation, scheduling flags
and the run timeout.
"""

import threading
from unittest.mock import MagicMock

import pytest

from snapvault.backup import orchestrator as orchestrator_module
from snapvault.backup.executor import BackupExecutor
from snapvault.backup.models import BackupOutcome, JobType
from snapvault.backup.orchestrator import JobOrchestrator, create_orchestrator
from snapvault.backup.snapshot import DirectCopyProvider, VSSSnapshotProvider
from snapvault.config import BackupSettings, ConfigurationError


class FakeClock:
    """Stands in for the time module; each executor call can advance it."""

    def __init__(self):
        self.now = 1000.0

    def monotonic(self):
        return self.now


class TestJobExecution:
    """Test running a job over the configured paths."""

    def test_run_manual_all_paths(self, orchestrator, mock_executor, backup_settings):
        """Test every configured path is backed up in order."""
        result = orchestrator.run_manual()

        assert result.succeeded is True
        assert result.success_count == 1
        assert result.failure_count == 0
        assert result.job_type is JobType.MANUAL
        mock_executor.perform_backup.assert_called_once_with(backup_settings.paths[0], 'test-bucket')
        assert orchestrator.last_result is result

    def test_mixed_paths_with_real_executor(self, uploader, tmp_path):
        """Test an existing and a missing path give one success and one failure."""
        present = tmp_path / 'a.txt'
        present.write_text('hello')
        missing = tmp_path / 'missing'

        settings = BackupSettings(paths=[str(present), str(missing)], bucket='test-bucket')
        executor = BackupExecutor(DirectCopyProvider(), uploader, temp_dir=str(tmp_path / 'staging'))

        result = JobOrchestrator(settings, executor).run_job(JobType.MANUAL)

        assert result.succeeded is False
        assert result.success_count == 1
        assert result.failure_count == 1
        assert result.outcomes[0].succeeded is True
        assert result.outcomes[1].failure_reason == f'Source path does not exist: {missing}'

    def test_failure_does_not_stop_later_paths(self, backup_settings):
        """Test one raising path is isolated from the next."""
        backup_settings.paths = ['first', 'second']
        executor = MagicMock()
        executor.perform_backup.side_effect = [
            RuntimeError('disk on fire'),
            BackupOutcome.failure('second', 'Source path does not exist: second'),
        ]

        result = JobOrchestrator(backup_settings, executor).run_job(JobType.SCHEDULED_DAILY)

        assert executor.perform_backup.call_count == 2
        assert result.failure_count == 2
        assert result.outcomes[0].failure_reason == 'Backup failed: disk on fire'

    def test_counts_add_up(self, backup_settings, mock_executor):
        """Test success and failure counts cover every path."""
        backup_settings.paths = ['a', 'b', 'c']

        result = JobOrchestrator(backup_settings, mock_executor).run_daily()

        assert result.success_count + result.failure_count == 3
        assert 'Daily Backup completed: 3 succeeded, 0 failed' in result.summary_message


class TestSettingsValidation:
    """Test settings are validated before any run."""

    def test_empty_paths_rejected(self, mock_executor):
        """Test an orchestrator cannot be built without paths."""
        with pytest.raises(ConfigurationError, match='At least one backup path'):
            JobOrchestrator(BackupSettings(paths=[], bucket='test-bucket'), mock_executor)

    def test_non_positive_timeout_rejected(self, mock_executor):
        """Test timeout must be positive."""
        with pytest.raises(ConfigurationError, match='Timeout minutes must be positive'):
            JobOrchestrator(BackupSettings(paths=['a'], bucket='test-bucket', timeout_minutes=0), mock_executor)


class TestRunLock:
    """Test single-flight behaviour."""

    def test_concurrent_trigger_rejected(self, backup_settings):
        """Test a second trigger during a run is rejected without waiting."""
        started = threading.Event()
        release = threading.Event()
        executor = MagicMock()

        def slow_backup(source_path, bucket):
            started.set()
            release.wait(timeout=10)
            return BackupOutcome.failure(source_path, 'stopped')

        executor.perform_backup.side_effect = slow_backup
        orchestrator = JobOrchestrator(backup_settings, executor)

        results = {}
        worker = threading.Thread(target=lambda: results.setdefault('first', orchestrator.run_manual()))
        worker.start()
        assert started.wait(timeout=10)

        assert orchestrator.is_running() is True
        second = orchestrator.run_job(JobType.SCHEDULED_DAILY)

        release.set()
        worker.join(timeout=10)

        assert second.rejected is True
        assert second.succeeded is False
        assert second.summary_message == 'Backup job is already running, cannot start daily backup'
        assert executor.perform_backup.call_count == 1
        assert results['first'].rejected is False
        assert orchestrator.is_running() is False

    def test_lock_released_after_success(self, orchestrator):
        """Test consecutive runs both proceed."""
        assert orchestrator.run_manual().rejected is False
        assert orchestrator.is_running() is False
        assert orchestrator.run_manual().rejected is False

    def test_lock_released_after_internal_error(self, backup_settings, mock_executor, monkeypatch):
        """Test an error outside the per-path loop still releases the lock."""
        orchestrator = JobOrchestrator(backup_settings, mock_executor)

        def explode(job_type):
            raise RuntimeError('unexpected')

        monkeypatch.setattr(orchestrator, '_execute', explode)

        result = orchestrator.run_manual()

        assert result.succeeded is False
        assert result.failure_count == 1
        assert 'unexpected' in result.summary_message
        assert orchestrator.is_running() is False


class TestSchedulingFlags:
    """Test enabled flags for scheduled runs."""

    def test_daily_skipped_when_disabled(self, backup_settings, mock_executor):
        """Test a disabled job skips scheduled runs."""
        backup_settings.enabled = False

        result = JobOrchestrator(backup_settings, mock_executor).run_daily()

        assert result.skipped is True
        assert result.succeeded is True
        mock_executor.perform_backup.assert_not_called()

    def test_weekly_skipped_when_weekly_disabled(self, backup_settings, mock_executor):
        """Test weekly flag only affects the weekly run."""
        backup_settings.weekly_enabled = False
        orchestrator = JobOrchestrator(backup_settings, mock_executor)

        assert orchestrator.run_weekly().skipped is True
        assert orchestrator.run_daily().skipped is False

    def test_manual_ignores_flags(self, backup_settings, mock_executor):
        """Test manual runs proceed even when scheduling is disabled."""
        backup_settings.enabled = False
        backup_settings.weekly_enabled = False

        result = JobOrchestrator(backup_settings, mock_executor).run_manual()

        assert result.skipped is False
        assert result.success_count == 1

    def test_skip_does_not_replace_last_result(self, backup_settings, mock_executor):
        """Test only real runs are remembered."""
        orchestrator = JobOrchestrator(backup_settings, mock_executor)
        first = orchestrator.run_manual()
        orchestrator.settings.enabled = False

        orchestrator.run_daily()

        assert orchestrator.last_result is first


class TestRunTimeout:
    """Test the overall run timeout."""

    def test_remaining_paths_not_started(self, backup_settings, monkeypatch):
        """Test paths after the deadline fail without being started."""
        clock = FakeClock()
        monkeypatch.setattr(orchestrator_module, 'time', clock)

        backup_settings.paths = ['a', 'b', 'c']
        backup_settings.timeout_minutes = 1
        executor = MagicMock()

        def slow_backup(source_path, bucket):
            clock.now += 90
            return BackupOutcome.failure(source_path, 'slow')

        executor.perform_backup.side_effect = slow_backup

        result = JobOrchestrator(backup_settings, executor).run_manual()

        assert executor.perform_backup.call_count == 1
        assert result.failure_count == 3
        assert result.outcomes[1].failure_reason == 'Not started: run timeout exceeded (1 minutes)'
        assert result.duration_seconds == 90


class TestCreateOrchestrator:
    """Test building the orchestrator from app config."""

    def test_create_from_config(self, tmp_path):
        """Test settings, provider and uploader are wired from config."""
        app_config = {
            'BACKUP_PATHS': 'C:\\Data;C:\\Users\\alice\\Documents',
            'BACKUP_BUCKET': 'company-backups',
            'BACKUP_TIMEOUT_MINUTES': 90,
            'SNAPSHOT_PROVIDER': 'vss',
            'SNAPSHOT_TIMEOUT_MINUTES': 45,
            'TEMP_DIR': str(tmp_path),
        }
        environ = {'S3_ACCESS_KEY': 'key', 'S3_SECRET_KEY': 'secret'}

        orchestrator = create_orchestrator(app_config, environ)

        assert orchestrator.settings.paths == ['C:\\Data', 'C:\\Users\\alice\\Documents']
        assert orchestrator.settings.bucket == 'company-backups'
        assert isinstance(orchestrator.executor.snapshot_provider, VSSSnapshotProvider)
        assert orchestrator.executor.snapshot_provider.timeout_minutes == 45
        assert orchestrator.executor.temp_dir == str(tmp_path)

    def test_create_without_paths(self):
        """Test missing paths stop startup."""
        with pytest.raises(ConfigurationError):
            create_orchestrator({'BACKUP_BUCKET': 'company-backups'}, {'S3_ACCESS_KEY': 'k', 'S3_SECRET_KEY': 's'})

    def test_create_without_credentials(self):
        """Test missing S3 credentials stop startup."""
        with pytest.raises(ValueError, match='Access key cannot be empty'):
            create_orchestrator({'BACKUP_PATHS': ['C:\\Data'], 'BACKUP_BUCKET': 'company-backups'}, {})


class TestLastResult:
    """Test last_result publication."""

    def test_last_result_set_before_lock_release(self, backup_settings, mock_executor):
        """Test the result is stored while the run still holds the lock."""
        orchestrator = JobOrchestrator(backup_settings, mock_executor)
        seen_at_release = []
        lock = MagicMock()
        lock.acquire.return_value = True
        lock.release.side_effect = lambda: seen_at_release.append(orchestrator.last_result)
        orchestrator._run_lock = lock

        result = orchestrator.run_manual()

        assert seen_at_release == [result]
        assert orchestrator.last_result is result
