import os
import re
import tempfile

from apscheduler.triggers.cron import CronTrigger


class ConfigurationError(Exception):
    """Raised when backup settings are missing or invalid."""
    pass


def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_paths(name):
    value = os.environ.get(name, '')
    return [path.strip() for path in value.split(';') if path.strip()]


def _env_int(name, default):
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")


class Config:
    """Base configuration"""

    # Backup job
    BACKUP_ENABLED = _env_bool('BACKUP_ENABLED', True)
    BACKUP_WEEKLY_ENABLED = _env_bool('BACKUP_WEEKLY_ENABLED', True)
    BACKUP_PATHS = _env_paths('BACKUP_PATHS')
    BACKUP_BUCKET = os.environ.get('BACKUP_BUCKET') or 'snapvault-default'
    BACKUP_TIMEOUT_MINUTES = _env_int('BACKUP_TIMEOUT_MINUTES', 60)

    # Cron expressions (crontab format, UTC)
    BACKUP_SCHEDULE_DAILY = os.environ.get('BACKUP_SCHEDULE_DAILY') or '0 2 * * *'
    BACKUP_SCHEDULE_WEEKLY = os.environ.get('BACKUP_SCHEDULE_WEEKLY') or '0 1 * * sun'

    # Snapshot
    SNAPSHOT_PROVIDER = os.environ.get('SNAPSHOT_PROVIDER') or 'vss'
    SNAPSHOT_TIMEOUT_MINUTES = _env_int('SNAPSHOT_TIMEOUT_MINUTES', 30)

    # Staging
    TEMP_DIR = os.environ.get('TEMP_DIR') or '/data/temp'

    # Logging (default: <project>/data/logs)
    LOG_DIR = os.environ.get('LOG_DIR')

    # Scheduler
    SCHEDULER_ENABLED = _env_bool('SCHEDULER_ENABLED', True)
    SCHEDULER_TIMEZONE = 'UTC'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')

    # No shadow copies outside Windows
    SNAPSHOT_PROVIDER = os.environ.get('SNAPSHOT_PROVIDER') or 'copy'

    # Every 5 / 10 minutes for testing
    BACKUP_SCHEDULE_DAILY = os.environ.get('BACKUP_SCHEDULE_DAILY') or '*/5 * * * *'
    BACKUP_SCHEDULE_WEEKLY = os.environ.get('BACKUP_SCHEDULE_WEEKLY') or '*/10 * * * *'


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    BACKUP_TIMEOUT_MINUTES = _env_int('BACKUP_TIMEOUT_MINUTES', 120)


class TestingConfig(Config):
    """Test configuration - no scheduler thread, no real snapshots"""
    TESTING = True
    DEBUG = False
    SCHEDULER_ENABLED = False
    SNAPSHOT_PROVIDER = 'copy'
    BACKUP_PATHS = []
    BACKUP_BUCKET = 'test-bucket'
    TEMP_DIR = os.path.join(tempfile.gettempdir(), 'snapvault-test', 'temp')
    LOG_DIR = os.path.join(tempfile.gettempdir(), 'snapvault-test', 'logs')


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}


# S3 bucket naming rules: 3-63 chars, lowercase letters, digits, dots and
# hyphens, starting and ending with a letter or digit
BUCKET_NAME_PATTERN = re.compile(r'^[a-z0-9][a-z0-9.-]{1,61}[a-z0-9]$')


def is_valid_bucket_name(name) -> bool:
    if not name or not BUCKET_NAME_PATTERN.match(name):
        return False
    if '..' in name:
        return False
    # Must not look like an IP address
    return not re.match(r'^\d+\.\d+\.\d+\.\d+$', name)


class BackupSettings:
    """
    Settings the job orchestrator runs with.

    Built from the Flask config (or any mapping with the BACKUP_* keys)
    and validated before an orchestrator is created.
    """

    def __init__(self, paths=None, bucket='snapvault-default', enabled=True, weekly_enabled=True,
                 timeout_minutes=60, daily_schedule='0 2 * * *', weekly_schedule='0 1 * * sun'):
        self.paths = list(paths or [])
        self.bucket = bucket
        self.enabled = enabled
        self.weekly_enabled = weekly_enabled
        self.timeout_minutes = timeout_minutes
        self.daily_schedule = daily_schedule
        self.weekly_schedule = weekly_schedule

    @classmethod
    def from_config(cls, mapping) -> 'BackupSettings':
        """
        Read BACKUP_* keys from a config mapping.

        Args:
            mapping: Flask app.config or a plain dict

        Returns:
            Unvalidated BackupSettings
        """
        paths = mapping.get('BACKUP_PATHS') or []
        if isinstance(paths, str):
            paths = [path.strip() for path in paths.split(';') if path.strip()]

        return cls(
            paths=paths,
            bucket=mapping.get('BACKUP_BUCKET', 'snapvault-default'),
            enabled=mapping.get('BACKUP_ENABLED', True),
            weekly_enabled=mapping.get('BACKUP_WEEKLY_ENABLED', True),
            timeout_minutes=mapping.get('BACKUP_TIMEOUT_MINUTES', 60),
            daily_schedule=mapping.get('BACKUP_SCHEDULE_DAILY', '0 2 * * *'),
            weekly_schedule=mapping.get('BACKUP_SCHEDULE_WEEKLY', '0 1 * * sun')
        )

    def validate(self):
        """
        Validate the settings.

        Raises:
            ConfigurationError: If any setting is invalid
        """
        if not self.paths:
            raise ConfigurationError("At least one backup path must be configured")

        if any(not str(path).strip() for path in self.paths):
            raise ConfigurationError("Backup paths cannot be empty")

        if not is_valid_bucket_name(self.bucket):
            raise ConfigurationError(f"Invalid backup bucket name: {self.bucket!r}")

        if (isinstance(self.timeout_minutes, bool) or not isinstance(self.timeout_minutes, int)
                or self.timeout_minutes <= 0):
            raise ConfigurationError("Timeout minutes must be positive")

        for label, expression in (('daily', self.daily_schedule), ('weekly', self.weekly_schedule)):
            try:
                CronTrigger.from_crontab(expression, timezone='UTC')
            except (ValueError, TypeError) as e:
                raise ConfigurationError(f"Invalid {label} schedule {expression!r}: {e}")

    def to_dict(self) -> dict:
        return {
            'enabled': self.enabled,
            'weekly_enabled': self.weekly_enabled,
            'backup_paths': len(self.paths),
            'bucket': self.bucket,
            'timeout_minutes': self.timeout_minutes,
            'daily_schedule': self.daily_schedule,
            'weekly_schedule': self.weekly_schedule,
        }

    def __repr__(self):
        return (f'<BackupSettings enabled={self.enabled} weekly_enabled={self.weekly_enabled} '
                f'paths={self.paths} bucket={self.bucket} timeout={self.timeout_minutes} min>')
