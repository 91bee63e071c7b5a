"""
Shared pytest fixtures for snapvault tests.

This module provides fixtures for:
- Flask app and test client
- Backup settings and orchestrator wiring
- Mock fixtures for external services (S3, snapshot commands)
- Temporary file fixtures
"""

from unittest.mock import MagicMock

import pytest
import boto3
from moto import mock_aws

from snapvault import create_app
from snapvault.config import BackupSettings
from snapvault.backup.models import BackupOutcome, UploadResult
from snapvault.backup.orchestrator import JobOrchestrator
from snapvault.backup.snapshot import CommandResult, CommandTimeout
from snapvault.backup.storage import S3Config, S3Uploader


@pytest.fixture
def backup_settings(tmp_path):
    """
    Backup settings with one existing file path.
    """
    source = tmp_path / 'source.txt'
    source.write_text('source data')

    return BackupSettings(
        paths=[str(source)],
        bucket='test-bucket',
        enabled=True,
        weekly_enabled=True,
        timeout_minutes=60
    )


@pytest.fixture
def mock_executor():
    """
    Executor double whose perform_backup always succeeds.
    """
    executor = MagicMock()

    def perform_backup(source_path, bucket):
        result = UploadResult.leaf(bucket, f'backups/2024/01/15/120000/{source_path}', 10, 1, '"etag"')
        return BackupOutcome.success(source_path, result)

    executor.perform_backup.side_effect = perform_backup
    return executor


@pytest.fixture
def orchestrator(backup_settings, mock_executor):
    """JobOrchestrator wired to the mock executor."""
    return JobOrchestrator(backup_settings, mock_executor)


@pytest.fixture(scope='function')
def app(orchestrator):
    """
    Create Flask app with test configuration.

    The scheduler is disabled and the orchestrator is injected.
    """
    app = create_app('testing', orchestrator=orchestrator)
    app.config.update({
        'TESTING': True,
    })

    yield app


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture
def s3_config():
    """S3 settings pointing at the moto-backed test bucket."""
    return S3Config(
        access_key='test_access_key',
        secret_key='test_secret_key',
        region='us-east-1',
        default_bucket='test-bucket'
    )


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')

        yield s3


@pytest.fixture
def uploader(mock_s3, s3_config):
    """S3Uploader talking to the moto bucket."""
    return S3Uploader(s3_config)


@pytest.fixture
def mock_s3_client():
    """
    MagicMock boto3 client recording every part body it receives.
    """
    client = MagicMock()
    client.put_object.return_value = {'ETag': '"single-etag"'}
    client.create_multipart_upload.return_value = {'UploadId': 'upload-123'}
    client.complete_multipart_upload.return_value = {'ETag': '"multipart-etag-15"'}

    client.uploaded_parts = []

    def upload_part(**kwargs):
        client.uploaded_parts.append((kwargs['PartNumber'], kwargs['Body']))
        return {'ETag': f'"part-{kwargs["PartNumber"]}"'}

    client.upload_part.side_effect = upload_part
    return client


class FakeRunner:
    """
    Command runner double for the VSS provider.

    Responses are keyed by executable name; each value is a CommandResult,
    an exception to raise, or a callable taking (args, timeout).
    """

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.calls = []

    def run(self, args, timeout):
        self.calls.append((list(args), timeout))
        response = self.responses.get(args[0], CommandResult(0, ''))
        if callable(response) and not isinstance(response, CommandResult):
            response = response(args, timeout)
        if isinstance(response, Exception):
            raise response
        return response

    def executables(self):
        return [args[0] for args, _ in self.calls]


SHADOW_ID = '{8A3B5C7D-1E2F-4A5B-9C8D-7E6F5A4B3C2D}'
DEVICE_OBJECT = '\\\\?\\GLOBALROOT\\Device\\HarddiskVolumeShadowCopy7'

CREATE_OUTPUT = f"ShadowID={SHADOW_ID}\nDeviceObject={DEVICE_OBJECT}\n"

ROBOCOPY_OUTPUT = """
               Total    Copied   Skipped  Mismatch    FAILED    Extras
    Dirs :         3         2         1         0         0         0
   Files :        12        12         0         0         0         0
   Bytes :   1.234 m   1.234 m         0         0         0         0
"""


@pytest.fixture
def fake_runner():
    """FakeRunner answering a successful create, copy and delete."""
    return FakeRunner({
        'powershell.exe': CommandResult(0, CREATE_OUTPUT),
        'robocopy': CommandResult(1, ROBOCOPY_OUTPUT),
        'vssadmin': CommandResult(0, 'Successfully deleted 1 shadow copy.'),
    })


@pytest.fixture
def shadow_id():
    """Shadow id reported by the fake_runner create command."""
    return SHADOW_ID


@pytest.fixture
def command_timeout():
    """Factory for CommandTimeout errors."""
    def make(args=None, timeout=1800):
        return CommandTimeout(args or ['robocopy'], timeout, 'partial output')
    return make


@pytest.fixture
def temp_files(tmp_path):
    """
    Create temporary test files and directories.

    Creates:
    - data/test_file1.txt
    - data/test_file2.log
    - data/nested/test_file3.txt
    - data/nested/deeper/test_file4.bin
    """
    root = tmp_path / 'data'
    root.mkdir()
    (root / 'test_file1.txt').write_text('Test content 1')
    (root / 'test_file2.log').write_text('Test log content')

    nested_dir = root / 'nested'
    nested_dir.mkdir()
    (nested_dir / 'test_file3.txt').write_text('Nested test content')

    deeper_dir = nested_dir / 'deeper'
    deeper_dir.mkdir()
    (deeper_dir / 'test_file4.bin').write_bytes(b'\x00\x01\x02' * 100)

    return root
