"""
Backup executor - backs up one source path to a bucket.

Workflow:
1. Check the source path exists
2. Create a private staging directory
3. Snapshot the source into the staging directory
4. Upload the staged file or directory tree
5. Remove the staging directory (always)
"""

import os
import shutil
import logging
import tempfile
from typing import Optional

from .models import BackupOutcome, SnapshotRequest
from .snapshot import SnapshotError, LOG_FILE_NAME
from .storage import UploadError


logger = logging.getLogger(__name__)

PAYLOAD_DIR_NAME = 'payload'


class BackupExecutor:
    """
    Runs snapshot + upload for a single source path.

    Never raises: every failure is turned into a failed BackupOutcome so
    one bad path cannot stop the paths after it.
    """

    def __init__(self, snapshot_provider, uploader, temp_dir: Optional[str] = None):
        """
        Initialize backup executor.

        Args:
            snapshot_provider: Provider with acquire(SnapshotRequest)
            uploader: Uploader with upload_file() and upload_directory()
            temp_dir: Parent directory for staging (default: system temp)
        """
        self.snapshot_provider = snapshot_provider
        self.uploader = uploader
        self.temp_dir = temp_dir

    def perform_backup(self, source_path: str, bucket: str) -> BackupOutcome:
        """
        Back up source_path to bucket.

        Args:
            source_path: File or directory to back up
            bucket: Target bucket

        Returns:
            BackupOutcome with the upload result or a failure reason
        """
        logger.info(f"Starting backup: {source_path} -> s3://{bucket}")

        if not source_path or not os.path.exists(source_path):
            reason = f"Source path does not exist: {source_path}"
            logger.error(reason)
            return BackupOutcome.failure(source_path, reason)

        staging_dir = None
        try:
            staging_dir = self._create_staging_dir()
            outcome = self._snapshot_and_upload(source_path, bucket, staging_dir)
        except Exception as e:
            reason = self._classify(e)
            logger.error(f"Backup failed for {source_path}: {reason}", exc_info=not isinstance(e, (SnapshotError, UploadError)))
            outcome = BackupOutcome.failure(source_path, reason)
        finally:
            if staging_dir:
                self._cleanup(staging_dir)

        return outcome

    def _create_staging_dir(self) -> str:
        if self.temp_dir:
            os.makedirs(self.temp_dir, exist_ok=True)
        staging_dir = tempfile.mkdtemp(prefix='snapvault_backup_', dir=self.temp_dir)
        logger.debug(f"Staging directory: {staging_dir}")
        return staging_dir

    def _snapshot_and_upload(self, source_path: str, bucket: str, staging_dir: str) -> BackupOutcome:
        # Payload and snapshot log live in separate subtrees of staging
        name = os.path.basename(os.path.normpath(source_path)) or 'root'
        payload_dir = os.path.join(staging_dir, PAYLOAD_DIR_NAME)
        os.makedirs(payload_dir, exist_ok=True)
        staged_path = os.path.join(payload_dir, name)
        log_path = os.path.join(staging_dir, LOG_FILE_NAME)

        snapshot = self.snapshot_provider.acquire(SnapshotRequest(source_path, staged_path, log_path))
        if not snapshot.succeeded:
            return BackupOutcome.failure(
                source_path,
                f"Snapshot failed with exit code {snapshot.exit_code}: {snapshot.raw_output.strip()}"
            )
        logger.info(f"Snapshot captured for {source_path} (files copied: {snapshot.files_copied})")

        if os.path.isdir(staged_path):
            result = self.uploader.upload_directory(staged_path, bucket)
        else:
            result = self.uploader.upload_file(staged_path, bucket)

        if not result.succeeded:
            if not result.is_aggregate:
                return BackupOutcome.failure(source_path, f"Upload failed: {result.message}")

            failed = result.failed_children
            keys = ', '.join(child.object_key for child in failed)
            for child in failed:
                logger.error(f"Upload failed for {child.s3_url}: {child.message}")
            return BackupOutcome.failure(
                source_path,
                f"Upload failed: {len(failed)} of {result.file_count} files failed ({keys})"
            )

        logger.info(f"Backup completed: {source_path} -> {result.s3_url} ({result.formatted_size})")
        return BackupOutcome.success(source_path, result)

    @staticmethod
    def _classify(error: Exception) -> str:
        if isinstance(error, SnapshotError):
            return f"Snapshot {error.kind.value}: {error}"
        if isinstance(error, UploadError):
            return f"Upload failed: {error}"
        return f"Backup failed: {error}"

    def _cleanup(self, staging_dir: str):
        """Remove the staging directory and everything in it."""
        try:
            shutil.rmtree(staging_dir)
            logger.debug(f"Cleaned up staging directory {staging_dir}")
        except OSError as e:
            logger.warning(f"Failed to clean up staging directory {staging_dir}: {e}")
