"""
Backup pipeline for snapvault.

This module handles the core backup functionality including:
- Snapshot acquisition (VSS shadow copies or direct copy)
- Upload to S3-compatible storage (single-shot and multipart)
- Per-path execution with failure isolation
- Single-flight job orchestration
"""

from .models import SnapshotRequest, SnapshotResult, UploadResult, BackupOutcome, JobType, JobResult
from .snapshot import VSSSnapshotProvider, DirectCopyProvider, SnapshotError, create_snapshot_provider
from .storage import S3Uploader, S3Config, UploadError, load_s3_config
from .executor import BackupExecutor
from .orchestrator import JobOrchestrator, create_orchestrator

__all__ = [
    'SnapshotRequest',
    'SnapshotResult',
    'UploadResult',
    'BackupOutcome',
    'JobType',
    'JobResult',
    'VSSSnapshotProvider',
    'DirectCopyProvider',
    'SnapshotError',
    'create_snapshot_provider',
    'S3Uploader',
    'S3Config',
    'UploadError',
    'load_s3_config',
    'BackupExecutor',
    'JobOrchestrator',
    'create_orchestrator'
]
