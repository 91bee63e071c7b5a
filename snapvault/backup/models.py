"""
Result objects passed between the backup pipeline stages.

All of them are immutable once constructed; use the factory classmethods
rather than building aggregates by hand so the invariants hold.
"""

import enum
from dataclasses import dataclass, field
from typing import Optional, Tuple


@dataclass(frozen=True)
class SnapshotRequest:
    """
    Source path to freeze and the staging destination to copy it into.

    log_path overrides where the snapshot log is written (default: next to
    the destination).
    """
    source_path: str
    destination_path: str
    log_path: Optional[str] = None


@dataclass(frozen=True)
class SnapshotResult:
    """Outcome of a single snapshot-and-copy operation."""
    succeeded: bool
    raw_output: str
    exit_code: int
    shadow_id: Optional[str] = None
    files_copied: Optional[int] = None


def format_size(size: int) -> str:
    """Human readable byte count (B, KB, MB, GB)."""
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.2f} KB"
    if size < 1024 * 1024 * 1024:
        return f"{size / (1024 * 1024):.2f} MB"
    return f"{size / (1024 * 1024 * 1024):.2f} GB"


@dataclass(frozen=True)
class UploadResult:
    """
    Result of uploading a file (leaf) or a directory tree (aggregate).

    Leaf results carry the store's ETag in ``checksum_tag`` and have no
    children. Aggregate results carry the child results and no checksum;
    their byte and part counts are the sums over the children.
    """
    succeeded: bool
    bucket: str
    object_key: str
    bytes_transferred: int
    part_count: int
    message: str
    checksum_tag: Optional[str] = None
    children: Optional[Tuple['UploadResult', ...]] = None

    @classmethod
    def leaf(cls, bucket: str, object_key: str, size: int, part_count: int,
             checksum_tag: str, message: str = 'Upload completed successfully') -> 'UploadResult':
        return cls(
            succeeded=True,
            bucket=bucket,
            object_key=object_key,
            bytes_transferred=size,
            part_count=part_count,
            message=message,
            checksum_tag=checksum_tag
        )

    @classmethod
    def failed_leaf(cls, bucket: str, object_key: str, message: str) -> 'UploadResult':
        return cls(
            succeeded=False,
            bucket=bucket,
            object_key=object_key,
            bytes_transferred=0,
            part_count=0,
            message=message
        )

    @classmethod
    def aggregate(cls, bucket: str, prefix: str, children) -> 'UploadResult':
        """
        Build a directory result from its child results.

        Args:
            bucket: Target bucket
            prefix: Key prefix shared by all children
            children: Iterable of child UploadResult objects

        Returns:
            Aggregate UploadResult; succeeded only if every child succeeded
        """
        children = tuple(children)
        failed = sum(1 for child in children if not child.succeeded)
        total = sum(child.bytes_transferred for child in children)

        if failed:
            message = f"Directory upload completed with errors: {failed} of {len(children)} files failed"
        else:
            message = f"Directory upload completed: {len(children)} files, {format_size(total)}"

        return cls(
            succeeded=failed == 0,
            bucket=bucket,
            object_key=prefix,
            bytes_transferred=total,
            part_count=sum(child.part_count for child in children),
            message=message,
            checksum_tag=None,
            children=children
        )

    @property
    def is_aggregate(self) -> bool:
        return self.children is not None

    @property
    def file_count(self) -> int:
        if self.children is None:
            return 1
        return len(self.children)

    @property
    def failed_children(self) -> Tuple['UploadResult', ...]:
        if self.children is None:
            return ()
        return tuple(child for child in self.children if not child.succeeded)

    @property
    def s3_url(self) -> str:
        return f"s3://{self.bucket}/{self.object_key}"

    @property
    def formatted_size(self) -> str:
        return format_size(self.bytes_transferred)

    def to_dict(self) -> dict:
        data = {
            'succeeded': self.succeeded,
            'bucket': self.bucket,
            'object_key': self.object_key,
            'bytes_transferred': self.bytes_transferred,
            'part_count': self.part_count,
            'message': self.message,
            'checksum_tag': self.checksum_tag,
        }
        if self.children is not None:
            data['children'] = [child.to_dict() for child in self.children]
        return data


@dataclass(frozen=True)
class BackupOutcome:
    """Result of backing up one source path; exactly one of upload_result/failure_reason is set."""
    source_path: str
    succeeded: bool
    upload_result: Optional[UploadResult] = None
    failure_reason: Optional[str] = None

    def __post_init__(self):
        if self.succeeded and (self.upload_result is None or self.failure_reason is not None):
            raise ValueError("Successful outcome requires an upload result and no failure reason")
        if not self.succeeded and (self.failure_reason is None or self.upload_result is not None):
            raise ValueError("Failed outcome requires a failure reason and no upload result")

    @classmethod
    def success(cls, source_path: str, upload_result: UploadResult) -> 'BackupOutcome':
        return cls(source_path=source_path, succeeded=True, upload_result=upload_result)

    @classmethod
    def failure(cls, source_path: str, reason: str) -> 'BackupOutcome':
        return cls(source_path=source_path, succeeded=False, failure_reason=reason)

    def to_dict(self) -> dict:
        return {
            'source_path': self.source_path,
            'succeeded': self.succeeded,
            'upload_result': self.upload_result.to_dict() if self.upload_result else None,
            'failure_reason': self.failure_reason,
        }


class JobType(enum.Enum):
    """What triggered a backup run."""
    SCHEDULED_DAILY = 'Daily Backup'
    SCHEDULED_WEEKLY = 'Weekly Backup'
    MANUAL = 'Manual Backup'

    @property
    def label(self) -> str:
        return self.value


@dataclass(frozen=True)
class JobResult:
    """
    Aggregate result of one orchestrator invocation.

    ``rejected`` marks a run refused because another run held the lock;
    ``skipped`` marks a scheduled run dropped because scheduling is disabled.
    """
    job_type: JobType
    success_count: int
    failure_count: int
    summary_message: str
    outcomes: Tuple[BackupOutcome, ...] = ()
    duration_seconds: float = 0.0
    rejected: bool = False
    skipped: bool = False
    succeeded: bool = field(init=False)

    def __post_init__(self):
        object.__setattr__(self, 'succeeded', not self.rejected and self.failure_count == 0)

    @classmethod
    def completed(cls, job_type: JobType, outcomes, duration_seconds: float) -> 'JobResult':
        outcomes = tuple(outcomes)
        success_count = sum(1 for outcome in outcomes if outcome.succeeded)
        failure_count = len(outcomes) - success_count
        message = (
            f"{job_type.label} completed: {success_count} succeeded, "
            f"{failure_count} failed in {duration_seconds:.2f}s"
        )
        return cls(
            job_type=job_type,
            success_count=success_count,
            failure_count=failure_count,
            summary_message=message,
            outcomes=outcomes,
            duration_seconds=duration_seconds
        )

    @classmethod
    def rejection(cls, job_type: JobType) -> 'JobResult':
        return cls(
            job_type=job_type,
            success_count=0,
            failure_count=0,
            summary_message=f"Backup job is already running, cannot start {job_type.label.lower()}",
            rejected=True
        )

    @classmethod
    def skip(cls, job_type: JobType, reason: str) -> 'JobResult':
        return cls(
            job_type=job_type,
            success_count=0,
            failure_count=0,
            summary_message=f"{job_type.label} skipped: {reason}",
            skipped=True
        )

    def to_dict(self) -> dict:
        return {
            'job_type': self.job_type.name,
            'succeeded': self.succeeded,
            'success_count': self.success_count,
            'failure_count': self.failure_count,
            'message': self.summary_message,
            'duration_seconds': round(self.duration_seconds, 3),
            'rejected': self.rejected,
            'skipped': self.skipped,
            'outcomes': [outcome.to_dict() for outcome in self.outcomes],
        }
