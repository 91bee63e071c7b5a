"""
Snapshot providers for copying files that may be locked by other processes.

Supports:
- VSSSnapshotProvider: Windows Volume Shadow Copy, copied out with robocopy
- DirectCopyProvider: Plain recursive copy for hosts without VSS

Every lifecycle event is appended to a log file (vss-backup.log) placed
next to the destination directory.
"""

import os
import re
import abc
import sys
import time
import shutil
import enum
import ntpath
import logging
import subprocess
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from .models import SnapshotRequest, SnapshotResult


logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MINUTES = 30
CLEANUP_TIMEOUT_SECONDS = 300
LOG_FILE_NAME = 'vss-backup.log'

# robocopy exit codes below 8 mean files were copied or nothing needed copying
ROBOCOPY_FAILURE_THRESHOLD = 8


class SnapshotErrorKind(enum.Enum):
    VALIDATION = 'validation failed'
    CREATION = 'creation failed'
    COPY = 'copy failed'
    TIMED_OUT = 'timed out'


class SnapshotError(Exception):
    """Raised when a snapshot cannot be created or copied from."""

    def __init__(self, message: str, kind: SnapshotErrorKind = SnapshotErrorKind.COPY, output: str = ''):
        super().__init__(message)
        self.kind = kind
        self.output = output


class CommandTimeout(Exception):
    """Raised when an external command exceeds its timeout and was killed."""

    def __init__(self, args: List[str], timeout: float, output: str = ''):
        super().__init__(f"Command timed out after {timeout:.0f}s: {args[0]}")
        self.args_list = args
        self.timeout = timeout
        self.output = output


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    output: str


class SubprocessRunner:
    """Runs external commands synchronously, killing them on timeout."""

    def run(self, args: List[str], timeout: float) -> CommandResult:
        """
        Run a command and capture combined stdout/stderr.

        Args:
            args: Command and arguments
            timeout: Seconds to wait before the process is killed

        Returns:
            CommandResult with exit code and output

        Raises:
            CommandTimeout: If the process had to be killed
            OSError: If the executable cannot be started
        """
        logger.debug(f"Executing: {' '.join(args)}")
        try:
            # subprocess.run kills the child before re-raising TimeoutExpired
            completed = subprocess.run(
                args,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                timeout=timeout,
                text=True,
                errors='replace'
            )
        except subprocess.TimeoutExpired as e:
            output = e.output or ''
            if isinstance(output, bytes):
                output = output.decode(errors='replace')
            raise CommandTimeout(args, timeout, output)

        return CommandResult(completed.returncode, completed.stdout or '')


class SnapshotLog:
    """
    Appends timestamped lifecycle lines to the companion log file and
    mirrors them to the module logger.
    """

    def __init__(self, path: str):
        self.path = path
        self.lines = []

    def write(self, message: str, level: int = logging.INFO):
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        entry = f"[{timestamp}] {logging.getLevelName(level)} {message}"
        self.lines.append(entry)
        logger.log(level, message)

        try:
            with open(self.path, 'a', encoding='utf-8') as f:
                f.write(entry + '\n')
        except OSError as e:
            logger.warning(f"Could not write snapshot log {self.path}: {e}")


class SnapshotProvider(abc.ABC):
    """
    Base class for snapshot providers.

    Subclasses implement _copy_snapshot(); validation, the log artifact and
    the request/result plumbing live here.
    """

    name = 'snapshot'

    def __init__(self, timeout_minutes: int = DEFAULT_TIMEOUT_MINUTES):
        if timeout_minutes <= 0:
            raise ValueError("Snapshot timeout must be positive")
        self.timeout_minutes = timeout_minutes

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_minutes * 60

    def acquire(self, request: SnapshotRequest) -> SnapshotResult:
        return self.acquire_and_copy(request.source_path, request.destination_path, request.log_path)

    def acquire_and_copy(self, source_path: str, destination_path: str,
                         log_path: Optional[str] = None) -> SnapshotResult:
        """
        Snapshot source_path and copy its contents to destination_path.

        Args:
            source_path: File or directory to back up
            destination_path: Where the frozen copy is written
            log_path: Snapshot log file (default: vss-backup.log beside the destination)

        Returns:
            SnapshotResult of the copy

        Raises:
            SnapshotError: On validation, creation, copy failure or timeout
        """
        self.validate(source_path, destination_path)

        log_path = log_path or self.log_path_for(destination_path)
        if os.path.abspath(log_path) == os.path.abspath(destination_path):
            raise SnapshotError(
                f"Snapshot log would overwrite the destination: {destination_path}",
                SnapshotErrorKind.VALIDATION
            )

        request = SnapshotRequest(source_path, destination_path, log_path)
        log = SnapshotLog(log_path)
        log.write(f"Starting {self.name} backup: {source_path} -> {destination_path}")

        try:
            result = self._copy_snapshot(request, log)
        except SnapshotError as e:
            log.write(f"Backup failed ({e.kind.value}): {e}", logging.ERROR)
            raise

        log.write(f"Backup completed (exit code {result.exit_code})")
        return result

    def validate(self, source_path: str, destination_path: str):
        if source_path is None or not str(source_path).strip():
            raise SnapshotError("Source path cannot be empty", SnapshotErrorKind.VALIDATION)
        if destination_path is None or not str(destination_path).strip():
            raise SnapshotError("Destination path cannot be empty", SnapshotErrorKind.VALIDATION)
        if not os.path.exists(source_path):
            raise SnapshotError(f"Source path does not exist: {source_path}", SnapshotErrorKind.VALIDATION)

    @staticmethod
    def log_path_for(destination_path: str) -> str:
        parent = os.path.dirname(os.path.abspath(destination_path))
        os.makedirs(parent, exist_ok=True)
        return os.path.join(parent, LOG_FILE_NAME)

    @abc.abstractmethod
    def _copy_snapshot(self, request: SnapshotRequest, log: SnapshotLog) -> SnapshotResult:
        """Copy request.source_path to request.destination_path, logging to log."""


class VSSSnapshotProvider(SnapshotProvider):
    """
    Copies files out of a Volume Shadow Copy of the source's volume.

    Workflow:
    1. Create a shadow copy of the volume (Win32_ShadowCopy.Create)
    2. Copy the source out of the shadow device with robocopy
    3. Delete the shadow copy (always, once it exists)
    """

    name = 'VSS'

    def __init__(self, timeout_minutes: int = DEFAULT_TIMEOUT_MINUTES, runner=None,
                 platform: Optional[str] = None, cleanup_timeout: float = CLEANUP_TIMEOUT_SECONDS):
        """
        Initialize the VSS provider.

        Args:
            timeout_minutes: Budget for shadow creation plus copy
            runner: Command runner (default: SubprocessRunner)
            platform: Platform identifier (default: sys.platform)
            cleanup_timeout: Seconds allowed for deleting the shadow copy
        """
        super().__init__(timeout_minutes)
        self.runner = runner or SubprocessRunner()
        self.platform = platform or sys.platform
        self.cleanup_timeout = cleanup_timeout

    def validate(self, source_path: str, destination_path: str):
        super().validate(source_path, destination_path)
        if not self.platform.startswith('win'):
            raise SnapshotError(
                "VSS operations are only supported on Windows operating systems",
                SnapshotErrorKind.VALIDATION
            )

    def _copy_snapshot(self, request: SnapshotRequest, log: SnapshotLog) -> SnapshotResult:
        deadline = time.monotonic() + self.timeout_seconds
        volume = self._volume_of(request.source_path)

        with self._shadow_copy(volume, deadline, log) as (shadow_id, device_object):
            result = self._robocopy(request, device_object, deadline, log)

        return SnapshotResult(
            succeeded=True,
            raw_output=result.output,
            exit_code=result.exit_code,
            shadow_id=shadow_id,
            files_copied=self._parse_files_copied(result.output)
        )

    @staticmethod
    def _volume_of(source_path: str) -> str:
        drive, _ = ntpath.splitdrive(source_path)
        if not drive or not drive.endswith(':'):
            raise SnapshotError(
                f"Cannot determine a local volume for: {source_path}",
                SnapshotErrorKind.VALIDATION
            )
        return drive.upper() + '\\'

    def _remaining(self, deadline: float) -> float:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise SnapshotError(
                f"VSS backup operation timed out after {self.timeout_minutes} minutes",
                SnapshotErrorKind.TIMED_OUT
            )
        return remaining

    def _run(self, args: List[str], deadline: float, kind: SnapshotErrorKind) -> CommandResult:
        try:
            return self.runner.run(args, timeout=self._remaining(deadline))
        except CommandTimeout as e:
            raise SnapshotError(
                f"VSS backup operation timed out after {self.timeout_minutes} minutes",
                SnapshotErrorKind.TIMED_OUT,
                e.output
            )
        except OSError as e:
            raise SnapshotError(f"Failed to run {args[0]}: {e}", kind)

    @contextmanager
    def _shadow_copy(self, volume: str, deadline: float, log: SnapshotLog):
        """Create a shadow copy of volume and guarantee its deletion."""
        log.write(f"Creating shadow copy of volume {volume}")
        result = self._run(self._create_command(volume), deadline, SnapshotErrorKind.CREATION)

        if result.exit_code != 0:
            raise SnapshotError(
                f"Shadow copy creation failed with exit code {result.exit_code}",
                SnapshotErrorKind.CREATION,
                result.output
            )

        shadow_id = re.search(r'^ShadowID=(\{[0-9A-Fa-f-]+\})\s*$', result.output, re.MULTILINE)
        device = re.search(r'^DeviceObject=(\S+)\s*$', result.output, re.MULTILINE)
        if not shadow_id or not device:
            raise SnapshotError(
                "Shadow copy creation returned no shadow id",
                SnapshotErrorKind.CREATION,
                result.output
            )

        shadow_id = shadow_id.group(1)
        log.write(f"Shadow copy created: {shadow_id} ({device.group(1)})")

        try:
            yield shadow_id, device.group(1)
        finally:
            self._delete_shadow(shadow_id, log)

    def _delete_shadow(self, shadow_id: str, log: SnapshotLog):
        args = ['vssadmin', 'delete', 'shadows', f'/Shadow={shadow_id}', '/Quiet']
        try:
            result = self.runner.run(args, timeout=self.cleanup_timeout)
        except (CommandTimeout, OSError) as e:
            log.write(f"Failed to delete shadow copy {shadow_id}: {e}", logging.ERROR)
            return

        if result.exit_code == 0:
            log.write(f"Shadow copy deleted: {shadow_id}")
        else:
            log.write(
                f"Failed to delete shadow copy {shadow_id} (exit code {result.exit_code}): {result.output.strip()}",
                logging.ERROR
            )

    def _robocopy(self, request: SnapshotRequest, device_object: str, deadline: float,
                  log: SnapshotLog) -> CommandResult:
        _, relative = ntpath.splitdrive(request.source_path)
        shadow_path = device_object.rstrip('\\') + '\\' + relative.lstrip('\\/')
        options = ['/COPY:DAT', '/R:1', '/W:1', '/NP', '/NJH']
        rename_to = None

        if os.path.isdir(request.source_path):
            args = ['robocopy', shadow_path.rstrip('\\'), request.destination_path, '/E'] + options
        else:
            file_name = ntpath.basename(shadow_path)
            dest_dir = os.path.dirname(os.path.abspath(request.destination_path))
            args = ['robocopy', ntpath.dirname(shadow_path), dest_dir, file_name] + options
            if os.path.basename(request.destination_path) != file_name:
                rename_to = (os.path.join(dest_dir, file_name), request.destination_path)

        log.write(f"Copying from shadow path {shadow_path}")
        result = self._run(args, deadline, SnapshotErrorKind.COPY)

        if result.exit_code >= ROBOCOPY_FAILURE_THRESHOLD:
            raise SnapshotError(
                f"Copy from shadow copy failed with exit code {result.exit_code}",
                SnapshotErrorKind.COPY,
                result.output
            )

        if rename_to:
            try:
                os.replace(*rename_to)
            except OSError as e:
                raise SnapshotError(f"Failed to move copied file into place: {e}", SnapshotErrorKind.COPY)

        log.write(f"Copy finished (robocopy exit code {result.exit_code}, "
                  f"files copied: {self._parse_files_copied(result.output)})")
        return result

    @staticmethod
    def _parse_files_copied(output: str) -> Optional[int]:
        """Read the 'Copied' column of robocopy's Files summary line."""
        match = re.search(r'^\s*Files\s*:\s*(\d+)\s+(\d+)', output, re.MULTILINE)
        if not match:
            return None
        return int(match.group(2))

    @staticmethod
    def _create_command(volume: str) -> List[str]:
        script = (
            f"$r = (Get-WmiObject -List Win32_ShadowCopy).Create('{volume}', 'ClientAccessible'); "
            "if ($r.ReturnValue -ne 0) { Write-Output \"ReturnValue=$($r.ReturnValue)\"; exit [int]$r.ReturnValue }; "
            "$s = Get-WmiObject Win32_ShadowCopy | Where-Object { $_.ID -eq $r.ShadowID }; "
            "Write-Output \"ShadowID=$($s.ID)\"; "
            "Write-Output \"DeviceObject=$($s.DeviceObject)\""
        )
        return ['powershell.exe', '-NoProfile', '-NonInteractive', '-ExecutionPolicy', 'Bypass', '-Command', script]


class DirectCopyProvider(SnapshotProvider):
    """
    Copies the source directly, without a shadow copy.

    Used on hosts without VSS. Locked files will fail to copy. The copy
    runs in-process, so the timeout is not enforced.
    """

    name = 'direct copy'

    def _copy_snapshot(self, request: SnapshotRequest, log: SnapshotLog) -> SnapshotResult:
        source = Path(request.source_path)
        destination = Path(request.destination_path)

        try:
            if source.is_dir():
                shutil.copytree(source, destination, symlinks=False, dirs_exist_ok=True)
                files_copied = sum(1 for p in destination.rglob('*') if p.is_file())
            elif source.is_file():
                destination.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, destination)
                files_copied = 1
            else:
                raise SnapshotError(f"Unsupported path type: {source}", SnapshotErrorKind.VALIDATION)
        except PermissionError as e:
            raise SnapshotError(f"Permission denied accessing {source}: {e}", SnapshotErrorKind.COPY)
        except (OSError, shutil.Error) as e:
            raise SnapshotError(f"Failed to copy {source}: {e}", SnapshotErrorKind.COPY)

        message = f"Copied {files_copied} files"
        log.write(message)
        return SnapshotResult(succeeded=True, raw_output=message, exit_code=0, files_copied=files_copied)


def create_snapshot_provider(kind: str, timeout_minutes: int = DEFAULT_TIMEOUT_MINUTES, **kwargs) -> SnapshotProvider:
    """
    Factory function to create a snapshot provider.

    Args:
        kind: 'vss' or 'copy'
        timeout_minutes: Snapshot timeout

    Returns:
        VSSSnapshotProvider or DirectCopyProvider instance

    Raises:
        ValueError: If kind is invalid
    """
    if kind == 'vss':
        return VSSSnapshotProvider(timeout_minutes, **kwargs)
    elif kind == 'copy':
        return DirectCopyProvider(timeout_minutes)
    else:
        raise ValueError(f"Invalid snapshot provider: {kind}")
