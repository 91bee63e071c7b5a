"""
Object storage uploader for staged backup content.

Supports AWS S3 and S3-compatible stores (MinIO, Lightsail) through a
custom endpoint. Files above MULTIPART_THRESHOLD go through a multipart
upload in PART_SIZE chunks; everything else is a single put_object.

Object keys:
    backups/{YYYY}/{MM}/{DD}/{HHMMSS}/{filename}
    backups/{YYYY}/{MM}/{DD}/{HHMMSS}/{dirname}/{relative path}
"""

import os
import logging
import mimetypes
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Mapping

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError, BotoCoreError

from .models import UploadResult


logger = logging.getLogger(__name__)

MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
PART_SIZE = 10 * 1024 * 1024  # 10MB
DEFAULT_CONTENT_TYPE = 'application/octet-stream'
KEY_ROOT = 'backups'
TIMESTAMP_FORMAT = '%Y/%m/%d/%H%M%S'


class UploadError(Exception):
    """Raised when an upload cannot be performed or fails."""
    pass


class S3Config:
    """
    Connection settings for an S3-compatible store.

    Loaded with load_s3_config(); environment variables take priority
    over the S3_* fallback names.
    """

    def __init__(self, access_key: str = None, secret_key: str = None, region: str = None,
                 default_bucket: str = None, endpoint: str = None, path_style_access: bool = False):
        self.access_key = access_key
        self.secret_key = secret_key
        self.region = region
        self.default_bucket = default_bucket
        self.endpoint = endpoint
        self.path_style_access = path_style_access

    def validate(self):
        """
        Check that all required settings are present.

        Raises:
            ValueError: If a required setting is missing or empty
        """
        for name, label in (('access_key', 'Access key'), ('secret_key', 'Secret key'),
                            ('region', 'Region'), ('default_bucket', 'Default bucket')):
            value = getattr(self, name)
            if value is None or not str(value).strip():
                raise ValueError(f"{label} cannot be empty")

    @property
    def uses_path_style(self) -> bool:
        if self.path_style_access:
            return True
        # MinIO on a local endpoint only answers path-style requests
        endpoint = self.endpoint or ''
        return 'localhost' in endpoint or '127.0.0.1' in endpoint

    def __repr__(self):
        return (f'<S3Config region={self.region} endpoint={self.endpoint} '
                f'bucket={self.default_bucket} path_style={self.path_style_access}>')


def load_s3_config(environ: Optional[Mapping[str, str]] = None) -> S3Config:
    """
    Build S3 settings from environment variables.

    AWS_* names win over the S3_* names. Region defaults to us-east-1 and
    the bucket to snapvault-default.

    Args:
        environ: Mapping to read from (default: os.environ)

    Returns:
        Validated S3Config

    Raises:
        ValueError: If credentials are missing
    """
    if environ is None:
        environ = os.environ

    def pick(primary, fallback):
        value = environ.get(primary)
        if value is None:
            value = environ.get(fallback)
        return value or None

    config = S3Config(
        access_key=pick('AWS_ACCESS_KEY_ID', 'S3_ACCESS_KEY'),
        secret_key=pick('AWS_SECRET_ACCESS_KEY', 'S3_SECRET_KEY'),
        region=pick('AWS_REGION', 'S3_REGION') or 'us-east-1',
        default_bucket=pick('AWS_S3_BUCKET', 'S3_BUCKET') or 'snapvault-default',
        endpoint=pick('AWS_ENDPOINT_URL', 'S3_ENDPOINT'),
        path_style_access=str(environ.get('S3_PATH_STYLE', 'false')).lower() == 'true'
    )
    config.validate()

    logger.info(f"S3 configuration loaded: {config!r}")
    return config


def _utc_now(now: Optional[datetime] = None) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now
    return now.astimezone(timezone.utc)


def generate_object_key(filename: str, now: Optional[datetime] = None) -> str:
    """Key for a single file: backups/<UTC yyyy/MM/dd/HHmmss>/<filename>."""
    timestamp = _utc_now(now).strftime(TIMESTAMP_FORMAT)
    return f"{KEY_ROOT}/{timestamp}/{filename}"


def generate_directory_prefix(dirname: str, now: Optional[datetime] = None) -> str:
    """Prefix for a directory tree: backups/<UTC yyyy/MM/dd/HHmmss>/<dirname>/."""
    timestamp = _utc_now(now).strftime(TIMESTAMP_FORMAT)
    return f"{KEY_ROOT}/{timestamp}/{dirname}/"


def detect_content_type(path: str) -> str:
    content_type, _ = mimetypes.guess_type(path)
    return content_type or DEFAULT_CONTENT_TYPE


class S3Uploader:
    """
    Uploads files and directory trees to an S3-compatible bucket.

    The client is shared across all uploads made through one uploader.
    """

    def __init__(self, config: S3Config, client=None,
                 multipart_threshold: int = MULTIPART_THRESHOLD, part_size: int = PART_SIZE):
        """
        Initialize the uploader.

        Args:
            config: Connection settings
            client: Pre-built boto3 S3 client (built from config when omitted)
            multipart_threshold: Files larger than this use multipart upload
            part_size: Size of each multipart chunk
        """
        self.config = config
        self.default_bucket = config.default_bucket
        self.multipart_threshold = multipart_threshold
        self.part_size = part_size

        if client is None:
            client = self._create_client(config)
        self.s3_client = client

        logger.info(f"S3Uploader initialized for bucket {self.default_bucket} (endpoint: {config.endpoint or 'AWS'})")

    @staticmethod
    def _create_client(config: S3Config):
        kwargs = {
            'aws_access_key_id': config.access_key,
            'aws_secret_access_key': config.secret_key,
            'region_name': config.region,
        }
        if config.endpoint:
            kwargs['endpoint_url'] = config.endpoint
        if config.uses_path_style:
            kwargs['config'] = BotoConfig(s3={'addressing_style': 'path'})

        try:
            return boto3.client('s3', **kwargs)
        except (BotoCoreError, ValueError) as e:
            raise UploadError(f"Failed to initialize S3 client: {e}")

    def upload_file(self, local_path, bucket: Optional[str] = None, key: Optional[str] = None) -> UploadResult:
        """
        Upload a single file.

        Args:
            local_path: Path to a regular, readable file
            bucket: Target bucket (default: configured bucket)
            key: Object key (default: generated timestamped key)

        Returns:
            Leaf UploadResult with the object's ETag

        Raises:
            UploadError: If validation or the upload fails
        """
        path = Path(local_path)
        self._validate_file(path)

        bucket = bucket or self.default_bucket
        key = key or generate_object_key(path.name)
        file_size = path.stat().st_size

        logger.info(f"Uploading {path.name} ({file_size} bytes) to s3://{bucket}/{key}")

        try:
            if file_size > self.multipart_threshold:
                return self._multipart_upload(path, bucket, key, file_size)
            return self._simple_upload(path, bucket, key, file_size)

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise UploadError(f"S3 upload failed for {path.name} ({error_code}): {e}")
        except BotoCoreError as e:
            raise UploadError(f"S3 upload failed for {path.name}: {e}")
        except OSError as e:
            raise UploadError(f"Failed to read {path}: {e}")

    def upload_directory(self, directory, bucket: Optional[str] = None, prefix: Optional[str] = None) -> UploadResult:
        """
        Upload every regular file under a directory.

        A failure on one file is recorded as a failed child and the
        remaining files are still uploaded.

        Args:
            directory: Directory to upload recursively
            bucket: Target bucket (default: configured bucket)
            prefix: Key prefix (default: generated timestamped prefix)

        Returns:
            Aggregate UploadResult with one child per file

        Raises:
            UploadError: If the path is not a directory
        """
        root = Path(directory)
        if not root.is_dir():
            raise UploadError(f"Path is not a directory: {directory}")

        bucket = bucket or self.default_bucket
        prefix = prefix if prefix is not None else generate_directory_prefix(root.name)

        logger.info(f"Uploading directory {root} to s3://{bucket}/{prefix}")

        children = []
        for file_path in root.rglob('*'):
            if not file_path.is_file() or file_path.is_symlink():
                continue

            key = prefix + file_path.relative_to(root).as_posix()
            try:
                children.append(self.upload_file(file_path, bucket, key))
            except UploadError as e:
                logger.error(f"Failed to upload {file_path}: {e}")
                children.append(UploadResult.failed_leaf(bucket, key, str(e)))

        result = UploadResult.aggregate(bucket, prefix, children)
        logger.info(result.message)
        return result

    def _validate_file(self, path: Path):
        if not path.exists():
            raise UploadError(f"File does not exist: {path}")
        if not path.is_file():
            raise UploadError(f"Path is not a file: {path}")
        if not os.access(path, os.R_OK):
            raise UploadError(f"Cannot read file: {path}")

    def _simple_upload(self, path: Path, bucket: str, key: str, file_size: int) -> UploadResult:
        with open(path, 'rb') as f:
            response = self.s3_client.put_object(
                Bucket=bucket,
                Key=key,
                Body=f,
                ContentType=detect_content_type(path.name)
            )

        logger.debug(f"Single upload completed: {path.name} -> s3://{bucket}/{key}")
        return UploadResult.leaf(bucket, key, file_size, 1, response.get('ETag'))

    def _multipart_upload(self, path: Path, bucket: str, key: str, file_size: int) -> UploadResult:
        """
        Upload a large file in part_size chunks.

        The session is aborted on any failure, so no partial object is
        ever published.
        """
        logger.info(f"Starting multipart upload for {path.name} ({file_size // (1024 * 1024)} MB)")

        response = self.s3_client.create_multipart_upload(
            Bucket=bucket,
            Key=key,
            ContentType=detect_content_type(path.name)
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(self.part_size)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=bucket,
                        Key=key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })
                    logger.debug(f"Uploaded part {part_number}: {len(data)} bytes")

                    part_number += 1

            response = self.s3_client.complete_multipart_upload(
                Bucket=bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            self._abort_multipart(bucket, key, upload_id)
            raise

        logger.info(f"Multipart upload completed: {len(parts)} parts uploaded")
        return UploadResult.leaf(bucket, key, file_size, len(parts), response.get('ETag'),
                                 message='Multipart upload completed successfully')

    def _abort_multipart(self, bucket: str, key: str, upload_id: str):
        try:
            self.s3_client.abort_multipart_upload(
                Bucket=bucket,
                Key=key,
                UploadId=upload_id
            )
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"Failed to abort multipart upload {upload_id}: {e}")

    def test_connection(self, bucket: Optional[str] = None) -> bool:
        """
        Test bucket access.

        Returns:
            True if the bucket is reachable

        Raises:
            UploadError: If the bucket is missing or access is denied
        """
        bucket = bucket or self.default_bucket
        try:
            self.s3_client.head_bucket(Bucket=bucket)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == '404':
                raise UploadError(f"Bucket does not exist: {bucket}")
            elif error_code == '403':
                raise UploadError(f"Access denied to bucket: {bucket}")
            else:
                raise UploadError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise UploadError(f"Failed to connect to S3: {e}")

    def close(self):
        """Release the underlying HTTP connections."""
        close = getattr(self.s3_client, 'close', None)
        if close is not None:
            close()
            logger.debug("S3 client closed")
