"""
Storage sinks for finished backups.

Supports:
- S3Storage: Upload to AWS S3 or an S3-compatible endpoint
- LocalStorage: Copy into a local directory

Both accept either a single file or a directory tree (pg_dump's
directory format). Trees are stored file by file under the backup name.
"""

import logging
import os
import shutil
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Iterator, Optional, Protocol, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError

if TYPE_CHECKING:
    from pgbackup.config import StorageSettings


logger = logging.getLogger(__name__)

# Files above this size use a chunked multipart upload
MULTIPART_THRESHOLD = 100 * 1024 * 1024
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


class Storage(Protocol):
    """Capability a backup run hands its finished artifact to."""

    storage_type: str

    def upload(self, local_path: str, name: str, cancellation_check: Optional[Callable[[], None]] = None) -> str: ...


def _walk_files(root: Path) -> Iterator[Tuple[Path, str]]:
    """Yield (path, posix relative path) for every file below `root`, sorted."""
    for path in sorted(root.rglob('*')):
        if path.is_file():
            yield path, path.relative_to(root).as_posix()


class S3Storage:
    """
    Handler for uploading backups to S3.

    Objects are stored at {prefix}/{name}; directory artifacts at
    {prefix}/{name}/{relative path}.
    """

    storage_type = 's3'

    def __init__(
        self,
        bucket_name: str,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        region: str = 'us-east-1',
        endpoint_url: Optional[str] = None,
        prefix: str = ''
    ):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            access_key: Access key ID (None uses the default boto3 credential chain)
            secret_key: Secret access key
            region: AWS region (default: us-east-1)
            endpoint_url: Custom endpoint for S3-compatible services
            prefix: Key prefix for every uploaded object
        """
        self.bucket_name = bucket_name
        self.region = region
        self.prefix = prefix.strip('/')

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def key_for(self, name: str) -> str:
        return f"{self.prefix}/{name}" if self.prefix else name

    def upload(self, local_path: str, name: str, cancellation_check: Optional[Callable[[], None]] = None) -> str:
        """
        Upload a backup artifact to S3.

        Args:
            local_path: Path to the local file or directory
            name: Backup name (the object key below the prefix)
            cancellation_check: Optional function called between uploads/parts;
                it raises to abort the upload

        Returns:
            S3 key of the uploaded file (or key prefix for a directory)

        Raises:
            StorageError: If upload fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local path not found: {local_path}")

        key = self.key_for(name)

        try:
            if os.path.isdir(local_path):
                for path, relative in _walk_files(Path(local_path)):
                    self._upload_file(str(path), f"{key}/{relative}", cancellation_check)
            else:
                self._upload_file(local_path, key, cancellation_check)

            logger.info(f"Uploaded to s3://{self.bucket_name}/{key}")
            return key

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 upload failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 upload failed: {e}")
        except OSError as e:
            raise StorageError(f"Failed to read {local_path}: {e}")

    def _upload_file(self, local_path: str, key: str, cancellation_check: Optional[Callable[[], None]]):
        if cancellation_check:
            cancellation_check()

        file_size = os.path.getsize(local_path)
        if file_size > MULTIPART_THRESHOLD:
            self._multipart_upload(local_path, key, cancellation_check)
        else:
            with open(local_path, 'rb') as f:
                self.s3_client.put_object(Bucket=self.bucket_name, Key=key, Body=f)

    def _multipart_upload(self, local_path: str, key: str, cancellation_check: Optional[Callable[[], None]]):
        """
        Upload a large file in chunks, checking for cancellation between parts.

        The multipart upload is aborted on any error, including cancellation.
        """
        response = self.s3_client.create_multipart_upload(Bucket=self.bucket_name, Key=key)
        upload_id = response['UploadId']
        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1
                while True:
                    if cancellation_check:
                        cancellation_check()

                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )
                    parts.append({'PartNumber': part_number, 'ETag': response['ETag']})
                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except BaseException:
            try:
                self.s3_client.abort_multipart_upload(Bucket=self.bucket_name, Key=key, UploadId=upload_id)
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload {upload_id}: {abort_error}")
            raise

    def test_connection(self) -> bool:
        """
        Test S3 connection and bucket access.

        Returns:
            True if connection is successful

        Raises:
            StorageError: If connection test fails
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == '404':
                raise StorageError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            else:
                raise StorageError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to connect to S3: {e}")


class LocalStorage:
    """
    Handler for storing backups in the local filesystem at {base_path}/{name}.
    """

    storage_type = 'local'

    def __init__(self, base_path: str):
        """
        Args:
            base_path: Directory backups are copied into (created if missing)
        """
        self.base_path = Path(base_path)

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create local storage directory: {e}")

    def upload(self, local_path: str, name: str, cancellation_check: Optional[Callable[[], None]] = None) -> str:
        """
        Copy a backup artifact into local storage.

        Returns:
            Path of the stored backup relative to base_path

        Raises:
            StorageError: If storage fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local path not found: {local_path}")

        if cancellation_check:
            cancellation_check()

        dest_path = self.base_path / name

        try:
            if os.path.isdir(local_path):
                shutil.copytree(local_path, dest_path)
            else:
                shutil.copy2(local_path, dest_path)
        except PermissionError as e:
            raise StorageError(f"Permission denied writing to {dest_path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to store locally: {e}")

        logger.info(f"Stored backup at {dest_path}")
        return name


def create_storage(settings: 'StorageSettings') -> Storage:
    """
    Factory function to create the configured storage sink.

    Raises:
        ValueError: If storage_type is invalid
        StorageError: If the sink cannot be initialized
    """
    if settings.storage_type == 's3':
        return S3Storage(
            bucket_name=settings.s3_bucket,
            access_key=settings.s3_access_key,
            secret_key=settings.s3_secret_key,
            region=settings.s3_region,
            endpoint_url=settings.s3_endpoint_url,
            prefix=settings.s3_prefix
        )
    elif settings.storage_type == 'local':
        return LocalStorage(settings.local_dir)
    else:
        raise ValueError(f"Invalid storage type: {settings.storage_type}")
