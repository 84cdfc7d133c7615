"""
Backup executor - orchestrates one backup run.

Workflow:
1. Generate the backup name and temp path
2. Check database connectivity (retried)
3. Run pg_dump into the temp path
4. Upload to storage
5. Remove the temp artifact (always, even on failure)

Nothing is retried here apart from the connectivity check; a failed run
is reported to the caller, which decides whether to run again.
"""

import logging
import os
import shutil
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Optional

from .dump import STEP_WAIT, DumpError, PgDumper
from .naming import generate_backup_name
from .probe import ConnectionProber
from .process import BackupCancelled, CancellationToken
from .storage import Storage

if TYPE_CHECKING:
    from pgbackup.config import PostgresSettings


logger = logging.getLogger(__name__)


class UploadError(Exception):
    """Raised when the storage sink rejects a finished backup."""

    def __init__(self, message: str, storage_type: str):
        self.storage_type = storage_type
        super().__init__(message)


class BackupResult:
    """Outcome of a successful backup run."""

    def __init__(
        self,
        name: str,
        storage_key: str,
        storage_type: str,
        size_bytes: int,
        started_at: datetime,
        completed_at: datetime
    ):
        self.name = name
        self.storage_key = storage_key
        self.storage_type = storage_type
        self.size_bytes = size_bytes
        self.started_at = started_at
        self.completed_at = completed_at

    @property
    def duration_seconds(self) -> float:
        return (self.completed_at - self.started_at).total_seconds()

    def __repr__(self):
        return f"<BackupResult {self.name} -> {self.storage_type}:{self.storage_key}>"


def get_artifact_size(path: str) -> int:
    """Size in bytes of a file, or the total of every file below a directory."""
    if os.path.isdir(path):
        total = 0
        for root, _dirs, files in os.walk(path):
            for filename in files:
                total += os.path.getsize(os.path.join(root, filename))
        return total
    return os.path.getsize(path)


class BackupExecutor:
    """
    Runs PostgreSQL backups and hands them to a storage sink.

    Not safe to run concurrently for the same database: two runs in the
    same second share a temp path.
    """

    def __init__(
        self,
        settings: 'PostgresSettings',
        storage: Storage,
        temp_dir: str,
        dumper: Optional[PgDumper] = None,
        prober: Optional[ConnectionProber] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize backup executor.

        Args:
            settings: Database and pg_dump settings
            storage: Sink receiving finished backups
            temp_dir: Scratch directory for the artifact
            dumper: pg_dump runner (defaults to PgDumper(settings))
            prober: Connectivity checker (defaults to ConnectionProber(settings))
            clock: Returns the current UTC time; used for naming
        """
        self.settings = settings
        self.storage = storage
        self.temp_dir = temp_dir
        self.dumper = dumper or PgDumper(settings)
        self.prober = prober or ConnectionProber(settings)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def name(self) -> str:
        return 'PostgreSQL'

    def test_connection(self, cancel: Optional[CancellationToken] = None):
        """Verify the database is reachable. See ConnectionProber.test_connection."""
        self.prober.test_connection(cancel)

    def run(self, cancel: Optional[CancellationToken] = None) -> BackupResult:
        """
        Execute one backup.

        Args:
            cancel: Optional token aborting the run at any blocking step

        Returns:
            BackupResult describing the stored backup

        Raises:
            ConnectionCheckError: If the database never became reachable
            DumpError: If pg_dump failed
            UploadError: If the storage sink failed
            BackupCancelled: If cancelled
        """
        logger.info("Starting backup process...")
        started_at = self.clock()

        backup_name = generate_backup_name(
            self.settings.database,
            self.settings.dump_format,
            self.settings.compression,
            started_at
        )
        temp_path = os.path.join(self.temp_dir, backup_name)

        try:
            self.prober.test_connection(cancel)

            self.dumper.dump(temp_path, cancel)
            try:
                size_bytes = get_artifact_size(temp_path)
            except OSError as e:
                raise DumpError(f"pg_dump produced no readable output at {temp_path}: {e}", STEP_WAIT) from e
            logger.info(f"Dump created: {backup_name} ({size_bytes / 1024 / 1024:.2f} MB)")

            storage_key = self._upload(temp_path, backup_name, cancel)
        finally:
            self._cleanup(temp_path)

        logger.info(f"Backup completed successfully: {backup_name} (storage: {self.storage.storage_type})")

        return BackupResult(
            name=backup_name,
            storage_key=storage_key,
            storage_type=self.storage.storage_type,
            size_bytes=size_bytes,
            started_at=started_at,
            completed_at=self.clock()
        )

    def _upload(self, temp_path: str, backup_name: str, cancel: Optional[CancellationToken]) -> str:
        logger.info(f"Uploading {backup_name} to {self.storage.storage_type} storage")
        cancellation_check = cancel.check if cancel is not None else None

        try:
            return self.storage.upload(temp_path, backup_name, cancellation_check)
        except BackupCancelled:
            raise
        except Exception as e:
            raise UploadError(f"Failed to upload backup: {e}", self.storage.storage_type) from e

    def _cleanup(self, path: str):
        """Remove the temp artifact. Failures are logged, never raised."""
        try:
            if os.path.isdir(path):
                shutil.rmtree(path)
            else:
                os.remove(path)
        except FileNotFoundError:
            logger.debug(f"No temp artifact to remove at {path}")
        except OSError as e:
            logger.warning(f"Warning: failed to remove temp file {path}: {e}")
