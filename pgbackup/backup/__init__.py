"""
Backup module for pgbackup.

This module handles the core backup functionality including:
- Connectivity checks (pg_isready with backoff)
- pg_dump execution with optional streaming gzip
- Artifact naming
- Storage (S3 and local)
- Execution orchestration
"""

from .executor import BackupExecutor, BackupResult, UploadError
from .dump import PgDumper, DumpError
from .probe import ConnectionProber, ConnectionCheckError
from .process import BackupCancelled, CancellationToken, ProcessRunner
from .storage import S3Storage, LocalStorage, StorageError, create_storage
from .naming import generate_backup_name, backup_extension

__all__ = [
    'BackupExecutor',
    'BackupResult',
    'UploadError',
    'PgDumper',
    'DumpError',
    'ConnectionProber',
    'ConnectionCheckError',
    'BackupCancelled',
    'CancellationToken',
    'ProcessRunner',
    'S3Storage',
    'LocalStorage',
    'StorageError',
    'create_storage',
    'generate_backup_name',
    'backup_extension'
]
