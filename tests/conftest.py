"""
Shared pytest fixtures for pgbackup tests.

This module provides fixtures for:
- Database settings
- Process runners standing in for pg_dump / pg_isready
- A recording storage sink
- Mock S3 (moto)
"""

import errno
import io
import os
import sys
from pathlib import Path

import pytest
import boto3
from moto import mock_aws

from pgbackup.backup.dump import PgDumper
from pgbackup.backup.process import ProcessRunner
from pgbackup.config import PostgresSettings


class ScriptedRunner(ProcessRunner):
    """
    ProcessRunner that runs a Python snippet instead of the requested tool.

    Records every requested command and environment overlay.
    """

    poll_interval = 0.02

    def __init__(self, script: str = 'pass'):
        super().__init__()
        self.script = script
        self.calls = []
        self.processes = []

    def start(self, args, env=None, stdout=None, stderr=None, cancel=None):
        self.calls.append({'args': list(args), 'env': dict(env or {})})
        command = [sys.executable, '-c', self.script] + list(args[1:])
        process = super().start(command, env=env, stdout=stdout, stderr=stderr, cancel=cancel)
        self.processes.append(process)
        return process


class SequenceRunner:
    """
    Fake runner returning queued exit codes (or raising queued exceptions).

    Once the queue is empty every call fails with exit status 1.
    """

    def __init__(self, results=()):
        self.results = list(results)
        self.calls = []

    def run(self, args, env=None, stdout=None, stderr=None, cancel=None):
        self.calls.append(list(args))
        result = self.results.pop(0) if self.results else 1
        if isinstance(result, BaseException):
            raise result
        return result


class RecordingStorage:
    """Storage sink that records what it was given."""

    storage_type = 'recording'

    def __init__(self, error=None):
        self.error = error
        self.uploads = []

    def upload(self, local_path, name, cancellation_check=None):
        if cancellation_check:
            cancellation_check()

        path = Path(local_path)
        if path.is_dir():
            content = {
                p.relative_to(path).as_posix(): p.read_bytes()
                for p in sorted(path.rglob('*')) if p.is_file()
            }
        else:
            content = path.read_bytes()

        self.uploads.append({'path': local_path, 'name': name, 'content': content})

        if self.error:
            raise self.error
        return f"recorded/{name}"


class FullDiskWriter(io.FileIO):
    """Output file that fails with ENOSPC once `limit` bytes have been written."""

    def __init__(self, path, limit):
        super().__init__(path, 'wb')
        self.limit = limit

    def write(self, data):
        if self.tell() + len(data) > self.limit:
            raise OSError(errno.ENOSPC, "No space left on device")
        return super().write(data)


class RecordingSleep:
    """Backoff sleep that returns immediately and records requested delays."""

    def __init__(self, on_call=None):
        self.delays = []
        self.on_call = on_call

    def __call__(self, seconds, cancel=None):
        self.delays.append(seconds)
        if self.on_call:
            self.on_call(len(self.delays), cancel)


@pytest.fixture
def make_settings():
    """
    Factory for PostgresSettings.

    Defaults: database appdb on db.internal:5432, custom format.
    """
    def factory(**overrides):
        values = {
            'host': 'db.internal',
            'port': 5432,
            'user': 'backup',
            'password': 's3cret',
            'database': 'appdb',
            'dump_format': 'custom',
            'compression': True,
        }
        values.update(overrides)
        return PostgresSettings(**values)

    return factory


@pytest.fixture
def scripted_runner():
    """Factory for ScriptedRunner instances."""
    return ScriptedRunner


@pytest.fixture
def sequence_runner():
    """Factory for SequenceRunner instances."""
    return SequenceRunner


@pytest.fixture
def recording_storage():
    """A fresh RecordingStorage."""
    return RecordingStorage()


@pytest.fixture
def recording_sleep():
    """Factory for RecordingSleep instances."""
    return RecordingSleep


@pytest.fixture
def temp_dir(tmp_path):
    """Scratch directory for backup artifacts."""
    path = tmp_path / 'scratch'
    path.mkdir()
    return path


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
def clean_env(monkeypatch):
    """Remove configuration variables inherited from the developer's shell."""
    for name in list(os.environ):
        if name.startswith(('PG', 'S3_', 'BACKUP_', 'STORAGE_', 'LOG_')) or name in ('TEMP_DIR', 'LOCAL_BACKUP_DIR'):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def full_disk(monkeypatch):
    """
    Make PgDumper write its output through a FullDiskWriter.

    Call with the number of bytes that fit before the disk is full.
    """
    def fill_after(limit=64 * 1024):
        monkeypatch.setattr(
            PgDumper, '_create_output', staticmethod(lambda output_path: FullDiskWriter(output_path, limit))
        )

    return fill_after
