"""
pg_dump execution.

Output routing depends on the dump format:
- custom, tar, directory: pg_dump writes to the output path itself (-f)
- plain: pg_dump writes to stdout, which is either redirected into the
  output file or streamed through gzip into it
"""

import gzip
import logging
import shutil
import subprocess
from typing import TYPE_CHECKING, List, Optional

from .process import CancellationToken, ProcessRunner

if TYPE_CHECKING:
    from pgbackup.config import PostgresSettings


logger = logging.getLogger(__name__)

# Read size for the stdout -> gzip copy
COPY_BUFFER_SIZE = 64 * 1024

STEP_CREATE = 'create'
STEP_START = 'start'
STEP_COPY = 'copy'
STEP_WAIT = 'wait'


class DumpError(Exception):
    """
    Raised when pg_dump fails or its output cannot be written.

    Attributes:
        step: Failing step ('create', 'start', 'copy' or 'wait')
    """

    def __init__(self, message: str, step: str):
        self.step = step
        super().__init__(message)


class PgDumper:
    """
    Runs pg_dump for one database into a local output path.
    """

    def __init__(self, settings: 'PostgresSettings', runner: Optional[ProcessRunner] = None):
        self.settings = settings
        self.runner = runner or ProcessRunner()

    @property
    def streams_output(self) -> bool:
        """True when pg_dump writes to stdout instead of to a path."""
        return self.settings.dump_format == 'plain'

    def build_command(self, output_path: str) -> List[str]:
        """
        Build the pg_dump argument vector.

        The format flag is the first letter of the format name (p, c, d, t).
        """
        settings = self.settings
        args = [
            settings.pg_dump_path,
            '-h', settings.host,
            '-p', str(settings.port),
            '-U', settings.user,
            '-d', settings.database,
            '-F', settings.dump_format[0],
        ]

        if not self.streams_output:
            args.extend(['-f', output_path])

        args.extend(settings.extra_args)
        return args

    def build_env(self) -> dict:
        """Environment overlay carrying the password."""
        return {'PGPASSWORD': self.settings.password}

    def dump(self, output_path: str, cancel: Optional[CancellationToken] = None):
        """
        Dump the database to `output_path`.

        Args:
            output_path: File (or directory, for directory format) to create
            cancel: Optional token; cancellation kills pg_dump

        Raises:
            DumpError: If pg_dump fails or output cannot be written
            BackupCancelled: If cancelled
        """
        logger.info(f"Running pg_dump for database '{self.settings.database}' (format: {self.settings.dump_format})")

        args = self.build_command(output_path)
        env = self.build_env()

        if not self.streams_output:
            self._dump_direct(args, env, cancel)
        elif self.settings.compression:
            self._dump_gzip(args, env, output_path, cancel)
        else:
            self._dump_plain(args, env, output_path, cancel)

        logger.info("pg_dump completed successfully")

    def _dump_direct(self, args: List[str], env: dict, cancel: Optional[CancellationToken]):
        # stderr is inherited so pg_dump diagnostics reach the operator
        try:
            returncode = self.runner.run(args, env=env, stdout=subprocess.DEVNULL, cancel=cancel)
        except OSError as e:
            raise DumpError(f"Failed to start pg_dump: {e}", STEP_START) from e
        self._check_exit(returncode, args)

    def _dump_plain(self, args: List[str], env: dict, output_path: str, cancel: Optional[CancellationToken]):
        out_file = self._create_output(output_path)
        with out_file:
            try:
                returncode = self.runner.run(args, env=env, stdout=out_file, cancel=cancel)
            except OSError as e:
                raise DumpError(f"Failed to start pg_dump: {e}", STEP_START) from e
        self._check_exit(returncode, args)

    def _dump_gzip(self, args: List[str], env: dict, output_path: str, cancel: Optional[CancellationToken]):
        out_file = self._create_output(output_path)
        try:
            gz = gzip.GzipFile(fileobj=out_file, mode='wb', compresslevel=self.settings.compression_level)
        except OSError as e:
            self._close_quietly(out_file)
            raise DumpError(f"Failed to write output file {output_path}: {e}", STEP_CREATE) from e

        try:
            try:
                process = self.runner.start(args, env=env, stdout=subprocess.PIPE, cancel=cancel)
            except OSError as e:
                raise DumpError(f"Failed to start pg_dump: {e}", STEP_START) from e

            try:
                shutil.copyfileobj(process.stdout, gz, COPY_BUFFER_SIZE)
            except OSError as e:
                process.kill()
                self.runner.wait(process)
                raise DumpError(f"Failed to compress output: {e}", STEP_COPY) from e
            finally:
                process.stdout.close()

            returncode = self.runner.wait(process, cancel)
            self._check_exit(returncode, args)
        except BaseException:
            # The output is discarded; a failing flush must not replace the error
            self._close_quietly(gz, out_file)
            raise

        # Flush the gzip trailer only once pg_dump has exited cleanly
        try:
            try:
                gz.close()
            finally:
                out_file.close()
        except OSError as e:
            raise DumpError(f"Failed to finish compressed output: {e}", STEP_COPY) from e

    @staticmethod
    def _close_quietly(*streams):
        for stream in streams:
            try:
                stream.close()
            except OSError as e:
                logger.warning(f"Failed to close partial output: {e}")

    @staticmethod
    def _create_output(output_path: str):
        try:
            return open(output_path, 'wb')
        except OSError as e:
            raise DumpError(f"Failed to create output file {output_path}: {e}", STEP_CREATE) from e

    @staticmethod
    def _check_exit(returncode: int, args: List[str]):
        if returncode != 0:
            cause = subprocess.CalledProcessError(returncode, args)
            raise DumpError(f"pg_dump failed with exit status {returncode}", STEP_WAIT) from cause
