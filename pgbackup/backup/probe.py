"""
PostgreSQL connectivity check using pg_isready.

Retries with a linearly growing backoff: every failed attempt n,
including the last, is followed by a min(n * 2s, 30s) wait.
"""

import logging
import subprocess
import time
from typing import TYPE_CHECKING, Callable, List, Optional

from .process import BackupCancelled, CancellationToken, ProcessRunner

if TYPE_CHECKING:
    from pgbackup.config import PostgresSettings


logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 10
BACKOFF_STEP_SECONDS = 2
MAX_BACKOFF_SECONDS = 30


class ConnectionCheckError(Exception):
    """Raised when the database is still unreachable after every attempt."""

    def __init__(self, attempts: int, last_error: Optional[BaseException]):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Failed to connect to PostgreSQL after {attempts} attempts: {last_error}")


def backoff_delay(attempt: int) -> int:
    """
    Seconds to wait after failed attempt number `attempt` (1-based).

    The 30s cap only applies from attempt 15, so with the default
    10 attempts the longest wait is 20s, after the last attempt.
    """
    return min(attempt * BACKOFF_STEP_SECONDS, MAX_BACKOFF_SECONDS)


def interruptible_sleep(seconds: float, cancel: Optional[CancellationToken] = None):
    """Sleep for `seconds`, waking early if `cancel` fires."""
    if cancel is None:
        time.sleep(seconds)
    else:
        cancel.wait(seconds)


class ConnectionProber:
    """
    Verifies the database accepts connections before a dump is attempted.
    """

    def __init__(
        self,
        settings: 'PostgresSettings',
        runner: Optional[ProcessRunner] = None,
        sleep: Optional[Callable[[float, Optional[CancellationToken]], None]] = None,
        max_attempts: int = MAX_ATTEMPTS
    ):
        """
        Args:
            settings: Database connection settings
            runner: Process runner (defaults to ProcessRunner())
            sleep: Backoff sleep function taking (seconds, cancel)
            max_attempts: Number of pg_isready invocations before giving up
        """
        self.settings = settings
        self.runner = runner or ProcessRunner()
        self.sleep = sleep or interruptible_sleep
        self.max_attempts = max_attempts

    def build_command(self) -> List[str]:
        return [
            self.settings.pg_isready_path,
            '-h', self.settings.host,
            '-p', str(self.settings.port),
            '-U', self.settings.user,
        ]

    def test_connection(self, cancel: Optional[CancellationToken] = None):
        """
        Block until pg_isready succeeds or attempts run out.

        Args:
            cancel: Optional token aborting both pg_isready and the backoff wait

        Raises:
            ConnectionCheckError: If every attempt failed
            BackupCancelled: If cancelled
        """
        logger.info("Testing PostgreSQL connection...")

        args = self.build_command()
        last_error = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                returncode = self.runner.run(
                    args,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    cancel=cancel
                )
                if returncode == 0:
                    logger.info(f"PostgreSQL is accepting connections (attempt {attempt}/{self.max_attempts})")
                    return
                last_error = subprocess.CalledProcessError(returncode, args)
            except BackupCancelled:
                raise
            except OSError as e:
                # pg_isready missing or not executable
                last_error = e

            # The wait also follows the final attempt, before giving up
            delay = backoff_delay(attempt)
            logger.warning(
                f"Failed to connect to PostgreSQL (attempt {attempt}/{self.max_attempts}): "
                f"{last_error}. Waiting {delay}s..."
            )
            self.sleep(delay, cancel)
            if cancel is not None:
                cancel.check()

        raise ConnectionCheckError(self.max_attempts, last_error) from last_error
