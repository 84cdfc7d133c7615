"""
Subprocess execution with cancellation support.

The pg_isready probe and pg_dump both run through a ProcessRunner so the
child environment is built from an explicit overlay (credentials never
touch os.environ) and so tests can substitute the command being run.
"""

import os
import subprocess
import threading
from typing import Dict, List, Optional


class BackupCancelled(Exception):
    """Raised when a backup run is cancelled while blocked."""
    pass


class CancellationToken:
    """
    Cancellation signal shared by every blocking step of a backup run.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        """Request cancellation. Safe to call from signal handlers and other threads."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self):
        """
        Raise if cancellation was requested.

        Raises:
            BackupCancelled: If the token is cancelled
        """
        if self._event.is_set():
            raise BackupCancelled("Backup run cancelled")

    def wait(self, seconds: float) -> bool:
        """
        Block for up to `seconds`, returning early on cancellation.

        Returns:
            True if the token was cancelled
        """
        return self._event.wait(seconds)


class ProcessRunner:
    """
    Starts external tools and waits for them, honouring a CancellationToken.
    """

    # How often the watcher thread polls the child for exit
    poll_interval = 0.1

    def __init__(self):
        # pid -> cancel watcher thread of a started child
        self._watchers: Dict[int, threading.Thread] = {}

    def run(
        self,
        args: List[str],
        env: Optional[Dict[str, str]] = None,
        stdout=None,
        stderr=None,
        cancel: Optional[CancellationToken] = None
    ) -> int:
        """
        Run a command to completion.

        Args:
            args: Command and arguments
            env: Environment overlay applied on top of the inherited environment
            stdout: Passed to Popen (None inherits, a file object redirects)
            stderr: Passed to Popen
            cancel: Optional token; cancellation kills the child

        Returns:
            Exit status of the command

        Raises:
            BackupCancelled: If cancelled before or while running
            OSError: If the command cannot be started
        """
        process = self.start(args, env=env, stdout=stdout, stderr=stderr, cancel=cancel)
        return self.wait(process, cancel)

    def start(
        self,
        args: List[str],
        env: Optional[Dict[str, str]] = None,
        stdout=None,
        stderr=None,
        cancel: Optional[CancellationToken] = None
    ) -> subprocess.Popen:
        """
        Start a command without waiting for it.

        Pass stdout=subprocess.PIPE to stream the command's output.
        """
        if cancel is not None:
            cancel.check()

        process = subprocess.Popen(
            args,
            env=self._build_env(env),
            stdout=stdout,
            stderr=stderr
        )

        if cancel is not None:
            self._watch(process, cancel)

        return process

    def wait(self, process: subprocess.Popen, cancel: Optional[CancellationToken] = None) -> int:
        """
        Wait for a started command to exit and for its cancel watcher to finish.

        Raises:
            BackupCancelled: If the token was cancelled while the command ran
        """
        returncode = process.wait()

        watcher = self._watchers.pop(process.pid, None)
        if watcher is not None:
            watcher.join()

        if cancel is not None and cancel.cancelled:
            raise BackupCancelled(f"{os.path.basename(str(process.args[0]))} cancelled")
        return returncode

    @staticmethod
    def _build_env(overlay: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
        if not overlay:
            return None
        env = os.environ.copy()
        env.update(overlay)
        return env

    def _watch(self, process: subprocess.Popen, cancel: CancellationToken):
        """Kill `process` as soon as `cancel` fires, for as long as it runs."""
        def watcher():
            while process.poll() is None:
                if cancel.wait(self.poll_interval):
                    process.kill()
                    return

        thread = threading.Thread(target=watcher, name=f"cancel-watch-{process.pid}", daemon=True)
        thread.start()
        self._watchers[process.pid] = thread
