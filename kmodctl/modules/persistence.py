"""Persistence daemon control.

The persistence daemon keeps the driver initialized while no client is
attached. It holds the device files open, so it must be stopped before the
modules can be unloaded, and it is started only once every module reports
loaded.
"""

from __future__ import annotations

import logging
import os
import signal
import time
from pathlib import Path

from kmodctl.lock import pid_alive
from kmodctl.packages.runner import CommandError, run_command

logger = logging.getLogger(__name__)

# Bounded wait for the daemon to exit after SIGTERM
STOP_POLL_ATTEMPTS = 50
STOP_POLL_INTERVAL = 0.1


class PersistenceDaemonError(Exception):
    """Raised when the persistence daemon cannot be started or stopped."""

    def __init__(self, message: str, code: str = "persistence_daemon_error") -> None:
        super().__init__(message)
        self.code = code


class PersistenceDaemon:
    """Start/stop a persistence daemon identified by its pid file."""

    def __init__(
        self,
        command: str,
        pid_file: Path,
        timeout: int | None = None,
        poll_attempts: int = STOP_POLL_ATTEMPTS,
        poll_interval: float = STOP_POLL_INTERVAL,
    ) -> None:
        self.command = command
        self.pid_file = pid_file
        self.timeout = timeout
        self.poll_attempts = poll_attempts
        self.poll_interval = poll_interval

    def pid(self) -> int | None:
        """Pid recorded in the pid file, if any."""
        try:
            return int(self.pid_file.read_text().strip())
        except (OSError, ValueError):
            return None

    def start(self) -> None:
        """Start the daemon; it detaches itself.

        Raises:
            PersistenceDaemonError: If the daemon fails to start.
        """
        logger.info("Starting persistence daemon...")
        try:
            result = run_command(
                [self.command, "--persistence-mode"], timeout=self.timeout
            )
        except CommandError as e:
            raise PersistenceDaemonError(str(e)) from e
        if not result.success:
            raise PersistenceDaemonError(
                f"Could not start persistence daemon: {result.diagnostic}"
            )

    def stop(self) -> None:
        """Stop the daemon if it is running.

        Sends SIGTERM and polls a fixed number of times for the process to
        exit.

        Raises:
            PersistenceDaemonError: If the daemon is still alive after polling.
        """
        pid = self.pid()
        if pid is None:
            return

        logger.info("Stopping persistence daemon (pid %d)...", pid)
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            return

        for _ in range(self.poll_attempts):
            if not pid_alive(pid):
                return
            time.sleep(self.poll_interval)

        raise PersistenceDaemonError(
            f"Could not stop persistence daemon (pid {pid})",
            code="persistence_daemon_stop_failed",
        )


__all__ = ["PersistenceDaemon", "PersistenceDaemonError"]
