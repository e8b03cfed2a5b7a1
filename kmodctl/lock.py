"""Host-wide singleton lock.

This module handles:
- Non-blocking exclusive acquisition of the well-known lock file
- Recording the owner's pid for diagnostics
- Idempotent release (unlock + file removal)
- Discovering the pid of a live lock owner
"""

from __future__ import annotations

import fcntl
import logging
import os
from pathlib import Path
from types import TracebackType

logger = logging.getLogger(__name__)


class AlreadyRunningError(Exception):
    """Raised when another instance holds the singleton lock."""

    def __init__(
        self,
        lock_path: Path,
        owner_pid: int | None = None,
        code: str = "already_running",
    ) -> None:
        owner = f" (pid {owner_pid})" if owner_pid else ""
        super().__init__(
            f"An instance of the driver is already running{owner}, aborting"
        )
        self.lock_path = lock_path
        self.owner_pid = owner_pid
        self.code = code


def _read_pid(fd: int) -> int | None:
    """Read a pid recorded at the start of an open lock file."""
    try:
        data = os.pread(fd, 32, 0).decode().strip()
        return int(data) if data else None
    except (OSError, ValueError):
        return None


def pid_alive(pid: int) -> bool:
    """Whether a process with this pid exists (owned by anyone)."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class SingletonLock:
    """Exclusive ownership of the host-wide lock file.

    The lock is an advisory `flock` on a fixed path. It is held for the
    lifetime of an `init` run and released only once shutdown completed.

    Attributes:
        path: Lock file path.
        pid: Pid recorded in the file while held.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self.pid: int | None = None
        self._fd: int | None = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def _is_current(self, fd: int) -> bool:
        """Whether `fd` still refers to the file at `self.path`."""
        try:
            on_disk = os.stat(self.path)
        except FileNotFoundError:
            return False
        opened = os.fstat(fd)
        return (opened.st_dev, opened.st_ino) == (on_disk.st_dev, on_disk.st_ino)

    def acquire(self) -> SingletonLock:
        """Acquire the lock without blocking.

        Returns:
            self, now holding the lock.

        Raises:
            AlreadyRunningError: If the lock is held by another process.
        """
        if self.held:
            return self

        self.path.parent.mkdir(parents=True, exist_ok=True)
        while True:
            fd = os.open(str(self.path), os.O_RDWR | os.O_CREAT, 0o644)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                owner_pid = _read_pid(fd)
                os.close(fd)
                logger.error("Lock %s is held by pid %s", self.path, owner_pid)
                raise AlreadyRunningError(self.path, owner_pid) from None
            if self._is_current(fd):
                break
            # Locked a file the previous holder already removed
            os.close(fd)

        pid = os.getpid()
        os.ftruncate(fd, 0)
        os.pwrite(fd, f"{pid}\n".encode(), 0)
        self._fd = fd
        self.pid = pid
        logger.debug("Acquired lock %s (pid %d)", self.path, pid)
        return self

    def release(self) -> None:
        """Remove the lock file and drop the lock. Safe to call repeatedly."""
        if self._fd is None:
            return
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not remove lock file %s: %s", self.path, e)
        fcntl.flock(self._fd, fcntl.LOCK_UN)
        os.close(self._fd)
        self._fd = None
        self.pid = None
        logger.debug("Released lock %s", self.path)

    def __enter__(self) -> SingletonLock:
        return self.acquire()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


def read_owner_pid(path: Path) -> int | None:
    """Return the pid of a live process holding the lock at `path`.

    The file only exists while held (release removes it), so this reads the
    recorded pid and checks the process is alive without taking the lock.

    Args:
        path: Lock file path.

    Returns:
        The owner's pid, or None when there is no lock file, it is
        unreadable, or the recorded process is gone.
    """
    try:
        fd = os.open(str(path), os.O_RDONLY)
    except OSError:
        return None
    try:
        pid = _read_pid(fd)
    finally:
        os.close(fd)
    if pid is not None and pid_alive(pid):
        return pid
    return None


__all__ = ["AlreadyRunningError", "SingletonLock", "pid_alive", "read_owner_pid"]
