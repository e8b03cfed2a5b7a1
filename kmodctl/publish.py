"""Namespace publisher for the driver root filesystem.

This module handles:
- Making the shared hierarchy private so the bind does not propagate back
- Recursively bind-mounting the driver rootfs at the run-time location
- Lazy recursive unmount on shutdown (idempotent)
- Mount table inspection via /proc/mounts
"""

import logging
import re
from pathlib import Path

from kmodctl.packages.runner import CommandError, run_command

logger = logging.getLogger(__name__)

_OCTAL_ESCAPE = re.compile(r"\\([0-7]{3})")


class MountError(Exception):
    """Raised when publishing or unpublishing the rootfs fails."""

    def __init__(self, message: str, code: str = "mount_error") -> None:
        super().__init__(message)
        self.code = code


def _unescape(field: str) -> str:
    """Decode the octal escapes used in /proc/mounts (e.g. '\\040')."""
    return _OCTAL_ESCAPE.sub(lambda m: chr(int(m.group(1), 8)), field)


def get_mount_points(proc_root: Path = Path("/proc")) -> list[str]:
    """Return every mount point listed in the mount table.

    Args:
        proc_root: procfs mount point.

    Returns:
        Mount points in table order (empty if the table is unreadable).
    """
    mounts = proc_root / "mounts"
    mount_points: list[str] = []
    try:
        with mounts.open() as f:
            for line in f:
                parts = line.split()
                if len(parts) >= 2:
                    mount_points.append(_unescape(parts[1]))
    except OSError:
        logger.warning("Could not read %s, assuming nothing is mounted", mounts)
    return mount_points


class NamespacePublisher:
    """Exposes the driver rootfs to other containers via a bind mount.

    Attributes:
        driver_root: Root filesystem holding the installed driver.
        publish_dir: Run-time location consumers look at.
        sysfs_root: Hierarchy made private before binding.
        proc_root: procfs mount point used to read the mount table.
        timeout: Timeout for mount commands.
        mount_command: Mount tool.
        umount_command: Unmount tool.
    """

    def __init__(
        self,
        driver_root: Path,
        publish_dir: Path,
        sysfs_root: Path = Path("/sys"),
        proc_root: Path = Path("/proc"),
        timeout: int | None = None,
        mount_command: str = "mount",
        umount_command: str = "umount",
    ) -> None:
        self.driver_root = driver_root
        self.publish_dir = publish_dir
        self.sysfs_root = sysfs_root
        self.proc_root = proc_root
        self.timeout = timeout
        self.mount_command = mount_command
        self.umount_command = umount_command

    def is_published(self) -> bool:
        """Whether the publish dir, or anything below it, is mounted now."""
        target = str(self.publish_dir).rstrip("/")
        return any(
            mp == target or mp.startswith(target + "/")
            for mp in get_mount_points(self.proc_root)
        )

    def _mount(self, cmd: list[str]) -> None:
        try:
            result = run_command(cmd, timeout=self.timeout)
        except CommandError as e:
            raise MountError(str(e)) from e
        if not result.success:
            raise MountError(f"{' '.join(cmd)} failed: {result.diagnostic}")

    def publish(self) -> None:
        """Bind-mount the driver rootfs at the publish dir.

        Raises:
            MountError: If any mount step fails.
        """
        logger.info("Mounting driver rootfs at %s...", self.publish_dir)
        self._mount([self.mount_command, "--make-runbindable", str(self.sysfs_root)])
        self._mount([self.mount_command, "--make-private", str(self.sysfs_root)])
        try:
            self.publish_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise MountError(f"Cannot create {self.publish_dir}: {e}") from e
        self._mount(
            [
                self.mount_command,
                "--rbind",
                str(self.driver_root),
                str(self.publish_dir),
            ]
        )

    def unpublish(self) -> bool:
        """Lazily and recursively unmount the publish dir if it is mounted.

        Returns:
            True if an unmount was performed, False if nothing was mounted.

        Raises:
            MountError: If the unmount fails while the target is still mounted.
        """
        if not self.is_published():
            return False

        logger.info("Unmounting driver rootfs from %s...", self.publish_dir)
        try:
            self._mount([self.umount_command, "-l", "-R", str(self.publish_dir)])
        except MountError:
            if self.is_published():
                raise
            logger.debug("%s was already unmounted", self.publish_dir)
        return True


__all__ = ["MountError", "NamespacePublisher", "get_mount_points"]
