"""Package cache keyed by kernel version.

This module handles:
- Locating the cache entry for a kernel version
- Loading package metadata (lookup)
- Deciding whether a rebuild is required against the live kernel
- Atomically storing a freshly built package

Layout of one entry::

    <cache_root>/<kernel_version>/
        package.json          metadata (DriverPackage)
        <package name>        packed artifact
        *.ko / *.o / *.sign   fragments and signature sidecars
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from collections.abc import Iterable
from pathlib import Path

from pydantic import ValidationError

from kmodctl.packages.models import PACKAGE_METADATA_FILE, DriverPackage
from kmodctl.packages.runner import (
    VERIFY_MATCH_OUTPUT,
    CommandError,
    compose_verify_command,
    run_command,
)
from kmodctl.types import ModuleSpec

logger = logging.getLogger(__name__)


class PackageCacheError(Exception):
    """Raised when the cache cannot be written."""

    def __init__(self, message: str, code: str = "cache_error") -> None:
        super().__init__(message)
        self.code = code


def _entry_files(package: DriverPackage) -> list[str]:
    """File names a complete entry holds besides the metadata."""
    return [package.name, *(n for f in package.fragments for n in f.files())]


class PackageCache:
    """Store of built driver packages, one entry per kernel version.

    Attributes:
        root: Cache root directory.
        packager: Packaging tool used to verify cached packages.
        modules_root: Host module tree; `<modules_root>/<K>/proc` is the
            procfs view the packaging tool matches against.
        driver_version: Driver version packages must have been built from.
        timeout: Timeout for verify invocations.
    """

    def __init__(
        self,
        root: Path,
        packager: str,
        modules_root: Path,
        driver_version: str,
        timeout: int | None = None,
    ) -> None:
        self.root = root
        self.packager = packager
        self.modules_root = modules_root
        self.driver_version = driver_version
        self.timeout = timeout

    def entry_dir(self, kernel_version: str) -> Path:
        return self.root / kernel_version

    def package_file(self, kernel_version: str, package: DriverPackage) -> Path:
        return self.entry_dir(kernel_version) / package.name

    def proc_mount_point(self, kernel_version: str) -> Path:
        return self.modules_root / kernel_version / "proc"

    def list_versions(self) -> list[str]:
        """List kernel versions with a cache entry."""
        if not self.root.is_dir():
            return []
        return sorted(
            p.name
            for p in self.root.iterdir()
            if p.is_dir()
            and not p.name.startswith(".")
            and (p / PACKAGE_METADATA_FILE).is_file()
        )

    def lookup(self, kernel_version: str) -> DriverPackage | None:
        """Load the cached package for a kernel version.

        Args:
            kernel_version: Cache key.

        Returns:
            DriverPackage, or None if there is no complete entry.
        """
        entry = self.entry_dir(kernel_version)
        metadata_path = entry / PACKAGE_METADATA_FILE
        if not metadata_path.is_file():
            logger.debug("No cached package for %s", kernel_version)
            return None

        try:
            package = DriverPackage.model_validate_json(metadata_path.read_text())
        except (OSError, ValidationError) as e:
            logger.warning("Ignoring unreadable cache entry %s: %s", entry, e)
            return None

        missing = [
            name
            for name in _entry_files(package)
            if not (entry / name).is_file()
        ]
        if missing:
            logger.warning(
                "Ignoring incomplete cache entry %s (missing: %s)",
                entry,
                ", ".join(missing),
            )
            return None

        return package

    def requires_rebuild(
        self,
        kernel_version: str,
        modules: Iterable[ModuleSpec],
    ) -> bool:
        """Decide whether a package must be built for a kernel version.

        A rebuild is required when there is no usable entry, when the entry
        was built for another kernel or driver version, when it lacks one of
        the required modules, or when the packaging tool does not confirm
        that a cached kernel interface matches the kernel.

        Args:
            kernel_version: Target kernel release.
            modules: Module set the package must provide.

        Returns:
            True if the Build Pipeline must run.
        """
        logger.info("Checking driver packages for kernel %s...", kernel_version)
        package = self.lookup(kernel_version)
        if package is None:
            return True

        if package.kernel_version != kernel_version:
            logger.info(
                "Cached package %s describes kernel %s, not %s",
                package.name,
                package.kernel_version,
                kernel_version,
            )
            return True
        if package.driver_version != self.driver_version:
            logger.info(
                "Cached package %s was built for driver %s, not %s",
                package.name,
                package.driver_version,
                self.driver_version,
            )
            return True

        missing = [m.name for m in modules if package.fragment(m.name) is None]
        if missing:
            logger.info(
                "Cached package %s lacks modules: %s", package.name, ", ".join(missing)
            )
            return True

        package_file = self.package_file(kernel_version, package)
        proc_mount = self.proc_mount_point(kernel_version)
        for frag in package.fragments:
            if not frag.relinkable:
                continue
            cmd = compose_verify_command(
                self.packager, package_file, proc_mount, frag.interface_object
            )
            try:
                result = run_command(cmd, cwd=package_file.parent, timeout=self.timeout)
            except CommandError as e:
                logger.warning("Could not verify %s: %s", package.name, e)
                return True
            if not result.success or result.stdout.strip() != VERIFY_MATCH_OUTPUT:
                logger.info(
                    "Kernel interface %s of %s does not match kernel %s",
                    frag.interface_object,
                    package.name,
                    kernel_version,
                )
                return True

        logger.info("Found driver package %s", package.name)
        return False

    def store(
        self,
        kernel_version: str,
        package: DriverPackage,
        source_dir: Path,
    ) -> DriverPackage:
        """Persist a package built in `source_dir` as the entry for a kernel.

        The entry is assembled in a temporary sibling directory and swapped
        into place, so a previous entry is only superseded by a complete one.

        Args:
            kernel_version: Cache key.
            package: Package metadata.
            source_dir: Directory holding the packed artifact and fragments.

        Returns:
            The stored package.

        Raises:
            PackageCacheError: If a file is missing or the entry cannot be written.
        """
        if package.kernel_version != kernel_version:
            raise PackageCacheError(
                f"Package {package.name} describes {package.kernel_version}, "
                f"cannot store it for {kernel_version}",
                code="cache_key_mismatch",
            )

        self.root.mkdir(parents=True, exist_ok=True)
        entry = self.entry_dir(kernel_version)
        tmp_entry = Path(tempfile.mkdtemp(prefix=f".{kernel_version}.", dir=self.root))
        try:
            for name in _entry_files(package):
                src = source_dir / name
                if not src.is_file():
                    raise PackageCacheError(
                        f"Missing package file: {src}", code="missing_file"
                    )
                shutil.copy2(src, tmp_entry / name)

            (tmp_entry / PACKAGE_METADATA_FILE).write_text(
                package.model_dump_json(indent=2)
            )

            old_entry: Path | None = None
            if entry.exists():
                old_entry = self.root / f".{kernel_version}.old"
                shutil.rmtree(old_entry, ignore_errors=True)
                os.replace(entry, old_entry)
            os.replace(tmp_entry, entry)
            if old_entry is not None:
                shutil.rmtree(old_entry, ignore_errors=True)
        except OSError as e:
            shutil.rmtree(tmp_entry, ignore_errors=True)
            raise PackageCacheError(
                f"Failed to store package {package.name}: {e}"
            ) from e
        except PackageCacheError:
            shutil.rmtree(tmp_entry, ignore_errors=True)
            raise

        logger.info("Stored driver package %s in %s", package.name, entry)
        return package


__all__ = ["PackageCache", "PackageCacheError"]
