"""Install pipeline placing loadable modules from a cached package.

This module handles:
- The license gate
- Unpacking a package into a kernel-scoped staging area
- Relinking kernel-interface fragments with the archived linker when the
  running kernel differs from the package's target
- Writing the final modules and their dependency-order manifest into the
  per-driver-version target directory
"""

from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING

from kmodctl.packages.models import DriverPackage
from kmodctl.packages.runner import (
    CommandError,
    compose_link_command,
    compose_unpack_command,
    run_command,
)
from kmodctl.types import (
    DEFAULT_MODULES,
    InstalledModules,
    ModuleSpec,
    dependency_order,
)

if TYPE_CHECKING:
    from kmodctl.config import Settings

logger = logging.getLogger(__name__)

MODULE_ORDER_FILE = "modules.order"


class InstallError(Exception):
    """Raised when a package cannot be installed."""

    def __init__(self, message: str, code: str = "install_error") -> None:
        super().__init__(message)
        self.code = code


class LicenseNotAcceptedError(InstallError):
    """The driver license was not accepted."""

    def __init__(self, driver_name: str) -> None:
        super().__init__(
            f"The {driver_name} driver license must be accepted "
            "(--accept-license or ACCEPT_LICENSE=yes)",
            code="license_not_accepted",
        )


class InstallPipeline:
    """Turns a cached package into loadable module files."""

    def __init__(
        self,
        settings: Settings,
        modules: Sequence[ModuleSpec] = DEFAULT_MODULES,
    ) -> None:
        self.settings = settings
        self.modules = dependency_order(modules)

    def target_dir(self, kernel_version: str) -> Path:
        s = self.settings
        return (
            s.modules_root
            / kernel_version
            / s.module_subdir
            / f"{s.driver_name}-{s.driver_version}"
        )

    def install(
        self,
        package: DriverPackage,
        entry_dir: Path,
        running_kernel: str,
        license_accepted: bool,
    ) -> InstalledModules:
        """Install a cached package for the running kernel.

        Args:
            package: Package metadata.
            entry_dir: Cache entry holding the package and its fragments.
            running_kernel: Release of the kernel modules are installed for.
            license_accepted: Whether the operator accepted the license.

        Returns:
            InstalledModules with module files in load order.

        Raises:
            LicenseNotAcceptedError: If the license was not accepted.
            InstallError: If unpacking or relinking fails. No module files
                are left in the target directory.
        """
        if not license_accepted:
            raise LicenseNotAcceptedError(self.settings.driver_name)

        logger.info("Installing driver kernel modules from %s...", package.name)
        target = self.target_dir(running_kernel)
        staging = self.settings.staging_path / running_kernel

        shutil.rmtree(target, ignore_errors=True)
        shutil.rmtree(staging, ignore_errors=True)
        staging.mkdir(parents=True)

        try:
            self._unpack(package, entry_dir, staging)
            relink = running_kernel != package.kernel_version
            if relink:
                logger.info(
                    "Package targets kernel %s, relinking for %s",
                    package.kernel_version,
                    running_kernel,
                )
            staged = self._prepare(package, staging, relink)
            installed = self._place(staged, target, running_kernel)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        logger.info(
            "Installed %d modules into %s", len(installed.modules), installed.target_dir
        )
        return installed

    def _unpack(self, package: DriverPackage, entry_dir: Path, staging: Path) -> None:
        cmd = compose_unpack_command(
            self.settings.packager, entry_dir / package.name, staging
        )
        try:
            result = run_command(
                cmd, cwd=entry_dir, timeout=self.settings.build_timeout
            )
        except CommandError as e:
            raise InstallError(str(e), code="unpack_failed") from e
        if not result.success:
            raise InstallError(
                f"Unpacking {package.name} failed: {result.diagnostic}",
                code="unpack_failed",
            )

    def _prepare(
        self,
        package: DriverPackage,
        staging: Path,
        relink: bool,
    ) -> dict[str, Path]:
        """Return staged module files in load order, relinking when needed."""
        staged: dict[str, Path] = {}
        for spec in self.modules:
            frag = package.fragment(spec.name)
            if frag is None:
                raise InstallError(
                    f"Package {package.name} has no module {spec.name}",
                    code="missing_fragment",
                )
            module_path = staging / frag.linked_module
            if relink and frag.relinkable:
                self._relink(
                    staging, module_path, frag.interface_object, frag.core_object
                )
            if not module_path.is_file():
                raise InstallError(
                    f"Package {package.name} did not provide {frag.linked_module}",
                    code="missing_fragment",
                )
            staged[spec.name] = module_path
        return staged

    def _relink(
        self,
        staging: Path,
        output: Path,
        interface_object: str | None,
        core_object: str | None,
    ) -> None:
        linker = self.settings.archived_linker_path
        objects = [staging / str(interface_object), staging / str(core_object)]
        missing = [o.name for o in objects if not o.is_file()]
        if missing:
            raise InstallError(
                f"Cannot relink {output.name}, missing: {', '.join(missing)}",
                code="relink_failed",
            )
        output.unlink(missing_ok=True)
        try:
            result = run_command(
                compose_link_command(str(linker), output, objects),
                cwd=staging,
                timeout=self.settings.build_timeout,
            )
        except CommandError as e:
            raise InstallError(str(e), code="relink_failed") from e
        if not result.success:
            raise InstallError(
                f"Relinking {output.name} failed: {result.diagnostic}",
                code="relink_failed",
            )

    def _place(
        self,
        staged: dict[str, Path],
        target: Path,
        kernel_version: str,
    ) -> InstalledModules:
        """Move staged modules into the target directory in one step."""
        tmp_target = target.with_name(f".{target.name}.tmp")
        shutil.rmtree(tmp_target, ignore_errors=True)
        tmp_target.mkdir(parents=True)
        try:
            for path in staged.values():
                shutil.copy2(path, tmp_target / path.name)
            (tmp_target / MODULE_ORDER_FILE).write_text(
                "".join(f"{p.name}\n" for p in staged.values())
            )
            os.replace(tmp_target, target)
        except OSError as e:
            shutil.rmtree(tmp_target, ignore_errors=True)
            raise InstallError(f"Failed to write modules to {target}: {e}") from e

        return InstalledModules(
            target_dir=target,
            kernel_version=kernel_version,
            modules={name: target / path.name for name, path in staged.items()},
        )


__all__ = [
    "MODULE_ORDER_FILE",
    "InstallError",
    "InstallPipeline",
    "LicenseNotAcceptedError",
]
