"""Build pipeline producing driver packages.

This module provides the package build API:
- build(): provision, compile, link, sign, pack and store a package
- Every step is a hard dependency on the previous one
- The package cache is only written after packing succeeded in full
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING

from kmodctl.packages.cache import PackageCache, PackageCacheError
from kmodctl.packages.models import DriverPackage, ModuleFragment, package_name
from kmodctl.packages.runner import (
    CommandError,
    CommandResult,
    compose_clean_command,
    compose_compile_command,
    compose_link_command,
    compose_pack_command,
    compose_provision_command,
    compose_sign_command,
    run_command,
)
from kmodctl.types import DEFAULT_MODULES, ModuleSpec

if TYPE_CHECKING:
    from kmodctl.config import Settings

logger = logging.getLogger(__name__)

BUILD_ENV = {"IGNORE_CC_MISMATCH": "1"}


class BuildError(Exception):
    """Raised when any step of a package build fails."""

    def __init__(
        self,
        message: str,
        code: str = "build_error",
        log_path: Path | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.log_path = log_path


class BuildPipeline:
    """Produces a fresh package for a kernel version on cache miss."""

    def __init__(
        self,
        settings: Settings,
        cache: PackageCache,
        modules: Sequence[ModuleSpec] = DEFAULT_MODULES,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self.modules = tuple(modules)

    @property
    def kernel_source_dir(self) -> Path:
        return self.settings.source_path / self.settings.kernel_type

    def build(
        self,
        kernel_version: str,
        *,
        sign_key: str | None = None,
        tag: str | None = None,
        max_threads: int | None = None,
    ) -> DriverPackage:
        """Build and store a package for a kernel version.

        Args:
            kernel_version: Target kernel release.
            sign_key: Signing key reference; modules are signed when set.
            tag: Optional package tag.
            max_threads: Compilation concurrency.

        Returns:
            The stored DriverPackage.

        Raises:
            BuildError: If any step fails. The cache is left untouched.
        """
        settings = self.settings
        threads = max_threads or settings.max_threads
        name = package_name(settings.driver_name, kernel_version, tag)

        if settings.work_dir is not None:
            settings.work_dir.mkdir(parents=True, exist_ok=True)
        work_dir = Path(
            tempfile.mkdtemp(
                prefix=f"kmodctl_build_{kernel_version}_", dir=settings.work_dir
            )
        )
        log_path = work_dir / "build.log"
        logger.info("Building driver package %s (log: %s)", name, log_path)

        try:
            env_root = self._provision(kernel_version, log_path)
            kernel_build_dir = env_root / "lib" / "modules" / kernel_version / "build"
            try:
                self._compile(kernel_build_dir, threads, log_path)
                fragments = self._collect(work_dir, log_path)
                if sign_key:
                    fragments = self._sign(work_dir, fragments, sign_key, log_path)
                package = self._pack(
                    work_dir, name, kernel_version, tag, fragments, log_path
                )
            finally:
                self._clean(kernel_build_dir, threads, log_path)

            try:
                self.cache.store(kernel_version, package, work_dir)
            except PackageCacheError as e:
                raise BuildError(str(e), code=e.code, log_path=log_path) from e
        except BuildError:
            logger.error("Build of %s failed, work directory kept: %s", name, work_dir)
            raise

        shutil.rmtree(work_dir, ignore_errors=True)
        logger.info("Built driver package %s for kernel %s", name, kernel_version)
        return package

    def _run(
        self,
        cmd: list[str],
        step: str,
        log_path: Path,
        cwd: Path | None = None,
        capture: bool = False,
    ) -> CommandResult:
        try:
            result = run_command(
                cmd,
                cwd=cwd,
                timeout=self.settings.build_timeout,
                log_path=None if capture else log_path,
                env_override=BUILD_ENV,
            )
        except CommandError as e:
            code = "build_timeout" if e.code == "timeout" else e.code
            raise BuildError(str(e), code=code, log_path=log_path) from e
        if not result.success:
            raise BuildError(
                f"{step.capitalize()} failed: {result.diagnostic}",
                code=f"{step}_failed",
                log_path=log_path,
            )
        return result

    def _provision(self, kernel_version: str, log_path: Path) -> Path:
        logger.info("Provisioning build environment for kernel %s...", kernel_version)
        result = self._run(
            compose_provision_command(self.settings.provision_command, kernel_version),
            "provision",
            log_path,
            capture=True,
        )
        lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        env_root = Path(lines[-1]) if lines else None
        if env_root is None or not env_root.is_dir():
            raise BuildError(
                f"Provisioner did not report a build environment for {kernel_version}",
                code="provision_failed",
                log_path=log_path,
            )
        logger.debug("Build environment root: %s", env_root)
        return env_root

    def _compile(self, kernel_build_dir: Path, threads: int, log_path: Path) -> None:
        logger.info("Compiling driver kernel modules...")
        targets = [
            m.interface_object if m.linked and m.interface_object else m.filename
            for m in self.modules
        ]
        self._run(
            compose_compile_command(
                self.settings.make_command, kernel_build_dir, targets, threads
            ),
            "compile",
            log_path,
            cwd=self.kernel_source_dir,
        )

    def _collect(self, work_dir: Path, log_path: Path) -> list[ModuleFragment]:
        """Link linked modules into the work dir and gather build outputs."""
        logger.info("Linking driver kernel modules...")
        src = self.kernel_source_dir
        fragments: list[ModuleFragment] = []
        for spec in self.modules:
            if spec.linked:
                if not spec.interface_object or not spec.core_object:
                    raise BuildError(
                        f"Module {spec.name} has no kernel interface or core object",
                        code="link_failed",
                        log_path=log_path,
                    )
                interface = src / spec.interface_object
                core = src / spec.core_object
                self._run(
                    compose_link_command(
                        self.settings.linker_command,
                        work_dir / spec.filename,
                        [interface, core],
                    ),
                    "link",
                    log_path,
                    cwd=src,
                )
                self._copy_output(interface, work_dir, log_path)
                self._copy_output(core, work_dir, log_path)
                fragments.append(
                    ModuleFragment(
                        module=spec.name,
                        linked_module=spec.filename,
                        interface_object=interface.name,
                        core_object=core.name,
                    )
                )
            else:
                self._copy_output(src / spec.filename, work_dir, log_path)
                fragments.append(
                    ModuleFragment(module=spec.name, linked_module=spec.filename)
                )
        return fragments

    def _copy_output(self, path: Path, work_dir: Path, log_path: Path) -> None:
        if not path.is_file():
            raise BuildError(
                f"Expected build output is missing: {path}",
                code="compile_failed",
                log_path=log_path,
            )
        shutil.copy2(path, work_dir / path.name)

    def _sign(
        self,
        work_dir: Path,
        fragments: list[ModuleFragment],
        key_id: str,
        log_path: Path,
    ) -> list[ModuleFragment]:
        logger.info("Signing driver kernel modules...")
        signed: list[ModuleFragment] = []
        for frag in fragments:
            signature = f"{frag.linked_module}.sign"
            self._run(
                compose_sign_command(
                    self.settings.signer_command,
                    key_id,
                    work_dir / frag.linked_module,
                    work_dir / signature,
                ),
                "sign",
                log_path,
                cwd=work_dir,
            )
            if not (work_dir / signature).is_file():
                raise BuildError(
                    f"Signer produced no signature for {frag.linked_module}",
                    code="sign_failed",
                    log_path=log_path,
                )
            signed.append(frag.model_copy(update={"signature": signature}))
        return signed

    def _pack(
        self,
        work_dir: Path,
        name: str,
        kernel_version: str,
        tag: str | None,
        fragments: list[ModuleFragment],
        log_path: Path,
    ) -> DriverPackage:
        logger.info("Building driver package %s...", name)
        self._run(
            compose_pack_command(
                self.settings.packager,
                name,
                kernel_version,
                self.settings.driver_version,
                self.cache.proc_mount_point(kernel_version),
                fragments,
            ),
            "pack",
            log_path,
            cwd=work_dir,
        )
        if not (work_dir / name).is_file():
            raise BuildError(
                f"Packaging tool produced no package {name}",
                code="pack_failed",
                log_path=log_path,
            )
        return DriverPackage(
            name=name,
            kernel_version=kernel_version,
            driver_version=self.settings.driver_version,
            tag=tag,
            fragments=fragments,
            signed=any(f.signature for f in fragments),
        )

    def _clean(self, kernel_build_dir: Path, threads: int, log_path: Path) -> None:
        try:
            result = run_command(
                compose_clean_command(
                    self.settings.make_command, kernel_build_dir, threads
                ),
                cwd=self.kernel_source_dir,
                timeout=self.settings.build_timeout,
                log_path=log_path,
            )
        except CommandError as e:
            logger.warning("Could not clean kernel module sources: %s", e)
            return
        if not result.success:
            logger.warning(
                "Cleaning kernel module sources failed: %s", result.diagnostic
            )


__all__ = ["BuildError", "BuildPipeline"]
