"""Command runner for external collaborators.

This module handles:
- Composing provisioner, toolchain, signer and packaging tool commands
- Composing module load/unload commands
- Executing commands with subprocess
- Capturing stdout/stderr to log files for long-running steps
- Enforcing timeouts
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from kmodctl.packages.models import ModuleFragment

logger = logging.getLogger(__name__)

# Output printed by the packaging tool in verify mode on success
VERIFY_MATCH_OUTPUT = "kernel interface matches."


class CommandError(Exception):
    """Raised when a command cannot be executed or times out."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "execution_error",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code


@dataclass
class CommandResult:
    """Result of a command execution.

    Attributes:
        success: Whether the command exited with status 0.
        exit_code: Process exit code.
        command: The command that was executed.
        stdout: Captured stdout (empty when logging to a file).
        stderr: Captured stderr (empty when logging to a file).
        log_path: Log file receiving the output, if any.
        started_at: Start time.
        finished_at: Finish time.
    """

    success: bool
    exit_code: int
    command: str
    stdout: str = ""
    stderr: str = ""
    log_path: Path | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def diagnostic(self) -> str:
        """Short failure description for error messages."""
        detail = self.stderr.strip() or self.stdout.strip()
        if not detail and self.log_path is not None:
            detail = f"see log: {self.log_path}"
        return f"exit code {self.exit_code}" + (f": {detail}" if detail else "")


def run_command(
    cmd: Sequence[str],
    *,
    cwd: Path | None = None,
    timeout: int | None = None,
    log_path: Path | None = None,
    env_override: dict[str, str] | None = None,
) -> CommandResult:
    """Execute a command.

    When `log_path` is given, stdout and stderr are appended to that file
    together with a header; otherwise they are captured in the result.

    Args:
        cmd: Command as list of strings.
        cwd: Working directory.
        timeout: Timeout in seconds (None = no timeout).
        log_path: Optional log file for the command's output.
        env_override: Optional environment variable overrides.

    Returns:
        CommandResult with execution details. A non-zero exit status is
        reported through `success`, not raised.

    Raises:
        CommandError: If the command cannot be started or times out.
    """
    cmd = [str(c) for c in cmd]
    cmd_str = shlex.join(cmd)
    logger.debug("Executing: %s", cmd_str)

    env: dict[str, str] | None = None
    if env_override:
        env = dict(os.environ)
        env.update(env_override)

    started_at = datetime.now(timezone.utc)
    try:
        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with log_path.open("a") as log_file:
                log_file.write(f"# Command: {cmd_str}\n")
                log_file.write(f"# Started: {started_at.isoformat()}\n")
                if cwd is not None:
                    log_file.write(f"# CWD: {cwd}\n")
                log_file.flush()
                proc = subprocess.run(
                    cmd,
                    cwd=cwd,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    timeout=timeout,
                    env=env,
                    check=False,
                )
            stdout = stderr = ""
        else:
            proc = subprocess.run(
                cmd,
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=timeout,
                env=env,
                check=False,
            )
            stdout = proc.stdout or ""
            stderr = proc.stderr or ""
    except subprocess.TimeoutExpired as e:
        message = f"{cmd[0]} timed out after {timeout} seconds"
        logger.error(message)
        if log_path is not None:
            with log_path.open("a") as log_file:
                log_file.write(f"\n# TIMEOUT after {timeout} seconds\n")
        raise CommandError(message, exit_code=-1, code="timeout") from e
    except OSError as e:
        message = f"Failed to execute {cmd[0]}: {e}"
        logger.error(message)
        raise CommandError(message) from e

    finished_at = datetime.now(timezone.utc)
    if log_path is not None:
        with log_path.open("a") as log_file:
            duration = (finished_at - started_at).total_seconds()
            log_file.write(f"# Exit code: {proc.returncode} ({duration:.1f}s)\n\n")

    if proc.returncode != 0:
        logger.debug("%s exited with %d", cmd[0], proc.returncode)

    return CommandResult(
        success=proc.returncode == 0,
        exit_code=proc.returncode,
        command=cmd_str,
        stdout=stdout,
        stderr=stderr,
        log_path=log_path,
        started_at=started_at,
        finished_at=finished_at,
    )


def compose_provision_command(provisioner: str, kernel_version: str) -> list[str]:
    """Compose the build environment provisioning command.

    The provisioner prints the root of the mounted build environment on
    stdout.
    """
    return [provisioner, kernel_version]


def compose_compile_command(
    make: str,
    kernel_build_dir: Path,
    targets: Sequence[str],
    max_threads: int | None = None,
) -> list[str]:
    """Compose the `make` command compiling kernel-interface objects.

    Args:
        make: Build tool.
        kernel_build_dir: Kernel build tree (SYSSRC).
        targets: Objects/modules to build.
        max_threads: Optional job count.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    cmd = [make, "-s"]
    if max_threads:
        cmd.extend(["-j", str(max_threads)])
    cmd.append(f"SYSSRC={kernel_build_dir}")
    cmd.extend(targets)
    return cmd


def compose_clean_command(
    make: str,
    kernel_build_dir: Path,
    max_threads: int | None = None,
) -> list[str]:
    """Compose the `make clean` command for the kernel source dir."""
    return compose_compile_command(make, kernel_build_dir, ["clean"], max_threads)


def compose_link_command(
    linker: str,
    output: Path | str,
    objects: Sequence[Path | str],
) -> list[str]:
    """Compose a relocatable link producing a loadable module."""
    return [linker, "-d", "-r", "-o", str(output), *(str(o) for o in objects)]


def compose_sign_command(
    signer: str,
    key_id: str,
    module: Path | str,
    signature: Path | str,
) -> list[str]:
    """Compose a detached-signature command for one module file."""
    return [signer, "--key", key_id, "--output", str(signature), str(module)]


def compose_pack_command(
    packager: str,
    name: str,
    kernel_version: str,
    driver_version: str,
    proc_mount_point: Path,
    fragments: Sequence[ModuleFragment],
    target_directory: str = ".",
) -> list[str]:
    """Compose the packaging tool command assembling a package.

    Linked modules are described by their kernel interface and core object,
    complete modules by their module file only.

    Args:
        packager: Packaging tool.
        name: Package name (output file).
        kernel_version: Package description.
        driver_version: Driver version.
        proc_mount_point: procfs view matching the target kernel.
        fragments: Module fragments to include.
        target_directory: Directory recorded for each module.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    cmd = [
        packager,
        "--pack",
        name,
        "--description",
        kernel_version,
        "--proc-mount-point",
        str(proc_mount_point),
        "--driver-version",
        driver_version,
    ]
    for frag in fragments:
        if frag.relinkable:
            cmd.extend(
                [
                    "--kernel-interface",
                    str(frag.interface_object),
                    "--linked-module-name",
                    frag.linked_module,
                    "--core-object-name",
                    str(frag.core_object),
                ]
            )
            if frag.signature:
                cmd.extend(
                    [
                        "--linked-module",
                        frag.linked_module,
                        "--signed-module",
                        frag.signature,
                    ]
                )
        else:
            cmd.extend(["--kernel-module", frag.linked_module])
            if frag.signature:
                cmd.extend(["--signed-module", frag.signature])
        cmd.extend(["--target-directory", target_directory])
    return cmd


def compose_unpack_command(
    packager: str,
    package_file: Path,
    output_dir: Path,
) -> list[str]:
    """Compose the packaging tool command extracting a package."""
    return [packager, "--unpack", str(package_file), "--output", str(output_dir)]


def compose_verify_command(
    packager: str,
    package_file: Path,
    proc_mount_point: Path,
    interface_object: str | None = None,
) -> list[str]:
    """Compose the packaging tool command matching a package to a kernel."""
    cmd = [packager, "--match", str(package_file)]
    if interface_object:
        cmd.extend(["--kernel-interface", interface_object])
    cmd.extend(["--proc-mount-point", str(proc_mount_point)])
    return cmd


def compose_insmod_command(
    module_path: Path, params: str = "", insmod: str = "insmod"
) -> list[str]:
    """Compose the command inserting one module file."""
    return [insmod, str(module_path), *shlex.split(params)]


def compose_rmmod_command(modules: Sequence[str], rmmod: str = "rmmod") -> list[str]:
    """Compose the batch removal command (modules in removal order)."""
    return [rmmod, *modules]


def compose_modprobe_command(
    modules: Sequence[str], modprobe: str = "modprobe"
) -> list[str]:
    """Compose the command loading host modules by name."""
    return [modprobe, "-a", *modules]


__all__ = [
    "VERIFY_MATCH_OUTPUT",
    "CommandError",
    "CommandResult",
    "compose_clean_command",
    "compose_compile_command",
    "compose_insmod_command",
    "compose_link_command",
    "compose_modprobe_command",
    "compose_pack_command",
    "compose_provision_command",
    "compose_rmmod_command",
    "compose_sign_command",
    "compose_unpack_command",
    "compose_verify_command",
    "run_command",
]
