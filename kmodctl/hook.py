"""Kernel update hook.

When the host exposes a kernel post-install hook directory, the running
`init` instance drops a script there so that installing a new kernel
pre-builds the matching driver package through `kmodctl update`.
"""

import logging
import shlex
from pathlib import Path

logger = logging.getLogger(__name__)

# Bare driver-container names accepted by Settings next to KMODCTL_*
FORWARDED_VARIABLES = (
    "DRIVER_VERSION",
    "KERNEL_VERSION",
    "ACCEPT_LICENSE",
    "PRIVATE_KEY",
    "PACKAGE_TAG",
    "MAX_THREADS",
    "MODULE_PARAMS",
)

HOOK_TEMPLATE = """#!/bin/bash
set -eu
trap 'echo "ERROR: Failed to update the {driver} driver" >&2; exit 0' ERR
DRIVER_PID=$(< {lock_path})
while IFS= read -r -d '' var; do
    case "${{var%%=*}}" in
        KMODCTL_*|{forwarded}) export "$var" ;;
    esac
done < {proc_root}/"${{DRIVER_PID}}"/environ
nsenter -t "${{DRIVER_PID}}" -m -- {program} update --kernel "$1"
"""


def render_hook(
    driver_name: str,
    lock_path: Path,
    program: str = "kmodctl",
    proc_root: Path = Path("/proc"),
) -> str:
    """Render the hook script body.

    The script copies the running instance's configuration from its
    environment, matching whole variable names only.
    """
    return HOOK_TEMPLATE.format(
        driver=driver_name,
        lock_path=shlex.quote(str(lock_path)),
        forwarded="|".join(FORWARDED_VARIABLES),
        proc_root=shlex.quote(str(proc_root)),
        program=shlex.quote(program),
    )


def write_kernel_update_hook(
    hook_path: Path,
    driver_name: str,
    lock_path: Path,
    program: str = "kmodctl",
    proc_root: Path = Path("/proc"),
) -> bool:
    """Write the kernel update hook if the hook directory exists.

    Args:
        hook_path: Hook script path.
        driver_name: Driver name used in messages.
        lock_path: Lock file holding the running instance's pid.
        program: Command re-entered inside the instance's namespace.
        proc_root: procfs mount the hook reads the instance's environment from.

    Returns:
        True if the hook was written.
    """
    if not hook_path.parent.is_dir():
        logger.debug("No kernel hook directory at %s", hook_path.parent)
        return False

    logger.info("Writing kernel update hook %s...", hook_path)
    hook_path.write_text(render_hook(driver_name, lock_path, program, proc_root))
    hook_path.chmod(0o755)
    return True


def remove_kernel_update_hook(hook_path: Path) -> None:
    """Remove the kernel update hook; a missing hook is fine."""
    hook_path.unlink(missing_ok=True)


__all__ = [
    "FORWARDED_VARIABLES",
    "remove_kernel_update_hook",
    "render_hook",
    "write_kernel_update_hook",
]
