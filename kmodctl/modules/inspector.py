"""Live kernel module state.

Reads module reference counts and holders from sysfs. Nothing is cached:
every call is a fresh observation, since external consumers can change
module state at any time.
"""

import logging
import os
from collections.abc import Iterable
from pathlib import Path

from kmodctl.types import ModuleSpec, ModuleState

logger = logging.getLogger(__name__)


class ModuleStateInspector:
    """Read-through view of /sys/module.

    Attributes:
        sysfs_root: sysfs mount point.
    """

    def __init__(self, sysfs_root: Path = Path("/sys")) -> None:
        self.sysfs_root = sysfs_root

    def module_dir(self, name: str) -> Path:
        return self.sysfs_root / "module" / name

    def state(self, name: str) -> ModuleState:
        """Return the current state of a module.

        A module is loaded when its `refcnt` attribute exists; built-in
        modules have a sysfs directory but no refcount and are reported
        absent.

        Args:
            name: Module name as it appears under /sys/module.

        Returns:
            ModuleState observed now.
        """
        module_dir = self.module_dir(name)
        refcnt = module_dir / "refcnt"
        try:
            refcount = int(refcnt.read_text().strip())
        except FileNotFoundError:
            return ModuleState(name=name, loaded=False)
        except (OSError, ValueError) as e:
            logger.warning("Could not read %s: %s", refcnt, e)
            return ModuleState(name=name, loaded=True)

        holders_dir = module_dir / "holders"
        try:
            holders = sorted(p.name for p in holders_dir.iterdir())
        except OSError:
            holders = []

        return ModuleState(name=name, loaded=True, refcount=refcount, holders=holders)

    def states(self, modules: Iterable[ModuleSpec]) -> dict[str, ModuleState]:
        """Return the current state of every module in a set."""
        return {m.name: self.state(m.name) for m in modules}

    def loaded_modules(self, modules: Iterable[ModuleSpec]) -> list[str]:
        """Names of the modules of a set that are loaded now."""
        return [name for name, s in self.states(modules).items() if s.loaded]


def running_kernel(proc_root: Path = Path("/proc")) -> str:
    """Return the release of the running kernel.

    Args:
        proc_root: procfs mount point.

    Returns:
        Kernel release string.
    """
    osrelease = proc_root / "sys" / "kernel" / "osrelease"
    try:
        release = osrelease.read_text().strip()
    except OSError:
        release = ""
    return release or os.uname().release


__all__ = ["ModuleStateInspector", "running_kernel"]
