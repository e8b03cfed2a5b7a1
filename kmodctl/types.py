"""Shared type definitions for kmodctl.

This module contains dataclasses, enums, and constants shared across
subpackages to avoid circular imports.
"""

from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class LifecycleCommand(str, Enum):
    """Entry mode of an orchestrator run."""

    INIT = "init"
    UPDATE = "update"


class LifecyclePhase(str, Enum):
    """Phase reached by an `init` run."""

    STARTING = "starting"
    PREPARING = "preparing"
    ACTIVE = "active"
    SHUTTING_DOWN = "shutting-down"
    STOPPED = "stopped"


@dataclass(frozen=True)
class ModuleSpec:
    """Static description of one kernel module of the driver.

    Attributes:
        name: Module name as it appears under /sys/module.
        filename: File name of the loadable module.
        depends_on: Names of modules that must be loaded first.
        linked: Whether the module is linked from a kernel-interface object
            and a prebuilt core object (and can therefore be relinked).
        interface_object: Kernel-interface object produced by compilation.
        core_object: Prebuilt core object, relative to the kernel source dir.
    """

    name: str
    filename: str
    depends_on: tuple[str, ...] = ()
    linked: bool = False
    interface_object: str | None = None
    core_object: str | None = None


@dataclass
class ModuleState:
    """Live state of a kernel module, read fresh from sysfs.

    Attributes:
        name: Module name.
        loaded: Whether the module is currently loaded.
        refcount: Kernel reference count (0 when absent).
        holders: Loaded modules currently holding a reference on it.
    """

    name: str
    loaded: bool
    refcount: int = 0
    holders: list[str] = field(default_factory=list)


@dataclass
class InstalledModules:
    """Result of an install: final module files in load order."""

    target_dir: Path
    kernel_version: str
    modules: dict[str, Path] = field(default_factory=dict)

    @property
    def order(self) -> list[str]:
        return list(self.modules)


def dependency_order(modules: Sequence[ModuleSpec]) -> list[ModuleSpec]:
    """Order modules so that every module follows its dependencies.

    Declaration order is kept where the graph allows it.

    Args:
        modules: Module set.

    Returns:
        Modules in load order.

    Raises:
        ValueError: On unknown dependencies or dependency cycles.
    """
    by_name = {m.name: m for m in modules}
    for m in modules:
        unknown = [d for d in m.depends_on if d not in by_name]
        if unknown:
            raise ValueError(f"Module {m.name} depends on unknown {unknown}")

    ordered: list[ModuleSpec] = []
    placed: set[str] = set()
    pending = list(modules)
    while pending:
        ready = [m for m in pending if all(d in placed for d in m.depends_on)]
        if not ready:
            names = ", ".join(m.name for m in pending)
            raise ValueError(f"Dependency cycle between modules: {names}")
        for m in ready:
            ordered.append(m)
            placed.add(m.name)
        pending = [m for m in pending if m.name not in placed]
    return ordered


DEFAULT_MODULES: tuple[ModuleSpec, ...] = (
    ModuleSpec(
        name="nvidia",
        filename="nvidia.ko",
        linked=True,
        interface_object="nv-linux.o",
        core_object="nvidia/nv-kernel.o_binary",
    ),
    ModuleSpec(
        name="nvidia_uvm",
        filename="nvidia-uvm.ko",
        depends_on=("nvidia",),
    ),
    ModuleSpec(
        name="nvidia_modeset",
        filename="nvidia-modeset.ko",
        depends_on=("nvidia",),
        linked=True,
        interface_object="nv-modeset-linux.o",
        core_object="nvidia-modeset/nv-modeset-kernel.o_binary",
    ),
    ModuleSpec(
        name="nvidia_drm",
        filename="nvidia-drm.ko",
        depends_on=("nvidia_modeset",),
    ),
)


__all__ = [
    "DEFAULT_MODULES",
    "InstalledModules",
    "LifecycleCommand",
    "LifecyclePhase",
    "ModuleSpec",
    "ModuleState",
    "dependency_order",
]
