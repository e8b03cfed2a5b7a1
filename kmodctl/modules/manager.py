"""Load/unload manager for the driver's kernel modules.

This module handles:
- Loading the module set in dependency order (dependencies first)
- Refusing to unload while the driver is in use
- Batch unloading in reverse dependency order and verifying removal
- Starting/stopping the persistence daemon around these transitions

Unload failures are recoverable: the caller may retry later. Load failures
are fatal to the run; modules loaded by a failed call are reported, never
rolled back.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from kmodctl.modules.inspector import ModuleStateInspector
from kmodctl.modules.persistence import PersistenceDaemon, PersistenceDaemonError
from kmodctl.packages.runner import (
    CommandError,
    compose_insmod_command,
    compose_modprobe_command,
    compose_rmmod_command,
    run_command,
)
from kmodctl.types import (
    DEFAULT_MODULES,
    InstalledModules,
    ModuleSpec,
    ModuleState,
    dependency_order,
)

logger = logging.getLogger(__name__)


class LoadError(Exception):
    """Raised when the kernel refuses to load a module.

    Attributes:
        module: Module that failed (None for prerequisites/daemon).
        loaded: Modules loaded by the failed call, left in place.
    """

    def __init__(
        self,
        message: str,
        module: str | None = None,
        loaded: list[str] | None = None,
        code: str = "load_failed",
    ) -> None:
        super().__init__(message)
        self.module = module
        self.loaded = loaded or []
        self.code = code


class DriverInUseError(Exception):
    """Raised when unload is refused because the driver is in use."""

    def __init__(self, reasons: list[str], code: str = "driver_in_use") -> None:
        super().__init__(
            "Could not unload driver kernel modules, driver is in use: "
            + "; ".join(reasons)
        )
        self.reasons = reasons
        self.code = code


class UnloadError(Exception):
    """Raised when an unload request fails or leaves modules loaded."""

    def __init__(
        self,
        message: str,
        remaining: list[str] | None = None,
        code: str = "unload_failed",
    ) -> None:
        super().__init__(message)
        self.remaining = remaining or []
        self.code = code


class ModuleManager:
    """Transitions the driver's module set between absent and loaded.

    Attributes:
        inspector: Live module state source.
        persistence: Persistence daemon, if one is managed.
        modules: Module set in load order.
        module_params: Parameters passed to the first (core) module.
        prerequisites: Host modules loaded by name before the driver.
        timeout: Timeout for each load/unload command.
        insmod: Module inserter.
        rmmod: Module remover.
        modprobe: Loader for prerequisite host modules.
    """

    def __init__(
        self,
        inspector: ModuleStateInspector,
        persistence: PersistenceDaemon | None = None,
        modules: Sequence[ModuleSpec] = DEFAULT_MODULES,
        module_params: str = "",
        prerequisites: Sequence[str] = (),
        timeout: int | None = None,
        insmod: str = "insmod",
        rmmod: str = "rmmod",
        modprobe: str = "modprobe",
    ) -> None:
        self.inspector = inspector
        self.persistence = persistence
        self.modules = dependency_order(modules)
        self.module_params = module_params
        self.prerequisites = list(prerequisites)
        self.timeout = timeout
        self.insmod = insmod
        self.rmmod = rmmod
        self.modprobe = modprobe
        self._names = {m.name for m in self.modules}

    @property
    def load_order(self) -> list[str]:
        return [m.name for m in self.modules]

    @property
    def unload_order(self) -> list[str]:
        return list(reversed(self.load_order))

    def dependents(self, name: str) -> list[str]:
        """Modules of the set that declare a dependency on `name`."""
        return [m.name for m in self.modules if name in m.depends_on]

    def _run(self, cmd: list[str]) -> tuple[bool, str]:
        try:
            result = run_command(cmd, timeout=self.timeout)
        except CommandError as e:
            return False, str(e)
        return result.success, result.diagnostic

    def load(self, installed: InstalledModules) -> list[str]:
        """Load every module of the set in dependency order.

        Args:
            installed: Installed module files.

        Returns:
            Names of the modules loaded by this call.

        Raises:
            LoadError: On the first module the kernel refuses; modules
                already loaded by this call stay loaded.
        """
        if self.prerequisites:
            logger.info("Loading prerequisite kernel modules...")
            ok, detail = self._run(
                compose_modprobe_command(self.prerequisites, self.modprobe)
            )
            if not ok:
                raise LoadError(
                    f"Could not load prerequisite modules: {detail}",
                    code="prerequisites_failed",
                )

        logger.info("Loading driver kernel modules...")
        loaded: list[str] = []
        for index, spec in enumerate(self.modules):
            path = installed.modules.get(spec.name)
            if path is None:
                raise LoadError(
                    f"Module {spec.name} is not installed",
                    module=spec.name,
                    loaded=loaded,
                )

            absent = [d for d in spec.depends_on if not self.inspector.state(d).loaded]
            if absent:
                raise LoadError(
                    f"Cannot load {spec.name}: dependencies not loaded: "
                    + ", ".join(absent),
                    module=spec.name,
                    loaded=loaded,
                )

            if self.inspector.state(spec.name).loaded:
                logger.warning("Module %s is already loaded", spec.name)
                continue

            params = self.module_params if index == 0 else ""
            ok, detail = self._run(compose_insmod_command(path, params, self.insmod))
            if not ok or not self.inspector.state(spec.name).loaded:
                raise LoadError(
                    f"Kernel refused to load {spec.name}: {detail}",
                    module=spec.name,
                    loaded=loaded,
                )
            logger.debug("Loaded %s", spec.name)
            loaded.append(spec.name)

        if self.persistence is not None:
            try:
                self.persistence.start()
            except PersistenceDaemonError as e:
                raise LoadError(str(e), loaded=loaded, code=e.code) from e

        return loaded

    def check_unload(self) -> list[str]:
        """Check whether the loaded modules may be unloaded.

        A module is in use when a module outside the set holds it, or when
        its refcount exceeds the number of its loaded dependents.

        Returns:
            Loaded modules in unload order (dependents first).

        Raises:
            DriverInUseError: If any loaded module is in use.
        """
        states: dict[str, ModuleState] = self.inspector.states(self.modules)
        reasons: list[str] = []
        for spec in self.modules:
            state = states[spec.name]
            if not state.loaded:
                continue
            foreign = [h for h in state.holders if h not in self._names]
            if foreign:
                reasons.append(f"{spec.name} is used by {', '.join(foreign)}")
                continue
            loaded_dependents = [
                d for d in self.dependents(spec.name) if states[d].loaded
            ]
            if state.refcount > len(loaded_dependents):
                reasons.append(
                    f"{spec.name} has {state.refcount} references and "
                    f"{len(loaded_dependents)} loaded dependents"
                )

        if reasons:
            raise DriverInUseError(reasons)
        return [name for name in self.unload_order if states[name].loaded]

    def unload(self) -> list[str]:
        """Unload every loaded module of the set.

        Stops the persistence daemon, checks the modules are not in use,
        removes them in one batch and verifies they are gone.

        Returns:
            Names of the modules unloaded (empty if none was loaded).

        Raises:
            DriverInUseError: If the driver is in use; nothing is unloaded.
            UnloadError: If the daemon cannot be stopped or modules remain.
        """
        if self.persistence is not None:
            try:
                self.persistence.stop()
            except PersistenceDaemonError as e:
                raise UnloadError(str(e), code=e.code) from e

        to_unload = self.check_unload()
        if not to_unload:
            return []

        logger.info("Unloading driver kernel modules: %s", " ".join(to_unload))
        ok, detail = self._run(compose_rmmod_command(to_unload, self.rmmod))

        remaining = self.inspector.loaded_modules(self.modules)
        if remaining:
            raise UnloadError(
                f"Modules still loaded after unload ({detail}): {', '.join(remaining)}",
                remaining=remaining,
            )
        if not ok:
            logger.warning(
                "Unload reported an error but all modules are gone: %s", detail
            )
        return to_unload


__all__ = ["DriverInUseError", "LoadError", "ModuleManager", "UnloadError"]
