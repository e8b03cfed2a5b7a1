"""Orchestrator run loop.

This module provides the high-level lifecycle API:
- init(): take the host lock, bring the driver up, wait for a termination
  signal, then tear everything down in reverse order
- update(): make sure a valid package exists for a kernel version
- shutdown(): the single, idempotent teardown routine

Termination signals received before the driver is active abort the run.
Once active, signals only request shutdown; the teardown itself runs on the
main flow, once, however many signals arrive. If the driver is still in use
the lock stays held and the process keeps waiting for the next signal.
"""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Sequence
from types import FrameType
from typing import TYPE_CHECKING, Any

from kmodctl.hook import remove_kernel_update_hook, write_kernel_update_hook
from kmodctl.lock import SingletonLock
from kmodctl.modules.inspector import ModuleStateInspector, running_kernel
from kmodctl.modules.manager import DriverInUseError, ModuleManager, UnloadError
from kmodctl.modules.persistence import PersistenceDaemon
from kmodctl.packages.build import BuildPipeline
from kmodctl.packages.cache import PackageCache
from kmodctl.packages.install import InstallPipeline
from kmodctl.publish import MountError, NamespacePublisher
from kmodctl.types import DEFAULT_MODULES, LifecycleCommand, LifecyclePhase, ModuleSpec

if TYPE_CHECKING:
    from kmodctl.config import Settings
    from kmodctl.packages.models import DriverPackage

logger = logging.getLogger(__name__)

TERMINATION_SIGNALS = (
    signal.SIGHUP,
    signal.SIGINT,
    signal.SIGQUIT,
    signal.SIGPIPE,
    signal.SIGTERM,
)

# Granularity of the signal wait; handlers run between slices
WAIT_SLICE = 1.0


class AbortedError(Exception):
    """Raised when a termination signal arrives before the driver is active."""

    def __init__(self, signum: int, code: str = "aborted") -> None:
        super().__init__(f"Caught signal {signal.Signals(signum).name}, aborting")
        self.signum = signum
        self.code = code


SignalHandler = Callable[[int, FrameType | None], Any]


class Orchestrator:
    """Sequences lock, cache, build, install, load and publish for one host.

    Components default to ones derived from settings and can be injected.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        modules: Sequence[ModuleSpec] = DEFAULT_MODULES,
        lock: SingletonLock | None = None,
        cache: PackageCache | None = None,
        builder: BuildPipeline | None = None,
        installer: InstallPipeline | None = None,
        manager: ModuleManager | None = None,
        publisher: NamespacePublisher | None = None,
    ) -> None:
        self.settings = settings
        self.modules = tuple(modules)
        self.lock = lock or SingletonLock(settings.lock_path)
        self.cache = cache or PackageCache(
            settings.cache_path,
            settings.packager,
            settings.modules_root,
            settings.driver_version,
            timeout=settings.command_timeout,
        )
        self.builder = builder or BuildPipeline(settings, self.cache, self.modules)
        self.installer = installer or InstallPipeline(settings, self.modules)
        self.manager = manager or ModuleManager(
            ModuleStateInspector(settings.sysfs_root),
            PersistenceDaemon(
                settings.persistenced_command,
                settings.persistenced_pid_file,
                timeout=settings.command_timeout,
            ),
            modules=self.modules,
            module_params=settings.module_params,
            prerequisites=settings.prerequisite_modules,
            timeout=settings.command_timeout,
            insmod=settings.insmod_command,
            rmmod=settings.rmmod_command,
            modprobe=settings.modprobe_command,
        )
        self.publisher = publisher or NamespacePublisher(
            settings.driver_root,
            settings.publish_path,
            sysfs_root=settings.sysfs_root,
            proc_root=settings.proc_root,
            timeout=settings.command_timeout,
            mount_command=settings.mount_command,
            umount_command=settings.umount_command,
        )
        self.phase = LifecyclePhase.STARTING
        self._shutdown_requested = threading.Event()
        self._shutdown_complete = False
        self._saved_handlers: dict[int, Any] = {}

    # Signal handling

    def _install_handlers(self, handler: SignalHandler) -> None:
        for signum in TERMINATION_SIGNALS:
            previous = signal.signal(signum, handler)
            self._saved_handlers.setdefault(signum, previous)

    def _restore_handlers(self) -> None:
        for signum, previous in self._saved_handlers.items():
            signal.signal(signum, previous)
        self._saved_handlers.clear()

    def _abort(self, signum: int, frame: FrameType | None) -> None:
        raise AbortedError(signum)

    def _on_signal(self, signum: int, frame: FrameType | None) -> None:
        logger.info("Caught signal %s", signal.Signals(signum).name)
        self.request_shutdown()

    def request_shutdown(self) -> None:
        """Ask the waiting run loop to shut down."""
        self._shutdown_requested.set()

    # Lifecycle

    def ensure_package(
        self,
        kernel_version: str,
        *,
        sign_key: str | None = None,
        tag: str | None = None,
        max_threads: int | None = None,
    ) -> tuple[DriverPackage, bool]:
        """Return a valid package for a kernel version, building on demand.

        Returns:
            Tuple of (DriverPackage, was_built).

        Raises:
            BuildError: If a required build fails.
        """
        if self.cache.requires_rebuild(kernel_version, self.modules):
            package = self.builder.build(
                kernel_version, sign_key=sign_key, tag=tag, max_threads=max_threads
            )
            return package, True

        package = self.cache.lookup(kernel_version)
        if package is None:
            # Entry vanished between validation and lookup
            package = self.builder.build(
                kernel_version, sign_key=sign_key, tag=tag, max_threads=max_threads
            )
            return package, True
        return package, False

    def activate(self, accept_license: bool, max_threads: int | None = None) -> None:
        """Bring the driver up. The caller must hold the lock.

        Force-unloads modules left by a previous run, removes a stale mount,
        ensures a package, installs, loads, publishes and writes the kernel
        update hook.

        Raises:
            DriverInUseError: If stale modules are in use.
            UnloadError: If stale modules cannot be removed.
            BuildError: If a required build fails.
            InstallError: If the install fails.
            LoadError: If the kernel refuses a module.
            MountError: If the rootfs cannot be published.
        """
        settings = self.settings
        kernel_version = settings.kernel_version
        self.phase = LifecyclePhase.PREPARING

        self.manager.unload()
        self.publisher.unpublish()

        package, built = self.ensure_package(
            kernel_version,
            sign_key=settings.private_key,
            tag=settings.package_tag,
            max_threads=max_threads,
        )
        if not built:
            logger.info("Reusing cached driver package %s", package.name)

        installed = self.installer.install(
            package,
            self.cache.entry_dir(kernel_version),
            running_kernel(settings.proc_root),
            accept_license,
        )
        self.manager.load(installed)
        self.publisher.publish()
        write_kernel_update_hook(
            settings.hook_path,
            settings.driver_name,
            settings.lock_path,
            proc_root=settings.proc_root,
        )
        self.phase = LifecyclePhase.ACTIVE

    def init(
        self,
        accept_license: bool | None = None,
        max_threads: int | None = None,
    ) -> None:
        """Run the `init` lifecycle until a termination signal shuts it down.

        Raises:
            AlreadyRunningError: If another instance holds the lock.
            AbortedError: If a signal arrives before the driver is active.
            Any error raised by `activate`. The lock is released in every
            case except a shutdown refused because the driver is in use.
        """
        settings = self.settings
        if accept_license is None:
            accept_license = settings.accept_license
        logger.info(
            "%s: starting installation of %s driver version %s for kernel %s",
            LifecycleCommand.INIT.value,
            settings.driver_name,
            settings.driver_version,
            settings.kernel_version,
        )

        self.lock.acquire()
        self._install_handlers(self._abort)
        try:
            self.activate(accept_license, max_threads)
            self._install_handlers(self._on_signal)
        except BaseException:
            self._restore_handlers()
            self.lock.release()
            self.phase = LifecyclePhase.STOPPED
            raise

        logger.info("Done, now waiting for signal")
        try:
            self.wait()
        finally:
            self._restore_handlers()

    def wait(self) -> None:
        """Block until a shutdown request completes a successful shutdown."""
        while True:
            while not self._shutdown_requested.wait(WAIT_SLICE):
                pass
            self._shutdown_requested.clear()
            if self.shutdown():
                return
            logger.error("Shutdown incomplete, driver left in place; waiting for signal")

    def shutdown(self) -> bool:
        """Tear down in reverse order: unload, unpublish, unhook, unlock.

        Returns:
            True once shutdown has completed (repeat calls are no-ops),
            False if the modules could not be unloaded; the lock is then
            kept so a new instance sees the host as busy.
        """
        if self._shutdown_complete:
            return True

        self.phase = LifecyclePhase.SHUTTING_DOWN
        try:
            self.manager.unload()
        except (DriverInUseError, UnloadError) as e:
            logger.error("%s", e)
            self.phase = LifecyclePhase.ACTIVE
            return False

        try:
            self.publisher.unpublish()
        except MountError as e:
            logger.error("Could not unmount driver rootfs: %s", e)

        remove_kernel_update_hook(self.settings.hook_path)
        self.lock.release()
        self._shutdown_complete = True
        self.phase = LifecyclePhase.STOPPED
        logger.info("Driver shut down")
        return True

    def update(
        self,
        kernel_version: str | None = None,
        sign_key: str | None = None,
        tag: str | None = None,
        max_threads: int | None = None,
    ) -> DriverPackage:
        """Run the `update` lifecycle: make a package ready for a kernel.

        Does not load, unload or publish anything.

        Raises:
            AbortedError: If a termination signal arrives.
            BuildError: If a required build fails.
        """
        settings = self.settings
        kernel_version = kernel_version or settings.kernel_version
        logger.info(
            "%s: starting update of %s driver version %s for kernel %s",
            LifecycleCommand.UPDATE.value,
            settings.driver_name,
            settings.driver_version,
            kernel_version,
        )

        self._install_handlers(self._abort)
        try:
            package, built = self.ensure_package(
                kernel_version,
                sign_key=sign_key if sign_key is not None else settings.private_key,
                tag=tag if tag is not None else settings.package_tag,
                max_threads=max_threads,
            )
        finally:
            self._restore_handlers()

        if not built:
            logger.info("Driver package %s is up to date", package.name)
        logger.info("Done")
        return package


__all__ = ["TERMINATION_SIGNALS", "AbortedError", "Orchestrator"]
