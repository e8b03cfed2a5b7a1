"""Tests for orchestrator.py module.

End-to-end lifecycle scenarios against the fake kernel from conftest.
"""

import os
import signal
import threading
from unittest.mock import patch

import pytest

from kmodctl.lock import AlreadyRunningError, SingletonLock
from kmodctl.modules.manager import DriverInUseError, LoadError
from kmodctl.orchestrator import AbortedError, Orchestrator
from kmodctl.packages.build import BuildError
from kmodctl.packages.install import LicenseNotAcceptedError
from kmodctl.types import DEFAULT_MODULES, LifecyclePhase

from .conftest import KERNEL


@pytest.fixture
def orchestrator(settings, fake_kernel):
    return Orchestrator(settings)


def all_loaded(fake_kernel) -> bool:
    return all(fake_kernel.is_loaded(m.name) for m in DEFAULT_MODULES)


def none_loaded(fake_kernel) -> bool:
    return not any(fake_kernel.is_loaded(m.name) for m in DEFAULT_MODULES)


def packs(fake_kernel) -> list[list[str]]:
    return [c for c in fake_kernel.called("mkprecompiled") if "--pack" in c]


class TestActivate:
    """Tests for Orchestrator.activate."""

    def test_fresh_host(self, orchestrator, fake_kernel, settings):
        """No cache entry: build, install, load, publish and hook."""
        orchestrator.activate(accept_license=True)

        assert orchestrator.phase == LifecyclePhase.ACTIVE
        assert len(packs(fake_kernel)) == 1
        assert orchestrator.cache.lookup(KERNEL) is not None
        assert all_loaded(fake_kernel)
        assert orchestrator.publisher.is_published()
        assert settings.hook_path.is_file()

    def test_cached_package_is_reused(self, settings, fake_kernel):
        first = Orchestrator(settings)
        first.activate(accept_license=True)
        assert first.shutdown()

        second = Orchestrator(settings)
        second.activate(accept_license=True)
        assert len(packs(fake_kernel)) == 1
        assert all_loaded(fake_kernel)

    def test_stale_modules_are_unloaded_first(self, orchestrator, fake_kernel):
        fake_kernel.load_all()
        orchestrator.activate(accept_license=True)
        programs = [c[0] for c in fake_kernel.calls]
        assert programs.index("rmmod") < programs.index("insmod")
        assert all_loaded(fake_kernel)

    def test_stale_modules_in_use(self, orchestrator, fake_kernel):
        fake_kernel.load_all()
        fake_kernel.add_holder("nvidia", "vfio_pci")
        with pytest.raises(DriverInUseError):
            orchestrator.activate(accept_license=True)
        assert packs(fake_kernel) == []

    def test_license_not_accepted(self, orchestrator, fake_kernel):
        with pytest.raises(LicenseNotAcceptedError):
            orchestrator.activate(accept_license=False)
        assert fake_kernel.called("insmod") == []

    def test_configured_system_tools(self, settings, fake_kernel):
        settings = settings.model_copy(
            update={
                "insmod_command": "/usr/sbin/insmod",
                "mount_command": "/usr/bin/mount",
                "umount_command": "/usr/bin/umount",
                "rmmod_command": "/usr/sbin/rmmod",
            }
        )
        orchestrator = Orchestrator(settings)
        orchestrator.activate(accept_license=True)
        assert orchestrator.shutdown()
        assert {c[0] for c in fake_kernel.called("insmod")} == {"/usr/sbin/insmod"}
        assert {c[0] for c in fake_kernel.called("mount")} == {"/usr/bin/mount"}
        assert fake_kernel.called("umount")[0][0] == "/usr/bin/umount"
        assert fake_kernel.called("rmmod")[0][0] == "/usr/sbin/rmmod"

    def test_build_failure(self, orchestrator, fake_kernel):
        fake_kernel.fail.add("make")
        with pytest.raises(BuildError):
            orchestrator.activate(accept_license=True)
        assert fake_kernel.called("insmod") == []
        assert orchestrator.cache.lookup(KERNEL) is None


class TestShutdown:
    """Tests for Orchestrator.shutdown."""

    def test_reverse_teardown(self, orchestrator, fake_kernel, settings):
        orchestrator.lock.acquire()
        orchestrator.activate(accept_license=True)

        assert orchestrator.shutdown()
        assert none_loaded(fake_kernel)
        assert not orchestrator.publisher.is_published()
        assert not settings.hook_path.exists()
        assert not settings.lock_path.exists()
        assert orchestrator.phase == LifecyclePhase.STOPPED

    def test_idempotent(self, orchestrator, fake_kernel):
        orchestrator.activate(accept_license=True)
        assert orchestrator.shutdown()
        calls = len(fake_kernel.calls)
        assert orchestrator.shutdown()
        assert len(fake_kernel.calls) == calls

    def test_in_use_keeps_lock(self, orchestrator, fake_kernel, settings):
        """Unload refused: nothing is torn down and the lock stays held."""
        orchestrator.lock.acquire()
        orchestrator.activate(accept_license=True)
        fake_kernel.set_refcount("nvidia_modeset", 2)

        assert not orchestrator.shutdown()
        assert fake_kernel.called("rmmod") == []
        assert all_loaded(fake_kernel)
        assert orchestrator.publisher.is_published()
        assert settings.lock_path.exists()
        assert orchestrator.lock.held
        assert orchestrator.phase == LifecyclePhase.ACTIVE

        fake_kernel.set_refcount("nvidia_modeset", 1)
        assert orchestrator.shutdown()
        assert not settings.lock_path.exists()


class TestInit:
    """Tests for Orchestrator.init."""

    def test_already_running(self, orchestrator, fake_kernel, settings):
        with SingletonLock(settings.lock_path):
            with pytest.raises(AlreadyRunningError):
                orchestrator.init()
        assert fake_kernel.calls == []

    def test_init_until_shutdown_request(self, orchestrator, fake_kernel, settings):
        orchestrator.request_shutdown()
        orchestrator.init()

        assert len(packs(fake_kernel)) == 1
        assert len(fake_kernel.called("insmod")) == len(DEFAULT_MODULES)
        assert none_loaded(fake_kernel)
        assert not settings.lock_path.exists()
        assert orchestrator.phase == LifecyclePhase.STOPPED

    def test_signal_triggers_single_shutdown(self, orchestrator, fake_kernel, settings):
        original = signal.getsignal(signal.SIGTERM)
        wait = orchestrator.wait

        def signal_then_wait():
            threading.Timer(0.05, os.kill, args=(os.getpid(), signal.SIGTERM)).start()
            wait()

        with patch("kmodctl.orchestrator.WAIT_SLICE", 0.05):
            with patch.object(orchestrator, "wait", side_effect=signal_then_wait):
                orchestrator.init()

        assert none_loaded(fake_kernel)
        assert len(fake_kernel.called("rmmod")) == 1
        assert not settings.lock_path.exists()
        assert signal.getsignal(signal.SIGTERM) == original

    def test_repeated_signals_single_teardown(self, orchestrator, fake_kernel, settings):
        """A second signal while the first is pending does not tear down twice."""
        wait = orchestrator.wait

        def signals_then_wait():
            os.kill(os.getpid(), signal.SIGTERM)
            os.kill(os.getpid(), signal.SIGINT)
            wait()

        shutdown = patch.object(orchestrator, "shutdown", wraps=orchestrator.shutdown)
        release = patch.object(
            orchestrator.lock, "release", wraps=orchestrator.lock.release
        )
        with patch("kmodctl.orchestrator.WAIT_SLICE", 0.05):
            with shutdown as mock_shutdown, release as mock_release:
                with patch.object(orchestrator, "wait", side_effect=signals_then_wait):
                    orchestrator.init()

        assert none_loaded(fake_kernel)
        assert len(fake_kernel.called("rmmod")) == 1
        mock_shutdown.assert_called_once()
        mock_release.assert_called_once()
        assert not settings.lock_path.exists()

    def test_signal_during_refused_shutdown_retries(self, orchestrator):
        """A request arriving while a shutdown is refused is not lost."""
        calls = []

        def shutdown():
            calls.append(1)
            if len(calls) == 1:
                orchestrator.request_shutdown()
                return False
            return True

        orchestrator.request_shutdown()
        with patch("kmodctl.orchestrator.WAIT_SLICE", 0.01):
            with patch.object(orchestrator, "shutdown", side_effect=shutdown):
                orchestrator.wait()
        assert len(calls) == 2

    def test_failure_releases_lock(self, orchestrator, fake_kernel, settings):
        """A load failure is fatal: lock released, loaded modules left."""
        fake_kernel.refuse_load.add("nvidia_uvm")
        with pytest.raises(LoadError):
            orchestrator.init()
        assert not settings.lock_path.exists()
        assert fake_kernel.is_loaded("nvidia")
        assert orchestrator.phase == LifecyclePhase.STOPPED

    def test_signal_before_active_aborts(self, orchestrator, fake_kernel, settings):
        def build(*args, **kwargs):
            os.kill(os.getpid(), signal.SIGTERM)
            raise AssertionError("signal was not delivered")

        with patch.object(orchestrator.builder, "build", side_effect=build):
            with pytest.raises(AbortedError) as exc_info:
                orchestrator.init()

        assert exc_info.value.signum == signal.SIGTERM
        assert not settings.lock_path.exists()
        assert fake_kernel.called("insmod") == []


class TestUpdate:
    """Tests for Orchestrator.update."""

    def test_builds_missing_package(self, orchestrator, fake_kernel):
        package = orchestrator.update("6.1.0")
        assert package.kernel_version == "6.1.0"
        assert orchestrator.cache.lookup("6.1.0") is not None
        assert fake_kernel.called("insmod") == []
        assert fake_kernel.called("mount") == []

    def test_reuses_cached_package(self, orchestrator, fake_kernel):
        orchestrator.update()
        orchestrator.update()
        assert len(packs(fake_kernel)) == 1

    def test_tag_and_signing(self, orchestrator, fake_kernel):
        package = orchestrator.update(KERNEL, sign_key="k", tag="custom")
        assert package.name == "nvidia-modules-5.10.0-custom"
        assert package.signed

    def test_update_does_not_need_lock(self, orchestrator, fake_kernel, settings):
        with SingletonLock(settings.lock_path):
            package = orchestrator.update()
        assert package.kernel_version == KERNEL
