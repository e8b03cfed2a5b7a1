"""Tests for config.py module.

Tests configuration loading from environment variables and overrides.
"""

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from kmodctl.config import Settings, get_settings, print_settings_json

ENV_VARS = (
    "DRIVER_VERSION",
    "KMODCTL_DRIVER_VERSION",
    "KERNEL_VERSION",
    "KMODCTL_KERNEL_VERSION",
    "ACCEPT_LICENSE",
    "KMODCTL_ACCEPT_LICENSE",
    "PRIVATE_KEY",
    "PACKAGE_TAG",
    "MAX_THREADS",
    "KMODCTL_RUN_DIR",
    "KMODCTL_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Remove configuration variables inherited from the test environment."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
        monkeypatch.delenv(name.lower(), raising=False)


class TestSettings:
    """Tests for Settings."""

    def test_driver_version_required(self):
        """Missing DRIVER_VERSION should fail validation."""
        with pytest.raises(ValidationError):
            get_settings()

    def test_bare_env_names(self, monkeypatch):
        """Driver-container variables are accepted without prefix."""
        monkeypatch.setenv("DRIVER_VERSION", "535.104.05")
        monkeypatch.setenv("KERNEL_VERSION", "5.10.0-custom")
        monkeypatch.setenv("ACCEPT_LICENSE", "yes")
        monkeypatch.setenv("MAX_THREADS", "4")
        settings = get_settings()
        assert settings.driver_version == "535.104.05"
        assert settings.kernel_version == "5.10.0-custom"
        assert settings.accept_license is True
        assert settings.max_threads == 4

    def test_prefixed_env_names(self, monkeypatch):
        """KMODCTL_ prefixed variables are accepted too."""
        monkeypatch.setenv("KMODCTL_DRIVER_VERSION", "550.54")
        monkeypatch.setenv("KMODCTL_RUN_DIR", "/tmp/run-test")
        settings = get_settings()
        assert settings.driver_version == "550.54"
        assert settings.run_dir == Path("/tmp/run-test")

    def test_overrides_take_precedence(self, monkeypatch):
        """Explicit overrides should win over the environment."""
        monkeypatch.setenv("DRIVER_VERSION", "535.104.05")
        monkeypatch.setenv("KERNEL_VERSION", "5.10.0")
        settings = get_settings(kernel_version="6.1.0", package_tag=None)
        assert settings.kernel_version == "6.1.0"
        assert settings.package_tag is None

    def test_kernel_version_defaults_to_running_kernel(self, monkeypatch):
        monkeypatch.setattr("os.uname", lambda: type("U", (), {"release": "6.6.6"})())
        settings = Settings(driver_version="1.0")
        assert settings.kernel_version == "6.6.6"

    def test_derived_paths(self):
        """Derived paths follow the driver name and version."""
        settings = Settings(driver_version="535.104.05", run_dir=Path("/run/x"))
        assert settings.lock_path == Path("/run/x/nvidia-driver.pid")
        assert settings.source_path == Path("/usr/src/nvidia-535.104.05")
        assert settings.cache_path == Path(
            "/usr/src/nvidia-535.104.05/kernel/precompiled"
        )
        assert settings.publish_path == Path("/run/x/driver")
        assert settings.staging_path == Path("/run/x/staging")
        assert settings.archived_linker_path == Path(
            "/usr/src/nvidia-535.104.05/archive/ld"
        )
        assert settings.packager == "/usr/src/nvidia-535.104.05/mkprecompiled"
        assert settings.hook_path == Path("/run/kernel/postinst.d/update-nvidia-driver")

    def test_explicit_paths_win(self, tmp_path):
        settings = Settings(
            driver_version="1.0",
            lock_file=tmp_path / "lock",
            cache_dir=tmp_path / "cache",
            packager_command="mkp",
        )
        assert settings.lock_path == tmp_path / "lock"
        assert settings.cache_path == tmp_path / "cache"
        assert settings.packager == "mkp"

    def test_open_kernel_type(self):
        settings = Settings(driver_version="1.0", kernel_type="kernel-open")
        assert settings.cache_path.parent.name == "kernel-open"

    def test_invalid_kernel_type(self):
        with pytest.raises(ValidationError):
            Settings(driver_version="1.0", kernel_type="other")

    def test_invalid_max_threads(self):
        with pytest.raises(ValidationError):
            Settings(driver_version="1.0", max_threads=0)

    def test_system_tools(self):
        settings = Settings(driver_version="1.0")
        assert settings.insmod_command == "insmod"
        assert settings.rmmod_command == "rmmod"
        assert settings.modprobe_command == "modprobe"
        assert settings.mount_command == "mount"
        assert settings.umount_command == "umount"

    def test_system_tools_from_env(self, monkeypatch):
        monkeypatch.setenv("KMODCTL_INSMOD_COMMAND", "/usr/sbin/insmod")
        monkeypatch.setenv("KMODCTL_UMOUNT_COMMAND", "/usr/bin/umount")
        settings = Settings(driver_version="1.0")
        assert settings.insmod_command == "/usr/sbin/insmod"
        assert settings.umount_command == "/usr/bin/umount"

    def test_default_prerequisites(self):
        settings = Settings(driver_version="1.0")
        assert settings.prerequisite_modules == [
            "i2c_core",
            "ipmi_msghandler",
            "ipmi_devintf",
        ]


class TestPrintSettingsJson:
    """Tests for print_settings_json."""

    def test_valid_json(self):
        settings = Settings(driver_version="535.104.05", kernel_version="5.10.0")
        data = json.loads(print_settings_json(settings))
        assert data["driver_version"] == "535.104.05"
        assert data["kernel_version"] == "5.10.0"
