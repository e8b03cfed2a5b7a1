"""Configuration settings for kmodctl.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

import os
from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_kernel_version() -> str:
    """Return the release string of the running kernel."""
    return os.uname().release


def _default_max_threads() -> int:
    """Return the default compilation concurrency."""
    return os.cpu_count() or 1


def _env(name: str) -> AliasChoices:
    """Accept both the prefixed and the bare environment variable name."""
    return AliasChoices(name, f"KMODCTL_{name}", name.lower())


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the KMODCTL_ prefix.
    The driver-container variables (DRIVER_VERSION, KERNEL_VERSION, ...) are
    also accepted without prefix. CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="KMODCTL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Driver identity
    driver_version: str = Field(
        validation_alias=_env("DRIVER_VERSION"),
        min_length=1,
        description="Version of the driver being managed (required)",
    )
    driver_name: str = Field(
        default="nvidia",
        description="Driver name used for package, directory and hook names",
    )
    kernel_version: str = Field(
        default_factory=_default_kernel_version,
        validation_alias=_env("KERNEL_VERSION"),
        description="Target kernel release (defaults to the running kernel)",
    )
    kernel_type: Literal["kernel", "kernel-open"] = Field(
        default="kernel",
        description="Kernel module source flavour inside the driver source tree",
    )

    # Operator choices
    accept_license: bool = Field(
        default=False,
        validation_alias=_env("ACCEPT_LICENSE"),
        description="Accept the driver license during install",
    )
    private_key: str | None = Field(
        default=None,
        validation_alias=_env("PRIVATE_KEY"),
        description="Signing key reference; modules are signed when set",
    )
    package_tag: str | None = Field(
        default=None,
        validation_alias=_env("PACKAGE_TAG"),
        description="Optional tag appended to package names",
    )
    max_threads: int = Field(
        default_factory=_default_max_threads,
        validation_alias=_env("MAX_THREADS"),
        ge=1,
        description="Compilation concurrency",
    )
    module_params: str = Field(
        default="",
        validation_alias=_env("MODULE_PARAMS"),
        description="Parameters passed to the core module on load",
    )
    prerequisite_modules: list[str] = Field(
        default_factory=lambda: ["i2c_core", "ipmi_msghandler", "ipmi_devintf"],
        description="Host kernel modules loaded before the driver modules",
    )

    # Paths
    run_dir: Path = Field(
        default=Path("/run/nvidia"),
        description="Runtime directory shared with consumers",
    )
    lock_file: Path | None = Field(
        default=None,
        description="Singleton lock file (defaults to <run_dir>/<driver>-driver.pid)",
    )
    source_dir: Path | None = Field(
        default=None,
        description="Driver source tree (defaults to /usr/src/<driver>-<version>)",
    )
    cache_dir: Path | None = Field(
        default=None,
        description="Package cache root (defaults to <source>/<type>/precompiled)",
    )
    staging_dir: Path | None = Field(
        default=None,
        description="Install staging root (defaults to <run_dir>/staging)",
    )
    work_dir: Path | None = Field(
        default=None,
        description="Build work root (uses system temp directory if not set)",
    )
    modules_root: Path = Field(
        default=Path("/lib/modules"),
        description="Host module tree consumed by the module loader",
    )
    module_subdir: str = Field(
        default="video",
        description="Directory under <modules_root>/<kernel> holding driver modules",
    )
    sysfs_root: Path = Field(default=Path("/sys"), description="sysfs mount point")
    proc_root: Path = Field(default=Path("/proc"), description="procfs mount point")
    driver_root: Path = Field(
        default=Path("/"),
        description="Assembled driver root filesystem to publish",
    )
    publish_dir: Path | None = Field(
        default=None,
        description="Bind mount target (defaults to <run_dir>/driver)",
    )
    hook_dir: Path = Field(
        default=Path("/run/kernel/postinst.d"),
        description="Kernel post-install hook directory",
    )
    persistenced_pid_file: Path = Field(
        default=Path("/var/run/nvidia-persistenced/nvidia-persistenced.pid"),
        description="Pid file written by the persistence daemon",
    )

    # External collaborators
    provision_command: str = Field(
        default="provision-build-env",
        description="Build environment provisioner",
    )
    make_command: str = Field(default="make", description="Kernel module build tool")
    linker_command: str = Field(default="ld", description="Linker used at build time")
    archived_linker: Path | None = Field(
        default=None,
        description="Archived linker used to relink (defaults to <source>/archive/ld)",
    )
    packager_command: str | None = Field(
        default=None,
        description="Packaging tool (defaults to <source>/mkprecompiled)",
    )
    signer_command: str = Field(default="kmod-signer", description="Module signer")
    insmod_command: str = Field(default="insmod", description="Module inserter")
    rmmod_command: str = Field(default="rmmod", description="Module remover")
    modprobe_command: str = Field(
        default="modprobe",
        description="Loader for prerequisite host modules",
    )
    mount_command: str = Field(default="mount", description="Mount tool")
    umount_command: str = Field(default="umount", description="Unmount tool")
    persistenced_command: str = Field(
        default="nvidia-persistenced",
        description="Persistence daemon started after load",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Timeouts (in seconds)
    build_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for each long-running build step",
    )
    command_timeout: int = Field(
        default=120,
        ge=1,
        description="Timeout for short commands (insmod, mount, ...)",
    )

    @property
    def lock_path(self) -> Path:
        return self.lock_file or self.run_dir / f"{self.driver_name}-driver.pid"

    @property
    def source_path(self) -> Path:
        return self.source_dir or Path(
            f"/usr/src/{self.driver_name}-{self.driver_version}"
        )

    @property
    def cache_path(self) -> Path:
        return self.cache_dir or self.source_path / self.kernel_type / "precompiled"

    @property
    def staging_path(self) -> Path:
        return self.staging_dir or self.run_dir / "staging"

    @property
    def publish_path(self) -> Path:
        return self.publish_dir or self.run_dir / "driver"

    @property
    def archived_linker_path(self) -> Path:
        return self.archived_linker or self.source_path / "archive" / "ld"

    @property
    def packager(self) -> str:
        return self.packager_command or str(self.source_path / "mkprecompiled")

    @property
    def hook_path(self) -> Path:
        return self.hook_dir / f"update-{self.driver_name}-driver"


def get_settings(**overrides: object) -> Settings:
    """Get the application settings.

    Args:
        **overrides: Field values taking precedence over the environment.

    Returns:
        Settings instance loaded from environment.

    Raises:
        pydantic.ValidationError: If required settings are missing or invalid.
    """
    return Settings(**{k: v for k, v in overrides.items() if v is not None})


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
