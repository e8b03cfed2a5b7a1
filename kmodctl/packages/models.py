"""Pydantic models for driver packages.

A DriverPackage is the metadata recorded next to a packed artifact in the
package cache. It is written once by the build pipeline and read back by
cache lookups and the install pipeline.
"""

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator

PACKAGE_METADATA_FILE = "package.json"


class ModuleFragment(BaseModel):
    """One module's build output inside a package.

    Attributes:
        module: Module name as it appears under /sys/module.
        linked_module: File name of the loadable module.
        interface_object: Kernel-interface object (linked modules only).
        core_object: Prebuilt core object file name (linked modules only).
        signature: Detached signature sidecar file name, if signed.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    module: str
    linked_module: str
    interface_object: str | None = None
    core_object: str | None = None
    signature: str | None = None

    @property
    def relinkable(self) -> bool:
        return self.interface_object is not None and self.core_object is not None

    def files(self) -> list[str]:
        """File names that belong to this fragment in a cache entry."""
        names = [self.linked_module]
        for name in (self.interface_object, self.core_object, self.signature):
            if name:
                names.append(name)
        return names


class DriverPackage(BaseModel):
    """A versioned, kernel-version-keyed driver package.

    Attributes:
        name: Package (and packed artifact file) name.
        kernel_version: Kernel release the package was built for; this is
            the package description and the cache key.
        driver_version: Driver version the package was built from.
        tag: Optional package tag.
        fragments: Per-module fragments in dependency order.
        signed: Whether signature sidecars are present.
        created_at: Build completion time.
    """

    model_config = ConfigDict(extra="ignore")

    name: str = Field(min_length=1)
    kernel_version: str = Field(min_length=1)
    driver_version: str = Field(min_length=1)
    tag: str | None = None
    fragments: list[ModuleFragment] = Field(default_factory=list)
    signed: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("fragments")
    @classmethod
    def validate_unique_modules(cls, v: list[ModuleFragment]) -> list[ModuleFragment]:
        """Validate each module appears only once."""
        names = [f.module for f in v]
        if len(names) != len(set(names)):
            raise ValueError("duplicate module in package fragments")
        return v

    @property
    def module_names(self) -> list[str]:
        return [f.module for f in self.fragments]

    def fragment(self, module: str) -> ModuleFragment | None:
        for f in self.fragments:
            if f.module == module:
                return f
        return None


def package_name(driver_name: str, kernel_version: str, tag: str | None = None) -> str:
    """Compose the package name for a kernel version.

    Only the part of the kernel release before the first '-' is used,
    followed by the optional tag.

    Args:
        driver_name: Driver name (e.g. 'nvidia').
        kernel_version: Kernel release string.
        tag: Optional package tag.

    Returns:
        Package name, e.g. 'nvidia-modules-5.10.0-custom'.
    """
    base = kernel_version.split("-", 1)[0]
    name = f"{driver_name}-modules-{base}"
    if tag:
        name = f"{name}-{tag}"
    return name


__all__ = [
    "PACKAGE_METADATA_FILE",
    "DriverPackage",
    "ModuleFragment",
    "package_name",
]
