"""Driver package handling.

This module handles:
- Command composition and execution for external collaborators
- The kernel-version-keyed package cache
- Building packages on cache miss
- Installing loadable modules from a cached package
"""

from kmodctl.packages.models import DriverPackage, ModuleFragment

__all__ = ["DriverPackage", "ModuleFragment"]

# Access submodules via kmodctl.packages.cache, kmodctl.packages.build, etc.
