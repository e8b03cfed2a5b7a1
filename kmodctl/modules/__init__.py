"""Kernel module state and transitions.

This module handles:
- Reading live module state from sysfs
- Dependency-ordered load and in-use-protected unload
- Starting and stopping the persistence daemon
"""

from kmodctl.modules.inspector import ModuleStateInspector
from kmodctl.modules.manager import (
    DriverInUseError,
    LoadError,
    ModuleManager,
    UnloadError,
)

__all__ = [
    "DriverInUseError",
    "LoadError",
    "ModuleManager",
    "ModuleStateInspector",
    "UnloadError",
]
