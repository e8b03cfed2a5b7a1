"""kmodctl - Driver lifecycle orchestrator for containerized hosts.

This package builds, caches, installs, loads and publishes a kernel-resident
device driver from inside a container, keeping at most one lifecycle active
per host.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
