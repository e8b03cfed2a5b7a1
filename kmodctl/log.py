"""Logging setup for the command-line entry points."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

LOG_FORMAT = "%(message)s"


def configure_logging(level: str = "INFO", console: Console | None = None) -> None:
    """Route all package logging through a single rich handler on stderr.

    Args:
        level: Root log level name.
        console: Console to write to (stderr console if not given).
    """
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=False,
    )
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=[handler], force=True)


@contextmanager
def mirror_to_process(pid: int, proc_root: Path = Path("/proc")) -> Iterator[bool]:
    """Also send log records to the stderr of another process.

    Used by `update` so its progress shows up in the log of the running
    `init` instance. The handler is detached and closed on exit.

    Args:
        pid: Target process.
        proc_root: procfs mount point.

    Yields:
        True if the mirror handler was attached.
    """
    target = proc_root / str(pid) / "fd" / "2"
    try:
        handler = logging.FileHandler(target, mode="a")
    except OSError as e:
        logging.getLogger(__name__).debug("Cannot mirror log to %s: %s", target, e)
        yield False
        return

    handler.setFormatter(logging.Formatter("%(levelname)s %(message)s"))
    root = logging.getLogger()
    root.addHandler(handler)
    try:
        yield True
    finally:
        root.removeHandler(handler)
        handler.close()


__all__ = ["configure_logging", "mirror_to_process"]
