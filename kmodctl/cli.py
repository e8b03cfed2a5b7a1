"""Thin CLI wrapper for kmodctl.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import os
from contextlib import nullcontext
from typing import Annotated

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape

from kmodctl import __version__
from kmodctl.config import Settings, get_settings, print_settings_json
from kmodctl.lock import AlreadyRunningError, read_owner_pid
from kmodctl.log import configure_logging, mirror_to_process
from kmodctl.modules.manager import DriverInUseError, LoadError, UnloadError
from kmodctl.orchestrator import AbortedError, Orchestrator
from kmodctl.packages.build import BuildError
from kmodctl.packages.cache import PackageCache
from kmodctl.packages.install import InstallError
from kmodctl.packages.runner import CommandError
from kmodctl.publish import MountError

app = typer.Typer(
    name="kmodctl",
    help="Driver lifecycle orchestrator - build, cache, load and publish a kernel driver",
    invoke_without_command=True,
)
console = Console()
err_console = Console(stderr=True)

LIFECYCLE_ERRORS = (
    AlreadyRunningError,
    AbortedError,
    BuildError,
    CommandError,
    DriverInUseError,
    InstallError,
    LoadError,
    MountError,
    UnloadError,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"kmodctl version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Driver lifecycle orchestrator - build, cache, load and publish a kernel driver."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_usage(), err=True)
        raise typer.Exit(code=1)


def _load_settings(**overrides: object) -> Settings:
    try:
        return get_settings(**overrides)
    except ValidationError as e:
        err_console.print("[red]Invalid configuration:[/red]")
        for error in e.errors():
            field = ".".join(str(p) for p in error["loc"]) or "settings"
            if field.upper() == "DRIVER_VERSION" and error["type"] == "missing":
                message = "DRIVER_VERSION environment variable is required"
            else:
                message = error["msg"]
            err_console.print(f"  {escape(field)}: {escape(message)}")
        raise typer.Exit(code=1) from None


def _fail(error: Exception) -> None:
    err_console.print(f"[red]Error: {escape(str(error))}[/red]")
    raise typer.Exit(code=1)


@app.command()
def init(
    accept_license: Annotated[
        bool,
        typer.Option("--accept-license", "-a", help="Accept the driver license"),
    ] = False,
    max_threads: Annotated[
        int | None,
        typer.Option("--max-threads", "-m", min=1, help="Compilation concurrency"),
    ] = None,
) -> None:
    """Install, load and publish the driver, then wait for a termination signal."""
    settings = _load_settings(
        accept_license=True if accept_license else None,
        max_threads=max_threads,
    )
    configure_logging(settings.log_level, err_console)

    orchestrator = Orchestrator(settings)
    try:
        orchestrator.init(max_threads=max_threads)
    except LIFECYCLE_ERRORS as e:
        _fail(e)


@app.command()
def update(
    kernel: Annotated[
        str | None,
        typer.Option("--kernel", "-k", help="Kernel version to build for"),
    ] = None,
    sign: Annotated[
        str | None,
        typer.Option("--sign", "-s", help="Signing key ID"),
    ] = None,
    tag: Annotated[
        str | None,
        typer.Option("--tag", "-t", help="Package tag"),
    ] = None,
    max_threads: Annotated[
        int | None,
        typer.Option("--max-threads", "-m", min=1, help="Compilation concurrency"),
    ] = None,
) -> None:
    """Make sure a driver package exists for a kernel version."""
    settings = _load_settings(
        kernel_version=kernel,
        private_key=sign,
        package_tag=tag,
        max_threads=max_threads,
    )
    configure_logging(settings.log_level, err_console)

    owner = read_owner_pid(settings.lock_path)
    if owner is not None and owner != os.getpid():
        mirror = mirror_to_process(owner, settings.proc_root)
    else:
        mirror = nullcontext(False)

    orchestrator = Orchestrator(settings)
    with mirror:
        try:
            package = orchestrator.update(max_threads=max_threads)
        except LIFECYCLE_ERRORS as e:
            _fail(e)
        else:
            console.print(f"[green]Driver package {package.name} is ready[/green]")


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = _load_settings()
    if json_output:
        console.print(print_settings_json(settings))
        return

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Driver:[/bold]")
    console.print(f"  Driver:              {settings.driver_name} {settings.driver_version}")
    console.print(f"  Kernel version:      {settings.kernel_version}")
    console.print(f"  License accepted:    {settings.accept_license}")
    console.print(f"  Signing key:         {settings.private_key or '(none)'}")
    console.print(f"  Package tag:         {settings.package_tag or '(none)'}")
    console.print(f"  Max threads:         {settings.max_threads}")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Lock file:           {settings.lock_path}")
    console.print(f"  Source directory:    {settings.source_path}")
    console.print(f"  Cache directory:     {settings.cache_path}")
    console.print(f"  Modules root:        {settings.modules_root}")
    console.print(f"  Publish directory:   {settings.publish_path}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  Log level:           {settings.log_level}")
    console.print(f"  Build timeout:       {settings.build_timeout}")
    console.print()
    console.print("[bold]Cache:[/bold]")
    cache = PackageCache(
        settings.cache_path,
        settings.packager,
        settings.modules_root,
        settings.driver_version,
    )
    versions = cache.list_versions()
    console.print(f"  Cached kernels:      {', '.join(versions) or '(none)'}")
