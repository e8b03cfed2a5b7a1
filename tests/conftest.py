"""Shared fixtures: settings rooted in tmp_path and a fake kernel.

The fake kernel replaces `subprocess.run` as seen by the command runner. It
keeps module state in a sysfs tree under tmp_path, mount state in a fake
/proc/mounts, and emulates the packaging tool, toolchain and signer.
"""

import shutil
import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from kmodctl.config import Settings
from kmodctl.packages.runner import VERIFY_MATCH_OUTPUT
from kmodctl.types import DEFAULT_MODULES

KERNEL = "5.10.0"
DRIVER = "535.104.05"

_BY_FILE = {m.filename: m for m in DEFAULT_MODULES}
_BY_NAME = {m.name: m for m in DEFAULT_MODULES}


class FakeKernel:
    """In-memory stand-in for the kernel and external collaborators."""

    def __init__(self, root: Path) -> None:
        self.sys = root / "sys"
        self.proc = root / "proc"
        self.env_root = root / "buildenv"
        self.calls: list[list[str]] = []
        self.fail: set[str] = set()
        self.refuse_load: set[str] = set()
        self.verify_output = VERIFY_MATCH_OUTPUT

        (self.sys / "module").mkdir(parents=True, exist_ok=True)
        (self.proc / "sys" / "kernel").mkdir(parents=True, exist_ok=True)
        (self.proc / "sys" / "kernel" / "osrelease").write_text(f"{KERNEL}\n")
        (self.proc / "mounts").write_text("proc /proc proc rw 0 0\n")
        self.env_root.mkdir(exist_ok=True)

    # Kernel state helpers

    def module_dir(self, name: str) -> Path:
        return self.sys / "module" / name

    def is_loaded(self, name: str) -> bool:
        return (self.module_dir(name) / "refcnt").exists()

    def refcount(self, name: str) -> int:
        return int((self.module_dir(name) / "refcnt").read_text())

    def set_refcount(self, name: str, value: int) -> None:
        (self.module_dir(name) / "refcnt").write_text(f"{value}\n")

    def add_holder(self, name: str, holder: str) -> None:
        (self.module_dir(name) / "holders" / holder).mkdir(parents=True, exist_ok=True)
        self.set_refcount(name, self.refcount(name) + 1)

    def load(self, name: str) -> None:
        module_dir = self.module_dir(name)
        (module_dir / "holders").mkdir(parents=True, exist_ok=True)
        self.set_refcount(name, 0)
        for dep in _BY_NAME[name].depends_on:
            self.add_holder(dep, name)

    def load_all(self) -> None:
        for spec in DEFAULT_MODULES:
            self.load(spec.name)

    def unload(self, name: str) -> None:
        for dep in _BY_NAME[name].depends_on:
            holder = self.module_dir(dep) / "holders" / name
            if holder.exists():
                holder.rmdir()
                self.set_refcount(dep, self.refcount(dep) - 1)
        shutil.rmtree(self.module_dir(name))

    def mounts(self) -> list[str]:
        return [
            line.split()[1]
            for line in (self.proc / "mounts").read_text().splitlines()
            if line.strip()
        ]

    def called(self, program: str) -> list[list[str]]:
        return [c for c in self.calls if Path(c[0]).name == program]

    # subprocess.run replacement

    def run(self, cmd, cwd=None, **kwargs):
        cmd = [str(c) for c in cmd]
        self.calls.append(cmd)
        program = Path(cmd[0]).name
        if program in self.fail:
            return subprocess.CompletedProcess(cmd, 1, "", f"{program} failed")

        handler = getattr(self, f"_{program.replace('-', '_')}", None)
        if handler is None:
            return subprocess.CompletedProcess(cmd, 0, "", "")
        return handler(cmd, Path(cwd) if cwd else None)

    def _ok(self, cmd, stdout=""):
        return subprocess.CompletedProcess(cmd, 0, stdout, "")

    def _provision_build_env(self, cmd, cwd):
        return self._ok(cmd, f"Preparing environment\n{self.env_root}\n")

    def _make(self, cmd, cwd):
        for target in cmd[1:]:
            if target.startswith("-") or "=" in target or target.isdigit():
                continue
            if target != "clean":
                (cwd / target).write_bytes(b"\x7fELF" + target.encode())
        return self._ok(cmd)

    def _ld(self, cmd, cwd):
        out = Path(cmd[cmd.index("-o") + 1])
        out.write_bytes(b"\x7fELF linked " + out.name.encode())
        return self._ok(cmd)

    def _kmod_signer(self, cmd, cwd):
        Path(cmd[cmd.index("--output") + 1]).write_text("signature")
        return self._ok(cmd)

    def _mkprecompiled(self, cmd, cwd):
        if "--pack" in cmd:
            (cwd / cmd[cmd.index("--pack") + 1]).write_bytes(b"package")
            return self._ok(cmd)
        if "--unpack" in cmd:
            package = Path(cmd[cmd.index("--unpack") + 1])
            out = Path(cmd[cmd.index("--output") + 1])
            for f in package.parent.iterdir():
                if f.is_file() and f.name not in ("package.json", package.name):
                    shutil.copy2(f, out / f.name)
            return self._ok(cmd)
        if "--match" in cmd:
            return self._ok(cmd, f"{self.verify_output}\n")
        return self._ok(cmd)

    def _insmod(self, cmd, cwd):
        spec = _BY_FILE[Path(cmd[1]).name]
        if spec.name in self.refuse_load:
            return subprocess.CompletedProcess(cmd, 1, "", "Invalid module format")
        self.load(spec.name)
        return self._ok(cmd)

    def _rmmod(self, cmd, cwd):
        for name in cmd[1:]:
            if not self.is_loaded(name):
                continue
            if self.refcount(name) > 0:
                return subprocess.CompletedProcess(
                    cmd, 1, "", f"rmmod: ERROR: Module {name} is in use"
                )
            self.unload(name)
        return self._ok(cmd)

    def _mount(self, cmd, cwd):
        if "--rbind" in cmd:
            src, dst = cmd[-2], cmd[-1]
            with (self.proc / "mounts").open("a") as f:
                f.write(f"{src} {dst} none rw,relatime 0 0\n")
        return self._ok(cmd)

    def _umount(self, cmd, cwd):
        target = cmd[-1]
        lines = [
            line
            for line in (self.proc / "mounts").read_text().splitlines()
            if line.split()[1] != target and not line.split()[1].startswith(target + "/")
        ]
        (self.proc / "mounts").write_text("".join(f"{line}\n" for line in lines))
        return self._ok(cmd)


@pytest.fixture
def fake_kernel(tmp_path):
    """Patch subprocess.run in the command runner with a fake kernel."""
    kernel = FakeKernel(tmp_path)
    with patch("kmodctl.packages.runner.subprocess.run", side_effect=kernel.run):
        yield kernel


@pytest.fixture
def source_dir(tmp_path) -> Path:
    """Driver source tree with the prebuilt core objects."""
    src = tmp_path / "src"
    kernel_dir = src / "kernel"
    for spec in DEFAULT_MODULES:
        if spec.core_object:
            core = kernel_dir / spec.core_object
            core.parent.mkdir(parents=True, exist_ok=True)
            core.write_bytes(b"core object")
    return src


@pytest.fixture
def settings(tmp_path, source_dir) -> Settings:
    """Settings with every path under tmp_path."""
    (tmp_path / "hooks").mkdir()
    (tmp_path / "rootfs").mkdir()
    return Settings(
        driver_version=DRIVER,
        kernel_version=KERNEL,
        accept_license=True,
        max_threads=2,
        run_dir=tmp_path / "run",
        source_dir=source_dir,
        cache_dir=tmp_path / "cache",
        work_dir=tmp_path / "work",
        modules_root=tmp_path / "lib" / "modules",
        sysfs_root=tmp_path / "sys",
        proc_root=tmp_path / "proc",
        driver_root=tmp_path / "rootfs",
        hook_dir=tmp_path / "hooks",
        persistenced_pid_file=tmp_path / "persistenced.pid",
        packager_command="mkprecompiled",
        archived_linker=Path("/opt/archive/ld"),
        prerequisite_modules=[],
    )
