from __future__ import annotations

import io
import json
import shutil
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Set

import pytest

from livecd_customizer.config import CustomizeConfig
from livecd_customizer.context import RunContext
from livecd_customizer.lib.command import CommandRunner
from livecd_customizer.lib.resources import CommandReleaser, ResourceTracker
from livecd_customizer.lib.stage_log import StageLog
from livecd_customizer.steps import step_10_sanity_checks

Handler = Callable[[List[str], Optional[str]], object]


class FakeRunner(CommandRunner):
    """CommandRunner that records argv and answers from scripted handlers.

    Handlers get the command line without the privilege prefix and may
    return None (success), an int (returncode) or (rc, stdout, stderr).
    """

    def __init__(self, stage_log: StageLog, *, privilege_command: Sequence[str] = ("sudo",)):
        super().__init__(stage_log, privilege_command=privilege_command, out=io.StringIO(), err=io.StringIO())
        self.calls: List[List[str]] = []
        self.handlers: Dict[str, Handler] = {}

    def on(self, program: str, handler: Handler) -> None:
        self.handlers[program] = handler

    def fail(self, program: str, rc: int = 1, stderr: str = "boom\n") -> None:
        self.handlers[program] = lambda _argv, _cwd: (rc, "", stderr)

    def unprivileged(self, argv: Sequence[str]) -> List[str]:
        argv = list(argv)
        n = len(self.privilege_command)
        if n and argv[:n] == self.privilege_command:
            return argv[n:]
        return argv

    def commands(self, program: Optional[str] = None) -> List[List[str]]:
        cmds = [self.unprivileged(c) for c in self.calls]
        if program is None:
            return cmds
        return [c for c in cmds if c and c[0] == program]

    def _execute(self, argv, *, cwd, env, input_text):
        self.calls.append(list(argv))
        cmd = self.unprivileged(argv)
        handler = self.handlers.get(cmd[0]) if cmd else None
        if handler is None:
            return 0, "", ""
        res = handler(cmd, cwd)
        if res is None:
            return 0, "", ""
        if isinstance(res, int):
            return res, "", ""
        return res


@pytest.fixture(autouse=True)
def _not_root(monkeypatch):
    """Tests often run as root in containers; the pipeline refuses that."""
    monkeypatch.setattr(step_10_sanity_checks, "running_as_root", lambda: False)


@pytest.fixture
def stage_log(tmp_path) -> StageLog:
    log = StageLog(path=tmp_path / "customize.out")
    log.start("START test")
    return log


@pytest.fixture
def fake_runner(stage_log) -> FakeRunner:
    return FakeRunner(stage_log)


@pytest.fixture
def base_dir(tmp_path) -> Path:
    d = tmp_path / "base"
    d.mkdir()
    return d


@pytest.fixture
def make_ctx(tmp_path, base_dir, stage_log, fake_runner):
    def _make(**overrides) -> RunContext:
        raw = {
            "base_dir": str(base_dir),
            "work_dir": str(tmp_path / "work"),
            "arch": "amd64",
        }
        raw.update(overrides)
        return RunContext(
            cfg=CustomizeConfig(raw=raw),
            arch=raw.get("arch"),
            runner=fake_runner,
            stage_log=stage_log,
            tracker=ResourceTracker(CommandReleaser(fake_runner)),
        )

    return _make


def _paths(argv: Sequence[str]) -> List[str]:
    return [a for a in argv[1:] if not a.startswith("-")]


def _remove(p: Path) -> None:
    if p.is_dir() and not p.is_symlink():
        shutil.rmtree(p)
    elif p.exists() or p.is_symlink():
        p.unlink()


def _copy(src: Path, dst: Path) -> None:
    if dst.is_dir():
        dst = dst / src.name
    if src.is_dir():
        shutil.copytree(src, dst)
    else:
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, dst)


class SimulatedHost:
    """Scripts a FakeRunner so the host tools leave realistic files behind."""

    DPKG_MANIFEST = "curl 7.22.0\nubiquity 2.10.16\ncasper 1.315\nvim 2:7.3.429\n"
    DPKG_SNAPSHOT = "350\tcurl\n2100\tvim\n15\tcasper\n"

    def __init__(self, runner: FakeRunner):
        self.runner = runner
        self.chroot_status: Optional[dict] = {"status": 0, "message": "ok"}
        self.chroot_rc = 0
        self.df_avail_kb = 9_999_999
        # Mount points currently mounted, and those umount refuses to detach.
        self.mounted: Set[str] = set()
        self.stuck: Set[str] = set()
        for name in (
            "mkdir", "rm", "cp", "mv", "rsync", "unsquashfs", "chroot", "du", "mksquashfs", "df", "mkisofs",
            "mount", "umount", "mountpoint",
        ):
            runner.on(name, getattr(self, "_" + name))

    def _mkdir(self, argv, _cwd):
        for p in _paths(argv):
            Path(p).mkdir(parents=True, exist_ok=True)

    def _rm(self, argv, _cwd):
        for p in _paths(argv):
            _remove(Path(p))

    def _cp(self, argv, _cwd):
        paths = _paths(argv)
        src, dst = Path(paths[0]), Path(paths[-1])
        # Host files such as /etc/apt/sources.list may not exist on a test machine.
        if src.exists():
            _copy(src, dst)

    def _mv(self, argv, _cwd):
        paths = _paths(argv)
        src, dst = Path(paths[0]), Path(paths[-1])
        if src.exists():
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(src), str(dst))

    def _rsync(self, argv, _cwd):
        dst = Path(_paths(argv)[-1])
        for rel, content in {
            "casper/filesystem.manifest": "old manifest\n",
            "casper/vmlinuz": "kernel",
            "isolinux/isolinux.bin": "bootloader",
            "isolinux/boot.cat": "catalog",
            "README.diskdefines": "#define DISKNAME Ubuntu\n",
        }.items():
            (dst / rel).parent.mkdir(parents=True, exist_ok=True)
            (dst / rel).write_text(content, encoding="utf-8")

    def _unsquashfs(self, argv, _cwd):
        root = Path(argv[argv.index("-d") + 1])
        for d in ("etc/apt", "tmp", "boot", "dev", "var/lib/dbus"):
            (root / d).mkdir(parents=True, exist_ok=True)
        (root / "etc/apt/sources.list").write_text("deb http://archive.ubuntu.com/ubuntu focal main\n")

    def _chroot(self, argv, _cwd):
        root, inner = Path(argv[1]), argv[2:]
        if "livecd_customizer.chroot_runner" in inner:
            (root / "customize-chroot.log").write_text("EXIT_VALUE=0\n")
            (root / "install-pkgs.before").write_text("15\tcasper\n")
            (root / "install-pkgs.after").write_text(self.DPKG_SNAPSHOT)
            if self.chroot_status is not None:
                (root / "customize-status.json").write_text(json.dumps(self.chroot_status) + "\n")
            return self.chroot_rc
        if inner and inner[0] == "dpkg-query":
            return 0, self.DPKG_MANIFEST, ""
        if inner and inner[0] == "umount":
            return self._umount(["umount", str(root / inner[-1].lstrip("/"))], _cwd)
        return 0

    def _mount(self, argv, _cwd):
        self.mounted.add(argv[-1])

    def _umount(self, argv, _cwd):
        target = argv[-1]
        if target in self.stuck:
            return 32, "", f"umount: {target}: target is busy\n"
        if target not in self.mounted:
            return 32, "", f"umount: {target}: not mounted\n"
        self.mounted.discard(target)
        return 0

    def _mountpoint(self, argv, _cwd):
        return 0 if argv[-1] in self.mounted else 32

    def _du(self, argv, _cwd):
        return 0, f"123456\t{argv[-1]}\n", ""

    def _mksquashfs(self, argv, _cwd):
        out = Path(argv[2])
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_bytes(b"hsqs" + b"\0" * 64)

    def _df(self, argv, _cwd):
        return (
            0,
            "Filesystem     1024-blocks     Used Available Capacity Mounted on\n"
            f"/dev/sda1        20000000  5000000  {self.df_avail_kb}      30% /\n",
            "",
        )

    def _mkisofs(self, argv, _cwd):
        out = Path(argv[argv.index("-o") + 1])
        out.write_bytes(b"CD001" + bytes(range(256)) * 16)


@pytest.fixture
def host(fake_runner) -> SimulatedHost:
    return SimulatedHost(fake_runner)


@pytest.fixture
def inputs(base_dir) -> Path:
    """Source image and a two-package manifest in the base directory."""
    (base_dir / "ubuntu-20.04.6-desktop-amd64.iso").write_bytes(b"source iso")
    manifest = base_dir / "newPackages"
    manifest.write_text("curl\nvim\n", encoding="utf-8")
    return manifest
