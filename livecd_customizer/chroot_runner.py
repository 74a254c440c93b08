"""Sub-pipeline executed inside the customized root.

Launched by the execute-chroot stage as
``chroot <root> env PYTHONPATH=/livecd-customizer python3 -m livecd_customizer.chroot_runner``.
Its only channel back to the outer pipeline is the one-line JSON status
record written on every exit path.
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Dict, List, Optional

from .context import CHROOT_LOG, CHROOT_MANIFEST, CHROOT_STATUS, SNAPSHOT_AFTER, SNAPSHOT_BEFORE
from .lib.chroot import NETWORK_IDENTITY_FILES, VIRTUAL_FILESYSTEMS, virtual_mount_argv
from .lib.command import CommandFailed, CommandRunner
from .lib.manifest import DEFAULT_DIRECTIVE_KEYWORD, EntryKind, PackageManifest, load_manifest
from .lib.net import is_online
from .lib.pkg import SNAPSHOT_FORMAT, apt_install_argv, dpkg_query_argv, format_snapshot, sort_snapshot
from .lib.resources import CommandReleaser, ResourceHandle, ResourceKind, ResourceTracker
from .lib.stage_log import StageLog
from .lib.status import ChrootStatus, write_status
from .logging_utils import configure_logging, open_stage_log
from .pipeline import PreconditionFailed, StageFailed

logger = logging.getLogger(__name__)

MACHINE_ID = "/var/lib/dbus/machine-id"


class ChrootStageRunner:
    """Install the manifest into the root this process is chrooted into.

    ``root`` is where that root appears to this process ("/" once inside
    the chroot). Command lines always use in-root absolute paths.
    """

    def __init__(
        self,
        runner: CommandRunner,
        stage_log: StageLog,
        *,
        root: str | Path = "/",
        manifest_path: str = CHROOT_MANIFEST,
        status_path: str = CHROOT_STATUS,
        snapshot_before: str = SNAPSHOT_BEFORE,
        snapshot_after: str = SNAPSHOT_AFTER,
        host: str = "www.google.com",
        directive_keyword: str = DEFAULT_DIRECTIVE_KEYWORD,
        service_stub: str = "/sbin/initctl",
        upgrade: bool = True,
        drop_dir: str = "/home/install",
        home: str = "/root",
        locale: str = "C",
    ):
        self.runner = runner
        self.stage_log = stage_log
        self.root = Path(root)
        self.manifest_path = manifest_path
        self.status_path = status_path
        self.snapshot_before = snapshot_before
        self.snapshot_after = snapshot_after
        self.host = host
        self.directive_keyword = directive_keyword
        self.service_stub = service_stub
        self.upgrade = upgrade
        self.drop_dir = drop_dir
        self.home = home
        self.locale = locale
        self.env: Dict[str, str] = {}
        self.tracker = ResourceTracker(CommandReleaser(runner, privileged=False))

    def host_path(self, chroot_path: str) -> Path:
        return self.root / chroot_path.lstrip("/")

    def _run(self, argv, **kwargs):
        kwargs.setdefault("capture_only", True)
        return self.runner.run(argv, env=self.env, **kwargs)

    def _run_checked(self, argv, **kwargs):
        kwargs.setdefault("capture_only", True)
        return self.runner.run_checked(argv, env=self.env, **kwargs)

    def run(self) -> int:
        status, message = 1, "aborted"
        try:
            self.mount_virtual_filesystems()
            self.prepare_environment()
            self.preflight()
            manifest = load_manifest(self.host_path(self.manifest_path), directive_keyword=self.directive_keyword)
            self.snapshot(self.snapshot_before)
            self.install(manifest)
            self.snapshot(self.snapshot_after)
            status, message = 0, f"applied {len(manifest.entries)} manifest entries"
        except PreconditionFailed as e:
            for err in e.errors:
                logger.error("ERROR: %s", err)
            message = str(e)
        except (StageFailed, CommandFailed, OSError) as e:
            logger.error("%s", e)
            message = str(e)
        finally:
            logger.info("*** Cleaning up the chroot environment...")
            if not self.cleanup() and status == 0:
                status, message = 1, "cleanup of the root failed"
            write_status(self.host_path(self.status_path), ChrootStatus(status=status, message=message))
            self.stage_log.record(f"EXIT_VALUE={status}")
        return status

    def mount_virtual_filesystems(self) -> None:
        for fstype, mountpoint in VIRTUAL_FILESYSTEMS:
            self._run_checked(virtual_mount_argv(fstype, mountpoint))
            self.tracker.acquire(ResourceHandle(ResourceKind.VIRTUAL_MOUNT, mountpoint, "mount-virtual-filesystems"))

    def prepare_environment(self) -> None:
        # Package configuration prompts read these.
        self.env = {"HOME": self.home, "LC_ALL": self.locale}

    def preflight(self) -> None:
        errors: List[str] = []

        r = self._run(["dbus-uuidgen"])
        machine_id = self.host_path(MACHINE_ID)
        if r.ok and r.stdout.strip():
            machine_id.parent.mkdir(parents=True, exist_ok=True)
            machine_id.write_text(r.stdout.strip() + "\n", encoding="utf-8")
            self.tracker.acquire(ResourceHandle(ResourceKind.PLACEHOLDER_FILE, MACHINE_ID, "preflight"))
        if not machine_id.is_file():
            errors.append(f"failed to create {MACHINE_ID}")

        # Post-install hooks must not manage real services from inside the root.
        r = self._run(["dpkg-divert", "--local", "--rename", "--add", self.service_stub])
        if r.ok:
            self.tracker.acquire(ResourceHandle(ResourceKind.DIVERSION, self.service_stub, "preflight"))
            r = self._run(["ln", "-s", "/bin/true", self.service_stub])
        if not r.ok:
            errors.append(f"failed to stub out {self.service_stub}")

        if not is_online(self.runner, self.host, env=self.env):
            errors.append(f"cannot access {self.host} or the Internet")

        if not self.host_path(self.manifest_path).is_file():
            errors.append(f"unable to open {self.manifest_path}")

        if errors:
            raise PreconditionFailed(errors)

    def snapshot(self, chroot_path: str) -> None:
        """Record installed packages (size, name), largest first."""
        r = self._run_checked(dpkg_query_argv(SNAPSHOT_FORMAT))
        self.host_path(chroot_path).write_text(format_snapshot(sort_snapshot(r.stdout)), encoding="utf-8")

    def install(self, manifest: PackageManifest) -> None:
        logger.info("installNewPackages: Adding new packages")
        self._run_checked(["apt-get", "-y", "update"])
        if self.upgrade:
            self._run_checked(["apt-get", "-y", "upgrade"])

        for entry in manifest.entries:
            if entry.kind == EntryKind.DIRECTIVE:
                r = self._run(["sh", "-c", entry.text])
            else:
                logger.info("installing: %s", entry.text)
                r = self._run(apt_install_argv(entry.packages))
            if not r.ok:
                raise StageFailed(f"manifest line {entry.line_no} failed: {entry.text}")

        if self.drop_dir:
            # Drop location for the application package.
            self._run_checked(["mkdir", "-p", self.drop_dir])
            self._run_checked(["chmod", "777", self.drop_dir])

    def cleanup(self) -> bool:
        """Undo everything done to the root; keeps going past failures."""
        ok = True

        if not self._run(["apt-get", "clean"]).ok:
            ok = False

        tmp = self.host_path("/tmp")
        targets = [f"/tmp/{p.name}" for p in sorted(tmp.iterdir())] if tmp.is_dir() else []
        targets.append(f"{self.home.rstrip('/')}/.bash_history")
        if not self._run(["rm", "-rf", *targets]).ok:
            ok = False

        # Host network identity must not ship in the image.
        for f in NETWORK_IDENTITY_FILES:
            try:
                self.host_path(f).write_text("", encoding="utf-8")
            except OSError as e:
                logger.error("cannot blank %s: %s", f, e)
                ok = False

        # Stub, machine-id, then the virtual filesystems in reverse mount order.
        if not self.tracker.release_all():
            ok = False
        return ok


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="customize-chroot")
    p.add_argument("--manifest", default=CHROOT_MANIFEST)
    p.add_argument("--status", default=CHROOT_STATUS)
    p.add_argument("--log", default=CHROOT_LOG)
    p.add_argument("--host", default="www.google.com", help="Host pinged to confirm network access")
    p.add_argument("--directive-keyword", default=DEFAULT_DIRECTIVE_KEYWORD)
    p.add_argument("--service-stub", default="/sbin/initctl")
    p.add_argument("--drop-dir", default="/home/install", help="World-writable directory to create; empty to skip")
    p.add_argument("--no-upgrade", action="store_true", help="Skip apt-get upgrade")
    p.add_argument("-v", "--verbose", action="store_true")
    return p


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    stage_log = open_stage_log(args.log, "START customize-chroot")
    configure_logging(stage_log, verbose=bool(args.verbose))
    runner = CommandRunner(stage_log, privilege_command=())

    return ChrootStageRunner(
        runner,
        stage_log,
        manifest_path=args.manifest,
        status_path=args.status,
        host=args.host,
        directive_keyword=args.directive_keyword,
        service_stub=args.service_stub,
        upgrade=not args.no_upgrade,
        drop_dir=args.drop_dir,
    ).run()


if __name__ == "__main__":
    raise SystemExit(main())
