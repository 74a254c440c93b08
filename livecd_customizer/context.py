from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .config import CustomizeConfig
from .lib.command import CommandRunner
from .lib.resources import ResourceTracker
from .lib.stage_log import StageLog

# Paths inside the image tree / the customized root.
SQUASHFS_REL = "casper/filesystem.squashfs"
RUNTIME_DIR = "/livecd-customizer"
CHROOT_MANIFEST = "/newPackages"
CHROOT_LOG = "/customize-chroot.log"
CHROOT_STATUS = "/customize-status.json"
SNAPSHOT_BEFORE = "/install-pkgs.before"
SNAPSHOT_AFTER = "/install-pkgs.after"


@dataclass
class RunContext:
    """State shared by every stage of one run.

    Built once at startup; only ``verbose`` may change afterwards.
    """

    cfg: CustomizeConfig
    arch: Optional[str]
    runner: CommandRunner
    stage_log: StageLog
    tracker: ResourceTracker
    verbose: bool = False

    def _name(self, template: str) -> str:
        return template.format(arch=self.arch or "unknown")

    @property
    def base_dir(self) -> Path:
        return self.cfg.base_dir

    @property
    def work_dir(self) -> Path:
        return self.cfg.work_dir

    @property
    def mount_dir(self) -> Path:
        return self.work_dir / "mnt"

    @property
    def extract_dir(self) -> Path:
        return self.work_dir / "extract-cd"

    @property
    def root_dir(self) -> Path:
        return self.work_dir / "edit"

    @property
    def source_image(self) -> Path:
        return self.base_dir / self._name(self.cfg.source_image)

    @property
    def target_image(self) -> Path:
        return self.base_dir / self._name(self.cfg.target_image)

    @property
    def checksum_path(self) -> Path:
        return self.base_dir / self._name(self.cfg.checksum_file)

    @property
    def manifest_path(self) -> Path:
        return self.base_dir / self.cfg.manifest

    @property
    def log_path(self) -> Path:
        return self.stage_log.path

    def in_root(self, chroot_path: str) -> Path:
        """Host path of an absolute path inside the customized root."""
        return self.root_dir / chroot_path.lstrip("/")
