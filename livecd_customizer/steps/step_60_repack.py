from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from ..context import SQUASHFS_REL, RunContext
from ..lib.checksums import tree_checksums
from ..lib.chroot import chroot_argv
from ..lib.pkg import MANIFEST_FORMAT, dpkg_query_argv, strip_packages
from ..pipeline import StageFailed

logger = logging.getLogger(__name__)

MANIFEST_REL = "casper/filesystem.manifest"
DESKTOP_MANIFEST_REL = "casper/filesystem.manifest-desktop"
SIZE_REL = "casper/filesystem.size"
TREE_SUMS_REL = "md5sum.txt"


@dataclass(frozen=True)
class BootLayout:
    boot_image: str
    boot_catalog: str
    efi_image: Optional[str] = None


BOOT_LAYOUTS = {
    "amd64": BootLayout("isolinux/isolinux.bin", "isolinux/boot.cat", efi_image="boot/grub/efi.img"),
    "i386": BootLayout("isolinux/isolinux.bin", "isolinux/boot.cat"),
}


def mkisofs_argv(*, label: str, layout: BootLayout, output: Path, tree: Path) -> List[str]:
    argv = [
        "mkisofs",
        "-D",
        "-r",
        "-V",
        label,
        "-cache-inodes",
        "-J",
        "-l",
        "-b",
        layout.boot_image,
        "-c",
        layout.boot_catalog,
        "-no-emul-boot",
        "-boot-load-size",
        "4",
        "-boot-info-table",
    ]
    if layout.efi_image and (tree / layout.efi_image).is_file():
        argv += ["-eltorito-alt-boot", "-e", layout.efi_image, "-no-emul-boot"]
    argv += ["-o", str(output), "."]
    return argv


class RepackStep:
    """Rebuild the root archive, its metadata files and the bootable image."""

    step_id = "repack"

    def run(self, ctx: RunContext) -> None:
        logger.info("writeTheNewISO: generate the new ISO image...")
        layout = BOOT_LAYOUTS.get(ctx.arch or "")
        if layout is None:
            raise StageFailed(f"no boot layout for architecture {ctx.arch}")

        self.write_manifests(ctx)
        self.compress_root(ctx)
        self.write_size(ctx)
        self.write_tree_checksums(ctx, layout)

        ctx.runner.run_checked(
            mkisofs_argv(label=ctx.cfg.volume_label, layout=layout, output=ctx.target_image, tree=ctx.extract_dir),
            capture_only=True,
            privileged=True,
            cwd=str(ctx.extract_dir),
        )

    def _install(self, ctx: RunContext, content: str, rel: str) -> None:
        """Write ``content`` as the root-owned file ``extract-cd/<rel>``."""
        tmp = ctx.work_dir / (Path(rel).name + ".tmp")
        tmp.write_text(content, encoding="utf-8")
        ctx.runner.run_checked(["mv", str(tmp), str(ctx.extract_dir / rel)], capture_only=True, privileged=True)

    def write_manifests(self, ctx: RunContext) -> None:
        runner = ctx.runner
        r = runner.run_checked(
            chroot_argv(str(ctx.root_dir), dpkg_query_argv(MANIFEST_FORMAT)),
            capture_only=True,
            privileged=True,
        )
        self._install(ctx, r.stdout, MANIFEST_REL)
        # The user-facing copy must not list the live installer itself.
        self._install(ctx, strip_packages(r.stdout, ctx.cfg.installer_only_packages), DESKTOP_MANIFEST_REL)

    def compress_root(self, ctx: RunContext) -> None:
        squashfs = str(ctx.extract_dir / SQUASHFS_REL)
        ctx.runner.run_checked(["rm", "-f", squashfs], capture_only=True, privileged=True)
        ctx.runner.run_checked(
            [
                "mksquashfs",
                str(ctx.root_dir),
                squashfs,
                "-comp",
                ctx.cfg.squashfs_compression,
                "-e",
                str(ctx.root_dir / "boot"),
            ],
            capture_only=True,
            privileged=True,
        )

    def write_size(self, ctx: RunContext) -> None:
        r = ctx.runner.run_checked(
            ["du", "-sx", "--block-size=1", str(ctx.root_dir)], capture_only=True, privileged=True
        )
        size = r.stdout.split()[0] if r.stdout.split() else ""
        if not size.isdigit():
            raise StageFailed(f"unexpected du output: {r.stdout!r}")
        self._install(ctx, size + "\n", SIZE_REL)

    def write_tree_checksums(self, ctx: RunContext, layout: BootLayout) -> None:
        # The boot catalog is rewritten by mkisofs, so its checksum would be stale.
        lines = tree_checksums(ctx.extract_dir, exclude=[layout.boot_catalog, TREE_SUMS_REL])
        self._install(ctx, "".join(lines), TREE_SUMS_REL)
