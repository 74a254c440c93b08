from __future__ import annotations

import logging

from ..context import SQUASHFS_REL, RunContext
from ..lib.resources import ResourceHandle, ResourceKind

logger = logging.getLogger(__name__)


class ExtractStep:
    """Loop-mount the source image and unpack it into the working directory.

    The image tree is copied without the root filesystem archive, which is
    decompressed separately into its own directory (the chroot root).
    """

    step_id = "extract"

    def run(self, ctx: RunContext) -> None:
        logger.info("extractISOContents: extracting the files from the ISO image...")
        runner = ctx.runner

        runner.run_checked(["mkdir", str(ctx.mount_dir)], capture_only=True)
        runner.run_checked(
            ["mount", "-o", "loop,ro", str(ctx.source_image), str(ctx.mount_dir)],
            capture_only=True,
            privileged=True,
        )
        ctx.tracker.acquire(ResourceHandle(ResourceKind.LOOP_MOUNT, str(ctx.mount_dir), self.step_id))

        runner.run_checked(["mkdir", str(ctx.extract_dir)], capture_only=True)
        runner.run_checked(
            ["rsync", f"--exclude=/{SQUASHFS_REL}", "-a", f"{ctx.mount_dir}/", str(ctx.extract_dir)],
            capture_only=True,
            privileged=True,
        )

        runner.run_checked(
            ["unsquashfs", "-d", str(ctx.root_dir), str(ctx.mount_dir / SQUASHFS_REL)],
            capture_only=True,
            privileged=True,
        )
