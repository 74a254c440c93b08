from __future__ import annotations

import logging
from pathlib import Path

from ..context import CHROOT_MANIFEST, RUNTIME_DIR, RunContext
from ..lib.chroot import NETWORK_IDENTITY_FILES, bind_mount_argv, chroot_argv
from ..lib.resources import ResourceHandle, ResourceKind
from ..pipeline import StageFailed

logger = logging.getLogger(__name__)

SOURCES_LIST = "/etc/apt/sources.list"

# livecd_customizer.chroot_runner runs on the image's own interpreter.
CHROOT_MIN_PYTHON = (3, 8)


def package_dir() -> Path:
    # livecd_customizer/steps/step_40_prepare_chroot.py -> livecd_customizer
    return Path(__file__).resolve().parents[1]


class PrepareChrootStep:
    step_id = "prepare-chroot"

    def check_root_python(self, ctx: RunContext) -> None:
        python = ctx.cfg.chroot_python
        version_check = f"import sys; sys.exit(sys.version_info < {CHROOT_MIN_PYTHON!r})"
        r = ctx.runner.run(
            chroot_argv(str(ctx.root_dir), [python, "-c", version_check]), capture_only=True, silent=True, privileged=True
        )
        if not r.ok:
            wanted = ".".join(str(n) for n in CHROOT_MIN_PYTHON)
            raise StageFailed(
                f"{python} inside {ctx.root_dir} is missing or older than {wanted}; "
                "use a newer source image or point chroot_python at a suitable interpreter"
            )

    def run(self, ctx: RunContext) -> None:
        logger.info("prepareForChroot: preparing the new root...")
        runner = ctx.runner

        self.check_root_python(ctx)

        # Host DNS/network identity so package downloads work inside the root.
        for f in NETWORK_IDENTITY_FILES:
            runner.run_checked(["cp", f, str(ctx.in_root(f))], capture_only=True, privileged=True)

        if ctx.cfg.use_host_sources:
            sources = str(ctx.in_root(SOURCES_LIST))
            runner.run_checked(["cp", "-p", sources, sources + ".bak"], capture_only=True, privileged=True)
            runner.run_checked(["cp", "-p", SOURCES_LIST, sources], capture_only=True, privileged=True)

        dev = str(ctx.in_root("/dev"))
        runner.run_checked(bind_mount_argv("/dev", dev), capture_only=True, privileged=True)
        ctx.tracker.acquire(ResourceHandle(ResourceKind.BIND_MOUNT, dev, self.step_id))

        runtime = ctx.in_root(RUNTIME_DIR)
        runner.run_checked(["mkdir", "-p", str(runtime)], capture_only=True, privileged=True)
        ctx.tracker.acquire(ResourceHandle(ResourceKind.PLACEHOLDER_FILE, str(runtime), self.step_id))
        runner.run_checked(["cp", "-r", str(package_dir()), str(runtime)], capture_only=True, privileged=True)

        manifest = ctx.in_root(CHROOT_MANIFEST)
        runner.run_checked(["cp", str(ctx.manifest_path), str(manifest)], capture_only=True, privileged=True)
        ctx.tracker.acquire(ResourceHandle(ResourceKind.PLACEHOLDER_FILE, str(manifest), self.step_id))
