from __future__ import annotations

import logging
from typing import List

from ..context import (
    CHROOT_LOG,
    CHROOT_MANIFEST,
    CHROOT_STATUS,
    RUNTIME_DIR,
    SNAPSHOT_AFTER,
    SNAPSHOT_BEFORE,
    RunContext,
)
from ..lib.chroot import chroot_argv
from ..lib.resources import ResourceKind
from ..lib.status import read_status
from ..pipeline import StageFailed
from .step_40_prepare_chroot import SOURCES_LIST

logger = logging.getLogger(__name__)

CHROOT_ARTIFACTS = (CHROOT_LOG, SNAPSHOT_BEFORE, SNAPSHOT_AFTER)


class ExecuteChrootStep:
    """Run the in-root sub-pipeline and judge it by its own status record.

    The chroot command's exit code only says whether chroot could start
    the runner, so it is logged and otherwise ignored.
    """

    step_id = "execute-chroot"

    def inner_argv(self, ctx: RunContext) -> List[str]:
        cfg = ctx.cfg
        argv = [
            "env",
            f"PYTHONPATH={RUNTIME_DIR}",
            cfg.chroot_python,
            "-m",
            "livecd_customizer.chroot_runner",
            "--manifest",
            CHROOT_MANIFEST,
            "--status",
            CHROOT_STATUS,
            "--log",
            CHROOT_LOG,
            "--host",
            cfg.connectivity_host,
            "--directive-keyword",
            cfg.directive_keyword,
            "--service-stub",
            cfg.service_stub,
            "--drop-dir",
            cfg.drop_dir,
        ]
        if not cfg.upgrade_packages:
            argv.append("--no-upgrade")
        if ctx.verbose:
            argv.append("-v")
        return chroot_argv(str(ctx.root_dir), argv)

    def run(self, ctx: RunContext) -> None:
        runner = ctx.runner
        argv = self.inner_argv(ctx)

        ctx.stage_log.record(f"START chroot {ctx.root_dir}")
        r = runner.run(argv, privileged=True, silent=True)
        logger.info("chroot returned rc=%d", r.returncode)

        # Keep the inner log and package snapshots next to the other outputs.
        for name in CHROOT_ARTIFACTS:
            src = ctx.in_root(name)
            if not src.exists():
                logger.warning("chroot artifact missing: %s", src)
                continue
            runner.run_checked(["cp", str(src), str(ctx.base_dir)], capture_only=True)

        inner_log = ctx.base_dir / CHROOT_LOG.lstrip("/")
        status = read_status(ctx.in_root(CHROOT_STATUS))
        if status is None or not status.ok:
            detail = status.message if status is not None else "no status reported"
            raise StageFailed(f"chroot customization returned with an error ({detail}). see {inner_log}.")
        ctx.stage_log.record(f"COMPLETED chroot {ctx.root_dir}: {status.message}")

        leftovers = [str(ctx.in_root(p)) for p in (CHROOT_STATUS, *CHROOT_ARTIFACTS)]
        runner.run_checked(["rm", "-f", *leftovers], capture_only=True, privileged=True)

        if ctx.cfg.use_host_sources:
            sources = str(ctx.in_root(SOURCES_LIST))
            runner.run_checked(["mv", "-f", sources + ".bak", sources], capture_only=True, privileged=True)

        # Injected files and the /dev bind mount must not end up in the image.
        dev = str(ctx.in_root("/dev"))
        bind = next(
            (h for h in ctx.tracker.held if h.kind == ResourceKind.BIND_MOUNT and h.path == dev),
            None,
        )
        if bind is None:
            raise StageFailed(f"{dev} is not tracked as mounted")
        if not ctx.tracker.release_to(bind):
            raise StageFailed("could not release resources injected into the root")
