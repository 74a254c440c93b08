from __future__ import annotations

import logging
from typing import List

from ..context import RunContext
from ..lib.env import SUPPORTED_ARCHES, running_as_root
from ..lib.net import is_online
from ..lib.resources import ResourceHandle, ResourceKind, recover_stale_workdir
from ..lib.storage import available_kb
from ..pipeline import PreconditionFailed, StageFailed

logger = logging.getLogger(__name__)


class SanityChecksStep:
    """Check every precondition, then clear leftovers and create the work dir.

    All checks run even after one fails, and nothing is touched on disk
    until they have all passed.
    """

    step_id = "sanity-check"

    def run(self, ctx: RunContext) -> None:
        logger.info("sanityChecks: Performing environmental sanity checks...")

        errors = self.collect_errors(ctx)
        if errors:
            raise PreconditionFailed(errors)

        # Remove a previous run's output so a retry cannot report stale results.
        r = ctx.runner.run(["rm", "-f", str(ctx.target_image), str(ctx.checksum_path)], capture_only=True)
        if not r.ok:
            raise StageFailed(f"cannot remove previous output {ctx.target_image}")

        if ctx.work_dir.exists():
            if not recover_stale_workdir(ctx.runner, ctx.work_dir, ctx.cfg.stale_mounts):
                raise StageFailed(f"cannot clean up stale working directory {ctx.work_dir}")

        r = ctx.runner.run(["mkdir", "-p", str(ctx.work_dir)], capture_only=True)
        if not r.ok:
            raise StageFailed(f"cannot create working directory {ctx.work_dir}")
        ctx.tracker.acquire(ResourceHandle(ResourceKind.WORKING_DIRECTORY, str(ctx.work_dir), self.step_id))

    def collect_errors(self, ctx: RunContext) -> List[str]:
        errors: List[str] = []

        if running_as_root():
            errors.append(
                "It is assumed you have 'sudo' privileges and you will be prompted "
                "to enter your password as necessary. So, please execute this as a non-root user."
            )

        if ctx.arch not in SUPPORTED_ARCHES:
            errors.append("unable to determine the system architecture")

        host = ctx.cfg.connectivity_host
        if not is_online(ctx.runner, host):
            errors.append(f"cannot access {host} or the Internet")

        if not ctx.source_image.is_file():
            errors.append(f"cannot open {ctx.source_image}")

        if not ctx.manifest_path.is_file():
            errors.append(f"cannot open {ctx.manifest_path}")

        required = ctx.cfg.min_free_kb
        avail = available_kb(ctx.runner, ctx.work_dir)
        if avail is None:
            errors.append(f"cannot determine available space for {ctx.work_dir}")
        elif avail <= required:
            errors.append(
                f"There is not enough filesystem space available in the {ctx.work_dir} filesystem "
                f"to perform this operation ({avail} KB available, more than {required} KB required)."
            )

        return errors
