from __future__ import annotations

import logging

from ..context import RunContext
from ..lib.pkg import apt_install_argv
from ..pipeline import StageFailed

logger = logging.getLogger(__name__)


class InstallPrerequisitesStep:
    step_id = "install-prerequisites"

    def run(self, ctx: RunContext) -> None:
        logger.info("installPreRequisites: Adding/updating packages needed on this host...")
        for pkg in ctx.cfg.prerequisites:
            logger.info("installing: %s", pkg)
            r = ctx.runner.run(apt_install_argv([pkg]), capture_only=True, privileged=True)
            if not r.ok:
                raise StageFailed(f"failed to add package: {pkg}")
