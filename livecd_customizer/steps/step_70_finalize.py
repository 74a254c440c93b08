from __future__ import annotations

import logging

from ..context import RunContext
from ..lib.checksums import sidecar_line
from ..pipeline import StageFailed

logger = logging.getLogger(__name__)


class FinalizeStep:
    step_id = "checksum"

    def run(self, ctx: RunContext) -> None:
        image = ctx.target_image
        if not image.is_file():
            raise StageFailed(f"Missing ISO output: {image}")

        line = sidecar_line(image, ctx.cfg.checksum_algorithm)
        ctx.checksum_path.write_text(line, encoding="utf-8")
        ctx.stage_log.record(f"{ctx.cfg.checksum_algorithm}: {line.strip()}")
        logger.info("%s", line.strip())
        logger.info("Wrote %s and %s", image, ctx.checksum_path)
