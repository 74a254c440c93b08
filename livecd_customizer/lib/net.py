from __future__ import annotations

import logging

from .command import CommandRunner

logger = logging.getLogger(__name__)


def is_online(runner: CommandRunner, host: str, *, env=None) -> bool:
    """Single ping probe; failure is an answer, not an error."""

    r = runner.run(["ping", "-c1", host], capture_only=True, silent=True, env=env)
    if not r.ok:
        logger.debug("Host %s unreachable (rc=%d)", host, r.returncode)
    return r.ok
