from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from .command import CommandRunner

logger = logging.getLogger(__name__)


def nearest_existing(path: Path) -> Path:
    p = path
    while not p.exists() and p != p.parent:
        p = p.parent
    return p


def parse_df_available_kb(df_output: str) -> Optional[int]:
    """Return the "Available" column of the last line of ``df -Pk`` output."""

    lines = [ln for ln in df_output.splitlines() if ln.strip()]
    if len(lines) < 2:
        return None
    fields = lines[-1].split()
    if len(fields) < 4:
        return None
    try:
        return int(fields[3])
    except ValueError:
        return None


def available_kb(runner: CommandRunner, path: Path) -> Optional[int]:
    """Free space (KB) on the filesystem that holds ``path``.

    Sampled from the filesystem table, so the figure is advisory: a live
    filesystem can change between this check and its use.
    """

    target = nearest_existing(path)
    r = runner.run(["df", "-Pk", str(target)], capture_only=True)
    if not r.ok:
        return None
    avail = parse_df_available_kb(r.stdout)
    if avail is None:
        logger.error("Unexpected df output for %s: %r", target, r.stdout)
    return avail
