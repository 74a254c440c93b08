from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

STATUS_FILE_NAME = "customize-status.json"


@dataclass(frozen=True)
class ChrootStatus:
    """Terminal result the in-chroot runner reports to the outer pipeline."""

    status: int
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status == 0

    def to_line(self) -> str:
        return json.dumps({"status": self.status, "message": self.message}, sort_keys=True) + "\n"


def write_status(path: str | Path, status: ChrootStatus) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(status.to_line(), encoding="utf-8")


def read_status(path: str | Path) -> Optional[ChrootStatus]:
    """Parse a status record; ``None`` when it is missing or malformed."""

    p = Path(path)
    if not p.is_file():
        logger.error("Chroot status file missing: %s", p)
        return None
    lines = [ln for ln in p.read_text(encoding="utf-8", errors="replace").splitlines() if ln.strip()]
    if len(lines) != 1:
        logger.error("Chroot status file %s must hold exactly one record, found %d", p, len(lines))
        return None
    try:
        data = json.loads(lines[0])
    except ValueError:
        logger.error("Chroot status file %s is not valid JSON", p)
        return None
    if not isinstance(data, dict):
        logger.error("Chroot status record must be an object, got %s", type(data).__name__)
        return None
    status = data.get("status")
    if isinstance(status, bool) or not isinstance(status, int):
        logger.error("Chroot status record has no integer status: %r", data)
        return None
    return ChrootStatus(status=status, message=str(data.get("message") or ""))
