from __future__ import annotations

import os
import platform
from typing import Optional

# Image file names embed one of these tokens.
SUPPORTED_ARCHES = ("amd64", "i386")


def normalize_arch(machine: str) -> Optional[str]:
    m = machine.lower()
    return {
        "x86_64": "amd64",
        "amd64": "amd64",
        "i686": "i386",
        "i386": "i386",
    }.get(m)


def detect_arch() -> Optional[str]:
    return normalize_arch(platform.machine())


def running_as_root() -> bool:
    return os.geteuid() == 0
