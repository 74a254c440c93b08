from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Iterable, List

CHUNK_SIZE = 1024 * 1024


def file_digest(path: Path, algorithm: str = "md5") -> str:
    h = hashlib.new(algorithm)
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            h.update(chunk)
    return h.hexdigest()


def sidecar_line(path: Path, algorithm: str = "md5") -> str:
    """One ``<digest>  <name>`` line, the format md5sum/sha256sum emit."""

    return f"{file_digest(path, algorithm)}  {path.name}\n"


def tree_checksums(root: Path, *, exclude: Iterable[str] = (), algorithm: str = "md5") -> List[str]:
    """Checksum every regular file under ``root`` (paths shown as ``./rel``)."""

    skip = {e[2:] if e.startswith("./") else e.lstrip("/") for e in exclude}
    lines: List[str] = []
    for p in sorted(root.rglob("*")):
        if not p.is_file() or p.is_symlink():
            continue
        rel = p.relative_to(root).as_posix()
        if rel in skip:
            continue
        lines.append(f"{file_digest(p, algorithm)}  ./{rel}\n")
    return lines
