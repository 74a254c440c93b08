from __future__ import annotations

from typing import List, Sequence, Tuple

SNAPSHOT_FORMAT = "${Installed-Size}\\t${Package}\\n"
MANIFEST_FORMAT = "${Package} ${Version}\\n"


def apt_install_argv(packages: Sequence[str]) -> list[str]:
    return ["apt-get", "-y", "install", *packages]


def dpkg_query_argv(showformat: str) -> list[str]:
    return ["dpkg-query", "-W", f"--showformat={showformat}"]


def sort_snapshot(dpkg_output: str) -> List[Tuple[int, str]]:
    """Parse ``size<TAB>name`` lines, largest package first."""

    rows: List[Tuple[int, str]] = []
    for line in dpkg_output.splitlines():
        if not line.strip():
            continue
        size_txt, _, name = line.partition("\t")
        try:
            size = int(size_txt.strip() or 0)
        except ValueError:
            size = 0
        rows.append((size, name.strip()))
    rows.sort(key=lambda r: (-r[0], r[1]))
    return rows


def format_snapshot(rows: Sequence[Tuple[int, str]]) -> str:
    return "".join(f"{size}\t{name}\n" for size, name in rows)


def strip_packages(manifest_text: str, patterns: Sequence[str]) -> str:
    """Drop manifest lines mentioning any of ``patterns`` (like ``sed /p/d``)."""

    kept = [ln for ln in manifest_text.splitlines() if not any(p in ln for p in patterns)]
    return "".join(f"{ln}\n" for ln in kept)
