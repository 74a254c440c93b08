from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Tuple

DEFAULT_DIRECTIVE_KEYWORD = "debconf-set-selections"


class EntryKind(str, Enum):
    PACKAGE = "package"
    DIRECTIVE = "directive"


@dataclass(frozen=True)
class ManifestEntry:
    kind: EntryKind
    text: str
    line_no: int

    @property
    def packages(self) -> List[str]:
        # Shell word splitting of an unquoted line; quotes are not special.
        return self.text.split()


@dataclass(frozen=True)
class PackageManifest:
    """Ordered package list to install into the image.

    Blank lines and ``#`` comments are dropped. A line containing the
    directive keyword is a pre-seed directive and is evaluated by a shell
    rather than handed to the package installer.
    """

    entries: Tuple[ManifestEntry, ...]

    @classmethod
    def parse(cls, text: str, *, directive_keyword: str = DEFAULT_DIRECTIVE_KEYWORD) -> "PackageManifest":
        entries = []
        for n, raw in enumerate(text.splitlines(), start=1):
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            kind = EntryKind.DIRECTIVE if directive_keyword in line else EntryKind.PACKAGE
            entries.append(ManifestEntry(kind=kind, text=line, line_no=n))
        return cls(entries=tuple(entries))

    @property
    def packages(self) -> List[str]:
        out: List[str] = []
        for e in self.entries:
            if e.kind == EntryKind.PACKAGE:
                out.extend(e.packages)
        return out


def load_manifest(path: str | Path, *, directive_keyword: str = DEFAULT_DIRECTIVE_KEYWORD) -> PackageManifest:
    p = Path(path)
    return PackageManifest.parse(p.read_text(encoding="utf-8"), directive_keyword=directive_keyword)
