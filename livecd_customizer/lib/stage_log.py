from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .command import CmdResult

TIMESTAMP_FORMAT = "%m/%d/%Y %H:%M:%S"


@dataclass(frozen=True)
class StageLog:
    """Append-only, timestamped execution log.

    The file is reopened for every write so each record is on disk before
    the caller sees the outcome of the operation it describes.
    """

    path: Path

    def start(self, header: str) -> None:
        """Truncate the log and write the opening record."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text("", encoding="utf-8")
        self.record(header)

    def record(self, message: str) -> None:
        stamp = time.strftime(TIMESTAMP_FORMAT)
        self._append(f"{stamp} {message}\n")

    def record_command(self, result: "CmdResult") -> None:
        self.record(f"CMD: {result.cmdline} (rc={result.returncode})")
        body = ""
        if result.stdout:
            body += result.stdout if result.stdout.endswith("\n") else result.stdout + "\n"
        if result.stderr:
            body += result.stderr if result.stderr.endswith("\n") else result.stderr + "\n"
        if body:
            self._append(body)

    def _append(self, text: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as f:
            f.write(text)
