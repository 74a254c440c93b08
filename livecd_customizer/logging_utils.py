from __future__ import annotations

import logging
from pathlib import Path
from typing import List

from .lib.stage_log import TIMESTAMP_FORMAT, StageLog

DEFAULT_LOG_NAME = "customize.out"


class StageLogHandler(logging.Handler):
    """Forward logging records into the StageLog file."""

    def __init__(self, stage_log: StageLog, level: int = logging.NOTSET):
        super().__init__(level)
        self.stage_log = stage_log

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.stage_log.record(self.format(record))
        except Exception:
            self.handleError(record)


def open_stage_log(log_path: str | Path, header: str) -> StageLog:
    """Start a fresh StageLog.

    The requested location may not be writable (read-only media, another
    user's directory); fall back to the current directory in that case.
    """

    requested = Path(log_path)
    try:
        log = StageLog(path=requested)
        log.start(header)
        return log
    except OSError:
        fallback = Path.cwd() / DEFAULT_LOG_NAME
        log = StageLog(path=fallback)
        log.start(header)
        log.record(f"Requested log {requested} not writable, using {fallback}")
        return log


def configure_logging(stage_log: StageLog, *, verbose: bool = False, also_console: bool = True) -> Path:
    """Configure logging.

    INFO and above go to the StageLog (commands are recorded there by the
    runner itself); the console gets INFO, or DEBUG command traces with
    verbose. Calling again replaces the handlers installed last time.

    Returns the log file path in use.
    """

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    previous: List[logging.Handler] = getattr(root, "_livecd_handlers", [])
    for h in previous:
        root.removeHandler(h)

    handlers: List[logging.Handler] = []

    file_handler = StageLogHandler(stage_log, level=logging.INFO)
    file_handler.setFormatter(logging.Formatter(fmt="%(levelname)s %(name)s: %(message)s"))
    handlers.append(file_handler)

    if also_console:
        console = logging.StreamHandler()
        console.setLevel(logging.DEBUG if verbose else logging.INFO)
        console.setFormatter(
            logging.Formatter(fmt="%(asctime)s %(levelname)s: %(message)s", datefmt=TIMESTAMP_FORMAT)
        )
        handlers.append(console)

    for h in handlers:
        root.addHandler(h)

    setattr(root, "_livecd_handlers", handlers)

    logging.getLogger(__name__).debug("Logging initialized (log=%s, verbose=%s)", stage_log.path, verbose)
    return stage_log.path
