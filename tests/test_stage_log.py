from __future__ import annotations

import re

from livecd_customizer.lib.stage_log import StageLog

STAMP = r"\d{2}/\d{2}/\d{4} \d{2}:\d{2}:\d{2}"


def test_start_truncates_and_records_are_timestamped(tmp_path):
    log = StageLog(path=tmp_path / "logs" / "run.out")
    log.start("START first")
    log.record("something")
    log.start("START second")
    log.record("again")

    lines = log.path.read_text().splitlines()
    assert len(lines) == 2
    assert re.match(STAMP + " START second$", lines[0])
    assert lines[1].endswith(" again")


def test_records_append(tmp_path):
    log = StageLog(path=tmp_path / "run.out")
    log.start("START")
    for i in range(3):
        log.record(f"line {i}")
    assert [ln.split(" ", 2)[2] for ln in log.path.read_text().splitlines()] == ["START", "line 0", "line 1", "line 2"]
