from __future__ import annotations

import logging
import os
import shlex
import subprocess
import sys
from dataclasses import dataclass
from typing import Mapping, Sequence, TextIO, Tuple

from .stage_log import StageLog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CmdResult:
    argv: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def cmdline(self) -> str:
        return _fmt_argv(self.argv)


class CommandFailed(RuntimeError):
    def __init__(self, result: CmdResult, message: str | None = None):
        self.result = result
        super().__init__(message or f"Command failed ({result.returncode}): {result.cmdline}")


def _fmt_argv(argv: Sequence[str]) -> str:
    return " ".join(shlex.quote(a) for a in argv)


class CommandRunner:
    """Run external commands with consistent logging.

    - Every invocation is written to the StageLog (command, rc, both
      streams) before the result is returned.
    - A non-zero exit is a normal result, never an exception.
    - ``capture_only`` keeps stdout off the operator's terminal.
    - ``silent`` keeps failure diagnostics off the operator's terminal
      (for probes that are expected to fail).
    - ``privileged`` prefixes the configured escalation command (sudo);
      it may prompt for a password on the controlling terminal.
    """

    def __init__(
        self,
        stage_log: StageLog,
        *,
        privilege_command: Sequence[str] = ("sudo",),
        out: TextIO | None = None,
        err: TextIO | None = None,
    ):
        self.stage_log = stage_log
        self.privilege_command = list(privilege_command)
        self._out = out
        self._err = err

    def run(
        self,
        argv: Sequence[str],
        *,
        capture_only: bool = False,
        silent: bool = False,
        privileged: bool = False,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        input_text: str | None = None,
    ) -> CmdResult:
        argv_list = list(argv)
        if privileged:
            argv_list = [*self.privilege_command, *argv_list]
        logger.debug("CMD %s", _fmt_argv(argv_list))

        returncode, stdout, stderr = self._execute(argv_list, cwd=cwd, env=env, input_text=input_text)
        result = CmdResult(argv=argv_list, returncode=returncode, stdout=stdout, stderr=stderr)

        self.stage_log.record_command(result)

        if stdout and not capture_only:
            out = self._out or sys.stdout
            out.write(stdout)
            out.flush()

        if not result.ok and not silent:
            err = self._err or sys.stderr
            err.write(f"CMD: {result.cmdline} (rc={result.returncode})\n")
            if stderr:
                err.write(stderr if stderr.endswith("\n") else stderr + "\n")
            err.flush()

        return result

    def run_checked(self, argv: Sequence[str], **kwargs) -> CmdResult:
        result = self.run(argv, **kwargs)
        if not result.ok:
            raise CommandFailed(result)
        return result

    def _execute(
        self,
        argv: list[str],
        *,
        cwd: str | None,
        env: Mapping[str, str] | None,
        input_text: str | None,
    ) -> Tuple[int, str, str]:
        try:
            p = subprocess.run(
                argv,
                input=input_text,
                text=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=cwd,
                env=dict(os.environ, **(env or {})),
            )
        except FileNotFoundError as e:
            return 127, "", f"{e}\n"
        except PermissionError as e:
            return 126, "", f"{e}\n"
        return p.returncode, p.stdout, p.stderr
