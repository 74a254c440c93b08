from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Protocol, Sequence

from .context import RunContext
from .lib.command import CommandFailed
from .lib.resources import recover_stale_workdir

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_INTERNAL = 99
EXIT_INTERRUPTED = 130

PROG = "customize"


class StageFailed(RuntimeError):
    """A stage could not complete; the run stops here."""


class PreconditionFailed(StageFailed):
    def __init__(self, errors: Sequence[str]):
        self.errors = list(errors)
        super().__init__(f"Found {len(self.errors)} errors, exiting")


class InternalInvariantError(RuntimeError):
    """The pipeline itself was misused; never subject to cleanup policy."""


class PipelineState(str, Enum):
    INIT = "Init"
    SANITY_CHECKED = "SanityChecked"
    PREREQUISITES_INSTALLED = "PrerequisitesInstalled"
    EXTRACTED = "Extracted"
    CHROOT_PREPARED = "ChrootPrepared"
    CHROOT_EXECUTED = "ChrootExecuted"
    REPACKED = "Repacked"
    FINALIZED = "Finalized"
    FAILED = "Failed"
    CLEANED_UP = "CleanedUp"


_FORWARD = [
    PipelineState.INIT,
    PipelineState.SANITY_CHECKED,
    PipelineState.PREREQUISITES_INSTALLED,
    PipelineState.EXTRACTED,
    PipelineState.CHROOT_PREPARED,
    PipelineState.CHROOT_EXECUTED,
    PipelineState.REPACKED,
    PipelineState.FINALIZED,
]


def _transition_table() -> Dict[PipelineState, FrozenSet[PipelineState]]:
    table: Dict[PipelineState, FrozenSet[PipelineState]] = {}
    for cur, nxt in zip(_FORWARD, _FORWARD[1:]):
        table[cur] = frozenset({nxt, PipelineState.FAILED})
    # Cleanup-only fast path.
    table[PipelineState.INIT] = table[PipelineState.INIT] | {PipelineState.CLEANED_UP}
    table[PipelineState.FINALIZED] = frozenset({PipelineState.CLEANED_UP})
    table[PipelineState.FAILED] = frozenset({PipelineState.CLEANED_UP})
    table[PipelineState.CLEANED_UP] = frozenset()
    return table


TRANSITIONS: Dict[PipelineState, FrozenSet[PipelineState]] = _transition_table()


class Idempotency(str, Enum):
    CHECK = "check"  # inspects and clears stale output only
    REPEATABLE = "repeatable"  # safe to run again as-is
    ONE_SHOT = "one-shot"  # needs a fresh working directory


class Step(Protocol):
    """A single pipeline stage body."""

    step_id: str

    def run(self, ctx: RunContext) -> None:
        ...


@dataclass(frozen=True)
class Stage:
    name: str
    step: Step
    reaches: PipelineState
    idempotency: Idempotency = Idempotency.ONE_SHOT


@dataclass
class PipelineResult:
    state: PipelineState
    exit_code: int
    ran_stages: List[str] = field(default_factory=list)
    failed_stage: Optional[str] = None
    error: Optional[str] = None


class Orchestrator:
    """Run the stages in order as an explicit state machine.

    A failing stage moves the run to ``Failed`` and nothing after it
    runs. Held resources are then kept for inspection unless the config
    says otherwise; ``-cleanup`` or the success path releases everything.
    """

    def __init__(self, ctx: RunContext, stages: Sequence[Stage]):
        expected = _FORWARD[1:]
        if [s.reaches for s in stages] != expected:
            raise InternalInvariantError("stages must reach " + " -> ".join(s.value for s in expected))
        self.ctx = ctx
        self.stages = list(stages)
        self.state = PipelineState.INIT
        self.history: List[PipelineState] = [self.state]

    def _transition(self, new: PipelineState) -> None:
        if new not in TRANSITIONS[self.state]:
            raise InternalInvariantError(f"illegal transition {self.state.value} -> {new.value}")
        logger.debug("State %s -> %s", self.state.value, new.value)
        self.state = new
        self.history.append(new)

    def run(self) -> PipelineResult:
        if self.state != PipelineState.INIT:
            raise InternalInvariantError("a pipeline runs once")

        ran: List[str] = []
        for stage in self.stages:
            self.ctx.stage_log.record(f"START {stage.name} ({stage.idempotency.value})")
            try:
                stage.step.run(self.ctx)
            except PreconditionFailed as e:
                for msg in e.errors:
                    logger.error("ERROR: %s", msg)
                return self._fail(stage, ran, e, EXIT_FAILURE)
            except (StageFailed, CommandFailed, OSError) as e:
                return self._fail(stage, ran, e, EXIT_FAILURE)
            except KeyboardInterrupt as e:
                logger.error("Interrupted during %s", stage.name)
                return self._fail(stage, ran, e, EXIT_INTERRUPTED)
            self.ctx.stage_log.record(f"COMPLETED {stage.name}")
            ran.append(stage.name)
            self._transition(stage.reaches)

        code = self.finish(EXIT_SUCCESS)
        return PipelineResult(state=self.state, exit_code=code, ran_stages=ran)

    def cleanup_only(self) -> PipelineResult:
        """Tear down whatever a previous run left behind, then stop."""
        self.ctx.stage_log.record(f"START: {PROG} -cleanup")
        code = self.finish(EXIT_SUCCESS)
        return PipelineResult(state=self.state, exit_code=code)

    def _fail(self, stage: Stage, ran: List[str], exc: BaseException, code: int) -> PipelineResult:
        message = str(exc) or type(exc).__name__
        if isinstance(exc, CommandFailed):
            message = f"{message}\n{exc.result.stderr.strip()}".rstrip()
        logger.error("%s failed: %s", stage.name, message)
        self._transition(PipelineState.FAILED)
        code = self.finish(code)
        return PipelineResult(state=self.state, exit_code=code, ran_stages=ran, failed_stage=stage.name, error=message)

    def finish(self, exit_value: Optional[int]) -> int:
        """Apply the cleanup policy for ``exit_value`` and report the outcome."""

        if exit_value is None:
            raise InternalInvariantError("no exit value provided")

        tracker = self.ctx.tracker
        if exit_value == EXIT_SUCCESS:
            released = tracker.release_all()
            if self.state == PipelineState.INIT:
                released = recover_stale_workdir(self.ctx.runner, self.ctx.work_dir, self.ctx.cfg.stale_mounts) and released
            self._transition(PipelineState.CLEANED_UP)
            if not released:
                logger.error("Teardown incomplete: %s", ", ".join(h.path for h in tracker.failed))
                exit_value = EXIT_FAILURE
        elif not self.ctx.cfg.keep_on_failure:
            tracker.release_all()
            self._transition(PipelineState.CLEANED_UP)
        elif tracker.held:
            logger.warning("Resources kept for inspection (run '%s -cleanup' to release):", PROG)
            for h in reversed(tracker.held):
                logger.warning("  %s %s", h.kind.value, h.path)

        if exit_value == EXIT_SUCCESS:
            logger.info("SUCCESS!")
        else:
            logger.error("FAILED! - see %s for details!", self.ctx.log_path)

        self.ctx.stage_log.record(f"COMPLETED {PROG} (rc={exit_value})")
        return exit_value
