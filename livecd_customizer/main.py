from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

from .config import CustomizeConfig, load_config
from .context import RunContext
from .lib.command import CommandRunner
from .lib.env import detect_arch
from .lib.resources import CommandReleaser, ResourceTracker
from .logging_utils import configure_logging, open_stage_log
from .pipeline import (
    EXIT_FAILURE,
    EXIT_INTERNAL,
    PROG,
    Idempotency,
    InternalInvariantError,
    Orchestrator,
    PipelineState,
    Stage,
)
from .steps import (
    ExecuteChrootStep,
    ExtractStep,
    FinalizeStep,
    InstallPrerequisitesStep,
    PrepareChrootStep,
    RepackStep,
    SanityChecksStep,
)

logger = logging.getLogger(__name__)


def build_stages() -> List[Stage]:
    return [
        Stage("sanity-check", SanityChecksStep(), PipelineState.SANITY_CHECKED, Idempotency.CHECK),
        Stage("install-prerequisites", InstallPrerequisitesStep(), PipelineState.PREREQUISITES_INSTALLED, Idempotency.REPEATABLE),
        Stage("extract", ExtractStep(), PipelineState.EXTRACTED),
        Stage("prepare-chroot", PrepareChrootStep(), PipelineState.CHROOT_PREPARED),
        Stage("execute-chroot", ExecuteChrootStep(), PipelineState.CHROOT_EXECUTED),
        Stage("repack", RepackStep(), PipelineState.REPACKED),
        Stage("checksum", FinalizeStep(), PipelineState.FINALIZED, Idempotency.REPEATABLE),
    ]


def build_context(cfg: CustomizeConfig, *, verbose: bool = False, log_path: Optional[str] = None) -> RunContext:
    stage_log = open_stage_log(log_path or cfg.base_dir / cfg.log, f"START {PROG}")
    configure_logging(stage_log, verbose=verbose)
    runner = CommandRunner(stage_log, privilege_command=cfg.privilege_command)
    return RunContext(
        cfg=cfg,
        arch=cfg.arch or detect_arch(),
        runner=runner,
        stage_log=stage_log,
        tracker=ResourceTracker(CommandReleaser(runner)),
        verbose=verbose,
    )


def run(*, config_path: Optional[str] = None, log_path: Optional[str] = None, cleanup: bool = False, verbose: bool = False) -> int:
    """Run the whole customization (or only the teardown) and return the exit code."""

    cfg = load_config(config_path)
    ctx = build_context(cfg, verbose=verbose, log_path=log_path)
    orchestrator = Orchestrator(ctx, build_stages())
    result = orchestrator.cleanup_only() if cleanup else orchestrator.run()
    logger.info("Run details can be found in %s", ctx.log_path)
    return result.exit_code


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        self.exit(EXIT_FAILURE, f"\nERROR: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    p = _ArgumentParser(prog=PROG, allow_abbrev=False, description="Customize a live installer ISO image.")
    p.add_argument("-v", dest="verbose", action="store_true", help="verbose output")
    p.add_argument("-cleanup", dest="cleanup", action="store_true", help="Just cleanup resources and exit")
    p.add_argument("--config", default=None, help="Path to YAML config (defaults apply without one)")
    p.add_argument("--log", default=None, help="Path to the execution log (default: <base_dir>/customize.out)")
    return p


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return run(config_path=args.config, log_path=args.log, cleanup=bool(args.cleanup), verbose=bool(args.verbose))
    except InternalInvariantError as e:
        logger.error("INTERNAL ERROR: %s", e)
        return EXIT_INTERNAL


if __name__ == "__main__":
    raise SystemExit(main())
