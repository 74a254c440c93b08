from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from .command import CommandRunner

logger = logging.getLogger(__name__)


class ResourceKind(str, Enum):
    BIND_MOUNT = "bind-mount"
    LOOP_MOUNT = "loop-mount"
    VIRTUAL_MOUNT = "virtual-mount"
    WORKING_DIRECTORY = "working-directory"
    PLACEHOLDER_FILE = "placeholder-file"
    DIVERSION = "diversion"


MOUNT_KINDS = frozenset({ResourceKind.BIND_MOUNT, ResourceKind.LOOP_MOUNT, ResourceKind.VIRTUAL_MOUNT})


@dataclass(frozen=True)
class ResourceHandle:
    kind: ResourceKind
    path: str
    stage: str


Releaser = Callable[[ResourceHandle], bool]


class ResourceTracker:
    """Stack of OS resources currently held by this process.

    Acquire right after the mount/creation succeeds. Release always walks
    the stack from the most recent handle down, because nested mounts
    must go before the mount they live under.
    """

    def __init__(self, releaser: Releaser):
        self._releaser = releaser
        self._stack: List[ResourceHandle] = []
        self.failed: List[ResourceHandle] = []

    @property
    def held(self) -> Tuple[ResourceHandle, ...]:
        return tuple(self._stack)

    def acquire(self, handle: ResourceHandle) -> ResourceHandle:
        logger.debug("Acquired %s %s (%s)", handle.kind.value, handle.path, handle.stage)
        self._stack.append(handle)
        return handle

    def release_all(self) -> bool:
        """Best-effort release of every held handle, newest first."""
        return self._release_while(lambda _h: True)

    def release_to(self, handle: ResourceHandle) -> bool:
        """Release the stack down to and including ``handle``."""
        if handle not in self._stack:
            raise ValueError(f"Resource not held: {handle.kind.value} {handle.path}")
        reached = False

        def _keep_going(h: ResourceHandle) -> bool:
            nonlocal reached
            if reached:
                return False
            reached = h == handle
            return True

        return self._release_while(_keep_going)

    def _stuck_mounts_under(self, handle: ResourceHandle) -> List[ResourceHandle]:
        if handle.kind in MOUNT_KINDS:
            return []
        top = Path(handle.path)
        return [
            m for m in self.failed if m.kind in MOUNT_KINDS and (Path(m.path) == top or top in Path(m.path).parents)
        ]

    def _release_while(self, predicate: Callable[[ResourceHandle], bool]) -> bool:
        ok = True
        while self._stack and predicate(self._stack[-1]):
            h = self._stack.pop()
            stuck = self._stuck_mounts_under(h)
            if stuck:
                # Removing it would reach through the mount into the host.
                logger.error("Not removing %s: %s still mounted", h.path, ", ".join(m.path for m in stuck))
                released = False
            else:
                try:
                    released = self._releaser(h)
                except Exception:
                    logger.exception("Error releasing %s %s", h.kind.value, h.path)
                    released = False
            if released:
                logger.debug("Released %s %s", h.kind.value, h.path)
            else:
                logger.error("Failed to release %s %s (acquired in %s)", h.kind.value, h.path, h.stage)
                self.failed.append(h)
                ok = False
        return ok


class CommandReleaser:
    """Release handles by running the matching teardown commands."""

    def __init__(self, runner: CommandRunner, *, privileged: bool = True):
        self.runner = runner
        self.privileged = privileged

    def __call__(self, handle: ResourceHandle) -> bool:
        if handle.kind in MOUNT_KINDS:
            r = self._run(["umount", handle.path])
            if r.ok:
                return True
            logger.warning("umount %s failed, retrying lazily", handle.path)
            return self._run(["umount", "-lf", handle.path]).ok
        if handle.kind == ResourceKind.WORKING_DIRECTORY:
            return self._run(["rm", "-rf", "--one-file-system", handle.path]).ok
        if handle.kind == ResourceKind.PLACEHOLDER_FILE:
            return self._run(["rm", "-rf", handle.path]).ok
        if handle.kind == ResourceKind.DIVERSION:
            removed = self._run(["rm", "-f", handle.path]).ok
            undiverted = self._run(["dpkg-divert", "--rename", "--remove", handle.path]).ok
            return removed and undiverted
        raise ValueError(f"Unknown resource kind: {handle.kind}")

    def _run(self, argv: Sequence[str]):
        return self.runner.run(argv, capture_only=True, privileged=self.privileged)


@dataclass(frozen=True)
class StaleMount:
    """A mount a crashed run may have left behind.

    ``path`` is relative to the working directory, unless ``chroot`` is set,
    in which case it is an absolute path inside ``<work_dir>/<chroot>`` and is
    unmounted from within that root.
    """

    path: str
    chroot: Optional[str] = None


DEFAULT_STALE_MOUNTS: Tuple[StaleMount, ...] = (
    StaleMount("/proc", chroot="edit"),
    StaleMount("/sys", chroot="edit"),
    StaleMount("/dev/pts", chroot="edit"),
    StaleMount("edit/dev"),
    StaleMount("mnt"),
)


def _stale_target(work_dir: Path, m: StaleMount) -> Path:
    if m.chroot:
        return work_dir / m.chroot / m.path.lstrip("/")
    return work_dir / m.path


def is_mounted(runner: CommandRunner, path: Path) -> bool:
    """``mountpoint -q``; anything but a clear "not mounted" counts as mounted."""

    r = runner.run(["mountpoint", "-q", str(path)], capture_only=True, silent=True)
    # util-linux answers 32 for "not a mountpoint", older releases 1.
    return r.returncode not in (1, 32)


def _unmount_stale(runner: CommandRunner, work_dir: Path, m: StaleMount) -> bool:
    if m.chroot:
        prefix = ["chroot", str(work_dir / m.chroot), "umount"]
        target = m.path
    else:
        prefix = ["umount"]
        target = str(_stale_target(work_dir, m))
    for flags in ([], ["-lf"]):
        if runner.run([*prefix, *flags, target], capture_only=True, silent=True, privileged=True).ok:
            return True
    return False


def recover_stale_workdir(
    runner: CommandRunner,
    work_dir: Path,
    stale_mounts: Sequence[StaleMount] = DEFAULT_STALE_MOUNTS,
) -> bool:
    """Unwind mounts left by a previous process and remove ``work_dir``.

    Only listed locations that are actually mounted are unmounted, with a
    lazy retry. If any of them is still mounted afterwards the directory
    is left alone and False is returned. Otherwise returns whether the
    working directory is gone.
    """

    if not work_dir.exists():
        logger.info("No stale working directory at %s", work_dir)
        return True

    logger.info("Cleaning up %s", work_dir)
    for m in stale_mounts:
        target = _stale_target(work_dir, m)
        if not target.is_dir() or not is_mounted(runner, target):
            continue
        if not _unmount_stale(runner, work_dir, m):
            logger.warning("Could not unmount %s", target)

    still_mounted = [
        str(t) for t in (_stale_target(work_dir, m) for m in stale_mounts) if t.is_dir() and is_mounted(runner, t)
    ]
    if still_mounted:
        logger.error("Not removing %s: still mounted: %s", work_dir, ", ".join(still_mounted))
        return False

    r = runner.run(["rm", "-rf", "--one-file-system", str(work_dir)], capture_only=True, privileged=True)
    if not r.ok:
        logger.error("Could not remove working directory %s", work_dir)
    return r.ok
