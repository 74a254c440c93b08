from __future__ import annotations

from typing import Sequence, Tuple

# (fstype, mountpoint) in mount order; package tooling inside the root needs them.
VIRTUAL_FILESYSTEMS: Tuple[Tuple[str, str], ...] = (
    ("proc", "/proc"),
    ("sysfs", "/sys"),
    ("devpts", "/dev/pts"),
)


def chroot_argv(target_root: str, argv: Sequence[str]) -> list[str]:
    """Command line running ``argv`` inside target root."""

    return ["chroot", target_root, *argv]


def bind_mount_argv(src: str, dst: str) -> list[str]:
    return ["mount", "--bind", src, dst]


def virtual_mount_argv(fstype: str, mountpoint: str) -> list[str]:
    return ["mount", "-t", fstype, "none", mountpoint]


# Host files copied into the root for networking; blanked before repacking.
NETWORK_IDENTITY_FILES: Tuple[str, ...] = ("/etc/hosts", "/etc/resolv.conf")
