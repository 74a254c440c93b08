"""Live installer image customizer.

Unpacks a live installer ISO, installs extra packages inside its root
filesystem through chroot, and repacks a new bootable image.

Core design goals:
- Strictly ordered stages, no retries
- Every mount and injected file tracked and released newest-first
- Stale mounts from a crashed run recovered on re-entry
- One execution log for post-mortem diagnosis
"""

__all__ = []
