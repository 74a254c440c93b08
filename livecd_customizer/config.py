from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .lib.manifest import DEFAULT_DIRECTIVE_KEYWORD
from .lib.resources import DEFAULT_STALE_MOUNTS, StaleMount


@dataclass(frozen=True)
class CustomizeConfig:
    raw: Dict[str, Any] = field(default_factory=dict)

    def _get(self, key: str, default: Any) -> Any:
        v = self.raw.get(key)
        return default if v is None else v

    @property
    def base_dir(self) -> Path:
        return Path(str(self._get("base_dir", "."))).expanduser().resolve()

    @property
    def work_dir(self) -> Path:
        return Path(str(self._get("work_dir", "/tmp/livecdtmp")))

    @property
    def arch(self) -> Optional[str]:
        v = self.raw.get("arch")
        return str(v) if v else None

    @property
    def source_image(self) -> str:
        return str(self._get("source_image", "ubuntu-20.04.6-desktop-{arch}.iso"))

    @property
    def target_image(self) -> str:
        return str(self._get("target_image", "ubuntu-20.04.6-desktop-{arch}-app1-custom.iso"))

    @property
    def checksum_file(self) -> str:
        return str(self._get("checksum_file", "ubuntu-20.04.6-desktop-{arch}-app1-custom.txt"))

    @property
    def manifest(self) -> str:
        return str(self._get("manifest", "newPackages"))

    @property
    def log(self) -> str:
        return str(self._get("log", "customize.out"))

    @property
    def connectivity_host(self) -> str:
        return str(self._get("connectivity_host", "www.google.com"))

    @property
    def min_free_kb(self) -> int:
        return int(self._get("min_free_kb", 4000000))

    @property
    def prerequisites(self) -> List[str]:
        return [str(p) for p in self._get("prerequisites", ["squashfs-tools", "genisoimage"])]

    @property
    def privilege_command(self) -> List[str]:
        v = self._get("privilege_command", ["sudo"])
        if isinstance(v, str):
            return v.split()
        return [str(a) for a in v]

    @property
    def volume_label(self) -> str:
        return str(self._get("volume_label", "Ubuntu 20.04.6 app1 Custom"))

    @property
    def squashfs_compression(self) -> str:
        return str(self._get("squashfs_compression", "xz"))

    @property
    def installer_only_packages(self) -> List[str]:
        return [str(p) for p in self._get("installer_only_packages", ["ubiquity", "casper"])]

    @property
    def checksum_algorithm(self) -> str:
        return str(self._get("checksum_algorithm", "md5"))

    @property
    def chroot_python(self) -> str:
        return str(self._get("chroot_python", "python3"))

    @property
    def keep_on_failure(self) -> bool:
        return bool(self._get("keep_on_failure", True))

    @property
    def upgrade_packages(self) -> bool:
        return bool(self._get("upgrade_packages", True))

    @property
    def use_host_sources(self) -> bool:
        return bool(self._get("use_host_sources", True))

    @property
    def directive_keyword(self) -> str:
        return str(self._get("directive_keyword", DEFAULT_DIRECTIVE_KEYWORD))

    @property
    def service_stub(self) -> str:
        return str(self._get("service_stub", "/sbin/initctl"))

    @property
    def drop_dir(self) -> str:
        return str(self._get("drop_dir", "/home/install"))

    @property
    def stale_mounts(self) -> Tuple[StaleMount, ...]:
        items = self.raw.get("stale_mounts")
        if items is None:
            return DEFAULT_STALE_MOUNTS
        out = []
        for item in items:
            if isinstance(item, str):
                out.append(StaleMount(item))
            elif isinstance(item, dict) and item.get("path"):
                out.append(StaleMount(str(item["path"]), chroot=item.get("chroot")))
            else:
                raise ValueError(f"stale_mounts entries need a path: {item!r}")
        return tuple(out)


def load_config(path: Optional[str]) -> CustomizeConfig:
    """Load the YAML config; no path means all defaults."""

    if path is None:
        return CustomizeConfig()

    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(path)

    if p.suffix.lower() not in {".yaml", ".yml"}:
        raise ValueError("config must be YAML")

    try:
        import yaml  # type: ignore
    except Exception as e:
        raise RuntimeError("PyYAML is required to read the customize config") from e

    raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"{path} must contain a mapping/object")

    return CustomizeConfig(raw=raw)
