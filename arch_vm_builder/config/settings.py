"""Settings storage for build configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from arch_vm_builder.logging import LoggerFactory


log = LoggerFactory.for_system()

SETTINGS_PATH = Path(
    os.environ.get(
        "ARCH_VM_BUILDER_SETTINGS_PATH",
        Path.home() / ".config" / "arch-vm-builder" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_DISK_SIZE = "2G"
# The literal $repo/$arch are expanded by pacman, not by us
DEFAULT_MIRROR = "https://geo.mirror.pkgbuild.com/$repo/os/$arch"
DEFAULT_PACKAGE_CACHE = "/var/cache/pacman/pkg"
DEFAULT_SETTLE_ATTEMPTS = 30
DEFAULT_SETTLE_INTERVAL = 1.0

DEFAULT_SETTINGS: dict[str, Any] = {
    "disk_size": DEFAULT_DISK_SIZE,
    "mirror": DEFAULT_MIRROR,
    "base_image_name": "image.img",
    "output_dir": "output",
    "work_root": "tmp",
    "package_cache": DEFAULT_PACKAGE_CACHE,
    "mount_options": "compress-force=zstd",
    "settle_attempts": DEFAULT_SETTLE_ATTEMPTS,
    "settle_interval": DEFAULT_SETTLE_INTERVAL,
    "keep_failed_images": True,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings(path: Path | None = None) -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    path = path or SETTINGS_PATH
    if not path.exists():
        return
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        log.warning(f"Ignoring unreadable settings file {path}: {error}")
        return
    if not isinstance(data, dict):
        log.warning(f"Ignoring settings file {path}: expected a JSON object")
        return
    settings_store.values.update(data)


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def get_bool(key: str, default: bool = False) -> bool:
    return bool(get_setting(key, default))


@dataclass(frozen=True)
class BuildSettings:
    """Resolved configuration for one build run.

    Relative directories are resolved against the directory the build was
    started from, so ``output/`` and ``tmp/`` land next to the caller.
    """

    disk_size: str
    mirror: str
    base_image_name: str
    output_dir: Path
    work_root: Path
    package_cache: Path
    mount_options: str
    settle_attempts: int
    settle_interval: float
    keep_failed_images: bool

    @classmethod
    def from_settings(cls, base_dir: Path | None = None) -> BuildSettings:
        base_dir = base_dir or Path.cwd()
        return cls(
            disk_size=str(get_setting("disk_size", DEFAULT_DISK_SIZE)),
            mirror=str(get_setting("mirror", DEFAULT_MIRROR)),
            base_image_name=str(get_setting("base_image_name", "image.img")),
            output_dir=base_dir / get_setting("output_dir", "output"),
            work_root=base_dir / get_setting("work_root", "tmp"),
            package_cache=Path(get_setting("package_cache", DEFAULT_PACKAGE_CACHE)),
            mount_options=str(get_setting("mount_options", "compress-force=zstd")),
            settle_attempts=int(get_setting("settle_attempts", DEFAULT_SETTLE_ATTEMPTS)),
            settle_interval=float(get_setting("settle_interval", DEFAULT_SETTLE_INTERVAL)),
            keep_failed_images=get_bool("keep_failed_images", True),
        )


load_settings()
