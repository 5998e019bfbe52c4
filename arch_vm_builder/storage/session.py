"""Process-wide state of one build run."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Optional

from arch_vm_builder.config.settings import BuildSettings
from arch_vm_builder.logging import LoggerFactory
from arch_vm_builder.storage.commands import CommandRunner
from arch_vm_builder.storage.loop import ResourceHandle


log = LoggerFactory.for_system()


def invoking_user_ids() -> Optional[tuple[int, int]]:
    """UID/GID of the user who ran the build through sudo, if any."""
    uid = os.environ.get("SUDO_UID")
    gid = os.environ.get("SUDO_GID")
    if not uid or not gid:
        return None
    return int(uid), int(gid)


def chown_to_invoking_user(*paths: Path) -> None:
    """Give ``paths`` back to the sudo user so they can manage the results."""
    ids = invoking_user_ids()
    if ids is None:
        return
    for path in paths:
        os.chown(path, *ids)


class BuildSession:
    """Working directory, output directory and the single resource handle.

    Created once by the entry point and passed to every stage; the cleanup
    guard only observes it.
    """

    def __init__(
        self,
        settings: BuildSettings,
        runner: CommandRunner,
        workdir: Path,
        output_dir: Path,
    ):
        self.settings = settings
        self.runner = runner
        self.workdir = workdir
        self.output_dir = output_dir
        self.mount_point = workdir / "mount"
        self.handle = ResourceHandle(runner, self.mount_point, settings)
        self.retain_workdir = False
        self.retained: list[Path] = []

    @classmethod
    def create(cls, settings: BuildSettings, runner: CommandRunner | None = None) -> BuildSession:
        settings.output_dir.mkdir(parents=True, exist_ok=True)
        settings.work_root.mkdir(parents=True, exist_ok=True)
        workdir = Path(tempfile.mkdtemp(dir=settings.work_root))
        chown_to_invoking_user(settings.output_dir, workdir)
        (workdir / "mount").mkdir()
        log.debug(f"Working directory: {workdir}")
        return cls(settings, runner or CommandRunner(), workdir, settings.output_dir)

    def retain(self, path: Path) -> None:
        """Keep the working directory after exit so ``path`` can be inspected."""
        self.retain_workdir = True
        self.retained.append(path)
