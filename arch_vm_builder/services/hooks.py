"""Context handed to variant customization hooks."""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from arch_vm_builder.storage.commands import CommandArg, CommandResult, CommandRunner
from arch_vm_builder.storage.exceptions import HookCommandError


@dataclass
class HookContext:
    variant: str
    mount_point: Path
    build_version: str
    runner: CommandRunner
    loop_device: Optional[str] = None

    def path(self, relative: str) -> Path:
        """Path of ``relative`` inside the mounted image."""
        return self.mount_point / relative.lstrip("/")

    def run(self, *command: CommandArg, input_text: str | None = None) -> CommandResult:
        result = self.runner.run(command, input_text=input_text)
        return self._checked(result)

    def chroot(self, *command: CommandArg, input_text: str | None = None) -> CommandResult:
        result = self.runner.chroot(self.mount_point, *command, input_text=input_text)
        return self._checked(result)

    def write_file(self, relative: str, content: str, mode: int | None = None) -> Path:
        target = self.path(relative)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        if mode is not None:
            target.chmod(mode)
        return target

    def append_file(self, relative: str, content: str) -> Path:
        target = self.path(relative)
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "a", encoding="utf-8") as handle:
            handle.write(content)
        return target

    def patch_file(self, relative: str, line_rewriter: Callable[[str], str]) -> Path:
        """Rewrite ``relative`` line by line, keeping its permissions."""
        target = self.path(relative)
        temp_path = target.with_name(target.name + ".tmp.new")
        with open(target, encoding="utf-8") as old, open(temp_path, "w", encoding="utf-8") as new:
            for line in old:
                new.write(line_rewriter(line))
        shutil.copystat(target, temp_path)
        os.replace(temp_path, target)
        return target

    def _checked(self, result: CommandResult) -> CommandResult:
        if not result.ok:
            raise HookCommandError(self.variant, result.command_line, result.describe())
        return result


def qcow2_convert(ctx: HookContext, raw: Path, final: Path) -> None:
    """Compress ``raw`` into a qcow2 image at ``final`` and drop the raw file."""
    ctx.run("qemu-img", "convert", "-c", "-f", "raw", "-O", "qcow2", raw, final)
    raw.unlink()
