"""External command execution for the build.

Every tool the build drives (losetup, sgdisk, mkfs, mount, pacstrap,
arch-chroot, qemu-img, ...) goes through ``CommandRunner``. A run never raises
for a non-zero exit status; callers inspect ``CommandResult.ok`` and turn a
failure into the exception for their stage, using ``describe()`` so the error
carries the exact command line to reproduce it by hand.
"""

from __future__ import annotations

import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence, Union

from arch_vm_builder.logging import LoggerFactory


log = LoggerFactory.for_command()

CommandArg = Union[str, Path]

# Shell convention for "command not found"
MISSING_COMMAND_RETURNCODE = 127


@dataclass(frozen=True)
class CommandResult:
    command: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def command_line(self) -> str:
        return shlex.join(self.command)

    def describe(self) -> str:
        """One-line failure description including the command line."""
        message = self.stderr.strip() or self.stdout.strip() or "Command failed"
        message = message.splitlines()[-1]
        return f"{self.command_line}: {message} (exit {self.returncode})"


class CommandRunner:
    """Runs external commands synchronously and reports structured results."""

    def run(
        self,
        command: Sequence[CommandArg],
        *,
        input_text: str | None = None,
        capture_output: bool = True,
        cwd: Path | None = None,
    ) -> CommandResult:
        args = tuple(str(arg) for arg in command)
        log.debug(f"Running command: {shlex.join(args)}")
        result = self._execute(
            args, input_text=input_text, capture_output=capture_output, cwd=cwd
        )
        if result.ok:
            if result.stdout.strip():
                log.trace(f"stdout: {result.stdout.strip()}")
            if result.stderr.strip():
                log.trace(f"stderr: {result.stderr.strip()}")
        else:
            log.debug(f"Command failed with code {result.returncode}: {result.command_line}")
            if result.stdout.strip():
                log.debug(f"stdout: {result.stdout.strip()}")
            if result.stderr.strip():
                log.debug(f"stderr: {result.stderr.strip()}")
        return result

    def chroot(self, root: CommandArg, *command: CommandArg, **kwargs) -> CommandResult:
        """Run ``command`` inside the hierarchy mounted at ``root``."""
        return self.run(["arch-chroot", root, *command], **kwargs)

    def _execute(
        self,
        command: tuple[str, ...],
        *,
        input_text: str | None,
        capture_output: bool,
        cwd: Path | None,
    ) -> CommandResult:
        try:
            completed = subprocess.run(
                command,
                input=input_text,
                text=True,
                capture_output=capture_output,
                cwd=cwd,
                check=False,
            )
        except FileNotFoundError as error:
            return CommandResult(command, MISSING_COMMAND_RETURNCODE, "", str(error))
        return CommandResult(
            command,
            completed.returncode,
            completed.stdout or "",
            completed.stderr or "",
        )
