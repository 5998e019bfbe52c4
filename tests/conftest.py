"""
Pytest configuration and shared fixtures for arch-vm-builder tests.

No test touches a real block device: ``FakeRunner`` replaces the execution
step of ``CommandRunner``, records every command and simulates the few tools
whose side effects the build depends on (losetup, cp, qemu-img, sha256sum).
"""

from __future__ import annotations

import hashlib
import os
from pathlib import Path
from typing import Callable, Optional

import pytest

from arch_vm_builder.config.settings import BuildSettings
from arch_vm_builder.domain.models import DiskImage, parse_size
from arch_vm_builder.storage import loop
from arch_vm_builder.storage.commands import CommandResult, CommandRunner
from arch_vm_builder.storage.disk import create_sparse_file
from arch_vm_builder.storage.loop import ResourceHandle
from arch_vm_builder.storage.session import BuildSession


# Smallest size that still fits the fixed partitions, keeps hashing fast
TEST_DISK_SIZE = "512M"

Handler = Callable[[tuple, Optional[str], Optional[Path]], Optional[CommandResult]]


def words(command: tuple) -> tuple:
    """Command without an ``arch-chroot <root>`` prefix."""
    if command and command[0] == "arch-chroot":
        return command[2:]
    return command


# ==============================================================================
# Fake Command Runner
# ==============================================================================


class FakeRunner(CommandRunner):
    """CommandRunner that records commands instead of executing them.

    Every command succeeds with empty output unless a failure or a handler is
    registered for a prefix of it. Prefixes are matched against the command
    with any ``arch-chroot <root>`` stripped.
    """

    def __init__(self, dev_dir: Path):
        self.dev_dir = dev_dir
        self.calls: list[tuple] = []
        self.inputs: list[Optional[str]] = []
        self.captured: list[bool] = []
        self.create_partitions = True
        self._failures: list[tuple[tuple, int, str]] = []
        self._handlers: list[tuple[tuple, Handler]] = []
        self._next_loop = 0

    def fail(self, *prefix: str, stderr: str = "boom", returncode: int = 1) -> None:
        self._failures.append((prefix, returncode, stderr))

    def on(self, *prefix: str, handler: Handler) -> None:
        self._handlers.append((prefix, handler))

    def commands(self, *prefix: str) -> list[tuple]:
        """Recorded commands starting with ``prefix`` (chroot prefix stripped)."""
        return [c for c in self.calls if words(c)[: len(prefix)] == prefix]

    def programs(self) -> list[str]:
        return [words(c)[0] for c in self.calls]

    def _execute(self, command, *, input_text, capture_output, cwd):
        self.calls.append(command)
        self.inputs.append(input_text)
        self.captured.append(capture_output)
        stripped = words(command)

        for prefix, returncode, stderr in self._failures:
            if stripped[: len(prefix)] == prefix:
                return CommandResult(command, returncode, "", stderr)
        for prefix, handler in self._handlers:
            if stripped[: len(prefix)] == prefix:
                result = handler(command, input_text, cwd)
                if result is not None:
                    return result

        simulate = {
            "losetup": self._losetup,
            "cp": self._cp,
            "qemu-img": self._qemu_img,
            "sha256sum": self._sha256sum,
        }.get(stripped[0])
        if simulate is not None:
            return simulate(command, cwd)
        return CommandResult(command, 0)

    def _losetup(self, command, cwd):
        if "--find" not in command:
            return CommandResult(command, 0)
        self.dev_dir.mkdir(parents=True, exist_ok=True)
        device = str(self.dev_dir / f"loop{self._next_loop}")
        self._next_loop += 1
        if self.create_partitions:
            for number in (1, 2, 3):
                Path(f"{device}p{number}").touch()
        return CommandResult(command, 0, device + "\n")

    def _cp(self, command, cwd):
        source, target = Path(command[-2]), Path(command[-1])
        if source.exists():
            # Keep clones sparse like cp --sparse=always
            create_sparse_file(target, os.path.getsize(source))
        return CommandResult(command, 0)

    def _qemu_img(self, command, cwd):
        target = Path(command[-1])
        target.write_bytes(b"QFI\xfb" + Path(command[-2]).name.encode())
        return CommandResult(command, 0)

    def _sha256sum(self, command, cwd):
        name = command[-1]
        digest = hashlib.sha256()
        with open(Path(cwd or ".") / name, "rb") as handle:
            for chunk in iter(lambda: handle.read(1024 * 1024), b""):
                digest.update(chunk)
        return CommandResult(command, 0, f"{digest.hexdigest()}  {name}\n")


# ==============================================================================
# Fixtures
# ==============================================================================


@pytest.fixture(autouse=True)
def isolate_process_state(monkeypatch):
    """No sudo ownership changes and no loop device left active between tests."""
    monkeypatch.delenv("SUDO_UID", raising=False)
    monkeypatch.delenv("SUDO_GID", raising=False)
    monkeypatch.delenv("IMAGES", raising=False)
    monkeypatch.setattr(loop, "_active_handle", None)


@pytest.fixture
def runner(tmp_path) -> FakeRunner:
    """Fixture providing a recording runner with loop devices under tmp_path/dev."""
    return FakeRunner(tmp_path / "dev")


@pytest.fixture
def settings(tmp_path) -> BuildSettings:
    """Fixture providing build settings rooted in tmp_path."""
    return BuildSettings(
        disk_size=TEST_DISK_SIZE,
        mirror="https://mirror.example.org/$repo/os/$arch",
        base_image_name="image.img",
        output_dir=tmp_path / "output",
        work_root=tmp_path / "tmp",
        package_cache=tmp_path / "pkg-cache",
        mount_options="compress-force=zstd",
        settle_attempts=3,
        settle_interval=0,
        keep_failed_images=True,
    )


@pytest.fixture
def session(settings, runner) -> BuildSession:
    """Fixture providing a session with a fresh working directory."""
    return BuildSession.create(settings, runner)


@pytest.fixture
def handle(session) -> ResourceHandle:
    return session.handle


@pytest.fixture
def base_image(session) -> DiskImage:
    """Fixture providing an unattached base image file in the working directory."""
    path = session.workdir / session.settings.base_image_name
    size = parse_size(TEST_DISK_SIZE)
    create_sparse_file(path, size)
    return DiskImage(path=path, size_bytes=size)


@pytest.fixture
def image_tree(tmp_path) -> Path:
    """Fixture providing a minimal installed system tree for hook tests."""
    root = tmp_path / "root"
    (root / "etc" / "default").mkdir(parents=True)
    (root / "etc" / "default" / "grub").write_text(
        'GRUB_DEFAULT=0\nGRUB_TIMEOUT=5\nGRUB_CMDLINE_LINUX_DEFAULT="loglevel=3 quiet"\n'
        'GRUB_CMDLINE_LINUX=""\n',
        encoding="utf-8",
    )
    (root / "etc" / "fstab").write_text("# static file system information\n")
    return root