"""Loop device and mount handling for disk images.

A ``ResourceHandle`` owns at most one attached loop device and the stack of
mounts made under its mount point. Only one handle may hold a loop device at a
time in the whole process; builds are strictly sequential and every handle
shares the host package cache bind mount.

Usage:
    handle = ResourceHandle(runner, session.mount_point, settings)

    with handle.mounted(image_path, with_cache=True) as loop_device:
        ...  # the image's root and EFI filesystems are mounted

    # or step by step, always paired with unmount():
    loop_device = handle.attach(image_path)
    handle.wait_settled(loop_device)
    handle.mount(loop_device)
    handle.unmount()
"""

from __future__ import annotations

import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Generator, Optional

from arch_vm_builder.domain.models import EFI_PARTITION, ROOT_PARTITION
from arch_vm_builder.logging import LoggerFactory
from arch_vm_builder.storage.commands import CommandRunner
from arch_vm_builder.storage.exceptions import (
    AttachError,
    DetachError,
    ImageBuildError,
    MountFailedError,
    SettleTimeoutError,
    UnmountFailedError,
)

if TYPE_CHECKING:
    from arch_vm_builder.config.settings import BuildSettings


log = LoggerFactory.for_loop()

# Where the EFI system partition and the package cache live inside the image
EFI_SUBPATH = "efi"
PACKAGE_CACHE_SUBPATH = "var/cache/pacman/pkg"

# Handle currently holding a loop device, if any
_active_handle: Optional[ResourceHandle] = None


def get_active_handle() -> Optional[ResourceHandle]:
    """Return the handle holding the process-wide loop device, if any."""
    return _active_handle


class ResourceHandle:
    def __init__(self, runner: CommandRunner, mount_point: Path, settings: BuildSettings):
        self.runner = runner
        self.mount_point = Path(mount_point)
        self.settings = settings
        self.loop_device: Optional[str] = None
        self.image_path: Optional[Path] = None
        # Mount targets in the order they were mounted
        self.mounts: list[Path] = []

    def is_attached(self) -> bool:
        return self.loop_device is not None

    def is_mounted(self) -> bool:
        return os.path.ismount(self.mount_point)

    def attach(self, disk_path: Path) -> str:
        """Attach ``disk_path`` to a free loop device with partition scanning.

        Raises:
            AttachError: If a loop device is already held or losetup fails
        """
        global _active_handle

        if self.loop_device is not None:
            raise AttachError(
                str(disk_path), f"{self.loop_device} is still attached to {self.image_path}"
            )
        if _active_handle is not None and _active_handle is not self:
            raise AttachError(
                str(disk_path),
                f"another image is attached as {_active_handle.loop_device}",
            )

        result = self.runner.run(["losetup", "--find", "--partscan", "--show", disk_path])
        if not result.ok:
            raise AttachError(str(disk_path), "no free loop device", result.describe())
        loop_device = result.stdout.strip()
        if not loop_device:
            raise AttachError(
                str(disk_path), "losetup did not report a device", result.command_line
            )

        self.loop_device = loop_device
        self.image_path = Path(disk_path)
        _active_handle = self
        log.info(f"Attached {disk_path} as {loop_device}")
        return loop_device

    def wait_settled(self, loop_device: str) -> None:
        """Block until the kernel has created the root partition node.

        Partition scanning after attaching is asynchronous, so the partition
        device nodes may not exist yet when losetup returns.

        Raises:
            AttachError: If the partition table cannot be re-read
            SettleTimeoutError: If the node does not appear in time
        """
        settle = self.runner.run(["udevadm", "settle"])
        if not settle.ok:
            log.warning(f"udevadm settle failed, polling anyway: {settle.describe()}")
        result = self.runner.run(["blockdev", "--flushbufs", "--rereadpt", loop_device])
        if not result.ok:
            raise AttachError(
                str(self.image_path or loop_device),
                "partition table cannot be read",
                result.describe(),
            )

        node = ROOT_PARTITION.node(loop_device)
        attempts = self.settings.settle_attempts
        for attempt in range(1, attempts + 1):
            if os.path.exists(node):
                log.debug(f"{node} present after {attempt} attempt(s)")
                return
            log.debug(f"{node} doesn't exist yet ({attempt}/{attempts})")
            if attempt < attempts:
                time.sleep(self.settings.settle_interval)
        raise SettleTimeoutError(loop_device, node, attempts)

    def mount(self, loop_device: str, *, with_cache: bool = False) -> None:
        """Mount root, the EFI partition under it and optionally the package cache.

        Raises:
            MountFailedError: If any of the mounts fails
        """
        self._mount(
            ["mount", "-o", self.settings.mount_options, ROOT_PARTITION.node(loop_device)],
            ROOT_PARTITION.node(loop_device),
            self.mount_point,
        )
        self._mount(
            ["mount", EFI_PARTITION.node(loop_device)],
            EFI_PARTITION.node(loop_device),
            self.mount_point / EFI_SUBPATH,
        )
        if with_cache:
            cache = self.settings.package_cache
            target = self.mount_point / PACKAGE_CACHE_SUBPATH
            try:
                cache.mkdir(parents=True, exist_ok=True)
            except OSError as error:
                raise MountFailedError(
                    str(cache), str(target), f"cannot create package cache: {error}"
                ) from error
            self._mount(["mount", "--bind", cache], str(cache), target)

    def _mount(self, command: list, source: str, target: Path) -> None:
        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise MountFailedError(
                source, str(target), f"cannot create mount point: {error}"
            ) from error
        result = self.runner.run([*command, target])
        if not result.ok:
            raise MountFailedError(source, str(target), "mount failed", result.describe())
        self.mounts.append(target)
        log.debug(f"Mounted {source} on {target}")

    def unmount(self) -> None:
        """Unmount everything in reverse order, then detach the loop device.

        Does nothing when no resources are held.

        Raises:
            UnmountFailedError: If a mount point could not be unmounted
            DetachError: If the loop device could not be detached
        """
        global _active_handle

        while self.mounts:
            target = self.mounts[-1]
            result = self.runner.run(["umount", target])
            if not result.ok:
                raise UnmountFailedError(
                    [str(m) for m in reversed(self.mounts)], result.describe()
                )
            self.mounts.pop()
            log.debug(f"Unmounted {target}")

        if self.loop_device is None:
            return
        loop_device = self.loop_device
        result = self.runner.run(["losetup", "--detach", loop_device])
        if not result.ok:
            raise DetachError(loop_device, result.describe())
        self.loop_device = None
        self.image_path = None
        if _active_handle is self:
            _active_handle = None
        log.info(f"Detached {loop_device}")

    def forget(self) -> None:
        """Drop all tracked state without touching the system."""
        global _active_handle

        self.mounts.clear()
        self.loop_device = None
        self.image_path = None
        if _active_handle is self:
            _active_handle = None

    @contextmanager
    def mounted(self, disk_path: Path, *, with_cache: bool = False) -> Generator[str, None, None]:
        """Attach, settle and mount ``disk_path``; always unmount on exit.

        When the body fails, a failing unmount is only logged so the original
        error is the one reported. The cleanup guard unmounts what is left.

        Example:
            with handle.mounted(image, with_cache=True) as loop_device:
                runner.chroot(handle.mount_point, "pacman", "-Syu")
        """
        loop_device = self.attach(disk_path)
        try:
            self.wait_settled(loop_device)
            self.mount(loop_device, with_cache=with_cache)
            yield loop_device
        except BaseException:
            try:
                self.unmount()
            except ImageBuildError as cleanup_error:
                log.error(f"Cleanup after a failed step did not finish: {cleanup_error}")
            raise
        self.unmount()
