"""Base disk creation and resizing.

Layout of every image (GPT, partitions end-aligned):
    1: BIOS boot partition   1 MiB    ef02
    2: EFI system partition  300 MiB  ef00  FAT32
    3: Arch Linux root       rest     8304  btrfs, compress-force=zstd

Operations:
    - create_base_disk(): sparse file, partition table, filesystems, mounted
    - resize_disk(): grow an image file and move the root partition end
    - grow_root_filesystem(): grow the mounted root filesystem to its partition
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import TYPE_CHECKING

from arch_vm_builder.domain.models import (
    BASE_PARTITIONS,
    EFI_PARTITION,
    ROOT_PARTITION,
    DiskImage,
    parse_size,
    plan_partitions,
)
from arch_vm_builder.logging import LoggerFactory
from arch_vm_builder.storage.exceptions import DiskSetupError, ResizeError

if TYPE_CHECKING:
    from arch_vm_builder.storage.session import BuildSession


log = LoggerFactory.for_disk()


def create_sparse_file(path: Path, size_bytes: int) -> None:
    """Create or grow ``path`` to ``size_bytes`` without allocating blocks."""
    with open(path, "ab"):
        pass
    os.truncate(path, size_bytes)


class DiskBuilder:
    def __init__(self, session: BuildSession):
        self.session = session
        self.runner = session.runner
        self.handle = session.handle

    def create_base_disk(self, size: str | int) -> DiskImage:
        """Create, partition, format and mount the base image.

        The returned image is left attached and mounted at the session's mount
        point, ready for bootstrapping.

        Raises:
            DiskSetupError: If the size is invalid or partitioning/formatting fails
            AttachError: If no loop device can be attached
            SettleTimeoutError: If partition nodes never appear
            MountFailedError: If the new filesystems cannot be mounted
        """
        try:
            size_bytes = parse_size(size)
            plan_partitions(size_bytes)
        except ValueError as error:
            raise DiskSetupError("sizing the image", str(error)) from error

        path = self.session.workdir / self.session.settings.base_image_name
        log.info(f"Creating {size} base image at {path}")
        try:
            create_sparse_file(path, size_bytes)
        except OSError as error:
            raise DiskSetupError("allocating the image file", str(error)) from error

        command: list = ["sgdisk", "--align-end", "--clear"]
        for partition in BASE_PARTITIONS:
            command.extend(partition.sgdisk_args())
        command.append(path)
        result = self.runner.run(command)
        if not result.ok:
            raise DiskSetupError("partitioning", "sgdisk failed", result.describe())

        loop_device = self.handle.attach(path)
        self.handle.wait_settled(loop_device)

        for step, command in (
            (
                "formatting the EFI system partition",
                ["mkfs.fat", "-F", "32", "-S", "4096", EFI_PARTITION.node(loop_device)],
            ),
            (
                "formatting the root partition",
                ["mkfs.btrfs", ROOT_PARTITION.node(loop_device)],
            ),
        ):
            result = self.runner.run(command)
            if not result.ok:
                raise DiskSetupError(step, f"{command[0]} failed", result.describe())

        self.handle.mount(loop_device)
        log.info(f"Base image partitioned, formatted and mounted at {self.handle.mount_point}")
        return DiskImage(path=path, size_bytes=size_bytes)

    def resize_disk(self, variant: str, path: Path, size: str | int) -> DiskImage:
        """Grow the image file and recreate the root partition at the new end.

        The two fixed partitions before root are kept untouched; the root
        filesystem itself is grown later, once mounted.

        Raises:
            ResizeError: If the size is invalid, smaller than the image or sgdisk fails
        """
        try:
            size_bytes = parse_size(size)
            plan_partitions(size_bytes)
        except ValueError as error:
            raise ResizeError(variant, str(error)) from error

        try:
            current = os.path.getsize(path)
        except OSError as error:
            raise ResizeError(variant, f"cannot read the size of {path}: {error}") from error
        if size_bytes < current:
            raise ResizeError(
                variant, f"cannot shrink {path} from {current} to {size_bytes} bytes"
            )

        log.info(f"Resizing {path} to {size}")
        try:
            create_sparse_file(path, size_bytes)
        except OSError as error:
            raise ResizeError(variant, f"cannot grow {path}: {error}") from error

        result = self.runner.run(
            ["sgdisk", "--align-end", "--delete", str(ROOT_PARTITION.number), path]
        )
        if not result.ok:
            raise ResizeError(variant, "deleting the root partition failed", result.describe())

        result = self.runner.run(
            ["sgdisk", "--align-end", "--move-second-header", *ROOT_PARTITION.sgdisk_args(), path]
        )
        if not result.ok:
            raise ResizeError(variant, "recreating the root partition failed", result.describe())

        return DiskImage(path=path, size_bytes=size_bytes)

    def grow_root_filesystem(self, variant: str, mount_point: Path) -> None:
        """Grow the mounted root filesystem to fill its partition.

        Raises:
            ResizeError: If btrfs refuses to resize
        """
        result = self.runner.run(["btrfs", "filesystem", "resize", "max", mount_point])
        if not result.ok:
            raise ResizeError(variant, "growing the root filesystem failed", result.describe())
