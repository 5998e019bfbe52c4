"""Domain model for image build operations.

Type-safe objects for the disk images, partitions, variants and artifacts the
build passes between its stages.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional

if TYPE_CHECKING:
    from arch_vm_builder.services.hooks import HookContext


KiB = 1024
MiB = 1024 * KiB
GiB = 1024 * MiB

SECTOR_SIZE = 512
# sgdisk aligns partitions to 1 MiB
ALIGNMENT_SECTORS = 2048
# Backup GPT: 32 sectors of partition entries plus the header in the last LBA
GPT_BACKUP_SECTORS = 33

_SIZE_RE = re.compile(r"^\s*(\d+)\s*([KMGT]?)(?:i?B)?\s*$", re.IGNORECASE)
_SIZE_UNITS = {"": 1, "K": KiB, "M": MiB, "G": GiB, "T": GiB * 1024}


def parse_size(value: str | int) -> int:
    """Convert a ``truncate``-style size (e.g. "2G", "300M") to bytes.

    Suffixes are binary multiples, as with coreutils.

    Raises:
        ValueError: If the size cannot be parsed or is not positive
    """
    if isinstance(value, int):
        size = value
    else:
        match = _SIZE_RE.match(value)
        if not match:
            raise ValueError(f"Invalid size: {value!r}")
        size = int(match.group(1)) * _SIZE_UNITS[match.group(2).upper()]
    if size <= 0:
        raise ValueError(f"Size must be positive: {value!r}")
    return size


# ==============================================================================
# Disk Domain
# ==============================================================================


class PartitionRole(Enum):
    """Fixed roles of the three partitions in every image."""

    BIOS_BOOT = "bios-boot"
    EFI_SYSTEM = "efi-system"
    ROOT = "root"


@dataclass(frozen=True)
class Partition:
    """One GPT partition of the image layout.

    ``size_bytes`` is None for the partition that takes the remainder of the
    disk; only the last partition may do so.
    """

    number: int
    role: PartitionRole
    type_code: str  # sgdisk type code, e.g. "ef00"
    label: str
    size_bytes: Optional[int] = None

    @property
    def fills_remainder(self) -> bool:
        return self.size_bytes is None

    def sgdisk_args(self) -> list[str]:
        """Arguments creating this partition as the next free partition number."""
        if self.size_bytes is None:
            end = "0"
        else:
            end = f"+{self.size_bytes // MiB}M"
        return [
            "--new",
            f"0:0:{end}",
            f"--typecode=0:{self.type_code}",
            f"--change-name=0:{self.label}",
        ]

    def node(self, loop_device: str) -> str:
        """Partition device node on an attached loop device."""
        return f"{loop_device}p{self.number}"


BIOS_BOOT_PARTITION = Partition(
    1, PartitionRole.BIOS_BOOT, "ef02", "BIOS boot partition", 1 * MiB
)
EFI_PARTITION = Partition(
    2, PartitionRole.EFI_SYSTEM, "ef00", "EFI system partition", 300 * MiB
)
ROOT_PARTITION = Partition(3, PartitionRole.ROOT, "8304", "Arch Linux root")

BASE_PARTITIONS: tuple[Partition, ...] = (
    BIOS_BOOT_PARTITION,
    EFI_PARTITION,
    ROOT_PARTITION,
)


@dataclass(frozen=True)
class PartitionExtent:
    """Sector range a partition occupies once written (inclusive)."""

    partition: Partition
    start_sector: int
    end_sector: int

    @property
    def size_bytes(self) -> int:
        return (self.end_sector - self.start_sector + 1) * SECTOR_SIZE


def last_usable_sector(disk_size: int) -> int:
    return disk_size // SECTOR_SIZE - GPT_BACKUP_SECTORS - 1


def plan_partitions(
    disk_size: int, partitions: tuple[Partition, ...] = BASE_PARTITIONS
) -> list[PartitionExtent]:
    """Compute the extents sgdisk --align-end produces for ``partitions``.

    Starts and ends are aligned to 1 MiB; the remainder partition ends on the
    last aligned sector before the backup GPT.

    Raises:
        ValueError: If the disk is too small or the remainder partition is not last
    """
    last_usable = last_usable_sector(disk_size)
    extents: list[PartitionExtent] = []
    start = ALIGNMENT_SECTORS
    for index, partition in enumerate(partitions):
        if partition.fills_remainder:
            if index != len(partitions) - 1:
                raise ValueError(f"{partition.label} must be the last partition")
            end = (last_usable + 1) // ALIGNMENT_SECTORS * ALIGNMENT_SECTORS - 1
        else:
            end = start + partition.size_bytes // SECTOR_SIZE - 1
        if end <= start or end > last_usable:
            raise ValueError(
                f"Disk of {disk_size} bytes is too small for {partition.label}"
            )
        extents.append(PartitionExtent(partition, start, end))
        start = -(-(end + 1) // ALIGNMENT_SECTORS) * ALIGNMENT_SECTORS
    return extents


@dataclass(frozen=True)
class DiskImage:
    """A raw, GPT-partitioned disk image file."""

    path: Path
    size_bytes: int
    partitions: tuple[Partition, ...] = BASE_PARTITIONS

    @property
    def root_partition(self) -> Partition:
        return next(p for p in self.partitions if p.role == PartitionRole.ROOT)

    @property
    def efi_partition(self) -> Partition:
        return next(p for p in self.partitions if p.role == PartitionRole.EFI_SYSTEM)

    def extents(self) -> list[PartitionExtent]:
        return plan_partitions(self.size_bytes, self.partitions)


# ==============================================================================
# Variant Domain
# ==============================================================================


PreHook = Callable[["HookContext"], None]
PostHook = Callable[["HookContext", Path, Path], None]


@dataclass(frozen=True)
class VariantSpec:
    """An image variant derived from the common base image.

    ``image_name`` is a format string receiving ``build_version``. An empty
    package or service set skips that step entirely.
    """

    name: str
    image_name: str
    pre: PreHook
    post: Optional[PostHook] = None
    packages: frozenset[str] = field(default_factory=frozenset)
    services: frozenset[str] = field(default_factory=frozenset)
    disk_size: Optional[str] = None
    description: str = ""

    def artifact_name(self, build_version: str) -> str:
        return self.image_name.format(build_version=build_version)

    @property
    def disk_size_bytes(self) -> Optional[int]:
        if self.disk_size is None:
            return None
        return parse_size(self.disk_size)


@dataclass(frozen=True)
class BuildArtifact:
    """A finished image in the output directory with its checksum file."""

    path: Path
    checksum: str
    checksum_path: Path


class VariantState(Enum):
    """Progress of one variant through the pipeline."""

    PENDING = "pending"
    CLONED = "cloned"
    RESIZED = "resized"
    MOUNTED = "mounted"
    CUSTOMIZED = "customized"
    PACKAGES_APPLIED = "packages-applied"
    CLEANED = "cleaned"
    UNMOUNTED = "unmounted"
    CONVERTED = "converted"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class VariantResult:
    """Outcome of building one variant."""

    name: str
    state: VariantState = VariantState.PENDING
    artifact: Optional[BuildArtifact] = None
    error: Optional[Exception] = None
    # Last state reached before a failure
    failed_after: Optional[VariantState] = None

    @property
    def succeeded(self) -> bool:
        return self.state == VariantState.SUCCEEDED

    def advance(self, state: VariantState) -> None:
        self.state = state

    def fail(self, error: Exception) -> None:
        self.failed_after = self.state
        self.state = VariantState.FAILED
        self.error = error


@dataclass
class BuildReport:
    """Results of a build run, in the order variants were requested."""

    build_version: str
    results: list[VariantResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return bool(self.results) and all(r.succeeded for r in self.results)

    @property
    def failed(self) -> list[VariantResult]:
        return [r for r in self.results if r.state == VariantState.FAILED]
