"""Domain models for image build operations."""

from __future__ import annotations

from .models import (
    BASE_PARTITIONS,
    BuildArtifact,
    BuildReport,
    DiskImage,
    Partition,
    PartitionExtent,
    PartitionRole,
    VariantResult,
    VariantSpec,
    VariantState,
    parse_size,
    plan_partitions,
)


__all__ = [
    "BASE_PARTITIONS",
    "BuildArtifact",
    "BuildReport",
    "DiskImage",
    "Partition",
    "PartitionExtent",
    "PartitionRole",
    "VariantResult",
    "VariantSpec",
    "VariantState",
    "parse_size",
    "plan_partitions",
]
