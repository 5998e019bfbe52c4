"""Custom exceptions for image build operations.

This module defines a hierarchy of exceptions for the image build to provide
specific error handling and error messages that name the failing stage, the
variant being built and the command that failed.

Exception Hierarchy:
    ImageBuildError (base)
        ├── LoopDeviceError
        │   ├── AttachError
        │   ├── DetachError
        │   └── SettleTimeoutError
        ├── MountError
        │   ├── MountFailedError
        │   └── UnmountFailedError
        ├── DiskSetupError
        ├── BootstrapError
        ├── HookCommandError
        ├── VariantError
        │   ├── CloneError
        │   ├── ResizeError
        │   ├── CustomizationError
        │   ├── PackageApplyError
        │   ├── ServiceApplyError
        │   ├── ImageCleanupError
        │   ├── ConversionError
        │   └── FinalizeError
        └── SelectionError
            ├── ReservedVariantError
            └── UnknownVariantError

Scope:
    DiskSetupError and BootstrapError abort the whole run. VariantError and the
    loop/mount errors raised while a variant is built only fail that variant.
    SelectionError is raised before any disk work starts.

Usage:
    from arch_vm_builder.storage.exceptions import PackageApplyError

    if not result.ok:
        raise PackageApplyError(variant.name, "pacman failed", result.describe())
"""

from __future__ import annotations


class ImageBuildError(Exception):
    """Base exception for all image build operations."""


class LoopDeviceError(ImageBuildError):
    """Base exception for loop device errors."""


class AttachError(LoopDeviceError):
    """No loop device could be attached to a disk image."""

    def __init__(self, image_path: str, reason: str, command: str | None = None):
        self.image_path = image_path
        self.reason = reason
        self.command = command
        msg = f"Failed to attach {image_path}: {reason}"
        if command:
            msg += f" [{command}]"
        super().__init__(msg)


class DetachError(LoopDeviceError):
    """The loop device could not be detached."""

    def __init__(self, loop_device: str, reason: str):
        self.loop_device = loop_device
        self.reason = reason
        super().__init__(f"Failed to detach {loop_device}: {reason}")


class SettleTimeoutError(LoopDeviceError, TimeoutError):
    """The kernel did not create the expected partition node in time."""

    def __init__(self, loop_device: str, partition_node: str, attempts: int):
        self.loop_device = loop_device
        self.partition_node = partition_node
        self.attempts = attempts
        super().__init__(
            f"{partition_node} did not appear after {attempts} attempts "
            f"(loop device {loop_device})"
        )


class MountError(ImageBuildError):
    """Base exception for mount-related errors."""


class MountFailedError(MountError):
    """A filesystem could not be mounted."""

    def __init__(self, source: str, target: str, reason: str, command: str | None = None):
        self.source = source
        self.target = target
        self.reason = reason
        self.command = command
        msg = f"Failed to mount {source} on {target}: {reason}"
        if command:
            msg += f" [{command}]"
        super().__init__(msg)


class UnmountFailedError(MountError):
    """Failed to unmount one or more active mount points."""

    def __init__(self, mountpoints: list[str], reason: str):
        self.mountpoints = mountpoints
        self.reason = reason
        mounts_str = ", ".join(mountpoints)
        super().__init__(f"Failed to unmount {mounts_str}: {reason}")


class DiskSetupError(ImageBuildError):
    """Partitioning or formatting the base disk failed."""

    def __init__(self, step: str, reason: str, command: str | None = None):
        self.step = step
        self.reason = reason
        self.command = command
        msg = f"Disk setup failed while {step}: {reason}"
        if command:
            msg += f" [{command}]"
        super().__init__(msg)


class BootstrapError(ImageBuildError):
    """Installing the base system failed."""

    def __init__(self, reason: str, command: str | None = None):
        self.reason = reason
        self.command = command
        msg = f"Bootstrap failed: {reason}"
        if command:
            msg += f" [{command}]"
        super().__init__(msg)


class HookCommandError(ImageBuildError):
    """A command run by a variant hook failed."""

    def __init__(self, variant: str, command: str, reason: str):
        self.variant = variant
        self.command = command
        self.reason = reason
        super().__init__(f"[{variant}] hook command failed: {reason} [{command}]")


class VariantError(ImageBuildError):
    """Base exception for failures confined to a single variant."""

    stage = "variant"

    def __init__(self, variant: str, reason: str, command: str | None = None):
        self.variant = variant
        self.reason = reason
        self.command = command
        msg = f"[{variant}] {self.stage} failed: {reason}"
        if command:
            msg += f" [{command}]"
        super().__init__(msg)


class CloneError(VariantError):
    stage = "clone"


class ResizeError(VariantError):
    stage = "resize"


class CustomizationError(VariantError):
    stage = "pre-customization"


class PackageApplyError(VariantError):
    stage = "package install"


class ServiceApplyError(VariantError):
    stage = "service enable"


class ImageCleanupError(VariantError):
    stage = "image cleanup"


class ConversionError(VariantError):
    """The post hook failed to turn the raw image into the artifact."""

    stage = "conversion"

    def __init__(self, variant: str, reason: str, intermediate_path: str, kept: bool = False):
        self.intermediate_path = intermediate_path
        self.kept = kept
        if kept:
            reason = f"{reason} (raw image kept at {intermediate_path})"
        super().__init__(variant, reason)


class FinalizeError(VariantError):
    stage = "finalize"


class SelectionError(ImageBuildError):
    """Base exception for invalid variant selections."""


class ReservedVariantError(SelectionError):
    """The reserved base definition was requested as an output variant."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"'{name}' image cannot be selected for execution.")


class UnknownVariantError(SelectionError):
    """A requested variant is not defined."""

    def __init__(self, name: str, available: list[str]):
        self.name = name
        self.available = available
        super().__init__(
            f"Image '{name}' does not exist. Available: {', '.join(available) or 'none'}"
        )
