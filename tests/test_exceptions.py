"""Tests for image build exception classes."""

import pytest

from arch_vm_builder.storage.exceptions import (
    AttachError,
    BootstrapError,
    CloneError,
    ConversionError,
    CustomizationError,
    DetachError,
    DiskSetupError,
    FinalizeError,
    HookCommandError,
    ImageBuildError,
    ImageCleanupError,
    LoopDeviceError,
    MountError,
    MountFailedError,
    PackageApplyError,
    ReservedVariantError,
    ResizeError,
    SelectionError,
    ServiceApplyError,
    SettleTimeoutError,
    UnknownVariantError,
    UnmountFailedError,
    VariantError,
)


class TestExceptionHierarchy:
    """Test exception inheritance hierarchy."""

    def test_image_build_error_is_base_exception(self):
        error = ImageBuildError("test error")
        assert isinstance(error, Exception)
        assert str(error) == "test error"

    @pytest.mark.parametrize(
        "error_class,parent",
        [
            (AttachError, LoopDeviceError),
            (DetachError, LoopDeviceError),
            (SettleTimeoutError, LoopDeviceError),
            (MountFailedError, MountError),
            (UnmountFailedError, MountError),
            (CloneError, VariantError),
            (ResizeError, VariantError),
            (CustomizationError, VariantError),
            (PackageApplyError, VariantError),
            (ServiceApplyError, VariantError),
            (ImageCleanupError, VariantError),
            (ConversionError, VariantError),
            (FinalizeError, VariantError),
            (ReservedVariantError, SelectionError),
            (UnknownVariantError, SelectionError),
            (DiskSetupError, ImageBuildError),
            (BootstrapError, ImageBuildError),
            (HookCommandError, ImageBuildError),
        ],
    )
    def test_subclass_relationships(self, error_class, parent):
        assert issubclass(error_class, parent)
        assert issubclass(error_class, ImageBuildError)

    def test_settle_timeout_is_a_timeout(self):
        """Callers catching TimeoutError also see settlement timeouts."""
        error = SettleTimeoutError("/dev/loop0", "/dev/loop0p3", 30)
        assert isinstance(error, TimeoutError)


class TestLoopAndMountExceptions:
    """Test loop device and mount exceptions."""

    def test_attach_error_with_command(self):
        error = AttachError("/tmp/image.img", "no free loop device", "losetup --find")
        assert error.image_path == "/tmp/image.img"
        assert error.reason == "no free loop device"
        assert error.command == "losetup --find"
        assert str(error) == (
            "Failed to attach /tmp/image.img: no free loop device [losetup --find]"
        )

    def test_attach_error_without_command(self):
        error = AttachError("/tmp/image.img", "busy")
        assert error.command is None
        assert "[" not in str(error)

    def test_detach_error(self):
        error = DetachError("/dev/loop3", "device busy")
        assert error.loop_device == "/dev/loop3"
        assert "/dev/loop3" in str(error)

    def test_settle_timeout_error(self):
        error = SettleTimeoutError("/dev/loop0", "/dev/loop0p3", 30)
        assert error.partition_node == "/dev/loop0p3"
        assert error.attempts == 30
        assert "30 attempts" in str(error)

    def test_mount_failed_error(self):
        error = MountFailedError("/dev/loop0p3", "/tmp/mnt", "mount failed", "mount /dev/loop0p3")
        assert error.source == "/dev/loop0p3"
        assert error.target == "/tmp/mnt"
        assert "mount /dev/loop0p3" in str(error)

    def test_unmount_failed_error_lists_mountpoints(self):
        error = UnmountFailedError(["/mnt/a", "/mnt/b"], "target is busy")
        assert error.mountpoints == ["/mnt/a", "/mnt/b"]
        assert "/mnt/a, /mnt/b" in str(error)
        assert "target is busy" in str(error)


class TestBuildExceptions:
    """Test stage exceptions."""

    def test_disk_setup_error_names_step(self):
        error = DiskSetupError("partitioning", "sgdisk failed", "sgdisk --clear x.img")
        assert error.step == "partitioning"
        assert str(error) == (
            "Disk setup failed while partitioning: sgdisk failed [sgdisk --clear x.img]"
        )

    def test_bootstrap_error(self):
        error = BootstrapError("pacstrap failed", "pacstrap -c /mnt base")
        assert error.command == "pacstrap -c /mnt base"
        assert str(error).startswith("Bootstrap failed: pacstrap failed")

    def test_hook_command_error(self):
        error = HookCommandError("basic", "useradd -m arch", "exit 9")
        assert error.variant == "basic"
        assert str(error) == "[basic] hook command failed: exit 9 [useradd -m arch]"


class TestVariantExceptions:
    """Test per-variant exceptions carry variant and stage."""

    @pytest.mark.parametrize(
        "error_class,stage",
        [
            (CloneError, "clone"),
            (ResizeError, "resize"),
            (CustomizationError, "pre-customization"),
            (PackageApplyError, "package install"),
            (ServiceApplyError, "service enable"),
            (ImageCleanupError, "image cleanup"),
            (FinalizeError, "finalize"),
        ],
    )
    def test_message_names_variant_and_stage(self, error_class, stage):
        error = error_class("basic", "it broke", "cmd --flag")
        assert error.variant == "basic"
        assert error.stage == stage
        assert str(error) == f"[basic] {stage} failed: it broke [cmd --flag]"

    def test_conversion_error_mentions_kept_raw_image(self):
        error = ConversionError(
            "basic", "qemu-img failed", "/tmp/w/basic-1234.img", kept=True
        )
        assert error.intermediate_path == "/tmp/w/basic-1234.img"
        assert error.stage == "conversion"
        assert "raw image kept at /tmp/w/basic-1234.img" in str(error)

    def test_conversion_error_without_kept_image(self):
        error = ConversionError("basic", "qemu-img failed", "/tmp/w/basic-1234.img")
        assert not error.kept
        assert "kept" not in str(error)


class TestSelectionExceptions:
    """Test selection exceptions."""

    def test_reserved_variant_error(self):
        error = ReservedVariantError("base")
        assert error.name == "base"
        assert str(error) == "'base' image cannot be selected for execution."

    def test_unknown_variant_error_lists_available(self):
        error = UnknownVariantError("nope", ["basic", "yandex-cloud-image"])
        assert error.available == ["basic", "yandex-cloud-image"]
        assert "nope" in str(error)
        assert "basic, yandex-cloud-image" in str(error)

    def test_unknown_variant_error_without_variants(self):
        assert "Available: none" in str(UnknownVariantError("nope", []))
