"""Per-variant image pipeline.

Each variant is derived from the bootstrapped base image:

    clone → (resize) → mount → pre hook → packages/services → image cleanup
          → unmount → post hook (conversion) → checksum and move to output

Mounting is scoped: the image is unmounted and its loop device detached before
a failure leaves the mounted block, so a failed variant never holds resources.
Variant failures are returned as a FAILED ``VariantResult``; interrupts and
non-build exceptions propagate.
"""

from __future__ import annotations

import shutil
import uuid
from pathlib import Path

from arch_vm_builder.domain.models import (
    BuildArtifact,
    DiskImage,
    VariantResult,
    VariantSpec,
    VariantState,
)
from arch_vm_builder.logging import LoggerFactory, operation_context
from arch_vm_builder.services.hooks import HookContext
from arch_vm_builder.storage.disk import DiskBuilder
from arch_vm_builder.storage.exceptions import (
    CloneError,
    ConversionError,
    CustomizationError,
    FinalizeError,
    ImageBuildError,
    ImageCleanupError,
    PackageApplyError,
    ServiceApplyError,
)
from arch_vm_builder.storage.session import BuildSession, chown_to_invoking_user


CHECKSUM_SUFFIX = ".SHA256"
INITRAMFS = "boot/initramfs-linux.img"
FALLBACK_INITRAMFS = "boot/initramfs-linux-fallback.img"


class VariantPipeline:
    def __init__(self, session: BuildSession, disk_builder: DiskBuilder | None = None):
        self.session = session
        self.runner = session.runner
        self.handle = session.handle
        self.disk_builder = disk_builder or DiskBuilder(session)

    @property
    def mount_point(self) -> Path:
        return self.session.mount_point

    def run(self, variant: VariantSpec, base: DiskImage, build_version: str) -> VariantResult:
        """Build ``variant`` from ``base``; never modifies the base image."""
        result = VariantResult(name=variant.name)
        try:
            with operation_context("variant", variant=variant.name, version=build_version):
                result.artifact = self._build(variant, base, build_version, result)
        except ImageBuildError as error:
            result.fail(error)
            return result
        result.advance(VariantState.SUCCEEDED)
        return result

    def _build(
        self,
        variant: VariantSpec,
        base: DiskImage,
        build_version: str,
        result: VariantResult,
    ) -> BuildArtifact:
        log = LoggerFactory.for_variant(variant.name)

        raw = self.clone(variant, base)
        result.advance(VariantState.CLONED)

        if variant.disk_size is not None:
            self.disk_builder.resize_disk(variant.name, raw, variant.disk_size)
            result.advance(VariantState.RESIZED)

        ctx = HookContext(
            variant=variant.name,
            mount_point=self.mount_point,
            build_version=build_version,
            runner=self.runner,
        )
        with self.handle.mounted(raw, with_cache=True) as loop_device:
            result.advance(VariantState.MOUNTED)
            ctx.loop_device = loop_device
            if variant.disk_size is not None:
                self.disk_builder.grow_root_filesystem(variant.name, self.mount_point)

            self.customize_pre(variant, ctx)
            result.advance(VariantState.CUSTOMIZED)

            self.apply_packages(variant)
            self.apply_services(variant)
            result.advance(VariantState.PACKAGES_APPLIED)

            self.image_cleanup(variant)
            result.advance(VariantState.CLEANED)
        ctx.loop_device = None
        result.advance(VariantState.UNMOUNTED)

        final = self.session.workdir / variant.artifact_name(build_version)
        self.customize_post(variant, ctx, raw, final)
        result.advance(VariantState.CONVERTED)

        artifact = self.finalize(variant, final)
        log.info(f"{variant.name} written to {artifact.path}")
        return artifact

    def clone(self, variant: VariantSpec, base: DiskImage) -> Path:
        """Copy the base image to a private path, sharing blocks when possible."""
        target = self.session.workdir / f"{variant.name}-{uuid.uuid4().hex[:8]}.img"
        result = self.runner.run(
            ["cp", "--reflink=auto", "--sparse=always", "-a", base.path, target]
        )
        if not result.ok:
            raise CloneError(variant.name, f"copying {base.path} failed", result.describe())
        return target

    def customize_pre(self, variant: VariantSpec, ctx: HookContext) -> None:
        try:
            variant.pre(ctx)
        except Exception as error:
            raise CustomizationError(variant.name, str(error)) from error

    def apply_packages(self, variant: VariantSpec) -> None:
        """Install the variant's extra packages; no-op for an empty set."""
        if not variant.packages:
            return
        result = self.runner.chroot(
            self.mount_point,
            "/usr/bin/pacman",
            "-S",
            "--noconfirm",
            *sorted(variant.packages),
            capture_output=False,
        )
        if not result.ok:
            raise PackageApplyError(variant.name, "pacman failed", result.describe())

    def apply_services(self, variant: VariantSpec) -> None:
        """Enable the variant's services; no-op for an empty set."""
        if not variant.services:
            return
        result = self.runner.chroot(
            self.mount_point, "/usr/bin/systemctl", "enable", *sorted(variant.services)
        )
        if not result.ok:
            raise ServiceApplyError(variant.name, "systemctl enable failed", result.describe())

    def image_cleanup(self, variant: VariantSpec) -> None:
        """Generic cleanup every produced image gets before unmounting.

        - The pacman keyring is removed so each booted image initializes its
          own on first boot.
        - The fallback initramfs becomes the default one. The autodetect hook
          only keeps modules the build host needs, which may miss the disk
          driver of the eventual target (virtio-scsi vs virtio-blk).
        - os-release is synced and both filesystems trimmed to keep the sparse
          file small.
        """
        gnupg = self.mount_point / "etc" / "pacman.d" / "gnupg"
        try:
            shutil.rmtree(gnupg)
        except FileNotFoundError:
            pass
        except OSError as error:
            raise ImageCleanupError(variant.name, f"removing {gnupg} failed: {error}") from error

        for command in (
            [
                "cp",
                "--reflink=always",
                "-a",
                self.mount_point / FALLBACK_INITRAMFS,
                self.mount_point / INITRAMFS,
            ],
            ["sync", "-f", self.mount_point / "etc" / "os-release"],
            ["fstrim", "--verbose", self.mount_point],
            ["fstrim", "--verbose", self.mount_point / "efi"],
        ):
            result = self.runner.run(command)
            if not result.ok:
                raise ImageCleanupError(variant.name, f"{command[0]} failed", result.describe())

    def customize_post(
        self, variant: VariantSpec, ctx: HookContext, raw: Path, final: Path
    ) -> None:
        """Run the post hook turning ``raw`` into ``final``.

        Without a post hook the raw image itself is the artifact. When the hook
        fails the raw image is retained for diagnosis if keep_failed_images is set.
        """
        if variant.post is None:
            try:
                raw.rename(final)
            except OSError as error:
                raise self._conversion_failed(variant, raw, str(error)) from error
            return
        try:
            variant.post(ctx, raw, final)
        except Exception as error:
            raise self._conversion_failed(variant, raw, str(error)) from error
        if not final.exists():
            raise self._conversion_failed(variant, raw, f"post hook did not create {final}")

    def _conversion_failed(self, variant: VariantSpec, raw: Path, reason: str) -> ConversionError:
        kept = raw.exists() and self.session.settings.keep_failed_images
        if kept:
            self.session.retain(raw)
        return ConversionError(variant.name, reason, str(raw), kept=kept)

    def finalize(self, variant: VariantSpec, final: Path) -> BuildArtifact:
        """Checksum ``final`` and move it with its checksum file to the output."""
        result = self.runner.run(["sha256sum", final.name], cwd=final.parent)
        if not result.ok:
            raise FinalizeError(variant.name, "checksum failed", result.describe())
        checksum_line = result.stdout.strip()
        checksum_path = final.with_name(final.name + CHECKSUM_SUFFIX)

        output_dir = self.session.output_dir
        try:
            checksum_path.write_text(checksum_line + "\n", encoding="utf-8")
            chown_to_invoking_user(final, checksum_path)
            artifact_path = Path(shutil.move(str(final), str(output_dir / final.name)))
            moved_checksum = Path(
                shutil.move(str(checksum_path), str(output_dir / checksum_path.name))
            )
        except OSError as error:
            raise FinalizeError(
                variant.name, f"moving {final.name} to {output_dir} failed: {error}"
            ) from error

        return BuildArtifact(
            path=artifact_path,
            checksum=checksum_line.split()[0],
            checksum_path=moved_checksum,
        )
