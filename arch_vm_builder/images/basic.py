"""Basic image: a 40G disk with an ``arch`` user and passwordless sudo."""

from __future__ import annotations

from arch_vm_builder.domain.models import VariantSpec
from arch_vm_builder.services.hooks import HookContext, qcow2_convert


USER = "arch"


def pre(ctx: HookContext) -> None:
    ctx.chroot("/usr/bin/useradd", "-m", "-U", USER)
    ctx.chroot("/usr/bin/passwd", USER, input_text=f"{USER}\n{USER}\n")
    ctx.write_file(f"etc/sudoers.d/{USER}", f"{USER} ALL=(ALL) NOPASSWD: ALL\n", mode=0o440)


VARIANT = VariantSpec(
    name="basic",
    image_name="Arch-Linux-x86_64-basic-{build_version}.qcow2",
    pre=pre,
    post=qcow2_convert,
    disk_size="40G",
    description="Local VM image with user arch/arch",
)
