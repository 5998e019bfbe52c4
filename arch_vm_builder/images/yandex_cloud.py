"""Yandex Cloud image: cloud-init over the EC2-compatible metadata service."""

from __future__ import annotations

from arch_vm_builder.domain.models import VariantSpec
from arch_vm_builder.images.base import set_grub_option
from arch_vm_builder.services.hooks import HookContext, qcow2_convert


# growpart needs cloud-guest-utils, cloud-init's disk setup needs sgdisk
PACKAGES = ("cloud-init", "cloud-guest-utils", "gptfdisk")

SERVICES = (
    "cloud-init-main.service",
    "cloud-init-local.service",
    "cloud-init-network.service",
    "cloud-config.service",
    "cloud-final.service",
)

DATASOURCE_CFG = """datasource_list: [ Ec2 ]
datasource:
  Ec2:
    strict_id: false
"""

# cloud-init 25.1.4 no longer enables itself without an explicit policy
DS_IDENTIFY_CFG = "policy: search,found=all,maybe=all,notfound=disabled\n"

SERIAL_CONSOLE = "console=tty0 console=ttyS0,115200"


def pre(ctx: HookContext) -> None:
    ctx.write_file("etc/cloud/cloud.cfg.d/90_datasource.cfg", DATASOURCE_CFG)
    ctx.write_file("etc/cloud/ds-identify.cfg", DS_IDENTIFY_CFG)

    cmdline = _current_default_cmdline(ctx)
    set_grub_option(ctx, "GRUB_CMDLINE_LINUX_DEFAULT", f"{cmdline} {SERIAL_CONSOLE}".strip())
    ctx.append_file(
        "etc/default/grub",
        'GRUB_TERMINAL="serial console"\nGRUB_SERIAL_COMMAND="serial --speed=115200"\n',
    )
    ctx.chroot("/usr/bin/grub-mkconfig", "-o", "/boot/grub/grub.cfg")


def _current_default_cmdline(ctx: HookContext) -> str:
    grub = ctx.path("etc/default/grub")
    for line in grub.read_text(encoding="utf-8").splitlines():
        if line.startswith("GRUB_CMDLINE_LINUX_DEFAULT="):
            return line.split("=", 1)[1].strip().strip('"')
    return ""


VARIANT = VariantSpec(
    name="yandex-cloud-image",
    image_name="Arch-Linux-x86_64-yandex-cloudimg-{build_version}.qcow2",
    pre=pre,
    post=qcow2_convert,
    packages=frozenset(PACKAGES),
    services=frozenset(SERVICES),
    description="Yandex Cloud image with cloud-init (Ec2 datasource)",
)
