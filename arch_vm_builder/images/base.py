"""Base definition shared by every image.

Supplies the packages pacstrap installs and the customization run once on the
bootstrapped base image, before any variant is cloned from it.
"""

from __future__ import annotations

from arch_vm_builder.domain.models import VariantSpec
from arch_vm_builder.services.hooks import HookContext


PACKAGES = (
    "base",
    "linux",
    "grub",
    "openssh",
    "sudo",
    "btrfs-progs",
    "dosfstools",
    "efibootmgr",
    "qemu-guest-agent",
)

SERVICES = (
    "sshd",
    "systemd-networkd",
    "systemd-resolved",
    "systemd-timesyncd",
    "systemd-time-wait-sync",
    "pacman-init.service",
    "qemu-guest-agent.service",
)

GRUB_DEFAULTS = "etc/default/grub"

DHCP_NETWORK = """[Match]
Name=en*
Name=eth*

[Link]
RequiredForOnline=routable

[Network]
DHCP=yes
"""

# The keyring is removed from every image; each machine creates its own
PACMAN_INIT_SERVICE = """[Unit]
Description=Initializes Pacman keyring
Before=sshd.service cloud-final.service archlinux-keyring-wkd-sync.service
After=time-sync.target
ConditionFirstBoot=yes

[Service]
Type=oneshot
RemainAfterExit=yes
ExecStart=/usr/bin/pacman-key --init
ExecStart=/usr/bin/pacman-key --populate

[Install]
WantedBy=multi-user.target
"""


def set_grub_option(ctx: HookContext, key: str, value: str) -> None:
    """Set ``key="value"`` in /etc/default/grub, replacing an existing line."""
    found = False

    def rewrite(line: str) -> str:
        nonlocal found
        if line.startswith(f"{key}="):
            found = True
            return f'{key}="{value}"\n'
        return line

    ctx.patch_file(GRUB_DEFAULTS, rewrite)
    if not found:
        ctx.append_file(GRUB_DEFAULTS, f'{key}="{value}"\n')


def pre(ctx: HookContext) -> None:
    fstab = ctx.run("genfstab", "-U", ctx.mount_point).stdout
    ctx.append_file("etc/fstab", fstab)

    ctx.chroot(
        "/usr/bin/systemd-firstboot",
        "--locale=C.UTF-8",
        "--timezone=UTC",
        "--hostname=archlinux",
        "--keymap=us",
    )
    resolv = ctx.path("etc/resolv.conf")
    resolv.unlink(missing_ok=True)
    resolv.symlink_to("/run/systemd/resolve/stub-resolv.conf")

    ctx.write_file("etc/systemd/network/80-dhcp.network", DHCP_NETWORK)
    ctx.write_file("etc/systemd/system/pacman-init.service", PACMAN_INIT_SERVICE)
    ctx.chroot("/usr/bin/systemctl", "enable", *SERVICES)

    ctx.chroot("/usr/bin/grub-install", "--target=i386-pc", ctx.loop_device)
    ctx.chroot(
        "/usr/bin/grub-install",
        "--target=x86_64-efi",
        "--efi-directory=/efi",
        "--removable",
    )
    set_grub_option(ctx, "GRUB_TIMEOUT", "1")
    set_grub_option(ctx, "GRUB_CMDLINE_LINUX", "net.ifnames=0")
    set_grub_option(ctx, "GRUB_CMDLINE_LINUX_DEFAULT", "rootflags=compress-force=zstd")
    ctx.chroot("/usr/bin/grub-mkconfig", "-o", "/boot/grub/grub.cfg")


VARIANT = VariantSpec(
    name="base",
    image_name="image.img",
    pre=pre,
    packages=frozenset(PACKAGES),
    description="Bootstrap package list and shared customization",
)
