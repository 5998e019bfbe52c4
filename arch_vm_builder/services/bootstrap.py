"""Base system installation into the mounted base image."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Iterable

from arch_vm_builder.logging import LoggerFactory, operation_context
from arch_vm_builder.storage.exceptions import BootstrapError
from arch_vm_builder.storage.session import BuildSession


log = LoggerFactory.for_bootstrap()

PACMAN_CONF = """[options]
Architecture = auto

[core]
Include = mirrorlist

[extra]
Include = mirrorlist
"""


def render_mirrorlist(mirror_url: str) -> str:
    return f"Server = {mirror_url}\n"


class Bootstrapper:
    def __init__(self, session: BuildSession):
        self.session = session
        self.runner = session.runner

    def write_pacman_config(self, mirror_url: str) -> tuple[Path, Path]:
        """Write the throwaway pacman.conf and mirrorlist used by pacstrap."""
        config_dir = self.session.workdir
        pacman_conf = config_dir / "pacman.conf"
        mirrorlist = config_dir / "mirrorlist"
        pacman_conf.write_text(PACMAN_CONF, encoding="utf-8")
        mirrorlist.write_text(render_mirrorlist(mirror_url), encoding="utf-8")
        return pacman_conf, mirrorlist

    def bootstrap(self, mount_point: Path, mirror_url: str, packages: Iterable[str]) -> None:
        """Install ``packages`` into ``mount_point`` from ``mirror_url``.

        pacstrap runs with -c so the host package cache is used (and filled)
        instead of a cache inside the image; the mirrorlist is then copied into
        the image so the installed system can update itself.

        Raises:
            BootstrapError: If no packages are given, pacstrap fails or the
                mirrorlist cannot be installed
        """
        packages = list(packages)
        if not packages:
            raise BootstrapError("no base packages defined")

        with operation_context("bootstrap", mirror=mirror_url, packages=len(packages)):
            pacman_conf, mirrorlist = self.write_pacman_config(mirror_url)

            result = self.runner.run(
                ["pacstrap", "-c", "-C", pacman_conf, "-K", "-M", mount_point, *packages],
                capture_output=False,
            )
            if not result.ok:
                raise BootstrapError("pacstrap failed", result.describe())

            # pacstrap -K leaves a gpg-agent running on the image's keyring
            gnupg_home = mount_point / "etc" / "pacman.d" / "gnupg"
            result = self.runner.run(["gpgconf", "--homedir", gnupg_home, "--kill", "gpg-agent"])
            if not result.ok:
                log.warning(f"Could not stop gpg-agent: {result.describe()}")

            target = mount_point / "etc" / "pacman.d"
            try:
                target.mkdir(parents=True, exist_ok=True)
                shutil.copy(mirrorlist, target / "mirrorlist")
            except OSError as error:
                raise BootstrapError(
                    f"installing mirrorlist into {target} failed: {error}"
                ) from error
