"""
Package-manager backends.

A backend only builds command lines; the engine runs them inside an overlay
through the CommandExecutor and decides what a non-zero exit means.
"""

from __future__ import annotations

import shlex
from typing import List, Pattern

from common.exceptions import InvalidConfigError

from .config import default_cache_dir
from .keyring import APT_MISSING_KEY, PACMAN_MISSING_KEY, MissingKey, find_missing_keys


class PackageBackend:
    """Command-line builder for one package manager."""

    name = ""
    missing_key_pattern: Pattern = APT_MISSING_KEY

    @property
    def cache_dir(self) -> str:
        """Package cache, relative to a root filesystem."""
        return default_cache_dir(self.name)

    def install_command(self, package: str, noconfirm: bool = False) -> List[str]:
        raise NotImplementedError

    def uninstall_command(self, package: str, noconfirm: bool = False) -> List[str]:
        raise NotImplementedError

    def refresh_command(self) -> List[str]:
        raise NotImplementedError

    def upgrade_command(self, noconfirm: bool = False) -> List[str]:
        raise NotImplementedError

    def list_command(self, explicit: bool = False) -> List[str]:
        raise NotImplementedError

    def import_key_commands(self, missing: MissingKey, keyserver: str) -> List[List[str]]:
        raise NotImplementedError

    def missing_keys(self, output: str) -> List[MissingKey]:
        return find_missing_keys(output, self.missing_key_pattern)

    def parse_package_list(self, output: str) -> List[str]:
        return sorted({line.strip() for line in output.splitlines() if line.strip()})


class AptBackend(PackageBackend):
    """Debian/Ubuntu apt-get."""

    name = "apt"
    missing_key_pattern = APT_MISSING_KEY

    def install_command(self, package, noconfirm=False):
        cmd = ["apt-get", "install", package]
        if noconfirm:
            cmd.append("-y")
        return cmd

    def uninstall_command(self, package, noconfirm=False):
        cmd = ["apt-get", "remove", package]
        if noconfirm:
            cmd.append("-y")
        return cmd

    def refresh_command(self):
        return ["apt-get", "update", "-y"]

    def upgrade_command(self, noconfirm=False):
        cmd = ["apt-get", "upgrade"]
        if noconfirm:
            cmd.append("-y")
        return cmd

    def list_command(self, explicit=False):
        if explicit:
            return ["apt-mark", "showmanual"]
        return ["dpkg-query", "-W", "-f=${Package}\\n"]

    def import_key_commands(self, missing, keyserver):
        keyring = f"/usr/share/keyrings/{missing.keyring_name}.gpg"
        return [
            ["gpg", "--keyserver", keyserver, "--recv-keys", missing.key],
            ["sh", "-c", f"gpg --export {shlex.quote(missing.key)} > {shlex.quote(keyring)}"],
        ]


class PacmanBackend(PackageBackend):
    """Arch Linux pacman."""

    name = "pacman"
    missing_key_pattern = PACMAN_MISSING_KEY

    def install_command(self, package, noconfirm=False):
        cmd = ["pacman", "-S", package, "--overwrite", "/var/*"]
        if noconfirm:
            cmd.append("--noconfirm")
        return cmd

    def uninstall_command(self, package, noconfirm=False):
        cmd = ["pacman", "-Rns", package]
        if noconfirm:
            cmd.append("--noconfirm")
        return cmd

    def refresh_command(self):
        return ["pacman", "-Syy"]

    def upgrade_command(self, noconfirm=False):
        cmd = ["pacman", "-Su"]
        if noconfirm:
            cmd.append("--noconfirm")
        return cmd

    def list_command(self, explicit=False):
        return ["pacman", "-Qqe"] if explicit else ["pacman", "-Qq"]

    def import_key_commands(self, missing, keyserver):
        return [
            ["pacman-key", "--keyserver", keyserver, "--recv-keys", missing.key],
            ["pacman-key", "--lsign-key", missing.key],
        ]


_BACKENDS = {
    "apt": AptBackend,
    "pacman": PacmanBackend,
}


def get_backend(name: str) -> PackageBackend:
    """Backend instance for a configured package manager name."""
    try:
        return _BACKENDS[name]()
    except KeyError:
        raise InvalidConfigError("package_manager", name, "unsupported package manager") from None
