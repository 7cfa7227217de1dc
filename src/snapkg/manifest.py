"""
Profile manifest.

Each snapshot carries an INI file listing the packages that came with the
base image (``system-packages``) and the packages a user asked for
(``profile-packages``). A package lives in at most one of the two sections.
The file is always rewritten whole, with both sections sorted, so that
manifests diff cleanly between snapshots.
"""

from __future__ import annotations

import configparser
import logging
import re
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple, Union

from common.exceptions import CorruptStateError
from utils.fileops import atomic_write_text

from .templates import get_template_loader

logger = logging.getLogger(__name__)

SYSTEM_PACKAGES = "system-packages"
PROFILE_PACKAGES = "profile-packages"
UNINSTALL_COMMANDS = "uninstall-commands"

TEMPLATE_NAME = "profile.ini.j2"

_SECTION_HEADER = re.compile(r"^\[(?P<name>[^\]]+)\]$")

_SET_ALIASES = {
    "system": SYSTEM_PACKAGES,
    SYSTEM_PACKAGES: SYSTEM_PACKAGES,
    "profile": PROFILE_PACKAGES,
    PROFILE_PACKAGES: PROFILE_PACKAGES,
}


def _set_name(name: str) -> str:
    try:
        return _SET_ALIASES[name]
    except KeyError:
        raise ValueError(f"Unknown package set: {name!r}") from None


def _new_parser() -> configparser.ConfigParser:
    parser = configparser.ConfigParser(
        allow_no_value=True,
        delimiters=("=",),
        comment_prefixes=("#",),
        interpolation=None,
        strict=False,
    )
    # Package names are case sensitive
    parser.optionxform = str
    return parser


def _split_commands(text: str) -> Tuple[str, List[str]]:
    """
    Take the ``[uninstall-commands]`` section out of manifest text.

    Its lines are shell commands and may contain ``=``, ``[`` or leading
    words that configparser would mangle, so they are kept verbatim.

    Returns:
        (text without that section, commands in file order)
    """
    kept: List[str] = []
    commands: List[str] = []
    in_commands = False
    for line in text.splitlines():
        stripped = line.strip()
        header = _SECTION_HEADER.match(stripped)
        if header:
            in_commands = header.group("name").strip() == UNINSTALL_COMMANDS
            if in_commands:
                continue
        if not in_commands:
            kept.append(line)
        elif stripped and not stripped.startswith("#"):
            commands.append(stripped)
    return "\n".join(kept) + "\n", commands


class ProfileManifest:
    """
    System and user package sets of one snapshot.

    Example:
        manifest = ProfileManifest.load(overlay / "etc/snapkg/profile")
        if not manifest.is_system_package("vim"):
            manifest.add("profile", "vim")
        manifest.save()
    """

    def __init__(
        self,
        path: Optional[Union[str, Path]] = None,
        system_packages: Iterable[str] = (),
        profile_packages: Iterable[str] = (),
        uninstall_commands: Iterable[str] = (),
        locked: bool = False,
    ):
        self.path = Path(path) if path else None
        self.locked = locked
        self._sets: Dict[str, Set[str]] = {SYSTEM_PACKAGES: set(), PROFILE_PACKAGES: set()}
        self._uninstall_commands: List[str] = list(uninstall_commands)
        for pkg in system_packages:
            self.add(SYSTEM_PACKAGES, pkg)
        for pkg in profile_packages:
            self.add(PROFILE_PACKAGES, pkg)

    def __repr__(self) -> str:
        return (
            f"ProfileManifest(system={len(self._sets[SYSTEM_PACKAGES])}, "
            f"profile={len(self._sets[PROFILE_PACKAGES])}, locked={self.locked})"
        )

    # ------------------------------------------------------------------
    # Set operations
    # ------------------------------------------------------------------

    def add(self, set_name: str, package: str) -> bool:
        """
        Add ``package`` to a set.

        A system package is never duplicated into the profile set; adding a
        package to the system set moves it out of the profile set.

        Returns:
            True if the manifest changed.
        """
        set_name = _set_name(set_name)
        package = package.strip()
        if not package:
            raise ValueError("Package name must not be empty")

        if set_name == PROFILE_PACKAGES:
            if package in self._sets[SYSTEM_PACKAGES] or package in self._sets[PROFILE_PACKAGES]:
                return False
        else:
            if package in self._sets[SYSTEM_PACKAGES]:
                return False
            self._sets[PROFILE_PACKAGES].discard(package)

        self._sets[set_name].add(package)
        return True

    def remove(self, set_name: str, package: str) -> bool:
        """Remove ``package`` from one set. Returns True if it was there."""
        set_name = _set_name(set_name)
        if package in self._sets[set_name]:
            self._sets[set_name].remove(package)
            return True
        return False

    def discard(self, package: str) -> Optional[str]:
        """Remove ``package`` from whichever set holds it; returns that set's name."""
        for set_name in (PROFILE_PACKAGES, SYSTEM_PACKAGES):
            if self.remove(set_name, package):
                return set_name
        return None

    def contains(self, set_name: str, package: str) -> bool:
        return package in self._sets[_set_name(set_name)]

    def is_system_package(self, package: str) -> bool:
        return package in self._sets[SYSTEM_PACKAGES]

    def is_locked(self) -> bool:
        return self.locked

    def packages(self, set_name: str) -> List[str]:
        return sorted(self._sets[_set_name(set_name)])

    @property
    def system_packages(self) -> List[str]:
        return self.packages(SYSTEM_PACKAGES)

    @property
    def profile_packages(self) -> List[str]:
        return self.packages(PROFILE_PACKAGES)

    def uninstall_commands(self) -> List[str]:
        return list(self._uninstall_commands)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def render(self) -> str:
        return get_template_loader().render(
            TEMPLATE_NAME,
            system_packages=self.system_packages,
            profile_packages=self.profile_packages,
            uninstall_commands=self._uninstall_commands,
        )

    def save(self, path: Optional[Union[str, Path]] = None) -> Path:
        """Rewrite the whole manifest file."""
        target = Path(path) if path else self.path
        if target is None:
            raise ValueError("No path given for manifest")
        atomic_write_text(target, self.render())
        self.path = target
        return target

    @classmethod
    def load(cls, path: Union[str, Path], locked: bool = False) -> "ProfileManifest":
        """
        Read a manifest file.

        Raises:
            CorruptStateError: unreadable file or a missing package section
        """
        path = Path(path)
        parser = _new_parser()
        try:
            text, commands = _split_commands(path.read_text(encoding="utf-8"))
            parser.read_string(text, source=str(path))
        except (OSError, UnicodeDecodeError, configparser.Error) as e:
            raise CorruptStateError(str(path), f"cannot parse profile: {e}", cause=e) from e

        for section in (SYSTEM_PACKAGES, PROFILE_PACKAGES):
            if not parser.has_section(section):
                raise CorruptStateError(str(path), f"missing [{section}] section")

        system = list(parser.options(SYSTEM_PACKAGES))
        profile = list(parser.options(PROFILE_PACKAGES))
        duplicated = set(system) & set(profile)
        if duplicated:
            logger.warning(
                f"{path}: {', '.join(sorted(duplicated))} listed as both system and "
                "profile packages, keeping them as system packages"
            )

        return cls(
            path=path,
            system_packages=system,
            profile_packages=profile,
            uninstall_commands=commands,
            locked=locked,
        )

    @classmethod
    def create(
        cls,
        path: Union[str, Path],
        system_packages: Iterable[str] = (),
        locked: bool = False,
    ) -> "ProfileManifest":
        """Write a fresh manifest listing ``system_packages``."""
        manifest = cls(path=path, system_packages=system_packages, locked=locked)
        manifest.save()
        logger.info(f"Created profile manifest at {path}")
        return manifest
