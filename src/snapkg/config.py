"""
snapkg configuration.

Settings come from a JSON file (``/etc/snapkg/snapkg.json`` unless
``SNAPKG_CONFIG`` points elsewhere). The process-wide state a command needs,
such as the id of the running snapshot, is read once into an ``Environment``
that is passed to every component.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Optional

from common.exceptions import InvalidConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("/etc/snapkg/snapkg.json")
CONFIG_ENV_VAR = "SNAPKG_CONFIG"

BASE_SNAPSHOT = "0"
ROOT_NODE = "root"

SUPPORTED_PACKAGE_MANAGERS = ("apt", "pacman")


@dataclass
class Settings:
    """Paths and policy for one snapkg installation."""
    snapshots_root: Path = Path("/.snapshots")
    state_dir: Path = Path("/.snapshots/snapkg")
    tree_file: Optional[Path] = None
    status_file: Optional[Path] = None
    description_dir: Optional[Path] = None
    current_snapshot_file: Path = Path("/usr/share/snapkg/snap")
    # Relative to the snapshot (or overlay) root
    profile_path: Path = Path("etc/snapkg/profile")
    package_manager: str = "apt"
    shared_cache_dir: Optional[Path] = None
    lock_system_packages: bool = False
    keyserver: str = "hkp://keyserver.ubuntu.com:80"
    log_file: Optional[Path] = None

    def __post_init__(self):
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, str) and f.name.endswith(("_root", "_dir", "_file", "_path")):
                setattr(self, f.name, Path(value))

        if self.package_manager not in SUPPORTED_PACKAGE_MANAGERS:
            raise InvalidConfigError(
                "package_manager",
                self.package_manager,
                f"expected one of {', '.join(SUPPORTED_PACKAGE_MANAGERS)}",
            )
        if self.profile_path.is_absolute():
            raise InvalidConfigError(
                "profile_path", self.profile_path, "must be relative to the snapshot root"
            )

        if self.tree_file is None:
            self.tree_file = self.state_dir / "fstree"
        if self.status_file is None:
            self.status_file = self.state_dir / "upstate"
        if self.description_dir is None:
            self.description_dir = self.state_dir / "snapshots"
        if self.shared_cache_dir is None:
            self.shared_cache_dir = Path("/") / default_cache_dir(self.package_manager)

    @property
    def rootfs_dir(self) -> Path:
        return self.snapshots_root / "rootfs"

    @classmethod
    def from_dict(cls, data: dict) -> "Settings":
        known = {f.name for f in fields(cls)}
        for key in data:
            if key not in known:
                raise InvalidConfigError(key, data[key], "unknown setting")
        return cls(**data)

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "Settings":
        """
        Load settings from JSON.

        Args:
            path: Config file; defaults to $SNAPKG_CONFIG or /etc/snapkg/snapkg.json

        Returns:
            Settings, with defaults when no file exists.
        """
        if path is None:
            path = Path(os.environ.get(CONFIG_ENV_VAR, DEFAULT_CONFIG_PATH))
        path = Path(path)

        if not path.exists():
            logger.debug(f"No config at {path}, using defaults")
            return cls()

        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise InvalidConfigError(str(path), "<file>", f"not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise InvalidConfigError(str(path), type(data).__name__, "expected a JSON object")

        logger.debug(f"Loaded config from {path}")
        return cls.from_dict(data)


def default_cache_dir(package_manager: str) -> str:
    """Package cache location inside a root filesystem."""
    return {
        "apt": "var/cache/apt/archives",
        "pacman": "var/cache/pacman/pkg",
    }[package_manager]


@dataclass
class Environment:
    """
    Process-wide context, resolved once at startup.

    Attributes:
        settings: Loaded settings
        current_snapshot: Id of the booted snapshot, or None when unknown
        locked: Whether system packages are protected from removal
    """
    settings: Settings = field(default_factory=Settings)
    current_snapshot: Optional[str] = None
    locked: bool = False

    @classmethod
    def load(cls, settings: Optional[Settings] = None) -> "Environment":
        settings = settings or Settings.load()
        return cls(
            settings=settings,
            current_snapshot=read_current_snapshot(settings.current_snapshot_file),
            locked=settings.lock_system_packages,
        )

    def with_current(self, snapshot: Optional[str]) -> "Environment":
        return replace(self, current_snapshot=snapshot)


def read_current_snapshot(path: Path) -> Optional[str]:
    """Read the booted snapshot id; None if the marker file is missing."""
    try:
        value = Path(path).read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        logger.debug(f"Current snapshot marker {path} not found")
        return None
    return value or None
