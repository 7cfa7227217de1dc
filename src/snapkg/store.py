"""
Snapshot store.

``SnapshotStore`` is the boundary between snapkg and the copy-on-write
filesystem that actually holds snapshots. ``BtrfsSnapshotStore`` keeps every
snapshot as a btrfs subvolume ``<snapshots_root>/rootfs/snapshot-<id>`` and
the working copy of a transaction as ``snapshot-chr<id>``.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

from common.exceptions import OperationFailedError, SnapshotNotFoundError
from utils.fileops import merge_tree

from .config import Settings
from .executor import CommandExecutor
from .tree import id_sort_key

logger = logging.getLogger(__name__)

OVERLAY_PREFIX = "chr"

# Commit swaps a staged copy in by rename; these never count as snapshots
STAGED_SUFFIX = ".new"
RETIRED_SUFFIX = ".old"

_SNAPSHOT_DIR = re.compile(r"^snapshot-(\d+)$")

# Host paths bound into an overlay so package scripts can run in the chroot
CHROOT_MOUNTS = [
    ("--rbind", "/dev", "dev"),
    ("--rbind", "/proc", "proc"),
    ("--rbind", "/sys", "sys"),
    ("--rbind", "/run", "run"),
    ("--bind", "/etc/resolv.conf", "etc/resolv.conf"),
]


def overlay_id(snapshot: str) -> str:
    """Working id of the overlay for ``snapshot``."""
    return f"{OVERLAY_PREFIX}{snapshot}"


class SnapshotStore(ABC):
    """Where snapshots and their overlays live."""

    @abstractmethod
    def snapshot_path(self, snapshot: str) -> Path:
        ...

    def overlay_path(self, snapshot: str) -> Path:
        return self.snapshot_path(overlay_id(snapshot))

    def exists(self, snapshot: str) -> bool:
        return self.snapshot_path(str(snapshot)).is_dir()

    def overlay_exists(self, snapshot: str) -> bool:
        return self.overlay_path(str(snapshot)).is_dir()

    @abstractmethod
    def ids(self) -> List[str]:
        """Ids of every snapshot present, overlays excluded."""

    def next_id(self) -> str:
        numeric = [int(i) for i in self.ids() if i.isdigit()]
        return str(max(numeric, default=0) + 1)

    @abstractmethod
    def branch(self, parent: str) -> str:
        """Create a read-only copy of ``parent`` under a new id and return it."""

    @abstractmethod
    def create_overlay(self, snapshot: str) -> Path:
        """Create the writable working copy of ``snapshot``."""

    @abstractmethod
    def commit_overlay(self, tmp: str, target: str) -> None:
        """
        Replace ``target`` with the overlay ``tmp`` and drop the overlay.

        If this raises, ``target`` still holds its previous contents.
        """

    @abstractmethod
    def discard_overlay(self, tmp: str) -> None:
        """Drop the overlay ``tmp``. A missing overlay is not an error."""

    @abstractmethod
    def delete(self, snapshot: str) -> None:
        ...

    @abstractmethod
    def set_mutable(self, snapshot: str, mutable: bool) -> None:
        ...

    @abstractmethod
    def is_mutable(self, snapshot: str) -> bool:
        ...

    def merge_cache(self, src: Path, dst: Path) -> None:
        """Copy package cache entries missing from ``dst`` out of ``src``."""
        merge_tree(src, dst)


class BtrfsSnapshotStore(SnapshotStore):
    """Snapshots as btrfs subvolumes, driven through the ``btrfs`` tool."""

    def __init__(self, settings: Settings, executor: Optional[CommandExecutor] = None):
        self.settings = settings
        self.executor = executor or CommandExecutor()

    @property
    def rootfs_dir(self) -> Path:
        return self.settings.rootfs_dir

    def snapshot_path(self, snapshot: str) -> Path:
        return self.rootfs_dir / f"snapshot-{snapshot}"

    def ids(self) -> List[str]:
        if not self.rootfs_dir.is_dir():
            return []
        found = []
        for entry in self.rootfs_dir.iterdir():
            match = _SNAPSHOT_DIR.match(entry.name)
            if match and entry.is_dir():
                found.append(match.group(1))
        return sorted(found, key=id_sort_key)

    def _host(self, operation: str, snapshot: str, argv: List[str]) -> None:
        result = self.executor.run(None, argv)
        if not result.ok:
            raise OperationFailedError(
                operation,
                snapshot,
                returncode=result.returncode,
                output=result.output,
            )

    def _btrfs(self, operation: str, snapshot: str, *args: str) -> None:
        self._host(operation, snapshot, ["btrfs", *args])

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def branch(self, parent: str) -> str:
        if not self.exists(parent):
            raise SnapshotNotFoundError(parent, "branch")
        new_id = self.next_id()
        self._btrfs(
            "create snapshot", new_id,
            "subvolume", "snapshot", "-r",
            str(self.snapshot_path(parent)), str(self.snapshot_path(new_id)),
        )
        logger.info(f"Created snapshot {new_id} from {parent}")
        return new_id

    def delete(self, snapshot: str) -> None:
        path = self.snapshot_path(snapshot)
        if not path.is_dir():
            raise SnapshotNotFoundError(snapshot, "delete snapshot")
        self._btrfs("delete snapshot", snapshot, "subvolume", "delete", str(path))
        logger.info(f"Deleted snapshot {snapshot}")

    def is_mutable(self, snapshot: str) -> bool:
        result = self.executor.run(
            None, ["btrfs", "property", "get", "-ts", str(self.snapshot_path(snapshot)), "ro"]
        )
        if not result.ok:
            raise OperationFailedError(
                "read mutability", snapshot, returncode=result.returncode, output=result.output
            )
        return result.stdout.strip() == "ro=false"

    def set_mutable(self, snapshot: str, mutable: bool) -> None:
        self._btrfs(
            "change mutability", snapshot,
            "property", "set", "-ts", str(self.snapshot_path(snapshot)),
            "ro", "false" if mutable else "true",
        )
        logger.debug(f"Snapshot {snapshot} is now {'mutable' if mutable else 'immutable'}")

    def merge_cache(self, src: Path, dst: Path) -> None:
        """Reflink-copy new cache entries; files already in ``dst`` are kept."""
        if not Path(src).is_dir():
            logger.debug(f"No cache to merge at {src}")
            return
        Path(dst).mkdir(parents=True, exist_ok=True)
        result = self.executor.run(
            None, ["cp", "-n", "-r", "--reflink=auto", f"{src}/.", str(dst)]
        )
        # Some coreutils releases exit 1 whenever -n skips an existing file
        if not result.ok:
            logger.warning(f"Package cache merge from {src} incomplete: {result.output.strip()}")

    # ------------------------------------------------------------------
    # Overlays
    # ------------------------------------------------------------------

    def create_overlay(self, snapshot: str) -> Path:
        tmp = overlay_id(snapshot)
        path = self.snapshot_path(tmp)
        self._btrfs(
            "create overlay", snapshot,
            "subvolume", "snapshot", str(self.snapshot_path(snapshot)), str(path),
        )
        try:
            self._mount(snapshot, path)
        except OperationFailedError:
            self.discard_overlay(tmp)
            raise
        return path

    def _mount(self, snapshot: str, path: Path) -> None:
        # Package managers expect the chroot to be a mount point
        self._host("mount overlay", snapshot, ["mount", "--bind", str(path), str(path)])
        for flag, source, target in CHROOT_MOUNTS:
            if Path(source).exists():
                self._host("mount overlay", snapshot, ["mount", flag, source, str(path / target)])

    def _unmount(self, path: Path) -> None:
        result = self.executor.run(None, ["umount", "--recursive", str(path)])
        if not result.ok:
            logger.debug(f"Nothing mounted at {path}")

    def _move(self, target: str, source: Path, destination: Path) -> None:
        self._host("commit overlay", target, ["mv", "-T", str(source), str(destination)])

    def commit_overlay(self, tmp: str, target: str) -> None:
        """
        Replace ``target`` with the overlay ``tmp``.

        The overlay is first copied to ``snapshot-<id>.new``. The old
        subvolume is then renamed aside, the new one renamed into place, and
        only then is the old one deleted. A failure before that last delete
        leaves ``target`` with its previous contents.
        """
        overlay = self.snapshot_path(tmp)
        current = self.snapshot_path(target)
        staged = self.snapshot_path(f"{target}{STAGED_SUFFIX}")
        retired = self.snapshot_path(f"{target}{RETIRED_SUFFIX}")

        self._unmount(overlay)
        for leftover in (staged, retired):
            if leftover.is_dir():
                logger.warning(f"Removing {leftover.name} left by an interrupted commit")
                self._btrfs("commit overlay", target, "subvolume", "delete", str(leftover))

        self._btrfs("commit overlay", target, "subvolume", "snapshot", str(overlay), str(staged))
        try:
            self._move(target, current, retired)
        except OperationFailedError:
            self._btrfs("commit overlay", target, "subvolume", "delete", str(staged))
            raise
        try:
            self._move(target, staged, current)
        except OperationFailedError:
            self._move(target, retired, current)
            self._btrfs("commit overlay", target, "subvolume", "delete", str(staged))
            raise

        logger.info(f"Committed {tmp} into snapshot {target}")

        # The new contents are in place from here on; cleanup failures only leave debris
        try:
            self._btrfs("commit overlay", target, "subvolume", "delete", str(retired))
        except OperationFailedError as e:
            logger.warning(f"Could not remove {retired.name}, next commit retries: {e.message}")
        try:
            self.discard_overlay(tmp)
        except OperationFailedError as e:
            logger.warning(f"Overlay {tmp} left behind, run 'snapkg unlock {target}': {e.message}")

    def discard_overlay(self, tmp: str) -> None:
        overlay = self.snapshot_path(tmp)
        if not overlay.is_dir():
            return
        self._unmount(overlay)
        self._btrfs("discard overlay", tmp, "subvolume", "delete", str(overlay))
        logger.debug(f"Discarded overlay {tmp}")
