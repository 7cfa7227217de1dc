"""
File operations for snapkg state files and package caches.

State files (tree, manifests, status log) are replaced with a
write-to-temp-then-rename so readers never observe a half-written file.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Union

logger = logging.getLogger(__name__)


def atomic_write_text(path: Union[str, Path], content: str, mode: int = 0o644) -> None:
    """
    Replace ``path`` with ``content`` atomically.

    The temp file is created next to the destination so that the final
    ``os.replace`` stays on one filesystem.

    Args:
        path: Destination file path
        content: Text content to write
        mode: File permissions (default 0o644)
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, temp_path = tempfile.mkstemp(
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(temp_path, mode)
        os.replace(temp_path, path)
    except BaseException:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise

    _fsync_dir(path.parent)


def _fsync_dir(directory: Path) -> None:
    try:
        dir_fd = os.open(str(directory), os.O_RDONLY | os.O_DIRECTORY)
    except (OSError, AttributeError):
        # O_DIRECTORY is POSIX only
        return
    try:
        os.fsync(dir_fd)
    except OSError:
        pass
    finally:
        os.close(dir_fd)


def safe_backup(path: Union[str, Path], backup_suffix: str = ".bak") -> Path:
    """
    Copy ``path`` aside before it is rewritten.

    Returns:
        Path to the backup file (which may not exist if ``path`` did not)
    """
    path = Path(path)
    backup_path = path.with_name(path.name + backup_suffix)
    if path.exists():
        shutil.copy2(path, backup_path)
    return backup_path


def merge_tree(src: Union[str, Path], dst: Union[str, Path]) -> int:
    """
    Copy every file under ``src`` into ``dst`` without overwriting.

    Entries that already exist in ``dst`` are left alone, so two snapshots
    that downloaded the same package file can both merge into one cache.

    Returns:
        Number of files copied
    """
    src = Path(src)
    dst = Path(dst)
    if not src.is_dir():
        logger.debug(f"No cache to merge at {src}")
        return 0

    copied = 0
    for dirpath, _dirnames, filenames in os.walk(src):
        rel = Path(dirpath).relative_to(src)
        target_dir = dst / rel
        target_dir.mkdir(parents=True, exist_ok=True)
        for name in filenames:
            target = target_dir / name
            if target.exists() or target.is_symlink():
                continue
            shutil.copy2(Path(dirpath) / name, target, follow_symlinks=False)
            copied += 1

    logger.debug(f"Merged {copied} cache entries from {src} into {dst}")
    return copied
