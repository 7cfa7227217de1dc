"""Per-snapshot description files shown by ``snapkg tree``."""

from __future__ import annotations

import logging
from pathlib import Path

from common.decorators import handle_errors
from utils.fileops import atomic_write_text

logger = logging.getLogger(__name__)


class DescriptionStore:
    """One ``<id>-desc`` file per snapshot under ``directory``."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def path_for(self, snapshot: str) -> Path:
        return self.directory / f"{snapshot}-desc"

    def write(self, snapshot: str, text: str) -> None:
        atomic_write_text(self.path_for(snapshot), text.strip() + "\n")

    # Display only: an unreadable description must not break tree output
    @handle_errors(OSError, UnicodeDecodeError, default="")
    def read(self, snapshot: str) -> str:
        path = self.path_for(snapshot)
        if not path.is_file():
            return ""
        lines = path.read_text(encoding="utf-8").splitlines()
        return lines[0].strip() if lines else ""

    def remove(self, snapshot: str) -> None:
        try:
            self.path_for(snapshot).unlink()
        except FileNotFoundError:
            pass
