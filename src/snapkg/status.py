"""
Upgrade status log.

The first line holds ``0 `` after a successful automatic upgrade and ``1 ``
after a failed one. Every attempt appends a timestamp line, so the file also
keeps the history of attempts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from common.exceptions import CorruptStateError
from utils.fileops import atomic_write_text

logger = logging.getLogger(__name__)

SUCCESS_MARK = "0"
FAILURE_MARK = "1"

# date(1) default output
TIMESTAMP_FORMAT = "%a %b %d %H:%M:%S %Z %Y"


@dataclass
class UpgradeStatus:
    succeeded: bool
    timestamp: str


def format_timestamp(when: Optional[datetime] = None) -> str:
    when = when or datetime.now().astimezone()
    return " ".join(when.strftime(TIMESTAMP_FORMAT).split())


class StatusLog:
    """Reads and writes the upgrade status file."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def _lines(self) -> List[str]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except (OSError, UnicodeDecodeError) as e:
            raise CorruptStateError(str(self.path), str(e), cause=e) from e
        return text.splitlines()

    def _parse_mark(self, line: str) -> bool:
        mark = line.strip()
        if mark == SUCCESS_MARK:
            return True
        if mark == FAILURE_MARK:
            return False
        raise CorruptStateError(str(self.path), f"unexpected status line {line!r}")

    def record(self, succeeded: bool, when: Optional[datetime] = None) -> UpgradeStatus:
        """Rewrite the status line and append a timestamp."""
        lines = self._lines()
        history = [line for line in lines[1:] if line.strip()]
        timestamp = format_timestamp(when)
        history.append(timestamp)

        mark = SUCCESS_MARK if succeeded else FAILURE_MARK
        atomic_write_text(self.path, "\n".join([f"{mark} "] + history) + "\n")
        logger.info(f"Recorded {'successful' if succeeded else 'failed'} upgrade at {timestamp}")
        return UpgradeStatus(succeeded=succeeded, timestamp=timestamp)

    def read(self) -> Optional[UpgradeStatus]:
        """
        Last recorded outcome.

        Returns:
            UpgradeStatus, or None if nothing was recorded yet.

        Raises:
            CorruptStateError: the status line is neither 0 nor 1
        """
        lines = self._lines()
        if not lines:
            return None
        succeeded = self._parse_mark(lines[0])
        history = [line for line in lines[1:] if line.strip()]
        return UpgradeStatus(succeeded=succeeded, timestamp=history[-1] if history else "")

    def history(self) -> List[str]:
        return [line for line in self._lines()[1:] if line.strip()]

    def describe(self) -> str:
        status = self.read()
        if status is None:
            return "No upgrade has been recorded yet."
        when = status.timestamp or "an unknown date"
        if status.succeeded:
            return f"Last update on {when} completed successfully."
        return f"Last update on {when} failed."
