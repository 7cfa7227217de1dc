"""
Command execution against a root filesystem.

Every package-manager and helper invocation goes through
``CommandExecutor.run`` so that callers (and tests) see one seam.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Union

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Outcome of one external command."""
    argv: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """stdout and stderr together, for pattern matching."""
        if self.stdout and self.stderr:
            return f"{self.stdout}\n{self.stderr}"
        return self.stdout or self.stderr


class CommandExecutor:
    """
    Runs programs, optionally chrooted into a snapshot or overlay.

    Commands block until the process exits; there is no timeout.
    """

    def command_line(self, root: Optional[Union[str, Path]], argv: Sequence[str]) -> List[str]:
        argv = [str(a) for a in argv]
        if root is None or str(root) == "/":
            return argv
        return ["chroot", str(root)] + argv

    def run(
        self,
        root: Optional[Union[str, Path]],
        argv: Sequence[str],
        capture: bool = True,
    ) -> CommandResult:
        """
        Run ``argv`` inside ``root``.

        Args:
            root: Root filesystem to chroot into (None or "/" for the host)
            argv: Program and arguments
            capture: Capture output; when False the command talks to the
                terminal directly (interactive package-manager prompts)

        Returns:
            CommandResult. A missing program yields returncode 127; bytes
            that do not decode are replaced rather than raising.
        """
        cmd = self.command_line(root, argv)
        logger.debug(f"Running: {shlex.join(cmd)}")

        try:
            result = subprocess.run(
                cmd,
                capture_output=capture,
                text=True,
                errors="replace",
            )
        except FileNotFoundError as e:
            logger.error(f"Command not found: {cmd[0]}")
            return CommandResult(argv=cmd, returncode=127, stderr=str(e))

        if result.returncode != 0:
            logger.debug(f"{cmd[0]} exited with {result.returncode}")

        return CommandResult(
            argv=cmd,
            returncode=result.returncode,
            stdout=result.stdout or "",
            stderr=result.stderr or "",
        )
