"""
Signing-key discovery for package database repair.

Package managers report unknown signing keys in their refresh output; this
module extracts them so the engine can import each key and retry once.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Pattern, Union
from urllib.parse import urlparse

# W: GPG error: http://deb.example.org stable InRelease: ... NO_PUBKEY 0E98404D386FA1D9
APT_MISSING_KEY = re.compile(r"NO_PUBKEY\s+([0-9A-Fa-f]{8,40})\b")
# error: key "4AA4767BBC9C4B1D18AE28B77F2D434B9741E8AC" is unknown
PACMAN_MISSING_KEY = re.compile(r'key "([0-9A-Fa-f]{8,40})" is unknown')

_GPG_ERROR_SOURCE = re.compile(r"GPG error:\s+(\S+)")
_KEYRING_NAME = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class MissingKey:
    """A signing key the package manager could not verify against."""
    key: str
    repo: str = "unknown"

    @property
    def keyring_name(self) -> str:
        """File-system safe keyring file stem for this repository."""
        return _KEYRING_NAME.sub("-", self.repo).strip("-") or "unknown"


def _repo_from_line(line: str) -> str:
    match = _GPG_ERROR_SOURCE.search(line)
    if not match:
        return "unknown"
    source = match.group(1)
    host = urlparse(source).hostname
    return host or source


def find_missing_keys(output: str, pattern: Union[str, Pattern] = APT_MISSING_KEY) -> List[MissingKey]:
    """
    Collect missing signing keys from package-manager output.

    Args:
        output: Captured stdout/stderr of an index refresh
        pattern: Regex whose first group is the key id

    Returns:
        Missing keys in order of first appearance, without duplicates.
    """
    if isinstance(pattern, str):
        pattern = re.compile(pattern)

    seen = set()
    keys: List[MissingKey] = []
    for line in output.splitlines():
        for match in pattern.finditer(line):
            key = match.group(1).upper()
            if key in seen:
                continue
            seen.add(key)
            keys.append(MissingKey(key=key, repo=_repo_from_line(line)))
    return keys
