"""
snapkg Utility Modules

File helpers for state files and package caches.
"""

from .fileops import (
    atomic_write_text,
    merge_tree,
    safe_backup,
)

__all__ = [
    "atomic_write_text",
    "merge_tree",
    "safe_backup",
]
