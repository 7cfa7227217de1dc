"""
Snapshot lineage tree.

Records which snapshot was branched from which. Nodes are keyed by exact id;
children are kept in a reverse index updated on every insert and removal.

The file format is one line holding a nested ``{"name": ..., "children":
[...]}`` record with leaves omitting ``children``. Files written by older
tooling as a Python literal (single quotes, integer names) still load.
"""

from __future__ import annotations

import ast
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Set, Union

from common.exceptions import (
    CorruptStateError,
    DuplicateIdError,
    HasChildrenError,
    ProtectedSnapshotError,
    UnknownIdError,
    UnknownParentError,
)
from utils.fileops import atomic_write_text, safe_backup

from .config import BASE_SNAPSHOT, ROOT_NODE

logger = logging.getLogger(__name__)

SnapshotId = Union[str, int]

PROTECTED_IDS = (ROOT_NODE, BASE_SNAPSHOT)


def id_sort_key(snapshot: str):
    """Numeric ids in numeric order, anything else after them."""
    return (0, int(snapshot), "") if snapshot.isdigit() else (1, 0, snapshot)


@dataclass(frozen=True)
class SnapshotNode:
    """One tree entry. ``parent`` is None only for the synthetic root."""
    id: str
    parent: Optional[str]


class SnapshotTree:
    """
    In-memory lineage forest under the synthetic ``root`` node.

    Example:
        tree = SnapshotTree()          # root -> 0
        tree.insert("1", "root")
        tree.insert("2", "1")
        list(tree.preorder_from("1"))  # ["1", "2"]
    """

    def __init__(self, include_base: bool = True):
        self._nodes: Dict[str, SnapshotNode] = {ROOT_NODE: SnapshotNode(ROOT_NODE, None)}
        self._children: Dict[str, Set[str]] = {ROOT_NODE: set()}
        if include_base:
            self.insert(BASE_SNAPSHOT, ROOT_NODE)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def __contains__(self, snapshot) -> bool:
        return str(snapshot) in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[SnapshotNode]:
        return iter(self._nodes.values())

    def __eq__(self, other) -> bool:
        if not isinstance(other, SnapshotTree):
            return NotImplemented
        return self._nodes == other._nodes

    def __repr__(self) -> str:
        return f"SnapshotTree({len(self._nodes) - 1} snapshots)"

    def ids(self) -> List[str]:
        """Every real snapshot id (excluding ``root``), naturally sorted."""
        return sorted((i for i in self._nodes if i != ROOT_NODE), key=id_sort_key)

    def _require(self, snapshot: SnapshotId) -> str:
        snapshot = str(snapshot)
        if snapshot not in self._nodes:
            raise UnknownIdError(snapshot)
        return snapshot

    def parent_of(self, snapshot: SnapshotId) -> Optional[str]:
        """Parent id; None only for ``root``."""
        return self._nodes[self._require(snapshot)].parent

    def children_of(self, snapshot: SnapshotId) -> Set[str]:
        """Direct children (a copy)."""
        return set(self._children[self._require(snapshot)])

    def ancestors_of(self, snapshot: SnapshotId) -> List[str]:
        """Ids from ``snapshot`` up to and including ``root``."""
        current: Optional[str] = self._require(snapshot)
        chain = []
        while current is not None:
            chain.append(current)
            current = self._nodes[current].parent
        return chain

    def preorder_from(self, snapshot: SnapshotId) -> Iterator[str]:
        """Lazily yield ``snapshot`` and then all of its descendants, depth first."""
        start = self._require(snapshot)
        stack = [start]
        while stack:
            current = stack.pop()
            yield current
            stack.extend(sorted(self._children[current], key=id_sort_key, reverse=True))

    def descendants_of(self, snapshot: SnapshotId) -> List[str]:
        return list(self.preorder_from(snapshot))[1:]

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def insert(self, snapshot: SnapshotId, parent: SnapshotId) -> None:
        """Add ``snapshot`` as a new leaf under ``parent``."""
        snapshot, parent = str(snapshot), str(parent)
        if snapshot in self._nodes:
            raise DuplicateIdError(snapshot)
        if parent not in self._nodes:
            raise UnknownParentError(parent, snapshot)

        self._nodes[snapshot] = SnapshotNode(snapshot, parent)
        self._children[snapshot] = set()
        self._children[parent].add(snapshot)
        logger.debug(f"Tree: added {snapshot} under {parent}")

    def remove(self, snapshot: SnapshotId) -> None:
        """
        Detach a leaf.

        Raises:
            ProtectedSnapshotError: for ``root`` and the base snapshot
            UnknownIdError: if the id is absent
            HasChildrenError: if the node still has children (see ``prune``)
        """
        snapshot = str(snapshot)
        if snapshot in PROTECTED_IDS:
            raise ProtectedSnapshotError(snapshot, "cannot be removed from the tree")
        self._require(snapshot)
        if self._children[snapshot]:
            raise HasChildrenError(snapshot, self._children[snapshot])
        self._detach(snapshot)

    def prune(self, snapshot: SnapshotId) -> List[str]:
        """
        Remove ``snapshot`` together with its whole subtree.

        Returns:
            Removed ids, children before their parents.
        """
        snapshot = str(snapshot)
        if snapshot in PROTECTED_IDS:
            raise ProtectedSnapshotError(snapshot, "cannot be removed from the tree")
        removed = list(reversed(list(self.preorder_from(snapshot))))
        for node in removed:
            self._detach(node)
        return removed

    def _detach(self, snapshot: str) -> None:
        parent = self._nodes.pop(snapshot).parent
        self._children.pop(snapshot, None)
        if parent is not None:
            self._children[parent].discard(snapshot)
        logger.debug(f"Tree: removed {snapshot}")

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self, snapshot: str = ROOT_NODE) -> dict:
        """Nested record rooted at ``snapshot``; leaves have no ``children``."""
        record: dict = {"name": snapshot}
        children = sorted(self._children[snapshot], key=id_sort_key)
        if children:
            record["children"] = [self.to_dict(child) for child in children]
        return record

    @classmethod
    def from_dict(cls, data: dict) -> "SnapshotTree":
        """
        Rebuild a tree from a nested record.

        Raises:
            ValueError: if the record is not a well-formed tree rooted at ``root``
        """
        if not isinstance(data, dict) or str(data.get("name")) != ROOT_NODE:
            raise ValueError("top-level node must be 'root'")

        tree = cls(include_base=False)
        stack = [(ROOT_NODE, data.get("children", []))]
        while stack:
            parent, children = stack.pop()
            if not isinstance(children, list):
                raise ValueError(f"children of {parent} must be a list")
            for child in children:
                if not isinstance(child, dict) or "name" not in child:
                    raise ValueError(f"malformed child under {parent}")
                name = str(child["name"])
                try:
                    tree.insert(name, parent)
                except DuplicateIdError as e:
                    raise ValueError(str(e)) from e
                stack.append((name, child.get("children", [])))
        return tree

    def dumps(self) -> str:
        return json.dumps(self.to_dict(), separators=(", ", ": "))

    @classmethod
    def loads(cls, line: str) -> "SnapshotTree":
        try:
            data = json.loads(line)
        except ValueError:
            # Python-literal dump from older tooling
            data = ast.literal_eval(line)
        return cls.from_dict(data)

    def save(self, path: Union[str, Path]) -> None:
        """Write the tree to ``path`` (previous version kept as ``.bak``)."""
        path = Path(path)
        safe_backup(path)
        atomic_write_text(path, self.dumps() + "\n")
        logger.debug(f"Saved lineage tree to {path}")

    @classmethod
    def load(cls, path: Union[str, Path]) -> "SnapshotTree":
        """
        Read a tree saved by ``save``.

        Raises:
            CorruptStateError: missing, empty or unparsable file
        """
        path = Path(path)
        try:
            with open(path, encoding="utf-8") as f:
                line = f.readline().strip()
        except OSError as e:
            raise CorruptStateError(str(path), "cannot open tree file", cause=e) from e

        if not line:
            raise CorruptStateError(str(path), "tree file is empty")

        try:
            return cls.loads(line)
        except (ValueError, SyntaxError, TypeError) as e:
            raise CorruptStateError(str(path), f"malformed tree: {e}", cause=e) from e

    # ------------------------------------------------------------------
    # Display
    # ------------------------------------------------------------------

    def render(
        self,
        current: Optional[str] = None,
        describe: Optional[Callable[[str], str]] = None,
    ) -> str:
        """
        ASCII rendering of the whole tree.

        Args:
            current: Snapshot to mark with ``*``
            describe: Returns the description of a snapshot id
        """
        lines = []
        for prefix, node in self._walk_with_prefix(ROOT_NODE, "", None):
            if node == ROOT_NODE:
                lines.append(f"{prefix}{node}")
                continue
            desc = describe(node) if describe else ""
            if node == BASE_SNAPSHOT and not desc:
                desc = "base snapshot"
            marker = "*" if node == current else " "
            lines.append(f"{prefix}{node}{marker}- {desc}".rstrip())
        return "\n".join(lines)

    def _walk_with_prefix(self, node: str, indent: str, is_last: Optional[bool]):
        if is_last is None:
            yield "", node
            child_indent = ""
        else:
            yield indent + ("+-- " if is_last else "|-- "), node
            child_indent = indent + ("    " if is_last else "|   ")

        children = sorted(self._children[node], key=id_sort_key)
        for i, child in enumerate(children):
            yield from self._walk_with_prefix(child, child_indent, i == len(children) - 1)
