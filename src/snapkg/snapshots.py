"""
Snapshot lineage operations: creating, cloning and deleting snapshots while
keeping the lineage tree and the snapshot store in step.
"""

from __future__ import annotations

import logging
from typing import Callable, List, Optional, Tuple

from common.exceptions import HasChildrenError, ProtectedSnapshotError, SnapshotNotFoundError

from .config import BASE_SNAPSHOT, ROOT_NODE, Environment
from .descriptions import DescriptionStore
from .store import SnapshotStore, overlay_id
from .tree import SnapshotTree

logger = logging.getLogger(__name__)


class SnapshotManager:
    """
    Structural changes to the set of snapshots.

    Each method that adds or removes a snapshot saves the lineage tree
    before returning.
    """

    def __init__(
        self,
        env: Environment,
        store: SnapshotStore,
        tree: SnapshotTree,
        descriptions: Optional[DescriptionStore] = None,
    ):
        self.env = env
        self.store = store
        self.tree = tree
        self.descriptions = descriptions or DescriptionStore(env.settings.description_dir)

    def _save(self) -> None:
        self.tree.save(self.env.settings.tree_file)

    def _require(self, snapshot: str, operation: str) -> str:
        snapshot = str(snapshot)
        if not self.store.exists(snapshot):
            raise SnapshotNotFoundError(snapshot, operation)
        return snapshot

    def _derive(self, source: str, parent: str, desc: str = "") -> str:
        new_id = self.store.branch(source)
        self.tree.insert(new_id, parent)
        self._save()
        if desc:
            self.descriptions.write(new_id, desc)
        return new_id

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def new_tree(self, desc: str = "") -> str:
        """Start a new top-level tree from the base snapshot."""
        new_id = self._derive(BASE_SNAPSHOT, ROOT_NODE, desc)
        logger.info(f"New tree {new_id} created")
        return new_id

    def branch(self, snapshot, desc: str = "") -> str:
        """New child of ``snapshot`` with the same contents."""
        snapshot = self._require(snapshot, "branch")
        new_id = self._derive(snapshot, snapshot, desc)
        logger.info(f"Branch {new_id} added under snapshot {snapshot}")
        return new_id

    def clone_branch(self, snapshot) -> str:
        """Copy of ``snapshot`` placed next to it, under the same parent."""
        snapshot = self._require(snapshot, "clone")
        parent = self.tree.parent_of(snapshot)
        new_id = self._derive(snapshot, parent, f"clone of {snapshot}")
        logger.info(f"Branch {new_id} added to parent of {snapshot}")
        return new_id

    def clone_under(self, parent, source) -> str:
        """Copy of ``source`` placed under ``parent``."""
        parent = self._require(parent, "clone")
        source = self._require(source, "clone")
        new_id = self._derive(source, parent, f"clone of {source}")
        logger.info(f"Branch {new_id} added under snapshot {parent}")
        return new_id

    def clone_as_tree(self, snapshot) -> str:
        """Copy of ``snapshot`` as the start of a new top-level tree."""
        snapshot = self._require(snapshot, "clone")
        new_id = self._derive(snapshot, ROOT_NODE, f"clone of {snapshot}")
        logger.info(f"Tree {new_id} cloned from {snapshot}")
        return new_id

    def clone_recursive(self, snapshot) -> List[str]:
        """
        Clone ``snapshot`` and its whole subtree, keeping the shape.

        Returns:
            New ids, in the preorder of the originals they copy.
        """
        snapshot = self._require(snapshot, "clone")
        originals = list(self.tree.preorder_from(snapshot))
        mapping = {snapshot: self.clone_branch(snapshot)}
        for original in originals[1:]:
            new_parent = mapping[self.tree.parent_of(original)]
            mapping[original] = self.clone_under(new_parent, original)
        return [mapping[o] for o in originals]

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    def delete(self, snapshot, recursive: bool = False) -> List[str]:
        """
        Delete a snapshot, or with ``recursive`` its whole subtree.

        Raises:
            ProtectedSnapshotError: base snapshot, or the running snapshot
                would be deleted
            SnapshotNotFoundError: unknown to both the store and the tree
            HasChildrenError: children exist and ``recursive`` is not set

        Returns:
            Deleted ids, children before parents.
        """
        snapshot = str(snapshot)
        if snapshot in (BASE_SNAPSHOT, ROOT_NODE):
            raise ProtectedSnapshotError(snapshot, "cannot be deleted")
        if snapshot not in self.tree and not self.store.exists(snapshot):
            raise SnapshotNotFoundError(snapshot, "delete")

        if snapshot in self.tree:
            doomed = list(reversed(list(self.tree.preorder_from(snapshot))))
            if not recursive and len(doomed) > 1:
                raise HasChildrenError(snapshot, self.tree.children_of(snapshot))
        else:
            doomed = [snapshot]

        current = self.env.current_snapshot
        if current is not None and current in doomed:
            raise ProtectedSnapshotError(current, "is the running snapshot and cannot be deleted")

        # Children come first, so each node is a leaf by the time it is detached
        detached = False
        try:
            for node in doomed:
                self._delete_storage(node)
                if node in self.tree:
                    self.tree.remove(node)
                    detached = True
        finally:
            if detached:
                self._save()
        logger.info(f"Snapshot {snapshot} removed")
        return doomed

    def _delete_storage(self, snapshot: str) -> None:
        if self.store.overlay_exists(snapshot):
            self.store.discard_overlay(overlay_id(snapshot))
        if self.store.exists(snapshot):
            self.store.delete(snapshot)
        else:
            logger.warning(f"Snapshot {snapshot} was already gone from storage")
        self.descriptions.remove(snapshot)

    # ------------------------------------------------------------------
    # Display
    # ------------------------------------------------------------------

    def describe(self, snapshot, text: str) -> None:
        snapshot = self._require(snapshot, "describe")
        self.descriptions.write(snapshot, text)

    def print_tree(self) -> str:
        return self.tree.render(current=self.env.current_snapshot, describe=self.descriptions.read)

    def diff(
        self,
        first,
        second,
        list_packages: Callable[[str], List[str]],
    ) -> Tuple[List[str], List[str]]:
        """
        Compare the installed packages of two snapshots.

        Returns:
            (only in ``first``, only in ``second``), each sorted.
        """
        first = self._require(first, "diff")
        second = self._require(second, "diff")
        a = set(list_packages(first))
        b = set(list_packages(second))
        return sorted(a - b), sorted(b - a)
