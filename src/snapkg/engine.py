"""
Transactional package engine.

Every package change runs inside a transaction against one snapshot:

    prepare  -> writable overlay ``snapshot-chr<id>`` is created, the shared
                package cache is merged into it and the snapshot is made
                mutable if it was not
    execute  -> package-manager commands run chrooted into the overlay
    commit   -> the overlay replaces the snapshot
    discard  -> the overlay is dropped

Whatever happens, the mutability of the snapshot is restored and the
overlay does not outlive the transaction.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, Iterator, List, Optional

from common.decorators import timed
from common.exceptions import (
    OperationFailedError,
    ProtectedSnapshotError,
    RemovalNotAllowedError,
    SnapkgError,
    SnapshotInUseError,
    SnapshotNotFoundError,
    TransactionError,
)
from common.logging_config import LogContext

from .backends import PackageBackend, get_backend
from .config import BASE_SNAPSHOT, ROOT_NODE, Environment
from .executor import CommandExecutor, CommandResult
from .manifest import PROFILE_PACKAGES, ProfileManifest
from .status import StatusLog
from .store import SnapshotStore, overlay_id
from .tree import SnapshotTree

logger = logging.getLogger(__name__)


class TransactionState(Enum):
    IDLE = "idle"
    PREPARED = "prepared"
    MUTATING = "mutating"
    COMMITTED = "committed"
    DISCARDED = "discarded"


class OperationKind(Enum):
    INSTALL = "install"
    UNINSTALL = "uninstall"
    UPGRADE = "upgrade"
    REFRESH_INDEX = "refresh package index"
    REPAIR_DATABASE = "repair package database"
    RUN_UNINSTALL_HOOKS = "run uninstall commands"


@dataclass
class Operation:
    """One step executed inside a transaction."""
    kind: OperationKind
    packages: List[str] = field(default_factory=list)
    noconfirm: bool = False

    @classmethod
    def install(cls, packages: Iterable[str], noconfirm: bool = False) -> "Operation":
        return cls(OperationKind.INSTALL, list(packages), noconfirm)

    @classmethod
    def uninstall(cls, packages: Iterable[str], noconfirm: bool = False) -> "Operation":
        return cls(OperationKind.UNINSTALL, list(packages), noconfirm)

    @classmethod
    def upgrade(cls, noconfirm: bool = False) -> "Operation":
        return cls(OperationKind.UPGRADE, noconfirm=noconfirm)

    @classmethod
    def refresh(cls) -> "Operation":
        return cls(OperationKind.REFRESH_INDEX)

    @classmethod
    def repair_database(cls) -> "Operation":
        return cls(OperationKind.REPAIR_DATABASE)

    @classmethod
    def uninstall_hooks(cls) -> "Operation":
        return cls(OperationKind.RUN_UNINSTALL_HOOKS)


class MutabilityGuard:
    """
    Makes a snapshot mutable for the duration of a transaction.

    ``release`` puts back the state found by ``acquire`` and does so only
    once, however many exit paths call it.
    """

    def __init__(self, store: SnapshotStore, snapshot: str):
        self.store = store
        self.snapshot = snapshot
        self.flipped = False
        self._held = False

    def acquire(self) -> "MutabilityGuard":
        if not self.store.is_mutable(self.snapshot):
            self.store.set_mutable(self.snapshot, True)
            self.flipped = True
            logger.debug(f"Snapshot {self.snapshot} made mutable")
        self._held = True
        return self

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        if self.flipped:
            self.store.set_mutable(self.snapshot, False)
            logger.debug(f"Snapshot {self.snapshot} made immutable again")

    def __enter__(self):
        return self.acquire()

    def __exit__(self, *args):
        self.release()


@dataclass
class Transaction:
    """State of one prepare/execute/commit-or-discard cycle."""
    snapshot: str
    tmp: str
    overlay: Path
    guard: MutabilityGuard
    manifest: Optional[ProfileManifest] = None
    state: TransactionState = TransactionState.IDLE
    completed: List[Operation] = field(default_factory=list)

    @property
    def finished(self) -> bool:
        return self.state in (TransactionState.COMMITTED, TransactionState.DISCARDED)


class TransactionEngine:
    """
    Runs package operations against snapshots.

    Example:
        engine = TransactionEngine(env, BtrfsSnapshotStore(env.settings))
        engine.install("3", ["vim"], noconfirm=True)

        with engine.transaction("3") as txn:
            engine.execute(txn, Operation.uninstall(["nano"]))
            engine.execute(txn, Operation.install(["vim"]))
    """

    def __init__(
        self,
        env: Environment,
        store: SnapshotStore,
        executor: Optional[CommandExecutor] = None,
        backend: Optional[PackageBackend] = None,
        status_log: Optional[StatusLog] = None,
    ):
        self.env = env
        self.settings = env.settings
        self.store = store
        self.executor = executor or CommandExecutor()
        self.backend = backend or get_backend(self.settings.package_manager)
        self.status_log = status_log or StatusLog(self.settings.status_file)

    # ------------------------------------------------------------------
    # Transaction lifecycle
    # ------------------------------------------------------------------

    def prepare(self, snapshot, allow_base: bool = False) -> Transaction:
        """
        Open a transaction on ``snapshot``.

        Raises:
            SnapshotNotFoundError: the snapshot does not exist
            SnapshotInUseError: another transaction holds its overlay
            ProtectedSnapshotError: base snapshot without ``allow_base``
        """
        snapshot = str(snapshot)
        if not self.store.exists(snapshot):
            raise SnapshotNotFoundError(snapshot)
        if self.store.overlay_exists(snapshot):
            raise SnapshotInUseError(snapshot)
        if snapshot == BASE_SNAPSHOT and not allow_base:
            raise ProtectedSnapshotError(snapshot)

        txn = Transaction(
            snapshot=snapshot,
            tmp=overlay_id(snapshot),
            overlay=self.store.overlay_path(snapshot),
            guard=MutabilityGuard(self.store, snapshot),
        )
        try:
            txn.guard.acquire()
            txn.overlay = self.store.create_overlay(snapshot)
            self.store.merge_cache(
                self.settings.shared_cache_dir, txn.overlay / self.backend.cache_dir
            )
            txn.manifest = self._load_manifest(txn.overlay)
        except BaseException:
            self.discard(txn)
            raise

        txn.state = TransactionState.PREPARED
        logger.debug(f"Prepared transaction {txn.tmp} for snapshot {snapshot}")
        return txn

    def _load_manifest(self, root: Path) -> ProfileManifest:
        path = root / self.settings.profile_path
        if path.exists():
            return ProfileManifest.load(path, locked=self.env.locked)
        logger.info(f"No profile in {root}, starting an empty one")
        return ProfileManifest.create(path, locked=self.env.locked)

    @timed
    def execute(self, txn: Transaction, operation: Operation) -> Optional[CommandResult]:
        """
        Run one operation inside the transaction's overlay.

        Raises:
            OperationFailedError: a command exited non-zero. The transaction
                stays open; the caller decides whether to discard it.
        """
        if txn.state not in (TransactionState.PREPARED, TransactionState.MUTATING):
            raise TransactionError(
                f"Transaction {txn.tmp} is {txn.state.value}, cannot {operation.kind.value}",
                code="TRANSACTION_CLOSED",
                details={"snapshot": txn.snapshot, "state": txn.state.value},
            )

        txn.state = TransactionState.MUTATING
        handlers = {
            OperationKind.INSTALL: self._install,
            OperationKind.UNINSTALL: self._uninstall,
            OperationKind.UPGRADE: self._upgrade,
            OperationKind.REFRESH_INDEX: self._refresh,
            OperationKind.REPAIR_DATABASE: self._repair_database,
            OperationKind.RUN_UNINSTALL_HOOKS: self._run_uninstall_hooks,
        }
        with LogContext(snapshot=txn.snapshot, operation=operation.kind.value):
            result = handlers[operation.kind](txn, operation)

        txn.completed.append(operation)
        return result

    def commit(self, txn: Transaction) -> None:
        """Fold the overlay back into the snapshot."""
        if txn.finished:
            raise TransactionError(
                f"Transaction {txn.tmp} is already {txn.state.value}",
                code="TRANSACTION_CLOSED",
                details={"snapshot": txn.snapshot, "state": txn.state.value},
            )

        try:
            self.store.merge_cache(
                txn.overlay / self.backend.cache_dir, self.settings.shared_cache_dir
            )
            if txn.manifest is not None:
                txn.manifest.save()
            self.store.commit_overlay(txn.tmp, txn.snapshot)
        except BaseException:
            self.discard(txn)
            raise

        txn.guard.release()
        txn.state = TransactionState.COMMITTED
        logger.info(f"Snapshot {txn.snapshot} updated")

    def discard(self, txn: Transaction) -> None:
        """Drop the overlay. Calling it on a finished transaction does nothing."""
        if txn.finished:
            return
        try:
            self.store.discard_overlay(txn.tmp)
        finally:
            txn.guard.release()
            txn.state = TransactionState.DISCARDED
        logger.info(f"Changes to snapshot {txn.snapshot} discarded")

    @contextmanager
    def transaction(self, snapshot, allow_base: bool = False) -> Iterator[Transaction]:
        """Commit on normal exit, discard on any exception (then re-raise)."""
        txn = self.prepare(snapshot, allow_base=allow_base)
        try:
            yield txn
        except BaseException as e:
            logger.debug(f"Transaction {txn.tmp} aborted: {e!r}")
            self.discard(txn)
            raise
        self.commit(txn)

    # ------------------------------------------------------------------
    # Operation handlers
    # ------------------------------------------------------------------

    def _run(
        self,
        txn: Transaction,
        argv: List[str],
        operation: Operation,
        package: Optional[str] = None,
        capture: bool = False,
    ) -> CommandResult:
        result = self.executor.run(txn.overlay, argv, capture=capture)
        if not result.ok:
            raise OperationFailedError(
                operation.kind.value,
                txn.snapshot,
                package=package,
                returncode=result.returncode,
                output=result.output,
            )
        return result

    def _install(self, txn: Transaction, operation: Operation) -> None:
        for pkg in operation.packages:
            self._run(txn, self.backend.install_command(pkg, operation.noconfirm), operation, pkg)
            if txn.manifest.add(PROFILE_PACKAGES, pkg):
                txn.manifest.save()
            logger.info(f"Installed {pkg} in snapshot {txn.snapshot}")

    def _uninstall(self, txn: Transaction, operation: Operation) -> None:
        if txn.manifest.is_locked():
            protected = [p for p in operation.packages if txn.manifest.is_system_package(p)]
            if protected:
                raise RemovalNotAllowedError(protected, txn.snapshot)

        for pkg in operation.packages:
            self._run(txn, self.backend.uninstall_command(pkg, operation.noconfirm), operation, pkg)
            if txn.manifest.discard(pkg):
                txn.manifest.save()
            logger.info(f"Removed {pkg} from snapshot {txn.snapshot}")

    def _upgrade(self, txn: Transaction, operation: Operation) -> None:
        self._run(txn, self.backend.refresh_command(), operation)
        self._run(txn, self.backend.upgrade_command(operation.noconfirm), operation)

    def _refresh(self, txn: Transaction, operation: Operation) -> CommandResult:
        return self._run(txn, self.backend.refresh_command(), operation, capture=True)

    def _repair_database(self, txn: Transaction, operation: Operation) -> CommandResult:
        result = self.executor.run(txn.overlay, self.backend.refresh_command(), capture=True)
        missing = self.backend.missing_keys(result.output)
        if not missing:
            if not result.ok:
                raise OperationFailedError(
                    operation.kind.value, txn.snapshot,
                    returncode=result.returncode, output=result.output,
                )
            logger.info(f"Package database of snapshot {txn.snapshot} needs no repair")
            return result

        for key in missing:
            logger.info(f"Importing signing key {key.key} for {key.repo}")
            for argv in self.backend.import_key_commands(key, self.settings.keyserver):
                self._run(txn, argv, operation, package=key.key, capture=True)

        # One retry once the keys are in place
        return self._run(txn, self.backend.refresh_command(), operation, capture=True)

    def _run_uninstall_hooks(self, txn: Transaction, operation: Operation) -> None:
        commands = txn.manifest.uninstall_commands()
        if not commands:
            logger.info(f"No uninstall commands configured for snapshot {txn.snapshot}")
        for command in commands:
            self._run(txn, ["sh", "-c", command], operation, package=command)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def install(self, snapshot, packages: Iterable[str], noconfirm: bool = False) -> Transaction:
        with self.transaction(snapshot) as txn:
            self.execute(txn, Operation.install(packages, noconfirm))
        return txn

    def uninstall(self, snapshot, packages: Iterable[str], noconfirm: bool = False) -> Transaction:
        with self.transaction(snapshot) as txn:
            self.execute(txn, Operation.uninstall(packages, noconfirm))
        return txn

    def upgrade(self, snapshot, noconfirm: bool = False) -> Transaction:
        with self.transaction(snapshot) as txn:
            self.execute(txn, Operation.upgrade(noconfirm))
        return txn

    def refresh(self, snapshot) -> Transaction:
        with self.transaction(snapshot) as txn:
            self.execute(txn, Operation.refresh())
        return txn

    def clean(self, snapshot) -> Transaction:
        """Run the profile's uninstall commands in ``snapshot``."""
        with self.transaction(snapshot) as txn:
            self.execute(txn, Operation.uninstall_hooks())
        return txn

    def auto_upgrade(self, snapshot) -> bool:
        """
        Refresh the package index of ``snapshot`` and record the outcome.

        A missing snapshot is reported and leaves the status log untouched.

        Returns:
            True if the refresh was committed.
        """
        snapshot = str(snapshot)
        if not self.store.exists(snapshot):
            logger.error(f"Cannot auto-upgrade as snapshot {snapshot} doesn't exist")
            return False

        try:
            with self.transaction(snapshot) as txn:
                self.execute(txn, Operation.refresh())
        except OperationFailedError as e:
            logger.error(f"Automatic upgrade of snapshot {snapshot} failed: {e.message}")
            self.status_log.record(False)
            return False

        self.status_log.record(True)
        return True

    def repair_database(self, snapshot=None) -> Transaction:
        """
        Re-sync the package index, importing any missing signing keys.

        Args:
            snapshot: Target snapshot; None means the running one. The fix is
                always staged in an overlay, never applied to the live root.
        """
        target = self.env.current_snapshot if snapshot is None else str(snapshot)
        if target is None:
            raise SnapkgError(
                "Cannot tell which snapshot is running; pass a snapshot id",
                code="CURRENT_SNAPSHOT_UNKNOWN",
            )
        if target == BASE_SNAPSHOT:
            raise ProtectedSnapshotError(target)

        with self.transaction(target) as txn:
            self.execute(txn, Operation.repair_database())
        return txn

    def unlock(self, snapshot) -> bool:
        """
        Drop an overlay left behind by an interrupted process.

        Returns:
            True if there was an overlay to remove.
        """
        snapshot = str(snapshot)
        if not self.store.overlay_exists(snapshot):
            logger.info(f"Snapshot {snapshot} is not locked")
            return False
        self.store.discard_overlay(overlay_id(snapshot))
        logger.info(f"Unlocked snapshot {snapshot}")
        return True

    def list_packages(self, snapshot, explicit: bool = False) -> List[str]:
        """Installed packages of ``snapshot``; ``explicit`` limits to user-requested ones."""
        snapshot = str(snapshot)
        if not self.store.exists(snapshot):
            raise SnapshotNotFoundError(snapshot, "list packages")
        result = self.executor.run(
            self.store.snapshot_path(snapshot), self.backend.list_command(explicit)
        )
        if not result.ok:
            raise OperationFailedError(
                "list packages", snapshot, returncode=result.returncode, output=result.output
            )
        return self.backend.parse_package_list(result.stdout)

    # ------------------------------------------------------------------
    # Whole subtrees
    # ------------------------------------------------------------------

    def _subtree(self, tree: SnapshotTree, snapshot) -> List[str]:
        snapshot = str(snapshot)
        if not self.store.exists(snapshot):
            raise SnapshotNotFoundError(snapshot, "update tree")
        ids = [i for i in tree.preorder_from(snapshot) if i not in (ROOT_NODE, BASE_SNAPSHOT)]
        for node in ids:
            if self.store.overlay_exists(node):
                raise SnapshotInUseError(node)
        return ids

    def upgrade_tree(self, tree: SnapshotTree, snapshot, noconfirm: bool = False) -> List[str]:
        """Upgrade ``snapshot`` and every snapshot below it, parents first."""
        ids = self._subtree(tree, snapshot)
        for node in ids:
            self.upgrade(node, noconfirm=noconfirm)
        logger.info(f"Tree {snapshot} updated")
        return ids

    def uninstall_from_tree(
        self,
        tree: SnapshotTree,
        snapshot,
        packages: Iterable[str],
        noconfirm: bool = False,
    ) -> List[str]:
        """Remove ``packages`` from ``snapshot`` and every snapshot below it."""
        packages = list(packages)
        ids = self._subtree(tree, snapshot)
        for node in ids:
            self.uninstall(node, packages, noconfirm=noconfirm)
        logger.info(f"Removed {', '.join(packages)} from tree {snapshot}")
        return ids
