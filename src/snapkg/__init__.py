"""
snapkg - Snapshot Lineage and Transactional Package Management

Keeps a tree of immutable root filesystem snapshots and applies package
changes to them atomically:
- Lineage tree recording which snapshot was branched from which
- Install, uninstall and upgrade staged in a throwaway overlay
- Per-snapshot profile separating system packages from requested ones
- Status log for unattended upgrades
"""

__version__ = "0.3.0"

from .config import Environment, Settings
from .engine import Operation, OperationKind, TransactionEngine, TransactionState
from .manifest import ProfileManifest
from .snapshots import SnapshotManager
from .status import StatusLog, UpgradeStatus
from .store import BtrfsSnapshotStore, SnapshotStore
from .tree import SnapshotNode, SnapshotTree

__all__ = [
    "Environment",
    "Settings",
    "Operation",
    "OperationKind",
    "TransactionEngine",
    "TransactionState",
    "ProfileManifest",
    "SnapshotManager",
    "StatusLog",
    "UpgradeStatus",
    "BtrfsSnapshotStore",
    "SnapshotStore",
    "SnapshotNode",
    "SnapshotTree",
]
