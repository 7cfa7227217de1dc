#!/usr/bin/env python3
"""
snapkg CLI

Command-line interface for snapshot lineage and package transactions.
"""

import argparse
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from common.decorators import require_root
from common.exceptions import SnapkgError
from common.logging_config import setup_logging

from . import __version__
from .config import Environment, Settings
from .engine import TransactionEngine
from .executor import CommandExecutor
from .snapshots import SnapshotManager
from .status import StatusLog
from .store import BtrfsSnapshotStore, SnapshotStore
from .tree import SnapshotTree

logger = logging.getLogger(__name__)


@dataclass
class Context:
    """Collaborators for one CLI invocation, built once at startup."""
    env: Environment
    store: SnapshotStore
    executor: CommandExecutor = field(default_factory=CommandExecutor)
    _tree: Optional[SnapshotTree] = None

    @property
    def tree(self) -> SnapshotTree:
        if self._tree is None:
            path = self.env.settings.tree_file
            if path.exists():
                self._tree = SnapshotTree.load(path)
            else:
                logger.warning(f"No lineage tree at {path}, starting from the base snapshot")
                self._tree = SnapshotTree()
        return self._tree

    @property
    def engine(self) -> TransactionEngine:
        return TransactionEngine(self.env, self.store, self.executor)

    @property
    def manager(self) -> SnapshotManager:
        return SnapshotManager(self.env, self.store, self.tree)

    @property
    def status_log(self) -> StatusLog:
        return StatusLog(self.env.settings.status_file)


def build_context(settings: Settings) -> Context:
    env = Environment.load(settings)
    executor = CommandExecutor()
    return Context(env=env, store=BtrfsSnapshotStore(settings, executor), executor=executor)


def confirm(prompt: str) -> bool:
    response = input(f"{prompt} [y/N] ")
    return response.strip().lower() == "y"


# ----------------------------------------------------------------------
# Lineage commands
# ----------------------------------------------------------------------

def cmd_tree(args, ctx: Context):
    """Show the snapshot tree."""
    print(ctx.manager.print_tree())
    return 0


def cmd_current(args, ctx: Context):
    """Show the running snapshot."""
    print(ctx.env.current_snapshot or "unknown")
    return 0


@require_root
def cmd_new(args, ctx: Context):
    new_id = ctx.manager.new_tree(" ".join(args.description))
    print(f"New tree {new_id} created.")
    return 0


@require_root
def cmd_branch(args, ctx: Context):
    new_id = ctx.manager.branch(args.snapshot, " ".join(args.description))
    print(f"Branch {new_id} added under snapshot {args.snapshot}.")
    return 0


@require_root
def cmd_clone(args, ctx: Context):
    new_id = ctx.manager.clone_as_tree(args.snapshot)
    print(f"Tree {new_id} cloned from {args.snapshot}.")
    return 0


@require_root
def cmd_clone_branch(args, ctx: Context):
    new_id = ctx.manager.clone_branch(args.snapshot)
    print(f"Branch {new_id} added to parent of {args.snapshot}.")
    return 0


@require_root
def cmd_clone_under(args, ctx: Context):
    new_id = ctx.manager.clone_under(args.parent, args.snapshot)
    print(f"Branch {new_id} added under snapshot {args.parent}.")
    return 0


@require_root
def cmd_clone_tree(args, ctx: Context):
    new_ids = ctx.manager.clone_recursive(args.snapshot)
    print(f"Tree {args.snapshot} cloned as {new_ids[0]} ({len(new_ids)} snapshots).")
    return 0


@require_root
def cmd_delete(args, ctx: Context):
    """Delete a snapshot (or a subtree with --recursive)."""
    what = "snapshot" if not args.recursive else "snapshot and everything below"
    if not args.yes and not confirm(f"Delete {what} {args.snapshot}?"):
        print("Aborted.")
        return 0

    removed = ctx.manager.delete(args.snapshot, recursive=args.recursive)
    print(f"Removed {', '.join(removed)}.")
    return 0


@require_root
def cmd_desc(args, ctx: Context):
    ctx.manager.describe(args.snapshot, " ".join(args.description))
    return 0


def cmd_diff(args, ctx: Context):
    """Package differences between two snapshots."""
    engine = ctx.engine
    only_first, only_second = ctx.manager.diff(args.first, args.second, engine.list_packages)
    for pkg in only_first:
        print(f"< {pkg}")
    for pkg in only_second:
        print(f"> {pkg}")
    return 0


# ----------------------------------------------------------------------
# Package commands
# ----------------------------------------------------------------------

@require_root
def cmd_install(args, ctx: Context):
    ctx.engine.install(args.snapshot, args.packages, noconfirm=args.noconfirm)
    print(f"Installed {', '.join(args.packages)} in snapshot {args.snapshot}.")
    return 0


@require_root
def cmd_uninstall(args, ctx: Context):
    ctx.engine.uninstall(args.snapshot, args.packages, noconfirm=args.noconfirm)
    print(f"Removed {', '.join(args.packages)} from snapshot {args.snapshot}.")
    return 0


@require_root
def cmd_upgrade(args, ctx: Context):
    ctx.engine.upgrade(args.snapshot, noconfirm=args.noconfirm)
    print(f"Snapshot {args.snapshot} upgraded.")
    return 0


@require_root
def cmd_refresh(args, ctx: Context):
    ctx.engine.refresh(args.snapshot)
    print(f"Package index of snapshot {args.snapshot} refreshed.")
    return 0


@require_root
def cmd_auto_upgrade(args, ctx: Context):
    """Unattended index refresh; the outcome goes to the status log."""
    snapshot = args.snapshot or ctx.env.current_snapshot
    if snapshot is None:
        print("Cannot tell which snapshot is running; pass a snapshot id.", file=sys.stderr)
        return 1
    return 0 if ctx.engine.auto_upgrade(snapshot) else 1


def cmd_check(args, ctx: Context):
    """Report the outcome of the last automatic upgrade."""
    print(ctx.status_log.describe())
    return 0


@require_root
def cmd_fixdb(args, ctx: Context):
    ctx.engine.repair_database(args.snapshot)
    target = args.snapshot or ctx.env.current_snapshot
    print(f"Package database of snapshot {target} repaired.")
    return 0


@require_root
def cmd_clean(args, ctx: Context):
    ctx.engine.clean(args.snapshot)
    print(f"Uninstall commands run in snapshot {args.snapshot}.")
    return 0


@require_root
def cmd_unlock(args, ctx: Context):
    if ctx.engine.unlock(args.snapshot):
        print(f"Snapshot {args.snapshot} unlocked.")
    else:
        print(f"Snapshot {args.snapshot} was not locked.")
    return 0


def cmd_list(args, ctx: Context):
    for pkg in ctx.engine.list_packages(args.snapshot, explicit=args.explicit):
        print(pkg)
    return 0


@require_root
def cmd_tree_upgrade(args, ctx: Context):
    upgraded = ctx.engine.upgrade_tree(ctx.tree, args.snapshot, noconfirm=args.noconfirm)
    print(f"Tree {args.snapshot} updated ({len(upgraded)} snapshots).")
    return 0


@require_root
def cmd_tree_rmpkg(args, ctx: Context):
    updated = ctx.engine.uninstall_from_tree(
        ctx.tree, args.snapshot, args.packages, noconfirm=args.noconfirm
    )
    print(f"Removed {', '.join(args.packages)} from {len(updated)} snapshots.")
    return 0


# ----------------------------------------------------------------------
# Parser
# ----------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="snapkg",
        description="Snapshot lineage and transactional package management",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  snapkg tree                          # Show the snapshot tree
  snapkg branch 1 -d "testing vim"     # New snapshot under 1
  snapkg install 2 vim -y              # Install vim into snapshot 2
  snapkg uninstall 2 nano              # Remove nano from snapshot 2
  snapkg tree-upgrade 1                # Upgrade 1 and everything below it
  snapkg fixdb                         # Repair the running snapshot's package db
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-c", "--config", type=Path, help="Configuration file")
    parser.add_argument("--log-file", type=Path, help="Also log to this file")
    parser.add_argument("--json-logs", action="store_true", help="Write the log file as JSON")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    def add(name, func, help_text):
        sub = subparsers.add_parser(name, help=help_text)
        sub.set_defaults(func=func)
        return sub

    def add_noconfirm(sub):
        sub.add_argument("-y", "--noconfirm", action="store_true",
                         help="Do not ask the package manager for confirmation")

    add("tree", cmd_tree, "Show the snapshot tree")
    add("current", cmd_current, "Show the running snapshot")

    sub = add("new", cmd_new, "Create a new tree from the base snapshot")
    sub.add_argument("description", nargs="*", help="Description")

    sub = add("branch", cmd_branch, "Branch a snapshot")
    sub.add_argument("snapshot")
    sub.add_argument("-d", "--description", nargs="+", default=[], help="Description")

    sub = add("clone", cmd_clone, "Clone a snapshot as a new tree")
    sub.add_argument("snapshot")

    sub = add("clone-branch", cmd_clone_branch, "Clone a snapshot under the same parent")
    sub.add_argument("snapshot")

    sub = add("clone-under", cmd_clone_under, "Clone a snapshot under another parent")
    sub.add_argument("parent")
    sub.add_argument("snapshot")

    sub = add("clone-tree", cmd_clone_tree, "Clone a snapshot and its whole subtree")
    sub.add_argument("snapshot")

    sub = add("del", cmd_delete, "Delete a snapshot")
    sub.add_argument("snapshot")
    sub.add_argument("-r", "--recursive", action="store_true", help="Also delete its children")
    sub.add_argument("-y", "--yes", action="store_true", help="Skip confirmation")

    sub = add("desc", cmd_desc, "Set a snapshot description")
    sub.add_argument("snapshot")
    sub.add_argument("description", nargs="+")

    sub = add("diff", cmd_diff, "Compare packages of two snapshots")
    sub.add_argument("first")
    sub.add_argument("second")

    sub = add("install", cmd_install, "Install packages into a snapshot")
    sub.add_argument("snapshot")
    sub.add_argument("packages", nargs="+")
    add_noconfirm(sub)

    sub = add("uninstall", cmd_uninstall, "Remove packages from a snapshot")
    sub.add_argument("snapshot")
    sub.add_argument("packages", nargs="+")
    add_noconfirm(sub)

    sub = add("upgrade", cmd_upgrade, "Upgrade all packages of a snapshot")
    sub.add_argument("snapshot")
    add_noconfirm(sub)

    sub = add("refresh", cmd_refresh, "Refresh the package index of a snapshot")
    sub.add_argument("snapshot")

    sub = add("auto-upgrade", cmd_auto_upgrade, "Unattended refresh with status logging")
    sub.add_argument("snapshot", nargs="?")

    add("check", cmd_check, "Show the result of the last automatic upgrade")

    sub = add("fixdb", cmd_fixdb, "Repair the package database (default: running snapshot)")
    sub.add_argument("snapshot", nargs="?")

    sub = add("clean", cmd_clean, "Run the profile's uninstall commands")
    sub.add_argument("snapshot")

    sub = add("unlock", cmd_unlock, "Remove a stale overlay")
    sub.add_argument("snapshot")

    sub = add("list", cmd_list, "List installed packages")
    sub.add_argument("snapshot")
    sub.add_argument("-e", "--explicit", action="store_true",
                     help="Only explicitly installed packages")

    sub = add("tree-upgrade", cmd_tree_upgrade, "Upgrade a snapshot and its subtree")
    sub.add_argument("snapshot")
    add_noconfirm(sub)

    sub = add("tree-rmpkg", cmd_tree_rmpkg, "Remove packages from a snapshot and its subtree")
    sub.add_argument("snapshot")
    sub.add_argument("packages", nargs="+")
    add_noconfirm(sub)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.INFO
    setup_logging(level)

    try:
        settings = Settings.load(args.config)
        log_file = args.log_file or settings.log_file
        if log_file:
            setup_logging(level, log_file=log_file, json_logs=args.json_logs)

        if args.command is None:
            parser.print_help()
            return 0

        ctx = build_context(settings)
        return args.func(args, ctx)
    except SnapkgError as e:
        logger.debug(f"{e.code}: {e.details}")
        print(f"error: {e.message}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
