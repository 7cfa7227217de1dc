"""
Pytest configuration and shared fixtures for snapkg tests.

Provides a directory-backed snapshot store and a recording command executor
so transactions can run without btrfs, chroot or a package manager.
"""

import os
import shutil
import pytest
from pathlib import Path
from typing import Dict, List, Optional
import sys

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from common.exceptions import OperationFailedError  # noqa: E402
from snapkg.config import Environment, Settings  # noqa: E402
from snapkg.executor import CommandExecutor, CommandResult  # noqa: E402
from snapkg.store import SnapshotStore  # noqa: E402


# ============ Fakes ============

class FakeSnapshotStore(SnapshotStore):
    """Snapshots as plain directories; mutability kept in memory."""

    def __init__(self, settings: Settings):
        self.root = settings.rootfs_dir
        self.root.mkdir(parents=True, exist_ok=True)
        self.mutable: Dict[str, bool] = {}
        self.fail_commit = False

    def add(self, snapshot: str, mutable: bool = False, files: Optional[Dict[str, str]] = None):
        path = self.snapshot_path(snapshot)
        path.mkdir(parents=True, exist_ok=True)
        for rel, content in (files or {}).items():
            target = path / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)
        self.mutable[snapshot] = mutable
        return path

    def snapshot_path(self, snapshot):
        return self.root / f"snapshot-{snapshot}"

    def ids(self):
        return sorted(
            p.name[len("snapshot-"):]
            for p in self.root.iterdir()
            if p.name[len("snapshot-"):].isdigit()
        )

    def branch(self, parent):
        new_id = self.next_id()
        shutil.copytree(self.snapshot_path(parent), self.snapshot_path(new_id))
        self.mutable[new_id] = False
        return new_id

    def create_overlay(self, snapshot):
        path = self.overlay_path(snapshot)
        shutil.copytree(self.snapshot_path(snapshot), path)
        return path

    def commit_overlay(self, tmp, target):
        if self.fail_commit:
            raise OperationFailedError("commit overlay", target, returncode=1)
        shutil.rmtree(self.snapshot_path(target))
        shutil.move(str(self.snapshot_path(tmp)), str(self.snapshot_path(target)))

    def discard_overlay(self, tmp):
        path = self.snapshot_path(tmp)
        if path.is_dir():
            shutil.rmtree(path)

    def delete(self, snapshot):
        shutil.rmtree(self.snapshot_path(snapshot))
        self.mutable.pop(snapshot, None)

    def set_mutable(self, snapshot, mutable):
        self.mutable[snapshot] = mutable

    def is_mutable(self, snapshot):
        return self.mutable.get(snapshot, False)


class FakeExecutor(CommandExecutor):
    """Records every command; answers from rules matched on the full command line."""

    def __init__(self):
        self.calls: List[tuple] = []
        self._rules: List[list] = []

    def respond(self, match: str, returncode: int = 0, stdout: str = "", stderr: str = "",
                times: Optional[int] = None):
        """Answer commands containing ``match``; ``times`` limits how often."""
        self._rules.append([match, returncode, stdout, stderr, times])

    def fail(self, match: str, returncode: int = 1, **kwargs):
        self.respond(match, returncode=returncode, **kwargs)

    def run(self, root, argv, capture=True):
        argv = [str(a) for a in argv]
        self.calls.append((root, argv))
        line = " ".join(self.command_line(root, argv))
        for rule in self._rules:
            match, returncode, stdout, stderr, times = rule
            if match in line and times != 0:
                if times is not None:
                    rule[4] = times - 1
                return CommandResult(self.command_line(root, argv), returncode, stdout, stderr)
        return CommandResult(self.command_line(root, argv), 0)

    @property
    def commands(self) -> List[str]:
        return [" ".join(argv) for _, argv in self.calls]


# ============ Environment Fixtures ============

@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with every path under a temporary directory."""
    return Settings(
        snapshots_root=tmp_path / "snapshots",
        state_dir=tmp_path / "state",
        current_snapshot_file=tmp_path / "snap",
        shared_cache_dir=tmp_path / "cache",
    )


@pytest.fixture
def env(settings: Settings) -> Environment:
    return Environment(settings=settings, current_snapshot="1", locked=False)


@pytest.fixture
def locked_env(settings: Settings) -> Environment:
    return Environment(settings=settings, current_snapshot="1", locked=True)


@pytest.fixture
def store(settings: Settings) -> FakeSnapshotStore:
    """Store holding the base snapshot 0 and snapshot 1."""
    fake = FakeSnapshotStore(settings)
    fake.add("0")
    fake.add("1")
    return fake


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def engine(env, store, executor):
    from snapkg.engine import TransactionEngine
    return TransactionEngine(env, store, executor)


@pytest.fixture
def locked_engine(locked_env, store, executor):
    from snapkg.engine import TransactionEngine
    return TransactionEngine(locked_env, store, executor)


def write_profile(store: FakeSnapshotStore, snapshot: str, system=(), profile=(), commands=()):
    """Put a profile manifest into a snapshot."""
    lines = ["[system-packages]", *system, "", "[profile-packages]", *profile, ""]
    if commands:
        lines += ["[uninstall-commands]", *commands, ""]
    store.add(snapshot, files={"etc/snapkg/profile": "\n".join(lines)})


@pytest.fixture
def profile_writer():
    return write_profile


# ============ Marker Configuration ============

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line(
        "markers", "requires_root: marks tests that need root privileges"
    )
    config.addinivalue_line(
        "markers", "unit: fast unit tests with no external deps"
    )
    config.addinivalue_line(
        "markers", "integration: tests that drive several components together"
    )


def pytest_collection_modifyitems(config, items):
    """Skip tests based on environment."""
    skip_root = pytest.mark.skip(reason="Requires root privileges")

    for item in items:
        if "requires_root" in item.keywords:
            try:
                if os.getuid() != 0:
                    item.add_marker(skip_root)
            except AttributeError:
                # Windows doesn't have getuid
                item.add_marker(skip_root)
