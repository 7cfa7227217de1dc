"""
Tests for the transactional package engine.
"""

import pytest

from snapkg.engine import MutabilityGuard, Operation, TransactionState
from snapkg.manifest import ProfileManifest


def profile_of(store, snapshot):
    return ProfileManifest.load(store.snapshot_path(snapshot) / "etc/snapkg/profile")


# ----------------------------------------------------------------------
# prepare / commit / discard
# ----------------------------------------------------------------------

@pytest.mark.unit
class TestLifecycle:
    """Tests for the transaction state machine."""

    def test_prepare_missing_snapshot(self, engine):
        from common.exceptions import SnapshotNotFoundError

        with pytest.raises(SnapshotNotFoundError):
            engine.prepare("5")

    def test_prepare_twice_is_in_use(self, engine, store):
        from common.exceptions import SnapshotInUseError

        txn = engine.prepare("1")
        assert txn.state == TransactionState.PREPARED
        assert store.overlay_exists("1")

        with pytest.raises(SnapshotInUseError):
            engine.prepare("1")

        engine.discard(txn)
        assert not store.overlay_exists("1")

    def test_base_needs_override(self, engine, store):
        from common.exceptions import ProtectedSnapshotError

        with pytest.raises(ProtectedSnapshotError):
            engine.prepare("0")
        assert not store.overlay_exists("0")

        txn = engine.prepare("0", allow_base=True)
        engine.discard(txn)

    def test_prepare_merges_shared_cache(self, engine, store, settings):
        cache = settings.shared_cache_dir
        cache.mkdir(parents=True)
        (cache / "vim.deb").write_text("pkg")

        txn = engine.prepare("1")
        assert (txn.overlay / "var/cache/apt/archives/vim.deb").read_text() == "pkg"
        engine.discard(txn)

    def test_prepare_creates_missing_manifest_in_overlay(self, engine, store):
        txn = engine.prepare("1")
        assert (txn.overlay / "etc/snapkg/profile").exists()
        assert not (store.snapshot_path("1") / "etc/snapkg/profile").exists()
        engine.discard(txn)

    def test_commit_writes_cache_back(self, engine, store, settings):
        with engine.transaction("1") as txn:
            downloaded = txn.overlay / "var/cache/apt/archives"
            downloaded.mkdir(parents=True, exist_ok=True)
            (downloaded / "git.deb").write_text("git")

        assert (settings.shared_cache_dir / "git.deb").read_text() == "git"
        assert txn.state == TransactionState.COMMITTED

    def test_mutability_flipped_and_restored(self, engine, store):
        store.mutable["1"] = False

        with engine.transaction("1"):
            assert store.is_mutable("1") is True

        assert store.is_mutable("1") is False

    def test_mutable_snapshot_left_mutable(self, engine, store):
        store.mutable["1"] = True

        txn = engine.prepare("1")
        assert txn.guard.flipped is False
        engine.discard(txn)
        assert store.is_mutable("1") is True

    def test_discard_is_idempotent(self, engine, store):
        txn = engine.prepare("1")
        engine.discard(txn)
        engine.discard(txn)
        assert txn.state == TransactionState.DISCARDED

    def test_execute_after_commit_rejected(self, engine):
        from common.exceptions import TransactionError

        with engine.transaction("1") as txn:
            pass
        with pytest.raises(TransactionError):
            engine.execute(txn, Operation.refresh())

    def test_failed_commit_discards(self, engine, store):
        from common.exceptions import OperationFailedError

        store.fail_commit = True
        with pytest.raises(OperationFailedError):
            with engine.transaction("1"):
                pass

        assert not store.overlay_exists("1")
        assert store.is_mutable("1") is False

    def test_keyboard_interrupt_discards(self, engine, store):
        with pytest.raises(KeyboardInterrupt):
            with engine.transaction("1"):
                raise KeyboardInterrupt

        assert not store.overlay_exists("1")
        assert store.is_mutable("1") is False


@pytest.mark.unit
class TestMutabilityGuard:
    """Tests for scoped mutability."""

    def test_release_once(self, store):
        guard = MutabilityGuard(store, "1")
        with guard:
            assert store.is_mutable("1")
        store.set_mutable("1", True)
        guard.release()

        assert store.is_mutable("1") is True

    def test_release_without_acquire(self, store):
        guard = MutabilityGuard(store, "1")
        guard.release()
        assert store.is_mutable("1") is False


# ----------------------------------------------------------------------
# Operations
# ----------------------------------------------------------------------

@pytest.mark.unit
class TestInstall:
    """Tests for installing packages."""

    def test_install_noconfirm_updates_profile(self, engine, store, executor, profile_writer):
        profile_writer(store, "1", system=["bash"], profile=["zsh", "git"])

        engine.install("1", ["foo"], noconfirm=True)

        assert "apt-get install foo -y" in executor.commands
        root, _ = executor.calls[0]
        assert root == store.overlay_path("1")

        manifest = profile_of(store, "1")
        assert manifest.profile_packages == ["foo", "git", "zsh"]
        assert manifest.profile_packages.count("foo") == 1
        assert not store.overlay_exists("1")

    def test_install_system_package_not_duplicated(self, engine, store, profile_writer):
        profile_writer(store, "1", system=["bash"])

        engine.install("1", ["bash"])

        manifest = profile_of(store, "1")
        assert manifest.profile_packages == []
        assert manifest.system_packages == ["bash"]

    def test_install_failure_discards_everything(self, engine, store, executor, profile_writer):
        from common.exceptions import OperationFailedError

        profile_writer(store, "1", profile=["git"])
        before = store.is_mutable("1")
        executor.fail("install broken", returncode=100)

        with pytest.raises(OperationFailedError) as exc:
            engine.install("1", ["vim", "broken"], noconfirm=True)

        assert exc.value.package == "broken"
        assert exc.value.returncode == 100
        assert not store.overlay_exists("1")
        assert store.is_mutable("1") == before
        # vim was installed in the overlay only; nothing reached the snapshot
        assert profile_of(store, "1").profile_packages == ["git"]

    def test_execute_failure_keeps_transaction_open(self, engine, store, executor):
        from common.exceptions import OperationFailedError

        executor.fail("apt-get update")
        txn = engine.prepare("1")

        with pytest.raises(OperationFailedError):
            engine.execute(txn, Operation.refresh())

        assert txn.state == TransactionState.MUTATING
        assert store.overlay_exists("1")
        engine.discard(txn)
        assert not store.overlay_exists("1")


@pytest.mark.unit
class TestUninstall:
    """Tests for removing packages."""

    def test_uninstall_updates_whichever_set(self, engine, store, executor, profile_writer):
        profile_writer(store, "1", system=["nano"], profile=["vim", "git"])

        engine.uninstall("1", ["vim", "nano"], noconfirm=True)

        assert executor.commands == ["apt-get remove vim -y", "apt-get remove nano -y"]
        manifest = profile_of(store, "1")
        assert manifest.profile_packages == ["git"]
        assert manifest.system_packages == []

    def test_locked_system_package_blocks_whole_operation(
        self, locked_engine, store, executor, profile_writer
    ):
        from common.exceptions import RemovalNotAllowedError

        profile_writer(store, "1", system=["bash"], profile=["vim"])

        with pytest.raises(RemovalNotAllowedError) as exc:
            locked_engine.uninstall("1", ["vim", "bash"], noconfirm=True)

        assert exc.value.packages == ["bash"]
        assert not any("remove" in c for c in executor.commands)
        assert profile_of(store, "1").profile_packages == ["vim"]
        assert not store.overlay_exists("1")

    def test_locked_profile_package_removable(self, locked_engine, store, profile_writer):
        profile_writer(store, "1", system=["bash"], profile=["vim"])

        locked_engine.uninstall("1", ["vim"])

        assert profile_of(store, "1").profile_packages == []


@pytest.mark.unit
class TestUpgradeAndRefresh:
    """Tests for upgrade, refresh and uninstall hooks."""

    def test_upgrade_refreshes_first(self, engine, executor):
        engine.upgrade("1", noconfirm=True)
        assert executor.commands == ["apt-get update -y", "apt-get upgrade -y"]

    def test_upgrade_interactive(self, engine, executor):
        engine.upgrade("1")
        assert executor.commands[-1] == "apt-get upgrade"

    def test_clean_runs_uninstall_commands(self, engine, store, executor, profile_writer):
        profile_writer(store, "1", commands=["systemctl disable sshd"])

        engine.clean("1")

        assert executor.calls[0][1] == ["sh", "-c", "systemctl disable sshd"]


@pytest.mark.unit
class TestAutoUpgrade:
    """Tests for unattended upgrades and the status log."""

    def test_missing_snapshot_leaves_status_untouched(self, engine, settings, executor):
        status_file = settings.status_file
        status_file.parent.mkdir(parents=True)
        status_file.write_text("0 \nMon Jan 05 10:00:00 UTC 2026\n")

        assert engine.auto_upgrade("5") is False

        assert status_file.read_text() == "0 \nMon Jan 05 10:00:00 UTC 2026\n"
        assert executor.calls == []

    def test_success_records_zero(self, engine, settings):
        assert engine.auto_upgrade("1") is True
        assert settings.status_file.read_text().startswith("0 \n")

    def test_failure_records_one_and_discards(self, engine, store, settings, executor):
        executor.fail("apt-get update")

        assert engine.auto_upgrade("1") is False

        assert settings.status_file.read_text().startswith("1 \n")
        assert not store.overlay_exists("1")


@pytest.mark.unit
class TestRepairDatabase:
    """Tests for package database repair."""

    MISSING = "W: GPG error: http://deb.example.org stable InRelease: NO_PUBKEY 0E98404D386FA1D9\n"

    def test_imports_keys_then_retries_once(self, engine, store, executor):
        executor.respond("apt-get update", stdout=self.MISSING, times=1)

        engine.repair_database("1")

        commands = executor.commands
        assert commands[0] == "apt-get update -y"
        assert commands[1].startswith("gpg --keyserver hkp://keyserver.ubuntu.com:80 --recv-keys 0E98404D386FA1D9")
        assert commands[2].startswith("sh -c gpg --export 0E98404D386FA1D9")
        assert commands[3] == "apt-get update -y"
        assert len(commands) == 4
        assert all(root == store.overlay_path("1") for root, _ in executor.calls)

    def test_retry_failure_is_reported(self, engine, store, executor):
        from common.exceptions import OperationFailedError

        executor.respond("apt-get update", stdout=self.MISSING, times=1)
        executor.fail("apt-get update")

        with pytest.raises(OperationFailedError):
            engine.repair_database("1")

        assert executor.commands.count("apt-get update -y") == 2
        assert not store.overlay_exists("1")

    def test_defaults_to_current_snapshot(self, engine, executor, store):
        engine.repair_database()
        assert executor.calls[0][0] == store.overlay_path("1")

    def test_base_refused(self, engine, env):
        from common.exceptions import ProtectedSnapshotError

        with pytest.raises(ProtectedSnapshotError):
            engine.repair_database("0")

        engine.env = env.with_current("0")
        with pytest.raises(ProtectedSnapshotError):
            engine.repair_database()

    def test_in_use_refused(self, engine, store, executor):
        from common.exceptions import SnapshotInUseError

        store.create_overlay("1")
        with pytest.raises(SnapshotInUseError):
            engine.repair_database("1")
        assert executor.calls == []

    def test_missing_refused(self, engine):
        from common.exceptions import SnapshotNotFoundError

        with pytest.raises(SnapshotNotFoundError):
            engine.repair_database("9")


@pytest.mark.unit
class TestMaintenance:
    """Tests for unlock, listing and subtree operations."""

    def test_unlock(self, engine, store):
        store.create_overlay("1")
        assert engine.unlock("1") is True
        assert not store.overlay_exists("1")
        assert engine.unlock("1") is False

    def test_list_packages(self, engine, store, executor):
        executor.respond("dpkg-query", stdout="vim\nbash\n")

        assert engine.list_packages("1") == ["bash", "vim"]
        assert executor.calls[0][0] == store.snapshot_path("1")

    def test_upgrade_tree_parents_first(self, engine, store, executor):
        from snapkg.tree import SnapshotTree

        tree = SnapshotTree()
        tree.insert("1", "root")
        tree.insert("2", "1")
        tree.insert("3", "1")
        store.add("2")
        store.add("3")

        assert engine.upgrade_tree(tree, "1", noconfirm=True) == ["1", "2", "3"]
        roots = [root for root, argv in executor.calls if argv[1] == "upgrade"]
        assert roots == [store.overlay_path(s) for s in ["1", "2", "3"]]

    def test_tree_walk_aborts_when_in_use(self, engine, store, executor):
        from common.exceptions import SnapshotInUseError
        from snapkg.tree import SnapshotTree

        tree = SnapshotTree()
        tree.insert("1", "root")
        tree.insert("2", "1")
        store.add("2")
        store.create_overlay("2")

        with pytest.raises(SnapshotInUseError):
            engine.uninstall_from_tree(tree, "1", ["vim"])
        assert executor.calls == []

    def test_uninstall_from_tree(self, engine, store, profile_writer):
        from snapkg.manifest import ProfileManifest
        from snapkg.tree import SnapshotTree

        tree = SnapshotTree()
        tree.insert("1", "root")
        tree.insert("2", "1")
        for snapshot in ["1", "2"]:
            profile_writer(store, snapshot, system=["bash"], profile=["vim", "git"])

        assert engine.uninstall_from_tree(tree, "1", ["vim"], noconfirm=True) == ["1", "2"]
        for snapshot in ["1", "2"]:
            manifest = ProfileManifest.load(store.snapshot_path(snapshot) / "etc/snapkg/profile")
            assert manifest.profile_packages == ["git"]
