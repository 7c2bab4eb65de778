"""
Unit tests for the locking module.

Tests cover:
- Install locks per package database
- The configure lock
- Timeout behavior against another process holding the database lock
"""

import threading
import time

import pytest
from filelock import FileLock

from stackkit.core.locking import BuildLocks, LockTimeout


class TestInstallLock:
    """Tests for BuildLocks.install_lock."""

    def test_creates_lock_file_next_to_database(self, tmp_path):
        """Test the file lock lives beside the database."""
        db = tmp_path / "snapshot" / "pkgdb"
        locks = BuildLocks()

        with locks.install_lock(db):
            assert (tmp_path / "snapshot" / "pkgdb.lock").exists()

    def test_serializes_same_database(self, tmp_path):
        """Test two installs into one database never overlap."""
        db = tmp_path / "pkgdb"
        locks = BuildLocks()
        active = []
        overlaps = []

        def install():
            with locks.install_lock(db):
                active.append(1)
                if len(active) > 1:
                    overlaps.append(True)
                time.sleep(0.05)
                active.pop()

        threads = [threading.Thread(target=install) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert overlaps == []

    def test_different_databases_are_independent(self, tmp_path):
        """Test holding one database's lock does not block another."""
        locks = BuildLocks()
        acquired = threading.Event()

        def install_other():
            with locks.install_lock(tmp_path / "local" / "pkgdb"):
                acquired.set()

        with locks.install_lock(tmp_path / "snapshot" / "pkgdb"):
            thread = threading.Thread(target=install_other)
            thread.start()
            assert acquired.wait(timeout=5)
            thread.join()

    def test_timeout_when_held_by_another_process(self, tmp_path):
        """Test LockTimeout when the file lock is held elsewhere."""
        db = tmp_path / "pkgdb"
        locks = BuildLocks(install_timeout=0.1)
        other = FileLock(tmp_path / "pkgdb.lock")

        held = threading.Event()
        released = threading.Event()

        def hold():
            with other:
                held.set()
                released.wait(timeout=5)

        holder = threading.Thread(target=hold)
        holder.start()
        try:
            assert held.wait(timeout=5)
            with pytest.raises(LockTimeout):
                with locks.install_lock(db):
                    pass
        finally:
            released.set()
            holder.join()

    def test_released_after_exception(self, tmp_path):
        """Test the lock is released when the body raises."""
        db = tmp_path / "pkgdb"
        locks = BuildLocks(install_timeout=1)

        with pytest.raises(RuntimeError):
            with locks.install_lock(db):
                raise RuntimeError("install failed")

        with locks.install_lock(db):
            pass


class TestConfigLock:
    """Tests for BuildLocks.config_lock."""

    def test_serializes(self):
        """Test configure steps never overlap."""
        locks = BuildLocks()
        active = []
        overlaps = []

        def configure():
            with locks.config_lock():
                active.append(1)
                if len(active) > 1:
                    overlaps.append(True)
                time.sleep(0.02)
                active.pop()

        threads = [threading.Thread(target=configure) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert overlaps == []

    def test_locks_are_per_instance(self):
        """Test two executions do not share locks."""
        first = BuildLocks()
        second = BuildLocks()

        with first.config_lock():
            with second.config_lock():
                pass
