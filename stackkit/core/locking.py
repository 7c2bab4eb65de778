"""
Locks shared by the workers of one plan execution.

Two resources are shared between concurrently running build tasks:
- a package database, into which ``install`` registers packages. Installs
  into the same database are serialized by an install lock per database.
  Besides the in-process lock a file lock next to the database keeps other
  stackkit processes out as well.
- the configure step, serialized by a single configure lock.

The locks are owned by the executor and handed to every worker; there are
no module-level singletons.

Usage:
    locks = BuildLocks()
    with locks.install_lock(snapshot_db):
        register_package(...)
"""

import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict

from filelock import FileLock, Timeout as LockTimeout

logger = logging.getLogger(__name__)


class BuildLocks:
    """
    Install and configure locks for one execution.

    Attributes:
        install_timeout: Maximum wait for another process' install, in seconds
    """

    def __init__(self, install_timeout: float = 300):
        self.install_timeout = install_timeout
        self._config_lock = threading.Lock()
        self._install_locks: Dict[Path, threading.Lock] = {}
        self._guard = threading.Lock()

    def _install_lock_for(self, package_db: Path) -> threading.Lock:
        with self._guard:
            lock = self._install_locks.get(package_db)
            if lock is None:
                lock = self._install_locks[package_db] = threading.Lock()
            return lock

    @contextmanager
    def install_lock(self, package_db: Path):
        """
        Acquire the install lock of ``package_db``.

        Raises:
            LockTimeout: If another process holds the database lock for
                longer than ``install_timeout``
        """
        package_db = Path(package_db)
        lock_path = package_db.parent / f"{package_db.name}.lock"
        lock_path.parent.mkdir(parents=True, exist_ok=True)

        with self._install_lock_for(package_db):
            try:
                with FileLock(lock_path, timeout=self.install_timeout):
                    logger.debug(f"Acquired install lock: {lock_path}")
                    yield
                    logger.debug(f"Released install lock: {lock_path}")
            except LockTimeout as e:
                logger.error(
                    f"Could not acquire install lock after {self.install_timeout}s. "
                    "Another stackkit process may be installing into this database."
                )
                raise LockTimeout(str(lock_path)) from e

    @contextmanager
    def config_lock(self):
        """Acquire the configure lock."""
        with self._config_lock:
            yield


__all__ = [
    "BuildLocks",
    "LockTimeout",
]
