"""
Installed package databases.

The executor only needs three queries: list the installed ids of a
database, find the id of a freshly installed package, and unregister an id.
``PackageDatabase`` is that interface; ``GhcPkgDatabase`` implements it by
running ``ghc-pkg``.
"""

import logging
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

from stackkit.build.types import Location
from stackkit.core.exceptions import InvalidIdentifierError, PackageDatabaseError
from stackkit.core.types import GhcPkgId, PackageName

logger = logging.getLogger(__name__)


class PackageDatabase(ABC):
    """Query and modify the snapshot and local package databases."""

    @abstractmethod
    def list_installed(self, location: Location) -> List[GhcPkgId]:
        """All ids registered in the database of ``location``."""

    @abstractmethod
    def unregister(self, gid: GhcPkgId):
        """Remove ``gid`` from whichever database holds it."""

    def find_package_id(
        self, location: Location, name: PackageName
    ) -> Optional[GhcPkgId]:
        """The id of the newest registered version of ``name``, if any."""
        candidates = [gid for gid in self.list_installed(location) if gid.name == name]
        if not candidates:
            return None
        return max(candidates, key=lambda gid: gid.version)


class GhcPkgDatabase(PackageDatabase):
    """
    Package databases managed with ``ghc-pkg``.

    Attributes:
        snapshot_db: Path of the snapshot database
        local_db: Path of the local database
        ghc_pkg: The ghc-pkg executable
    """

    def __init__(self, snapshot_db: Path, local_db: Path, ghc_pkg: str = "ghc-pkg"):
        self.snapshot_db = Path(snapshot_db)
        self.local_db = Path(local_db)
        self.ghc_pkg = ghc_pkg

    def _db(self, location: Location) -> Path:
        if location is Location.SNAPSHOT:
            return self.snapshot_db
        return self.local_db

    def _run(self, db: Path, *args: str) -> str:
        cmd = [
            self.ghc_pkg,
            "--no-user-package-db",
            f"--package-db={db}",
            *args,
        ]
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as e:
            raise PackageDatabaseError(
                f"Failed to execute {self.ghc_pkg}: {e}\nCommand: {' '.join(cmd)}"
            ) from e

        if result.returncode != 0:
            raise PackageDatabaseError(
                f"{self.ghc_pkg} failed with exit code {result.returncode}\n"
                f"Command: {' '.join(cmd)}\n"
                f"Error: {result.stderr.strip()}"
            )
        return result.stdout

    def list_installed(self, location: Location) -> List[GhcPkgId]:
        db = self._db(location)
        if not db.exists():
            return []
        output = self._run(db, "dump", "--expand-pkgroot")
        ids = []
        for line in output.splitlines():
            if not line.startswith("id:"):
                continue
            text = line[len("id:") :].strip()
            try:
                ids.append(GhcPkgId.parse(text))
            except InvalidIdentifierError:
                logger.warning(f"Ignoring unparsable package id in {db}: {text}")
        return sorted(ids)

    def unregister(self, gid: GhcPkgId):
        for location in (Location.LOCAL, Location.SNAPSHOT):
            if gid in self.list_installed(location):
                logger.info(f"Unregistering {gid} from {self._db(location)}")
                self._run(self._db(location), "unregister", "--force", "--ipid", str(gid))
                return
        logger.debug(f"{gid} is not registered, nothing to unregister")


__all__ = ["PackageDatabase", "GhcPkgDatabase"]
