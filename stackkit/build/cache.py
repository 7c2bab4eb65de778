"""
Cache information about previous builds.

Per package directory two files are kept below
``<dir>/.stack-work/dist/<toolchain>/``:

- ``stack-build-cache``: modification times of the package's files
- ``stack-config-cache``: configure options and dependency ids

``<toolchain>`` is the identifier of the build library (e.g.
``Cabal-1.22.4.0``), so switching toolchains starts from empty caches.

Besides those, a flag cache keyed by installed package id records how an
upstream package was configured, and zero-content marker files record which
executables are installed.

A missing cache file is a cache miss. Any other I/O error propagates.
"""

import logging
import os
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional

from stackkit.build.binary import (
    decode_build_cache,
    decode_config_cache,
    encode_build_cache,
    encode_config_cache,
)
from stackkit.build.types import BuildCache, ConfigCache, Location, ModTime, Package
from stackkit.core.exceptions import CacheDecodeError
from stackkit.core.filesystem import atomic_write, remove_file_if_exists
from stackkit.core.types import (
    GhcPkgId,
    PackageIdentifier,
    parse_package_identifier_maybe,
)

logger = logging.getLogger(__name__)

WORK_DIR = ".stack-work"
BUILD_CACHE_FILE = "stack-build-cache"
CONFIG_CACHE_FILE = "stack-config-cache"
INSTALLED_EXES_DIR = "installed-packages"


class CacheStore:
    """
    Reads and writes the build, config and flag caches.

    Attributes:
        toolchain: Identifier of the build library the caches belong to
        flag_cache_dir: Directory of the flag cache files
        snapshot_install_root: Install root of snapshot packages
        local_install_root: Install root of local packages

    Example:
        >>> store = CacheStore(PackageIdentifier.parse("Cabal-1.22.4.0"),
        ...                    flag_cache_dir, snap_root, local_root)
        >>> store.write_config_cache(pkg_dir, ["--user"], set())
        >>> store.try_get_config_cache(pkg_dir)
        ConfigCache(options=(b'--user',), dependencies=frozenset())
    """

    def __init__(
        self,
        toolchain: PackageIdentifier,
        flag_cache_dir: Path,
        snapshot_install_root: Path,
        local_install_root: Path,
    ):
        self.toolchain = toolchain
        self.flag_cache_dir = Path(flag_cache_dir)
        self.snapshot_install_root = Path(snapshot_install_root)
        self.local_install_root = Path(local_install_root)

    # ------------------------------------------------------------------
    # Per-package caches
    # ------------------------------------------------------------------

    def dist_dir(self, package_dir: Path) -> Path:
        return Path(package_dir) / WORK_DIR / "dist" / str(self.toolchain)

    def build_cache_file(self, package_dir: Path) -> Path:
        return self.dist_dir(package_dir) / BUILD_CACHE_FILE

    def config_cache_file(self, package_dir: Path) -> Path:
        return self.dist_dir(package_dir) / CONFIG_CACHE_FILE

    def try_get_build_cache(self, package_dir: Path) -> Optional[BuildCache]:
        """Read the dirtiness cache of a package, or None if there is none."""
        data = _read_if_exists(self.build_cache_file(package_dir))
        if data is None:
            return None
        try:
            return decode_build_cache(data)
        except CacheDecodeError as e:
            logger.debug(f"Ignoring undecodable build cache in {package_dir}: {e}")
            return None

    def try_get_config_cache(self, package_dir: Path) -> Optional[ConfigCache]:
        """Read the configure cache of a package, or None if there is none."""
        data = _read_if_exists(self.config_cache_file(package_dir))
        if data is None:
            return None
        try:
            return decode_config_cache(data)
        except CacheDecodeError as e:
            logger.debug(f"Ignoring undecodable config cache in {package_dir}: {e}")
            return None

    def write_build_cache(self, package_dir: Path, times: Mapping[str, ModTime]):
        """Write the dirtiness cache for this package's files."""
        path = self.build_cache_file(package_dir)
        atomic_write(path, encode_build_cache(BuildCache(dict(times))))
        logger.debug(f"Wrote build cache: {path}")

    def write_config_cache(
        self,
        package_dir: Path,
        options: Iterable[str],
        dependencies: Iterable[GhcPkgId],
    ):
        """Write the configure cache for this package."""
        path = self.config_cache_file(package_dir)
        cache = ConfigCache.from_options(options, dependencies)
        atomic_write(path, encode_config_cache(cache))
        logger.debug(f"Wrote config cache: {path}")

    def delete_caches(self, package_dir: Path):
        """Delete both caches of a package. Absent files are fine."""
        remove_file_if_exists(self.build_cache_file(package_dir))
        remove_file_if_exists(self.config_cache_file(package_dir))

    # ------------------------------------------------------------------
    # Flag cache
    # ------------------------------------------------------------------

    def flag_cache_file(self, gid: GhcPkgId) -> Path:
        return self.flag_cache_dir / str(gid)

    def try_get_flag_cache(self, gid: GhcPkgId) -> Optional[ConfigCache]:
        """Read how the installed package ``gid`` was configured."""
        data = _read_if_exists(self.flag_cache_file(gid))
        if data is None:
            return None
        try:
            return decode_config_cache(data)
        except CacheDecodeError as e:
            logger.debug(f"Ignoring undecodable flag cache for {gid}: {e}")
            return None

    def write_flag_cache(
        self,
        gid: GhcPkgId,
        options: Iterable[bytes],
        dependencies: Iterable[GhcPkgId],
    ):
        cache = ConfigCache(tuple(options), frozenset(dependencies))
        atomic_write(self.flag_cache_file(gid), encode_config_cache(cache))

    # ------------------------------------------------------------------
    # Installed executables
    # ------------------------------------------------------------------

    def exe_installed_dir(self, location: Location) -> Path:
        if location is Location.SNAPSHOT:
            return self.snapshot_install_root / INSTALLED_EXES_DIR
        return self.local_install_root / INSTALLED_EXES_DIR

    def get_installed_exes(self, location: Location) -> List[PackageIdentifier]:
        """List the packages whose executables are marked installed."""
        try:
            names = sorted(os.listdir(self.exe_installed_dir(location)))
        except FileNotFoundError:
            return []
        idents = []
        for name in names:
            ident = parse_package_identifier_maybe(name)
            if ident is not None:
                idents.append(ident)
        return idents

    def mark_exe_installed(self, location: Location, ident: PackageIdentifier):
        directory = self.exe_installed_dir(location)
        directory.mkdir(parents=True, exist_ok=True)
        (directory / str(ident)).write_text("Installed")


def _read_if_exists(path: Path) -> Optional[bytes]:
    try:
        return path.read_bytes()
    except FileNotFoundError:
        return None


def package_files(package: Package, cabal_file: Path) -> List[Path]:
    """
    All files that make up a package, including its manifest.

    When the package declares no files, everything under its directory
    except the work directory is taken.
    """
    package_dir = cabal_file.parent
    if package.files:
        files = {package_dir / f for f in package.files}
    else:
        files = set()
        for root, dirs, filenames in os.walk(package_dir):
            dirs[:] = [d for d in dirs if d != WORK_DIR]
            files.update(Path(root) / name for name in filenames)
    files.add(cabal_file)
    return sorted(files)


def get_package_file_mod_times(
    package: Package, cabal_file: Path
) -> Dict[str, ModTime]:
    """
    Modification times of all known files of the package.

    Files that do not exist are left out, so deleting a declared file changes
    the result just like touching it does.
    """
    times = {}
    for path in package_files(package, cabal_file):
        try:
            times[str(path)] = ModTime.of(path)
        except FileNotFoundError:
            continue
    return times


__all__ = [
    "WORK_DIR",
    "CacheStore",
    "package_files",
    "get_package_file_mod_times",
]
