"""
Pytest configuration and shared fixtures for stackkit tests.
"""

from pathlib import Path
from typing import Callable, Dict, Optional

import pytest

from stackkit.build.cache import CacheStore
from stackkit.build.types import BaseConfigOpts, BuildOpts, Package
from stackkit.core.types import PackageIdentifier, PackageName, Version, VersionRange


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line("markers", "unit: marks tests as unit tests")


# ============================================================================
# Shared Test Fixtures
# ============================================================================


@pytest.fixture
def make_package() -> Callable[..., Package]:
    """Factory for packages with string names, versions and ranges."""

    def _make(
        name: str,
        version: str = "1.0",
        deps: Optional[Dict[str, str]] = None,
        **kwargs,
    ) -> Package:
        return Package(
            name=PackageName(name),
            version=Version.parse(version),
            dependencies={
                PackageName(dep): VersionRange.parse(rng)
                for dep, rng in (deps or {}).items()
            },
            **kwargs,
        )

    return _make


@pytest.fixture
def base_config_opts(tmp_path: Path) -> BaseConfigOpts:
    """Install roots and databases below a temporary directory."""
    return BaseConfigOpts(
        snapshot_db=tmp_path / "snapshot" / "pkgdb",
        local_db=tmp_path / "local" / "pkgdb",
        snapshot_install_root=tmp_path / "snapshot",
        local_install_root=tmp_path / "local",
        build_opts=BuildOpts(),
    )


@pytest.fixture
def cache_store(tmp_path: Path) -> CacheStore:
    """Cache store for the Cabal-1.22.4.0 toolchain."""
    return CacheStore(
        toolchain=PackageIdentifier.parse("Cabal-1.22.4.0"),
        flag_cache_dir=tmp_path / "flag-cache",
        snapshot_install_root=tmp_path / "snapshot",
        local_install_root=tmp_path / "local",
    )


@pytest.fixture
def package_dir(tmp_path: Path) -> Path:
    """A minimal package directory with a manifest and one module."""
    directory = tmp_path / "project" / "mypkg"
    (directory / "src").mkdir(parents=True)
    (directory / "mypkg.cabal").write_text("name: mypkg\nversion: 1.0\n")
    (directory / "src" / "Lib.hs").write_text("module Lib where\n")
    return directory
