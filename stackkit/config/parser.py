"""YAML configuration parser for stackkit.

This module provides parsing and validation for stackkit.yaml configuration files.

Example stackkit.yaml::

    version: 1
    toolchain: Cabal-1.22.4.0
    packages:
      - .
      - lib/
    build:
      library_profiling: false
      optimizations: true
      final_action: tests
      jobs: auto
      ghc_options: [-Wall]
      flags:
        mypackage:
          fast: true
    paths:
      stack_root: ~/.stackkit
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

import yaml

from stackkit.build.execute import get_concurrency
from stackkit.build.fetch import DEFAULT_INDEX_URL
from stackkit.build.types import BaseConfigOpts, BuildOpts, FinalAction
from stackkit.core.exceptions import ConfigError, InvalidIdentifierError
from stackkit.core.types import FlagName, PackageIdentifier, PackageName

logger = logging.getLogger(__name__)

DEFAULT_STACK_ROOT = "~/.stackkit"


@dataclass
class BuildConfig:
    """Build configuration."""

    targets: List[str] = field(default_factory=list)
    library_profiling: bool = False
    executable_profiling: bool = False
    optimizations: Optional[bool] = None
    final_action: str = "nothing"  # 'nothing', 'tests', 'benchmarks', 'haddock'
    dry_run: bool = False
    jobs: Union[str, int] = "auto"  # 'auto' or number
    ghc_options: List[str] = field(default_factory=list)
    flags: Dict[str, Dict[str, bool]] = field(default_factory=dict)


@dataclass
class PathsConfig:
    """Where databases, install roots and caches live."""

    stack_root: Path
    project_root: Path
    snapshot_install_root: Path
    local_install_root: Path
    snapshot_db: Path
    local_db: Path
    flag_cache_dir: Path
    download_dir: Path
    unpack_dir: Path


@dataclass
class StackKitConfig:
    """Complete stackkit configuration."""

    version: int
    toolchain: PackageIdentifier
    paths: PathsConfig
    packages: List[Path] = field(default_factory=list)
    index_url: str = DEFAULT_INDEX_URL
    build: BuildConfig = field(default_factory=BuildConfig)

    def to_build_opts(self) -> BuildOpts:
        flags = {
            PackageName.parse(package): {
                FlagName.parse(flag): enabled for flag, enabled in package_flags.items()
            }
            for package, package_flags in self.build.flags.items()
        }
        return BuildOpts(
            targets=tuple(self.build.targets),
            library_profiling=self.build.library_profiling,
            executable_profiling=self.build.executable_profiling,
            optimizations=self.build.optimizations,
            final_action=FinalAction(self.build.final_action),
            dry_run=self.build.dry_run,
            ghc_options=tuple(self.build.ghc_options),
            flags=flags,
        )

    def to_base_config_opts(self) -> BaseConfigOpts:
        return BaseConfigOpts(
            snapshot_db=self.paths.snapshot_db,
            local_db=self.paths.local_db,
            snapshot_install_root=self.paths.snapshot_install_root,
            local_install_root=self.paths.local_install_root,
            build_opts=self.to_build_opts(),
        )

    def jobs(self) -> int:
        """Number of concurrent build tasks; 'auto' uses every available CPU."""
        if self.build.jobs == "auto":
            return get_concurrency()
        return int(self.build.jobs)


def parse_config(config_path: Path) -> StackKitConfig:
    """
    Parse stackkit.yaml configuration file.

    Relative paths in the file are relative to the directory containing it.

    Args:
        config_path: Path to stackkit.yaml

    Returns:
        Parsed and validated configuration

    Raises:
        ConfigError: If configuration is invalid
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax: {e}")

    if data is None:
        raise ConfigError("Configuration file is empty")
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping")

    config = _parse_and_validate(data, config_path.resolve().parent)
    logger.debug(f"Loaded configuration from {config_path}")
    return config


def _parse_and_validate(data: dict, project_root: Path) -> StackKitConfig:
    """Parse and validate configuration data."""
    if "version" not in data:
        raise ConfigError("Missing required field: version")

    if data["version"] != 1:
        raise ConfigError(f"Unsupported version: {data['version']} (expected 1)")

    if "toolchain" not in data:
        raise ConfigError("Missing required field: toolchain")
    try:
        toolchain = PackageIdentifier.parse(str(data["toolchain"]))
    except InvalidIdentifierError as e:
        raise ConfigError(f"Invalid toolchain: {e}")

    packages_data = data.get("packages", ["."])
    if not isinstance(packages_data, list) or not packages_data:
        raise ConfigError("packages must be a non-empty list of directories")
    packages = []
    for entry in packages_data:
        directory = _resolve(project_root, str(entry))
        if directory in packages:
            raise ConfigError(f"Duplicate package directory: {entry}")
        packages.append(directory)

    return StackKitConfig(
        version=data["version"],
        toolchain=toolchain,
        paths=_parse_paths(data.get("paths") or {}, project_root, toolchain),
        packages=packages,
        index_url=data.get("index_url", DEFAULT_INDEX_URL),
        build=_parse_build_config(data.get("build") or {}),
    )


def _resolve(base: Path, value: str) -> Path:
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = base / path
    return path.resolve()


def _parse_paths(data: dict, project_root: Path, toolchain: PackageIdentifier) -> PathsConfig:
    """Parse path configuration, filling in the defaults."""
    if not isinstance(data, dict):
        raise ConfigError("paths must be a dictionary")

    known = {
        "stack_root",
        "snapshot_install_root",
        "local_install_root",
        "snapshot_db",
        "local_db",
        "flag_cache_dir",
        "download_dir",
        "unpack_dir",
    }
    unknown = set(data) - known
    if unknown:
        raise ConfigError(f"Unknown paths entries: {', '.join(sorted(unknown))}")

    def path(key: str, default: Path) -> Path:
        if key in data:
            return _resolve(project_root, str(data[key]))
        return default

    stack_root = path("stack_root", _resolve(project_root, DEFAULT_STACK_ROOT))
    snapshot_install_root = path(
        "snapshot_install_root", stack_root / "snapshots" / str(toolchain)
    )
    local_install_root = path(
        "local_install_root", project_root / ".stack-work" / "install" / str(toolchain)
    )
    return PathsConfig(
        stack_root=stack_root,
        project_root=project_root,
        snapshot_install_root=snapshot_install_root,
        local_install_root=local_install_root,
        snapshot_db=path("snapshot_db", snapshot_install_root / "pkgdb"),
        local_db=path("local_db", local_install_root / "pkgdb"),
        flag_cache_dir=path("flag_cache_dir", snapshot_install_root / "flag-cache"),
        download_dir=path("download_dir", stack_root / "downloads"),
        unpack_dir=path("unpack_dir", stack_root / "unpacked"),
    )


def _parse_build_config(data: dict) -> BuildConfig:
    """Parse build configuration."""
    if not isinstance(data, dict):
        raise ConfigError("build must be a dictionary")

    valid_actions = [action.value for action in FinalAction]
    final_action = data.get("final_action", "nothing")
    if final_action not in valid_actions:
        raise ConfigError(
            f"Invalid final_action: {final_action} (expected one of {valid_actions})"
        )

    jobs = data.get("jobs", "auto")
    if jobs != "auto" and (not isinstance(jobs, int) or isinstance(jobs, bool) or jobs < 1):
        raise ConfigError(f"Invalid jobs: {jobs} (expected 'auto' or a positive number)")

    optimizations = data.get("optimizations")
    if optimizations is not None and not isinstance(optimizations, bool):
        raise ConfigError("optimizations must be true, false or omitted")

    for key in ("library_profiling", "executable_profiling", "dry_run"):
        if not isinstance(data.get(key, False), bool):
            raise ConfigError(f"{key} must be true or false")

    return BuildConfig(
        targets=[str(t) for t in _parse_list(data, "targets")],
        library_profiling=data.get("library_profiling", False),
        executable_profiling=data.get("executable_profiling", False),
        optimizations=optimizations,
        final_action=final_action,
        dry_run=data.get("dry_run", False),
        jobs=jobs,
        ghc_options=[str(o) for o in _parse_list(data, "ghc_options")],
        flags=_parse_flags(data.get("flags") or {}),
    )


def _parse_list(data: dict, key: str) -> list:
    value = data.get(key) or []
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list")
    return value


def _parse_flags(data: dict) -> Dict[str, Dict[str, bool]]:
    """Parse per-package flag overrides."""
    if not isinstance(data, dict):
        raise ConfigError("flags must be a dictionary of packages")

    flags = {}
    for package, package_flags in data.items():
        try:
            PackageName.parse(str(package))
        except InvalidIdentifierError as e:
            raise ConfigError(f"Invalid package in flags: {e}")
        if not isinstance(package_flags, dict):
            raise ConfigError(f"flags.{package} must be a dictionary")
        for flag, enabled in package_flags.items():
            try:
                FlagName.parse(str(flag))
            except InvalidIdentifierError as e:
                raise ConfigError(f"Invalid flag of {package}: {e}")
            if not isinstance(enabled, bool):
                raise ConfigError(f"flags.{package}.{flag} must be true or false")
        flags[str(package)] = {str(k): v for k, v in package_flags.items()}
    return flags


__all__ = [
    "BuildConfig",
    "PathsConfig",
    "StackKitConfig",
    "ConfigError",
    "parse_config",
]
