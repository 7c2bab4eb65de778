"""
Plan data model.

Every entity here is built once at the start of a run (from manifests and
cache reads) and is read-only afterwards. The only function with real logic
is ``configure_opts``, which renders the configure arguments of a package.
Its output is stored in the config cache, so any change to what it renders
for the same input invalidates every cached configuration.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import (
    AbstractSet,
    FrozenSet,
    Iterable,
    List,
    Mapping,
    Optional,
    Tuple,
    Union,
)

from stackkit.core.types import (
    FlagName,
    GhcPkgId,
    PackageIdentifier,
    PackageName,
    Version,
    VersionRange,
)


class Location(Enum):
    """Where a package is installed: the shared snapshot database or the
    project-local one."""

    SNAPSHOT = "snapshot"
    LOCAL = "local"


class NeededSteps(Enum):
    """How much of a local package's build has to run."""

    ALL = "all"
    SKIP_CONFIGURE = "skip-configure"
    JUST_FINAL = "just-final"


class FinalAction(Enum):
    """Action run after building a wanted package, before installing it."""

    NOTHING = "nothing"
    TESTS = "tests"
    BENCHMARKS = "benchmarks"
    HADDOCK = "haddock"


@dataclass(frozen=True)
class Package:
    """
    A package manifest after resolution with its flags.

    Attributes:
        name: Package name
        version: Package version
        flags: Flag assignment the package is built with
        dependencies: Library dependencies and their version ranges
        tools: Build-tool dependencies and their version ranges
        files: Source files, relative to the package directory
        has_library: Whether the package registers a library
        executables: Names of the executables the package installs
    """

    name: PackageName
    version: Version
    flags: Mapping[FlagName, bool] = field(default_factory=dict)
    dependencies: Mapping[PackageName, VersionRange] = field(default_factory=dict)
    tools: Mapping[PackageName, VersionRange] = field(default_factory=dict)
    files: FrozenSet[Path] = frozenset()
    has_library: bool = True
    executables: Tuple[str, ...] = ()

    @property
    def identifier(self) -> PackageIdentifier:
        return PackageIdentifier(self.name, self.version)

    def all_dependencies(self) -> List[Tuple[PackageName, VersionRange]]:
        """Library and tool dependencies, sorted by name.

        A package named in both is required to satisfy both ranges.
        """
        merged = {}
        for deps in (self.dependencies, self.tools):
            for name, version_range in deps.items():
                if name in merged and merged[name] != version_range:
                    merged[name] = VersionRange(
                        f"{merged[name]} && {version_range}",
                        tuple(
                            a + b
                            for a in merged[name].alternatives
                            for b in version_range.alternatives
                        ),
                    )
                else:
                    merged[name] = version_range
        return sorted(merged.items())


@dataclass(frozen=True)
class ConfigCache:
    """
    Stored on disk to know whether the configure options or the installed
    dependencies have changed.

    Two equal values mean the configure step can be reused. The dependency
    ids are needed in addition to the options because the options only
    mention name and version of each dependency.
    """

    options: Tuple[bytes, ...]
    dependencies: FrozenSet[GhcPkgId]

    @classmethod
    def from_options(
        cls, options: Iterable[str], dependencies: Iterable[GhcPkgId]
    ) -> "ConfigCache":
        return cls(
            tuple(opt.encode("utf-8") for opt in options), frozenset(dependencies)
        )


@dataclass(frozen=True, order=True)
class ModTime:
    """Modification time in integer nanoseconds, so it round-trips exactly."""

    nanoseconds: int

    @classmethod
    def of(cls, path: Union[str, Path]) -> "ModTime":
        return cls(os.stat(path).st_mtime_ns)


@dataclass(frozen=True)
class BuildCache:
    """Modification times of the files of a package at its last build."""

    times: Mapping[str, ModTime]


@dataclass(frozen=True)
class LocalPackage:
    """
    A package whose source lives in the project.

    Attributes:
        package: The resolved manifest
        wanted: Whether it was requested as a build target
        directory: Package directory
        cabal_file: The manifest file
        last_config_cache: Configure options of the last configure, if any
        dirty: Whether files changed since the last build
    """

    package: Package
    wanted: bool
    directory: Path
    cabal_file: Path
    last_config_cache: Optional[ConfigCache] = None
    dirty: bool = True


@dataclass(frozen=True)
class BuildOpts:
    """
    Options for one build run.

    Attributes:
        targets: Requested targets, as given by the user
        library_profiling: Build profiling libraries
        executable_profiling: Build profiling executables
        optimizations: Force optimization on or off; None keeps the default
        final_action: What to run for wanted packages after building
        dry_run: Only report what would be built
        ghc_options: Extra compiler options for wanted packages
        flags: Per-package flag overrides
    """

    targets: Tuple[str, ...] = ()
    library_profiling: bool = False
    executable_profiling: bool = False
    optimizations: Optional[bool] = None
    final_action: FinalAction = FinalAction.NOTHING
    dry_run: bool = False
    ghc_options: Tuple[str, ...] = ()
    flags: Mapping[PackageName, Mapping[FlagName, bool]] = field(default_factory=dict)


@dataclass(frozen=True)
class BaseConfigOpts:
    """Everything besides the package itself that goes into its configure
    options."""

    snapshot_db: Path
    local_db: Path
    snapshot_install_root: Path
    local_install_root: Path
    build_opts: BuildOpts = field(default_factory=BuildOpts)

    def package_db(self, location: Location) -> Path:
        if location is Location.SNAPSHOT:
            return self.snapshot_db
        return self.local_db

    def install_root(self, location: Location) -> Path:
        if location is Location.SNAPSHOT:
            return self.snapshot_install_root
        return self.local_install_root


def _without_trailing_separator(path: Path) -> str:
    text = str(path)
    while len(text) > 1 and text.endswith(os.sep):
        text = text[:-1]
    return text


def configure_opts(
    base: BaseConfigOpts,
    dependencies: AbstractSet[GhcPkgId],
    wanted: bool,
    location: Location,
    flags: Mapping[FlagName, bool],
) -> List[str]:
    """
    Render the configure arguments of a package.

    Pure and deterministic: dependencies and flags are emitted in sorted
    order regardless of the iteration order of the inputs.
    """
    bopts = base.build_opts
    install_root = base.install_root(location)

    opts = ["--user", "--package-db=clear", "--package-db=global"]

    if location is Location.SNAPSHOT:
        dbs = [base.snapshot_db]
    else:
        dbs = [base.snapshot_db, base.local_db]
    opts.extend(f"--package-db={db}" for db in dbs)

    for gid in sorted(dependencies):
        opts.append(f"--constraint={gid.name}=={gid.version}")

    opts.extend(
        [
            "--libdir=" + _without_trailing_separator(install_root / "lib"),
            "--bindir=" + _without_trailing_separator(install_root / "bin"),
            "--datadir=" + _without_trailing_separator(install_root / "share"),
            "--docdir=" + _without_trailing_separator(install_root / "doc"),
        ]
    )

    if bopts.library_profiling or bopts.executable_profiling:
        opts.append("--enable-library-profiling")
    if bopts.executable_profiling:
        opts.append("--enable-executable-profiling")
    if bopts.optimizations is not None:
        opts.append(
            "--enable-optimization" if bopts.optimizations else "--disable-optimization"
        )
    if wanted and bopts.final_action is FinalAction.TESTS:
        opts.append("--enable-tests")
    if wanted and bopts.final_action is FinalAction.BENCHMARKS:
        opts.append("--enable-benchmarks")

    for name, enabled in sorted(flags.items()):
        opts.append(f"-f{'' if enabled else '-'}{name}")

    if wanted:
        for ghc_option in bopts.ghc_options:
            opts.extend(["--ghc-options", ghc_option])

    return opts


@dataclass(frozen=True)
class TaskConfigOpts:
    """
    Configure options that can only be rendered once the installed ids of
    the ``missing`` dependencies are known.

    ``present`` holds the ids of dependencies that were installed before the
    run started.
    """

    missing: FrozenSet[PackageIdentifier]
    present: FrozenSet[GhcPkgId]
    base: BaseConfigOpts
    wanted: bool
    location: Location
    flags: Mapping[FlagName, bool] = field(default_factory=dict)

    def render(
        self, resolved: Mapping[PackageIdentifier, Optional[GhcPkgId]]
    ) -> List[str]:
        """
        Render the options given the ids of every missing dependency.

        A dependency that installs no library maps to None.

        Raises:
            ValueError: If ``resolved`` does not cover exactly ``missing``
        """
        if set(resolved) != set(self.missing):
            raise ValueError(
                f"Expected ids for {sorted(map(str, self.missing))}, "
                f"got {sorted(map(str, resolved))}"
            )
        dependencies = set(self.present)
        dependencies.update(gid for gid in resolved.values() if gid is not None)
        return configure_opts(
            self.base, dependencies, self.wanted, self.location, self.flags
        )

    def __str__(self):
        missing = ", ".join(str(ident) for ident in sorted(self.missing))
        without = configure_opts(
            self.base, self.present, self.wanted, self.location, self.flags
        )
        return f"Missing: {{{missing}}}. Without those: {without}"


@dataclass(frozen=True)
class LocalTask:
    """Build a local package; ``steps`` says how much of it."""

    local_package: LocalPackage
    steps: NeededSteps


@dataclass(frozen=True)
class UpstreamTask:
    """Build a package fetched from the package index."""

    package: Package
    location: Location


TaskType = Union[LocalTask, UpstreamTask]


@dataclass(frozen=True)
class Task:
    """
    A package to build.

    Attributes:
        provides: The package and version this task builds
        kind: Local or upstream, with what is needed to build it
        config_opts: Deferred configure options
        present: Ids of dependencies installed before the run
    """

    provides: PackageIdentifier
    kind: TaskType
    config_opts: TaskConfigOpts
    present: FrozenSet[GhcPkgId] = frozenset()

    @property
    def package(self) -> Package:
        if isinstance(self.kind, LocalTask):
            return self.kind.local_package.package
        return self.kind.package

    @property
    def location(self) -> Location:
        return self.config_opts.location

    @property
    def wanted(self) -> bool:
        return self.config_opts.wanted

    @property
    def is_local(self) -> bool:
        return isinstance(self.kind, LocalTask)


@dataclass(frozen=True)
class Plan:
    """
    Everything to do in one build run.

    Attributes:
        tasks: One task per package name
        unregister: Installed ids to remove before anything is built
    """

    tasks: Mapping[PackageName, Task]
    unregister: FrozenSet[GhcPkgId] = frozenset()


@dataclass(frozen=True)
class InstalledPackage:
    """An installed library. A None ``location`` means the global database,
    which is never modified."""

    ghc_pkg_id: GhcPkgId
    location: Optional[Location]

    @property
    def version(self) -> Version:
        return self.ghc_pkg_id.version


__all__ = [
    "Location",
    "NeededSteps",
    "FinalAction",
    "Package",
    "ConfigCache",
    "ModTime",
    "BuildCache",
    "LocalPackage",
    "BuildOpts",
    "BaseConfigOpts",
    "configure_opts",
    "TaskConfigOpts",
    "LocalTask",
    "UpstreamTask",
    "TaskType",
    "Task",
    "Plan",
    "InstalledPackage",
]
