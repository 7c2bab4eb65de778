"""
Construct a build plan from the requested targets.

Resolution is a depth-first walk over the dependency graph, starting at the
requested targets. Every package name is resolved once, to one of:

- an installed package that can be used as is (no task)
- a task, local or upstream, together with the dependencies it still waits
  for (``missing``) and the ones already installed (``present``)
- a failure

The walk keeps an explicit stack instead of recursing, so deep dependency
chains do not hit the interpreter's recursion limit. A package found on the
stack again is a cycle.

Failures do not stop the walk: every failure reachable from the targets is
collected and reported together as ``ConstructPlanExceptions``.

Example:
    >>> plan = construct_plan(
    ...     targets={PackageName("app")},
    ...     local_packages=[app_local_package],
    ...     installed=installed_packages,
    ...     snapshot=snapshot_packages,
    ...     base_config_opts=base,
    ... )
    >>> sorted(str(name) for name in plan.tasks)
    ['app', 'mtl']
"""

import logging
from dataclasses import dataclass, field
from typing import (
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Set,
    Tuple,
    Union,
)

from stackkit.build.cache import CacheStore
from stackkit.build.types import (
    BaseConfigOpts,
    ConfigCache,
    InstalledPackage,
    LocalPackage,
    LocalTask,
    Location,
    NeededSteps,
    Package,
    Plan,
    Task,
    TaskConfigOpts,
    UpstreamTask,
)
from stackkit.core.exceptions import (
    ConstructPlanException,
    ConstructPlanExceptions,
    CouldntResolveItsDependencies,
    DependencyCycleDetected,
    DependencyMismatch,
    DependencyPlanFailures,
    NotInBuildPlan,
    UnknownPackage,
)
from stackkit.core.types import (
    FlagName,
    GhcPkgId,
    PackageIdentifier,
    PackageName,
    Version,
    VersionRange,
)

logger = logging.getLogger(__name__)


@dataclass
class _Found:
    """A package name that resolved successfully."""

    version: Version
    location: Location
    task: Optional[Task] = None
    ghc_pkg_id: Optional[GhcPkgId] = None


_Result = Union[_Found, ConstructPlanException]


@dataclass
class _Frame:
    """A package whose dependencies are being resolved."""

    name: PackageName
    package: Package
    local: Optional[LocalPackage]
    deps: List[Tuple[PackageName, VersionRange]]
    index: int = 0
    missing: Set[PackageIdentifier] = field(default_factory=set)
    present: Set[GhcPkgId] = field(default_factory=set)
    needs_local: bool = False
    failures: Dict[PackageName, tuple] = field(default_factory=dict)


class _PlanConstructor:
    def __init__(
        self,
        local_packages: Iterable[LocalPackage],
        installed: Mapping[PackageName, InstalledPackage],
        snapshot: Mapping[PackageName, Package],
        base_config_opts: BaseConfigOpts,
        cache_store: Optional[CacheStore],
    ):
        self.local_packages = {lp.package.name: lp for lp in local_packages}
        self.installed = installed
        self.snapshot = snapshot
        self.base = base_config_opts
        self.cache_store = cache_store

        self.results: Dict[PackageName, _Result] = {}
        self.visiting: Dict[PackageName, int] = {}
        self.errors: List[ConstructPlanException] = []
        self.unregister: Set[GhcPkgId] = set()
        self._installed_exes: Dict[Location, Set[PackageIdentifier]] = {}

    def _report(self, exc: ConstructPlanException):
        if exc not in self.errors:
            self.errors.append(exc)

    def add_dep(self, root: PackageName) -> _Result:
        if root in self.results:
            return self.results[root]

        stack: List[_Frame] = []
        self._enter(root, stack)

        while stack:
            frame = stack[-1]

            if frame.index == len(frame.deps):
                stack.pop()
                del self.visiting[frame.name]
                self.results[frame.name] = self._finish(frame)
                continue

            dep_name, version_range = frame.deps[frame.index]
            if dep_name in self.results:
                self._record(frame, dep_name, version_range, self.results[dep_name])
                frame.index += 1
            elif dep_name in self.visiting:
                cycle = [f.name for f in stack[self.visiting[dep_name] :]]
                logger.debug(f"Dependency cycle: {' -> '.join(map(str, cycle))}")
                self._report(DependencyCycleDetected(cycle))
                frame.failures[dep_name] = (
                    version_range,
                    CouldntResolveItsDependencies(),
                )
                frame.index += 1
            else:
                # The frame is revisited once the dependency is resolved.
                self._enter(dep_name, stack)

        return self.results[root]

    def _enter(self, name: PackageName, stack: List[_Frame]):
        """Push a frame for ``name``, or resolve it right away if it has no
        source to build from."""
        local = self.local_packages.get(name)
        if local is not None:
            package = local.package
        elif name in self.snapshot:
            package = self.snapshot[name]
        else:
            installed = self.installed.get(name)
            if installed is not None:
                self.results[name] = _Found(
                    installed.version,
                    installed.location or Location.SNAPSHOT,
                    ghc_pkg_id=installed.ghc_pkg_id,
                )
            else:
                exc = UnknownPackage(name)
                self._report(exc)
                self.results[name] = exc
            return

        self.visiting[name] = len(stack)
        stack.append(_Frame(name, package, local, package.all_dependencies()))

    def _record(
        self,
        frame: _Frame,
        dep_name: PackageName,
        version_range: VersionRange,
        result: _Result,
    ):
        if isinstance(result, ConstructPlanException):
            if isinstance(result, UnknownPackage):
                reason = NotInBuildPlan()
            else:
                reason = CouldntResolveItsDependencies()
            frame.failures[dep_name] = (version_range, reason)
            return

        if not version_range.within(result.version):
            frame.failures[dep_name] = (
                version_range,
                DependencyMismatch(result.version),
            )
            return

        if result.task is not None:
            frame.missing.add(result.task.provides)
        elif result.ghc_pkg_id is not None:
            frame.present.add(result.ghc_pkg_id)
        if result.location is Location.LOCAL:
            frame.needs_local = True

    def _flags(self, package: Package) -> Dict[FlagName, bool]:
        overrides = self.base.build_opts.flags.get(package.name, {})
        return {
            flag: overrides.get(flag, enabled) for flag, enabled in package.flags.items()
        }

    def _finish(self, frame: _Frame) -> _Result:
        if frame.failures:
            exc = DependencyPlanFailures(frame.name, frame.failures)
            self._report(exc)
            return exc

        package = frame.package
        local = frame.local
        if local is not None or frame.needs_local:
            location = Location.LOCAL
        else:
            location = Location.SNAPSHOT

        config_opts = TaskConfigOpts(
            missing=frozenset(frame.missing),
            present=frozenset(frame.present),
            base=self.base,
            wanted=local.wanted if local is not None else False,
            location=location,
            flags=self._flags(package),
        )
        installed = self.installed.get(frame.name)

        if local is None:
            if not frame.missing and self._is_usable(installed, package, config_opts):
                logger.debug(f"Using installed {package.identifier}")
                return self._found_installed(installed, package, location)
            kind = UpstreamTask(package, location)
            keep_installed = False
        else:
            steps = self._needed_steps(local, config_opts)
            reusable = not frame.missing and self._is_installed_as(
                installed, package, Location.LOCAL
            )
            if steps is NeededSteps.JUST_FINAL and not reusable:
                steps = NeededSteps.SKIP_CONFIGURE
            if steps is NeededSteps.JUST_FINAL and not local.wanted:
                logger.debug(f"Local package {package.identifier} is up to date")
                return self._found_installed(installed, package, location)
            kind = LocalTask(local, steps)
            keep_installed = steps is NeededSteps.JUST_FINAL

        if (
            installed is not None
            and installed.location is not None
            and not keep_installed
        ):
            self.unregister.add(installed.ghc_pkg_id)

        task = Task(
            provides=package.identifier,
            kind=kind,
            config_opts=config_opts,
            present=frozenset(frame.present),
        )
        return _Found(package.version, location, task=task)

    def _found_installed(
        self,
        installed: Optional[InstalledPackage],
        package: Package,
        location: Location,
    ) -> _Found:
        if installed is None:
            return _Found(package.version, location)
        return _Found(
            package.version,
            installed.location or location,
            ghc_pkg_id=installed.ghc_pkg_id,
        )

    def _installed_exes_at(self, location: Location) -> Set[PackageIdentifier]:
        if self.cache_store is None:
            return set()
        if location not in self._installed_exes:
            self._installed_exes[location] = set(
                self.cache_store.get_installed_exes(location)
            )
        return self._installed_exes[location]

    def _is_installed_as(
        self,
        installed: Optional[InstalledPackage],
        package: Package,
        location: Location,
    ) -> bool:
        """Whether this exact version is already installed at ``location``."""
        if not package.has_library:
            return package.identifier in self._installed_exes_at(location)
        if installed is None or installed.version != package.version:
            return False
        return installed.location is None or installed.location is location

    def _is_usable(
        self,
        installed: Optional[InstalledPackage],
        package: Package,
        config_opts: TaskConfigOpts,
    ) -> bool:
        """Whether an installed upstream package can be used instead of
        building it again."""
        if not self._is_installed_as(installed, package, config_opts.location):
            return False
        if installed is None or installed.location is None or self.cache_store is None:
            return True

        cached = self.cache_store.try_get_flag_cache(installed.ghc_pkg_id)
        if cached is None:
            return True
        expected = ConfigCache.from_options(
            config_opts.render({}), config_opts.present
        )
        if cached != expected:
            logger.info(
                f"Configuration of {package.identifier} changed, rebuilding it"
            )
            return False
        return True

    def _needed_steps(
        self, local: LocalPackage, config_opts: TaskConfigOpts
    ) -> NeededSteps:
        if config_opts.missing:
            return NeededSteps.ALL
        expected = ConfigCache.from_options(
            config_opts.render({}), config_opts.present
        )
        if local.last_config_cache != expected:
            return NeededSteps.ALL
        if local.dirty:
            return NeededSteps.SKIP_CONFIGURE
        return NeededSteps.JUST_FINAL

    def plan(self) -> Plan:
        tasks = {
            name: result.task
            for name, result in sorted(self.results.items(), key=lambda kv: kv[0])
            if isinstance(result, _Found) and result.task is not None
        }
        return Plan(tasks=tasks, unregister=frozenset(self.unregister))


def construct_plan(
    targets: Iterable[PackageName],
    local_packages: Iterable[LocalPackage],
    installed: Mapping[PackageName, InstalledPackage],
    snapshot: Mapping[PackageName, Package],
    base_config_opts: BaseConfigOpts,
    cache_store: Optional[CacheStore] = None,
) -> Plan:
    """
    Build the task graph for ``targets``.

    Wanted local packages are resolved as targets as well, and always get a
    task so their dirtiness is checked by the executor.

    Args:
        targets: Requested package names
        local_packages: All packages found in the project
        installed: Installed libraries, by name
        snapshot: Upstream packages available for building, by name
        base_config_opts: Install directories and build options
        cache_store: Gives access to the flag cache of installed packages

    Returns:
        The plan

    Raises:
        ConstructPlanExceptions: With every failure found
    """
    local_packages = list(local_packages)
    constructor = _PlanConstructor(
        local_packages, installed, snapshot, base_config_opts, cache_store
    )

    roots = set(targets)
    roots.update(lp.package.name for lp in local_packages if lp.wanted)
    for name in sorted(roots):
        constructor.add_dep(name)

    if constructor.errors:
        logger.error(
            f"Plan construction failed with {len(constructor.errors)} error(s)"
        )
        raise ConstructPlanExceptions(constructor.errors)

    plan = constructor.plan()
    logger.debug(
        f"Plan: {len(plan.tasks)} task(s), {len(plan.unregister)} to unregister"
    )
    return plan


__all__ = ["construct_plan"]
