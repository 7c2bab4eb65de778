"""
Execute a build plan.

Tasks run on a bounded thread pool. A task is submitted once every task it
depends on has finished; the installed id each dependency produced is then
known and is used to render the task's configure options.

A failed task does not stop the run. Tasks that depend on it, directly or
not, are never started and are reported as skipped. Tasks already running
finish normally. When everything has finished or been skipped, all failures
are raised together as ``ExecutionFailure``.
"""

import logging
import os
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Set

from stackkit.build.actions import BuildActions
from stackkit.build.cache import CacheStore, get_package_file_mod_times
from stackkit.build.package_db import PackageDatabase
from stackkit.build.types import (
    BaseConfigOpts,
    ConfigCache,
    FinalAction,
    LocalTask,
    NeededSteps,
    Plan,
    Task,
)
from stackkit.core.exceptions import CouldntFindPkgId, ExecutionFailure
from stackkit.core.locking import BuildLocks
from stackkit.core.types import GhcPkgId, PackageIdentifier

logger = logging.getLogger(__name__)


def num_allocated_cpus() -> Optional[int]:
    try:
        cpuset = os.sched_getaffinity(0)
    except AttributeError:
        # MacOS does not have CPU affinity.
        return None
    return len(cpuset)


def get_concurrency() -> int:
    n = num_allocated_cpus()
    if n is None:
        n = os.cpu_count() or 1
    return n


@dataclass
class ExecuteEnv:
    """
    What the executor needs besides the plan.

    Attributes:
        base_config_opts: Install directories and build options
        cache_store: Build, config and flag caches
        package_db: The package databases to register into
        actions: Runs the build steps of one package
        jobs: Maximum number of tasks running at once; None uses every CPU
        locks: Install and configure locks shared by the workers
    """

    base_config_opts: BaseConfigOpts
    cache_store: CacheStore
    package_db: PackageDatabase
    actions: BuildActions
    jobs: Optional[int] = None
    locks: BuildLocks = field(default_factory=BuildLocks)


@dataclass
class ExecutionResult:
    """Installed id of every built package; None for executable-only ones."""

    installed: Dict[PackageIdentifier, Optional[GhcPkgId]] = field(
        default_factory=dict
    )


def _describe_task(task: Task) -> str:
    kind = "local" if task.is_local else "upstream"
    if isinstance(task.kind, LocalTask):
        kind += f", {task.kind.steps.value}"
    return f"{task.provides} ({kind}, {task.location.value})"


def execute_plan(plan: Plan, env: ExecuteEnv) -> ExecutionResult:
    """
    Run every task of ``plan``.

    Args:
        plan: The plan from ``construct_plan``
        env: Caches, databases, actions and locks to use

    Returns:
        The installed ids of the built packages

    Raises:
        ExecutionFailure: If any task failed, with every failure and the
            identifiers of the tasks skipped because of them
        ValueError: If a task depends on a package the plan does not build
    """
    tasks = {task.provides: task for task in plan.tasks.values()}
    for task in tasks.values():
        unknown = [ident for ident in task.config_opts.missing if ident not in tasks]
        if unknown:
            raise ValueError(
                f"{task.provides} depends on {', '.join(map(str, sorted(unknown)))} "
                "which the plan does not build"
            )

    if env.base_config_opts.build_opts.dry_run:
        logger.info("Dry run, nothing will be built")
        for gid in sorted(plan.unregister):
            logger.info(f"Would unregister {gid}")
        for ident in sorted(tasks):
            logger.info(f"Would build {_describe_task(tasks[ident])}")
        return ExecutionResult()

    for gid in sorted(plan.unregister):
        env.package_db.unregister(gid)

    return _Scheduler(tasks, env).run()


class _Scheduler:
    def __init__(self, tasks: Mapping[PackageIdentifier, Task], env: ExecuteEnv):
        self.tasks = tasks
        self.env = env
        self.waiting_on: Dict[PackageIdentifier, Set[PackageIdentifier]] = {
            ident: set(task.config_opts.missing) for ident, task in tasks.items()
        }
        self.dependents: Dict[PackageIdentifier, List[PackageIdentifier]] = {
            ident: [] for ident in tasks
        }
        for ident, task in tasks.items():
            for dep in task.config_opts.missing:
                self.dependents[dep].append(ident)

        self.pending: Set[PackageIdentifier] = set(tasks)
        self.resolved: Dict[PackageIdentifier, Optional[GhcPkgId]] = {}
        self.failures: List[BaseException] = []
        self.skipped: List[PackageIdentifier] = []

    def _cancel_dependents(self, failed: PackageIdentifier):
        queue = list(self.dependents[failed])
        while queue:
            ident = queue.pop()
            if ident not in self.pending:
                continue
            self.pending.discard(ident)
            self.skipped.append(ident)
            logger.warning(f"Skipping {ident}: dependency {failed} failed")
            queue.extend(self.dependents[ident])

    def _submit_ready(self, pool: ThreadPoolExecutor, running: Dict[Future, PackageIdentifier]):
        ready = sorted(ident for ident in self.pending if not self.waiting_on[ident])
        for ident in ready:
            self.pending.discard(ident)
            task = self.tasks[ident]
            deps = {dep: self.resolved[dep] for dep in task.config_opts.missing}
            running[pool.submit(run_task, task, deps, self.env)] = ident

    def run(self) -> ExecutionResult:
        jobs = self.env.jobs or get_concurrency()
        logger.info(f"Building {len(self.tasks)} package(s) with {jobs} job(s)")

        running: Dict[Future, PackageIdentifier] = {}
        with ThreadPoolExecutor(max_workers=jobs) as pool:
            self._submit_ready(pool, running)
            while running:
                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in done:
                    ident = running.pop(future)
                    try:
                        gid = future.result()
                    except Exception as e:
                        logger.error(f"Failed to build {ident}: {e}")
                        self.failures.append(e)
                        self._cancel_dependents(ident)
                        continue
                    self.resolved[ident] = gid
                    for dependent in self.dependents[ident]:
                        self.waiting_on[dependent].discard(ident)
                self._submit_ready(pool, running)

        if self.pending:
            # Only reachable with a dependency cycle among the tasks
            logger.error(
                f"Never started: {', '.join(map(str, sorted(self.pending)))}"
            )
            self.skipped.extend(sorted(self.pending))
            self.pending.clear()

        if self.failures:
            raise ExecutionFailure(self.failures, sorted(self.skipped))
        return ExecutionResult(installed=dict(self.resolved))


def run_task(
    task: Task,
    deps: Mapping[PackageIdentifier, Optional[GhcPkgId]],
    env: ExecuteEnv,
) -> Optional[GhcPkgId]:
    """
    Configure, build, run the final action of, and install one package.

    Args:
        task: The task to run
        deps: Installed id of every dependency in ``task.config_opts.missing``
        env: The execution environment

    Returns:
        The installed id of the package, or None if it has no library
    """
    base = env.base_config_opts
    package = task.package
    options = task.config_opts.render(deps)
    dependencies = set(task.present)
    dependencies.update(gid for gid in deps.values() if gid is not None)
    config_cache = ConfigCache.from_options(options, dependencies)

    if isinstance(task.kind, LocalTask):
        local = task.kind.local_package
        directory = local.directory
        steps = task.kind.steps
        last_config_cache = local.last_config_cache
    else:
        local = None
        directory = env.actions.unpack(task)
        # A previously unpacked directory keeps its configuration if it matches
        steps = NeededSteps.SKIP_CONFIGURE
        last_config_cache = env.cache_store.try_get_config_cache(directory)

    if steps is NeededSteps.ALL or last_config_cache != config_cache:
        steps = NeededSteps.ALL
        with env.locks.config_lock():
            env.cache_store.delete_caches(directory)
            env.actions.configure(task, directory, options)
            env.cache_store.write_config_cache(directory, options, dependencies)
    else:
        logger.debug(f"{task.provides}: configure options unchanged")

    if steps is not NeededSteps.JUST_FINAL:
        env.actions.build(task, directory)

    final_action = base.build_opts.final_action
    if task.wanted and final_action is not FinalAction.NOTHING:
        env.actions.final_action(task, directory, final_action)

    if steps is not NeededSteps.JUST_FINAL:
        with env.locks.install_lock(base.package_db(task.location)):
            env.actions.install(task, directory)

    gid = None
    if package.has_library:
        gid = env.package_db.find_package_id(task.location, package.name)
        if gid is None or gid.package_identifier != task.provides:
            raise CouldntFindPkgId(package.name)
    if package.executables or not package.has_library:
        env.cache_store.mark_exe_installed(task.location, task.provides)

    if local is not None:
        env.cache_store.write_build_cache(
            directory, get_package_file_mod_times(package, local.cabal_file)
        )
    elif gid is not None:
        env.cache_store.write_flag_cache(gid, config_cache.options, dependencies)

    logger.info(f"Installed {task.provides}")
    return gid


__all__ = [
    "ExecuteEnv",
    "ExecutionResult",
    "execute_plan",
    "get_concurrency",
    "run_task",
]
