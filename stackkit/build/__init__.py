"""
Build plan construction and execution.

This package turns requested targets into a plan of tasks
(``construct_plan``) and runs that plan concurrently (``execute_plan``),
using per-package caches to skip work that is already done.
"""

from .types import (
    Location,
    NeededSteps,
    FinalAction,
    Package,
    ConfigCache,
    ModTime,
    BuildCache,
    LocalPackage,
    BuildOpts,
    BaseConfigOpts,
    configure_opts,
    TaskConfigOpts,
    LocalTask,
    UpstreamTask,
    Task,
    Plan,
    InstalledPackage,
)

from .cache import CacheStore, get_package_file_mod_times
from .local import load_local_package, resolve_targets
from .construct_plan import construct_plan
from .package_db import PackageDatabase, GhcPkgDatabase
from .fetch import PackageDownload, PackageFetcher
from .actions import BuildActions, SetupActions
from .execute import ExecuteEnv, ExecutionResult, execute_plan, get_concurrency

__all__ = [
    # Data model
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
    "Task",
    "Plan",
    "InstalledPackage",
    # Caches
    "CacheStore",
    "get_package_file_mod_times",
    "load_local_package",
    "resolve_targets",
    # Planning and execution
    "construct_plan",
    "PackageDatabase",
    "GhcPkgDatabase",
    "PackageDownload",
    "PackageFetcher",
    "BuildActions",
    "SetupActions",
    "ExecuteEnv",
    "ExecutionResult",
    "execute_plan",
    "get_concurrency",
]
