"""
Core functionality for stackkit.

This package contains the foundational modules that the build core depends
on: identifier types, the exception hierarchy, verified downloads, locks and
file system helpers.
"""

from .types import (
    PackageName,
    Version,
    FlagName,
    PackageIdentifier,
    GhcPkgId,
    VersionRange,
)

from .exceptions import (
    StackKitError,
    InvalidIdentifierError,
    ConfigError,
    BuildCacheError,
    DownloadError,
    VerifiedDownloadError,
    WrongContentLength,
    WrongStreamLength,
    WrongDigest,
    MalformedContentMd5,
    VerifyFileError,
    WrongFileSize,
    ConstructPlanException,
    DependencyCycleDetected,
    DependencyPlanFailures,
    UnknownPackage,
    StackBuildException,
    ConstructPlanExceptions,
    CabalExitedUnsuccessfully,
    ExecutionFailure,
)

from .download import (
    DownloadProgress,
    DownloadRequest,
    verified_download,
)

from .verification import HashCheck

from .locking import BuildLocks, LockTimeout

__all__ = [
    "PackageName",
    "Version",
    "FlagName",
    "PackageIdentifier",
    "GhcPkgId",
    "VersionRange",
    "StackKitError",
    "InvalidIdentifierError",
    "ConfigError",
    "BuildCacheError",
    "DownloadError",
    "VerifiedDownloadError",
    "WrongContentLength",
    "WrongStreamLength",
    "WrongDigest",
    "MalformedContentMd5",
    "VerifyFileError",
    "WrongFileSize",
    "ConstructPlanException",
    "DependencyCycleDetected",
    "DependencyPlanFailures",
    "UnknownPackage",
    "StackBuildException",
    "ConstructPlanExceptions",
    "CabalExitedUnsuccessfully",
    "ExecutionFailure",
    "DownloadProgress",
    "DownloadRequest",
    "verified_download",
    "HashCheck",
    "BuildLocks",
    "LockTimeout",
]
