"""
Centralized exception hierarchy for stackkit.

Exceptions carry structured fields so callers can branch on the kind of
failure programmatically. The human readable text is produced by ``__str__``
and is only meant for the presentation boundary.
"""

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence


# ============================================================================
# Base Exceptions
# ============================================================================


class StackKitError(Exception):
    """Base exception for all stackkit errors."""

    pass


class InvalidIdentifierError(StackKitError, ValueError):
    """Raised when a package name, version, flag or id cannot be parsed."""

    def __init__(self, kind: str, value: str):
        self.kind = kind
        self.value = value
        super().__init__(f"Invalid {kind}: {value!r}")


class ConfigError(StackKitError):
    """Configuration parsing or validation error."""

    pass


# ============================================================================
# Cache Exceptions
# ============================================================================


class BuildCacheError(StackKitError):
    """Raised when a cache file cannot be read or written for a reason other
    than the file being absent."""

    pass


class CacheDecodeError(BuildCacheError):
    """Raised by the binary codec on malformed input."""

    pass


# ============================================================================
# Download Exceptions
# ============================================================================


class DownloadError(StackKitError):
    """Raised when the transport fails after all retries."""

    pass


class VerifiedDownloadError(StackKitError):
    """Base exception for content that failed verification."""

    pass


class WrongContentLength(VerifiedDownloadError):
    """The Content-Length header disagrees with the expected length."""

    def __init__(self, expected: int, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Expected content length {expected}, "
            f"but the server announced {actual!r}"
        )


class WrongStreamLength(VerifiedDownloadError):
    """The number of streamed bytes disagrees with the expected length."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Expected {expected} bytes, but received {actual}")


class WrongDigest(VerifiedDownloadError):
    """A hash of the content disagrees with the expected digest."""

    def __init__(self, algorithm: str, expected: str, actual: str):
        self.algorithm = algorithm
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{algorithm} digest mismatch: expected {expected}, got {actual}"
        )


class MalformedContentMd5(VerifiedDownloadError):
    """The server sent a Content-MD5 header that is not a base64 md5 digest."""

    def __init__(self, header: str):
        self.header = header
        super().__init__(f"Malformed Content-MD5 header: {header!r}")


class VerifyFileError(StackKitError):
    """Base exception for re-validation of a file already on disk."""

    pass


class WrongFileSize(VerifyFileError):
    """A file on disk has a size other than the expected length."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Expected file size {expected}, but found {actual}")


# ============================================================================
# Plan Construction Exceptions
# ============================================================================


def _indent(text: str, prefix: str = "  ") -> str:
    return "\n".join(prefix + line for line in text.splitlines()).rstrip()


@dataclass(frozen=True)
class NotInBuildPlan:
    """The dependency is not available anywhere."""

    def describe(self) -> str:
        return "not present in build plan"


@dataclass(frozen=True)
class CouldntResolveItsDependencies:
    """The dependency exists but its own resolution failed."""

    def describe(self) -> str:
        return "couldn't resolve its dependencies"


@dataclass(frozen=True)
class DependencyMismatch:
    """The dependency exists in a version outside the requested range."""

    version: Any

    def describe(self) -> str:
        return f"{self.version} found"


BadDependency = (NotInBuildPlan, CouldntResolveItsDependencies, DependencyMismatch)


class ConstructPlanException(StackKitError):
    """Base exception for failures found while constructing a build plan.

    Instances compare equal when they are of the same kind and carry the same
    fields, so a list of them can be de-duplicated.
    """

    def _key(self) -> tuple:
        raise NotImplementedError

    def __eq__(self, other):
        if type(self) is not type(other):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self):
        return hash((type(self).__name__, self._key()))


class DependencyCycleDetected(ConstructPlanException):
    """Resolution reached a package that was already being resolved."""

    def __init__(self, names: Sequence[Any]):
        self.names = tuple(names)
        super().__init__(str(self))

    def _key(self) -> tuple:
        return self.names

    def __str__(self):
        lines = "".join(f"\n{name}" for name in self.names)
        return _indent(
            "While checking call stack,\n"
            "  dependency cycle detected in packages:" + _indent(lines)
        )


class DependencyPlanFailures(ConstructPlanException):
    """One or more dependencies of ``name`` could not be satisfied.

    ``failures`` maps each failing dependency name to a pair of the requested
    version range and the reason (one of the ``BadDependency`` kinds).
    """

    def __init__(self, name: Any, failures: Mapping[Any, tuple]):
        self.name = name
        self.failures = dict(failures)
        super().__init__(str(self))

    def _key(self) -> tuple:
        return (self.name, tuple(sorted(self.failures.items(), key=lambda kv: kv[0])))

    def __str__(self):
        deps = "".join(
            f"\n{dep}: needed ({version_range}), but {reason.describe()}"
            for dep, (version_range, reason) in sorted(
                self.failures.items(), key=lambda kv: kv[0]
            )
        )
        return _indent(
            "Failure when adding dependencies:"
            + _indent(_indent(deps))
            + "\n"
            + f"  needed for package: {self.name}"
        )


class UnknownPackage(ConstructPlanException):
    """A package is neither local, in the snapshot, nor installed."""

    def __init__(self, name: Any):
        self.name = name
        super().__init__(str(self))

    def _key(self) -> tuple:
        return (self.name,)

    def __str__(self):
        return _indent(
            "While attempting to add dependency,\n"
            f"  Could not find package {self.name} in known packages"
        )


# ============================================================================
# Build Exceptions
# ============================================================================


class StackBuildException(StackKitError):
    """Base exception for build failures."""

    pass


class CouldntFindPkgId(StackBuildException):
    """After installing a library its installed id could not be found."""

    def __init__(self, name: Any):
        self.name = name
        super().__init__(
            f"After installing {name}, the package id couldn't be found "
            f"(via ghc-pkg describe {name}). This shouldn't happen, "
            "please report as a bug"
        )


class CouldntParseTargets(StackBuildException):
    """Targets that are neither package names nor directories."""

    def __init__(self, targets: Sequence[str]):
        self.targets = list(targets)
        super().__init__(
            "The following targets could not be parsed as package names or "
            "directories:\n" + "\n".join(self.targets)
        )


class UnknownTargets(StackBuildException):
    """Target package names that match no local package."""

    def __init__(self, names: Sequence[Any]):
        self.names = list(names)
        super().__init__(
            "The following target packages were not found: "
            + ", ".join(str(name) for name in self.names)
        )


class TestSuiteFailure(StackBuildException):
    """One or more test suites of a package failed."""

    __test__ = False

    def __init__(
        self,
        ident: Any,
        codes: Mapping[str, Optional[int]],
        log_file: Optional[Any] = None,
    ):
        self.ident = ident
        self.codes = dict(codes)
        self.log_file = log_file
        super().__init__(str(self))

    def __str__(self):
        lines = [f"Test suite failure for package {self.ident}"]
        for name, code in sorted(self.codes.items()):
            if code is None:
                lines.append(f"    {name}:  executable not found")
            else:
                lines.append(f"    {name}:  exited with: {code}")
        if self.log_file is None:
            lines.append("Logs printed to console")
        else:
            lines.append(f"Full log available at {self.log_file}")
        return "\n".join(lines)


class ConstructPlanExceptions(StackBuildException):
    """Every failure found while constructing a build plan."""

    def __init__(self, exceptions: Sequence[ConstructPlanException]):
        unique = []
        for exc in exceptions:
            if exc not in unique:
                unique.append(exc)
        self.exceptions = unique
        super().__init__(str(self))

    def __str__(self):
        return (
            "While constructing the BuildPlan the following exceptions were "
            "encountered:" + "".join(f"\n\n--{exc}" for exc in self.exceptions)
        )


class CabalExitedUnsuccessfully(StackBuildException):
    """The external build tool returned a non-zero exit code."""

    def __init__(
        self,
        exit_code: int,
        ident: Any,
        executable: Any,
        args: Sequence[str],
        log_file: Optional[Any] = None,
        log_contents: bytes = b"",
    ):
        self.exit_code = exit_code
        self.ident = ident
        self.executable = executable
        self.arguments = list(args)
        self.log_file = log_file
        self.log_contents = log_contents
        super().__init__(str(self))

    def __str__(self):
        full_cmd = " ".join([str(self.executable)] + self.arguments)
        text = (
            f"\n--  While building package {self.ident} using:\n"
            f"      {full_cmd}\n"
            f"    Process exited with code: {self.exit_code}"
        )
        if self.log_file is not None:
            text += f"\n    Logs have been written to: {self.log_file}"
        if self.log_contents:
            log = self.log_contents.decode("utf-8", errors="replace")
            text += "\n\n" + _indent(log, "    ")
        return text


class ExecutionFailure(StackBuildException):
    """Aggregate of every task failure of one plan execution.

    ``skipped`` lists the identifiers of tasks that were never started because
    one of their dependencies failed.
    """

    def __init__(self, failures: Sequence[BaseException], skipped: Sequence[Any] = ()):
        self.failures = list(failures)
        self.skipped = list(skipped)
        super().__init__(str(self))

    def __str__(self):
        return "\n\n".join(str(failure) for failure in self.failures)


# ============================================================================
# Package Database Exceptions
# ============================================================================


class PackageDatabaseError(StackKitError):
    """Raised when querying or modifying a package database fails."""

    pass


__all__ = [
    "StackKitError",
    "InvalidIdentifierError",
    "ConfigError",
    "BuildCacheError",
    "CacheDecodeError",
    "DownloadError",
    "VerifiedDownloadError",
    "WrongContentLength",
    "WrongStreamLength",
    "WrongDigest",
    "MalformedContentMd5",
    "VerifyFileError",
    "WrongFileSize",
    "NotInBuildPlan",
    "CouldntResolveItsDependencies",
    "DependencyMismatch",
    "BadDependency",
    "ConstructPlanException",
    "DependencyCycleDetected",
    "DependencyPlanFailures",
    "UnknownPackage",
    "StackBuildException",
    "CouldntFindPkgId",
    "CouldntParseTargets",
    "UnknownTargets",
    "TestSuiteFailure",
    "ConstructPlanExceptions",
    "CabalExitedUnsuccessfully",
    "ExecutionFailure",
    "PackageDatabaseError",
]
