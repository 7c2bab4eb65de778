"""
Local packages: dirtiness and target resolution.
"""

import logging
from pathlib import Path
from typing import Iterable, List, Sequence, Set

from stackkit.build.cache import CacheStore, get_package_file_mod_times
from stackkit.build.types import LocalPackage, Package
from stackkit.core.exceptions import (
    CouldntParseTargets,
    InvalidIdentifierError,
    UnknownTargets,
)
from stackkit.core.types import PackageName

logger = logging.getLogger(__name__)


def load_local_package(
    package: Package,
    cabal_file: Path,
    wanted: bool,
    cache_store: CacheStore,
) -> LocalPackage:
    """
    Describe a local package together with its cache state.

    The package is dirty when there is no build cache or when the current
    file modification times differ from the cached ones in any way (a file
    added, removed or touched).
    """
    cabal_file = Path(cabal_file)
    directory = cabal_file.parent

    build_cache = cache_store.try_get_build_cache(directory)
    if build_cache is None:
        dirty = True
    else:
        dirty = get_package_file_mod_times(package, cabal_file) != dict(
            build_cache.times
        )
    logger.debug(f"{package.identifier} is {'dirty' if dirty else 'clean'}")

    return LocalPackage(
        package=package,
        wanted=wanted,
        directory=directory,
        cabal_file=cabal_file,
        last_config_cache=cache_store.try_get_config_cache(directory),
        dirty=dirty,
    )


def resolve_targets(
    targets: Sequence[str],
    local_packages: Iterable[LocalPackage],
    cwd: Path,
    extra_names: Iterable[PackageName] = (),
) -> Set[PackageName]:
    """
    Turn user targets into package names.

    A target is a local package directory (absolute or relative to ``cwd``),
    the name of a local package, or one of ``extra_names`` (e.g. packages
    of the snapshot).

    Raises:
        CouldntParseTargets: For targets that are neither
        UnknownTargets: For names that match no local package
    """
    locals_by_dir = {lp.directory.resolve(): lp for lp in local_packages}
    known_names = {lp.package.name for lp in locals_by_dir.values()}
    known_names.update(extra_names)

    names: Set[PackageName] = set()
    unparsable: List[str] = []
    unknown: List[PackageName] = []

    for target in targets:
        directory = (Path(cwd) / target).resolve()
        if directory.is_dir():
            lp = locals_by_dir.get(directory)
            if lp is None:
                unparsable.append(target)
            else:
                names.add(lp.package.name)
            continue

        try:
            name = PackageName.parse(target)
        except InvalidIdentifierError:
            unparsable.append(target)
            continue
        if name in known_names:
            names.add(name)
        else:
            unknown.append(name)

    if unparsable:
        raise CouldntParseTargets(unparsable)
    if unknown:
        raise UnknownTargets(sorted(unknown))
    return names


__all__ = ["load_local_package", "resolve_targets"]
