"""
Identifier and version types.

All types here are immutable, hashable and totally ordered. Their ``str``
is the canonical encoding used both in file names and for display, and
``parse`` is its inverse.

Example:
    >>> ident = PackageIdentifier.parse("text-1.2.1.3")
    >>> ident.name, ident.version
    (PackageName('text'), Version('1.2.1.3'))
    >>> VersionRange.parse(">=1.2 && <1.3").within(ident.version)
    True
"""

import re
from dataclasses import dataclass
from typing import Optional, Tuple

from stackkit.core.exceptions import InvalidIdentifierError

_NAME_WORD = re.compile(r"^[A-Za-z0-9]*[A-Za-z][A-Za-z0-9]*$")
_VERSION = re.compile(r"^\d+(\.\d+)*$")
_FLAG = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_-]*$")
_HASH = re.compile(r"^[A-Za-z0-9]+$")


@dataclass(frozen=True, order=True)
class PackageName:
    """Name of a package, e.g. ``bytestring`` or ``aeson-pretty``."""

    value: str

    def __post_init__(self):
        words = self.value.split("-")
        if not self.value or not all(_NAME_WORD.match(word) for word in words):
            raise InvalidIdentifierError("package name", self.value)

    @classmethod
    def parse(cls, text: str) -> "PackageName":
        return cls(text.strip())

    def __str__(self):
        return self.value

    def __repr__(self):
        return f"PackageName({self.value!r})"


@dataclass(frozen=True, order=True)
class Version:
    """Numeric version; ``1.10`` sorts after ``1.9``."""

    components: Tuple[int, ...]

    def __post_init__(self):
        if not self.components or any(c < 0 for c in self.components):
            raise InvalidIdentifierError("version", repr(self.components))

    @classmethod
    def parse(cls, text: str) -> "Version":
        text = text.strip()
        if not _VERSION.match(text):
            raise InvalidIdentifierError("version", text)
        return cls(tuple(int(part) for part in text.split(".")))

    def __str__(self):
        return ".".join(str(c) for c in self.components)

    def __repr__(self):
        return f"Version({str(self)!r})"


@dataclass(frozen=True, order=True)
class FlagName:
    """Name of a package flag. Flags are case-insensitive."""

    value: str

    def __post_init__(self):
        if not _FLAG.match(self.value):
            raise InvalidIdentifierError("flag name", self.value)
        object.__setattr__(self, "value", self.value.lower())

    @classmethod
    def parse(cls, text: str) -> "FlagName":
        return cls(text.strip())

    def __str__(self):
        return self.value

    def __repr__(self):
        return f"FlagName({self.value!r})"


@dataclass(frozen=True, order=True)
class PackageIdentifier:
    """A package name together with a version, rendered ``name-version``."""

    name: PackageName
    version: Version

    @classmethod
    def parse(cls, text: str) -> "PackageIdentifier":
        text = text.strip()
        name, sep, version = text.rpartition("-")
        if not sep or not _VERSION.match(version):
            raise InvalidIdentifierError("package identifier", text)
        try:
            return cls(PackageName(name), Version.parse(version))
        except InvalidIdentifierError:
            raise InvalidIdentifierError("package identifier", text) from None

    def __str__(self):
        return f"{self.name}-{self.version}"


@dataclass(frozen=True, order=True)
class GhcPkgId:
    """
    Identity of one installed build of a package.

    Two builds of the same name and version (e.g. with different flags) get
    different ids, which is why the dependency set of a configured package is
    tracked in terms of ``GhcPkgId`` and not ``PackageIdentifier``.
    """

    ident: PackageIdentifier
    hash: str = ""

    def __post_init__(self):
        if self.hash and not _HASH.match(self.hash):
            raise InvalidIdentifierError("installed package id", self.hash)

    @classmethod
    def parse(cls, text: str) -> "GhcPkgId":
        """
        Parse ``name-version`` or ``name-version-hash``.

        An all-digit hash looks like a version component. It is only taken
        as the hash when the text without it is not a valid identifier,
        which is always the case for ``name-version-digits`` because no
        word of a package name consists of digits only.
        """
        text = text.strip()
        if _VERSION.match(text.rpartition("-")[2]):
            plain = parse_package_identifier_maybe(text)
            if plain is not None:
                return cls(plain)

        base, sep, last = text.rpartition("-")
        if sep and _HASH.match(last):
            ident = parse_package_identifier_maybe(base)
            if ident is not None:
                return cls(ident, last)
        raise InvalidIdentifierError("installed package id", text)

    @property
    def package_identifier(self) -> PackageIdentifier:
        return self.ident

    @property
    def name(self) -> PackageName:
        return self.ident.name

    @property
    def version(self) -> Version:
        return self.ident.version

    def __str__(self):
        if self.hash:
            return f"{self.ident}-{self.hash}"
        return str(self.ident)


# ============================================================================
# Version Ranges
# ============================================================================

_OPERATORS = ("^>=", ">=", "<=", "==", ">", "<")


@dataclass(frozen=True)
class VersionRange:
    """
    A Cabal-style version range.

    Stored as a disjunction of conjunctions of ``(operator, version)``
    constraints. ``==1.2.*`` is stored with the ``=*`` operator and the
    prefix ``1.2``.
    """

    text: str
    alternatives: Tuple[Tuple[Tuple[str, Version], ...], ...]

    @classmethod
    def any_version(cls) -> "VersionRange":
        return cls("-any", ((),))

    @classmethod
    def this_version(cls, version: Version) -> "VersionRange":
        return cls(f"=={version}", ((("==", version),),))

    @classmethod
    def parse(cls, text: str) -> "VersionRange":
        source = " ".join(text.split())
        if source in ("", "-any", "any"):
            return cls("-any", ((),))
        if source == "-none":
            return cls(source, ())

        return cls(source, _RangeParser(source).parse())

    def within(self, version: Version) -> bool:
        """Check whether ``version`` satisfies this range."""
        return any(
            all(_satisfies(op, bound, version) for op, bound in conjunction)
            for conjunction in self.alternatives
        )

    def __str__(self):
        return self.text


_Alternatives = Tuple[Tuple[Tuple[str, Version], ...], ...]

_TOKEN = re.compile(r"\|\||&&|[()]|[^()|&]+|.")


class _RangeParser:
    """
    Recursive-descent parser producing the disjunctive normal form.

    Grammar, ``&&`` binding tighter than ``||``::

        disjunction := conjunction ("||" conjunction)*
        conjunction := atom ("&&" atom)*
        atom        := "(" disjunction ")" | constraint | "-any" | "-none"
    """

    def __init__(self, source: str):
        self.source = source
        self.tokens = [t.strip() for t in _TOKEN.findall(source) if t.strip()]
        self.pos = 0

    def _error(self) -> InvalidIdentifierError:
        return InvalidIdentifierError("version range", self.source)

    def _peek(self) -> Optional[str]:
        if self.pos < len(self.tokens):
            return self.tokens[self.pos]
        return None

    def _take(self) -> str:
        token = self._peek()
        if token is None:
            raise self._error()
        self.pos += 1
        return token

    def parse(self) -> _Alternatives:
        alternatives = self._disjunction()
        if self._peek() is not None:
            raise self._error()
        return alternatives

    def _disjunction(self) -> _Alternatives:
        alternatives = list(self._conjunction())
        while self._peek() == "||":
            self.pos += 1
            alternatives.extend(self._conjunction())
        return tuple(alternatives)

    def _conjunction(self) -> _Alternatives:
        alternatives = self._atom()
        while self._peek() == "&&":
            self.pos += 1
            right = self._atom()
            alternatives = tuple(a + b for a in alternatives for b in right)
        return alternatives

    def _atom(self) -> _Alternatives:
        token = self._take()
        if token == "(":
            inner = self._disjunction()
            if self._take() != ")":
                raise self._error()
            return inner
        if token in ("-any", "any"):
            return ((),)
        if token == "-none":
            return ()
        return ((_parse_constraint(token, self.source),),)


def _parse_constraint(part: str, source: str) -> Tuple[str, Version]:
    part = part.strip()
    for op in _OPERATORS:
        if part.startswith(op):
            operand = part[len(op):].strip()
            if op == "==" and operand.endswith(".*"):
                return ("=*", _parse_bound(operand[:-2], source))
            return (op, _parse_bound(operand, source))
    raise InvalidIdentifierError("version range", source)


def _parse_bound(text: str, source: str) -> Version:
    try:
        return Version.parse(text)
    except InvalidIdentifierError:
        raise InvalidIdentifierError("version range", source) from None


def _satisfies(op: str, bound: Version, version: Version) -> bool:
    if op == "==":
        return version == bound
    if op == ">=":
        return version >= bound
    if op == ">":
        return version > bound
    if op == "<=":
        return version <= bound
    if op == "<":
        return version < bound
    if op == "=*":
        return version.components[: len(bound.components)] == bound.components
    if op == "^>=":
        return version >= bound and version < _major_upper_bound(bound)
    raise ValueError(f"Unknown version operator: {op}")


def _major_upper_bound(version: Version) -> Version:
    components = version.components
    if len(components) < 2:
        return Version((components[0], 1))
    return Version((components[0], components[1] + 1))


def parse_package_identifier_maybe(text: str) -> Optional[PackageIdentifier]:
    """Parse ``text`` as a package identifier, returning None when invalid."""
    try:
        return PackageIdentifier.parse(text)
    except InvalidIdentifierError:
        return None


__all__ = [
    "PackageName",
    "Version",
    "FlagName",
    "PackageIdentifier",
    "GhcPkgId",
    "VersionRange",
    "parse_package_identifier_maybe",
]
