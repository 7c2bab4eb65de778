"""
Binary encoding of the cache records.

Layout (all integers big-endian):

    ConfigCache:  b"SKCC" u32 n_options { u32 len, bytes }*n
                          u32 n_deps    { u32 len, utf-8 ghc-pkg-id }*n
    BuildCache:   b"SKBC" u32 n_files   { u32 len, utf-8 path, i64 mtime_ns }*n

Dependencies and files are written in sorted order, so equal records
always encode to equal bytes. The format carries no version of its own; the
cache files live under a directory named after the toolchain, which is the
compatibility boundary.
"""

import struct
from typing import List, Tuple

from stackkit.build.types import BuildCache, ConfigCache, ModTime
from stackkit.core.exceptions import CacheDecodeError, InvalidIdentifierError
from stackkit.core.types import GhcPkgId

CONFIG_CACHE_MAGIC = b"SKCC"
BUILD_CACHE_MAGIC = b"SKBC"

_U32 = struct.Struct(">I")
_I64 = struct.Struct(">q")


class _Writer:
    def __init__(self, magic: bytes):
        self._parts: List[bytes] = [magic]

    def u32(self, value: int):
        self._parts.append(_U32.pack(value))

    def i64(self, value: int):
        self._parts.append(_I64.pack(value))

    def blob(self, data: bytes):
        self.u32(len(data))
        self._parts.append(data)

    def text(self, value: str):
        self.blob(value.encode("utf-8"))

    def getvalue(self) -> bytes:
        return b"".join(self._parts)


class _Reader:
    def __init__(self, data: bytes, magic: bytes):
        if data[: len(magic)] != magic:
            raise CacheDecodeError(f"Bad magic, expected {magic!r}")
        self._data = data
        self._pos = len(magic)

    def _take(self, n: int) -> bytes:
        end = self._pos + n
        if end > len(self._data):
            raise CacheDecodeError(
                f"Truncated record: need {n} bytes at offset {self._pos}"
            )
        chunk = self._data[self._pos : end]
        self._pos = end
        return chunk

    def u32(self) -> int:
        return _U32.unpack(self._take(_U32.size))[0]

    def i64(self) -> int:
        return _I64.unpack(self._take(_I64.size))[0]

    def blob(self) -> bytes:
        return self._take(self.u32())

    def text(self) -> str:
        try:
            return self.blob().decode("utf-8")
        except UnicodeDecodeError as e:
            raise CacheDecodeError(f"Invalid UTF-8 in record: {e}") from e

    def finish(self):
        if self._pos != len(self._data):
            raise CacheDecodeError(
                f"{len(self._data) - self._pos} trailing bytes after record"
            )


def encode_config_cache(cache: ConfigCache) -> bytes:
    writer = _Writer(CONFIG_CACHE_MAGIC)
    writer.u32(len(cache.options))
    for option in cache.options:
        writer.blob(option)
    writer.u32(len(cache.dependencies))
    for gid in sorted(cache.dependencies):
        writer.text(str(gid))
    return writer.getvalue()


def decode_config_cache(data: bytes) -> ConfigCache:
    """
    Raises:
        CacheDecodeError: If ``data`` is not an encoded ConfigCache
    """
    reader = _Reader(data, CONFIG_CACHE_MAGIC)
    options = tuple(reader.blob() for _ in range(reader.u32()))
    deps = []
    for _ in range(reader.u32()):
        text = reader.text()
        try:
            deps.append(GhcPkgId.parse(text))
        except InvalidIdentifierError as e:
            raise CacheDecodeError(str(e)) from e
    reader.finish()
    return ConfigCache(options, frozenset(deps))


def encode_build_cache(cache: BuildCache) -> bytes:
    writer = _Writer(BUILD_CACHE_MAGIC)
    items: List[Tuple[str, ModTime]] = sorted(cache.times.items())
    writer.u32(len(items))
    for path, mod_time in items:
        writer.text(path)
        writer.i64(mod_time.nanoseconds)
    return writer.getvalue()


def decode_build_cache(data: bytes) -> BuildCache:
    """
    Raises:
        CacheDecodeError: If ``data`` is not an encoded BuildCache
    """
    reader = _Reader(data, BUILD_CACHE_MAGIC)
    times = {}
    for _ in range(reader.u32()):
        path = reader.text()
        times[path] = ModTime(reader.i64())
    reader.finish()
    return BuildCache(times)


__all__ = [
    "CONFIG_CACHE_MAGIC",
    "BUILD_CACHE_MAGIC",
    "encode_config_cache",
    "decode_config_cache",
    "encode_build_cache",
    "decode_build_cache",
]
