"""
Hash and length verification used by the verified download protocol.

This module provides:
- ``HashCheck``, an algorithm name together with an expected hex digest
- Streaming hashers for md5, sha1, sha256 and sha512
- Constant-time digest comparison
- Re-validation of a file already on disk against a set of checks
"""

import base64
import hashlib
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from stackkit.core.exceptions import MalformedContentMd5, WrongDigest, WrongFileSize

SUPPORTED_ALGORITHMS = ("md5", "sha1", "sha256", "sha512")

CHUNK_SIZE = 8192


@dataclass(frozen=True)
class HashCheck:
    """
    Expected digest of a download.

    Attributes:
        algorithm: Hash algorithm ('md5', 'sha1', 'sha256', 'sha512')
        hex_digest: Expected digest as hex string (case-insensitive)
    """

    algorithm: str
    hex_digest: str

    def __post_init__(self):
        algorithm = self.algorithm.lower()
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise ValueError(f"Unsupported hash algorithm: {self.algorithm}")
        object.__setattr__(self, "algorithm", algorithm)
        object.__setattr__(self, "hex_digest", self.hex_digest.strip().lower())


class StreamingHasher:
    """Compute one ``HashCheck`` incrementally while bytes stream past."""

    def __init__(self, check: HashCheck):
        self.check = check
        self.hasher = hashlib.new(check.algorithm)

    def update(self, data: bytes):
        """Add data to hash computation."""
        self.hasher.update(data)

    def finalize(self) -> str:
        """Get final hash value as hex string."""
        return self.hasher.hexdigest()

    def verify(self):
        """
        Raise if the digest of everything seen so far is not the expected one.

        Raises:
            WrongDigest: If the digests differ
        """
        actual = self.finalize()
        if not _constant_time_compare(actual, self.check.hex_digest):
            raise WrongDigest(self.check.algorithm, self.check.hex_digest, actual)


def content_md5_check(header_value: str) -> HashCheck:
    """
    Turn a ``Content-MD5`` header (base64 of the raw digest) into a HashCheck.

    Raises:
        MalformedContentMd5: If the header is not base64 or does not decode
            to an md5 digest
    """
    try:
        raw = base64.b64decode(header_value.strip(), validate=True)
    except ValueError:
        raise MalformedContentMd5(header_value) from None
    if len(raw) != hashlib.md5().digest_size:
        raise MalformedContentMd5(header_value)
    return HashCheck("md5", raw.hex())


def verify_file(
    file_path: Path, hash_checks: Iterable[HashCheck], length_check: Optional[int]
) -> None:
    """
    Re-validate a file on disk against a length and a set of hash checks.

    The size is checked first so an obviously wrong file is rejected without
    reading it.

    Raises:
        FileNotFoundError: If the file doesn't exist
        WrongFileSize: If the size differs from ``length_check``
        WrongDigest: If any hash differs
    """
    if length_check is not None:
        size = file_path.stat().st_size
        if size != length_check:
            raise WrongFileSize(length_check, size)

    hashers = [StreamingHasher(check) for check in hash_checks]
    with open(file_path, "rb") as f:
        while chunk := f.read(CHUNK_SIZE):
            for hasher in hashers:
                hasher.update(chunk)

    for hasher in hashers:
        hasher.verify()


def _constant_time_compare(a: str, b: str) -> bool:
    """Compare two digests in constant time."""
    return secrets.compare_digest(a.lower().encode("utf-8"), b.lower().encode("utf-8"))


__all__ = [
    "SUPPORTED_ALGORITHMS",
    "HashCheck",
    "StreamingHasher",
    "content_md5_check",
    "verify_file",
]
