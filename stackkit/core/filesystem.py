"""
File system utilities for stackkit.

This module provides the few file operations the build core relies on:
- Atomic writes (temp file + rename)
- Removal that treats a missing file as success
- Safe extraction of source tarballs
"""

import os
import sys
import tarfile
import tempfile
from pathlib import Path
from typing import Union


class FilesystemError(Exception):
    """Base exception for filesystem operations."""

    pass


class ArchiveExtractionError(FilesystemError):
    """Failed to extract an archive."""

    pass


class UnsupportedArchiveFormat(ArchiveExtractionError):
    """Archive format is not supported."""

    pass


class InsecureArchiveError(ArchiveExtractionError):
    """Archive contains insecure paths (directory traversal attempt)."""

    pass


def is_relative_to(path: Path, parent: Path) -> bool:
    """Check whether ``path`` lies below ``parent``."""
    try:
        path.relative_to(parent)
        return True
    except ValueError:
        return False


def atomic_write(
    file_path: Union[str, Path], content: Union[str, bytes], encoding: str = "utf-8"
) -> None:
    """
    Write file atomically using temp file + rename.

    A concurrent reader sees either the old content or the new content,
    never a partial write. If the write fails the original file (if any)
    remains unchanged.

    Args:
        file_path: Path to write to
        content: Content to write (string or bytes)
        encoding: Text encoding (used only for string content)

    Example:
        >>> atomic_write('stack-config-cache', b'SKCC...')
    """
    file_path = Path(file_path)
    file_path.parent.mkdir(parents=True, exist_ok=True)

    # Same directory, so the rename never crosses file systems
    temp_fd, temp_path_str = tempfile.mkstemp(
        dir=file_path.parent, prefix=f".{file_path.name}.", suffix=".tmp"
    )
    temp_path = Path(temp_path_str)

    try:
        if isinstance(content, str):
            with open(temp_fd, "w", encoding=encoding) as f:
                f.write(content)
        else:
            with open(temp_fd, "wb") as f:
                f.write(content)

        os.replace(temp_path, file_path)

    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise


def remove_file_if_exists(file_path: Union[str, Path]) -> bool:
    """
    Remove a file, treating an absent file as success.

    Returns:
        True if a file was removed, False if there was nothing to remove
    """
    try:
        Path(file_path).unlink()
        return True
    except FileNotFoundError:
        return False


def _validate_archive_path(path: str, destination: Path) -> None:
    """
    Validate that an archive member path is safe to extract.

    Raises:
        InsecureArchiveError: If path attempts directory traversal
    """
    member_path = (destination / path).resolve()

    if not is_relative_to(member_path, destination.resolve()):
        raise InsecureArchiveError(
            f"Archive member '{path}' attempts directory traversal. "
            "This is a security risk and extraction has been blocked."
        )


def extract_archive(
    archive_path: Union[str, Path],
    destination: Union[str, Path],
) -> None:
    """
    Extract a source tarball to a destination directory.

    Supported formats: ``.tar.gz``/``.tgz``, ``.tar.xz``, ``.tar.bz2`` and
    plain ``.tar``. All member paths are validated before anything is
    written.

    Raises:
        UnsupportedArchiveFormat: If archive format is not recognized
        ArchiveExtractionError: If extraction fails
        InsecureArchiveError: If archive contains malicious paths
    """
    archive_path = Path(archive_path)
    destination = Path(destination)

    if not archive_path.exists():
        raise ArchiveExtractionError(f"Archive not found: {archive_path}")

    archive_name = archive_path.name.lower()
    if archive_name.endswith((".tar.gz", ".tgz")):
        mode = "r:gz"
    elif archive_name.endswith(".tar.xz"):
        mode = "r:xz"
    elif archive_name.endswith((".tar.bz2", ".tbz2")):
        mode = "r:bz2"
    elif archive_name.endswith(".tar"):
        mode = "r:"
    else:
        raise UnsupportedArchiveFormat(
            f"Unsupported archive format: {archive_path.suffix}. "
            "Supported: .tar.gz, .tar.xz, .tar.bz2, .tar"
        )

    destination.mkdir(parents=True, exist_ok=True)

    try:
        with tarfile.open(archive_path, mode) as tar:
            members = tar.getmembers()

            for member in members:
                _validate_archive_path(member.name, destination)

            if sys.version_info >= (3, 12):
                tar.extractall(destination, filter="data")
            else:
                tar.extractall(destination)
    except InsecureArchiveError:
        raise
    except (tarfile.TarError, OSError) as e:
        raise ArchiveExtractionError(f"Failed to extract {archive_path}: {e}") from e


__all__ = [
    "FilesystemError",
    "ArchiveExtractionError",
    "UnsupportedArchiveFormat",
    "InsecureArchiveError",
    "is_relative_to",
    "atomic_write",
    "remove_file_if_exists",
    "extract_archive",
]
