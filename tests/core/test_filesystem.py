"""
Unit tests for filesystem utilities.

Tests atomic writes, file removal and source tarball extraction.
"""

import io
import tarfile
from unittest.mock import patch

import pytest

from stackkit.core.filesystem import (
    ArchiveExtractionError,
    InsecureArchiveError,
    UnsupportedArchiveFormat,
    atomic_write,
    extract_archive,
    is_relative_to,
    remove_file_if_exists,
)


def make_tarball(path, members):
    with tarfile.open(path, "w:gz") as tar:
        for name, data in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))


class TestAtomicWrite:
    """Test atomic_write function."""

    def test_write_bytes(self, tmp_path):
        """Test writing bytes creates parent directories."""
        target = tmp_path / "a" / "b" / "cache"
        atomic_write(target, b"\x00\x01")
        assert target.read_bytes() == b"\x00\x01"

    def test_write_text(self, tmp_path):
        """Test writing text."""
        target = tmp_path / "file.txt"
        atomic_write(target, "hello")
        assert target.read_text() == "hello"

    def test_overwrite(self, tmp_path):
        """Test existing content is replaced."""
        target = tmp_path / "file"
        target.write_bytes(b"old")
        atomic_write(target, b"new")
        assert target.read_bytes() == b"new"

    def test_failure_keeps_original(self, tmp_path):
        """Test a failed rename leaves the original and no temp files."""
        target = tmp_path / "file"
        target.write_bytes(b"old")

        with patch("stackkit.core.filesystem.os.replace", side_effect=OSError("boom")):
            with pytest.raises(OSError):
                atomic_write(target, b"new")

        assert target.read_bytes() == b"old"
        assert [p.name for p in tmp_path.iterdir()] == ["file"]


class TestRemoveFileIfExists:
    """Test remove_file_if_exists function."""

    def test_remove_existing(self, tmp_path):
        """Test removing an existing file."""
        target = tmp_path / "file"
        target.write_text("x")
        assert remove_file_if_exists(target) is True
        assert not target.exists()

    def test_missing_is_success(self, tmp_path):
        """Test an absent file is not an error."""
        assert remove_file_if_exists(tmp_path / "missing") is False


class TestIsRelativeTo:
    """Test is_relative_to function."""

    def test_paths(self, tmp_path):
        assert is_relative_to(tmp_path / "a" / "b", tmp_path)
        assert not is_relative_to(tmp_path.parent, tmp_path)


class TestExtractArchive:
    """Test extract_archive function."""

    def test_extract_tar_gz(self, tmp_path):
        """Test extracting a source tarball."""
        archive = tmp_path / "pkg-1.0.tar.gz"
        make_tarball(archive, {"pkg-1.0/pkg.cabal": b"name: pkg\n"})

        extract_archive(archive, tmp_path / "out")

        assert (tmp_path / "out" / "pkg-1.0" / "pkg.cabal").read_bytes() == b"name: pkg\n"

    def test_traversal_is_blocked(self, tmp_path):
        """Test members escaping the destination are rejected."""
        archive = tmp_path / "evil.tar.gz"
        make_tarball(archive, {"../evil.txt": b"x"})

        with pytest.raises(InsecureArchiveError):
            extract_archive(archive, tmp_path / "out")

        assert not (tmp_path / "evil.txt").exists()

    def test_unsupported_format(self, tmp_path):
        """Test unknown archive extensions."""
        archive = tmp_path / "pkg.rar"
        archive.write_bytes(b"")

        with pytest.raises(UnsupportedArchiveFormat):
            extract_archive(archive, tmp_path / "out")

    def test_missing_archive(self, tmp_path):
        """Test a missing archive."""
        with pytest.raises(ArchiveExtractionError):
            extract_archive(tmp_path / "missing.tar.gz", tmp_path / "out")

    def test_corrupt_archive(self, tmp_path):
        """Test a file that is not a tarball."""
        archive = tmp_path / "pkg.tar.gz"
        archive.write_bytes(b"not a tarball")

        with pytest.raises(ArchiveExtractionError):
            extract_archive(archive, tmp_path / "out")
