"""
Fetch and unpack upstream package sources.

Tarballs are downloaded with ``verified_download``: when the index knows the
size and sha256 of a tarball it is checked against them, and an already
downloaded tarball that still matches is not fetched again.
"""

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

import requests

from stackkit.core.download import DownloadRequest, verified_download
from stackkit.core.filesystem import extract_archive
from stackkit.core.types import PackageIdentifier
from stackkit.core.verification import HashCheck

logger = logging.getLogger(__name__)

DEFAULT_INDEX_URL = "https://hackage.haskell.org"


@dataclass(frozen=True)
class PackageDownload:
    """Where to get a tarball and what it must look like."""

    url: str
    sha256: Optional[str] = None
    size: Optional[int] = None


class PackageFetcher:
    """
    Downloads and unpacks upstream packages.

    Attributes:
        download_dir: Where tarballs are kept
        unpack_dir: Where sources are unpacked, one directory per package
        index_url: Base URL for packages without a known download
        downloads: Known downloads from the package index
    """

    def __init__(
        self,
        download_dir: Path,
        unpack_dir: Path,
        index_url: str = DEFAULT_INDEX_URL,
        downloads: Optional[Mapping[PackageIdentifier, PackageDownload]] = None,
        session: Optional[requests.Session] = None,
    ):
        self.download_dir = Path(download_dir)
        self.unpack_dir = Path(unpack_dir)
        self.index_url = index_url.rstrip("/")
        self.downloads = dict(downloads or {})
        self.session = session

    def download_for(self, ident: PackageIdentifier) -> PackageDownload:
        known = self.downloads.get(ident)
        if known is not None:
            return known
        return PackageDownload(f"{self.index_url}/package/{ident}/{ident}.tar.gz")

    def tarball_path(self, ident: PackageIdentifier) -> Path:
        return self.download_dir / f"{ident}.tar.gz"

    def fetch(self, ident: PackageIdentifier) -> Path:
        """Download the tarball of ``ident`` and return its path."""
        download = self.download_for(ident)
        checks = []
        if download.sha256:
            checks.append(HashCheck("sha256", download.sha256))
        else:
            logger.warning(f"No checksum known for {ident}, downloading unverified")

        request = DownloadRequest(
            url=download.url, hash_checks=checks, length_check=download.size
        )
        path = self.tarball_path(ident)
        if verified_download(request, path, session=self.session):
            logger.info(f"Downloaded {ident}")
        return path

    def unpack(self, ident: PackageIdentifier) -> Path:
        """
        Make the source of ``ident`` available and return its directory.

        An existing unpacked directory is reused.
        """
        destination = self.unpack_dir / str(ident)
        if destination.is_dir():
            logger.debug(f"Reusing unpacked source: {destination}")
            return destination

        tarball = self.fetch(ident)
        staging = self.unpack_dir / f".{ident}.unpacking"
        if staging.exists():
            shutil.rmtree(staging)
        try:
            extract_archive(tarball, staging)
            # Hackage tarballs contain a single top-level directory
            extracted = staging / str(ident)
            if not extracted.is_dir():
                extracted = staging
            extracted.rename(destination)
        finally:
            if staging.exists():
                shutil.rmtree(staging)

        logger.info(f"Unpacked {ident} to {destination}")
        return destination


__all__ = ["DEFAULT_INDEX_URL", "PackageDownload", "PackageFetcher"]
