"""
Verified download of a single file.

The response body is streamed through every check as it arrives:
- one running hash per ``HashCheck`` (plus an implicit md5 check when the
  server sends ``Content-MD5``)
- a running byte count against the expected length
- a ``Content-Length`` header check before the body is read

Content goes to ``<destination>.tmp`` and is renamed into place only after
every check passed, so a failed download never replaces the destination.
A destination that already satisfies the checks is not downloaded again.

Usage:
    from stackkit.core.download import DownloadRequest, verified_download
    from stackkit.core.verification import HashCheck

    request = DownloadRequest(
        url="https://hackage.haskell.org/package/text-1.2.1.3/text-1.2.1.3.tar.gz",
        hash_checks=[HashCheck("sha256", "...")],
        length_check=225433,
    )
    downloaded = verified_download(request, Path("text-1.2.1.3.tar.gz"))
"""

import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

import requests
from requests.exceptions import ConnectionError, HTTPError, RequestException, Timeout

from stackkit.core.exceptions import (
    DownloadError,
    VerifiedDownloadError,
    VerifyFileError,
    WrongContentLength,
    WrongStreamLength,
)
from stackkit.core.verification import (
    CHUNK_SIZE,
    HashCheck,
    StreamingHasher,
    content_md5_check,
    verify_file,
)

logger = logging.getLogger(__name__)


@dataclass
class DownloadProgress:
    """Progress information for a download."""

    bytes_downloaded: int
    total_bytes: int
    percentage: float
    speed_bps: float  # bytes per second
    eta_seconds: float  # estimated time remaining

    def __str__(self) -> str:
        return format_progress(self)


@dataclass
class DownloadRequest:
    """
    A request together with the checks to perform on its content.

    Attributes:
        url: URL to download from
        hash_checks: Expected digests
        length_check: Expected number of bytes, if known
        headers: Extra request headers
    """

    url: str
    hash_checks: List[HashCheck] = field(default_factory=list)
    length_check: Optional[int] = None
    headers: Dict[str, str] = field(default_factory=dict)


def verified_download(
    request: DownloadRequest,
    destination: Path,
    progress_callback: Optional[Callable[[DownloadProgress], None]] = None,
    session: Optional[requests.Session] = None,
    timeout: int = 30,
    max_retries: int = 3,
) -> bool:
    """
    Download ``request`` to ``destination`` unless it is already there.

    Args:
        request: What to download and how to verify it
        destination: Local path to save file
        progress_callback: Optional callback for progress updates
        session: Optional requests session to reuse connections
        timeout: Request timeout in seconds
        max_retries: Maximum number of attempts on transport errors

    Returns:
        True if a download was performed, False if the existing file
        already matched every check

    Raises:
        WrongContentLength: If the Content-Length header is wrong
        WrongStreamLength: If the body has the wrong number of bytes
        WrongDigest: If a digest doesn't match
        DownloadError: If the transport fails after retries
    """
    if not request.url:
        raise ValueError("URL cannot be empty")

    destination = Path(destination)

    if destination.exists() and _file_matches_expectations(request, destination):
        logger.debug(f"Existing file matches expectations, skipping: {destination}")
        return False

    destination.parent.mkdir(parents=True, exist_ok=True)
    temp_path = destination.with_name(destination.name + ".tmp")

    for attempt in range(max_retries):
        try:
            _download_to(request, temp_path, progress_callback, session, timeout)
            break
        except (Timeout, ConnectionError) as e:
            temp_path.unlink(missing_ok=True)
            if attempt == max_retries - 1:
                raise DownloadError(
                    f"Download of {request.url} failed after {max_retries} attempts: {e}"
                ) from e
            backoff_seconds = 2**attempt
            logger.warning(
                f"Download attempt {attempt + 1} failed: {e}. "
                f"Retrying in {backoff_seconds}s..."
            )
            time.sleep(backoff_seconds)
        except (HTTPError, RequestException) as e:
            temp_path.unlink(missing_ok=True)
            raise DownloadError(f"Download of {request.url} failed: {e}") from e
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise

    os.replace(temp_path, destination)
    logger.info(f"Download complete: {destination}")
    return True


def _file_matches_expectations(request: DownloadRequest, destination: Path) -> bool:
    """Re-validate an existing file; any mismatch means download again."""
    try:
        verify_file(destination, request.hash_checks, request.length_check)
    except (VerifyFileError, VerifiedDownloadError) as e:
        logger.info(f"Existing file {destination} does not match, re-downloading: {e}")
        return False
    return True


def _check_content_length_header(headers, expected_length: int):
    announced = headers.get("content-length")
    if announced is not None and announced.strip() != str(expected_length):
        raise WrongContentLength(expected_length, announced)


def _download_to(
    request: DownloadRequest,
    temp_path: Path,
    progress_callback: Optional[Callable[[DownloadProgress], None]],
    session: Optional[requests.Session],
    timeout: int,
):
    """Stream the response into ``temp_path``, raising on any failed check."""
    logger.info(f"Downloading from {request.url}")

    getter = session.get if session is not None else requests.get
    with getter(
        request.url,
        headers=request.headers,
        stream=True,
        timeout=timeout,
        allow_redirects=True,
    ) as response:
        response.raise_for_status()

        expected_length = request.length_check
        if expected_length is not None:
            _check_content_length_header(response.headers, expected_length)

        hash_checks = list(request.hash_checks)
        content_md5 = response.headers.get("content-md5")
        if content_md5:
            hash_checks.insert(0, content_md5_check(content_md5))
        hashers = [StreamingHasher(check) for check in hash_checks]

        announced = response.headers.get("content-length")
        if expected_length is not None:
            total_size = expected_length
        elif announced and announced.strip().isdigit():
            total_size = int(announced)
        else:
            total_size = 0

        downloaded = 0
        start_time = time.time()
        last_progress_time = start_time

        with open(temp_path, "wb") as f:
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                if not chunk:
                    continue
                downloaded += len(chunk)
                if expected_length is not None and downloaded > expected_length:
                    raise WrongStreamLength(expected_length, downloaded)

                for hasher in hashers:
                    hasher.update(chunk)
                f.write(chunk)

                current_time = time.time()
                if progress_callback and (
                    current_time - last_progress_time >= 0.5
                    or downloaded == total_size
                ):
                    elapsed = current_time - start_time
                    speed = downloaded / elapsed if elapsed > 0 else 0
                    remaining = total_size - downloaded if total_size > 0 else 0
                    eta = remaining / speed if speed > 0 else 0
                    progress_callback(
                        DownloadProgress(
                            bytes_downloaded=downloaded,
                            total_bytes=total_size if total_size > 0 else downloaded,
                            percentage=(downloaded / total_size * 100)
                            if total_size > 0
                            else 0,
                            speed_bps=speed,
                            eta_seconds=eta,
                        )
                    )
                    last_progress_time = current_time

    if expected_length is not None and downloaded != expected_length:
        raise WrongStreamLength(expected_length, downloaded)

    for hasher in hashers:
        hasher.verify()


def format_progress(progress: DownloadProgress) -> str:
    """
    Format progress for display.

    Example:
        >>> progress = DownloadProgress(52428800, 104857600, 50.0, 1048576, 50)
        >>> print(format_progress(progress))
        50.0/100.0 MB (50.0%) at 1.0 MB/s ETA: 50s
    """
    mb_downloaded = progress.bytes_downloaded / 1024 / 1024
    mb_total = progress.total_bytes / 1024 / 1024
    speed_mbps = progress.speed_bps / 1024 / 1024

    if progress.total_bytes > 0:
        return (
            f"{mb_downloaded:.1f}/{mb_total:.1f} MB "
            f"({progress.percentage:.1f}%) "
            f"at {speed_mbps:.1f} MB/s "
            f"ETA: {progress.eta_seconds:.0f}s"
        )
    return f"{mb_downloaded:.1f} MB at {speed_mbps:.1f} MB/s"


__all__ = [
    "DownloadProgress",
    "DownloadRequest",
    "verified_download",
    "format_progress",
]
