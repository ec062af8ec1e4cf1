"""
Model artifact download pipeline

Building blocks used by the lifecycle manager:
- fetch(): streamed HTTP GET into staging, following redirects in a bounded loop
- extract_archive(): unpack a sidecar archive into an isolated directory
- locate_bundle(): find the sidecar bundle by suffix anywhere in the extraction
- validate_bundle(): soft structural check of a sidecar bundle
"""

import logging
import threading
import zipfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Tuple
from urllib.parse import urljoin

import requests

from whisprlocal.catalog import SIDECAR_SUFFIX, ModelDescriptor
from whisprlocal.errors import (
    ArchiveExtractionFailure,
    ArtifactNotFound,
    DownloadCancelled,
    NetworkFailure,
    ValidationWarning,
)
from whisprlocal.storage import ModelStorage, discard

logger = logging.getLogger(__name__)

REDIRECT_STATUSES = (301, 302)

# A compiled Core ML bundle normally carries several of these; which ones
# depends on the coremltools version that produced it.
SIDECAR_REQUIRED_FILES = ("coremldata.bin", "model.mil", "metadata.json", "weights")

ProgressCallback = Callable[[float], None]


class DownloadState(str, Enum):
    """Download session states"""
    IDLE = "idle"
    DOWNLOADING_PRIMARY = "downloading_primary"
    INSTALLING_PRIMARY = "installing_primary"
    DOWNLOADING_SIDECAR = "downloading_sidecar"
    INSTALLING_SIDECAR = "installing_sidecar"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class DownloadSession:
    """One in-flight model download"""
    descriptor: ModelDescriptor
    state: DownloadState = DownloadState.IDLE
    progress: float = 0.0
    redirect_depth: int = 0
    error: Optional[Exception] = None
    warnings: List[ValidationWarning] = field(default_factory=list)
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def check_cancelled(self) -> None:
        """Raise DownloadCancelled if cancellation was requested"""
        if self.cancel_event.is_set():
            raise DownloadCancelled(f"Download of {self.descriptor.filename} cancelled")


def fetch(
    http: requests.Session,
    url: str,
    storage: ModelStorage,
    max_redirects: int = 5,
    chunk_size: int = 1024 * 1024,
    timeout: Tuple[float, float] = (30.0, 600.0),
    session: Optional[DownloadSession] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> Path:
    """
    Download a URL into a staging file

    Redirects (301/302 with Location) are followed up to max_redirects hops.
    Every hop starts a fresh temp file and restarts progress at 0; the
    previous hop's file is removed.

    Args:
        http: requests.Session (or compatible) used for GET requests
        url: Remote artifact URL
        storage: Managed storage providing the staging area
        max_redirects: Maximum number of redirects to follow
        chunk_size: Streaming chunk size in bytes
        timeout: (connect, read) timeouts in seconds
        session: Download session to check for cancellation and record depth
        on_progress: Called with a fraction in [0, 1]

    Returns:
        Path of the staged file; the caller owns it

    Raises:
        NetworkFailure: Unreachable host, bad status, missing Location,
            truncated body or too many redirects
        DownloadCancelled: Session cancelled mid-transfer
    """
    current_url = url
    temp_path: Optional[Path] = None

    try:
        for depth in range(max_redirects + 1):
            if temp_path is not None:
                discard(temp_path)
            temp_path = storage.new_staging_file()
            if session is not None:
                session.redirect_depth = depth
                session.check_cancelled()
            if on_progress:
                on_progress(0.0)

            response = _get(http, current_url, timeout)
            try:
                status = response.status_code
                if status in REDIRECT_STATUSES:
                    location = response.headers.get("Location")
                    if not location:
                        raise NetworkFailure(
                            f"HTTP {status} without Location header", current_url, status
                        )
                    current_url = urljoin(current_url, location)
                    logger.info(f"Redirect {status} ({depth + 1}/{max_redirects}) -> {current_url}")
                    continue

                if status != 200:
                    raise NetworkFailure(f"HTTP {status} for {current_url}", current_url, status)

                _write_body(response, temp_path, chunk_size, session, on_progress)
            finally:
                response.close()

            staged, temp_path = temp_path, None
            return staged

        raise NetworkFailure(f"Too many redirects (max {max_redirects})", url)
    finally:
        if temp_path is not None:
            discard(temp_path)


def _get(http: requests.Session, url: str, timeout: Tuple[float, float]) -> requests.Response:
    try:
        return http.get(url, stream=True, allow_redirects=False, timeout=timeout)
    except requests.RequestException as e:
        raise NetworkFailure(f"Request failed: {e}", url) from e


def _write_body(
    response: requests.Response,
    dest: Path,
    chunk_size: int,
    session: Optional[DownloadSession],
    on_progress: Optional[ProgressCallback],
) -> None:
    """Stream a 200 response body to dest"""
    total = int(response.headers.get("Content-Length") or 0)
    downloaded = 0

    try:
        with open(dest, "wb") as f:
            for chunk in response.iter_content(chunk_size=chunk_size):
                if session is not None:
                    session.check_cancelled()
                if not chunk:
                    continue
                f.write(chunk)
                downloaded += len(chunk)
                if total > 0 and on_progress:
                    on_progress(min(downloaded / total, 1.0))
    except requests.RequestException as e:
        raise NetworkFailure(f"Transfer interrupted: {e}", response.url) from e

    if total > 0 and downloaded != total:
        raise NetworkFailure(
            f"Truncated download ({downloaded} of {total} bytes)", response.url
        )

    logger.debug(f"Wrote {downloaded:,} bytes to {dest.name}")


def extract_archive(archive: Path, dest: Path) -> None:
    """
    Unpack a zip archive into dest

    Raises:
        ArchiveExtractionFailure: If the archive is unreadable
    """
    try:
        with zipfile.ZipFile(archive) as zf:
            zf.extractall(dest)
    except (zipfile.BadZipFile, zipfile.LargeZipFile, EOFError) as e:
        raise ArchiveExtractionFailure(f"Cannot extract {archive.name}: {e}") from e


def locate_bundle(root: Path, preferred_name: Optional[str] = None) -> Path:
    """
    Find a sidecar bundle directory under root

    Searches recursively for directories ending in .mlmodelc. An exact name
    match wins; otherwise the shallowest candidate is used.

    Raises:
        ArtifactNotFound: If no bundle exists under root
    """
    candidates = sorted(
        (p for p in root.rglob(f"*{SIDECAR_SUFFIX}") if p.is_dir()),
        key=lambda p: (len(p.parts), str(p)),
    )
    if not candidates:
        raise ArtifactNotFound(f"No {SIDECAR_SUFFIX} bundle found in archive")

    for candidate in candidates:
        if candidate.name == preferred_name:
            return candidate
    return candidates[0]


def validate_bundle(bundle: Path) -> Optional[ValidationWarning]:
    """
    Soft structural check of a sidecar bundle

    Returns:
        None if at least one expected file is present, otherwise a
        ValidationWarning describing the problem (never raised)
    """
    present = [name for name in SIDECAR_REQUIRED_FILES if (bundle / name).exists()]
    if present:
        return None

    warning = ValidationWarning(
        f"{bundle.name} contains none of: {', '.join(SIDECAR_REQUIRED_FILES)}"
    )
    logger.warning(f"Sidecar validation: {warning.message}")
    return warning
