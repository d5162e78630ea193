"""
Streaming HTTP download of model artifacts into the models directory.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional
from urllib.parse import urljoin

import requests

from core.errors import DownloadCancelled, DownloadInProgress, DownloadNetworkError, EmptyArtifact, TooManyRedirects
from core.model_registry import ModelDescriptor
from utils.file_utils import ensure_directory
from utils.logger_util import get_logger

logger = get_logger("core.download")

DEFAULT_CONNECT_TIMEOUT = 30.0
DEFAULT_READ_TIMEOUT = 60.0
DEFAULT_CHUNK_SIZE = 8192
INDETERMINATE = -1
USER_AGENT = "LocalMind/1.0 (model downloader)"

_REDIRECT_STATUSES = (301, 302)

ProgressSink = Callable[[int], None]


@dataclass
class DownloadSession:
    """The single live download, exposed for status queries."""

    descriptor: ModelDescriptor
    target_path: Path
    bytes_transferred: int = 0
    total_bytes: int = INDETERMINATE
    cancelled: threading.Event = field(default_factory=threading.Event)

    @property
    def percent(self) -> int:
        return _percent(self.bytes_transferred, self.total_bytes)


def _percent(transferred: int, total: int) -> int:
    if total <= 0:
        return INDETERMINATE
    return max(0, min(100, transferred * 100 // total))


class DownloadCoordinator:
    """
    Fetches one artifact at a time over HTTP.

    Only a single session may be live; a second `download()` call fails
    immediately with `DownloadInProgress`. Cancellation is cooperative and
    observed between chunks.
    """

    def __init__(
        self,
        models_dir: Path,
        *,
        session: Optional[Any] = None,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        read_timeout: float = DEFAULT_READ_TIMEOUT,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        """
        Args:
            models_dir: Directory artifacts are written into.
            session: `requests.Session`-like object; a new session is created when omitted.
            connect_timeout: Seconds to wait for the connection.
            read_timeout: Seconds to wait between received bytes.
            chunk_size: Bytes per streamed chunk.
        """
        self._models_dir = Path(models_dir)
        self._http = session or requests.Session()
        self._timeout = (connect_timeout, read_timeout)
        self._chunk_size = chunk_size
        self._guard = threading.Lock()
        self._session: Optional[DownloadSession] = None

    @property
    def models_dir(self) -> Path:
        return self._models_dir

    @property
    def is_busy(self) -> bool:
        return self._guard.locked()

    @property
    def session(self) -> Optional[DownloadSession]:
        return self._session

    def cancel(self) -> bool:
        """Request cancellation of the live session; returns False when idle."""
        session = self._session
        if session is None:
            return False
        session.cancelled.set()
        logger.info("Cancellation requested for %s", session.descriptor.name)
        return True

    def download(self, descriptor: ModelDescriptor, progress_sink: Optional[ProgressSink] = None) -> Path:
        """
        Download `descriptor` into the models directory.

        Args:
            descriptor: Catalog entry to fetch.
            progress_sink: Receives integer percentages (or -1 when the size is unknown).
        Returns:
            Path of the completed artifact.
        """
        if not self._guard.acquire(blocking=False):
            raise DownloadInProgress()
        try:
            target = ensure_directory(self._models_dir) / descriptor.name
            session = DownloadSession(descriptor=descriptor, target_path=target)
            self._session = session
            logger.info("Starting download of %s from %s", descriptor.name, descriptor.download_url)
            self._fetch(session, progress_sink or (lambda _percent: None))
            logger.info("Downloaded %s (%s bytes)", descriptor.name, session.bytes_transferred)
            return target
        finally:
            self._session = None
            self._guard.release()

    def _open(self, url: str) -> Any:
        headers = {"User-Agent": USER_AGENT}
        try:
            response = self._http.get(url, stream=True, allow_redirects=False, timeout=self._timeout, headers=headers)
            if response.status_code in _REDIRECT_STATUSES:
                location = response.headers.get("Location")
                response.close()
                if not location:
                    raise DownloadNetworkError(f"Redirect without Location header from {url}")
                redirected = urljoin(url, location)
                logger.info("Following redirect to %s", redirected)
                response = self._http.get(
                    redirected, stream=True, allow_redirects=False, timeout=self._timeout, headers=headers
                )
                if response.status_code in _REDIRECT_STATUSES:
                    response.close()
                    raise TooManyRedirects(f"Too many redirects while fetching {url}")
        except requests.RequestException as exc:
            raise DownloadNetworkError(f"Request failed: {exc}") from exc

        if not 200 <= response.status_code < 300:
            response.close()
            raise DownloadNetworkError(f"Server returned HTTP {response.status_code}")
        return response

    def _fetch(self, session: DownloadSession, progress_sink: ProgressSink) -> None:
        descriptor = session.descriptor
        response = self._open(descriptor.download_url)
        session.total_bytes = _resolve_total(response.headers, descriptor.size_bytes)
        last_reported: Optional[int] = None

        try:
            with session.target_path.open("wb") as handle:
                for chunk in response.iter_content(chunk_size=self._chunk_size):
                    if session.cancelled.is_set():
                        break
                    if not chunk:
                        continue
                    handle.write(chunk)
                    session.bytes_transferred += len(chunk)
                    percent = session.percent
                    if last_reported is None or percent >= last_reported:
                        progress_sink(percent)
                        last_reported = percent
        except (OSError, requests.RequestException) as exc:
            response.close()
            _remove_quietly(session.target_path)
            logger.error("Download of %s failed: %s", descriptor.name, exc)
            raise DownloadNetworkError(f"Download failed: {exc}") from exc
        finally:
            response.close()

        if session.cancelled.is_set():
            logger.info("Download of %s cancelled after %s bytes", descriptor.name, session.bytes_transferred)
            raise DownloadCancelled(f"Download of {descriptor.name} was cancelled")

        if session.bytes_transferred == 0:
            _remove_quietly(session.target_path)
            raise EmptyArtifact(f"Downloaded file {descriptor.name} is empty")

        if session.total_bytes > 0 and last_reported != 100:
            progress_sink(100)


def _resolve_total(headers: Dict[str, str], catalog_size: int) -> int:
    raw = headers.get("Content-Length")
    try:
        declared = int(raw) if raw is not None else 0
    except (TypeError, ValueError):
        declared = 0
    if declared > 0:
        return declared
    if catalog_size > 0:
        return catalog_size
    return INDETERMINATE


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Could not remove %s: %s", path, exc)
