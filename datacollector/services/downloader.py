"""HTTP content downloader with retries, size limit and checksums."""

import hashlib
import logging
import mimetypes
import os
import time
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import httpx
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from datacollector.schemas.document import DownloadResult

logger = logging.getLogger(__name__)


class DownloadTooLargeError(ValueError):
    """The remote file exceeds the configured size limit."""


def _is_transient(error: BaseException) -> bool:
    if isinstance(error, httpx.TransportError):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code >= 500 or error.response.status_code == 429
    return False


class ContentDownloader:
    """Streams remote files to disk."""

    def __init__(
        self,
        download_dir: str = "./downloads",
        timeout: float = 30.0,
        max_bytes: int = 100 * 1024 * 1024,
        max_retries: int = 3,
        client: Optional[httpx.Client] = None,
    ):
        """
        Initialize the downloader.

        Args:
            download_dir: Directory receiving downloaded files
            timeout: Per-request timeout in seconds
            max_bytes: Largest accepted file size
            max_retries: Attempts per download for transient errors
            client: Optional preconfigured HTTP client
        """
        self.download_dir = Path(download_dir)
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.max_retries = max(1, max_retries)
        self._client = client

    def download(self, url: str) -> DownloadResult:
        """
        Download a URL into the download directory.

        Args:
            url: HTTP(S) URL

        Returns:
            DownloadResult with local path, size, content type and sha256 checksum

        Raises:
            httpx.HTTPError: On request failures after retries
            DownloadTooLargeError: If the file exceeds the size limit
        """
        retryer = Retrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception(_is_transient),
            reraise=True,
        )
        return retryer(self._download_once, url)

    def _download_once(self, url: str) -> DownloadResult:
        self.download_dir.mkdir(parents=True, exist_ok=True)

        if self._client is not None:
            return self._stream_to_disk(self._client, url)
        with httpx.Client(timeout=self.timeout, follow_redirects=True) as client:
            return self._stream_to_disk(client, url)

    def _stream_to_disk(self, client: httpx.Client, url: str) -> DownloadResult:
        logger.info(f"Downloading {url}")

        with client.stream("GET", url) as response:
            response.raise_for_status()

            content_length = int(response.headers.get("content-length") or 0)
            if content_length > self.max_bytes:
                raise DownloadTooLargeError(
                    f"File size ({content_length} bytes) exceeds limit ({self.max_bytes} bytes)"
                )

            content_type = response.headers.get("content-type", "").split(";")[0].strip()
            if not content_type:
                content_type = mimetypes.guess_type(url)[0] or "application/octet-stream"

            target = self.download_dir / self._filename(url, content_type)
            digest = hashlib.sha256()
            size = 0

            try:
                with open(target, "wb") as handle:
                    for block in response.iter_bytes():
                        size += len(block)
                        if size > self.max_bytes:
                            raise DownloadTooLargeError(
                                f"File size exceeds limit ({self.max_bytes} bytes)"
                            )
                        digest.update(block)
                        handle.write(block)
            except Exception:
                target.unlink(missing_ok=True)
                raise

        logger.info(f"Downloaded {url} to {target} ({size} bytes)")
        return DownloadResult(
            url=url,
            path=str(target),
            size=size,
            content_type=content_type,
            checksum=digest.hexdigest(),
        )

    @staticmethod
    def _filename(url: str, content_type: str) -> str:
        """Unique file name derived from the URL hash and time."""
        url_hash = hashlib.sha256(url.encode()).hexdigest()[:16]
        extension = os.path.splitext(urlparse(url).path)[1]
        if not extension:
            extension = mimetypes.guess_extension(content_type) or ".txt"
        return f"{url_hash}_{time.time_ns()}{extension}"
