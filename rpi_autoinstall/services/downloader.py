"""HTTP downloads for images, checksum manifests and release indexes.

Files are streamed to a ``.part`` sibling and renamed into place only once the
transfer completed, so an interrupted download is never mistaken for a cached
copy on the next run. An existing file at the target path is a cache hit and
is used as-is.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Protocol

import aiohttp

from rpi_autoinstall.config.settings import DEFAULT_DOWNLOAD_TIMEOUT_SECONDS
from rpi_autoinstall.exceptions import DownloadError
from rpi_autoinstall.logging import LoggerFactory


log = LoggerFactory.for_download()

CHUNK_SIZE = 1024 * 1024
PARTIAL_SUFFIX = ".part"


class Fetcher(Protocol):
    """What the pipeline needs from a downloader."""

    def fetch(self, url: str, local_path: Path) -> bool:
        ...

    def fetch_text(self, url: str) -> str:
        ...


def partial_path(local_path: Path) -> Path:
    return local_path.with_name(local_path.name + PARTIAL_SUFFIX)


class Downloader:
    """Blocking facade over an aiohttp client."""

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_DOWNLOAD_TIMEOUT_SECONDS,
        chunk_size: int = CHUNK_SIZE,
    ):
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.chunk_size = chunk_size

    def fetch(self, url: str, local_path: Path) -> bool:
        """Download ``url`` to ``local_path`` unless it already exists.

        Returns:
            True if a transfer happened, False on a cache hit

        Raises:
            DownloadError: Network failure, non-2xx status or local write error
        """
        local_path = Path(local_path)
        if local_path.exists():
            log.info(f"☑️ Using existing {local_path} file.")
            return False
        log.info(f"🌎 Downloading {url}...")
        asyncio.run(self._fetch(url, local_path))
        log.info(f"👍 Downloaded and saved to {local_path}")
        return True

    def fetch_text(self, url: str) -> str:
        """Fetch a small text resource (e.g. a directory index) into memory."""
        log.debug(f"Fetching {url}")
        return asyncio.run(self._fetch_text(url))

    async def _fetch(self, url: str, local_path: Path) -> None:
        part = partial_path(local_path)
        try:
            local_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(url) as resp:
                    if resp.status < 200 or resp.status >= 300:
                        raise DownloadError(url, f"HTTP {resp.status}")
                    with open(part, "wb") as handle:
                        async for chunk in resp.content.iter_chunked(self.chunk_size):
                            handle.write(chunk)
            os.replace(part, local_path)
        except DownloadError:
            _discard(part)
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            _discard(part)
            raise DownloadError(url, f"network error: {str(e) or type(e).__name__}") from e
        except OSError as e:
            _discard(part)
            raise DownloadError(url, f"cannot write {local_path}: {e}") from e
        except BaseException:
            _discard(part)
            raise

    async def _fetch_text(self, url: str) -> str:
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(url) as resp:
                    if resp.status < 200 or resp.status >= 300:
                        raise DownloadError(url, f"HTTP {resp.status}")
                    return await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DownloadError(url, f"network error: {str(e) or type(e).__name__}") from e


def _discard(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
