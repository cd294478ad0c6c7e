# ==========================================================
# patchmedic – CDN Transfer
#
# Streams one file from the client's CDN into the scratch directory.
# requests is blocking, so the transfer runs in the loop's default
# executor; the event loop only awaits it. Cancellation is cooperative:
# the CancelToken is checked between chunks and the partial file removed.
# ==========================================================

from __future__ import annotations

import asyncio
import logging
import os
import threading
from typing import Callable, Optional

import requests

from .errors import DownloadError, PatchCancelled

logger = logging.getLogger("transfer")

DOWNLOAD_CHUNK_SIZE = 128 * 1024
REQUEST_TIMEOUT = 30  # seconds, connect and per-read; independent of cancellation

# The CDN serves the real client; identify like a browser and refuse compression
# so Content-Length matches the bytes written.
DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Connection": "keep-alive",
    "Accept-Encoding": "identity",
}

ProgressCallback = Callable[[int, Optional[int]], None]


class CancelToken:
    """Shared cancellation flag, safe to read from executor threads."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason = "Cancelled by user"

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: Optional[str] = None) -> None:
        if reason:
            self.reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise PatchCancelled(self.reason)


def join_url(base: str, file_name: str) -> str:
    base = base if base.endswith("/") else base + "/"
    return base + file_name.lstrip("/").replace("\\", "/")


def percent(transferred: int, total: Optional[int]) -> int:
    """floor(transferred/total*100) when the size is known, 0 otherwise."""
    if not total:
        return 0
    return min(100, (transferred * 100) // total)


class HttpTransfer:
    """Callable download strategy used by PatchManager: ``await transfer(url, dest, token, on_progress)``."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        timeout: float = REQUEST_TIMEOUT,
        chunk_size: int = DOWNLOAD_CHUNK_SIZE,
    ):
        self.session = session or requests.Session()
        self.session.headers.update(DEFAULT_HEADERS)
        self.timeout = timeout
        self.chunk_size = chunk_size

    async def __call__(
        self,
        url: str,
        dest: str,
        token: CancelToken,
        on_progress: Optional[ProgressCallback] = None,
    ) -> int:
        token.raise_if_cancelled()
        loop = asyncio.get_running_loop()

        def _report(transferred: int, total: Optional[int]) -> None:
            if on_progress is not None:
                loop.call_soon_threadsafe(on_progress, transferred, total)

        return await loop.run_in_executor(None, self._download_blocking, url, dest, token, _report)

    def _download_blocking(self, url: str, dest: str, token: CancelToken, report: ProgressCallback) -> int:
        os.makedirs(os.path.dirname(dest) or ".", exist_ok=True)
        transferred = 0

        try:
            with self.session.get(url, stream=True, timeout=self.timeout) as response:
                if response.status_code != 200:
                    raise DownloadError(url, f"HTTP {response.status_code}")

                length = response.headers.get("Content-Length")
                total = int(length) if length and length.isdigit() else None

                with open(dest, "wb") as f:
                    for chunk in response.iter_content(chunk_size=self.chunk_size):
                        token.raise_if_cancelled()
                        if not chunk:
                            continue
                        f.write(chunk)
                        transferred += len(chunk)
                        report(transferred, total)

                if total is not None and transferred != total:
                    raise DownloadError(url, f"Incomplete download: {transferred}/{total} bytes")

        except requests.RequestException as e:
            _discard(dest)
            raise DownloadError(url, str(e)) from e
        except Exception:
            _discard(dest)
            raise

        logger.debug("Downloaded %s (%s bytes)", url, transferred)
        return transferred


def _discard(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError:
        logger.debug("Could not remove partial download %s", path, exc_info=True)
