"""Downloads direct file URLs over HTTP, reporting progress as text lines."""
import asyncio
import logging
import re
import time
from pathlib import Path
from typing import Awaitable, Callable, Dict
from urllib.parse import unquote, urlparse

import aiohttp
import aiofiles

from .constants import FILE_CHUNK_SIZE, FILE_PROGRESS_INTERVAL, REQUEST_HEADERS
from .exceptions import DownloadCancelledError, TransferError


def _format_speed(bytes_per_second: float) -> str:
    return f"{bytes_per_second / 1024 / 1024:.2f}MiB/s"


def _format_eta(seconds: float) -> str:
    minutes, seconds = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}" if hours else f"{minutes:02d}:{seconds:02d}"


def progress_line(bytes_downloaded: int, total_size: int, elapsed: float) -> str:
    """
    Renders a progress sample in the same shape as yt-dlp's progress template,
    e.g. "  45.2% 1.20MiB/s 00:10", or "NA" tokens when the size is unknown.
    """
    speed = bytes_downloaded / elapsed if elapsed > 0 else 0
    if total_size <= 0:
        return f"  0.0% {_format_speed(speed) if speed else 'NA'} NA"
    percent = min(bytes_downloaded / total_size * 100, 100.0)
    eta = _format_eta((total_size - bytes_downloaded) / speed) if speed else 'NA'
    return f"{percent:5.1f}% {_format_speed(speed) if speed else 'NA'} {eta}"


def target_filename(url: str, filename: str) -> str:
    """Chooses a safe file name from the requested name or the URL path."""
    name = filename or Path(unquote(urlparse(url).path)).name or 'download.bin'
    return re.sub(r'[<>:"/\\|?*]', '_', name).strip(' .') or 'download.bin'


class FileFetcher:
    """Single-stream HTTP downloader with cooperative cancellation."""
    DOWNLOAD_RETRY_ATTEMPTS = 3

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self.active_tasks: Dict[str, asyncio.Task] = {}

    async def fetch(self, url: str, output_dir: Path, filename: str,
                    on_progress: Callable[[str], Awaitable[None]]) -> str:
        """
        Downloads `url` into `output_dir` and returns the saved path.

        Raises:
            TransferError: On HTTP or file errors after all retries.
            DownloadCancelledError: If `cancel` was called for this URL.
        """
        save_path = output_dir / target_filename(url, filename)
        download = asyncio.create_task(self._download(url, save_path, on_progress), name=f"file-fetch:{url[:40]}")
        self.active_tasks[url] = download
        try:
            await download
        except asyncio.CancelledError:
            raise DownloadCancelledError("Download cancelled.")
        except aiohttp.ClientError as e:
            raise TransferError(f"Network error: {e}")
        except OSError as e:
            raise TransferError(f"File error: {e}")
        finally:
            # A cancelled fetch can finish after a new one for the same URL has registered.
            if self.active_tasks.get(url) is download:
                del self.active_tasks[url]
        return str(save_path)

    async def _download(self, url: str, save_path: Path, on_progress: Callable[[str], Awaitable[None]]):
        try:
            await on_progress(f"[download] Destination: {save_path}")
            async with aiohttp.ClientSession() as session:
                await self._download_single_stream(session, url, save_path, on_progress)
        except asyncio.CancelledError:
            await asyncio.to_thread(save_path.unlink, missing_ok=True)
            raise

    async def _download_single_stream(self, session: aiohttp.ClientSession, url: str, save_path: Path,
                                      on_progress: Callable[[str], Awaitable[None]]):
        """Downloads a file as a single stream, with retries."""
        for attempt in range(self.DOWNLOAD_RETRY_ATTEMPTS):
            try:
                async with session.get(url, headers=REQUEST_HEADERS, timeout=aiohttp.ClientTimeout(total=None, sock_read=60)) as r:
                    r.raise_for_status()
                    total_size = int(r.headers.get('Content-Length', 0))

                    bytes_downloaded, start_time, last_report = 0, time.monotonic(), 0.0
                    await asyncio.to_thread(save_path.parent.mkdir, parents=True, exist_ok=True)
                    async with aiofiles.open(save_path, 'wb') as f_out:
                        async for chunk in r.content.iter_chunked(FILE_CHUNK_SIZE):
                            await f_out.write(chunk)
                            bytes_downloaded += len(chunk)
                            now = time.monotonic()
                            if now - last_report >= FILE_PROGRESS_INTERVAL:
                                last_report = now
                                await on_progress(progress_line(bytes_downloaded, total_size, now - start_time))
                    await on_progress(progress_line(bytes_downloaded, total_size or bytes_downloaded,
                                                    time.monotonic() - start_time))
                return
            except aiohttp.ClientError as e:
                self.logger.error(f"Single-stream error on attempt {attempt + 1} for {url}: {e}")
                if attempt < self.DOWNLOAD_RETRY_ATTEMPTS - 1: await asyncio.sleep(2 ** attempt)
                else: raise e

    async def cancel(self, url: str):
        """Cancels the download of `url` and waits until its partial file is gone."""
        task = self.active_tasks.get(url)
        if task and not task.done():
            self.logger.info(f"Cancellation signal sent to file download for {url}.")
            task.cancel()
            await asyncio.wait([task])
