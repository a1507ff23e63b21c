"""
The download engine the queue supervises.

`DownloadEngine` is the contract the queue relies on. `LocalEngine` is the
concrete engine: it routes media URLs to a yt-dlp subprocess and direct file
URLs to an HTTP fetcher, and reports which executables are missing.
"""

import asyncio
import logging
import os
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol

from .config import Settings
from .dependencies import DependencyManager
from .exceptions import MissingDependencyError
from .file_fetcher import FileFetcher
from .jobs import JobSource
from .ytdlp import YtDlpRunner

ProgressCallback = Callable[[str], Awaitable[None]]
FilePathCallback = Callable[[str], Awaitable[None]]


class DownloadEngine(Protocol):
    async def fetch_metadata(self, url: str, auth_options: Dict[str, str]) -> Mapping[str, Any]: ...

    async def transfer(self, url: str, options: Dict[str, Any], on_progress: ProgressCallback,
                       on_file_path: Optional[FilePathCallback] = None) -> str: ...

    async def cancel_transfer(self, url: str) -> None: ...

    async def stat_file(self, path: str) -> int: ...

    def missing_capabilities(self, source: JobSource) -> List[str]: ...


class LocalEngine:
    """Runs transfers on this machine with yt-dlp (media) or aiohttp (files)."""

    def __init__(self, settings: Settings, dep_manager: Optional[DependencyManager] = None):
        """
        Initializes the LocalEngine.

        Args:
            settings: Read for output paths and the filename template.
            dep_manager: Locates yt-dlp and ffmpeg; a new one is created if omitted.
        """
        self.settings = settings
        self.dep_manager = dep_manager or DependencyManager()
        self.logger = logging.getLogger(__name__)
        self.file_fetcher = FileFetcher()
        self._runner: Optional[YtDlpRunner] = None

    async def initialize(self):
        await self.dep_manager.initialize()

    @property
    def runner(self) -> YtDlpRunner:
        if self._runner is None or self._runner.yt_dlp_path != self.dep_manager.yt_dlp_path:
            if self.dep_manager.yt_dlp_path is None:
                raise MissingDependencyError(['yt-dlp'])
            self._runner = YtDlpRunner(self.dep_manager.yt_dlp_path, self.dep_manager.ffmpeg_path)
        return self._runner

    def missing_capabilities(self, source: JobSource) -> List[str]:
        if source is JobSource.FILE:
            return []
        missing = []
        if not self.dep_manager.yt_dlp_path:
            missing.append('yt-dlp')
        if not self.dep_manager.ffmpeg_path:
            missing.append('ffmpeg')
        return missing

    async def fetch_metadata(self, url: str, auth_options: Dict[str, str]) -> Mapping[str, Any]:
        return await self.runner.fetch_metadata(url, auth_options)

    async def transfer(self, url: str, options: Dict[str, Any], on_progress: ProgressCallback,
                       on_file_path: Optional[FilePathCallback] = None) -> str:
        if options.get('source') == JobSource.FILE.value:
            return await self.file_fetcher.fetch(
                url, self.settings.download_path, options.get('filename') or '', on_progress)
        output_dir = self.settings.output_dir_for(options.get('download_mode', 'auto'))
        return await self.runner.transfer(
            url, options, output_dir, self.settings.filename_template, on_progress, on_file_path,
            embed_thumbnail=self.settings.embed_thumbnail)

    async def cancel_transfer(self, url: str) -> None:
        await self.file_fetcher.cancel(url)
        if self._runner is not None:
            await self._runner.cancel(url)

    async def stat_file(self, path: str) -> int:
        stat_result = await asyncio.to_thread(os.stat, path)
        return stat_result.st_size
