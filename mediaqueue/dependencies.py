"""Locates the yt-dlp and FFmpeg executables the media engine needs."""
import sys
import shutil
import asyncio
import logging
from pathlib import Path
from typing import Optional, Sequence

from .constants import USER_DATA_DIR


class DependencyManager:
    """Finds yt-dlp and FFmpeg, preferring copies placed in the user data directory."""

    def __init__(self, search_dirs: Sequence[Path] = (USER_DATA_DIR,)):
        """
        Initializes the DependencyManager.

        Args:
            search_dirs: Directories checked before the system PATH.
        """
        self.search_dirs = list(search_dirs)
        self.logger = logging.getLogger(__name__)
        self.yt_dlp_path: Optional[Path] = None
        self.ffmpeg_path: Optional[Path] = None

    async def initialize(self):
        """Asynchronously finds paths to dependencies to avoid blocking the event loop."""
        self.logger.info("Initializing dependency paths...")
        self.yt_dlp_path, self.ffmpeg_path = await asyncio.gather(
            asyncio.to_thread(self.find_yt_dlp),
            asyncio.to_thread(self.find_ffmpeg)
        )
        self.logger.info(f"yt-dlp path: {self.yt_dlp_path}")
        self.logger.info(f"FFmpeg path: {self.ffmpeg_path}")

    def find_yt_dlp(self) -> Optional[Path]:
        """Finds the yt-dlp executable."""
        self.yt_dlp_path = self._find_executable('yt-dlp')
        return self.yt_dlp_path

    def find_ffmpeg(self) -> Optional[Path]:
        """Finds the ffmpeg executable."""
        self.ffmpeg_path = self._find_executable('ffmpeg')
        return self.ffmpeg_path

    def _find_executable(self, name: str) -> Optional[Path]:
        """Finds an executable, preferring a locally managed one."""
        filename = f'{name}.exe' if sys.platform == 'win32' else name
        for directory in self.search_dirs:
            local_path = directory / filename
            if local_path.exists():
                return local_path
        path_in_system = shutil.which(name)
        return Path(path_in_system) if path_in_system else None
