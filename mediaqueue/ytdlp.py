"""Runs yt-dlp subprocesses for metadata lookups and media transfers."""
import asyncio
import json
import os
import re
import signal
import subprocess
import sys
import uuid
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple

import aiofiles

from .constants import SUBPROCESS_CREATION_FLAGS, TEMP_DOWNLOAD_DIR
from .exceptions import DownloadCancelledError, MetadataLookupError, TransferError

# Lines that announce where the output file (finally) lives; the last one wins.
OUTPUT_PATH_PATTERNS = (
    re.compile(r'\[Merger\] Merging formats into "(.+)"'),
    re.compile(r'\[download\] (.+) has already been downloaded'),
    re.compile(r'Destination:\s*(.+)'),
)
PROGRESS_TEMPLATE = 'download:%(progress._percent_str)s %(progress._speed_str)s %(progress._eta_str)s'


def _safe_folder_name(name: str) -> str:
    return re.sub(r'[<>:"/\\|?*]', '_', name).strip(' .') or 'Playlist'


@dataclass
class ActiveTransfer:
    """One running transfer; `process` stays None until yt-dlp has been spawned."""
    process: Optional[asyncio.subprocess.Process] = None
    cancelled: bool = False


class YtDlpRunner:
    """Builds yt-dlp commands, runs them, and streams their output back line by line."""

    def __init__(self, yt_dlp_path: Path, ffmpeg_path: Optional[Path] = None):
        """
        Initializes the YtDlpRunner.

        Args:
            yt_dlp_path: The path to the yt-dlp executable.
            ffmpeg_path: The path to ffmpeg, passed to yt-dlp when known.
        """
        self.yt_dlp_path = yt_dlp_path
        self.ffmpeg_path = ffmpeg_path
        self.logger = logging.getLogger(__name__)
        self.active_transfers: Dict[str, ActiveTransfer] = {}

    def _parse_yt_dlp_error(self, stderr: str) -> str:
        """
        Parses stderr from yt-dlp to find a concise error message.

        Returns:
            A concise error message, or the last line of stderr as a fallback.
        """
        if not stderr.strip():
            return "yt-dlp returned an error with no output."

        for line in stderr.strip().splitlines():
            if line.lower().startswith('error:'):
                error_msg = line[6:].strip()
                return error_msg[:200] + "..." if len(error_msg) > 200 else error_msg

        return stderr.strip().splitlines()[-1]

    def _subprocess_kwargs(self, new_group: bool = False) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {}
        if sys.platform == 'win32':
            flags = SUBPROCESS_CREATION_FLAGS
            if new_group:
                flags |= subprocess.CREATE_NEW_PROCESS_GROUP
            kwargs['creationflags'] = flags
        elif new_group:
            kwargs['start_new_session'] = True
        return kwargs

    def _cookie_args(self, auth_options: Dict[str, Any], cookie_file: Optional[Path] = None) -> List[str]:
        browser = auth_options.get('cookies_from_browser') or ''
        if browser == 'custom':
            return ['--cookies', str(cookie_file)] if cookie_file else []
        if browser:
            return ['--cookies-from-browser', browser]
        return []

    @asynccontextmanager
    async def _custom_cookie_file(self, auth_options: Dict[str, Any]) -> AsyncIterator[Optional[Path]]:
        """Writes pasted cookies to a file that exists only for one yt-dlp run."""
        cookies = auth_options.get('custom_cookies') or ''
        if auth_options.get('cookies_from_browser') != 'custom' or not cookies.strip():
            yield None
            return
        await asyncio.to_thread(TEMP_DOWNLOAD_DIR.mkdir, parents=True, exist_ok=True)
        cookie_file = TEMP_DOWNLOAD_DIR / f"cookies_{uuid.uuid4().hex}.txt"
        try:
            async with aiofiles.open(cookie_file, 'w', encoding='utf-8') as f:
                await f.write(cookies)
            yield cookie_file
        finally:
            await asyncio.to_thread(cookie_file.unlink, missing_ok=True)

    async def fetch_metadata(self, url: str, auth_options: Dict[str, str]) -> Dict[str, Any]:
        """
        Retrieves the info dict for a single video URL.

        Raises:
            MetadataLookupError: If yt-dlp fails or prints something that is not JSON.
            DownloadCancelledError: If the task is cancelled.
        """
        async with self._custom_cookie_file(auth_options) as cookie_file:
            command = [str(self.yt_dlp_path), '--dump-single-json', '--no-playlist', '--no-warnings',
                       *self._cookie_args(auth_options, cookie_file), url]
            stdout_bytes, stderr_bytes, return_code = await self._run_lookup(command)

        if return_code != 0:
            raise MetadataLookupError(self._parse_yt_dlp_error(stderr_bytes.decode('utf-8', 'replace')))
        try:
            info = json.loads(stdout_bytes.decode('utf-8', 'replace'))
        except json.JSONDecodeError as e:
            raise MetadataLookupError(f"Unreadable metadata from yt-dlp: {e}")
        if not isinstance(info, dict):
            raise MetadataLookupError("yt-dlp returned no metadata object.")
        return info

    async def _run_lookup(self, command: List[str]) -> Tuple[bytes, bytes, int]:
        process = None
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **self._subprocess_kwargs()
            )
            stdout_bytes, stderr_bytes = await process.communicate()
        except FileNotFoundError:
            self.logger.error(f"yt-dlp executable not found at: {self.yt_dlp_path}")
            raise MetadataLookupError("yt-dlp executable not found.")
        except OSError as e:
            self.logger.error(f"OS error running yt-dlp: {e}")
            raise MetadataLookupError(f"OS error: {e}")
        except asyncio.CancelledError:
            if process and process.returncode is None:
                process.kill()
            raise DownloadCancelledError("Metadata lookup cancelled.")
        return stdout_bytes, stderr_bytes, process.returncode

    def _format_args(self, options: Dict[str, Any]) -> List[str]:
        mode = options.get('download_mode', 'auto')
        if mode == 'audio':
            args = ['-f', 'bestaudio/best', '-x']
            audio_quality = options.get('audio_quality', 'best')
            if audio_quality != 'best':
                args.extend(['--audio-format', 'mp3', '--audio-quality', f"{audio_quality}K"])
            else:
                args.extend(['--audio-format', 'mp3'])
            return args

        quality = str(options.get('video_quality', 'max'))
        height = '' if quality.lower() in ('max', 'best') else f'[height<={quality}]'
        if mode == 'mute':
            return ['-f', f'bestvideo{height}/bestvideo']
        args = ['-f', f'bestvideo{height}+bestaudio/best{height}/best']
        if options.get('convert_to_mp4'):
            args.extend(['--recode-video', 'mp4'])
        elif options.get('remux', True):
            args.extend(['--remux-video', 'mp4/mkv'])
        return args

    def build_transfer_command(self, url: str, options: Dict[str, Any], output_dir: Path,
                               filename_template: str, embed_thumbnail: bool = False,
                               cookie_file: Optional[Path] = None) -> List[str]:
        """Builds the full yt-dlp command list for a transfer."""
        if options.get('group_title') and options.get('use_group_folder') is not False:
            output_dir = output_dir / _safe_folder_name(options['group_title'])
        command = [
            str(self.yt_dlp_path), '--newline', '--no-mtime',
            '--progress-template', PROGRESS_TEMPLATE,
            '--paths', f'temp:{TEMP_DOWNLOAD_DIR}',
            '-o', str(output_dir / filename_template),
        ]
        if self.ffmpeg_path:
            command.extend(['--ffmpeg-location', str(self.ffmpeg_path.parent)])
        command.extend(self._format_args(options))
        if options.get('download_mode') == 'audio' and embed_thumbnail:
            command.append('--embed-thumbnail')
        if not options.get('clear_metadata'):
            command.append('--embed-metadata')
        if options.get('ignore_mixes', True):
            command.append('--no-playlist')
        if options.get('use_aria2'):
            command.extend(['--downloader', 'aria2c'])
        command.extend(self._cookie_args(options, cookie_file))
        command.append(url)
        return command

    async def transfer(self, url: str, options: Dict[str, Any], output_dir: Path, filename_template: str,
                       on_progress: Callable[[str], Awaitable[None]],
                       on_file_path: Optional[Callable[[str], Awaitable[None]]] = None,
                       embed_thumbnail: bool = False) -> str:
        """
        Executes the yt-dlp subprocess for a single transfer.

        Every output line is passed to `on_progress` in order. The final output
        path is reported to `on_file_path` and returned.

        Raises:
            TransferError: If yt-dlp exits unsuccessfully.
            DownloadCancelledError: If the transfer was cancelled through `cancel`.
        """
        # Registered before the first await so a cancel is never lost.
        active = ActiveTransfer()
        self.active_transfers[url] = active
        try:
            async with self._custom_cookie_file(options) as cookie_file:
                command = self.build_transfer_command(url, options, output_dir, filename_template,
                                                      embed_thumbnail, cookie_file)
                if active.cancelled:
                    raise DownloadCancelledError("Download cancelled.")
                return_code, output_path, error_message = await self._run_transfer(url, command, active, on_progress)
        finally:
            if self.active_transfers.get(url) is active:
                del self.active_transfers[url]

        if active.cancelled:
            raise DownloadCancelledError("Download cancelled.")
        if return_code != 0:
            raise TransferError(error_message[:300] if error_message else f"yt-dlp exited with code {return_code}")
        if output_path and on_file_path:
            await on_file_path(output_path)
        return output_path

    async def _run_transfer(self, url: str, command: List[str], active: ActiveTransfer,
                            on_progress: Callable[[str], Awaitable[None]]) -> Tuple[int, str, Optional[str]]:
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                **self._subprocess_kwargs(new_group=True)
            )
        except FileNotFoundError:
            raise TransferError("yt-dlp executable not found")
        except OSError as e:
            raise TransferError(f"OS error: {e}")

        active.process = process
        if active.cancelled:
            await self._terminate(url, process)
            raise DownloadCancelledError("Download cancelled.")

        error_message: Optional[str] = None
        output_path = ''
        assert process.stdout is not None
        while True:
            line_bytes = await process.stdout.readline()
            if not line_bytes:
                break
            clean_line = line_bytes.decode('utf-8', 'replace').strip()
            if not clean_line:
                continue
            self.logger.debug(f"[{url[:50]}] {clean_line}")

            if clean_line.startswith('ERROR:'):
                error_message = clean_line[6:].strip()
            for pattern in OUTPUT_PATH_PATTERNS:
                if path_match := pattern.search(clean_line):
                    output_path = path_match.group(1).strip().strip('"')
                    break
            await on_progress(clean_line)

        return await process.wait(), output_path, error_message

    async def cancel(self, url: str):
        """Terminates the process transferring `url`, gracefully first."""
        active = self.active_transfers.get(url)
        if active is None:
            return
        active.cancelled = True
        if active.process is None:
            self.logger.info(f"Cancelled {url} before its process started.")
            return
        await self._terminate(url, active.process)

    async def _terminate(self, url: str, process: asyncio.subprocess.Process):
        self.logger.info(f"Terminating process for {url} (PID: {process.pid})...")
        try:
            if sys.platform == 'win32':
                process.send_signal(signal.CTRL_C_EVENT)
            else:
                os.killpg(os.getpgid(process.pid), signal.SIGINT)
            await asyncio.wait_for(process.wait(), timeout=10)
        except (asyncio.TimeoutError, ProcessLookupError, OSError) as e:
            self.logger.warning(f"Graceful shutdown for {url} failed: {e}. Forcing termination...")
            try:
                process.kill()
            except (ProcessLookupError, OSError):
                pass # Already gone
