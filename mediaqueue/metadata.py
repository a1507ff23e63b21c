"""
Best-effort metadata enrichment with bounded retries.

Metadata (title, author, thumbnail, duration) is a decoration, never a
precondition for a transfer: the lookup runs alongside the transfer and, when
every attempt fails, the job simply keeps its fallback display values.
"""

import asyncio
import logging
import re
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from .constants import MAX_TITLE_LENGTH, METADATA_RETRY_ATTEMPTS, METADATA_RETRY_DELAY

FORMAT_SUFFIX_RE = re.compile(r'\.f(?:hls-?)?\d+$', re.IGNORECASE)
REPEATED_FORMAT_SUFFIX_RE = re.compile(r'(\.f\d+)+$', re.IGNORECASE)
HANDLE_PREFERRED_HOST_RE = re.compile(r'(?:twitter\.com|x\.com)', re.IGNORECASE)

MetadataFetcher = Callable[[str, Dict[str, str]], Awaitable[Mapping[str, Any]]]


def strip_format_suffix(title: str) -> str:
    """Removes yt-dlp format suffixes such as ".f137" or ".fhls-2170"."""
    title = FORMAT_SUFFIX_RE.sub('', title.strip()).strip()
    return REPEATED_FORMAT_SUFFIX_RE.sub('', title).strip()


def sanitize_title(title: Optional[str]) -> str:
    return strip_format_suffix(title or '')[:MAX_TITLE_LENGTH]


def resolve_author(url: str, info: Mapping[str, Any]) -> str:
    """
    Picks the author to display for `url`.

    Twitter/X posts are shown by @handle; everything else by display name,
    falling back through uploader, channel and creator.
    """
    uploader_id = info.get('uploader_id')
    if HANDLE_PREFERRED_HOST_RE.search(url) and uploader_id:
        return f"@{uploader_id}"
    for key in ('uploader', 'channel', 'creator'):
        if info.get(key):
            return str(info[key])
    return ''


def clean_metadata(url: str, info: Mapping[str, Any]) -> Dict[str, Any]:
    """Normalizes a raw engine metadata mapping into job field values."""
    return {
        'title': sanitize_title(info.get('title')),
        'author': resolve_author(url, info),
        'thumbnail': info.get('thumbnail') or '',
        'duration': info.get('duration') or 0,
        'filesize': info.get('filesize') or info.get('filesize_approx') or 0,
        'extension': info.get('ext') or '',
    }


class MetadataEnricher:
    """Looks up display metadata, retrying with a linearly growing delay."""

    def __init__(self, fetch: MetadataFetcher, attempts: int = METADATA_RETRY_ATTEMPTS,
                 base_delay: float = METADATA_RETRY_DELAY):
        """
        Initializes the MetadataEnricher.

        Args:
            fetch: The engine's async metadata lookup, called as `fetch(url, auth_options)`.
            attempts: Total number of attempts, including the first.
            base_delay: Seconds to wait after attempt N is `N * base_delay`.
        """
        self.fetch = fetch
        self.attempts = attempts
        self.base_delay = base_delay
        self.logger = logging.getLogger(__name__)

    async def lookup(self, url: str, auth_options: Optional[Dict[str, str]] = None) -> Optional[Dict[str, Any]]:
        """
        Fetches and cleans metadata for `url`.

        Returns:
            The cleaned metadata, or None once every attempt has failed.
        """
        last_error: Optional[Exception] = None
        for attempt in range(1, self.attempts + 1):
            try:
                info = await self.fetch(url, auth_options or {})
                self.logger.debug(f"Metadata for {url} (attempt {attempt}): title={info.get('title')!r}")
                return clean_metadata(url, info)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_error = e
                self.logger.warning(f"Metadata lookup attempt {attempt}/{self.attempts} failed for {url}: {e}")
                if attempt < self.attempts:
                    await asyncio.sleep(self.base_delay * attempt)

        self.logger.warning(f"All {self.attempts} metadata lookups failed for {url}: {last_error}")
        return None
