"""
Defines the data model for a download job and its lifecycle.

Jobs are immutable Pydantic models. Every change produces a new record via
`model_copy`, so a snapshot of the queue handed to a reader is never modified
underneath it. Status changes go through `transition`, which enforces the
allowed lifecycle.
"""

import enum
import time
import uuid
from typing import Any, Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field

from .constants import STATUS_QUEUED
from .exceptions import InvalidTransitionError


class JobStatus(str, enum.Enum):
    PENDING = 'pending'
    PAUSED = 'paused'
    DOWNLOADING = 'downloading'
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    FAILED = 'failed'


class JobSource(str, enum.Enum):
    """Which engine path a job goes through."""
    MEDIA = 'media'  # extraction engine (yt-dlp)
    FILE = 'file'    # direct file fetcher


ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.DOWNLOADING, JobStatus.PAUSED}),
    JobStatus.PAUSED: frozenset({JobStatus.PENDING}),
    JobStatus.DOWNLOADING: frozenset({JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.FAILED: frozenset({JobStatus.PENDING}),
    JobStatus.COMPLETED: frozenset(),
}

ACTIVE_STATUSES = frozenset({JobStatus.DOWNLOADING, JobStatus.PROCESSING})
FINISHED_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})
PERSISTABLE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.PAUSED, JobStatus.FAILED})


class PrefetchedInfo(BaseModel):
    """Display metadata already known at submission time (e.g. from a playlist listing)."""
    model_config = ConfigDict(frozen=True)

    title: Optional[str] = None
    author: Optional[str] = None
    thumbnail: Optional[str] = None
    duration: Optional[float] = None


class DownloadOptions(BaseModel):
    """
    Snapshot of the quality, mode and authentication options chosen at submission.

    Attributes:
        video_quality: Maximum video height (e.g. "1080") or "max".
        download_mode: "auto" (video+audio), "audio" or "mute" (video only).
        audio_quality: Audio bitrate/format preference, "best" by default.
        cookies_from_browser: Browser to borrow cookies from, "custom" to use
            `custom_cookies` (Netscape format), or empty for none.
        prefetched_info: Metadata that makes a lookup unnecessary.
    """
    model_config = ConfigDict(frozen=True)

    video_quality: str = 'max'
    download_mode: str = 'auto'
    audio_quality: str = 'best'
    convert_to_mp4: bool = False
    remux: bool = True
    clear_metadata: bool = False
    dont_show_in_history: bool = False
    use_aria2: bool = False
    ignore_mixes: bool = True
    cookies_from_browser: str = ''
    custom_cookies: str = ''
    prefetched_info: Optional[PrefetchedInfo] = None

    @property
    def is_audio(self) -> bool:
        return self.download_mode == 'audio'

    def auth_options(self) -> Dict[str, str]:
        """The subset of options needed to authenticate a metadata lookup."""
        return {
            'cookies_from_browser': self.cookies_from_browser,
            'custom_cookies': self.custom_cookies,
        }


class GroupInfo(BaseModel):
    """Identifies the playlist/collection a job was submitted with."""
    model_config = ConfigDict(frozen=True)

    group_id: str
    group_title: str
    index_in_group: Optional[int] = None
    use_group_folder: Optional[bool] = None


class GroupEntry(BaseModel):
    """One item of a playlist submission, with optional per-entry overrides."""
    model_config = ConfigDict(frozen=True)

    url: str
    title: Optional[str] = None
    author: Optional[str] = None
    thumbnail: Optional[str] = None
    duration: Optional[float] = None
    download_mode: Optional[str] = None
    video_quality: Optional[str] = None


class FileDescriptor(BaseModel):
    """A direct file download as resolved by the caller."""
    model_config = ConfigDict(frozen=True)

    url: str
    filename: str
    size: Optional[int] = None
    mime_type: Optional[str] = None


class DownloadJob(BaseModel):
    """
    Represents a single download task tracked by the queue.

    Attributes:
        job_id: A unique identifier for the job.
        url: The URL provided by the user.
        status: The current lifecycle status.
        status_message: Human-readable status (e.g. "Merging...").
        progress: Displayed progress, 0-100 (remapped, see `progress`).
        added_at: Submission time in milliseconds since the epoch.
        priority: Higher values are dispatched first.
        source: Which engine path transfers the job.
        options: Options snapshot taken at submission time.
    """
    model_config = ConfigDict(frozen=True)

    job_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    url: str
    status: JobStatus = JobStatus.PENDING
    status_message: str = STATUS_QUEUED

    title: str = ''
    author: str = ''
    thumbnail: str = ''
    duration: float = 0
    filesize: int = 0
    extension: str = ''
    file_path: str = ''

    progress: float = 0.0
    speed: str = ''
    eta: str = ''
    error: Optional[str] = None

    added_at: int = Field(default_factory=lambda: int(time.time() * 1000))
    priority: int = 0
    source: JobSource = JobSource.MEDIA
    media_type: str = 'video'
    options: DownloadOptions = Field(default_factory=DownloadOptions)

    group_id: Optional[str] = None
    group_title: Optional[str] = None
    index_in_group: Optional[int] = None
    use_group_folder: Optional[bool] = None

    mime_type: Optional[str] = None
    total_bytes: Optional[int] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_finished(self) -> bool:
        return self.status in FINISHED_STATUSES

    @property
    def has_fallback_title(self) -> bool:
        """True while the title is still the URL placeholder."""
        return not self.title or self.title == self.url or self.title.startswith('http')

    def evolve(self, **changes: Any) -> 'DownloadJob':
        """Returns a copy with `changes` applied; the status is not checked."""
        return self.model_copy(update=changes)


def can_transition(current: JobStatus, requested: JobStatus) -> bool:
    return current == requested or requested in ALLOWED_TRANSITIONS[current]


def transition(job: DownloadJob, status: JobStatus, **changes: Any) -> DownloadJob:
    """
    Moves `job` to `status`, applying any extra field changes.

    Raises:
        InvalidTransitionError: If the lifecycle does not allow the move.
    """
    if not can_transition(job.status, status):
        raise InvalidTransitionError(job.job_id, job.status, status)
    return job.model_copy(update={**changes, 'status': status})
