"""
mediaqueue: a download-queue orchestrator for media and file URLs.

The queue supervises an external download engine, enforces a concurrency
limit, interprets the engine's textual progress output and persists
recoverable jobs across restarts.
"""

from ._version import __version__
from .jobs import DownloadJob, DownloadOptions, JobSource, JobStatus
from .queue import DownloadQueue

__all__ = [
    "__version__",
    "DownloadJob",
    "DownloadOptions",
    "DownloadQueue",
    "JobSource",
    "JobStatus",
]
