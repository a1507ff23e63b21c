"""Admission control: decides which pending jobs may start."""
import logging
from typing import Iterable, List

from .jobs import DownloadJob, JobStatus

logger = logging.getLogger(__name__)


def dispatch_order(jobs: Iterable[DownloadJob]) -> List[DownloadJob]:
    """Pending jobs, highest priority first, then oldest first."""
    pending = [job for job in jobs if job.status is JobStatus.PENDING]
    return sorted(pending, key=lambda job: (-job.priority, job.added_at))


def select_dispatchable(jobs: Iterable[DownloadJob], active_count: int, limit: int,
                        paused: bool = False) -> List[DownloadJob]:
    """
    Chooses the pending jobs to start in this scheduling pass.

    Args:
        jobs: The live jobs.
        active_count: Jobs currently downloading or processing.
        limit: The configured concurrency limit, read fresh for every pass.
        paused: Whether the queue is globally paused.

    Returns:
        At most `limit - active_count` jobs, in dispatch order. Active jobs
        over a lowered limit are left running, so the result may be empty.
    """
    if paused:
        logger.debug("Queue is paused, skipping dispatch.")
        return []
    slots = limit - active_count
    if slots <= 0:
        logger.debug(f"Already at max concurrent downloads ({active_count}/{limit}).")
        return []
    return dispatch_order(jobs)[:slots]


def top_priority(jobs: Iterable[DownloadJob]) -> int:
    """The priority `move_to_top` assigns: one above the current maximum (floored at 0)."""
    return max([0, *(job.priority for job in jobs)]) + 1


def lowered_priority(priority: int) -> int:
    return max(0, priority - 1)
