"""
Immutable snapshots of the queue and the listener registry that publishes them.

The queue replaces its `QueueState` as a whole on every mutation, so a listener
(or anything holding an older snapshot) never sees a half-updated job list.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from .jobs import ACTIVE_STATUSES, FINISHED_STATUSES, DownloadJob, JobStatus


@dataclass(frozen=True)
class GroupProgress:
    completed: int
    failed: int
    total: int


@dataclass(frozen=True)
class JobGroup:
    """Unfinished jobs of one playlist/collection, ordered by their index in the group."""
    group_id: str
    group_title: str
    jobs: Tuple[DownloadJob, ...]
    completed: int
    failed: int
    total: int


@dataclass(frozen=True)
class GroupedJobs:
    groups: Tuple[JobGroup, ...]
    singles: Tuple[DownloadJob, ...]


@dataclass(frozen=True)
class QueueState:
    """
    A point-in-time view of the queue.

    Attributes:
        jobs: Every live job, in submission order.
        is_paused: Whether dispatch is globally paused.
    """
    jobs: Tuple[DownloadJob, ...] = ()
    is_paused: bool = False

    def get(self, job_id: str) -> Optional[DownloadJob]:
        return next((job for job in self.jobs if job.job_id == job_id), None)

    @property
    def active_jobs(self) -> Tuple[DownloadJob, ...]:
        return tuple(job for job in self.jobs if job.status in ACTIVE_STATUSES)

    @property
    def active_count(self) -> int:
        """Jobs currently downloading or processing."""
        return len(self.active_jobs)

    @property
    def pending_count(self) -> int:
        """Jobs waiting to start, including individually paused ones."""
        return sum(1 for job in self.jobs if job.status in (JobStatus.PENDING, JobStatus.PAUSED))

    @property
    def unfinished_jobs(self) -> Tuple[DownloadJob, ...]:
        return tuple(job for job in self.jobs if job.status not in FINISHED_STATUSES)

    def group_progress(self, group_id: str) -> GroupProgress:
        members = [job for job in self.jobs if job.group_id == group_id]
        return GroupProgress(
            completed=sum(1 for job in members if job.status is JobStatus.COMPLETED),
            failed=sum(1 for job in members if job.status is JobStatus.FAILED),
            total=len(members),
        )

    def grouped(self) -> GroupedJobs:
        """Unfinished jobs split into playlist groups and standalone jobs."""
        members: Dict[str, List[DownloadJob]] = {}
        singles: List[DownloadJob] = []
        for job in self.unfinished_jobs:
            if job.group_id:
                members.setdefault(job.group_id, []).append(job)
            else:
                singles.append(job)

        groups = []
        for group_id, jobs in members.items():
            jobs.sort(key=lambda job: job.index_in_group or 0)
            # Counts cover finished members too, which are not listed.
            progress = self.group_progress(group_id)
            groups.append(JobGroup(
                group_id=group_id,
                group_title=jobs[0].group_title or 'Playlist',
                jobs=tuple(jobs),
                completed=progress.completed,
                failed=progress.failed,
                total=progress.total,
            ))
        return GroupedJobs(groups=tuple(groups), singles=tuple(singles))


Listener = Callable[[QueueState], None]


class StateStream:
    """Holds the current snapshot and notifies listeners when it is replaced."""

    def __init__(self, initial: Optional[QueueState] = None):
        self.current: QueueState = initial or QueueState()
        self._listeners: List[Listener] = []
        self.logger = logging.getLogger(__name__)

    def publish(self, state: QueueState):
        self.current = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                self.logger.exception(f"Queue state listener {listener!r} raised:")

    def subscribe(self, listener: Listener, emit_current: bool = True) -> Callable[[], None]:
        """
        Registers `listener` and returns a function that unregisters it.

        The listener is called immediately with the current snapshot unless
        `emit_current` is False.
        """
        self._listeners.append(listener)
        if emit_current:
            listener(self.current)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe
