"""
Defines the DownloadQueue, which orchestrates every download job's lifecycle.

The queue owns all job state. It admits jobs up to the configured concurrency
limit, starts each one as an independent asyncio task, folds the engine's
progress output into the job, enriches metadata in the background, archives
finished downloads and persists what can be recovered after a restart.

Everything runs on one event loop. Scheduling passes are synchronous, so two
passes never interleave, and each mutation publishes a new immutable
`QueueState` snapshot.
"""
import asyncio
import functools
import logging
import random
from pathlib import PurePath
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union
from urllib.parse import urlparse

from .config import Settings
from .constants import (
    COMPLETED_PROGRESS, STATUS_COMPLETED, STATUS_FAILED, STATUS_QUEUED, STATUS_STARTING,
)
from .engine import DownloadEngine
from .jobs import (
    ACTIVE_STATUSES, DownloadJob, DownloadOptions, FileDescriptor, GroupEntry,
    GroupInfo, JobSource, JobStatus, transition,
)
from .metadata import MetadataEnricher
from .persistence import QueuePersistence
from .progress import apply_phase_event, interpret_progress_line
from .scheduler import lowered_priority, select_dispatchable, top_priority
from .sinks import HistorySink, LoggingNotifier, LoggingUiSink, NotificationSink, UiSink
from .state import GroupProgress, Listener, QueueState, StateStream

YOUTUBE_MUSIC_HOST = 'music.youtube.com'
GROUP_ORDERS = ('forward', 'reverse', 'shuffle')


class DownloadQueue:
    """The download-queue orchestrator and its public API."""

    def __init__(self, engine: DownloadEngine, settings: Settings,
                 history: Optional[HistorySink] = None,
                 notifier: Optional[NotificationSink] = None,
                 ui: Optional[UiSink] = None,
                 persistence: Optional[QueuePersistence] = None):
        """
        Initializes the DownloadQueue.

        Args:
            engine: The external engine that performs transfers and lookups.
            settings: Configuration, read afresh on every scheduling pass.
            history: Receives a record for every completed download.
            notifier: Best-effort system notifications.
            ui: Transient info/success/error messages.
            persistence: Durable storage for recoverable jobs; nothing is
                persisted when omitted.
        """
        self.engine = engine
        self.settings = settings
        self.history = history
        self.notifier = notifier or LoggingNotifier()
        self.ui = ui or LoggingUiSink()
        self.persistence = persistence
        self.logger = logging.getLogger(__name__)

        self._stream = StateStream()
        self._active_ids: Set[str] = set()
        self._job_tasks: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()
        self._sweeper: Optional[asyncio.Task] = None
        self._closing = False
        self._idle = asyncio.Event()
        self._idle.set()

        # Per-job lookup structures, purged when a job leaves the live set.
        self._running_max: Dict[str, float] = {}
        self._metadata_tasks: Dict[str, asyncio.Task] = {}
        self._tombstones: Set[str] = set()

    # --- State stream ---

    @property
    def state(self) -> QueueState:
        return self._stream.current

    @property
    def jobs(self) -> Tuple[DownloadJob, ...]:
        return self._stream.current.jobs

    def get(self, job_id: str) -> Optional[DownloadJob]:
        return self._stream.current.get(job_id)

    def subscribe(self, listener: Listener, emit_current: bool = True) -> Callable[[], None]:
        """Calls `listener` with every new `QueueState`; returns an unsubscribe function."""
        return self._stream.subscribe(listener, emit_current)

    def _commit(self, jobs: Optional[Iterable[DownloadJob]] = None, is_paused: Optional[bool] = None,
                persist: bool = True):
        current = self._stream.current
        self._stream.publish(QueueState(
            jobs=tuple(jobs) if jobs is not None else current.jobs,
            is_paused=current.is_paused if is_paused is None else is_paused,
        ))
        if persist:
            self._schedule_save()
        self._update_idle()

    def _replace(self, job: DownloadJob, persist: bool = False) -> Optional[DownloadJob]:
        jobs = self._stream.current.jobs
        if not any(existing.job_id == job.job_id for existing in jobs):
            return None
        self._commit((job if existing.job_id == job.job_id else existing for existing in jobs), persist=persist)
        return job

    def _schedule_save(self):
        if self.persistence is not None:
            self.persistence.schedule_save(lambda: self._stream.current.jobs)

    def _update_idle(self):
        state = self._stream.current
        has_pending = any(job.status is JobStatus.PENDING for job in state.jobs)
        if not self._job_tasks and (state.is_paused or not has_pending):
            self._idle.set()
        else:
            self._idle.clear()

    async def wait_until_idle(self):
        """Waits until no transfer is running and nothing is left to dispatch."""
        await self._idle.wait()

    # --- Background tasks ---

    def _handle_task_exception(self, task: asyncio.Task) -> None:
        """Callback to log exceptions from fire-and-forget tasks."""
        try:
            task.result()
        except asyncio.CancelledError:
            pass  # Expected
        except Exception:
            self.logger.exception(f"Exception in background task {task.get_name()}:")

    def _spawn(self, coro: Awaitable[Any], name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        task.add_done_callback(self._handle_task_exception)
        return task

    async def _notify(self, kind: str, title: str, body: str = ''):
        """Sends a system notification; failures never reach the caller."""
        if not self.settings.notifications_enabled:
            return
        try:
            await self.notifier.notify(kind, title, body)
        except Exception as e:
            self.logger.debug(f"Failed to send '{kind}' notification: {e}")

    # --- Lifecycle ---

    async def restore(self) -> int:
        """
        Loads persisted jobs, merges them into the live set and starts dispatching.

        Returns:
            The number of jobs restored.
        """
        if self.persistence is None:
            return 0
        restored = await self.persistence.load()
        live_ids = {job.job_id for job in self.jobs}
        fresh = [job for job in restored if job.job_id not in live_ids]
        if fresh:
            self._commit([*fresh, *self.jobs], persist=False)
            self.logger.info(f"Restored {len(fresh)} queue item(s) from storage")
        else:
            self.logger.info("No valid queue items to restore")
        await self.persistence.save_now(self.jobs)
        self._process_queue()
        return len(fresh)

    def start(self):
        """Starts the periodic sweep of orphaned per-job entries."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="queue-sweeper")
            self._sweeper.add_done_callback(self._handle_task_exception)

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.settings.sweep_interval)
            self.sweep_orphans()

    async def close(self):
        """Stops running transfers and background work, then flushes pending writes."""
        self.logger.info("Shutting down download queue...")
        self._closing = True
        if self._sweeper is not None:
            self._sweeper.cancel()
        running = [job for job in self.jobs if job.job_id in self._job_tasks]
        self._tombstones.update(job.job_id for job in running)
        await asyncio.gather(*(self._teardown(job) for job in running))

        tasks = [*self._job_tasks.values(), *self._metadata_tasks.values(), *self._background]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self.persistence is not None:
            await self.persistence.flush()

    def sweep_orphans(self) -> int:
        """
        Removes per-job entries whose job is gone or no longer needs them.

        Returns:
            The number of entries removed.
        """
        live_ids = {job.job_id for job in self.jobs}
        removed = 0
        for job_id in list(self._running_max):
            if job_id not in self._active_ids:
                del self._running_max[job_id]
                removed += 1
        for job_id, task in list(self._metadata_tasks.items()):
            if job_id not in live_ids:
                task.cancel()
            elif not (task.done() and job_id not in self._active_ids):
                continue
            del self._metadata_tasks[job_id]
            removed += 1
        for job_id in list(self._tombstones):
            if job_id not in self._job_tasks:
                self._tombstones.discard(job_id)
                removed += 1
        if removed:
            self.logger.debug(f"Swept {removed} orphaned per-job entr{'y' if removed == 1 else 'ies'}")
        return removed

    # --- Scheduling ---

    def _process_queue(self):
        """Runs a scheduling pass, starting as many pending jobs as free slots allow."""
        if self._closing:
            return
        state = self._stream.current
        limit = self.settings.max_concurrent_downloads
        active_count = len(self._active_ids)
        to_start = select_dispatchable(state.jobs, active_count, limit, state.is_paused)
        if not to_start:
            return
        self.logger.info(f"Starting {len(to_start)} download(s), {active_count} already active, max {limit}")
        for job in to_start:
            self._dispatch(job)

    def _dispatch(self, job: DownloadJob):
        job_id = job.job_id
        self._running_max.pop(job_id, None)
        started = transition(job, JobStatus.DOWNLOADING, status_message=STATUS_STARTING,
                             progress=0.0, speed='', eta='', error=None)
        self._active_ids.add(job_id)
        task = asyncio.create_task(self._run_job(started), name=f"download-{job_id[:8]}")
        self._job_tasks[job_id] = task
        task.add_done_callback(self._handle_task_exception)
        self._replace(started)

    def _release_slot(self, job_id: str):
        self._active_ids.discard(job_id)
        self._running_max.pop(job_id, None)

    def _consume_tombstone(self, job_id: str) -> bool:
        if job_id in self._tombstones:
            self._tombstones.discard(job_id)
            return True
        return False

    # --- Running a job ---

    def _transfer_options(self, job: DownloadJob) -> Dict[str, Any]:
        options = job.options.model_dump()
        options.update({
            'source': job.source.value,
            'filename': job.title if job.source is JobSource.FILE else '',
            'group_title': job.group_title,
            'use_group_folder': job.use_group_folder,
        })
        return options

    def _needs_metadata(self, job: DownloadJob) -> bool:
        prefetched = job.options.prefetched_info
        return job.source is JobSource.MEDIA and not (prefetched and prefetched.title)

    async def _run_job(self, job: DownloadJob):
        """Supervises one transfer from dispatch until it leaves the active set."""
        job_id, url = job.job_id, job.url
        self.logger.info(f"Starting download: {url}")
        self.logger.debug(f"Download options: mode={job.options.download_mode}, quality={job.options.video_quality}, "
                          f"cookies={job.options.cookies_from_browser or 'none'}")
        self._spawn(self._notify('started', 'Download started', job.title or url))
        try:
            if self._needs_metadata(job):
                meta_task = asyncio.create_task(self._enrich(job_id, url, job.options.auth_options()),
                                                name=f"metadata-{job_id[:8]}")
                meta_task.add_done_callback(self._handle_task_exception)
                self._metadata_tasks[job_id] = meta_task

            file_path = await self.engine.transfer(
                url,
                self._transfer_options(job),
                functools.partial(self.handle_progress_line, url),
                functools.partial(self.handle_file_path, url),
            )
        except Exception as e:
            if self._consume_tombstone(job_id):
                self.logger.debug(f"Download {job_id} was cancelled, skipping error handling")
                return
            self._fail(job_id, e)
        else:
            if self._consume_tombstone(job_id) or self.get(job_id) is None:
                return
            await self._complete(job_id, file_path)
        finally:
            # Nothing reports back for this id after this point.
            self._tombstones.discard(job_id)
            self._release_slot(job_id)
            self._job_tasks.pop(job_id, None)
            self._process_queue()
            self._update_idle()

    def _fail(self, job_id: str, error: Exception):
        job = self.get(job_id)
        if job is None or job.status not in ACTIVE_STATUSES:
            return
        message = str(error) or type(error).__name__
        self.logger.error(f"Download failed for {job.url}: {message}")
        self.logger.debug(f"Failed item state: status={job.status.value}, progress={job.progress}, "
                          f"status_message={job.status_message}")
        self._release_slot(job_id)
        self._replace(transition(job, JobStatus.FAILED, error=message, status_message=STATUS_FAILED,
                                 speed='', eta=''), persist=True)
        self._spawn(self._notify('failed', 'Download failed', job.title or message))
        self.ui.error(f"Download failed: {message}")

    async def _file_details(self, job: DownloadJob, file_path: str) -> Dict[str, Any]:
        """Extension and size of the finished artifact; a failed stat keeps the old size."""
        details: Dict[str, Any] = {
            'file_path': file_path,
            'extension': PurePath(file_path).suffix.lstrip('.').lower() or job.extension,
        }
        try:
            details['filesize'] = await self.engine.stat_file(file_path)
        except Exception as e:
            self.logger.warning(f"Could not get file size for {file_path}: {e}")
        return details

    async def _complete(self, job_id: str, file_path: str):
        job = self.get(job_id)
        if job is None:
            return
        details: Dict[str, Any] = {}
        if file_path:
            details = await self._file_details(job, file_path)
        else:
            self.logger.warning(f"No file path returned for {job.url}")

        job = self.get(job_id)
        if job is None or job.status not in ACTIVE_STATUSES:
            return
        completed = transition(job, JobStatus.COMPLETED, progress=COMPLETED_PROGRESS, speed='', eta='',
                               status_message=STATUS_COMPLETED, **details)
        self._release_slot(job_id)
        self._replace(completed, persist=True)
        self.logger.info(f"Download completed: {job.url}")
        self._process_queue()

        # Archive with the freshest metadata, but never wait on a failed lookup.
        meta_task = self._metadata_tasks.pop(job_id, None)
        if meta_task is not None:
            await asyncio.wait([meta_task])
        final = self.get(job_id) or completed
        if self.history is not None and not final.options.dont_show_in_history:
            try:
                await self.history.archive(self._history_record(final))
            except Exception as e:
                self.logger.error(f"Failed to archive {final.url} to history: {e}")
        self._spawn(self._notify('completed', 'Download complete', final.title or 'Download finished'))
        self.ui.success(f"Downloaded: {final.title}")
        self._spawn(self._remove_completed_later(job_id), name=f"remove-{job_id[:8]}")

    def _history_record(self, job: DownloadJob) -> Dict[str, Any]:
        is_file = job.source is JobSource.FILE
        return {
            'url': job.url,
            'title': job.title or ('Downloaded file' if is_file else 'Downloaded video'),
            'author': job.author or (urlparse(job.url).hostname or '' if is_file else 'Unknown'),
            'thumbnail': job.thumbnail,
            'extension': job.extension,
            'size': job.filesize,
            'duration': job.duration,
            'file_path': job.file_path,
            'type': job.media_type,
            'group_id': job.group_id,
            'group_title': job.group_title,
            'index_in_group': job.index_in_group,
        }

    async def _remove_completed_later(self, job_id: str):
        await asyncio.sleep(self.settings.completed_removal_delay)
        job = self.get(job_id)
        if job is not None and job.status is JobStatus.COMPLETED:
            self._remove_jobs({job_id}, persist=False)

    async def _enrich(self, job_id: str, url: str, auth_options: Dict[str, str]):
        enricher = MetadataEnricher(self.engine.fetch_metadata, self.settings.metadata_retry_attempts,
                                    self.settings.metadata_retry_delay)
        metadata = await enricher.lookup(url, auth_options)
        if metadata is None:
            if self.settings.warn_on_metadata_failure:
                self.ui.warning(f"Could not fetch details for {url}")
            return
        job = self.get(job_id)
        if job is None:
            return
        changes = {
            'title': metadata['title'] or job.title,
            'author': metadata['author'] or job.author,
            'thumbnail': metadata['thumbnail'] or job.thumbnail,
            'duration': metadata['duration'] or job.duration,
        }
        if not job.file_path:
            changes['filesize'] = metadata['filesize'] or job.filesize
            changes['extension'] = metadata['extension'] or job.extension
        self._replace(job.evolve(**changes))

    # --- Engine callbacks ---

    def _running_job_for_url(self, url: str) -> Optional[DownloadJob]:
        return next((job for job in self.jobs
                     if job.url == url and job.job_id in self._active_ids and job.is_active), None)

    async def handle_progress_line(self, url: str, text: str):
        """Applies one line of engine output to the running job for `url`."""
        job = self._running_job_for_url(url)
        if job is None:
            return
        self.logger.debug(f"[{url[:50]}] {text}")
        event = interpret_progress_line(text)
        running_max = self._running_max.get(job.job_id, 0.0)
        updated, new_max = apply_phase_event(job, event, running_max)
        self._running_max[job.job_id] = new_max
        if updated is not job:
            self._replace(updated)

    async def handle_file_path(self, url: str, file_path: str):
        """Merges the final artifact path (and its size, if it can be read) into the job."""
        job = self._running_job_for_url(url)
        if job is None:
            return
        self.logger.info(f"Received file path: {file_path}")
        details = await self._file_details(job, file_path)
        job = self.get(job.job_id)
        if job is not None:
            self._replace(job.evolve(**details))

    # --- Submission ---

    def _is_in_flight(self, url: str) -> bool:
        return any(job.url == url and not job.is_finished for job in self.jobs)

    def _missing(self, source: JobSource) -> List[str]:
        missing = self.engine.missing_capabilities(source)
        if missing:
            self.logger.warning(f"Missing dependencies: {', '.join(missing)}")
            self.ui.error(f"Cannot start download, missing: {', '.join(missing)}")
        return missing

    def _snapshot_options(self, url: str, options: Union[DownloadOptions, Mapping[str, Any], None]) -> DownloadOptions:
        if isinstance(options, DownloadOptions):
            given = options.model_dump(exclude_unset=True)
        else:
            given = {key: value for key, value in (options or {}).items() if value is not None}
        merged = {**self.settings.option_defaults(), **given}
        if (YOUTUBE_MUSIC_HOST in url.lower() and self.settings.youtube_music_audio_only
                and 'download_mode' not in given):
            merged['download_mode'] = 'audio'
            self.logger.info("YouTube Music detected - set download mode to audio")
        return DownloadOptions.model_validate(merged)

    def _append(self, job: DownloadJob):
        self._commit([*self.jobs, job])
        self._process_queue()

    def add(self, url: str, options: Union[DownloadOptions, Mapping[str, Any], None] = None,
            group_info: Union[GroupInfo, Mapping[str, Any], None] = None) -> Optional[str]:
        """
        Adds a media URL to the queue.

        Returns:
            The new job's id, or None if the URL is already queued and unfinished
            or a required executable is missing.
        """
        if self._missing(JobSource.MEDIA):
            return None
        if self._is_in_flight(url):
            self.logger.debug(f"URL already in queue: {url}")
            return None

        snapshot = self._snapshot_options(url, options)
        prefetched = snapshot.prefetched_info
        group = GroupInfo.model_validate(group_info) if isinstance(group_info, Mapping) else group_info
        job = DownloadJob(
            url=url,
            title=(prefetched.title if prefetched and prefetched.title else url),
            author=(prefetched.author if prefetched and prefetched.author else ''),
            thumbnail=(prefetched.thumbnail if prefetched and prefetched.thumbnail else ''),
            duration=(prefetched.duration if prefetched and prefetched.duration else 0),
            extension='mp3' if snapshot.is_audio else 'mp4',
            media_type='audio' if snapshot.is_audio else 'video',
            options=snapshot,
            group_id=group.group_id if group else None,
            group_title=group.group_title if group else None,
            index_in_group=group.index_in_group if group else None,
            use_group_folder=group.use_group_folder if group else None,
        )
        self.logger.info(f"Queued {url} (mode={snapshot.download_mode})")
        self._append(job)
        return job.job_id

    def add_file(self, descriptor: Union[FileDescriptor, Mapping[str, Any]]) -> Optional[str]:
        """
        Adds a direct file download; no metadata lookup is made for it.

        Returns:
            The new job's id, or None on a duplicate URL or missing capability.
        """
        if isinstance(descriptor, Mapping):
            descriptor = FileDescriptor.model_validate(descriptor)
        if self._missing(JobSource.FILE):
            return None
        if self._is_in_flight(descriptor.url):
            self.logger.debug(f"URL already in queue: {descriptor.url}")
            return None

        suffix = PurePath(descriptor.filename).suffix.lstrip('.').lower()
        job = DownloadJob(
            url=descriptor.url,
            title=descriptor.filename,
            author=urlparse(descriptor.url).hostname or '',
            filesize=descriptor.size or 0,
            extension=suffix or 'bin',
            source=JobSource.FILE,
            media_type='file',
            mime_type=descriptor.mime_type,
            total_bytes=descriptor.size,
        )
        self.logger.info(f"Added file download: {descriptor.filename} ({descriptor.size or 'unknown size'})")
        self._append(job)
        return job.job_id

    def add_group(self, entries: Iterable[Union[GroupEntry, Mapping[str, Any]]],
                  group_info: Union[GroupInfo, Mapping[str, Any]],
                  shared_options: Union[DownloadOptions, Mapping[str, Any], None] = None,
                  order: str = 'forward', rng: Optional[random.Random] = None) -> List[str]:
        """
        Adds every entry of a playlist/collection as a grouped job.

        Args:
            entries: The group's items, with optional prefetched metadata and
                per-entry mode/quality overrides.
            group_info: Group id, title and whether to use a group folder.
            shared_options: Options applied to every entry.
            order: "forward", "reverse" or "shuffle".
            rng: Random source used for "shuffle".

        Returns:
            The ids of the jobs that were added (duplicates are skipped).
        """
        if order not in GROUP_ORDERS:
            raise ValueError(f"Unknown group order '{order}'. Must be one of {list(GROUP_ORDERS)}.")
        group = GroupInfo.model_validate(group_info) if isinstance(group_info, Mapping) else group_info
        if isinstance(shared_options, DownloadOptions):
            shared = shared_options.model_dump(exclude_unset=True)
        else:
            shared = dict(shared_options or {})

        ordered = [GroupEntry.model_validate(entry) if isinstance(entry, Mapping) else entry for entry in entries]
        if order == 'reverse':
            ordered.reverse()
        elif order == 'shuffle':
            (rng or random).shuffle(ordered)

        added_ids = []
        for index, entry in enumerate(ordered, start=1):
            entry_options = {
                **shared,
                'prefetched_info': {
                    'title': entry.title,
                    'thumbnail': entry.thumbnail,
                    'author': entry.author,
                    'duration': entry.duration,
                },
            }
            if entry.download_mode:
                entry_options['download_mode'] = entry.download_mode
            if entry.video_quality:
                entry_options['video_quality'] = entry.video_quality
            job_id = self.add(entry.url, entry_options, group.model_copy(update={'index_in_group': index}))
            if job_id:
                added_ids.append(job_id)

        self.logger.info(f"Added {len(added_ids)}/{len(ordered)} items from group \"{group.group_title}\"")
        return added_ids

    # --- Per-job control ---

    async def _teardown(self, job: DownloadJob):
        if job.job_id not in self._job_tasks:
            return
        try:
            await self.engine.cancel_transfer(job.url)
            self.logger.info(f"Download cancelled: {job.url}")
        except Exception as e:
            self.logger.warning(f"Failed to cancel download {job.url}: {e}")

    def _remove_jobs(self, job_ids: Set[str], persist: bool = True):
        for job_id in job_ids:
            self._release_slot(job_id)
            meta_task = self._metadata_tasks.pop(job_id, None)
            if meta_task is not None and not meta_task.done():
                meta_task.cancel()
            if job_id not in self._job_tasks:
                # Nothing is left to report back for this id.
                self._tombstones.discard(job_id)
        self._commit([job for job in self.jobs if job.job_id not in job_ids], persist=persist)

    async def _cancel_jobs(self, jobs: List[DownloadJob]):
        job_ids = {job.job_id for job in jobs}
        # Tombstone before teardown so a late failure report is discarded.
        self._tombstones.update(job_id for job_id in job_ids if job_id in self._job_tasks)
        await asyncio.gather(*(self._teardown(job) for job in jobs))
        self._remove_jobs(job_ids)
        self._process_queue()

    async def cancel(self, job_id: str):
        """Cancels a job in any state and removes it. Unknown ids are ignored."""
        job = self.get(job_id)
        if job is None:
            return
        await self._cancel_jobs([job])
        self.ui.info("Download cancelled")

    def retry(self, job_id: str) -> bool:
        """Puts a failed job back in the queue with its error and progress cleared."""
        job = self.get(job_id)
        if job is None or job.status is not JobStatus.FAILED:
            return False
        self._replace(transition(job, JobStatus.PENDING, error=None, progress=0.0, speed='', eta='',
                                 status_message=STATUS_QUEUED), persist=True)
        self._process_queue()
        return True

    def _set_status_where(self, predicate: Callable[[DownloadJob], bool], status: JobStatus) -> int:
        changed = 0
        jobs = []
        for job in self.jobs:
            if predicate(job):
                job = transition(job, status)
                changed += 1
            jobs.append(job)
        if changed:
            self._commit(jobs)
        return changed

    def pause_item(self, job_id: str) -> bool:
        """Holds back a pending job; has no effect in any other state."""
        return bool(self._set_status_where(
            lambda job: job.job_id == job_id and job.status is JobStatus.PENDING, JobStatus.PAUSED))

    def resume_item(self, job_id: str) -> bool:
        resumed = bool(self._set_status_where(
            lambda job: job.job_id == job_id and job.status is JobStatus.PAUSED, JobStatus.PENDING))
        self._process_queue()
        return resumed

    def _set_priority(self, job_id: str, priority: Callable[[DownloadJob], int]) -> bool:
        job = self.get(job_id)
        if job is None:
            return False
        self._replace(job.evolve(priority=priority(job)), persist=True)
        return True

    def move_up(self, job_id: str) -> bool:
        return self._set_priority(job_id, lambda job: job.priority + 1)

    def move_down(self, job_id: str) -> bool:
        return self._set_priority(job_id, lambda job: lowered_priority(job.priority))

    def move_to_top(self, job_id: str) -> bool:
        new_priority = top_priority(self.jobs)
        return self._set_priority(job_id, lambda job: new_priority)

    # --- Global control ---

    def pause(self):
        """Stops dispatching new jobs; running transfers continue."""
        self._commit(is_paused=True, persist=False)

    def resume(self):
        self._commit(is_paused=False, persist=False)
        self._process_queue()

    def toggle_pause(self):
        if self.state.is_paused:
            self.resume()
        else:
            self.pause()

    def clear_finished(self) -> int:
        """Removes completed and failed jobs; returns how many were removed."""
        finished = {job.job_id for job in self.jobs if job.is_finished}
        if finished:
            self._remove_jobs(finished)
            self.logger.info(f"Cleared {len(finished)} finished item(s) from the list.")
        return len(finished)

    async def clear_all(self):
        """Cancels running transfers and removes every job."""
        await self._cancel_jobs(list(self.jobs))

    # --- Groups ---

    def _group_jobs(self, group_id: str) -> List[DownloadJob]:
        return [job for job in self.jobs if job.group_id == group_id]

    async def cancel_group(self, group_id: str):
        members = self._group_jobs(group_id)
        if members:
            await self._cancel_jobs(members)
            self.ui.info("Playlist downloads cancelled")

    def pause_group(self, group_id: str) -> int:
        return self._set_status_where(
            lambda job: job.group_id == group_id and job.status is JobStatus.PENDING, JobStatus.PAUSED)

    def resume_group(self, group_id: str) -> int:
        resumed = self._set_status_where(
            lambda job: job.group_id == group_id and job.status is JobStatus.PAUSED, JobStatus.PENDING)
        self._process_queue()
        return resumed

    def get_group_progress(self, group_id: str) -> GroupProgress:
        return self.state.group_progress(group_id)
