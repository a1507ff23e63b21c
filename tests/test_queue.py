"""Tests for the DownloadQueue orchestrator, driven through a fake engine."""

import asyncio
import random

import pytest

from mediaqueue.jobs import DownloadJob, JobSource, JobStatus
from mediaqueue.state import GroupProgress

from tests.fakes import settle

URL_A = "https://www.youtube.com/watch?v=aaaaaaaaaaa"
URL_B = "https://www.youtube.com/watch?v=bbbbbbbbbbb"
URL_C = "https://www.youtube.com/watch?v=ccccccccccc"


async def wait_idle(download_queue):
    await asyncio.wait_for(download_queue.wait_until_idle(), timeout=2)


class TestSubmission:
    """Tests for add, add_file and their guards."""

    @pytest.mark.asyncio
    async def test_add_dispatches_immediately(self, download_queue, engine):
        job_id = download_queue.add(URL_A)
        await settle()

        job = download_queue.get(job_id)
        assert engine.started == [URL_A]
        assert job.status is JobStatus.DOWNLOADING
        assert job.title == URL_A
        assert job.options.download_mode == 'auto'
        assert job.extension == 'mp4'

    @pytest.mark.asyncio
    async def test_duplicate_unfinished_url_is_rejected(self, download_queue):
        assert download_queue.add(URL_A) is not None
        assert download_queue.add(URL_A) is None
        assert len(download_queue.jobs) == 1

    @pytest.mark.asyncio
    async def test_failed_url_can_be_added_again(self, download_queue, engine):
        download_queue.add(URL_A)
        await settle()
        engine.fail(URL_A)
        await settle()

        assert download_queue.add(URL_A) is not None
        assert len(download_queue.jobs) == 2

    @pytest.mark.asyncio
    async def test_missing_capability_rejects_media_but_not_files(self, download_queue, engine, ui):
        engine.missing[JobSource.MEDIA] = ['ffmpeg']

        assert download_queue.add(URL_A) is None
        assert any('ffmpeg' in message for message in ui.of_level('error'))
        assert download_queue.add_file({'url': 'https://files.example.com/a.zip', 'filename': 'a.zip'}) is not None

    @pytest.mark.asyncio
    async def test_youtube_music_defaults_to_audio(self, download_queue):
        job_id = download_queue.add("https://music.youtube.com/watch?v=xyz")
        job = download_queue.get(job_id)
        assert job.options.download_mode == 'audio'
        assert job.media_type == 'audio'
        assert job.extension == 'mp3'

    @pytest.mark.asyncio
    async def test_youtube_music_respects_explicit_mode(self, download_queue):
        job_id = download_queue.add("https://music.youtube.com/watch?v=xyz", {'download_mode': 'auto'})
        assert download_queue.get(job_id).options.download_mode == 'auto'

    @pytest.mark.asyncio
    async def test_options_are_snapshotted_from_settings(self, download_queue, settings):
        settings.video_quality = '720'
        first = download_queue.add(URL_A)
        settings.video_quality = '1080'

        assert download_queue.get(first).options.video_quality == '720'

    @pytest.mark.asyncio
    async def test_add_file_skips_metadata_and_routes_to_file_fetcher(self, download_queue, engine):
        url = "https://files.example.com/archive.tar.gz"
        job_id = download_queue.add_file({'url': url, 'filename': 'archive.tar.gz', 'size': 2048,
                                          'mime_type': 'application/gzip'})
        await settle()

        job = download_queue.get(job_id)
        assert job.source is JobSource.FILE
        assert job.author == 'files.example.com'
        assert job.extension == 'gz'
        assert job.total_bytes == 2048
        assert engine.metadata_calls == []
        assert engine.options[url]['source'] == 'file'
        assert engine.options[url]['filename'] == 'archive.tar.gz'


class TestScheduling:
    """Tests for the concurrency limit, ordering and pausing."""

    @pytest.mark.asyncio
    async def test_concurrency_limit_is_never_exceeded(self, download_queue, engine):
        rng = random.Random(7)
        urls = [f"https://example.com/watch?v={i}" for i in range(12)]
        for url in urls:
            download_queue.add(url)
        await settle()

        while engine.running():
            running = engine.running()
            assert len(running) <= 2
            assert download_queue.state.active_count <= 2
            url = rng.choice(running)
            if rng.random() < 0.3:
                engine.fail(url)
            else:
                engine.finish(url)
            await settle()

        assert engine.max_active == 2
        assert sorted(engine.started) == sorted(urls)

    @pytest.mark.asyncio
    async def test_limit_two_starts_the_two_oldest(self, download_queue, engine):
        download_queue.pause()
        for url in (URL_A, URL_B, URL_C):
            download_queue.add(url)
        download_queue.resume()
        await settle()

        assert engine.started == [URL_A, URL_B]
        assert download_queue.state.pending_count == 1

    @pytest.mark.asyncio
    async def test_move_to_top_changes_dispatch_order(self, download_queue, engine, settings):
        settings.max_concurrent_downloads = 1
        download_queue.add(URL_A)
        download_queue.add(URL_B)
        job_c = download_queue.add(URL_C)
        await settle()

        assert download_queue.move_to_top(job_c)
        assert download_queue.get(job_c).priority == 1
        engine.finish(URL_A)
        await settle()

        assert engine.started == [URL_A, URL_C]

    @pytest.mark.asyncio
    async def test_move_down_is_floored_at_zero(self, download_queue):
        download_queue.pause()
        job_id = download_queue.add(URL_A)
        download_queue.move_up(job_id)
        download_queue.move_down(job_id)
        download_queue.move_down(job_id)
        assert download_queue.get(job_id).priority == 0
        assert download_queue.move_up("no-such-job") is False

    @pytest.mark.asyncio
    async def test_raising_the_limit_applies_on_next_pass(self, download_queue, engine, settings):
        for url in (URL_A, URL_B, URL_C):
            download_queue.add(url)
        await settle()
        assert len(engine.started) == 2

        settings.max_concurrent_downloads = 3
        download_queue.resume()
        await settle()
        assert engine.started == [URL_A, URL_B, URL_C]

    @pytest.mark.asyncio
    async def test_global_pause_holds_dispatch_but_not_running_jobs(self, download_queue, engine):
        download_queue.add(URL_A)
        await settle()
        download_queue.pause()
        download_queue.add(URL_B)
        await settle()

        assert engine.started == [URL_A]
        engine.finish(URL_A)
        await settle()
        assert engine.started == [URL_A]

        download_queue.toggle_pause()
        await settle()
        assert engine.started == [URL_A, URL_B]

    @pytest.mark.asyncio
    async def test_paused_item_is_skipped_until_resumed(self, download_queue, engine, settings):
        settings.max_concurrent_downloads = 1
        download_queue.add(URL_A)
        job_b = download_queue.add(URL_B)
        await settle()

        assert download_queue.pause_item(job_b)
        engine.finish(URL_A)
        await settle()
        assert download_queue.get(job_b).status is JobStatus.PAUSED
        assert engine.started == [URL_A]

        assert download_queue.resume_item(job_b)
        await settle()
        assert engine.started == [URL_A, URL_B]

    @pytest.mark.asyncio
    async def test_pause_item_ignores_running_job(self, download_queue):
        job_id = download_queue.add(URL_A)
        await settle()
        assert download_queue.pause_item(job_id) is False
        assert download_queue.get(job_id).status is JobStatus.DOWNLOADING


class TestProgress:
    """Tests for how engine output lines reach the job."""

    @pytest.mark.asyncio
    async def test_progress_lines_update_the_running_job(self, download_queue, engine):
        job_id = download_queue.add(URL_A, {'download_mode': 'audio'})
        await settle()

        await engine.emit(URL_A, "  45.2% 1.20MiB/s 00:10")
        job = download_queue.get(job_id)
        assert job.progress == pytest.approx(40.68)
        assert job.speed == '1.20MiB/s'
        assert job.eta == '00:10'
        assert job.status_message == 'Downloading audio...'

        await engine.emit(URL_A, "[download] 100% of 10.00MiB in 00:00:08")
        job = download_queue.get(job_id)
        assert job.status is JobStatus.PROCESSING
        assert job.progress == 95

        await engine.emit(URL_A, "  50.0% 1.00MiB/s 00:05")
        await engine.emit(URL_A, "[ExtractAudio] Destination: song.mp3")
        job = download_queue.get(job_id)
        assert job.status is JobStatus.PROCESSING
        assert job.progress == 95
        assert job.status_message == 'Extracting audio...'

    @pytest.mark.asyncio
    async def test_out_of_range_sample_is_ignored(self, download_queue, engine):
        job_id = download_queue.add(URL_A)
        await settle()
        await engine.emit(URL_A, "  20.0% 1.00MiB/s 00:05")
        await engine.emit(URL_A, "  140.0% 1.00MiB/s 00:05")
        assert download_queue.get(job_id).progress == pytest.approx(18.0)

    @pytest.mark.asyncio
    async def test_destination_line_replaces_url_title(self, download_queue, engine):
        job_id = download_queue.add(URL_A)
        await settle()
        await engine.emit(URL_A, "[download] Destination: /downloads/My Holiday Video.f137.mp4")
        assert download_queue.get(job_id).title == 'My Holiday Video'

    @pytest.mark.asyncio
    async def test_reported_file_path_sets_size_and_extension(self, download_queue, engine):
        job_id = download_queue.add(URL_A)
        await settle()
        engine.file_sizes['/downloads/clip.webm'] = 4096
        await engine.report_file(URL_A, '/downloads/clip.webm')

        job = download_queue.get(job_id)
        assert job.file_path == '/downloads/clip.webm'
        assert job.extension == 'webm'
        assert job.filesize == 4096


class TestCompletion:
    """Tests for the success path, history and auto-removal."""

    @pytest.mark.asyncio
    async def test_completed_job_is_archived_and_notified(self, download_queue, engine, history, notifier, ui):
        engine.metadata[URL_A] = {'title': 'Great Talk.f137', 'uploader': 'Conference', 'duration': 321}
        job_id = download_queue.add(URL_A)
        await settle()
        engine.file_sizes['/downloads/Great Talk.mp4'] = 1234
        engine.finish(URL_A, '/downloads/Great Talk.mp4')
        await wait_idle(download_queue)
        await settle()

        job = download_queue.get(job_id)
        assert job.status is JobStatus.COMPLETED
        assert job.progress == 100
        assert job.filesize == 1234
        assert job.title == 'Great Talk'
        assert job.author == 'Conference'

        assert len(history.records) == 1
        record = history.records[0]
        assert record['url'] == URL_A
        assert record['title'] == 'Great Talk'
        assert record['size'] == 1234
        assert notifier.kinds() == ['started', 'completed']
        assert ui.of_level('success')

    @pytest.mark.asyncio
    async def test_completed_job_is_removed_after_delay(self, download_queue, engine):
        job_id = download_queue.add(URL_A)
        await settle()
        engine.finish(URL_A)
        await wait_idle(download_queue)
        assert download_queue.get(job_id) is not None

        await asyncio.sleep(0.1)
        assert download_queue.get(job_id) is None

    @pytest.mark.asyncio
    async def test_stat_failure_does_not_fail_the_job(self, download_queue, engine):
        job_id = download_queue.add(URL_A)
        await settle()
        engine.finish(URL_A, '/downloads/vanished.mkv')
        await wait_idle(download_queue)

        job = download_queue.get(job_id)
        assert job.status is JobStatus.COMPLETED
        assert job.extension == 'mkv'
        assert job.filesize == 0

    @pytest.mark.asyncio
    async def test_hidden_from_history(self, download_queue, engine, history):
        download_queue.add(URL_A, {'dont_show_in_history': True})
        await settle()
        engine.finish(URL_A)
        await wait_idle(download_queue)
        assert history.records == []

    @pytest.mark.asyncio
    async def test_notifications_can_be_disabled(self, download_queue, engine, notifier, settings):
        settings.notifications_enabled = False
        download_queue.add(URL_A)
        await settle()
        engine.finish(URL_A)
        await wait_idle(download_queue)
        await settle()
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_prefetched_title_skips_metadata_lookup(self, download_queue, engine):
        job_id = download_queue.add(URL_A, {'prefetched_info': {'title': 'Known Title', 'author': 'Someone'}})
        await settle()
        assert engine.metadata_calls == []
        assert download_queue.get(job_id).title == 'Known Title'
        assert download_queue.get(job_id).author == 'Someone'

    @pytest.mark.asyncio
    async def test_metadata_lookup_is_retried_then_given_up(self, download_queue, engine, ui, settings):
        settings.warn_on_metadata_failure = True
        job_id = download_queue.add(URL_A)
        await settle()

        assert engine.metadata_calls == [URL_A] * 3
        assert download_queue.get(job_id).title == URL_A
        assert download_queue.get(job_id).status is JobStatus.DOWNLOADING
        assert ui.of_level('warning')

    @pytest.mark.asyncio
    async def test_archival_waits_for_metadata_still_in_flight(self, download_queue, engine, history):
        engine.metadata[URL_A] = {'title': 'Enriched Title', 'uploader': 'Channel'}
        engine.metadata_gates[URL_A] = asyncio.Event()
        job_id = download_queue.add(URL_A)
        await settle()
        engine.finish(URL_A, '/downloads/clip.mp4')
        await settle()

        assert download_queue.get(job_id).status is JobStatus.COMPLETED
        assert history.records == []

        engine.metadata_gates[URL_A].set()
        await settle(60)
        assert len(history.records) == 1
        assert history.records[0]['title'] == 'Enriched Title'
        assert history.records[0]['author'] == 'Channel'

    @pytest.mark.asyncio
    async def test_exhausted_metadata_lookup_still_archives(self, download_queue, engine, history):
        engine.metadata_gates[URL_A] = asyncio.Event()
        download_queue.add(URL_A)
        await settle()
        engine.finish(URL_A, '/downloads/clip.mp4')
        await settle()
        assert history.records == []

        engine.metadata_gates[URL_A].set()
        await settle(60)
        assert engine.metadata_calls == [URL_A] * 3
        assert len(history.records) == 1
        assert history.records[0]['title'] == URL_A


class TestFailureAndCancellation:
    """Tests for failures, retry, cancel and clearing."""

    @pytest.mark.asyncio
    async def test_failure_records_error(self, download_queue, engine, notifier, ui):
        job_id = download_queue.add(URL_A)
        await settle()
        engine.fail(URL_A, "HTTP Error 404: Not Found")
        await settle()

        job = download_queue.get(job_id)
        assert job.status is JobStatus.FAILED
        assert job.error == "HTTP Error 404: Not Found"
        assert job.status_message == 'Failed'
        assert 'failed' in notifier.kinds()
        assert ui.of_level('error') == ["Download failed: HTTP Error 404: Not Found"]

    @pytest.mark.asyncio
    async def test_retry_requeues_failed_job(self, download_queue, engine):
        job_id = download_queue.add(URL_A)
        await settle()
        await engine.emit(URL_A, "  30.0% 1.00MiB/s 00:05")
        engine.fail(URL_A)
        await settle()

        assert download_queue.retry(job_id)
        await settle()
        job = download_queue.get(job_id)
        assert engine.started == [URL_A, URL_A]
        assert job.status is JobStatus.DOWNLOADING
        assert job.error is None
        assert job.progress == 0

    @pytest.mark.asyncio
    async def test_retry_only_applies_to_failed_jobs(self, download_queue):
        job_id = download_queue.add(URL_A)
        await settle()
        assert download_queue.retry(job_id) is False
        assert download_queue.retry("missing") is False

    @pytest.mark.asyncio
    async def test_cancel_running_job_suppresses_failure(self, download_queue, engine, notifier, ui):
        job_id = download_queue.add(URL_A)
        await settle()
        await download_queue.cancel(job_id)
        await settle()

        assert download_queue.get(job_id) is None
        assert engine.cancelled == [URL_A]
        assert ui.of_level('error') == []
        assert 'failed' not in notifier.kinds()
        assert ui.of_level('info') == ["Download cancelled"]
        await wait_idle(download_queue)

    @pytest.mark.asyncio
    async def test_failure_reported_after_cancel_returns_is_suppressed(self, download_queue, engine, notifier, ui):
        engine.cancel_resolves = False
        job_id = download_queue.add(URL_A)
        await settle()
        await download_queue.cancel(job_id)

        engine.fail(URL_A, "Connection reset")
        await settle()
        assert download_queue.jobs == ()
        assert ui.of_level('error') == []
        assert 'failed' not in notifier.kinds()
        assert download_queue.sweep_orphans() == 0

    @pytest.mark.asyncio
    async def test_cancel_during_archival_leaves_no_tombstone(self, download_queue, engine):
        engine.metadata_gates[URL_A] = asyncio.Event()
        job_id = download_queue.add(URL_A)
        await settle()
        engine.finish(URL_A, '/downloads/clip.mp4')
        await settle()

        await download_queue.cancel(job_id)
        engine.metadata_gates[URL_A].set()
        await settle(60)
        assert download_queue.get(job_id) is None
        assert download_queue.sweep_orphans() == 0

    @pytest.mark.asyncio
    async def test_cancel_pending_job_does_not_touch_engine(self, download_queue, engine, settings):
        settings.max_concurrent_downloads = 1
        download_queue.add(URL_A)
        job_b = download_queue.add(URL_B)
        await settle()

        await download_queue.cancel(job_b)
        assert engine.cancelled == []
        assert download_queue.get(job_b) is None
        await download_queue.cancel(job_b)

    @pytest.mark.asyncio
    async def test_cancel_frees_slot_for_next_job(self, download_queue, engine, settings):
        settings.max_concurrent_downloads = 1
        job_a = download_queue.add(URL_A)
        download_queue.add(URL_B)
        await settle()
        await download_queue.cancel(job_a)
        await settle()
        assert engine.started == [URL_A, URL_B]

    @pytest.mark.asyncio
    async def test_clear_finished(self, download_queue, engine):
        download_queue.add(URL_A)
        download_queue.add(URL_B)
        await settle()
        engine.fail(URL_A)
        await settle()

        assert download_queue.clear_finished() == 1
        assert [job.url for job in download_queue.jobs] == [URL_B]

    @pytest.mark.asyncio
    async def test_clear_all_tears_down_running_jobs(self, download_queue, engine, ui):
        for url in (URL_A, URL_B, URL_C):
            download_queue.add(url)
        await settle()

        await download_queue.clear_all()
        await settle()
        assert download_queue.jobs == ()
        assert sorted(engine.cancelled) == [URL_A, URL_B]
        assert ui.of_level('error') == []

    @pytest.mark.asyncio
    async def test_sweep_removes_leftover_lookup_of_failed_job(self, download_queue, engine):
        download_queue.add(URL_A)
        await settle()
        engine.fail(URL_A)
        await settle()

        assert download_queue.sweep_orphans() == 1
        assert download_queue.sweep_orphans() == 0


class TestGroups:
    """Tests for playlist/collection submission and group operations."""

    ENTRIES = [
        {'url': URL_A, 'title': 'One'},
        {'url': URL_B, 'title': 'Two'},
        {'url': URL_C, 'title': 'Three', 'download_mode': 'audio'},
    ]
    GROUP = {'group_id': 'pl-1', 'group_title': 'Road Trip'}

    @pytest.mark.asyncio
    async def test_reverse_order_assigns_indices_after_ordering(self, download_queue, engine):
        ids = download_queue.add_group(self.ENTRIES, self.GROUP, order='reverse')
        await settle()

        by_url = {job.url: job for job in download_queue.jobs}
        assert len(ids) == 3
        assert by_url[URL_C].index_in_group == 1
        assert by_url[URL_A].index_in_group == 3
        assert by_url[URL_C].options.download_mode == 'audio'
        assert by_url[URL_A].title == 'One'
        assert by_url[URL_A].group_title == 'Road Trip'
        assert engine.started == [URL_C, URL_B]
        assert engine.metadata_calls == []

    @pytest.mark.asyncio
    async def test_shuffle_uses_given_rng(self, download_queue):
        download_queue.pause()
        download_queue.add_group(self.ENTRIES, self.GROUP, order='shuffle', rng=random.Random(42))

        expected = [entry['url'] for entry in self.ENTRIES]
        random.Random(42).shuffle(expected)
        ordered = sorted(download_queue.jobs, key=lambda job: job.index_in_group)
        assert [job.url for job in ordered] == expected

    @pytest.mark.asyncio
    async def test_unknown_order_is_rejected(self, download_queue):
        with pytest.raises(ValueError):
            download_queue.add_group(self.ENTRIES, self.GROUP, order='sideways')

    @pytest.mark.asyncio
    async def test_group_progress_and_cancel(self, download_queue, engine, settings):
        settings.completed_removal_delay = 10
        download_queue.add_group(self.ENTRIES, self.GROUP)
        await settle()

        engine.finish(URL_A)
        engine.fail(URL_B)
        await settle()
        assert download_queue.get_group_progress('pl-1') == GroupProgress(completed=1, failed=1, total=3)

        grouped = download_queue.state.grouped()
        assert [job.url for job in grouped.groups[0].jobs] == [URL_C]
        assert grouped.groups[0].completed == 1

        await download_queue.cancel_group('pl-1')
        assert download_queue.jobs == ()
        assert engine.cancelled == [URL_C]

    @pytest.mark.asyncio
    async def test_pause_and_resume_group(self, download_queue, engine):
        download_queue.pause()
        download_queue.add_group(self.ENTRIES, self.GROUP)
        download_queue.add("https://www.youtube.com/watch?v=ddddddddddd")

        assert download_queue.pause_group('pl-1') == 3
        download_queue.resume()
        await settle()
        assert engine.started == ["https://www.youtube.com/watch?v=ddddddddddd"]

        assert download_queue.resume_group('pl-1') == 3
        await settle()
        assert engine.started[1:] == [URL_A]


class TestStateStreamAndPersistence:
    """Tests for listeners, persisted writes and restore."""

    @pytest.mark.asyncio
    async def test_listener_sees_every_state(self, download_queue):
        seen = []
        unsubscribe = download_queue.subscribe(lambda state: seen.append(state))
        assert seen[0].jobs == ()

        download_queue.pause()
        download_queue.add(URL_A)
        assert seen[-1].jobs[0].url == URL_A
        assert seen[-1].is_paused

        unsubscribe()
        download_queue.resume()
        assert seen[-1].is_paused

    @pytest.mark.asyncio
    async def test_queued_jobs_are_written_to_store(self, download_queue, store):
        download_queue.pause()
        download_queue.add(URL_A)
        download_queue.add(URL_B)
        await asyncio.sleep(0.1)

        items = store.data['items']
        assert [item['url'] for item in items] == [URL_A, URL_B]
        assert all(item['status'] == 'pending' for item in items)
        assert store.saves == 1

    @pytest.mark.asyncio
    async def test_running_jobs_are_not_persisted(self, download_queue, store):
        download_queue.add(URL_A)
        await settle()
        await asyncio.sleep(0.05)
        assert store.data.get('items', []) == []

    @pytest.mark.asyncio
    async def test_restore_resets_and_dispatches(self, download_queue, engine, store):
        interrupted = DownloadJob(url=URL_A, status=JobStatus.DOWNLOADING, progress=55.0, speed='2MiB/s')
        held = DownloadJob(url=URL_B, status=JobStatus.PAUSED)
        done = DownloadJob(url=URL_C, status=JobStatus.COMPLETED, progress=100.0)
        store.data['items'] = [
            interrupted.model_dump(mode='json'),
            held.model_dump(mode='json'),
            done.model_dump(mode='json'),
            {'garbage': True},
        ]

        assert await download_queue.restore() == 2
        await settle()

        restored = download_queue.get(interrupted.job_id)
        assert restored.status is JobStatus.DOWNLOADING
        assert engine.started == [URL_A]
        assert download_queue.get(held.job_id).status is JobStatus.PAUSED
        assert download_queue.get(done.job_id) is None
        assert store.saves >= 1
        assert [item['url'] for item in store.data['items']] == [URL_A, URL_B]
