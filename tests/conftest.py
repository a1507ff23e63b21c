"""Pytest configuration and fixtures for mediaqueue tests"""

import pytest
import pytest_asyncio

from mediaqueue.config import Settings
from mediaqueue.persistence import QueuePersistence
from mediaqueue.queue import DownloadQueue

from tests.fakes import FakeEngine, MemoryStore, RecordingHistory, RecordingNotifier, RecordingUi


@pytest.fixture
def settings(tmp_path):
    """Settings with delays shrunk so tests run quickly."""
    return Settings(
        download_path=tmp_path,
        max_concurrent_downloads=2,
        metadata_retry_delay=0,
        completed_removal_delay=0.05,
        persist_debounce=0.01,
    )


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def history():
    return RecordingHistory()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def ui():
    return RecordingUi()


@pytest.fixture
def store():
    return MemoryStore()


@pytest_asyncio.fixture
async def download_queue(engine, settings, history, notifier, ui, store):
    """A DownloadQueue wired to fakes; closed after the test."""
    persistence = QueuePersistence(store, debounce=settings.persist_debounce)
    download_queue = DownloadQueue(engine, settings, history=history, notifier=notifier, ui=ui,
                                   persistence=persistence)
    yield download_queue
    await download_queue.close()
