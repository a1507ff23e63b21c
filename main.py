"""
Main entry point for the mediaqueue command line.

This script loads the configuration, sets up logging, locates the download
engine's executables, restores the persisted queue and downloads the given
URLs until the queue is idle.
"""

import argparse
import sys
import logging
import asyncio
from types import TracebackType
from typing import List, Optional, Type

from mediaqueue import DownloadQueue, __version__
from mediaqueue.config import ConfigManager
from mediaqueue.constants import CONFIG_FILE, HISTORY_FILE, QUEUE_FILE, TEMP_DOWNLOAD_DIR
from mediaqueue.engine import LocalEngine
from mediaqueue.file_fetcher import target_filename
from mediaqueue.logging_config import setup_logging
from mediaqueue.persistence import JsonFileStore, QueuePersistence
from mediaqueue.sinks import JsonLinesHistory


def handle_exception(exc_type: Type[BaseException], exc_value: BaseException, exc_traceback: TracebackType):
    """Logs unhandled exceptions from synchronous code."""
    logger = logging.getLogger()
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return
    logger.critical("Unhandled exception:", exc_info=(exc_type, exc_value, exc_traceback))


def handle_async_exception(loop, context):
    """Logs unhandled exceptions from asyncio tasks."""
    logger = logging.getLogger()
    msg = context.get("exception", context["message"])
    logger.critical(f"Caught exception from asyncio task: {msg}")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="mediaqueue", description="Queue and download media and file URLs.")
    parser.add_argument("urls", nargs="*", help="Media URLs to add to the queue.")
    parser.add_argument("--file", action="append", default=[], metavar="URL",
                        help="A direct file URL to download (may be repeated).")
    parser.add_argument("--audio", action="store_true", help="Download audio only.")
    parser.add_argument("--quality", help="Maximum video height, e.g. 1080.")
    parser.add_argument("--concurrency", type=int, help="Maximum simultaneous downloads.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> int:
    loop = asyncio.get_running_loop()
    loop.set_exception_handler(handle_async_exception)

    config_manager = ConfigManager(CONFIG_FILE)
    settings = config_manager.load()
    if args.concurrency:
        config_manager.update(settings, {'max_concurrent_downloads': args.concurrency})

    engine = LocalEngine(settings)
    await engine.initialize()

    persistence = QueuePersistence(JsonFileStore(QUEUE_FILE), debounce=settings.persist_debounce)
    download_queue = DownloadQueue(engine, settings, history=JsonLinesHistory(HISTORY_FILE),
                                   persistence=persistence)
    download_queue.start()
    try:
        await download_queue.restore()

        options = {}
        if args.audio:
            options['download_mode'] = 'audio'
        if args.quality:
            options['video_quality'] = args.quality
        for url in args.urls:
            download_queue.add(url, options)
        for url in args.file:
            download_queue.add_file({'url': url, 'filename': target_filename(url, '')})

        await download_queue.wait_until_idle()
    finally:
        await download_queue.close()

    failed = [job for job in download_queue.jobs if job.status.value == 'failed']
    for job in failed:
        logging.error(f"Failed: {job.url} ({job.error})")
    return 1 if failed else 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    # 1. Ensure temp directory exists before anything else
    TEMP_DOWNLOAD_DIR.mkdir(parents=True, exist_ok=True)

    # 2. Use the configured log level for file logging
    setup_logging(ConfigManager(CONFIG_FILE).load().log_level)

    # 3. Set up global exception handlers
    sys.excepthook = handle_exception

    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        logging.info("Interrupted by user.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
