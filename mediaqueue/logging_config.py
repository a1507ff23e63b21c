"""
Logging setup for the queue process.

Everything is written to `latest.log` in the log directory. The previous run's
log is kept under a timestamped name. A second handler either feeds records to
an embedding application's queue or, for headless runs, prints them to stderr.
"""

import sys
import queue
import logging
import logging.handlers
from datetime import datetime
from pathlib import Path
from typing import Optional

from .constants import LOG_DIR

FILE_FORMAT = '%(asctime)s - %(levelname)-8s - %(name)-25s - %(message)s'
CONSOLE_FORMAT = '%(levelname)-8s %(message)s'


def _archive_previous_log(latest_log_path: Path):
    """Renames the last run's `latest.log` after its modification time."""
    if not latest_log_path.exists():
        return
    try:
        stamp = datetime.fromtimestamp(latest_log_path.stat().st_mtime).strftime('%Y-%m-%d_%H-%M-%S')
        latest_log_path.rename(latest_log_path.with_name(f"{stamp}.log"))
    except OSError as e:
        # Logging is not configured yet.
        print(f"Could not archive {latest_log_path}: {e}", file=sys.stderr)


def setup_logging(file_log_level_str: str = 'INFO', ui_queue: Optional[queue.Queue] = None,
                  log_dir: Path = LOG_DIR):
    """
    Replaces the root logger's handlers with the queue's file and console/UI handlers.

    Args:
        file_log_level_str: Level name for the log file and console, e.g. 'DEBUG'.
            Unknown names fall back to INFO.
        ui_queue: When given, every record (DEBUG and up) is put on it for an
            embedding application to display, and nothing goes to stderr.
        log_dir: Where `latest.log` and the archived logs live.
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    latest_log_path = log_dir / 'latest.log'
    _archive_previous_log(latest_log_path)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG) # handlers filter
    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    file_log_level = getattr(logging, file_log_level_str.upper(), logging.INFO)
    file_handler = logging.FileHandler(str(latest_log_path), encoding='utf-8')
    file_handler.setLevel(file_log_level)
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
    root_logger.addHandler(file_handler)

    if ui_queue is not None:
        queue_handler = logging.handlers.QueueHandler(ui_queue)
        queue_handler.setLevel(logging.DEBUG)
        root_logger.addHandler(queue_handler)
    else:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(file_log_level)
        console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
        root_logger.addHandler(console_handler)

    logging.info(f"Logging to {latest_log_path}")
    logging.debug(f"Log level set to: {logging.getLevelName(file_log_level)}")
