"""
Defines package-wide constants and paths.

This module centralizes configuration for paths, progress-remapping thresholds,
queue timings and subprocess behavior.
"""

import sys
import subprocess
from pathlib import Path

# --- Path Setup ---
# Use a user-specific directory for state to avoid permission issues.
USER_DATA_DIR: Path = Path.home() / '.mediaqueue'
CONFIG_FILE: Path = USER_DATA_DIR / 'config.json'
QUEUE_FILE: Path = USER_DATA_DIR / 'queue.json'
HISTORY_FILE: Path = USER_DATA_DIR / 'history.jsonl'
LOG_DIR: Path = USER_DATA_DIR / 'logs'
TEMP_DOWNLOAD_DIR: Path = USER_DATA_DIR / 'temp_downloads'

# Centralize subprocess creation flags to avoid console windows on Windows.
SUBPROCESS_CREATION_FLAGS = subprocess.CREATE_NO_WINDOW if sys.platform == 'win32' else 0

# --- Progress Remapping ---
# Raw transfer percentages are compressed into [0, TRANSFER_PROGRESS_CAP];
# the post-processing phase is pinned at PROCESSING_PROGRESS until success.
TRANSFER_PROGRESS_SCALE = 0.9
TRANSFER_PROGRESS_CAP = 90.0
TRANSFER_COMPLETE_THRESHOLD = 99.9
PROCESSING_PROGRESS = 95.0
COMPLETED_PROGRESS = 100.0

# --- Queue Timings (seconds) ---
COMPLETED_REMOVAL_DELAY = 3.0
PERSIST_DEBOUNCE = 0.5
METADATA_RETRY_ATTEMPTS = 3
METADATA_RETRY_DELAY = 1.0
ORPHAN_SWEEP_INTERVAL = 60.0

# --- Metadata Cleanup ---
MAX_TITLE_LENGTH = 200
PERSISTED_ITEMS_KEY = 'items'

# --- Status Messages ---
STATUS_QUEUED = 'Queued'
STATUS_STARTING = 'Starting...'
STATUS_DOWNLOADING = 'Downloading...'
STATUS_DOWNLOADING_AUDIO = 'Downloading audio...'
STATUS_PROCESSING = 'Processing...'
STATUS_COMPLETED = 'Completed'
STATUS_FAILED = 'Failed'

# --- Direct File Transfer ---
REQUEST_HEADERS = {
    'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36'
}
FILE_CHUNK_SIZE = 64 * 1024
FILE_PROGRESS_INTERVAL = 0.5
