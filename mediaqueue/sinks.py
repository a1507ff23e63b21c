"""
Collaborators the queue reports to: download history, notifications and UI messages.

The queue only depends on the protocols below. The default implementations log
through the standard `logging` machinery and, for history, append JSON lines.
"""

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, Protocol

import aiofiles


class HistorySink(Protocol):
    async def archive(self, record: Dict[str, Any]) -> None: ...


class NotificationSink(Protocol):
    async def notify(self, kind: str, title: str, body: str = '') -> None: ...


class UiSink(Protocol):
    def info(self, message: str) -> None: ...

    def success(self, message: str) -> None: ...

    def warning(self, message: str) -> None: ...

    def error(self, message: str) -> None: ...


class JsonLinesHistory:
    """Appends one JSON object per completed download to a history file."""

    def __init__(self, path: Path):
        self.path = path
        self.logger = logging.getLogger(__name__)
        self._lock = asyncio.Lock()

    async def archive(self, record: Dict[str, Any]) -> None:
        entry = {'archived_at': int(time.time() * 1000), **record}
        async with self._lock:
            await asyncio.to_thread(self.path.parent.mkdir, parents=True, exist_ok=True)
            async with aiofiles.open(self.path, 'a', encoding='utf-8') as f:
                await f.write(json.dumps(entry, default=str) + '\n')
        self.logger.debug(f"Archived '{record.get('title')}' to {self.path}")


class LoggingNotifier:
    """Notification sink that writes notifications to the log."""
    ICONS = {'started': '⬇️', 'completed': '✅', 'failed': '❌'}

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    async def notify(self, kind: str, title: str, body: str = '') -> None:
        self.logger.info(f"{self.ICONS.get(kind, '')} {title}: {body}".strip())


class LoggingUiSink:
    """UI sink that forwards transient messages to the log."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def info(self, message: str) -> None:
        self.logger.info(message)

    def success(self, message: str) -> None:
        self.logger.info(message)

    def warning(self, message: str) -> None:
        self.logger.warning(message)

    def error(self, message: str) -> None:
        self.logger.error(message)
