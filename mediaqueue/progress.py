"""
Interprets the engine's free-text progress output.

The engine reports progress as unstructured lines (yt-dlp's console output or
the lines produced by the direct file fetcher). This module turns each line into
a `PhaseEvent` with `interpret_progress_line`, a pure function, and applies the
event to a job with `apply_phase_event`.

Displayed progress is remapped so the user gets a stable "still transferring vs.
finishing up" signal: transfer percentages are compressed into [0, 90], a
finished transfer snaps to 95 and flips the job to processing, and only final
success shows 100. A per-job running maximum keeps noisy or out-of-order samples
from ever moving the bar backwards.
"""

import enum
import re
from dataclasses import dataclass
from pathlib import PurePath
from typing import Optional, Tuple

from .constants import (
    MAX_TITLE_LENGTH, PROCESSING_PROGRESS, STATUS_DOWNLOADING, STATUS_DOWNLOADING_AUDIO,
    STATUS_PROCESSING, STATUS_STARTING, TRANSFER_COMPLETE_THRESHOLD, TRANSFER_PROGRESS_CAP,
    TRANSFER_PROGRESS_SCALE,
)
from .jobs import ACTIVE_STATUSES, DownloadJob, JobStatus
from .metadata import strip_format_suffix


class Phase(enum.Enum):
    STARTING = 'starting'
    TRANSFERRING = 'transferring'
    POST_PROCESSING = 'post-processing'
    INFO = 'info'


@dataclass(frozen=True)
class PhaseEvent:
    """
    The interpretation of a single progress line.

    Attributes:
        phase: Classification of the line.
        status_message: Human-readable status for the phase, empty if none.
        percent: Raw transfer percentage in [0, 100], or None.
        speed: Transfer speed token with placeholders normalized to ''.
        eta: ETA token with placeholders normalized to ''.
        destination: Output path announced by a "Destination:" line.
    """
    phase: Phase
    status_message: str = ''
    percent: Optional[float] = None
    speed: str = ''
    eta: str = ''
    destination: Optional[str] = None


IGNORED = PhaseEvent(Phase.INFO)

# Post-processor markers, checked in order.
POST_PROCESSING_MARKERS: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (('[Merger]', 'Merging'), 'Merging...'),
    (('[ExtractAudio]',), 'Extracting audio...'),
    (('[EmbedThumbnail]',), 'Embedding thumbnail...'),
    (('[Metadata]', '[Mutagen]'), 'Writing metadata...'),
    (('[ffmpeg]', '[FixupM4a]', '[VideoConvertor]', '[VideoRemuxer]'), STATUS_PROCESSING),
)

PLACEHOLDER_TOKENS = frozenset({'na', 'unknown', 'n/a', '~'})

# "  45.2% 1.2MiB/s 00:10" as printed by a --progress-template
TEMPLATE_PROGRESS_RE = re.compile(r'^\s*(\d+(?:\.\d+)?)%\s*(\S*)\s*(.*)$')
# "[download]  45.2% of ~10.00MiB at  1.20MiB/s ETA 00:10"
STANDARD_PROGRESS_RE = re.compile(
    r'\[download\]\s+(\d+(?:\.\d+)?)%'
    r'(?:.*?\bat\s+(\S+))?'
    r'(?:.*?\bETA\s+(\S+))?'
)
DESTINATION_RE = re.compile(r'Destination:\s*(.+)')


def _normalize_token(token: Optional[str]) -> str:
    token = (token or '').strip()
    return '' if token.lower() in PLACEHOLDER_TOKENS else token


def _parse_percentage(text: str) -> Optional[Tuple[float, str, str]]:
    """Returns (percent, speed, eta) or None when the line carries no percentage."""
    if '[debug]' in text or '[info]' in text:
        return None
    match = TEMPLATE_PROGRESS_RE.match(text)
    if match:
        return float(match.group(1)), match.group(2), match.group(3)
    match = STANDARD_PROGRESS_RE.search(text)
    if match:
        return float(match.group(1)), match.group(2) or '', match.group(3) or ''
    return None


def interpret_progress_line(text: str) -> PhaseEvent:
    """
    Classifies one line of engine output into a `PhaseEvent`.

    A percentage outside [0, 100] rejects the sample entirely and yields an
    uninterpreted event.
    """
    phase, status_message, destination = Phase.INFO, '', None

    if '[download]' in text and 'Destination' in text:
        phase, status_message = Phase.STARTING, STATUS_STARTING
        if dest_match := DESTINATION_RE.search(text):
            destination = dest_match.group(1).strip()
    else:
        for markers, message in POST_PROCESSING_MARKERS:
            if any(marker in text for marker in markers):
                phase, status_message = Phase.POST_PROCESSING, message
                break
        else:
            if '%' in text:
                phase, status_message = Phase.TRANSFERRING, STATUS_DOWNLOADING

    parsed = _parse_percentage(text)
    if parsed is None:
        return PhaseEvent(phase, status_message, destination=destination)

    percent, speed, eta = parsed
    if percent < 0 or percent > 100:
        return IGNORED
    return PhaseEvent(
        Phase.TRANSFERRING,
        status_message or STATUS_DOWNLOADING,
        percent=percent,
        speed=_normalize_token(speed),
        eta=_normalize_token(eta),
        destination=destination,
    )


def remap_transfer_percent(raw: float) -> float:
    """Compresses a raw transfer percentage into the displayed transfer band."""
    if raw >= TRANSFER_COMPLETE_THRESHOLD:
        return PROCESSING_PROGRESS
    return min(raw * TRANSFER_PROGRESS_SCALE, TRANSFER_PROGRESS_CAP)


def title_from_destination(destination: str) -> str:
    """Derives a display title from an output path, without extension or format suffix."""
    filename = PurePath(destination.replace('\\', '/')).name
    stem = filename.rsplit('.', 1)[0] if '.' in filename else filename
    return strip_format_suffix(stem)


def apply_phase_event(job: DownloadJob, event: PhaseEvent, running_max: float) -> Tuple[DownloadJob, float]:
    """
    Applies an interpreted line to `job`.

    Returns the updated job and the new running maximum. Jobs that are not
    downloading or processing are returned unchanged.
    """
    if job.status not in ACTIVE_STATUSES:
        return job, running_max

    if event.percent is not None:
        candidate = remap_transfer_percent(event.percent)
        entering_processing = event.percent >= TRANSFER_COMPLETE_THRESHOLD
        if entering_processing or job.status is JobStatus.PROCESSING:
            # Once post-processing has begun the job never drops back to downloading.
            progress = max(candidate, running_max, PROCESSING_PROGRESS if entering_processing else 0)
            return job.evolve(
                status=JobStatus.PROCESSING,
                status_message=STATUS_PROCESSING,
                progress=max(progress, job.progress),
                speed='',
                eta='',
            ), max(running_max, progress)

        progress = max(candidate, running_max)
        status_message = STATUS_DOWNLOADING_AUDIO if job.options.is_audio else (event.status_message or job.status_message)
        return job.evolve(
            status=JobStatus.DOWNLOADING,
            status_message=status_message,
            progress=max(progress, job.progress),
            speed=event.speed or job.speed,
            eta=event.eta or job.eta,
        ), max(running_max, candidate)

    if event.phase is Phase.POST_PROCESSING:
        progress = max(PROCESSING_PROGRESS, running_max)
        return job.evolve(
            status=JobStatus.PROCESSING,
            status_message=event.status_message or job.status_message,
            progress=max(progress, job.progress),
            speed='',
            eta='',
        ), progress

    changes = {}
    if event.status_message:
        if event.phase is Phase.TRANSFERRING and job.options.is_audio:
            changes['status_message'] = STATUS_DOWNLOADING_AUDIO
        elif not (event.phase is Phase.STARTING and job.status is JobStatus.PROCESSING):
            changes['status_message'] = event.status_message
    if event.destination and job.has_fallback_title:
        title = title_from_destination(event.destination)
        if len(title) > 3:
            changes['title'] = title[:MAX_TITLE_LENGTH]
    return (job.evolve(**changes) if changes else job), running_max
