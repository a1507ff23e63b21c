"""
Defines custom exceptions used throughout the package.

These exceptions allow for more specific error handling than built-in exceptions.
"""

class MediaQueueError(Exception):
    """Base class for all errors raised by the queue."""
    pass

class DownloadCancelledError(MediaQueueError):
    """Custom exception for cancelled downloads."""
    pass

class TransferError(MediaQueueError):
    """Raised by an engine when a transfer ends unsuccessfully."""
    pass

class MetadataLookupError(MediaQueueError):
    """Custom exception for metadata (URL info) lookup failures."""
    pass

class MissingDependencyError(MediaQueueError):
    """Raised when a required external executable is not available."""
    def __init__(self, missing):
        self.missing = list(missing)
        super().__init__(f"Missing dependencies: {', '.join(self.missing)}")

class InvalidTransitionError(MediaQueueError):
    """Raised when a job is asked to move to a status its lifecycle forbids."""
    def __init__(self, job_id: str, current, requested):
        self.job_id = job_id
        self.current = current
        self.requested = requested
        super().__init__(f"Job {job_id}: cannot move from '{current.value}' to '{requested.value}'")
