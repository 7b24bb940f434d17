"""
Exception taxonomy shared by the stores, the job system and the HTTP layer.

Errors raised synchronously propagate to the caller and are mapped to HTTP
status codes in ``main``. Errors raised inside a queued work item never reach
the original caller; the Dispatcher records them on the job instead.
"""

from __future__ import annotations


class ArcSyncError(Exception):
    """Base class for all errors raised by the backend."""


class ValidationError(ArcSyncError):
    """Malformed or conflicting caller input. Never retried."""


class NotFoundError(ArcSyncError):
    """A referenced id does not exist or does not belong to the claimed owner."""


class StorageError(ArcSyncError):
    """A durable write failed; partial writes of the operation are rolled back."""


class ProcessingError(ArcSyncError):
    """An external collaborator failed while a queued job was running."""


class StitchFailedError(ProcessingError):
    """The image stitch engine could not produce an output image."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Could not stitch images: {reason}")
        self.reason = reason


class JobStateError(ArcSyncError):
    """A job status transition that the lifecycle does not allow."""
