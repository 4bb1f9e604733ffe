"""
Error taxonomy for the batch matching pipeline.

Per-item errors (everything deriving from MatchingError) are isolated to the
item that raised them: the item resolves to outcome=error and sibling items
keep running. SchedulerInvariantError is the only fatal error and aborts the
whole run.
"""

from typing import Optional


class MatchingError(Exception):
    """Base class for errors scoped to a single detection item."""

    def __init__(self, message: str, item_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.item_id = item_id

    def __str__(self) -> str:
        return self.message


class RetrievalError(MatchingError):
    """Catalog search failed or timed out. Retryable by the caller."""


class ClassificationError(MatchingError):
    """Classifier failed, timed out, returned garbage or was cancelled."""


class DetectionValidationError(MatchingError):
    """Malformed detection item (e.g. missing reference image)."""


class PersistenceError(MatchingError):
    """Decision store rejected the finished result."""


class ItemTimeoutError(MatchingError):
    """A single pipeline execution exceeded its time budget."""


class SchedulerInvariantError(RuntimeError):
    """A concurrency guarantee of the scheduler was broken. Fatal for the run."""
