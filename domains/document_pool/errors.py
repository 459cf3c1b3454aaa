"""
Error taxonomy for the document pool engine.

Cancelled is discarded silently, SourceUnavailable and SourceTimeout go
through the reload scheduler's backoff path, PartialCategoryFailure only
ever degrades a single health category.
"""

from typing import Optional


class SyncError(Exception):
    """Base class for all engine errors."""


class Cancelled(SyncError):
    """A load cycle was superseded or torn down."""


class SourceUnavailable(SyncError):
    """The underlying query of a source failed."""

    def __init__(self, source_id: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(f"{source_id}: {message}")
        self.source_id = source_id
        self.cause = cause


class SourceTimeout(SourceUnavailable):
    """A source call exceeded its wall-clock timeout."""


class PartialCategoryFailure(SyncError):
    """One health category could not be computed."""

    def __init__(self, key: str, cause: BaseException):
        super().__init__(f"health category '{key}' failed: {cause}")
        self.key = key
        self.cause = cause


class SnapshotUnavailable(SyncError):
    """No successful snapshot exists for the requested view."""


def collapse_group(group: BaseExceptionGroup) -> BaseException:
    """
    Reduce an exception group raised by a TaskGroup to a single error.

    Cancellation wins over everything else so a superseded cycle is never
    reported as a failure.
    """
    leaves = list(_iter_leaves(group))
    for exc in leaves:
        if isinstance(exc, Cancelled):
            return exc
    for exc in leaves:
        if isinstance(exc, SyncError):
            return exc
    return leaves[0]


def _iter_leaves(group: BaseExceptionGroup):
    for exc in group.exceptions:
        if isinstance(exc, BaseExceptionGroup):
            yield from _iter_leaves(exc)
        else:
            yield exc
