"""Error taxonomy for consolidation, matching and merging."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Sequence

if TYPE_CHECKING:  # pragma: no cover
    from .models import BatchStats, DuplicateCluster


class ConeziaError(Exception):
    """Base class for engine errors. ``kind`` is the tag reported per cluster."""

    kind = "error"


class ValidationError(ConeziaError):
    """A raw external record failed normalization and is skipped."""

    kind = "validation"

    def __init__(self, field: str, reason: str, *, value: Any = None) -> None:
        super().__init__(f"{field}: {reason}")
        self.field = field
        self.reason = reason
        self.value = value


class NotFoundError(ConeziaError):
    """A referenced user or entity no longer exists."""

    kind = "not_found"


class MergeConflictError(ConeziaError):
    """Re-parenting would violate an invariant that cannot be resolved automatically."""

    kind = "conflict"


class StorageError(ConeziaError):
    """The transaction layer is unavailable or timed out."""

    kind = "storage"


class BatchAbortedError(StorageError):
    """Storage failures persisted across clusters; the remaining batch was abandoned."""

    def __init__(
        self,
        message: str,
        *,
        stats: "BatchStats",
        not_attempted: Sequence["DuplicateCluster"] = (),
    ) -> None:
        super().__init__(message)
        self.stats = stats
        self.not_attempted = tuple(not_attempted)


__all__ = [
    "BatchAbortedError",
    "ConeziaError",
    "MergeConflictError",
    "NotFoundError",
    "StorageError",
    "ValidationError",
]
