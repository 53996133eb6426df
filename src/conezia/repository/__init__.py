"""Storage backends for entity deduplication."""

from .base import (
    MEMBERSHIP_KINDS,
    REPARENT_KINDS,
    EntityLink,
    EntityStore,
    Membership,
    MergeSession,
    RecordKind,
    RelationshipRow,
    total_records,
)
from .memory import MemoryEntityStore

__all__ = [
    "EntityLink",
    "EntityStore",
    "MEMBERSHIP_KINDS",
    "Membership",
    "MemoryEntityStore",
    "MergeSession",
    "REPARENT_KINDS",
    "RecordKind",
    "RelationshipRow",
    "total_records",
]
