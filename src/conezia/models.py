from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, Mapping, Sequence, Tuple, Union
from uuid import UUID


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntityType(str, Enum):
    PERSON = "person"
    ORGANIZATION = "organization"


class IdentifierKind(str, Enum):
    PHONE = "phone"
    EMAIL = "email"
    SSN = "ssn"
    GOVERNMENT_ID = "government_id"
    ACCOUNT_NUMBER = "account_number"
    SOCIAL_HANDLE = "social_handle"
    WEBSITE = "website"


class MatchReason(str, Enum):
    SHARED_EXTERNAL_ID = "shared_external_id"
    SIMILAR_NAME = "similar_name"

    @staticmethod
    def shared(identifier_type: str) -> str:
        return f"shared_{identifier_type}"


# ---------------------------------------------------------------------------
# Stored records
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class Entity:
    id: UUID
    owner_id: UUID
    name: str
    type: str = EntityType.PERSON.value
    description: str | None = None
    avatar_url: str | None = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    last_interaction_at: datetime | None = None
    archived_at: datetime | None = None
    is_self: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def profile_field_count(self) -> int:
        values = (self.name, self.description, self.avatar_url, self.last_interaction_at)
        count = sum(1 for value in values if value not in (None, ""))
        if self.metadata:
            count += 1
        return count


@dataclass(slots=True)
class Identifier:
    """Typed contact value. ``value_hash`` is the blind-index token."""

    id: UUID
    entity_id: UUID
    type: str
    value_hash: str | None
    value_encrypted: bytes | None = None
    label: str | None = None
    is_primary: bool = False
    archived_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def match_key(self) -> Tuple[str, str] | None:
        if not self.value_hash:
            return None
        return (self.type, self.value_hash)


@dataclass(slots=True)
class ExternalAccount:
    id: UUID
    owner_id: UUID
    entity_id: UUID | None
    service_name: str
    account_identifier: str


@dataclass(slots=True)
class EntitySnapshot:
    """An entity as seen by the matcher: tokens only, never plaintext."""

    entity: Entity
    identifiers: Tuple[Identifier, ...] = ()
    external_ids: frozenset[Tuple[str, str]] = frozenset()
    dependent_count: int = 0

    @property
    def id(self) -> UUID:
        return self.entity.id

    @property
    def completeness(self) -> int:
        return self.entity.profile_field_count() + self.dependent_count


# ---------------------------------------------------------------------------
# Matching and merging results
# ---------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class DuplicateCluster:
    primary: Entity
    duplicates: Tuple[Entity, ...]
    match_reasons: Tuple[str, ...] = ()

    @property
    def owner_id(self) -> UUID:
        return self.primary.owner_id

    @property
    def duplicate_ids(self) -> list[UUID]:
        return [entity.id for entity in self.duplicates]

    @property
    def entity_ids(self) -> list[UUID]:
        return [self.primary.id, *self.duplicate_ids]

    def as_dict(self) -> dict[str, Any]:
        return {
            "primary": {"id": str(self.primary.id), "name": self.primary.name},
            "duplicates": [{"id": str(dup.id), "name": dup.name} for dup in self.duplicates],
            "match_reasons": list(self.match_reasons),
        }


@dataclass(slots=True, frozen=True)
class BatchStats:
    merged_groups: int = 0
    total_duplicates_removed: int = 0
    failed_groups: int = 0
    skipped_groups: int = 0

    def __add__(self, other: "BatchStats") -> "BatchStats":
        if not isinstance(other, BatchStats):
            return NotImplemented
        return BatchStats(
            merged_groups=self.merged_groups + other.merged_groups,
            total_duplicates_removed=self.total_duplicates_removed + other.total_duplicates_removed,
            failed_groups=self.failed_groups + other.failed_groups,
            skipped_groups=self.skipped_groups + other.skipped_groups,
        )

    def record(self, outcome: "MergeOutcome") -> "BatchStats":
        if isinstance(outcome, MergeSuccess):
            return self + BatchStats(merged_groups=1, total_duplicates_removed=outcome.duplicates_removed)
        if isinstance(outcome, MergeSkipped):
            return self + BatchStats(skipped_groups=1)
        return self + BatchStats(failed_groups=1)

    def as_dict(self) -> dict[str, int]:
        return {
            "merged_groups": self.merged_groups,
            "total_duplicates_removed": self.total_duplicates_removed,
            "failed_groups": self.failed_groups,
            "skipped_groups": self.skipped_groups,
        }


@dataclass(slots=True, frozen=True)
class MergeSuccess:
    status: ClassVar[str] = "merged"

    cluster: DuplicateCluster
    reparented: Mapping[str, int] = field(default_factory=dict)
    identifiers_dropped: int = 0
    memberships_collapsed: int = 0

    @property
    def duplicates_removed(self) -> int:
        return len(self.cluster.duplicates)


@dataclass(slots=True, frozen=True)
class MergeFailure:
    status: ClassVar[str] = "failed"

    cluster: DuplicateCluster
    error_kind: str
    reason: str


@dataclass(slots=True, frozen=True)
class MergeSkipped:
    status: ClassVar[str] = "skipped"

    cluster: DuplicateCluster
    reason: str


MergeOutcome = Union[MergeSuccess, MergeFailure, MergeSkipped]


# ---------------------------------------------------------------------------
# External contact records
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class ExternalContactRecord:
    """Raw contact as produced by a provider fetcher."""

    name: str | None = None
    email: str | None = None
    phone: str | None = None
    organization: str | None = None
    notes: str | None = None
    external_id: str | None = None
    source: str | None = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class NormalizedContact:
    name: str
    email: str | None = None
    phone: str | None = None
    organization: str | None = None
    notes: str | None = None
    external_id: str | None = None
    source: str = "unknown"
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ConsolidatedContact:
    name: str | None
    email: str | None = None
    phone: str | None = None
    organization: str | None = None
    notes: str | None = None
    emails: Tuple[str, ...] = ()
    phones: Tuple[str, ...] = ()
    external_ids: Dict[str, str] = field(default_factory=dict)
    sources: Tuple[str, ...] = ()
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class CandidateIdentifier:
    type: str
    value_encrypted: bytes
    value_hash: str
    is_primary: bool = False


@dataclass(slots=True)
class EntityCandidate:
    """Attributes handed to ordinary entity creation."""

    name: str
    type: str = EntityType.PERSON.value
    description: str | None = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    identifiers: Sequence[CandidateIdentifier] = ()


__all__ = [
    "BatchStats",
    "CandidateIdentifier",
    "ConsolidatedContact",
    "DuplicateCluster",
    "Entity",
    "EntityCandidate",
    "EntitySnapshot",
    "EntityType",
    "ExternalAccount",
    "ExternalContactRecord",
    "Identifier",
    "IdentifierKind",
    "MatchReason",
    "MergeFailure",
    "MergeOutcome",
    "MergeSkipped",
    "MergeSuccess",
    "NormalizedContact",
    "utcnow",
]
