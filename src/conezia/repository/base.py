from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ContextManager, Dict, List, Mapping, Protocol, Sequence
from uuid import UUID

from ..models import Entity, EntitySnapshot, Identifier


class RecordKind(str, Enum):
    """Every table holding rows that belong to an entity."""

    IDENTIFIERS = "identifiers"
    RELATIONSHIPS = "relationships"
    ENTITY_RELATIONSHIPS = "entity_relationships"
    INTERACTIONS = "interactions"
    CONVERSATIONS = "conversations"
    COMMUNICATIONS = "communications"
    REMINDERS = "reminders"
    GIFTS = "gifts"
    ATTACHMENTS = "attachments"
    EXTERNAL_ACCOUNTS = "external_accounts"
    TAG_MEMBERSHIPS = "entity_tags"
    GROUP_MEMBERSHIPS = "entity_groups"
    EVENT_MEMBERSHIPS = "event_entities"

    @property
    def table(self) -> str:
        return self.value


# Tables whose rows simply follow their entity_id.
REPARENT_KINDS: tuple[RecordKind, ...] = (
    RecordKind.INTERACTIONS,
    RecordKind.CONVERSATIONS,
    RecordKind.COMMUNICATIONS,
    RecordKind.REMINDERS,
    RecordKind.GIFTS,
    RecordKind.ATTACHMENTS,
    RecordKind.EXTERNAL_ACCOUNTS,
)

# Join tables: kind -> referenced column. Unique per (entity_id, ref).
MEMBERSHIP_KINDS: Mapping[RecordKind, str] = {
    RecordKind.TAG_MEMBERSHIPS: "tag_id",
    RecordKind.GROUP_MEMBERSHIPS: "group_id",
    RecordKind.EVENT_MEMBERSHIPS: "event_id",
}


# Descriptive columns filled from a collapsed row when the kept row lacks them.
RELATIONSHIP_FIELDS: tuple[str, ...] = ("type", "strength", "started_at", "notes")
LINK_FIELDS: tuple[str, ...] = ("type", "subtype", "custom_label", "notes")


@dataclass(slots=True, frozen=True)
class RelationshipRow:
    id: UUID
    entity_id: UUID
    fields: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class EntityLink:
    id: UUID
    source_entity_id: UUID
    target_entity_id: UUID
    fields: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class Membership:
    entity_id: UUID
    ref_id: UUID


class MergeSession(Protocol):
    """Primitive row operations inside one all-or-nothing transaction."""

    def lock_entities(self, owner_id: UUID, entity_ids: Sequence[UUID]) -> Dict[UUID, Entity]:
        ...

    def count_dependents(self, entity_ids: Sequence[UUID]) -> Dict[RecordKind, int]:
        ...

    def list_identifiers(self, entity_ids: Sequence[UUID]) -> List[Identifier]:
        ...

    def move_identifier(self, identifier_id: UUID, entity_id: UUID, *, is_primary: bool) -> None:
        ...

    def delete_identifier(self, identifier_id: UUID) -> None:
        ...

    def list_relationships(self, entity_ids: Sequence[UUID]) -> List[RelationshipRow]:
        ...

    def move_relationship(self, relationship_id: UUID, entity_id: UUID) -> None:
        ...

    def delete_relationship(self, relationship_id: UUID) -> None:
        ...

    def update_relationship(self, relationship_id: UUID, values: Mapping[str, Any]) -> None:
        ...

    def list_links(self, entity_ids: Sequence[UUID]) -> List[EntityLink]:
        ...

    def update_link(self, link_id: UUID, source_entity_id: UUID, target_entity_id: UUID) -> None:
        ...

    def update_link_fields(self, link_id: UUID, values: Mapping[str, Any]) -> None:
        ...

    def delete_link(self, link_id: UUID) -> None:
        ...

    def list_memberships(self, kind: RecordKind, entity_ids: Sequence[UUID]) -> List[Membership]:
        ...

    def move_membership(self, kind: RecordKind, membership: Membership, entity_id: UUID) -> None:
        ...

    def delete_membership(self, kind: RecordKind, membership: Membership) -> None:
        ...

    def reparent(self, kind: RecordKind, from_ids: Sequence[UUID], to_id: UUID) -> int:
        ...

    def delete_entities(self, owner_id: UUID, entity_ids: Sequence[UUID]) -> int:
        ...

    def record_activity(self, owner_id: UUID, action: str, resource_id: UUID, metadata: Dict[str, Any]) -> None:
        ...


class EntityStore(Protocol):
    def list_owner_ids(self) -> List[UUID]:
        ...

    def resolve_owner(self, selector: str) -> UUID:
        """Return the owner id for an email address or UUID string."""
        ...

    def owner_exists(self, owner_id: UUID) -> bool:
        ...

    def load_snapshots(self, owner_id: UUID) -> List[EntitySnapshot]:
        ...

    def transaction(self) -> ContextManager[MergeSession]:
        ...


def total_records(counts: Mapping[RecordKind, int]) -> int:
    return sum(counts.values())


__all__ = [
    "EntityLink",
    "EntityStore",
    "LINK_FIELDS",
    "MEMBERSHIP_KINDS",
    "Membership",
    "MergeSession",
    "RELATIONSHIP_FIELDS",
    "REPARENT_KINDS",
    "RecordKind",
    "RelationshipRow",
    "total_records",
]
