"""In-process entity store with all-or-nothing transactions.

Mirrors the constraints of ``schema.sql`` (foreign keys with RESTRICT,
unique memberships, one relationship per entity, one primary identifier per
type) so merge behaviour can be exercised without a database server.
"""

from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Sequence, Set, Tuple
from uuid import UUID, uuid4

from ..errors import MergeConflictError, NotFoundError
from ..models import Entity, EntitySnapshot, ExternalAccount, Identifier, utcnow
from .base import (
    LINK_FIELDS,
    MEMBERSHIP_KINDS,
    RELATIONSHIP_FIELDS,
    REPARENT_KINDS,
    EntityLink,
    Membership,
    RecordKind,
    RelationshipRow,
)


@dataclass(slots=True)
class _Tables:
    users: Dict[UUID, str] = field(default_factory=dict)
    entities: Dict[UUID, Entity] = field(default_factory=dict)
    identifiers: Dict[UUID, Identifier] = field(default_factory=dict)
    external_accounts: Dict[UUID, ExternalAccount] = field(default_factory=dict)
    # relationships and plain reparent tables: kind -> row id -> row
    rows: Dict[RecordKind, Dict[UUID, Dict[str, Any]]] = field(default_factory=dict)
    links: Dict[UUID, Dict[str, Any]] = field(default_factory=dict)
    memberships: Dict[RecordKind, Set[Tuple[UUID, UUID]]] = field(default_factory=dict)
    activity_logs: List[Dict[str, Any]] = field(default_factory=list)

    def table(self, kind: RecordKind) -> Dict[UUID, Dict[str, Any]]:
        return self.rows.setdefault(kind, {})

    def members(self, kind: RecordKind) -> Set[Tuple[UUID, UUID]]:
        return self.memberships.setdefault(kind, set())


class MemorySession:
    def __init__(self, tables: _Tables) -> None:
        self._t = tables

    def _require_entity(self, entity_id: UUID) -> Entity:
        entity = self._t.entities.get(entity_id)
        if entity is None:
            raise MergeConflictError(f"foreign key violation: entity {entity_id} does not exist")
        return entity

    # -- entities ---------------------------------------------------------

    def lock_entities(self, owner_id: UUID, entity_ids: Sequence[UUID]) -> Dict[UUID, Entity]:
        return {
            entity_id: self._t.entities[entity_id]
            for entity_id in entity_ids
            if entity_id in self._t.entities and self._t.entities[entity_id].owner_id == owner_id
        }

    def delete_entities(self, owner_id: UUID, entity_ids: Sequence[UUID]) -> int:
        doomed = set(entity_ids)
        if self._counts(doomed, include_identifiers=True):
            raise MergeConflictError("foreign key violation: entity still referenced by dependent rows")
        deleted = 0
        for entity_id in doomed:
            entity = self._t.entities.get(entity_id)
            if entity is not None and entity.owner_id == owner_id:
                del self._t.entities[entity_id]
                deleted += 1
        return deleted

    # -- counting ---------------------------------------------------------

    def _counts(self, ids: Set[UUID], *, include_identifiers: bool = True) -> Dict[RecordKind, int]:
        counts: Dict[RecordKind, int] = {}
        if include_identifiers:
            counts[RecordKind.IDENTIFIERS] = sum(1 for i in self._t.identifiers.values() if i.entity_id in ids)
        counts[RecordKind.RELATIONSHIPS] = sum(
            1 for row in self._t.table(RecordKind.RELATIONSHIPS).values() if row["entity_id"] in ids
        )
        counts[RecordKind.ENTITY_RELATIONSHIPS] = sum(
            1
            for link in self._t.links.values()
            if link["source_entity_id"] in ids or link["target_entity_id"] in ids
        )
        for kind in REPARENT_KINDS:
            if kind is RecordKind.EXTERNAL_ACCOUNTS:
                counts[kind] = sum(1 for acct in self._t.external_accounts.values() if acct.entity_id in ids)
            else:
                counts[kind] = sum(1 for row in self._t.table(kind).values() if row["entity_id"] in ids)
        for kind in MEMBERSHIP_KINDS:
            counts[kind] = sum(1 for entity_id, _ in self._t.members(kind) if entity_id in ids)
        return {kind: count for kind, count in counts.items() if count}

    def count_dependents(self, entity_ids: Sequence[UUID]) -> Dict[RecordKind, int]:
        counts = self._counts(set(entity_ids))
        return {kind: counts.get(kind, 0) for kind in RecordKind}

    # -- identifiers ------------------------------------------------------

    def list_identifiers(self, entity_ids: Sequence[UUID]) -> List[Identifier]:
        ids = set(entity_ids)
        found = [i for i in self._t.identifiers.values() if i.entity_id in ids]
        return sorted(found, key=lambda i: (i.created_at, str(i.id)))

    def move_identifier(self, identifier_id: UUID, entity_id: UUID, *, is_primary: bool) -> None:
        self._require_entity(entity_id)
        identifier = self._t.identifiers[identifier_id]
        for other in self._t.identifiers.values():
            if other.id == identifier_id or other.entity_id != entity_id or other.type != identifier.type:
                continue
            if other.archived_at is None and identifier.archived_at is None and other.value_hash == identifier.value_hash:
                raise MergeConflictError(
                    f"unique violation: identifier ({identifier.type}, {identifier.value_hash}) already on {entity_id}"
                )
            if is_primary and other.is_primary:
                raise MergeConflictError(f"unique violation: primary {identifier.type} already on {entity_id}")
        identifier.entity_id = entity_id
        identifier.is_primary = is_primary

    def delete_identifier(self, identifier_id: UUID) -> None:
        self._t.identifiers.pop(identifier_id, None)

    # -- relationships ----------------------------------------------------

    def list_relationships(self, entity_ids: Sequence[UUID]) -> List[RelationshipRow]:
        ids = set(entity_ids)
        return [
            RelationshipRow(
                id=row_id,
                entity_id=row["entity_id"],
                fields={name: row.get(name) for name in RELATIONSHIP_FIELDS},
            )
            for row_id, row in self._t.table(RecordKind.RELATIONSHIPS).items()
            if row["entity_id"] in ids
        ]

    def move_relationship(self, relationship_id: UUID, entity_id: UUID) -> None:
        target = self._require_entity(entity_id)
        table = self._t.table(RecordKind.RELATIONSHIPS)
        row = table[relationship_id]
        for other_id, other in table.items():
            if other_id != relationship_id and other["entity_id"] == entity_id and other["user_id"] == row["user_id"]:
                raise MergeConflictError(f"unique violation: relationship already exists for {target.id}")
        row["entity_id"] = entity_id

    def delete_relationship(self, relationship_id: UUID) -> None:
        self._t.table(RecordKind.RELATIONSHIPS).pop(relationship_id, None)

    def update_relationship(self, relationship_id: UUID, values: Mapping[str, Any]) -> None:
        unknown = set(values) - set(RELATIONSHIP_FIELDS)
        if unknown:
            raise ValueError(f"not a relationship column: {', '.join(sorted(unknown))}")
        self._t.table(RecordKind.RELATIONSHIPS)[relationship_id].update(values)

    def list_links(self, entity_ids: Sequence[UUID]) -> List[EntityLink]:
        ids = set(entity_ids)
        return [
            EntityLink(
                id=link_id,
                source_entity_id=link["source_entity_id"],
                target_entity_id=link["target_entity_id"],
                fields={name: link.get(name) for name in LINK_FIELDS},
            )
            for link_id, link in self._t.links.items()
            if link["source_entity_id"] in ids or link["target_entity_id"] in ids
        ]

    def update_link(self, link_id: UUID, source_entity_id: UUID, target_entity_id: UUID) -> None:
        self._require_entity(source_entity_id)
        self._require_entity(target_entity_id)
        if source_entity_id == target_entity_id:
            raise MergeConflictError("check violation: entity relationship cannot reference itself")
        link = self._t.links[link_id]
        for other_id, other in self._t.links.items():
            if (
                other_id != link_id
                and other["user_id"] == link["user_id"]
                and other["source_entity_id"] == source_entity_id
                and other["target_entity_id"] == target_entity_id
            ):
                raise MergeConflictError("unique violation: entity relationship already exists")
        link["source_entity_id"] = source_entity_id
        link["target_entity_id"] = target_entity_id

    def update_link_fields(self, link_id: UUID, values: Mapping[str, Any]) -> None:
        unknown = set(values) - set(LINK_FIELDS)
        if unknown:
            raise ValueError(f"not an entity relationship column: {', '.join(sorted(unknown))}")
        self._t.links[link_id].update(values)

    def delete_link(self, link_id: UUID) -> None:
        self._t.links.pop(link_id, None)

    # -- memberships ------------------------------------------------------

    def list_memberships(self, kind: RecordKind, entity_ids: Sequence[UUID]) -> List[Membership]:
        ids = set(entity_ids)
        members = [Membership(entity_id=e, ref_id=r) for e, r in self._t.members(kind) if e in ids]
        return sorted(members, key=lambda m: (str(m.entity_id), str(m.ref_id)))

    def move_membership(self, kind: RecordKind, membership: Membership, entity_id: UUID) -> None:
        self._require_entity(entity_id)
        members = self._t.members(kind)
        if (entity_id, membership.ref_id) in members:
            raise MergeConflictError(f"unique violation: {kind.table} membership already exists")
        members.discard((membership.entity_id, membership.ref_id))
        members.add((entity_id, membership.ref_id))

    def delete_membership(self, kind: RecordKind, membership: Membership) -> None:
        self._t.members(kind).discard((membership.entity_id, membership.ref_id))

    # -- plain foreign keys -----------------------------------------------

    def reparent(self, kind: RecordKind, from_ids: Sequence[UUID], to_id: UUID) -> int:
        self._require_entity(to_id)
        sources = set(from_ids)
        moved = 0
        if kind is RecordKind.EXTERNAL_ACCOUNTS:
            for account in self._t.external_accounts.values():
                if account.entity_id in sources:
                    account.entity_id = to_id
                    moved += 1
            return moved
        for row in self._t.table(kind).values():
            if row["entity_id"] in sources:
                row["entity_id"] = to_id
                moved += 1
        return moved

    def record_activity(self, owner_id: UUID, action: str, resource_id: UUID, metadata: Dict[str, Any]) -> None:
        self._t.activity_logs.append(
            {
                "id": uuid4(),
                "user_id": owner_id,
                "action": action,
                "resource_type": "entity",
                "resource_id": resource_id,
                "metadata": dict(metadata),
                "inserted_at": utcnow(),
            }
        )


class MemoryEntityStore:
    def __init__(self) -> None:
        self._tables = _Tables()
        self._lock = threading.RLock()

    # -- EntityStore ------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[MemorySession]:
        with self._lock:
            checkpoint = copy.deepcopy(self._tables)
            try:
                yield MemorySession(self._tables)
            except BaseException:
                self._tables = checkpoint
                raise

    def list_owner_ids(self) -> List[UUID]:
        with self._lock:
            return list(self._tables.users)

    def resolve_owner(self, selector: str) -> UUID:
        with self._lock:
            try:
                owner_id = UUID(selector)
            except ValueError:
                wanted = selector.strip().lower()
                for user_id, email in self._tables.users.items():
                    if email.lower() == wanted:
                        return user_id
                raise NotFoundError(f"user not found: {selector}") from None
            if owner_id not in self._tables.users:
                raise NotFoundError(f"user not found: {selector}")
            return owner_id

    def owner_exists(self, owner_id: UUID) -> bool:
        with self._lock:
            return owner_id in self._tables.users

    def load_snapshots(self, owner_id: UUID) -> List[EntitySnapshot]:
        with self._lock:
            session = MemorySession(self._tables)
            snapshots: List[EntitySnapshot] = []
            for entity in self._tables.entities.values():
                if entity.owner_id != owner_id or entity.archived_at is not None:
                    continue
                identifiers = tuple(
                    copy.copy(i)
                    for i in session.list_identifiers([entity.id])
                    if i.archived_at is None
                )
                external_ids = frozenset(
                    (acct.service_name, acct.account_identifier)
                    for acct in self._tables.external_accounts.values()
                    if acct.entity_id == entity.id
                )
                snapshots.append(
                    EntitySnapshot(
                        entity=copy.deepcopy(entity),
                        identifiers=identifiers,
                        external_ids=external_ids,
                        dependent_count=sum(session.count_dependents([entity.id]).values()),
                    )
                )
            return snapshots

    # -- seeding and inspection ---------------------------------------------

    def add_user(self, email: str, owner_id: UUID | None = None) -> UUID:
        owner_id = owner_id or uuid4()
        with self._lock:
            self._tables.users[owner_id] = email
        return owner_id

    def add_entity(self, owner_id: UUID, name: str, **fields: Any) -> Entity:
        entity = Entity(id=fields.pop("id", None) or uuid4(), owner_id=owner_id, name=name, **fields)
        with self._lock:
            if owner_id not in self._tables.users:
                raise NotFoundError(f"user {owner_id} does not exist")
            self._tables.entities[entity.id] = entity
        return entity

    def add_identifier(self, entity_id: UUID, type: str, value_hash: str | None, **fields: Any) -> Identifier:
        identifier = Identifier(
            id=fields.pop("id", None) or uuid4(),
            entity_id=entity_id,
            type=type,
            value_hash=value_hash,
            **fields,
        )
        with self._lock:
            self._tables.identifiers[identifier.id] = identifier
        return identifier

    def add_external_account(self, entity_id: UUID, service_name: str, account_identifier: str) -> ExternalAccount:
        with self._lock:
            owner_id = self._tables.entities[entity_id].owner_id
            account = ExternalAccount(
                id=uuid4(),
                owner_id=owner_id,
                entity_id=entity_id,
                service_name=service_name,
                account_identifier=account_identifier,
            )
            self._tables.external_accounts[account.id] = account
        return account

    def add_record(self, kind: RecordKind, entity_id: UUID, **payload: Any) -> UUID:
        if kind not in REPARENT_KINDS and kind is not RecordKind.RELATIONSHIPS:
            raise ValueError(f"use the dedicated helper for {kind.table}")
        if kind is RecordKind.EXTERNAL_ACCOUNTS:
            raise ValueError("use add_external_account for external accounts")
        row_id = uuid4()
        with self._lock:
            owner_id = self._tables.entities[entity_id].owner_id
            self._tables.table(kind)[row_id] = {"id": row_id, "user_id": owner_id, "entity_id": entity_id, **payload}
        return row_id

    def add_link(self, source_entity_id: UUID, target_entity_id: UUID, **payload: Any) -> UUID:
        link_id = uuid4()
        with self._lock:
            owner_id = self._tables.entities[source_entity_id].owner_id
            self._tables.links[link_id] = {
                "id": link_id,
                "user_id": owner_id,
                "source_entity_id": source_entity_id,
                "target_entity_id": target_entity_id,
                **payload,
            }
        return link_id

    def add_membership(self, kind: RecordKind, entity_id: UUID, ref_id: UUID | None = None) -> UUID:
        if kind not in MEMBERSHIP_KINDS:
            raise ValueError(f"{kind.table} is not a membership table")
        ref_id = ref_id or uuid4()
        with self._lock:
            self._tables.members(kind).add((entity_id, ref_id))
        return ref_id

    def delete_entity(self, entity_id: UUID) -> None:
        """Ordinary CRUD delete: the entity and everything that cascades from it."""
        with self._lock:
            t = self._tables
            t.entities.pop(entity_id, None)
            t.identifiers = {k: v for k, v in t.identifiers.items() if v.entity_id != entity_id}
            for kind, table in t.rows.items():
                t.rows[kind] = {k: v for k, v in table.items() if v["entity_id"] != entity_id}
            t.links = {
                k: v
                for k, v in t.links.items()
                if entity_id not in (v["source_entity_id"], v["target_entity_id"])
            }
            for account in t.external_accounts.values():
                if account.entity_id == entity_id:
                    account.entity_id = None
            for kind, members in t.memberships.items():
                t.memberships[kind] = {(e, r) for e, r in members if e != entity_id}

    def get_entity(self, entity_id: UUID) -> Entity | None:
        with self._lock:
            return self._tables.entities.get(entity_id)

    def entity_count(self, owner_id: UUID) -> int:
        with self._lock:
            return sum(1 for e in self._tables.entities.values() if e.owner_id == owner_id)

    def dependent_counts(self, entity_ids: Sequence[UUID]) -> Dict[RecordKind, int]:
        with self._lock:
            return MemorySession(self._tables).count_dependents(entity_ids)

    def identifiers_for(self, entity_id: UUID) -> List[Identifier]:
        with self._lock:
            return MemorySession(self._tables).list_identifiers([entity_id])

    def records_for(self, kind: RecordKind, entity_id: UUID) -> List[UUID]:
        with self._lock:
            if kind is RecordKind.EXTERNAL_ACCOUNTS:
                return [a.id for a in self._tables.external_accounts.values() if a.entity_id == entity_id]
            if kind is RecordKind.ENTITY_RELATIONSHIPS:
                return [link.id for link in MemorySession(self._tables).list_links([entity_id])]
            if kind in MEMBERSHIP_KINDS:
                return [r for e, r in self._tables.members(kind) if e == entity_id]
            if kind is RecordKind.IDENTIFIERS:
                return [i.id for i in self._tables.identifiers.values() if i.entity_id == entity_id]
            return [row_id for row_id, row in self._tables.table(kind).items() if row["entity_id"] == entity_id]

    def get_row(self, kind: RecordKind, row_id: UUID) -> Dict[str, Any] | None:
        """Copy of one relationship, entity link or plain dependent row."""
        with self._lock:
            if kind is RecordKind.ENTITY_RELATIONSHIPS:
                row = self._tables.links.get(row_id)
            else:
                row = self._tables.table(kind).get(row_id)
            return dict(row) if row is not None else None

    @property
    def activity_logs(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._tables.activity_logs)


__all__ = ["MemoryEntityStore", "MemorySession"]
