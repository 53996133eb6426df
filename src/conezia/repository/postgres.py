from __future__ import annotations

import contextlib
from collections import defaultdict
from typing import Any, Dict, Iterator, List, Mapping, Sequence
from uuid import UUID, uuid4

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Json

from ..config import DedupSettings, get_settings
from ..errors import MergeConflictError, NotFoundError, StorageError
from ..logging import get_logger
from ..models import Entity, EntitySnapshot, Identifier
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

logger = get_logger("repository.postgres")

_ENTITY_COLUMNS = """
    id, owner_id, name, type, description, avatar_url, metadata,
    last_interaction_at, archived_at, is_self, inserted_at AS created_at
"""

_IDENTIFIER_COLUMNS = """
    id, entity_id, type, value_hash, value_encrypted, label, is_primary,
    archived_at, inserted_at AS created_at
"""


@contextlib.contextmanager
def translate_errors() -> Iterator[None]:
    """Re-raise driver errors as engine errors."""
    try:
        yield
    except psycopg.errors.QueryCanceled as exc:
        raise StorageError(f"statement timed out: {exc}") from exc
    except (psycopg.IntegrityError, psycopg.DataError) as exc:
        raise MergeConflictError(str(exc).strip()) from exc
    except (psycopg.OperationalError, psycopg.InterfaceError) as exc:
        raise StorageError(str(exc).strip()) from exc


def _entity_from_row(row: Dict[str, Any]) -> Entity:
    row = dict(row)
    row["metadata"] = row.get("metadata") or {}
    row["is_self"] = bool(row.get("is_self"))
    return Entity(**row)


def _identifier_from_row(row: Dict[str, Any]) -> Identifier:
    row = dict(row)
    if row.get("value_encrypted") is not None:
        row["value_encrypted"] = bytes(row["value_encrypted"])
    return Identifier(**row)


class PostgresSession:
    def __init__(self, cur: psycopg.Cursor) -> None:
        self.cur = cur

    def lock_entities(self, owner_id: UUID, entity_ids: Sequence[UUID]) -> Dict[UUID, Entity]:
        self.cur.execute(
            f"""
            SELECT {_ENTITY_COLUMNS}
            FROM entities
            WHERE owner_id = %s AND id = ANY(%s)
            ORDER BY id
            FOR UPDATE
            """,
            (owner_id, list(entity_ids)),
        )
        return {row["id"]: _entity_from_row(row) for row in self.cur.fetchall()}

    def count_dependents(self, entity_ids: Sequence[UUID]) -> Dict[RecordKind, int]:
        ids = list(entity_ids)
        counts: Dict[RecordKind, int] = {}
        for kind in RecordKind:
            if kind is RecordKind.ENTITY_RELATIONSHIPS:
                self.cur.execute(
                    """
                    SELECT COUNT(*) AS n FROM entity_relationships
                    WHERE source_entity_id = ANY(%s) OR target_entity_id = ANY(%s)
                    """,
                    (ids, ids),
                )
            else:
                self.cur.execute(
                    sql.SQL("SELECT COUNT(*) AS n FROM {} WHERE entity_id = ANY(%s)").format(
                        sql.Identifier(kind.table)
                    ),
                    (ids,),
                )
            counts[kind] = self.cur.fetchone()["n"]
        return counts

    def list_identifiers(self, entity_ids: Sequence[UUID]) -> List[Identifier]:
        self.cur.execute(
            f"""
            SELECT {_IDENTIFIER_COLUMNS}
            FROM identifiers
            WHERE entity_id = ANY(%s)
            ORDER BY inserted_at, id
            """,
            (list(entity_ids),),
        )
        return [_identifier_from_row(row) for row in self.cur.fetchall()]

    def move_identifier(self, identifier_id: UUID, entity_id: UUID, *, is_primary: bool) -> None:
        self.cur.execute(
            "UPDATE identifiers SET entity_id = %s, is_primary = %s, updated_at = NOW() WHERE id = %s",
            (entity_id, is_primary, identifier_id),
        )

    def delete_identifier(self, identifier_id: UUID) -> None:
        self.cur.execute("DELETE FROM identifiers WHERE id = %s", (identifier_id,))

    def list_relationships(self, entity_ids: Sequence[UUID]) -> List[RelationshipRow]:
        self.cur.execute(
            """
            SELECT id, entity_id, type, strength, started_at, notes
            FROM relationships
            WHERE entity_id = ANY(%s)
            ORDER BY inserted_at, id
            """,
            (list(entity_ids),),
        )
        return [
            RelationshipRow(
                id=row["id"],
                entity_id=row["entity_id"],
                fields={name: row[name] for name in RELATIONSHIP_FIELDS},
            )
            for row in self.cur.fetchall()
        ]

    def move_relationship(self, relationship_id: UUID, entity_id: UUID) -> None:
        self.cur.execute(
            "UPDATE relationships SET entity_id = %s, updated_at = NOW() WHERE id = %s",
            (entity_id, relationship_id),
        )

    def delete_relationship(self, relationship_id: UUID) -> None:
        self.cur.execute("DELETE FROM relationships WHERE id = %s", (relationship_id,))

    def update_relationship(self, relationship_id: UUID, values: Mapping[str, Any]) -> None:
        self._update_columns("relationships", RELATIONSHIP_FIELDS, relationship_id, values)

    def list_links(self, entity_ids: Sequence[UUID]) -> List[EntityLink]:
        ids = list(entity_ids)
        self.cur.execute(
            """
            SELECT id, source_entity_id, target_entity_id, type, subtype, custom_label, notes
            FROM entity_relationships
            WHERE source_entity_id = ANY(%s) OR target_entity_id = ANY(%s)
            ORDER BY inserted_at, id
            """,
            (ids, ids),
        )
        return [
            EntityLink(
                id=row["id"],
                source_entity_id=row["source_entity_id"],
                target_entity_id=row["target_entity_id"],
                fields={name: row[name] for name in LINK_FIELDS},
            )
            for row in self.cur.fetchall()
        ]

    def update_link(self, link_id: UUID, source_entity_id: UUID, target_entity_id: UUID) -> None:
        self.cur.execute(
            """
            UPDATE entity_relationships
            SET source_entity_id = %s, target_entity_id = %s, updated_at = NOW()
            WHERE id = %s
            """,
            (source_entity_id, target_entity_id, link_id),
        )

    def update_link_fields(self, link_id: UUID, values: Mapping[str, Any]) -> None:
        self._update_columns("entity_relationships", LINK_FIELDS, link_id, values)

    def delete_link(self, link_id: UUID) -> None:
        self.cur.execute("DELETE FROM entity_relationships WHERE id = %s", (link_id,))

    def _update_columns(self, table: str, allowed: Sequence[str], row_id: UUID, values: Mapping[str, Any]) -> None:
        unknown = set(values) - set(allowed)
        if unknown:
            raise ValueError(f"not a {table} column: {', '.join(sorted(unknown))}")
        if not values:
            return
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(name)) for name in values
        )
        self.cur.execute(
            sql.SQL("UPDATE {} SET {}, updated_at = NOW() WHERE id = %s").format(sql.Identifier(table), assignments),
            (*values.values(), row_id),
        )

    def list_memberships(self, kind: RecordKind, entity_ids: Sequence[UUID]) -> List[Membership]:
        query = sql.SQL("SELECT entity_id, {ref} AS ref_id FROM {table} WHERE entity_id = ANY(%s) ORDER BY 1, 2").format(
            ref=sql.Identifier(MEMBERSHIP_KINDS[kind]),
            table=sql.Identifier(kind.table),
        )
        self.cur.execute(query, (list(entity_ids),))
        return [Membership(entity_id=row["entity_id"], ref_id=row["ref_id"]) for row in self.cur.fetchall()]

    def move_membership(self, kind: RecordKind, membership: Membership, entity_id: UUID) -> None:
        query = sql.SQL("UPDATE {table} SET entity_id = %s WHERE entity_id = %s AND {ref} = %s").format(
            ref=sql.Identifier(MEMBERSHIP_KINDS[kind]),
            table=sql.Identifier(kind.table),
        )
        self.cur.execute(query, (entity_id, membership.entity_id, membership.ref_id))

    def delete_membership(self, kind: RecordKind, membership: Membership) -> None:
        query = sql.SQL("DELETE FROM {table} WHERE entity_id = %s AND {ref} = %s").format(
            ref=sql.Identifier(MEMBERSHIP_KINDS[kind]),
            table=sql.Identifier(kind.table),
        )
        self.cur.execute(query, (membership.entity_id, membership.ref_id))

    def reparent(self, kind: RecordKind, from_ids: Sequence[UUID], to_id: UUID) -> int:
        if kind not in REPARENT_KINDS:
            raise ValueError(f"{kind.table} is not a plain foreign-key table")
        self.cur.execute(
            sql.SQL("UPDATE {} SET entity_id = %s WHERE entity_id = ANY(%s)").format(sql.Identifier(kind.table)),
            (to_id, list(from_ids)),
        )
        return self.cur.rowcount

    def delete_entities(self, owner_id: UUID, entity_ids: Sequence[UUID]) -> int:
        self.cur.execute(
            "DELETE FROM entities WHERE owner_id = %s AND id = ANY(%s)",
            (owner_id, list(entity_ids)),
        )
        return self.cur.rowcount

    def record_activity(self, owner_id: UUID, action: str, resource_id: UUID, metadata: Dict[str, Any]) -> None:
        self.cur.execute(
            """
            INSERT INTO activity_logs (id, user_id, action, resource_type, resource_id, metadata, inserted_at)
            VALUES (%s, %s, %s, 'entity', %s, %s, NOW())
            """,
            (uuid4(), owner_id, action, resource_id, Json(metadata)),
        )


class PostgresEntityStore:
    """Entity storage on Postgres; one connection per transaction."""

    def __init__(self, conn_str: str, *, statement_timeout_ms: int = 0) -> None:
        self.conn_str = conn_str
        self.statement_timeout_ms = statement_timeout_ms

    @classmethod
    def from_settings(cls, settings: DedupSettings | None = None) -> "PostgresEntityStore":
        settings = settings or get_settings()
        return cls(settings.database_url, statement_timeout_ms=settings.statement_timeout_ms)

    def _connect(self) -> psycopg.Connection:
        with translate_errors():
            return psycopg.connect(self.conn_str, autocommit=True, row_factory=dict_row)

    @contextlib.contextmanager
    def transaction(self) -> Iterator[PostgresSession]:
        conn = self._connect()
        try:
            with translate_errors():
                with conn.transaction():
                    with conn.cursor() as cur:
                        if self.statement_timeout_ms:
                            # Scoped to this transaction only
                            cur.execute(
                                "SELECT set_config('statement_timeout', %s, true)",
                                (str(self.statement_timeout_ms),),
                            )
                        yield PostgresSession(cur)
        finally:
            conn.close()

    @contextlib.contextmanager
    def _cursor(self) -> Iterator[psycopg.Cursor]:
        conn = self._connect()
        try:
            with translate_errors():
                with conn.cursor() as cur:
                    yield cur
        finally:
            conn.close()

    def list_owner_ids(self) -> List[UUID]:
        with self._cursor() as cur:
            cur.execute("SELECT id FROM users ORDER BY inserted_at, id")
            return [row["id"] for row in cur.fetchall()]

    def resolve_owner(self, selector: str) -> UUID:
        with self._cursor() as cur:
            try:
                owner_id = UUID(selector)
            except ValueError:
                cur.execute("SELECT id FROM users WHERE lower(email) = lower(%s)", (selector.strip(),))
            else:
                cur.execute("SELECT id FROM users WHERE id = %s", (owner_id,))
            row = cur.fetchone()
        if not row:
            raise NotFoundError(f"user not found: {selector}")
        return row["id"]

    def owner_exists(self, owner_id: UUID) -> bool:
        with self._cursor() as cur:
            cur.execute("SELECT 1 FROM users WHERE id = %s", (owner_id,))
            return cur.fetchone() is not None

    def load_snapshots(self, owner_id: UUID) -> List[EntitySnapshot]:
        with self._cursor() as cur:
            cur.execute(
                f"""
                SELECT {_ENTITY_COLUMNS}
                FROM entities
                WHERE owner_id = %s AND archived_at IS NULL
                ORDER BY inserted_at, id
                """,
                (owner_id,),
            )
            entities = [_entity_from_row(row) for row in cur.fetchall()]
            if not entities:
                return []
            ids = [entity.id for entity in entities]

            cur.execute(
                f"""
                SELECT {_IDENTIFIER_COLUMNS}
                FROM identifiers
                WHERE entity_id = ANY(%s) AND archived_at IS NULL
                ORDER BY inserted_at, id
                """,
                (ids,),
            )
            identifiers: Dict[UUID, List[Identifier]] = defaultdict(list)
            for row in cur.fetchall():
                identifier = _identifier_from_row(row)
                identifiers[identifier.entity_id].append(identifier)

            cur.execute(
                """
                SELECT entity_id, service_name, account_identifier
                FROM external_accounts
                WHERE entity_id = ANY(%s)
                """,
                (ids,),
            )
            external_ids: Dict[UUID, set] = defaultdict(set)
            for row in cur.fetchall():
                external_ids[row["entity_id"]].add((row["service_name"], row["account_identifier"]))

            dependents: Dict[UUID, int] = defaultdict(int)
            for kind in RecordKind:
                if kind is RecordKind.ENTITY_RELATIONSHIPS:
                    cur.execute(
                        """
                        SELECT ref AS entity_id, COUNT(*) AS n FROM (
                            SELECT source_entity_id AS ref FROM entity_relationships
                            UNION ALL
                            SELECT target_entity_id AS ref FROM entity_relationships
                        ) AS links
                        WHERE ref = ANY(%s)
                        GROUP BY ref
                        """,
                        (ids,),
                    )
                else:
                    cur.execute(
                        sql.SQL(
                            "SELECT entity_id, COUNT(*) AS n FROM {} WHERE entity_id = ANY(%s) GROUP BY entity_id"
                        ).format(sql.Identifier(kind.table)),
                        (ids,),
                    )
                for row in cur.fetchall():
                    dependents[row["entity_id"]] += row["n"]

        logger.debug("snapshots_loaded", owner_id=str(owner_id), entities=len(entities))
        return [
            EntitySnapshot(
                entity=entity,
                identifiers=tuple(identifiers.get(entity.id, ())),
                external_ids=frozenset(external_ids.get(entity.id, ())),
                dependent_count=dependents.get(entity.id, 0),
            )
            for entity in entities
        ]


__all__ = ["PostgresEntityStore", "PostgresSession", "translate_errors"]
