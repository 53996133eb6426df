"""Fold duplicate entities into their cluster primary inside one transaction.

Every dependent row of every duplicate ends up on the primary, or is counted
as dropped (identifier already on the primary) or collapsed (membership,
relationship row or entity link already on the primary). A collapsed
relationship or link first fills the blank columns of the row that is kept.
Duplicates are deleted last. Any error rolls the whole cluster back.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Sequence, Set, Tuple
from uuid import UUID

from ..errors import ConeziaError, MergeConflictError, NotFoundError, StorageError
from ..logging import get_logger
from ..models import DuplicateCluster, MergeFailure, MergeOutcome, MergeSkipped, MergeSuccess
from ..repository.base import (
    MEMBERSHIP_KINDS,
    REPARENT_KINDS,
    EntityLink,
    EntityStore,
    MergeSession,
    RecordKind,
    total_records,
)

logger = get_logger("dedup.merge")

MERGE_ACTION = "merge"


def _fill_missing(values: Dict[str, Any], incoming: Mapping[str, Any]) -> Dict[str, Any]:
    """Copy ``incoming`` columns into ``values`` where it has none; return what was copied."""
    filled: Dict[str, Any] = {}
    for name, value in incoming.items():
        if value not in (None, "") and values.get(name) in (None, ""):
            values[name] = value
            filled[name] = value
    return filled


class MergeExecutor:
    def __init__(self, store: EntityStore) -> None:
        self.store = store

    def merge(self, cluster: DuplicateCluster) -> MergeOutcome:
        """Merge ``cluster`` atomically.

        Per-cluster problems come back as :class:`MergeFailure` or
        :class:`MergeSkipped`. Only :class:`StorageError` propagates, since it
        says nothing about this cluster in particular.
        """
        log = logger.bind(owner_id=str(cluster.owner_id), cluster_primary_id=str(cluster.primary.id))
        try:
            with self.store.transaction() as session:
                outcome = self._merge(session, cluster)
        except StorageError:
            log.error("merge_cluster_storage_error", duplicates=len(cluster.duplicates), exc_info=True)
            raise
        except ConeziaError as exc:
            log.warning(
                "merge_cluster_failed",
                error_kind=exc.kind,
                reason=str(exc),
                duplicate_ids=[str(d) for d in cluster.duplicate_ids],
            )
            return MergeFailure(cluster=cluster, error_kind=exc.kind, reason=str(exc))

        if isinstance(outcome, MergeSkipped):
            log.info("merge_cluster_skipped", reason=outcome.reason)
        else:
            log.info(
                "merge_cluster_completed",
                duplicates_removed=outcome.duplicates_removed,
                identifiers_dropped=outcome.identifiers_dropped,
                memberships_collapsed=outcome.memberships_collapsed,
            )
        return outcome

    def _merge(self, session: MergeSession, cluster: DuplicateCluster) -> MergeOutcome:
        owner_id = cluster.owner_id
        primary_id = cluster.primary.id
        duplicate_ids = list(dict.fromkeys(d for d in cluster.duplicate_ids if d != primary_id))
        if not duplicate_ids:
            return MergeSkipped(cluster=cluster, reason="cluster has no duplicates")

        locked = session.lock_entities(owner_id, [primary_id, *duplicate_ids])
        primary = locked.get(primary_id)
        if primary is None:
            raise NotFoundError(f"primary entity {primary_id} no longer exists")
        missing = [d for d in duplicate_ids if d not in locked]
        if len(missing) == len(duplicate_ids):
            return MergeSkipped(cluster=cluster, reason="duplicates already merged")
        if missing:
            raise NotFoundError(f"duplicate entities no longer exist: {', '.join(map(str, missing))}")
        for duplicate_id in duplicate_ids:
            duplicate = locked[duplicate_id]
            if duplicate.type != primary.type:
                raise MergeConflictError(
                    f"entity {duplicate_id} is a {duplicate.type}, primary is a {primary.type}"
                )
            if duplicate.is_self:
                raise MergeConflictError(f"entity {duplicate_id} is the owner's own entity")

        all_ids = [primary_id, *duplicate_ids]
        before = session.count_dependents(all_ids)

        moved: Dict[str, int] = {}
        moved[RecordKind.IDENTIFIERS.value], identifiers_dropped = self._merge_identifiers(
            session, primary_id, duplicate_ids
        )
        moved[RecordKind.RELATIONSHIPS.value], relationships_collapsed = self._merge_relationships(
            session, primary_id, all_ids
        )
        moved[RecordKind.ENTITY_RELATIONSHIPS.value], links_collapsed = self._merge_links(session, primary_id, all_ids)

        memberships_collapsed = relationships_collapsed + links_collapsed
        for kind in MEMBERSHIP_KINDS:
            moved[kind.value], collapsed = self._merge_memberships(session, kind, primary_id, all_ids)
            memberships_collapsed += collapsed

        for kind in REPARENT_KINDS:
            moved[kind.value] = session.reparent(kind, duplicate_ids, primary_id)

        deleted = session.delete_entities(owner_id, duplicate_ids)
        if deleted != len(duplicate_ids):
            raise MergeConflictError(f"deleted {deleted} of {len(duplicate_ids)} duplicate entities")

        after = session.count_dependents([primary_id])
        expected = total_records(after) + identifiers_dropped + memberships_collapsed
        if total_records(before) != expected:
            raise MergeConflictError(
                f"dependent records not conserved: {total_records(before)} before, {expected} accounted for"
            )

        session.record_activity(
            owner_id,
            MERGE_ACTION,
            primary_id,
            {
                "merged_entity_ids": [str(d) for d in duplicate_ids],
                "match_reasons": list(cluster.match_reasons),
                "reparented": dict(moved),
                "identifiers_dropped": identifiers_dropped,
                "memberships_collapsed": memberships_collapsed,
            },
        )
        return MergeSuccess(
            cluster=cluster,
            reparented=moved,
            identifiers_dropped=identifiers_dropped,
            memberships_collapsed=memberships_collapsed,
        )

    @staticmethod
    def _merge_identifiers(
        session: MergeSession, primary_id: UUID, duplicate_ids: Sequence[UUID]
    ) -> Tuple[int, int]:
        identifiers = session.list_identifiers([primary_id, *duplicate_ids])
        on_primary = [i for i in identifiers if i.entity_id == primary_id]
        seen: Set[Tuple[str, str]] = {
            i.match_key for i in on_primary if i.match_key is not None and i.archived_at is None
        }
        primary_types = {i.type for i in on_primary if i.is_primary}

        moved = dropped = 0
        for identifier in identifiers:
            if identifier.entity_id == primary_id:
                continue
            key = identifier.match_key if identifier.archived_at is None else None
            if key is not None and key in seen:
                session.delete_identifier(identifier.id)
                dropped += 1
                continue
            keep_flag = identifier.is_primary and identifier.type not in primary_types
            session.move_identifier(identifier.id, primary_id, is_primary=keep_flag)
            if keep_flag:
                primary_types.add(identifier.type)
            if key is not None:
                seen.add(key)
            moved += 1
        return moved, dropped

    @staticmethod
    def _merge_relationships(session: MergeSession, primary_id: UUID, all_ids: Sequence[UUID]) -> Tuple[int, int]:
        rows = session.list_relationships(all_ids)
        if not rows:
            return 0, 0
        kept = next((row for row in rows if row.entity_id == primary_id), None)
        moved = collapsed = 0
        if kept is None:
            kept = rows[0]
            session.move_relationship(kept.id, primary_id)
            moved += 1

        values = dict(kept.fields)
        filled: Dict[str, Any] = {}
        for row in rows:
            if row.id == kept.id:
                continue
            filled.update(_fill_missing(values, row.fields))
            session.delete_relationship(row.id)
            collapsed += 1
        if filled:
            session.update_relationship(kept.id, filled)
        return moved, collapsed

    @staticmethod
    def _merge_links(session: MergeSession, primary_id: UUID, all_ids: Sequence[UUID]) -> Tuple[int, int]:
        members = set(all_ids)
        duplicates = members - {primary_id}
        # Links already on the primary win over incoming ones
        links = sorted(
            session.list_links(all_ids),
            key=lambda link: link.source_entity_id in duplicates or link.target_entity_id in duplicates,
        )

        kept: Dict[Tuple[UUID, UUID], EntityLink] = {}
        values: Dict[UUID, Dict[str, Any]] = {}
        filled: Dict[UUID, Dict[str, Any]] = {}
        doomed: List[UUID] = []
        rewrites: List[Tuple[UUID, UUID, UUID]] = []
        for link in links:
            source = primary_id if link.source_entity_id in members else link.source_entity_id
            target = primary_id if link.target_entity_id in members else link.target_entity_id
            if source == target:
                # Both ends were cluster members
                doomed.append(link.id)
                continue
            survivor = kept.get((source, target))
            if survivor is not None:
                filled.setdefault(survivor.id, {}).update(_fill_missing(values[survivor.id], link.fields))
                doomed.append(link.id)
                continue
            kept[(source, target)] = link
            values[link.id] = dict(link.fields)
            if (source, target) != (link.source_entity_id, link.target_entity_id):
                rewrites.append((link.id, source, target))

        for link_id in doomed:
            session.delete_link(link_id)
        for link_id, source, target in rewrites:
            session.update_link(link_id, source, target)
        for link_id, update in filled.items():
            if update:
                session.update_link_fields(link_id, update)
        return len(rewrites), len(doomed)

    @staticmethod
    def _merge_memberships(
        session: MergeSession, kind: RecordKind, primary_id: UUID, all_ids: Sequence[UUID]
    ) -> Tuple[int, int]:
        memberships = session.list_memberships(kind, all_ids)
        refs = {m.ref_id for m in memberships if m.entity_id == primary_id}
        moved = collapsed = 0
        for membership in memberships:
            if membership.entity_id == primary_id:
                continue
            if membership.ref_id in refs:
                session.delete_membership(kind, membership)
                collapsed += 1
            else:
                session.move_membership(kind, membership, primary_id)
                refs.add(membership.ref_id)
                moved += 1
        return moved, collapsed


__all__ = ["MERGE_ACTION", "MergeExecutor"]
