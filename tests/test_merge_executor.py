"""
Tests for merging duplicate clusters.

Covers:
- Re-parenting of every dependent record kind
- Identifier and membership dedup during re-parenting
- Collapsing of relationship rows and entity links onto the kept row
- Conservation of dependent records and entity counts
- Conflict, not-found and skip outcomes
- Rollback of partially applied merges
"""

import pytest

from conezia.dedup.merge import MergeExecutor
from conezia.errors import MergeConflictError, StorageError
from conezia.models import DuplicateCluster, MergeFailure, MergeSkipped, MergeSuccess
from conezia.repository.base import REPARENT_KINDS, RecordKind, total_records
from conezia.repository.memory import MemorySession


def _cluster(primary, *duplicates, reasons=("shared_email",)):
    return DuplicateCluster(primary=primary, duplicates=tuple(duplicates), match_reasons=reasons)


@pytest.fixture
def executor(store):
    return MergeExecutor(store)


@pytest.fixture
def populated(store, owner, seed_person):
    """John Smith (primary) and J Smith (duplicate) with one of every dependent kind."""
    primary = seed_person(owner, "John Smith", email="john@example.com")
    duplicate = seed_person(owner, "J Smith", email="john@example.com", phone="+15084109572")
    friend = seed_person(owner, "Ada Byron")

    store.add_record(RecordKind.RELATIONSHIPS, primary.id, type="friend")
    store.add_record(RecordKind.RELATIONSHIPS, duplicate.id, type="colleague")
    for kind in REPARENT_KINDS:
        if kind is RecordKind.EXTERNAL_ACCOUNTS:
            store.add_external_account(duplicate.id, "linkedin", "jsmith")
        else:
            store.add_record(kind, duplicate.id)
    store.add_record(RecordKind.INTERACTIONS, duplicate.id, title="lunch")
    store.add_link(duplicate.id, friend.id, type="knows")

    shared_tag = store.add_membership(RecordKind.TAG_MEMBERSHIPS, primary.id)
    store.add_membership(RecordKind.TAG_MEMBERSHIPS, duplicate.id, shared_tag)
    store.add_membership(RecordKind.TAG_MEMBERSHIPS, duplicate.id)
    store.add_membership(RecordKind.GROUP_MEMBERSHIPS, duplicate.id)
    store.add_membership(RecordKind.EVENT_MEMBERSHIPS, duplicate.id)

    return {"primary": primary, "duplicate": duplicate, "friend": friend}


class TestSuccessfulMerge:
    def test_dependent_records_are_conserved(self, store, executor, populated):
        primary, duplicate = populated["primary"], populated["duplicate"]
        before = total_records(store.dependent_counts([primary.id, duplicate.id]))

        outcome = executor.merge(_cluster(primary, duplicate))

        assert isinstance(outcome, MergeSuccess)
        after = total_records(store.dependent_counts([primary.id]))
        assert before == after + outcome.identifiers_dropped + outcome.memberships_collapsed
        assert outcome.identifiers_dropped == 1
        # shared tag plus the second relationship row
        assert outcome.memberships_collapsed == 2

    def test_duplicates_are_deleted(self, store, owner, executor, populated):
        before = store.entity_count(owner)

        outcome = executor.merge(_cluster(populated["primary"], populated["duplicate"]))

        assert store.entity_count(owner) == before - outcome.duplicates_removed == before - 1
        assert store.get_entity(populated["duplicate"].id) is None
        assert store.get_entity(populated["primary"].id) is not None

    def test_every_record_kind_points_at_primary(self, store, executor, populated):
        primary, duplicate = populated["primary"], populated["duplicate"]

        outcome = executor.merge(_cluster(primary, duplicate))

        for kind in REPARENT_KINDS:
            assert store.records_for(kind, duplicate.id) == []
            assert store.records_for(kind, primary.id), kind
        assert len(store.records_for(RecordKind.INTERACTIONS, primary.id)) == 2
        assert outcome.reparented["interactions"] == 2
        assert len(store.records_for(RecordKind.TAG_MEMBERSHIPS, primary.id)) == 2
        assert len(store.records_for(RecordKind.GROUP_MEMBERSHIPS, primary.id)) == 1
        assert len(store.records_for(RecordKind.EVENT_MEMBERSHIPS, primary.id)) == 1
        assert len(store.records_for(RecordKind.RELATIONSHIPS, primary.id)) == 1
        assert len(store.records_for(RecordKind.ENTITY_RELATIONSHIPS, primary.id)) == 1

    def test_identifiers_deduplicated_by_token(self, store, executor, populated, vault):
        primary = populated["primary"]

        executor.merge(_cluster(primary, populated["duplicate"]))

        identifiers = store.identifiers_for(primary.id)
        assert sorted(i.type for i in identifiers) == ["email", "phone"]
        phone = next(i for i in identifiers if i.type == "phone")
        assert phone.value_hash == vault.token("phone", "+15084109572")
        assert phone.is_primary

    def test_moved_identifier_loses_primary_flag_when_primary_has_one(self, store, owner, seed_person, executor):
        primary = seed_person(owner, "Kim Park", email="kim@example.com")
        duplicate = seed_person(owner, "Kim Park", email="kim.park@work.example")

        executor.merge(_cluster(primary, duplicate, reasons=("similar_name",)))

        emails = [i for i in store.identifiers_for(primary.id) if i.type == "email"]
        assert len(emails) == 2
        assert sum(1 for i in emails if i.is_primary) == 1

    def test_relationship_moves_when_primary_has_none(self, store, owner, seed_person, executor):
        primary = seed_person(owner, "Lee Chan", email="lee@example.com")
        duplicate = seed_person(owner, "Lee Chan", email="lee@example.com")
        store.add_record(RecordKind.RELATIONSHIPS, duplicate.id, type="family")

        outcome = executor.merge(_cluster(primary, duplicate))

        assert isinstance(outcome, MergeSuccess)
        assert outcome.memberships_collapsed == 0
        assert len(store.records_for(RecordKind.RELATIONSHIPS, primary.id)) == 1

    def test_relationship_details_survive_collapse(self, store, owner, seed_person, executor):
        primary = seed_person(owner, "Lee Chan", email="lee@example.com")
        duplicate = seed_person(owner, "L Chan", email="lee@example.com")
        kept = store.add_record(RecordKind.RELATIONSHIPS, primary.id, type="friend")
        store.add_record(
            RecordKind.RELATIONSHIPS, duplicate.id, type="colleague", notes="met at PyCon 2019", strength="close"
        )

        outcome = executor.merge(_cluster(primary, duplicate))

        assert isinstance(outcome, MergeSuccess)
        assert outcome.memberships_collapsed == 1
        assert store.records_for(RecordKind.RELATIONSHIPS, primary.id) == [kept]
        row = store.get_row(RecordKind.RELATIONSHIPS, kept)
        assert row["type"] == "friend"
        assert row["notes"] == "met at PyCon 2019"
        assert row["strength"] == "close"

    def test_links_to_the_same_entity_collapse(self, store, owner, seed_person, executor):
        primary = seed_person(owner, "John Smith", email="john@example.com")
        duplicate = seed_person(owner, "J Smith", email="john@example.com")
        employer = seed_person(owner, "Acme Corporation", type="organization")
        kept = store.add_link(primary.id, employer.id, type="professional")
        store.add_link(duplicate.id, employer.id, type="professional", subtype="employee", notes="since 2020")
        before = total_records(store.dependent_counts([primary.id, duplicate.id]))

        outcome = executor.merge(_cluster(primary, duplicate))

        assert isinstance(outcome, MergeSuccess)
        assert outcome.memberships_collapsed == 1
        assert store.records_for(RecordKind.ENTITY_RELATIONSHIPS, primary.id) == [kept]
        link = store.get_row(RecordKind.ENTITY_RELATIONSHIPS, kept)
        assert (link["source_entity_id"], link["target_entity_id"]) == (primary.id, employer.id)
        assert link["subtype"] == "employee"
        assert link["notes"] == "since 2020"
        after = total_records(store.dependent_counts([primary.id]))
        assert before == after + outcome.identifiers_dropped + outcome.memberships_collapsed

    def test_incoming_links_collapse_onto_the_first(self, store, owner, seed_person, executor):
        primary = seed_person(owner, "Eve Adams", email="eve@example.com")
        dup_a = seed_person(owner, "E Adams", email="eve@example.com")
        dup_b = seed_person(owner, "Eve A", email="eve@example.com")
        manager = seed_person(owner, "Ben Ode")
        first = store.add_link(manager.id, dup_a.id, type="professional")
        store.add_link(manager.id, dup_b.id, custom_label="mentor")

        outcome = executor.merge(_cluster(primary, dup_a, dup_b))

        assert isinstance(outcome, MergeSuccess)
        assert store.records_for(RecordKind.ENTITY_RELATIONSHIPS, primary.id) == [first]
        link = store.get_row(RecordKind.ENTITY_RELATIONSHIPS, first)
        assert (link["source_entity_id"], link["target_entity_id"]) == (manager.id, primary.id)
        assert (link["type"], link["custom_label"]) == ("professional", "mentor")

    def test_link_between_cluster_members_is_dropped(self, store, owner, seed_person, executor):
        primary = seed_person(owner, "Tom Hart", email="tom@example.com")
        duplicate = seed_person(owner, "T Hart", email="tom@example.com")
        store.add_link(primary.id, duplicate.id, type="family")

        outcome = executor.merge(_cluster(primary, duplicate))

        assert isinstance(outcome, MergeSuccess)
        assert outcome.memberships_collapsed == 1
        assert store.get_entity(duplicate.id) is None
        assert store.records_for(RecordKind.ENTITY_RELATIONSHIPS, primary.id) == []

    def test_several_duplicates_merge_at_once(self, store, owner, seed_person, executor):
        primary = seed_person(owner, "Eve Adams", email="eve@example.com")
        dup_a = seed_person(owner, "E Adams", email="eve@example.com")
        dup_b = seed_person(owner, "Eve A", email="eve@example.com")
        store.add_record(RecordKind.GIFTS, dup_a.id)
        store.add_record(RecordKind.REMINDERS, dup_b.id)

        outcome = executor.merge(_cluster(primary, dup_a, dup_b))

        assert isinstance(outcome, MergeSuccess)
        assert outcome.duplicates_removed == 2
        assert outcome.identifiers_dropped == 2
        assert store.entity_count(owner) == 1

    def test_audit_row_written(self, store, owner, executor, populated):
        primary, duplicate = populated["primary"], populated["duplicate"]

        executor.merge(_cluster(primary, duplicate))

        (entry,) = store.activity_logs
        assert entry["action"] == "merge"
        assert entry["user_id"] == owner
        assert entry["resource_id"] == primary.id
        assert entry["metadata"]["merged_entity_ids"] == [str(duplicate.id)]
        assert entry["metadata"]["match_reasons"] == ["shared_email"]


class TestFailedMerge:
    def _state(self, store, entity_ids):
        return (
            [store.get_entity(entity_id) is not None for entity_id in entity_ids],
            store.dependent_counts(entity_ids),
            {entity_id: sorted(str(i.id) for i in store.identifiers_for(entity_id)) for entity_id in entity_ids},
        )

    def test_type_mismatch_is_conflict(self, store, owner, seed_person, executor):
        person = seed_person(owner, "Acme Corp")
        org = seed_person(owner, "Acme Corp", type="organization")

        outcome = executor.merge(_cluster(person, org))

        assert isinstance(outcome, MergeFailure)
        assert outcome.error_kind == "conflict"

    def test_self_entity_cannot_be_merged_away(self, store, owner, seed_person, executor):
        other = seed_person(owner, "Owner Name", email="owner@example.com")
        me = seed_person(owner, "Me", email="owner@example.com", is_self=True)

        outcome = executor.merge(_cluster(other, me))

        assert isinstance(outcome, MergeFailure)
        assert outcome.error_kind == "conflict"
        assert store.get_entity(me.id) is not None

    def test_missing_primary_is_not_found(self, store, owner, seed_person, executor):
        primary = seed_person(owner, "Ray Cole", email="ray@example.com")
        duplicate = seed_person(owner, "R Cole", email="ray@example.com")
        store.delete_entity(primary.id)

        outcome = executor.merge(_cluster(primary, duplicate))

        assert isinstance(outcome, MergeFailure)
        assert outcome.error_kind == "not_found"
        assert store.get_entity(duplicate.id) is not None

    def test_partially_missing_duplicates_is_not_found(self, store, owner, seed_person, executor):
        primary = seed_person(owner, "Ray Cole", email="ray@example.com")
        dup_a = seed_person(owner, "R Cole", email="ray@example.com")
        dup_b = seed_person(owner, "Ray C", email="ray@example.com")
        store.delete_entity(dup_b.id)

        outcome = executor.merge(_cluster(primary, dup_a, dup_b))

        assert isinstance(outcome, MergeFailure)
        assert outcome.error_kind == "not_found"
        assert store.get_entity(dup_a.id) is not None

    def test_already_merged_cluster_is_skipped(self, store, owner, seed_person, executor):
        primary = seed_person(owner, "Ray Cole", email="ray@example.com")
        duplicate = seed_person(owner, "R Cole", email="ray@example.com")
        cluster = _cluster(primary, duplicate)

        assert isinstance(executor.merge(cluster), MergeSuccess)
        outcome = executor.merge(cluster)

        assert isinstance(outcome, MergeSkipped)
        assert store.entity_count(owner) == 1

    def test_error_midway_rolls_back_everything(self, store, executor, populated, monkeypatch):
        primary, duplicate = populated["primary"], populated["duplicate"]
        before = self._state(store, [primary.id, duplicate.id])
        original = MemorySession.reparent

        def failing_reparent(self, kind, from_ids, to_id):
            if kind is RecordKind.GIFTS:
                raise MergeConflictError("gift row is locked")
            return original(self, kind, from_ids, to_id)

        monkeypatch.setattr(MemorySession, "reparent", failing_reparent)

        outcome = executor.merge(_cluster(primary, duplicate))

        assert isinstance(outcome, MergeFailure)
        assert outcome.reason == "gift row is locked"
        assert self._state(store, [primary.id, duplicate.id]) == before

    def test_lost_rows_fail_the_conservation_check(self, store, executor, populated, monkeypatch):
        primary, duplicate = populated["primary"], populated["duplicate"]
        original = MemorySession.reparent

        def lossy_reparent(self, kind, from_ids, to_id):
            if kind is RecordKind.INTERACTIONS:
                table = self._t.table(kind)
                lost = [row_id for row_id, row in table.items() if row["entity_id"] in set(from_ids)]
                for row_id in lost:
                    del table[row_id]
                return len(lost)
            return original(self, kind, from_ids, to_id)

        monkeypatch.setattr(MemorySession, "reparent", lossy_reparent)

        outcome = executor.merge(_cluster(primary, duplicate))

        assert isinstance(outcome, MergeFailure)
        assert "not conserved" in outcome.reason
        assert store.get_entity(duplicate.id) is not None
        assert len(store.records_for(RecordKind.INTERACTIONS, duplicate.id)) == 2

    def test_storage_errors_propagate(self, store, executor, populated, monkeypatch):
        def unavailable():
            raise StorageError("connection refused")

        monkeypatch.setattr(store, "transaction", unavailable)

        with pytest.raises(StorageError):
            executor.merge(_cluster(populated["primary"], populated["duplicate"]))
