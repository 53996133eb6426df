from itertools import combinations
from types import SimpleNamespace

import pytest

from conezia.contacts.consolidator import (
    FieldConsolidator,
    completeness_score,
    dedup_key,
    select_best_name,
    select_most_specific,
)
from conezia.errors import ValidationError
from conezia.models import ConsolidatedContact, NormalizedContact


class TestSelectBestName:
    def test_empty_input_returns_none(self):
        assert select_best_name([]) is None
        assert select_best_name([None, "", "   "]) is None

    def test_more_parts_then_longer(self):
        assert select_best_name(["Oh", "David Oh", "D Oh"]) == "David Oh"

    def test_part_count_beats_length(self):
        assert select_best_name(["Jonathan", "Jo Kim"]) == "Jo Kim"

    def test_ties_keep_first_candidate(self):
        assert select_best_name(["Ann Lee", "Bob Kay"]) == "Ann Lee"

    def test_most_specific_uses_same_ranking(self):
        assert select_most_specific(["Acme", "Acme Corp", None]) == "Acme Corp"


OPTIONAL_FIELDS = {
    "email": "jane@example.com",
    "phone": "+15084109572",
    "organization": "Acme",
    "photo": "https://example.com/jane.jpg",
}


def _contact(fields, name="Jane Doe"):
    values = {key: OPTIONAL_FIELDS[key] for key in fields if key != "photo"}
    metadata = {"photo_url": OPTIONAL_FIELDS["photo"]} if "photo" in fields else {}
    return NormalizedContact(name=name, metadata=metadata, **values)


def test_completeness_strict_superset_scores_higher():
    keys = list(OPTIONAL_FIELDS)
    subsets = [set(c) for size in range(len(keys) + 1) for c in combinations(keys, size)]
    for smaller in subsets:
        for larger in subsets:
            if smaller < larger:
                assert completeness_score(_contact(larger)) > completeness_score(_contact(smaller))


def test_completeness_name_presence_counts():
    nameless = SimpleNamespace(name=None, email="jane@example.com", metadata={})
    named = SimpleNamespace(name="Jane", email="jane@example.com", metadata={})
    assert completeness_score(named) > completeness_score(nameless)


def test_completeness_weights():
    # 1 + 1*5 + len("Jane Doe") for the name, then email 1, phone 2
    contact = NormalizedContact(name="Jane Doe", email="jane@example.com", phone="+15084109572")
    assert completeness_score(contact) == 1 + 5 + 8 + 1 + 2


class TestDedupKey:
    def test_prefers_email(self):
        contact = NormalizedContact(name="Jane Doe", email="Jane@Example.com", phone="+15084109572")
        assert dedup_key(contact, 0) == ("email", "jane@example.com")

    def test_falls_back_to_phone_digits(self):
        contact = NormalizedContact(name="Jane Doe", phone="+15084109572")
        assert dedup_key(contact, 0) == ("phone", "15084109572")

    def test_falls_back_to_normalized_name(self):
        contact = NormalizedContact(name="  Jane   DOE ")
        assert dedup_key(contact, 0) == ("name", "jane doe")

    def test_falls_back_to_external_id_then_position(self):
        with_id = NormalizedContact(name=" ", external_id="c1", source="google_contacts")
        bare = NormalizedContact(name=" ")
        assert dedup_key(with_id, 3) == ("external_id", "google_contacts", "c1")
        assert dedup_key(bare, 3) == ("unique", 3)
        assert dedup_key(bare, 4) != dedup_key(bare, 3)


class TestFieldConsolidator:
    def test_consolidate_picks_most_complete_fields(self):
        sparse = NormalizedContact(name="Jane", email="jane@example.com", source="gmail", external_id="g1")
        rich = NormalizedContact(
            name="Jane Doe",
            email="jane@example.com",
            phone="+15084109572",
            organization="Acme",
            source="google_contacts",
            external_id="c1",
            metadata={"photo_url": "https://example.com/jane.jpg"},
        )

        result = FieldConsolidator().consolidate([sparse, rich])

        assert isinstance(result, ConsolidatedContact)
        assert result.name == "Jane Doe"
        assert result.email == "jane@example.com"
        assert result.phone == "+15084109572"
        assert result.organization == "Acme"
        assert result.external_ids == {"google_contacts": "c1", "gmail": "g1"}
        assert result.sources == ("google_contacts", "gmail")
        assert result.metadata["photo_url"] == "https://example.com/jane.jpg"
        assert result.metadata["sources"] == ["google_contacts", "gmail"]

    def test_preferred_source_breaks_score_ties(self):
        first = NormalizedContact(name="Jane Doe", email="a@example.com", source="gmail")
        second = NormalizedContact(name="Jane Doe", email="b@example.com", source="google_contacts")

        result = FieldConsolidator().consolidate([first, second])

        assert result.email == "b@example.com"
        assert result.emails == ("b@example.com", "a@example.com")

    def test_preferred_source_from_settings(self, settings):
        first = NormalizedContact(name="Jane Doe", email="a@example.com", source="google_contacts")
        second = NormalizedContact(name="Jane Doe", email="b@example.com", source="outlook")
        consolidator = FieldConsolidator.from_settings(
            settings.model_copy(update={"preferred_contact_source": "outlook"})
        )

        result = consolidator.consolidate([first, second])

        assert result.email == "b@example.com"

    def test_input_order_breaks_remaining_ties(self):
        first = NormalizedContact(name="Jane Doe", email="a@example.com", source="gmail")
        second = NormalizedContact(name="Jane Doe", email="b@example.com", source="outlook")

        result = FieldConsolidator(preferred_source=None).consolidate([first, second])

        assert result.email == "a@example.com"

    def test_metadata_filled_from_lower_ranked_records(self):
        top = NormalizedContact(name="Jane Doe", phone="+15084109572", metadata={"birthday": None})
        other = NormalizedContact(name="Jane", metadata={"birthday": "1990-01-01", "city": "Boston"})

        result = FieldConsolidator().consolidate([other, top])

        assert result.metadata["birthday"] == "1990-01-01"
        assert result.metadata["city"] == "Boston"

    def test_consolidate_empty_raises(self):
        with pytest.raises(ValueError):
            FieldConsolidator().consolidate([])

    def test_consolidate_all_groups_by_dedup_key(self):
        records = [
            NormalizedContact(name="Jane", email="jane@example.com", source="gmail"),
            NormalizedContact(name="Bob Roe", phone="+15084109572", source="gmail"),
            NormalizedContact(name="Jane Doe", email="JANE@example.com", source="google_contacts"),
            NormalizedContact(name="Bob Roe", phone="+1 508 410 9572", source="outlook"),
        ]

        results = FieldConsolidator().consolidate_all(records)

        assert [r.name for r in results] == ["Jane Doe", "Bob Roe"]
        assert results[0].sources == ("google_contacts", "gmail")
        assert set(results[1].sources) == {"gmail", "outlook"}

    def test_to_entity_candidate_encrypts_and_indexes(self, vault):
        contact = ConsolidatedContact(
            name="Jane Doe",
            email="jane@example.com",
            phone="+15084109572",
            organization="Acme",
            notes="Met at the conference",
            emails=("jane@example.com", "jd@work.example"),
            phones=("+15084109572",),
        )

        candidate = FieldConsolidator().to_entity_candidate(contact, vault)

        assert candidate.name == "Jane Doe"
        assert candidate.type == "person"
        assert candidate.description == "Met at the conference"
        assert candidate.metadata["organization"] == "Acme"
        summary = [(i.type, vault.decrypt(i.value_encrypted), i.is_primary) for i in candidate.identifiers]
        assert summary == [
            ("email", "jane@example.com", True),
            ("email", "jd@work.example", False),
            ("phone", "+15084109572", True),
        ]
        assert candidate.identifiers[0].value_hash == vault.token("email", "jane@example.com")
        # Tokens are scoped by identifier type
        assert vault.token("email", "x") != vault.token("phone", "x")

    def test_to_entity_candidate_requires_name(self, vault):
        with pytest.raises(ValidationError):
            FieldConsolidator().to_entity_candidate(ConsolidatedContact(name=None), vault)
