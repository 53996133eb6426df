"""Select the most complete field values across records describing one contact.

Records fetched from several services (mail, calendar, contacts APIs) for the
same person are grouped by :func:`dedup_key` and collapsed into a single
:class:`~conezia.models.ConsolidatedContact` before anything is persisted.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Hashable, Iterable, List, Sequence, Tuple

from ..config import DedupSettings, get_settings
from ..errors import ValidationError
from ..logging import get_logger
from ..models import (
    CandidateIdentifier,
    ConsolidatedContact,
    EntityCandidate,
    IdentifierKind,
    NormalizedContact,
)
from ..vault import Vault, identifier_context

logger = get_logger("contacts.consolidator")

# Name parts beyond the first are worth NAME_PART_BONUS each, capped at two.
NAME_PART_BONUS = 5
NAME_LENGTH_CAP = 30
FIELD_WEIGHTS: Dict[str, int] = {
    "email": 1,
    "phone": 2,
    "organization": 1,
}
PHOTO_WEIGHT = 1


def _name_rank(name: str) -> Tuple[int, int]:
    return (len(name.split()), len(name))


def select_best_name(names: Iterable[str | None]) -> str | None:
    """Pick the most complete name: more parts first, then more characters.

    A two-part name outranks a longer single-part one, so "Jo Kim" beats
    "Jonathan". Ties keep the earliest candidate.
    """
    candidates = [name.strip() for name in names if name and name.strip()]
    if not candidates:
        return None
    return max(candidates, key=_name_rank)


def select_most_specific(values: Iterable[str | None]) -> str | None:
    """Free-text fallback using the same part-count-then-length ranking."""
    return select_best_name(values)


def completeness_score(contact: Any) -> int:
    score = 0
    name = (getattr(contact, "name", None) or "").strip()
    if name:
        parts = name.split()
        score += 1
        score += min(len(parts) - 1, 2) * NAME_PART_BONUS
        score += min(len(name), NAME_LENGTH_CAP)

    for attr, weight in FIELD_WEIGHTS.items():
        if getattr(contact, attr, None):
            score += weight

    metadata = getattr(contact, "metadata", None) or {}
    if metadata.get("photo_url"):
        score += PHOTO_WEIGHT
    return score


def _normalize_key_name(name: str) -> str:
    return re.sub(r"\s+", " ", name.strip().lower())


def dedup_key(contact: NormalizedContact, position: int) -> Tuple[Hashable, ...]:
    """Grouping key: email, then phone digits, then name, then source id.

    ``position`` makes records with nothing identifying their own group.
    """
    if contact.email:
        return ("email", contact.email.lower())
    if contact.phone:
        return ("phone", re.sub(r"\D", "", contact.phone))
    if contact.name and contact.name.strip():
        return ("name", _normalize_key_name(contact.name))
    if contact.external_id:
        return ("external_id", contact.source, contact.external_id)
    return ("unique", position)


def _distinct(values: Iterable[str | None]) -> Tuple[str, ...]:
    seen: List[str] = []
    for value in values:
        if value and value not in seen:
            seen.append(value)
    return tuple(seen)


class FieldConsolidator:
    def __init__(self, preferred_source: str | None = "google_contacts") -> None:
        self.preferred_source = preferred_source

    @classmethod
    def from_settings(cls, settings: DedupSettings | None = None) -> "FieldConsolidator":
        settings = settings or get_settings()
        return cls(preferred_source=settings.preferred_contact_source or None)

    def rank(self, contacts: Sequence[NormalizedContact]) -> List[NormalizedContact]:
        indexed = list(enumerate(contacts))
        indexed.sort(
            key=lambda item: (
                -completeness_score(item[1]),
                0 if item[1].source == self.preferred_source else 1,
                item[0],
            )
        )
        return [contact for _, contact in indexed]

    def consolidate(self, contacts: Sequence[NormalizedContact]) -> ConsolidatedContact:
        if not contacts:
            raise ValueError("contacts cannot be empty")

        ranked = self.rank(contacts)
        primary = ranked[0]

        external_ids: Dict[str, str] = {}
        for contact in ranked:
            for source, external_id in (contact.metadata.get("external_ids") or {}).items():
                external_ids.setdefault(str(source), str(external_id))
            if contact.external_id:
                external_ids.setdefault(contact.source or "unknown", contact.external_id)

        sources: List[str] = []
        for contact in ranked:
            for source in contact.metadata.get("sources") or [contact.source]:
                if source and source not in sources:
                    sources.append(source)

        metadata: Dict[str, Any] = dict(primary.metadata)
        for contact in ranked[1:]:
            for key, value in contact.metadata.items():
                if value not in (None, "") and metadata.get(key) in (None, ""):
                    metadata[key] = value
        metadata["external_ids"] = dict(external_ids)
        metadata["sources"] = list(sources)

        emails = _distinct(contact.email for contact in ranked)
        phones = _distinct(contact.phone for contact in ranked)

        return ConsolidatedContact(
            name=select_best_name(contact.name for contact in contacts),
            email=emails[0] if emails else None,
            phone=phones[0] if phones else None,
            organization=select_most_specific(contact.organization for contact in ranked),
            notes=select_most_specific(contact.notes for contact in ranked),
            emails=emails,
            phones=phones,
            external_ids=external_ids,
            sources=tuple(sources),
            metadata=metadata,
        )

    def consolidate_all(self, contacts: Iterable[NormalizedContact]) -> List[ConsolidatedContact]:
        groups: Dict[Tuple[Hashable, ...], List[NormalizedContact]] = {}
        for position, contact in enumerate(contacts):
            groups.setdefault(dedup_key(contact, position), []).append(contact)

        consolidated = [self.consolidate(group) for group in groups.values()]
        logger.debug(
            "contacts_consolidated",
            groups=len(consolidated),
            merged_records=sum(len(group) - 1 for group in groups.values()),
        )
        return consolidated

    def to_entity_candidate(self, contact: ConsolidatedContact, vault: Vault) -> EntityCandidate:
        if not contact.name:
            raise ValidationError("name", "is required")

        identifiers: List[CandidateIdentifier] = []
        for kind, values in ((IdentifierKind.EMAIL, contact.emails), (IdentifierKind.PHONE, contact.phones)):
            for position, value in enumerate(values):
                identifiers.append(
                    CandidateIdentifier(
                        type=kind.value,
                        value_encrypted=vault.encrypt(value),
                        value_hash=vault.blind_index(value, identifier_context(kind.value)),
                        is_primary=position == 0,
                    )
                )

        metadata = dict(contact.metadata)
        if contact.organization:
            metadata.setdefault("organization", contact.organization)

        return EntityCandidate(
            name=contact.name,
            description=contact.notes,
            metadata=metadata,
            identifiers=tuple(identifiers),
        )


__all__ = [
    "FieldConsolidator",
    "completeness_score",
    "dedup_key",
    "select_best_name",
    "select_most_specific",
]
