from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, List

import idna
import phonenumbers
from phonenumbers.phonenumberutil import NumberParseException

from ..config import DedupSettings, get_settings
from ..errors import ValidationError
from ..logging import get_logger
from ..models import ExternalContactRecord, NormalizedContact

logger = get_logger("contacts.normalizer")

_EMAIL_SHAPE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_WHITESPACE = re.compile(r"\s+")
_SURROUNDING = "\"'<>"


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


def normalize_name(value: str | None) -> str | None:
    """Trim, drop surrounding quotes or angle brackets, collapse whitespace."""
    cleaned = _clean(value)
    if cleaned is None:
        return None
    cleaned = cleaned.strip(_SURROUNDING).strip()
    cleaned = _WHITESPACE.sub(" ", cleaned)
    return cleaned or None


def normalize_email(value: str) -> str:
    cleaned = value.strip()
    # Strip Messages-style type prefixes ("E:someone@example.com")
    if cleaned and cleaned[0] in ("E", "P", "S") and len(cleaned) > 2 and cleaned[1] == ":":
        cleaned = cleaned[2:]
    cleaned = cleaned.strip(_SURROUNDING).strip()
    if "@" not in cleaned:
        raise ValidationError("email", "missing @", value=value)
    local, domain = cleaned.rsplit("@", 1)
    try:
        ascii_domain = idna.encode(domain.strip().lower(), uts46=True).decode("ascii")
    except idna.IDNAError as exc:
        raise ValidationError("email", f"invalid domain: {exc}", value=value) from exc
    canonical = f"{local.strip().casefold()}@{ascii_domain.lower()}"
    if not _EMAIL_SHAPE.match(canonical):
        raise ValidationError("email", "malformed address", value=value)
    return canonical


def normalize_phone(value: str, default_region: str | None = None) -> str:
    """Return the E.164 form of ``value`` (``+`` followed by digits)."""
    cleaned = value.strip()
    if cleaned and cleaned[0] in ("E", "P", "S") and len(cleaned) > 2 and cleaned[1] == ":":
        cleaned = cleaned[2:]
    if not re.search(r"\d", cleaned):
        raise ValidationError("phone", "no digits", value=value)
    try:
        parsed = phonenumbers.parse(cleaned, default_region or None)
    except NumberParseException as exc:
        raise ValidationError("phone", str(exc), value=value) from exc
    if phonenumbers.is_possible_number_with_reason(parsed) != phonenumbers.ValidationResult.IS_POSSIBLE:
        raise ValidationError("phone", "not a possible number", value=value)
    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)


def name_from_email(email: str) -> str | None:
    local = email.split("@", 1)[0]
    parts = re.sub(r"[._]", " ", local).split()
    if not parts:
        return None
    return " ".join(part.capitalize() for part in parts)


@dataclass(slots=True)
class SkippedRecord:
    index: int
    record: ExternalContactRecord
    field: str
    reason: str


@dataclass(slots=True)
class NormalizationReport:
    accepted: List[NormalizedContact] = field(default_factory=list)
    skipped: List[SkippedRecord] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.accepted) + len(self.skipped)

    def as_dict(self) -> dict[str, int]:
        return {
            "total_records": self.total,
            "accepted_records": len(self.accepted),
            "skipped_records": len(self.skipped),
        }


class ContactNormalizer:
    def __init__(self, default_region: str | None = "US", *, derive_name_from_email: bool = False):
        self.default_region = default_region
        self.derive_name_from_email = derive_name_from_email

    @classmethod
    def from_settings(
        cls, settings: DedupSettings | None = None, *, derive_name_from_email: bool = False
    ) -> "ContactNormalizer":
        settings = settings or get_settings()
        return cls(settings.default_region, derive_name_from_email=derive_name_from_email)

    def normalize(self, record: ExternalContactRecord) -> NormalizedContact:
        email = _clean(record.email)
        if email is not None:
            email = normalize_email(email)

        phone = _clean(record.phone)
        if phone is not None:
            phone = normalize_phone(phone, default_region=self.default_region)

        name = normalize_name(record.name)
        if name is None and self.derive_name_from_email and email:
            name = name_from_email(email)
        if name is None:
            raise ValidationError("name", "is required", value=record.name)

        return NormalizedContact(
            name=name,
            email=email,
            phone=phone,
            organization=normalize_name(record.organization),
            notes=_clean(record.notes),
            external_id=_clean(record.external_id),
            source=_clean(record.source) or "unknown",
            metadata=dict(record.metadata or {}),
        )

    def normalize_batch(self, records: Iterable[ExternalContactRecord]) -> NormalizationReport:
        report = NormalizationReport()
        for index, record in enumerate(records):
            try:
                report.accepted.append(self.normalize(record))
            except ValidationError as exc:
                logger.warning(
                    "contact_record_skipped",
                    index=index,
                    source=record.source,
                    external_id=record.external_id,
                    field=exc.field,
                    reason=exc.reason,
                )
                report.skipped.append(SkippedRecord(index=index, record=record, field=exc.field, reason=exc.reason))
        return report


__all__ = [
    "ContactNormalizer",
    "NormalizationReport",
    "SkippedRecord",
    "name_from_email",
    "normalize_email",
    "normalize_name",
    "normalize_phone",
]
