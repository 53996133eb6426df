"""Canonicalization and consolidation of raw external contact records."""

from .consolidator import (
    FieldConsolidator,
    completeness_score,
    dedup_key,
    select_best_name,
    select_most_specific,
)
from .normalizer import ContactNormalizer, NormalizationReport, SkippedRecord

__all__ = [
    "ContactNormalizer",
    "FieldConsolidator",
    "NormalizationReport",
    "SkippedRecord",
    "completeness_score",
    "dedup_key",
    "select_best_name",
    "select_most_specific",
]
