"""Duplicate detection and merging for stored entities."""

from .batch import BatchReport, BatchRunner, combined_stats
from .matcher import DisjointSet, SimilarityMatcher, name_similarity, normalize_name_for_match
from .merge import MergeExecutor

__all__ = [
    "BatchReport",
    "BatchRunner",
    "DisjointSet",
    "MergeExecutor",
    "SimilarityMatcher",
    "combined_stats",
    "name_similarity",
    "normalize_name_for_match",
]
