"""Find clusters of stored entities that describe the same real-world party.

Signals, strongest first:

* identical blind-index token for the same identifier type,
* identical linked external-service account,
* similar names (rapidfuzz token-sort ratio over normalized names).

Candidate pairs are drawn from buckets keyed by those signals so the matcher
never compares every entity with every other one. Pairs are joined with a
disjoint set, so matching is transitive.
"""

from __future__ import annotations

import re
import unicodedata
from collections import defaultdict
from itertools import combinations
from typing import Dict, Hashable, Iterable, List, Sequence, Set, Tuple
from uuid import UUID

from rapidfuzz import fuzz

from ..config import DedupSettings, get_settings
from ..logging import get_logger
from ..models import DuplicateCluster, EntitySnapshot, MatchReason

logger = get_logger("dedup.matcher")

DEFAULT_NAME_THRESHOLD = 90.0
MIN_NAME_TOKENS = 2

# Order in which shared_<type> reasons are reported
IDENTIFIER_PRIORITY: Tuple[str, ...] = (
    "email",
    "phone",
    "social_handle",
    "website",
    "account_number",
    "government_id",
    "ssn",
)

_APOSTROPHES = re.compile(r"['’`]")
_PUNCTUATION = re.compile(r"[^\w\s]|_")
_WHITESPACE = re.compile(r"\s+")


class DisjointSet:
    """Union-find over hashable items with path compression and union by rank."""

    def __init__(self, items: Iterable[Hashable] = ()) -> None:
        self.parent: Dict[Hashable, Hashable] = {}
        self.rank: Dict[Hashable, int] = {}
        for item in items:
            self.add(item)

    def add(self, item: Hashable) -> None:
        if item not in self.parent:
            self.parent[item] = item
            self.rank[item] = 0

    def find(self, item: Hashable) -> Hashable:
        root = item
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[item] != root:
            self.parent[item], item = root, self.parent[item]
        return root

    def union(self, a: Hashable, b: Hashable) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return
        if self.rank[ra] < self.rank[rb]:
            ra, rb = rb, ra
        self.parent[rb] = ra
        if self.rank[ra] == self.rank[rb]:
            self.rank[ra] += 1

    def groups(self) -> List[List[Hashable]]:
        components: Dict[Hashable, List[Hashable]] = defaultdict(list)
        for item in self.parent:
            components[self.find(item)].append(item)
        return list(components.values())


def normalize_name_for_match(name: str | None) -> str:
    """Accent-free, case-folded, punctuation-free name with single spaces."""
    if not name:
        return ""
    decomposed = unicodedata.normalize("NFKD", name)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    folded = _APOSTROPHES.sub("", stripped.casefold())
    folded = _PUNCTUATION.sub(" ", folded)
    return _WHITESPACE.sub(" ", folded).strip()


def name_similarity(left: str | None, right: str | None) -> float:
    """Score two names 0-100. Names with fewer than two tokens score 0."""
    a = normalize_name_for_match(left)
    b = normalize_name_for_match(right)
    if len(a.split()) < MIN_NAME_TOKENS or len(b.split()) < MIN_NAME_TOKENS:
        return 0.0
    return float(fuzz.token_sort_ratio(a, b))


def _name_blocks(name: str) -> Set[Tuple[str, str]]:
    tokens = normalize_name_for_match(name).split()
    if len(tokens) < MIN_NAME_TOKENS:
        return set()
    blocks = {("token", token) for token in tokens if len(token) > 1}
    # Catches single-letter typos that share no whole token
    blocks.add(("initials", "".join(sorted(token[0] for token in tokens))))
    return blocks


def _reason_priority(reason: str) -> Tuple[int, int, str]:
    if reason == MatchReason.SIMILAR_NAME.value:
        return (2, 0, reason)
    if reason == MatchReason.SHARED_EXTERNAL_ID.value:
        return (1, 0, reason)
    kind = reason.removeprefix("shared_")
    if kind in IDENTIFIER_PRIORITY:
        return (0, IDENTIFIER_PRIORITY.index(kind), reason)
    return (0, len(IDENTIFIER_PRIORITY), reason)


def primary_sort_key(snapshot: EntitySnapshot):
    """Best candidate first: self entity, completeness, name parts, name length, age, id."""
    name = (snapshot.entity.name or "").strip()
    return (
        0 if snapshot.entity.is_self else 1,
        -snapshot.completeness,
        -len(name.split()),
        -len(name),
        snapshot.entity.created_at,
        str(snapshot.entity.id),
    )


class SimilarityMatcher:
    def __init__(self, name_threshold: float = DEFAULT_NAME_THRESHOLD) -> None:
        if not 0 <= name_threshold <= 100:
            raise ValueError("name_threshold must be between 0 and 100")
        self.name_threshold = name_threshold

    @classmethod
    def from_settings(cls, settings: DedupSettings | None = None) -> "SimilarityMatcher":
        settings = settings or get_settings()
        return cls(name_threshold=settings.name_similarity_threshold)

    def find_clusters(self, snapshots: Sequence[EntitySnapshot]) -> List[DuplicateCluster]:
        partitions: Dict[Tuple[UUID, str], List[EntitySnapshot]] = defaultdict(list)
        for snapshot in snapshots:
            if snapshot.entity.archived_at is not None:
                continue
            partitions[(snapshot.entity.owner_id, snapshot.entity.type)].append(snapshot)

        clusters: List[DuplicateCluster] = []
        for (owner_id, entity_type), members in partitions.items():
            found = self._cluster_partition(members)
            if found:
                logger.debug(
                    "duplicate_clusters_found",
                    owner_id=str(owner_id),
                    entity_type=entity_type,
                    clusters=len(found),
                    entities=len(members),
                )
            clusters.extend(found)

        clusters.sort(key=lambda c: (c.primary.created_at, str(c.primary.id)))
        return clusters

    def _cluster_partition(self, members: Sequence[EntitySnapshot]) -> List[DuplicateCluster]:
        by_id = {snapshot.id: snapshot for snapshot in members}
        edges: Dict[Tuple[UUID, UUID], Set[str]] = defaultdict(set)

        def link(bucket: Iterable[UUID], reason: str) -> None:
            for a, b in combinations(sorted(set(bucket), key=str), 2):
                edges[(a, b)].add(reason)

        identifier_buckets: Dict[Tuple[str, str], List[UUID]] = defaultdict(list)
        external_buckets: Dict[Tuple[str, str], List[UUID]] = defaultdict(list)
        name_buckets: Dict[Tuple[str, str], List[UUID]] = defaultdict(list)
        for snapshot in members:
            for identifier in snapshot.identifiers:
                if identifier.archived_at is None and identifier.match_key is not None:
                    identifier_buckets[identifier.match_key].append(snapshot.id)
            for external_id in snapshot.external_ids:
                external_buckets[external_id].append(snapshot.id)
            for block in _name_blocks(snapshot.entity.name):
                name_buckets[block].append(snapshot.id)

        for (identifier_type, _), bucket in identifier_buckets.items():
            link(bucket, MatchReason.shared(identifier_type))
        for bucket in external_buckets.values():
            link(bucket, MatchReason.SHARED_EXTERNAL_ID.value)

        compared: Set[Tuple[UUID, UUID]] = set()
        for bucket in name_buckets.values():
            for pair in combinations(sorted(set(bucket), key=str), 2):
                if pair in compared:
                    continue
                compared.add(pair)
                a, b = pair
                score = name_similarity(by_id[a].entity.name, by_id[b].entity.name)
                if score >= self.name_threshold:
                    edges[pair].add(MatchReason.SIMILAR_NAME.value)

        if not edges:
            return []

        components = DisjointSet(by_id)
        for a, b in edges:
            components.union(a, b)

        reasons_by_root: Dict[Hashable, Set[str]] = defaultdict(set)
        for (a, _), reasons in edges.items():
            reasons_by_root[components.find(a)].update(reasons)

        clusters: List[DuplicateCluster] = []
        for group in components.groups():
            if len(group) < 2:
                continue
            ranked = sorted((by_id[entity_id] for entity_id in group), key=primary_sort_key)
            reasons = sorted(reasons_by_root[components.find(group[0])], key=_reason_priority)
            clusters.append(
                DuplicateCluster(
                    primary=ranked[0].entity,
                    duplicates=tuple(snapshot.entity for snapshot in ranked[1:]),
                    match_reasons=tuple(reasons),
                )
            )
        return clusters


__all__ = [
    "DEFAULT_NAME_THRESHOLD",
    "DisjointSet",
    "SimilarityMatcher",
    "name_similarity",
    "normalize_name_for_match",
    "primary_sort_key",
]
