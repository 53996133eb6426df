from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import reduce
from operator import add
from typing import Any, Iterable, List, Sequence, Tuple
from uuid import UUID

from ..config import DedupSettings, get_settings
from ..errors import BatchAbortedError, NotFoundError, StorageError
from ..logging import get_logger
from ..models import BatchStats, DuplicateCluster, MergeFailure, MergeOutcome
from ..repository.base import EntityStore
from .matcher import SimilarityMatcher
from .merge import MergeExecutor

logger = get_logger("dedup.batch")


@dataclass(slots=True)
class BatchReport:
    owner_id: UUID
    clusters: List[DuplicateCluster] = field(default_factory=list)
    outcomes: List[MergeOutcome] = field(default_factory=list)
    stats: BatchStats = field(default_factory=BatchStats)
    dry_run: bool = True
    cancelled: bool = False

    @property
    def failures(self) -> List[MergeFailure]:
        return [outcome for outcome in self.outcomes if isinstance(outcome, MergeFailure)]

    def as_dict(self) -> dict[str, Any]:
        return {
            "owner_id": str(self.owner_id),
            "dry_run": self.dry_run,
            "cancelled": self.cancelled,
            "clusters": [cluster.as_dict() for cluster in self.clusters],
            "outcomes": [
                {
                    "primary_id": str(outcome.cluster.primary.id),
                    "status": outcome.status,
                    **({"error_kind": outcome.error_kind} if isinstance(outcome, MergeFailure) else {}),
                    **({"reason": outcome.reason} if hasattr(outcome, "reason") else {}),
                }
                for outcome in self.outcomes
            ],
            "stats": self.stats.as_dict(),
        }


def combined_stats(reports: Iterable[BatchReport]) -> BatchStats:
    return reduce(add, (report.stats for report in reports), BatchStats())


class BatchRunner:
    """Find and merge duplicate clusters for one owner or for every owner.

    Each cluster is merged in its own transaction, so one failing cluster
    never prevents the others from merging.
    """

    def __init__(
        self,
        store: EntityStore,
        matcher: SimilarityMatcher | None = None,
        executor: MergeExecutor | None = None,
        settings: DedupSettings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.store = store
        self.matcher = matcher or SimilarityMatcher.from_settings(settings)
        self.executor = executor or MergeExecutor(store)
        self.merge_workers = settings.merge_workers
        self.storage_failure_limit = settings.storage_failure_limit

    def find_clusters(self, owner_id: UUID) -> List[DuplicateCluster]:
        if not self.store.owner_exists(owner_id):
            raise NotFoundError(f"user not found: {owner_id}")
        snapshots = self.store.load_snapshots(owner_id)
        clusters = [c for c in self.matcher.find_clusters(snapshots) if c.owner_id == owner_id]
        logger.info(
            "duplicate_scan_completed",
            owner_id=str(owner_id),
            entities=len(snapshots),
            clusters=len(clusters),
            duplicates=sum(len(c.duplicates) for c in clusters),
        )
        return clusters

    def _merge_one(self, cluster: DuplicateCluster) -> Tuple[MergeOutcome, bool]:
        try:
            return self.executor.merge(cluster), False
        except StorageError as exc:
            return MergeFailure(cluster=cluster, error_kind=exc.kind, reason=str(exc)), True

    def merge_clusters(
        self,
        owner_id: UUID,
        clusters: Sequence[DuplicateCluster],
        cancel_event: threading.Event | None = None,
    ) -> BatchReport:
        report = BatchReport(owner_id=owner_id, clusters=list(clusters), dry_run=False)
        consecutive_storage_failures = 0
        window = max(1, self.merge_workers)

        with ThreadPoolExecutor(max_workers=window, thread_name_prefix="dedup-merge") as pool:
            for start in range(0, len(report.clusters), window):
                if cancel_event is not None and cancel_event.is_set():
                    report.cancelled = True
                    logger.warning(
                        "merge_batch_cancelled",
                        owner_id=str(owner_id),
                        remaining=len(report.clusters) - start,
                    )
                    break
                chunk = report.clusters[start : start + window]
                if window == 1:
                    results = [self._merge_one(chunk[0])]
                else:
                    results = list(pool.map(self._merge_one, chunk))

                aborted = False
                for outcome, storage_failed in results:
                    report.outcomes.append(outcome)
                    report.stats = report.stats.record(outcome)
                    consecutive_storage_failures = consecutive_storage_failures + 1 if storage_failed else 0
                    aborted = aborted or consecutive_storage_failures >= self.storage_failure_limit
                if aborted:
                    not_attempted = report.clusters[start + len(chunk) :]
                    logger.error(
                        "merge_batch_aborted",
                        owner_id=str(owner_id),
                        storage_failure_limit=self.storage_failure_limit,
                        not_attempted=len(not_attempted),
                        **report.stats.as_dict(),
                    )
                    raise BatchAbortedError(
                        f"aborted after {self.storage_failure_limit} consecutive storage failures",
                        stats=report.stats,
                        not_attempted=not_attempted,
                    )

        logger.info("merge_batch_completed", owner_id=str(owner_id), **report.stats.as_dict())
        return report

    def run(
        self,
        owner_id: UUID,
        dry_run: bool = True,
        cancel_event: threading.Event | None = None,
    ) -> BatchReport:
        clusters = self.find_clusters(owner_id)
        if dry_run:
            return BatchReport(owner_id=owner_id, clusters=clusters, dry_run=True)
        return self.merge_clusters(owner_id, clusters, cancel_event=cancel_event)

    def run_all(self, dry_run: bool = True, cancel_event: threading.Event | None = None) -> List[BatchReport]:
        reports: List[BatchReport] = []
        for owner_id in self.store.list_owner_ids():
            if cancel_event is not None and cancel_event.is_set():
                break
            try:
                reports.append(self.run(owner_id, dry_run=dry_run, cancel_event=cancel_event))
            except NotFoundError as exc:
                # Deleted since the owner list was read
                logger.warning("dedup_owner_skipped", owner_id=str(owner_id), reason=str(exc))
        logger.info("dedup_run_all_completed", owners=len(reports), dry_run=dry_run, **combined_stats(reports).as_dict())
        return reports


__all__ = ["BatchReport", "BatchRunner", "combined_stats"]
