"""Administrative entry point for entity deduplication.

Usage::

  conezia-dedup deduplicate user@example.com            # list duplicate groups
  conezia-dedup deduplicate user@example.com --merge    # merge them
  conezia-dedup deduplicate --all --merge --output report.json

Exit codes: 0 on success, 2 when at least one group failed to merge, 1 on
an unknown user or a fatal storage error.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import typer

from ..config import DedupSettings, get_settings
from ..errors import BatchAbortedError, NotFoundError, StorageError
from ..logging import get_logger, setup_logging
from ..models import MergeFailure
from ..repository.base import EntityStore
from .batch import BatchReport, BatchRunner, combined_stats

logger = get_logger("dedup.cli")

app = typer.Typer(help="Find and merge duplicate entities", no_args_is_help=True)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_PARTIAL = 2


def build_store(settings: DedupSettings) -> EntityStore:
    from ..repository.postgres import PostgresEntityStore

    return PostgresEntityStore.from_settings(settings)


def _print_report(report: BatchReport) -> None:
    typer.echo(f"User: {report.owner_id}")
    if not report.clusters:
        typer.echo("No duplicates found.")
        typer.echo()
        return

    typer.echo(f"Found {len(report.clusters)} duplicate groups")
    typer.echo()
    for index, cluster in enumerate(report.clusters, 1):
        typer.echo(f"Group {index}")
        typer.echo(f"  Primary (keep): {cluster.primary.name} ({cluster.primary.id})")
        for duplicate in cluster.duplicates:
            typer.echo(f"  Duplicate: {duplicate.name} ({duplicate.id})")
        typer.echo(f"  Match reasons: {', '.join(cluster.match_reasons)}")
        typer.echo()

    for failure in report.failures:
        typer.echo(f"  Failed: {failure.cluster.primary.name} ({failure.error_kind}: {failure.reason})")


def _write_output(path: Path, reports: List[BatchReport], mode: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "mode": mode,
        "stats": combined_stats(reports).as_dict(),
        "reports": [report.as_dict() for report in reports],
    }
    with open(path, "w") as f:
        json.dump(payload, f, indent=2, default=str)
    typer.echo(f"Report written to: {path}")


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override LOG_LEVEL"),
) -> None:
    setup_logging(log_level or get_settings().log_level)


@app.command()
def deduplicate(
    user: Optional[str] = typer.Argument(None, help="Owner email address or UUID"),
    all_users: bool = typer.Option(False, "--all", help="Process every user"),
    merge: bool = typer.Option(False, "--merge", help="Merge duplicates (default lists them only)"),
    output: Optional[Path] = typer.Option(None, "--output", help="Write a JSON report to this file"),
) -> None:
    """Detect duplicate entities and optionally merge them."""
    if bool(user) == all_users:
        typer.echo("Error: pass either a USER or --all", err=True)
        raise typer.Exit(code=EXIT_FATAL)

    settings = get_settings()
    mode = "apply" if merge else "dry-run"
    store = build_store(settings)
    runner = BatchRunner(store, settings=settings)

    typer.echo(f"Entity deduplication - {mode.upper()} mode")
    typer.echo()

    try:
        if all_users:
            reports = runner.run_all(dry_run=not merge)
        else:
            owner_id = store.resolve_owner(user)
            reports = [runner.run(owner_id, dry_run=not merge)]
    except NotFoundError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=EXIT_FATAL)
    except BatchAbortedError as exc:
        logger.error(
            "deduplicate_aborted",
            error=str(exc),
            not_attempted=len(exc.not_attempted),
            **exc.stats.as_dict(),
        )
        typer.echo(f"Error: {exc}", err=True)
        typer.echo(
            f"Merged before abort: {exc.stats.merged_groups}, failed: {exc.stats.failed_groups}, "
            f"not attempted: {len(exc.not_attempted)}",
            err=True,
        )
        for cluster in exc.not_attempted:
            typer.echo(f"  Not attempted: {cluster.primary.name} ({cluster.primary.id})", err=True)
        raise typer.Exit(code=EXIT_FATAL)
    except StorageError as exc:
        logger.error("deduplicate_failed", error=str(exc))
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=EXIT_FATAL)

    for report in reports:
        _print_report(report)

    stats = combined_stats(reports)
    total_groups = sum(len(report.clusters) for report in reports)
    typer.echo("=" * 60)
    typer.echo(f"Total groups: {total_groups}")
    if merge:
        typer.echo(f"Merged: {stats.merged_groups}")
        typer.echo(f"Duplicates removed: {stats.total_duplicates_removed}")
        typer.echo(f"Failed: {stats.failed_groups}")
        if stats.skipped_groups:
            typer.echo(f"Skipped: {stats.skipped_groups}")
    elif total_groups:
        typer.echo("Run with --merge to merge these duplicates.")
    typer.echo(f"Mode: {mode.upper()}")

    if output is not None:
        _write_output(output, reports, mode)

    if any(isinstance(o, MergeFailure) for report in reports for o in report.outcomes):
        raise typer.Exit(code=EXIT_PARTIAL)


if __name__ == "__main__":
    app()
