from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from collections.abc import Sequence

import httpx

from jobboard.aggregator import (
    DEFAULT_MAX_AGE_DAYS,
    DEFAULT_RETENTION_DAYS,
    JobAggregator,
    cleanup_stats,
    perform_full_cleanup,
)
from jobboard.providers import FetchParams, JobProvider, ProviderSettings, build_default_providers
from jobboard.repository import DEFAULT_DB_PATH, JobRepository

LOGGER = logging.getLogger("jobharbor.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="jobharbor",
        description="Aggregate, clean up and inspect the JobHarbor job database.",
    )
    parser.add_argument(
        "--database",
        default=os.getenv("JOBBOARD_DB_PATH", DEFAULT_DB_PATH),
        help="Path to the SQLite database file.",
    )
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"))
    subparsers = parser.add_subparsers(dest="command", required=True)

    aggregate = subparsers.add_parser("aggregate", help="Fetch jobs from the configured providers.")
    aggregate.add_argument(
        "--source",
        action="append",
        dest="sources",
        default=[],
        help="Only run this provider. Repeat for several.",
    )
    aggregate.add_argument("--respect-backoff", action="store_true")
    aggregate.add_argument("--keywords", default=None)
    aggregate.add_argument("--location", default=None)
    aggregate.add_argument("--pages", type=int, default=1, choices=range(1, 6))

    cleanup = subparsers.add_parser("cleanup", help="Deactivate stale and delete expired jobs.")
    cleanup.add_argument("--max-age-days", type=int, default=DEFAULT_MAX_AGE_DAYS)
    cleanup.add_argument("--retention-days", type=int, default=DEFAULT_RETENTION_DAYS)

    stats = subparsers.add_parser("stats", help="Print job and cleanup counts.")
    stats.add_argument("--max-age-days", type=int, default=DEFAULT_MAX_AGE_DAYS)
    return parser


def _run_aggregate(
    args: argparse.Namespace,
    repository: JobRepository,
    providers: list[JobProvider] | None,
) -> dict:
    params = FetchParams(pages=args.pages)
    if args.keywords:
        params.keywords = args.keywords
    if args.location:
        params.location = args.location

    if providers is not None:
        aggregator = JobAggregator(repository, providers)
        return aggregator.aggregate(
            trigger="cli",
            params=params,
            respect_backoff=args.respect_backoff,
            sources=args.sources,
        ).model_dump()

    settings = ProviderSettings.from_env()
    with httpx.Client(follow_redirects=True) as client:
        aggregator = JobAggregator(repository, build_default_providers(settings, client))
        return aggregator.aggregate(
            trigger="cli",
            params=params,
            respect_backoff=args.respect_backoff,
            sources=args.sources,
        ).model_dump()


def main(
    argv: Sequence[str] | None = None,
    *,
    providers: list[JobProvider] | None = None,
) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    repository = JobRepository(database_path=args.database)
    repository.connect()
    try:
        if args.command == "aggregate":
            try:
                result = _run_aggregate(args, repository, providers)
            except ValueError as exc:
                parser.error(str(exc))
        elif args.command == "cleanup":
            result = perform_full_cleanup(
                repository,
                max_age_days=args.max_age_days,
                retention_days=args.retention_days,
                trigger="cli",
            ).model_dump()
        else:
            result = {
                "jobs": repository.job_stats().model_dump(),
                "cleanup": cleanup_stats(repository, max_age_days=args.max_age_days).model_dump(),
            }
    finally:
        repository.close()

    print(json.dumps(result, indent=2))
    if args.command == "aggregate" and result["failed_sources"]:
        LOGGER.warning("%s provider(s) failed", result["failed_sources"])
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
