from __future__ import annotations

import json
import logging
import time
from datetime import UTC, datetime, timedelta

from common.utils import now_utc_iso, parse_iso_datetime

from jobboard.models import (
    AggregationRunResponse,
    BatchVisaAnalysisResponse,
    BatchVisaItem,
    CleanupResult,
    CleanupStats,
    JobVisaAnalysisResponse,
    NormalizedJob,
    ProviderRunResult,
    ProviderState,
    RunTrigger,
)
from jobboard.providers import FetchParams, JobProvider
from jobboard.repository import JobRepository
from jobboard.visa import detect_visa_sponsorship

LOGGER = logging.getLogger("jobharbor.aggregator")

DEFAULT_MAX_AGE_DAYS = 21
DEFAULT_RETENTION_DAYS = 90


def apply_visa_detection(job: NormalizedJob) -> NormalizedJob:
    if job.visa_sponsorship is not None:
        return job
    analysis = detect_visa_sponsorship(job.title, job.description, job.company)
    return job.model_copy(update={"visa_sponsorship": analysis.sponsorship()})


class JobAggregator:
    """Runs every provider in turn and upserts what each one returns.

    A provider that raises is recorded as an error and backed off; the
    remaining providers still run.
    """

    def __init__(self, repository: JobRepository, providers: list[JobProvider]) -> None:
        self.repository = repository
        self.providers = providers

    @property
    def sources(self) -> list[str]:
        return [provider.source for provider in self.providers]

    def provider_states(self) -> list[ProviderState]:
        states: list[ProviderState] = []
        for provider in self.providers:
            state = self.repository.get_provider_state(provider.source)
            if state is None:
                state = ProviderState(source=provider.source)
            state.configured = provider.has_credentials()
            states.append(state)
        return states

    def aggregate(
        self,
        *,
        trigger: RunTrigger = "manual",
        params: FetchParams | None = None,
        respect_backoff: bool = False,
        sources: list[str] | None = None,
    ) -> AggregationRunResponse:
        params = params or FetchParams()
        selected = self.providers
        if sources:
            requested = {source.upper() for source in sources}
            unknown = requested.difference(self.sources)
            if unknown:
                raise ValueError(f"Unknown sources: {', '.join(sorted(unknown))}")
            selected = [provider for provider in self.providers if provider.source in requested]

        started_at = now_utc_iso()
        run_id = self.repository.start_aggregation_run(
            started_at=started_at,
            trigger=trigger,
            respect_backoff=respect_backoff,
        )
        results = [
            self._run_provider(
                provider,
                run_id=run_id,
                trigger=trigger,
                params=params,
                respect_backoff=respect_backoff,
            )
            for provider in selected
        ]
        finished_at = now_utc_iso()
        self.repository.finish_aggregation_run(run_id, finished_at=finished_at, results=results)

        response = AggregationRunResponse(
            run_id=run_id,
            started_at=started_at,
            finished_at=finished_at,
            trigger=trigger,
            respect_backoff=respect_backoff,
            requested_sources=len(results),
            successful_sources=sum(1 for item in results if item.status == "ok"),
            failed_sources=sum(1 for item in results if item.status == "error"),
            skipped_sources=sum(1 for item in results if item.status == "skipped"),
            total_fetched=sum(item.fetched for item in results),
            total_inserted=sum(item.inserted for item in results),
            total_updated=sum(item.updated for item in results),
            total_failed=sum(item.failed for item in results),
            results=results,
        )
        LOGGER.info(
            json.dumps(
                {
                    "event": "aggregation_complete",
                    "run_id": run_id,
                    "trigger": trigger,
                    "requested_sources": response.requested_sources,
                    "successful_sources": response.successful_sources,
                    "failed_sources": response.failed_sources,
                    "skipped_sources": response.skipped_sources,
                    "total_inserted": response.total_inserted,
                    "total_updated": response.total_updated,
                }
            )
        )
        return response

    def _in_backoff(self, source: str, now_iso: str) -> bool:
        state = self.repository.get_provider_state(source)
        if state is None or not state.next_eligible_run_at:
            return False
        parsed_now = parse_iso_datetime(now_iso)
        parsed_next = parse_iso_datetime(state.next_eligible_run_at)
        return bool(parsed_now and parsed_next and parsed_next > parsed_now)

    def _run_provider(
        self,
        provider: JobProvider,
        *,
        run_id: int,
        trigger: RunTrigger,
        params: FetchParams,
        respect_backoff: bool,
    ) -> ProviderRunResult:
        ran_at = now_utc_iso()
        started = time.perf_counter()
        status = "ok"
        error: str | None = None
        fetched = inserted = updated = failed = 0

        if not provider.is_configured():
            status = "skipped"
            error = "not configured"
        elif respect_backoff and self._in_backoff(provider.source, ran_at):
            status = "skipped"
        else:
            try:
                jobs = [apply_visa_detection(job) for job in provider.fetch_jobs(params)]
                summary = self.repository.upsert_jobs(jobs)
            except Exception as exc:
                status = "error"
                error = str(exc) or exc.__class__.__name__
            else:
                fetched = len(jobs)
                inserted = summary.inserted
                updated = summary.updated
                failed = summary.failed

        duration_ms = (time.perf_counter() - started) * 1000
        result = self.repository.record_provider_run(
            provider.source,
            run_id=run_id,
            ran_at=ran_at,
            trigger=trigger,
            status=status,
            fetched=fetched,
            inserted=inserted,
            updated=updated,
            failed=failed,
            error=error,
            respect_backoff=respect_backoff,
            duration_ms=duration_ms,
        )
        log = LOGGER.warning if status == "error" else LOGGER.info
        log(
            json.dumps(
                {
                    "event": "provider_run",
                    "run_id": run_id,
                    "source": provider.source,
                    "status": status,
                    "fetched": fetched,
                    "inserted": inserted,
                    "updated": updated,
                    "failed": failed,
                    "backoff_seconds": result.backoff_seconds,
                    "duration_ms": result.duration_ms,
                    "error": error,
                }
            )
        )
        return result


def _cutoff(days: int, now: datetime | None = None) -> str:
    reference = now or datetime.now(UTC)
    return (reference - timedelta(days=days)).isoformat()


def cleanup_stale_jobs(
    repository: JobRepository,
    *,
    max_age_days: int = DEFAULT_MAX_AGE_DAYS,
    trigger: RunTrigger = "manual",
    now: datetime | None = None,
) -> CleanupResult:
    deactivated = repository.deactivate_stale_jobs(_cutoff(max_age_days, now))
    result = repository.record_cleanup_run(
        ran_at=now_utc_iso(),
        trigger=trigger,
        max_age_days=max_age_days,
        retention_days=None,
        deactivated=deactivated,
        deleted=0,
    )
    LOGGER.info(json.dumps({"event": "cleanup_complete", **result.model_dump()}))
    return result


def perform_full_cleanup(
    repository: JobRepository,
    *,
    max_age_days: int = DEFAULT_MAX_AGE_DAYS,
    retention_days: int = DEFAULT_RETENTION_DAYS,
    trigger: RunTrigger = "manual",
    now: datetime | None = None,
) -> CleanupResult:
    """Deactivate stale postings, then delete long-inactive ones nobody saved."""
    deactivated = repository.deactivate_stale_jobs(_cutoff(max_age_days, now))
    deleted = repository.delete_expired_inactive_jobs(_cutoff(retention_days, now))
    result = repository.record_cleanup_run(
        ran_at=now_utc_iso(),
        trigger=trigger,
        max_age_days=max_age_days,
        retention_days=retention_days,
        deactivated=deactivated,
        deleted=deleted,
    )
    LOGGER.info(json.dumps({"event": "cleanup_complete", **result.model_dump()}))
    return result


def cleanup_stats(
    repository: JobRepository,
    *,
    max_age_days: int = DEFAULT_MAX_AGE_DAYS,
) -> CleanupStats:
    counts = repository.cleanup_counts(_cutoff(max_age_days))
    return CleanupStats(
        total_jobs=int(counts["total_jobs"]),
        active_jobs=int(counts["active_jobs"]),
        inactive_jobs=int(counts["total_jobs"]) - int(counts["active_jobs"]),
        stale_active_jobs=int(counts["stale_active_jobs"]),
        max_age_days=max_age_days,
        oldest_active_posted_date=counts["oldest_active_posted_date"],
        last_cleanup=repository.last_cleanup_run(),
    )


def analyze_job_visa(
    repository: JobRepository,
    job_id: str,
    *,
    update: bool,
) -> JobVisaAnalysisResponse:
    job = repository.get_job_or_raise(job_id)
    analysis = detect_visa_sponsorship(job.title, job.description, job.company)
    detected = analysis.sponsorship()
    changed = detected != job.visa_sponsorship
    updated = False
    if update and changed:
        updated = repository.update_visa_sponsorship(job.id, detected)
    return JobVisaAnalysisResponse(
        job_id=job.id,
        title=job.title,
        analysis=analysis,
        current=detected if updated else job.visa_sponsorship,
        changed=changed,
        updated=updated,
    )


def batch_analyze_visa(
    repository: JobRepository,
    *,
    limit: int = 100,
    source: str | None = None,
) -> BatchVisaAnalysisResponse:
    """Re-run detection over recent active jobs and store flags that changed."""
    jobs = repository.list_active_jobs(limit=limit, source=source)
    results: list[BatchVisaItem] = []
    for job in jobs:
        analysis = detect_visa_sponsorship(job.title, job.description, job.company)
        detected = analysis.sponsorship()
        if detected == job.visa_sponsorship:
            continue
        repository.update_visa_sponsorship(job.id, detected)
        results.append(
            BatchVisaItem(
                job_id=job.id,
                title=job.title,
                previous=job.visa_sponsorship,
                visa_sponsorship=detected,
                confidence=analysis.confidence,
            )
        )
    LOGGER.info(
        json.dumps(
            {
                "event": "visa_batch_analysis",
                "analyzed": len(jobs),
                "updated": len(results),
                "source": source,
            }
        )
    )
    return BatchVisaAnalysisResponse(analyzed=len(jobs), updated=len(results), results=results)
