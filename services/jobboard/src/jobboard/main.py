from __future__ import annotations

import asyncio
import contextlib
import hashlib
import json
import logging
import os
import threading
import time
import uuid
from collections.abc import Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import Any, Literal, TypeVar

import httpx
from common.utils import now_utc_iso, parse_iso_datetime
from fastapi import BackgroundTasks, FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from jobboard.aggregator import (
    DEFAULT_MAX_AGE_DAYS,
    DEFAULT_RETENTION_DAYS,
    JobAggregator,
    analyze_job_visa,
    apply_visa_detection,
    batch_analyze_visa,
    cleanup_stale_jobs,
    cleanup_stats,
    perform_full_cleanup,
)
from jobboard.models import (
    EMPLOYMENT_TYPES,
    EXPERIENCE_LEVELS,
    AggregateRequest,
    AggregationRunResponse,
    Application,
    ApplicationUpdateRequest,
    BatchVisaAnalysisResponse,
    BookmarkedJobsResponse,
    BookmarkToggleResponse,
    BulkRemoveBookmarksRequest,
    BulkRemoveBookmarksResponse,
    CleanupRequest,
    CleanupResult,
    CleanupStats,
    JobSearchFilters,
    JobSearchResponse,
    JobStatsResponse,
    JobUpsertRequest,
    JobVisaAnalysisResponse,
    MatchResult,
    MatchScoreResponse,
    OrganizedSavedJobsResponse,
    ProviderRunHistoryItem,
    ProviderState,
    RecommendationHistoryResponse,
    RecommendationResponse,
    RecommendedJob,
    RefreshStats,
    RefreshTriggerResponse,
    SavedJobsAnalyticsResponse,
    SimilarJobsResponse,
    StoredJob,
    SystemHealth,
    UniversityJobsResponse,
    UpsertSummary,
    User,
    UserUpsertRequest,
)
from jobboard.providers import FetchParams, JobProvider, ProviderSettings, build_default_providers
from jobboard.refresh import DEFAULT_REFRESH_TIME, DailyRefreshService, RefreshInProgressError
from jobboard.repository import DEFAULT_DB_PATH, JobRepository
from jobboard.saved import build_saved_analytics, organize_saved_jobs
from jobboard.scoring import find_similar_jobs, rank_jobs_for_user, score_job

DAILY_PICKS_LIMIT = 10
DAILY_PICKS_WINDOW_DAYS = 7
LOGGER = logging.getLogger("jobharbor.jobboard")

T = TypeVar("T")


def parse_api_tokens(raw: str) -> dict[str, set[str]]:
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise ValueError("JOBBOARD_API_TOKENS_JSON must be a JSON object.")

    token_map: dict[str, set[str]] = {}
    for token, scopes_value in parsed.items():
        if not isinstance(token, str) or not token.strip():
            raise ValueError("Token keys must be non-empty strings.")
        if isinstance(scopes_value, str):
            scopes = {scopes_value.strip()} if scopes_value.strip() else set()
        elif isinstance(scopes_value, list):
            scopes = {
                str(scope).strip()
                for scope in scopes_value
                if isinstance(scope, str) and scope.strip()
            }
        else:
            raise ValueError("Token scopes must be a string or list of strings.")
        token_map[token] = scopes
    return token_map


def build_auth_subject(token: str) -> str:
    token_digest = hashlib.sha1(token.encode()).hexdigest()[:12]
    return f"token:{token_digest}"


def env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    return int(raw)


class MetricsSnapshot(BaseModel):
    generated_at: str
    totals: dict[str, int]
    endpoints: dict[str, dict[str, float | int]]


class MetricsStore:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._totals = {"requests": 0, "errors": 0}
        self._endpoints: dict[str, dict[str, float | int]] = {}

    def observe(self, *, method: str, path: str, status_code: int, duration_ms: float) -> None:
        key = f"{method} {path}"
        bucket = f"{status_code // 100}xx"
        with self._lock:
            self._totals["requests"] += 1
            if status_code >= 400:
                self._totals["errors"] += 1
            endpoint = self._endpoints.setdefault(
                key,
                {
                    "count": 0,
                    "2xx": 0,
                    "4xx": 0,
                    "5xx": 0,
                    "latency_ms_sum": 0.0,
                    "latency_ms_avg": 0.0,
                },
            )
            endpoint["count"] = int(endpoint["count"]) + 1
            if bucket in ("2xx", "4xx", "5xx"):
                endpoint[bucket] = int(endpoint[bucket]) + 1
            endpoint["latency_ms_sum"] = float(endpoint["latency_ms_sum"]) + duration_ms
            endpoint["latency_ms_avg"] = (
                float(endpoint["latency_ms_sum"]) / int(endpoint["count"])
            )

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                generated_at=now_utc_iso(),
                totals=dict(self._totals),
                endpoints={key: dict(value) for key, value in self._endpoints.items()},
            )


def metrics_path(request: Request) -> str:
    """Route template used as the metrics key."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


def build_recommendations(
    repository: JobRepository,
    user_id: str,
    *,
    kind: Literal["personalized", "daily"],
    limit: int,
) -> RecommendationResponse:
    user = repository.get_user_or_raise(user_id)
    now = datetime.now(UTC)
    posted_after = None
    if kind == "daily":
        posted_after = (now - timedelta(days=DAILY_PICKS_WINDOW_DAYS)).isoformat()
    jobs = repository.list_active_jobs(posted_after=posted_after)
    tracked = {application.job_id for application in repository.list_applications(user_id)}
    ranked = rank_jobs_for_user(user, jobs, limit=limit, exclude_job_ids=tracked, now=now)
    run_id, generated_at = repository.record_recommendations(
        user.user_id,
        kind,
        [(job.id, job.title, match.match_score) for job, match in ranked],
    )
    return RecommendationResponse(
        run_id=run_id,
        user_id=user.user_id,
        kind=kind,
        generated_at=generated_at,
        date=now.date().isoformat() if kind == "daily" else None,
        total=len(ranked),
        recommendations=[
            RecommendedJob(
                job=job,
                match_score=match.match_score,
                match_reasons=match.match_reasons,
            )
            for job, match in ranked
        ],
    )


def score_user_job(repository: JobRepository, user_id: str, job_id: str) -> MatchResult:
    user = repository.get_user_or_raise(user_id)
    job = repository.get_job_or_raise(job_id)
    return score_job(user, job)


def organized_saved_jobs(repository: JobRepository, user_id: str) -> OrganizedSavedJobsResponse:
    bookmarked = repository.list_bookmarked_jobs(user_id)
    applications = repository.list_applications(user_id)
    application_jobs = repository.get_jobs([application.job_id for application in applications])
    return organize_saved_jobs(user_id, bookmarked, applications, application_jobs)


def saved_jobs_analytics(repository: JobRepository, user_id: str) -> SavedJobsAnalyticsResponse:
    bookmarked = repository.list_bookmarked_jobs(user_id)
    return SavedJobsAnalyticsResponse(
        user_id=user_id,
        total_saved=len(bookmarked),
        analytics=build_saved_analytics(bookmarked),
    )


def similar_jobs(repository: JobRepository, job_id: str, limit: int) -> SimilarJobsResponse:
    target = repository.get_job_or_raise(job_id)
    candidates = repository.list_active_jobs()
    return SimilarJobsResponse(
        job_id=target.id,
        similar=find_similar_jobs(target, candidates, limit=limit),
    )


def _validate_choice(value: str | None, choices: tuple[str, ...], field: str) -> str | None:
    if value is None or not value.strip():
        return None
    normalized = value.strip().upper()
    if normalized not in choices:
        raise HTTPException(
            status_code=422,
            detail=f"{field} must be one of: {', '.join(choices)}",
        )
    return normalized


def _validate_timestamp(value: str | None, field: str) -> str | None:
    if not value:
        return None
    parsed = parse_iso_datetime(value)
    if parsed is None:
        raise HTTPException(status_code=422, detail=f"{field} must be an ISO-8601 datetime.")
    return parsed.astimezone(UTC).isoformat()


def create_app(
    *,
    database_path: str | None = None,
    api_key: str | None = None,
    api_tokens: dict[str, list[str] | set[str]] | None = None,
    providers: list[JobProvider] | None = None,
    provider_settings: ProviderSettings | None = None,
    refresh_enabled: bool | None = None,
    refresh_time: str | None = None,
    max_age_days: int | None = None,
    retention_days: int | None = None,
) -> FastAPI:
    resolved_path = database_path or os.getenv("JOBBOARD_DB_PATH", DEFAULT_DB_PATH)
    resolved_api_key = (api_key or os.getenv("JOBBOARD_API_KEY", "")).strip() or None
    resolved_token_map: dict[str, set[str]] = {}
    if api_tokens is not None:
        resolved_token_map = {
            token: {str(scope).strip() for scope in scopes if str(scope).strip()}
            for token, scopes in api_tokens.items()
            if token.strip()
        }
    else:
        raw_tokens = os.getenv("JOBBOARD_API_TOKENS_JSON", "").strip()
        if raw_tokens:
            resolved_token_map = parse_api_tokens(raw_tokens)

    if resolved_api_key:
        resolved_token_map.setdefault(resolved_api_key, set()).add("*")

    resolved_refresh_enabled = (
        refresh_enabled if refresh_enabled is not None else env_flag("ENABLE_DAILY_JOB_REFRESH")
    )
    resolved_refresh_time = refresh_time or os.getenv("JOB_REFRESH_TIME", DEFAULT_REFRESH_TIME)
    resolved_max_age_days = max_age_days or env_int("JOB_MAX_AGE_DAYS", DEFAULT_MAX_AGE_DAYS)
    resolved_retention_days = retention_days or env_int(
        "JOB_RETENTION_DAYS",
        DEFAULT_RETENTION_DAYS,
    )

    repository = JobRepository(database_path=resolved_path)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await run_in_threadpool(repository.connect)
        http_client: httpx.Client | None = None
        active_providers = providers
        if active_providers is None:
            settings = provider_settings or ProviderSettings.from_env()
            http_client = httpx.Client(follow_redirects=True)
            active_providers = build_default_providers(settings, http_client)

        aggregator = JobAggregator(repository, active_providers)
        refresh_service = DailyRefreshService(
            aggregator,
            enabled=resolved_refresh_enabled,
            refresh_time=resolved_refresh_time,
            max_age_days=resolved_max_age_days,
            retention_days=resolved_retention_days,
        )
        app.state.repository = repository
        app.state.aggregator = aggregator
        app.state.refresh_service = refresh_service
        app.state.auth_token_scopes = resolved_token_map
        app.state.metrics = MetricsStore()
        app.state.max_age_days = resolved_max_age_days
        app.state.retention_days = resolved_retention_days

        refresh_task: asyncio.Task | None = None
        if resolved_refresh_enabled:
            refresh_task = asyncio.create_task(refresh_service.run_forever())
        try:
            yield
        finally:
            if refresh_task:
                refresh_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await refresh_task
            if http_client is not None:
                http_client.close()
            await run_in_threadpool(repository.close)

    app = FastAPI(title="JobHarbor Job Board", version="0.1.0", lifespan=lifespan)

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.perf_counter() - started) * 1000
            request.app.state.metrics.observe(
                method=request.method,
                path=metrics_path(request),
                status_code=500,
                duration_ms=duration_ms,
            )
            LOGGER.exception(
                json.dumps(
                    {
                        "event": "request_complete",
                        "request_id": request_id,
                        "method": request.method,
                        "path": request.url.path,
                        "status_code": 500,
                        "duration_ms": round(duration_ms, 3),
                        "error": str(exc),
                    }
                )
            )
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal Server Error", "request_id": request_id},
                headers={"x-request-id": request_id},
            )

        duration_ms = (time.perf_counter() - started) * 1000
        request.app.state.metrics.observe(
            method=request.method,
            path=metrics_path(request),
            status_code=response.status_code,
            duration_ms=duration_ms,
        )
        response.headers["x-request-id"] = request_id
        LOGGER.info(
            json.dumps(
                {
                    "event": "request_complete",
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": round(duration_ms, 3),
                    "source_ip": request.client.host if request.client else None,
                }
            )
        )
        return response

    def require_scope(request: Request, scope: str) -> str | None:
        token_map: dict[str, set[str]] = request.app.state.auth_token_scopes
        if not token_map:
            return None
        provided = request.headers.get("x-api-key", "")
        scopes = token_map.get(provided) if provided else None
        if scopes is None:
            LOGGER.warning(
                json.dumps(
                    {
                        "event": "auth_denied",
                        "request_id": getattr(request.state, "request_id", None),
                        "path": request.url.path,
                        "scope": scope,
                        "reason": "missing api key" if not provided else "unknown api key",
                    }
                )
            )
            raise HTTPException(status_code=401, detail="Unauthorized")

        auth_subject = build_auth_subject(provided)
        if "*" not in scopes and scope not in scopes:
            LOGGER.warning(
                json.dumps(
                    {
                        "event": "auth_denied",
                        "request_id": getattr(request.state, "request_id", None),
                        "path": request.url.path,
                        "scope": scope,
                        "auth_subject": auth_subject,
                        "reason": "missing required scope",
                    }
                )
            )
            raise HTTPException(status_code=403, detail="Forbidden")
        return auth_subject

    async def call_repository(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return await run_in_threadpool(func, *args, **kwargs)
        except KeyError as exc:
            detail = exc.args[0] if exc.args else "Not found"
            raise HTTPException(status_code=404, detail=detail) from exc

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "jobboard"}

    @app.get("/metrics", response_model=MetricsSnapshot)
    async def metrics(request: Request) -> MetricsSnapshot:
        return request.app.state.metrics.snapshot()

    @app.get("/api/jobs/search", response_model=JobSearchResponse)
    async def search_jobs(
        request: Request,
        keywords: str | None = Query(default=None, max_length=200),
        location: str | None = Query(default=None, max_length=200),
        remote: bool | None = None,
        h1b: bool | None = None,
        opt: bool | None = None,
        stem_opt: bool | None = None,
        employment_type: str | None = None,
        experience_level: str | None = None,
        skills: str | None = Query(default=None, description="Comma-separated skills"),
        source: str | None = None,
        salary_min: float | None = Query(default=None, ge=0),
        posted_within_days: int | None = Query(default=None, ge=1, le=365),
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=20, ge=1, le=100),
    ) -> JobSearchResponse:
        filters = JobSearchFilters(
            keywords=keywords,
            location=location,
            remote=remote,
            h1b=h1b,
            opt=opt,
            stem_opt=stem_opt,
            employment_type=_validate_choice(employment_type, EMPLOYMENT_TYPES, "employment_type"),
            experience_level=_validate_choice(
                experience_level,
                EXPERIENCE_LEVELS,
                "experience_level",
            ),
            skills=[skill for skill in (skills or "").split(",") if skill.strip()],
            source=source,
            salary_min=salary_min,
            posted_within_days=posted_within_days,
        )
        jobs, pagination = await run_in_threadpool(
            request.app.state.repository.search_jobs,
            filters,
            page=page,
            limit=limit,
        )
        return JobSearchResponse(jobs=jobs, pagination=pagination)

    @app.get("/api/jobs/stats", response_model=JobStatsResponse)
    async def job_stats(request: Request) -> JobStatsResponse:
        return await run_in_threadpool(request.app.state.repository.job_stats)

    @app.get("/api/jobs/university", response_model=UniversityJobsResponse)
    async def university_jobs(
        request: Request,
        keywords: str | None = Query(default=None, max_length=200),
        location: str | None = Query(default=None, max_length=200),
        employment_type: str | None = None,
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=50, ge=1, le=100),
    ) -> UniversityJobsResponse:
        jobs, pagination, stats = await run_in_threadpool(
            request.app.state.repository.list_university_jobs,
            keywords=keywords,
            location=location,
            employment_type=_validate_choice(employment_type, EMPLOYMENT_TYPES, "employment_type"),
            page=page,
            limit=limit,
        )
        return UniversityJobsResponse(jobs=jobs, pagination=pagination, stats=stats)

    @app.post("/api/jobs", response_model=UpsertSummary)
    async def upsert_jobs(payload: JobUpsertRequest, request: Request) -> UpsertSummary:
        require_scope(request, "jobs:write")
        jobs = [apply_visa_detection(job) for job in payload.jobs]
        return await run_in_threadpool(request.app.state.repository.upsert_jobs, jobs)

    @app.post("/api/jobs/aggregate", response_model=AggregationRunResponse)
    async def aggregate_jobs(
        request: Request,
        payload: AggregateRequest | None = None,
    ) -> AggregationRunResponse:
        require_scope(request, "aggregate")
        payload = payload or AggregateRequest()
        params = FetchParams(pages=payload.pages)
        if payload.keywords:
            params.keywords = payload.keywords
        if payload.location:
            params.location = payload.location
        try:
            return await run_in_threadpool(
                request.app.state.aggregator.aggregate,
                trigger="manual",
                params=params,
                respect_backoff=payload.respect_backoff,
                sources=payload.sources,
            )
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc

    @app.get("/api/jobs/system/providers", response_model=list[ProviderState])
    async def provider_states(request: Request) -> list[ProviderState]:
        return await run_in_threadpool(request.app.state.aggregator.provider_states)

    @app.get("/api/jobs/system/aggregation-history", response_model=list[ProviderRunHistoryItem])
    async def aggregation_history(
        request: Request,
        limit: int = Query(default=50, ge=1, le=500),
        offset: int = Query(default=0, ge=0),
        source: str | None = None,
        trigger: Literal["manual", "scheduled", "cli"] | None = None,
        status: Literal["ok", "error", "skipped"] | None = None,
        ran_after: str | None = None,
        ran_before: str | None = None,
    ) -> list[ProviderRunHistoryItem]:
        return await run_in_threadpool(
            request.app.state.repository.list_provider_run_history,
            limit=limit,
            offset=offset,
            source=source,
            trigger=trigger,
            status=status,
            ran_after=_validate_timestamp(ran_after, "ran_after"),
            ran_before=_validate_timestamp(ran_before, "ran_before"),
        )

    @app.get("/api/jobs/system/refresh-stats", response_model=RefreshStats)
    async def refresh_stats(request: Request) -> RefreshStats:
        return request.app.state.refresh_service.stats()

    @app.post("/api/jobs/system/refresh", response_model=RefreshTriggerResponse, status_code=202)
    async def trigger_refresh(
        request: Request,
        background_tasks: BackgroundTasks,
    ) -> RefreshTriggerResponse:
        require_scope(request, "aggregate")
        service: DailyRefreshService = request.app.state.refresh_service
        try:
            started_at = service.claim()
        except RefreshInProgressError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        background_tasks.add_task(service.execute_claimed, "manual", started_at)
        return RefreshTriggerResponse(status="started", started_at=started_at)

    @app.post("/api/jobs/system/cleanup", response_model=CleanupResult)
    async def run_cleanup(
        request: Request,
        payload: CleanupRequest | None = None,
    ) -> CleanupResult:
        require_scope(request, "aggregate")
        payload = payload or CleanupRequest()
        max_age = payload.max_age_days or request.app.state.max_age_days
        if not payload.full:
            return await run_in_threadpool(
                cleanup_stale_jobs,
                request.app.state.repository,
                max_age_days=max_age,
            )
        return await run_in_threadpool(
            perform_full_cleanup,
            request.app.state.repository,
            max_age_days=max_age,
            retention_days=payload.retention_days or request.app.state.retention_days,
        )

    @app.get("/api/jobs/system/cleanup-stats", response_model=CleanupStats)
    async def get_cleanup_stats(request: Request) -> CleanupStats:
        return await run_in_threadpool(
            cleanup_stats,
            request.app.state.repository,
            max_age_days=request.app.state.max_age_days,
        )

    @app.get("/api/jobs/system/health", response_model=SystemHealth)
    async def system_health(request: Request) -> SystemHealth:
        repository: JobRepository = request.app.state.repository
        database_ok = await run_in_threadpool(repository.ping)
        total_jobs, active_jobs = (0, 0)
        if database_ok:
            total_jobs, active_jobs = await run_in_threadpool(repository.count_jobs)
        providers_state = await run_in_threadpool(request.app.state.aggregator.provider_states)
        return SystemHealth(
            status="ok" if database_ok else "degraded",
            generated_at=now_utc_iso(),
            database="ok" if database_ok else "error",
            total_jobs=total_jobs,
            active_jobs=active_jobs,
            providers=providers_state,
            refresh=request.app.state.refresh_service.stats(),
        )

    @app.post("/api/jobs/batch/analyze-visa", response_model=BatchVisaAnalysisResponse)
    async def batch_visa_analysis(
        request: Request,
        limit: int = Query(default=100, ge=1, le=500),
        source: str | None = None,
    ) -> BatchVisaAnalysisResponse:
        require_scope(request, "aggregate")
        return await run_in_threadpool(
            batch_analyze_visa,
            request.app.state.repository,
            limit=limit,
            source=source,
        )

    @app.post("/api/jobs/{job_id}/analyze-visa", response_model=JobVisaAnalysisResponse)
    async def job_visa_analysis(
        job_id: str,
        request: Request,
        update: bool = Query(default=False),
    ) -> JobVisaAnalysisResponse:
        if update:
            require_scope(request, "jobs:write")
        return await call_repository(
            analyze_job_visa,
            request.app.state.repository,
            job_id,
            update=update,
        )

    @app.get("/api/jobs/{job_id}/similar", response_model=SimilarJobsResponse)
    async def get_similar_jobs(
        job_id: str,
        request: Request,
        limit: int = Query(default=10, ge=1, le=20),
    ) -> SimilarJobsResponse:
        return await call_repository(similar_jobs, request.app.state.repository, job_id, limit)

    @app.get("/api/jobs/{job_id}", response_model=StoredJob)
    async def get_job(job_id: str, request: Request) -> StoredJob:
        return await call_repository(request.app.state.repository.record_job_view, job_id)

    @app.post("/api/users", response_model=User)
    async def upsert_user(payload: UserUpsertRequest, request: Request) -> User:
        require_scope(request, "users:write")
        return await run_in_threadpool(request.app.state.repository.upsert_user, payload)

    @app.get("/api/users/{user_id}", response_model=User)
    async def get_user(user_id: str, request: Request) -> User:
        return await call_repository(request.app.state.repository.get_user_or_raise, user_id)

    @app.delete("/api/users/{user_id}")
    async def delete_user(user_id: str, request: Request) -> dict[str, bool]:
        require_scope(request, "users:write")
        deleted = await run_in_threadpool(request.app.state.repository.delete_user, user_id)
        if not deleted:
            raise HTTPException(status_code=404, detail="Unknown user_id")
        return {"deleted": True}

    @app.post(
        "/api/users/{user_id}/bookmarks/bulk-remove",
        response_model=BulkRemoveBookmarksResponse,
    )
    async def bulk_remove_bookmarks(
        user_id: str,
        payload: BulkRemoveBookmarksRequest,
        request: Request,
    ) -> BulkRemoveBookmarksResponse:
        require_scope(request, "users:write")
        removed, remaining = await call_repository(
            request.app.state.repository.remove_bookmarks,
            user_id,
            payload.job_ids,
        )
        return BulkRemoveBookmarksResponse(removed_count=removed, remaining_count=remaining)

    @app.post("/api/users/{user_id}/bookmarks/{job_id}", response_model=BookmarkToggleResponse)
    async def toggle_bookmark(user_id: str, job_id: str, request: Request) -> BookmarkToggleResponse:
        require_scope(request, "users:write")
        bookmarked, total = await call_repository(
            request.app.state.repository.toggle_bookmark,
            user_id,
            job_id,
        )
        return BookmarkToggleResponse(job_id=job_id, bookmarked=bookmarked, total_bookmarks=total)

    @app.get("/api/users/{user_id}/bookmarks", response_model=BookmarkedJobsResponse)
    async def list_bookmarks(user_id: str, request: Request) -> BookmarkedJobsResponse:
        jobs = await call_repository(request.app.state.repository.list_bookmarked_jobs, user_id)
        return BookmarkedJobsResponse(user_id=user_id, total=len(jobs), jobs=jobs)

    @app.get("/api/users/{user_id}/saved/organized", response_model=OrganizedSavedJobsResponse)
    async def get_organized_saved_jobs(user_id: str, request: Request) -> OrganizedSavedJobsResponse:
        return await call_repository(organized_saved_jobs, request.app.state.repository, user_id)

    @app.get("/api/users/{user_id}/saved/analytics", response_model=SavedJobsAnalyticsResponse)
    async def get_saved_jobs_analytics(user_id: str, request: Request) -> SavedJobsAnalyticsResponse:
        return await call_repository(saved_jobs_analytics, request.app.state.repository, user_id)

    @app.put("/api/users/{user_id}/applications/{job_id}", response_model=Application)
    async def update_application(
        user_id: str,
        job_id: str,
        payload: ApplicationUpdateRequest,
        request: Request,
    ) -> Application:
        require_scope(request, "users:write")
        return await call_repository(
            request.app.state.repository.upsert_application,
            user_id,
            job_id,
            status=payload.status,
            notes=payload.notes,
        )

    @app.get("/api/users/{user_id}/applications", response_model=list[Application])
    async def list_applications(user_id: str, request: Request) -> list[Application]:
        await call_repository(request.app.state.repository.get_user_or_raise, user_id)
        return await run_in_threadpool(request.app.state.repository.list_applications, user_id)

    @app.get(
        "/api/users/{user_id}/recommendations/personalized",
        response_model=RecommendationResponse,
    )
    async def personalized_recommendations(
        user_id: str,
        request: Request,
        limit: int = Query(default=20, ge=1, le=50),
    ) -> RecommendationResponse:
        return await call_repository(
            build_recommendations,
            request.app.state.repository,
            user_id,
            kind="personalized",
            limit=limit,
        )

    @app.get("/api/users/{user_id}/recommendations/daily", response_model=RecommendationResponse)
    async def daily_recommendations(user_id: str, request: Request) -> RecommendationResponse:
        return await call_repository(
            build_recommendations,
            request.app.state.repository,
            user_id,
            kind="daily",
            limit=DAILY_PICKS_LIMIT,
        )

    @app.get(
        "/api/users/{user_id}/recommendations/history",
        response_model=RecommendationHistoryResponse,
    )
    async def recommendation_history(
        user_id: str,
        request: Request,
        limit: int = Query(default=25, ge=1, le=200),
    ) -> RecommendationHistoryResponse:
        await call_repository(request.app.state.repository.get_user_or_raise, user_id)
        runs = await run_in_threadpool(
            request.app.state.repository.list_recommendation_runs,
            user_id,
            limit,
        )
        return RecommendationHistoryResponse(user_id=user_id, runs=runs)

    @app.get("/api/users/{user_id}/jobs/{job_id}/match-score", response_model=MatchScoreResponse)
    async def match_score(user_id: str, job_id: str, request: Request) -> MatchScoreResponse:
        result = await call_repository(
            score_user_job,
            request.app.state.repository,
            user_id,
            job_id,
        )
        return MatchScoreResponse(
            user_id=user_id,
            job_id=job_id,
            match_score=result.match_score,
            match_reasons=result.match_reasons,
        )

    @app.get("/api/users/{user_id}/jobs/{job_id}/match-breakdown", response_model=MatchResult)
    async def match_breakdown(user_id: str, job_id: str, request: Request) -> MatchResult:
        return await call_repository(
            score_user_job,
            request.app.state.repository,
            user_id,
            job_id,
        )

    return app


app = create_app()
