from __future__ import annotations

from datetime import UTC
from typing import Literal

from common.utils import normalize_whitespace, parse_iso_datetime
from pydantic import BaseModel, Field, field_validator, model_validator

EmploymentType = Literal["FULL_TIME", "PART_TIME", "CONTRACT", "INTERNSHIP", "TEMPORARY"]
ExperienceLevel = Literal["ENTRY", "MID", "SENIOR", "LEAD", "EXECUTIVE"]
JobSourceName = Literal[
    "USAJOBS",
    "REMOTEOK",
    "ARBEITNOW",
    "CAREERJET",
    "JOOBLE",
    "UNIVERSITY",
    "HANDSHAKE",
    "HANDSHAKE-MOCK",
    "LINKEDIN",
    "LINKEDIN-MOCK",
    "MANUAL",
]
VisaType = Literal["F1", "OPT", "STEM_OPT", "H1B", "GREEN_CARD", "CITIZEN", "OTHER"]
ApplicationStatus = Literal[
    "SAVED",
    "APPLIED",
    "INTERVIEW",
    "OFFER",
    "REJECTED",
    "WITHDRAWN",
    "NOT_INTERESTED",
]
RunTrigger = Literal["manual", "scheduled", "cli"]
RunStatus = Literal["ok", "error", "skipped"]

EMPLOYMENT_TYPES: tuple[str, ...] = ("FULL_TIME", "PART_TIME", "CONTRACT", "INTERNSHIP", "TEMPORARY")
EXPERIENCE_LEVELS: tuple[str, ...] = ("ENTRY", "MID", "SENIOR", "LEAD", "EXECUTIVE")
PASSIVE_APPLICATION_STATUSES = frozenset({"SAVED", "NOT_INTERESTED"})

DEFAULT_TITLE = "Untitled Position"
DEFAULT_COMPANY = "Unknown Company"
DEFAULT_LOCATION = "Not Specified"


def to_utc_iso(value: str | None) -> str | None:
    parsed = parse_iso_datetime(value)
    if parsed is None:
        return None
    return parsed.astimezone(UTC).isoformat()


def _clean_list(values: list[str]) -> list[str]:
    cleaned: list[str] = []
    seen: set[str] = set()
    for value in values:
        normalized = normalize_whitespace(str(value))
        if not normalized or normalized.lower() in seen:
            continue
        seen.add(normalized.lower())
        cleaned.append(normalized)
    return cleaned


class VisaSponsorship(BaseModel):
    h1b: bool = False
    opt: bool = False
    stem_opt: bool = False


class NormalizedJob(BaseModel):
    """A posting in the shared schema, as produced by a provider or submitted manually.

    ``visa_sponsorship`` stays ``None`` when the source carries no visa data so that
    keyword detection can fill it in before the job is stored.
    """

    source: JobSourceName
    source_job_id: str = Field(..., min_length=1, max_length=256)
    title: str = DEFAULT_TITLE
    company: str = DEFAULT_COMPANY
    location: str = DEFAULT_LOCATION
    description: str = ""
    requirements: list[str] = Field(default_factory=list)
    employment_type: EmploymentType = "FULL_TIME"
    experience_level: ExperienceLevel = "MID"
    remote: bool = False
    salary_min: float | None = Field(default=None, ge=0)
    salary_max: float | None = Field(default=None, ge=0)
    salary_currency: str = "USD"
    visa_sponsorship: VisaSponsorship | None = None
    source_url: str | None = None
    application_url: str | None = None
    is_university_job: bool = False
    university_name: str | None = None
    is_campus_exclusive: bool = False
    posted_date: str | None = None
    expiry_date: str | None = None
    company_logo: str | None = None
    company_website: str | None = None
    skills_required: list[str] = Field(default_factory=list)
    industry_tags: list[str] = Field(default_factory=list)
    is_featured: bool = False

    @field_validator("source", "employment_type", "experience_level", mode="before")
    @classmethod
    def upper_case_enums(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @model_validator(mode="after")
    def apply_defaults(self) -> NormalizedJob:
        self.source_job_id = self.source_job_id.strip()
        self.title = normalize_whitespace(self.title) or DEFAULT_TITLE
        self.company = normalize_whitespace(self.company) or DEFAULT_COMPANY
        self.location = normalize_whitespace(self.location) or DEFAULT_LOCATION
        self.description = self.description.strip()
        self.salary_currency = (self.salary_currency or "USD").strip().upper() or "USD"
        if (
            self.salary_min is not None
            and self.salary_max is not None
            and self.salary_min > self.salary_max
        ):
            self.salary_min, self.salary_max = self.salary_max, self.salary_min
        self.posted_date = to_utc_iso(self.posted_date)
        self.expiry_date = to_utc_iso(self.expiry_date)
        self.requirements = _clean_list(self.requirements)
        self.skills_required = _clean_list(self.skills_required)
        self.industry_tags = _clean_list(self.industry_tags)
        return self


class StoredJob(BaseModel):
    id: str
    source: str
    source_job_id: str
    title: str
    company: str
    location: str
    description: str
    requirements: list[str] = Field(default_factory=list)
    employment_type: str
    experience_level: str
    remote: bool
    salary_min: float | None = None
    salary_max: float | None = None
    salary_currency: str = "USD"
    visa_sponsorship: VisaSponsorship
    source_url: str | None = None
    application_url: str | None = None
    is_university_job: bool = False
    university_name: str | None = None
    is_campus_exclusive: bool = False
    posted_date: str
    expiry_date: str | None = None
    company_logo: str | None = None
    company_website: str | None = None
    skills_required: list[str] = Field(default_factory=list)
    industry_tags: list[str] = Field(default_factory=list)
    views: int = 0
    applications: int = 0
    is_active: bool = True
    is_featured: bool = False
    created_at: str
    updated_at: str
    last_refreshed: str


class JobUpsertRequest(BaseModel):
    jobs: list[NormalizedJob] = Field(..., min_length=1, max_length=500)


class UpsertSummary(BaseModel):
    inserted: int = 0
    updated: int = 0
    failed: int = 0
    job_ids: list[str] = Field(default_factory=list)


class JobSearchFilters(BaseModel):
    keywords: str | None = None
    location: str | None = None
    remote: bool | None = None
    h1b: bool | None = None
    opt: bool | None = None
    stem_opt: bool | None = None
    employment_type: str | None = None
    experience_level: str | None = None
    skills: list[str] = Field(default_factory=list)
    source: str | None = None
    salary_min: float | None = None
    posted_within_days: int | None = None


class SearchResultJob(StoredJob):
    full_description: str
    search_score: float = 0.0


class Pagination(BaseModel):
    current_page: int
    total_pages: int
    total_jobs: int
    jobs_per_page: int


class JobSearchResponse(BaseModel):
    jobs: list[SearchResultJob]
    pagination: Pagination


class UniversityJobStats(BaseModel):
    handshake: int = 0
    linkedin: int = 0
    other: int = 0


class UniversityJobsResponse(BaseModel):
    jobs: list[StoredJob]
    pagination: Pagination
    stats: UniversityJobStats


class SourceStats(BaseModel):
    source: str
    count: int
    active_count: int
    h1b_count: int
    opt_count: int
    remote_count: int


class JobStatsResponse(BaseModel):
    total_jobs: int
    active_jobs: int
    by_source: list[SourceStats]


class JobPreferences(BaseModel):
    job_types: list[EmploymentType] = Field(default_factory=list)
    locations: list[str] = Field(default_factory=list)
    remote_only: bool = False
    visa_sponsorship_required: bool = False
    salary_min: float | None = Field(default=None, ge=0)
    salary_max: float | None = Field(default=None, ge=0)
    experience_levels: list[ExperienceLevel] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_salary_range(self) -> JobPreferences:
        if (
            self.salary_min is not None
            and self.salary_max is not None
            and self.salary_min > self.salary_max
        ):
            raise ValueError("salary_min must not exceed salary_max.")
        self.locations = _clean_list(self.locations)
        return self


class UserUpsertRequest(BaseModel):
    user_id: str = Field(..., min_length=3, max_length=64, pattern=r"^[a-zA-Z0-9_-]+$")
    name: str = Field(..., min_length=1, max_length=120)
    email: str | None = Field(default=None, max_length=254)
    visa_type: VisaType | None = None
    university: str | None = Field(default=None, max_length=200)
    major: str | None = Field(default=None, max_length=200)
    graduation_year: int | None = Field(default=None, ge=1950, le=2100)
    skills: list[str] = Field(default_factory=list)
    job_preferences: JobPreferences = Field(default_factory=JobPreferences)

    @model_validator(mode="after")
    def clean_skills(self) -> UserUpsertRequest:
        self.skills = _clean_list(self.skills)
        return self


class User(BaseModel):
    user_id: str
    name: str
    email: str | None = None
    visa_type: VisaType | None = None
    university: str | None = None
    major: str | None = None
    graduation_year: int | None = None
    skills: list[str] = Field(default_factory=list)
    job_preferences: JobPreferences = Field(default_factory=JobPreferences)
    bookmarked_jobs: list[str] = Field(default_factory=list)
    created_at: str
    updated_at: str


class BookmarkToggleResponse(BaseModel):
    job_id: str
    bookmarked: bool
    total_bookmarks: int


class BookmarkedJobsResponse(BaseModel):
    user_id: str
    total: int
    jobs: list[StoredJob]


class BulkRemoveBookmarksRequest(BaseModel):
    job_ids: list[str] = Field(..., min_length=1, max_length=500)


class BulkRemoveBookmarksResponse(BaseModel):
    removed_count: int
    remaining_count: int


class ApplicationUpdateRequest(BaseModel):
    status: ApplicationStatus
    notes: str | None = Field(default=None, max_length=2000)

    @field_validator("status", mode="before")
    @classmethod
    def upper_case_status(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper()
        return value


class Application(BaseModel):
    user_id: str
    job_id: str
    status: ApplicationStatus
    notes: str | None = None
    created_at: str
    updated_at: str


class SavedJobEntry(BaseModel):
    job: StoredJob
    status: ApplicationStatus | None = None
    notes: str | None = None
    updated_at: str | None = None


class OrganizedSavedJobsResponse(BaseModel):
    user_id: str
    applied: list[SavedJobEntry]
    interested: list[SavedJobEntry]
    not_interested: list[SavedJobEntry]
    counts: dict[str, int]


class SalaryRange(BaseModel):
    min: float
    max: float
    average: float


class CompanyCount(BaseModel):
    company: str
    count: int


class SavedJobsAnalytics(BaseModel):
    by_employment_type: dict[str, int]
    by_location: dict[str, int]
    by_experience_level: dict[str, int]
    visa_sponsorship: dict[str, int]
    salary_range: SalaryRange | None = None
    top_companies: list[CompanyCount]
    remote_count: int


class SavedJobsAnalyticsResponse(BaseModel):
    user_id: str
    total_saved: int
    analytics: SavedJobsAnalytics | None = None


class VisaAnalysis(BaseModel):
    h1b: bool
    opt: bool
    stem_opt: bool
    confidence: float
    matched_keywords: list[str] = Field(default_factory=list)
    negative_signals: list[str] = Field(default_factory=list)

    def sponsorship(self) -> VisaSponsorship:
        return VisaSponsorship(h1b=self.h1b, opt=self.opt, stem_opt=self.stem_opt)


class JobVisaAnalysisResponse(BaseModel):
    job_id: str
    title: str
    analysis: VisaAnalysis
    current: VisaSponsorship
    changed: bool
    updated: bool


class BatchVisaItem(BaseModel):
    job_id: str
    title: str
    previous: VisaSponsorship
    visa_sponsorship: VisaSponsorship
    confidence: float


class BatchVisaAnalysisResponse(BaseModel):
    analyzed: int
    updated: int
    results: list[BatchVisaItem]


class MatchBreakdown(BaseModel):
    skills: float
    employment_type: float
    location: float
    remote: float
    visa: float
    salary: float
    experience: float
    freshness: float


class MatchResult(BaseModel):
    job_id: str
    match_score: int
    match_reasons: list[str] = Field(default_factory=list)
    matched_skills: list[str] = Field(default_factory=list)
    breakdown: MatchBreakdown


class MatchScoreResponse(BaseModel):
    user_id: str
    job_id: str
    match_score: int
    match_reasons: list[str] = Field(default_factory=list)


class RecommendedJob(BaseModel):
    job: StoredJob
    match_score: int
    match_reasons: list[str] = Field(default_factory=list)


class RecommendationResponse(BaseModel):
    run_id: int
    user_id: str
    kind: Literal["personalized", "daily"]
    generated_at: str
    date: str | None = None
    total: int
    recommendations: list[RecommendedJob]


class RecommendationRun(BaseModel):
    run_id: int
    kind: str
    generated_at: str
    recommendation_count: int


class RecommendationHistoryResponse(BaseModel):
    user_id: str
    runs: list[RecommendationRun]


class SimilarJob(BaseModel):
    job: StoredJob
    similarity: float


class SimilarJobsResponse(BaseModel):
    job_id: str
    similar: list[SimilarJob]


class AggregateRequest(BaseModel):
    sources: list[str] = Field(default_factory=list)
    respect_backoff: bool = False
    keywords: str | None = Field(default=None, max_length=200)
    location: str | None = Field(default=None, max_length=200)
    pages: int = Field(default=1, ge=1, le=5)

    @model_validator(mode="after")
    def upper_case_sources(self) -> AggregateRequest:
        self.sources = [source.strip().upper() for source in self.sources if source.strip()]
        return self


class ProviderRunResult(BaseModel):
    source: str
    ran_at: str
    trigger: RunTrigger
    status: RunStatus
    fetched: int
    inserted: int
    updated: int
    failed: int
    attempt_number: int
    backoff_seconds: int
    next_eligible_run_at: str | None = None
    error: str | None = None
    duration_ms: float = 0.0


class AggregationRunResponse(BaseModel):
    run_id: int
    started_at: str
    finished_at: str
    trigger: RunTrigger
    respect_backoff: bool
    requested_sources: int
    successful_sources: int
    failed_sources: int
    skipped_sources: int
    total_fetched: int
    total_inserted: int
    total_updated: int
    total_failed: int
    results: list[ProviderRunResult]


class ProviderState(BaseModel):
    source: str
    configured: bool = True
    last_run_at: str | None = None
    last_success_at: str | None = None
    last_status: str | None = None
    last_error: str | None = None
    next_eligible_run_at: str | None = None
    consecutive_failures: int = 0


class ProviderRunHistoryItem(BaseModel):
    history_id: int
    run_id: int | None = None
    source: str
    ran_at: str
    trigger: RunTrigger
    status: RunStatus
    fetched: int
    inserted: int
    updated: int
    failed: int
    attempt_number: int
    backoff_seconds: int
    next_eligible_run_at: str | None = None
    respect_backoff: bool
    error: str | None = None
    duration_ms: float


class CleanupResult(BaseModel):
    run_id: int
    ran_at: str
    trigger: RunTrigger
    max_age_days: int
    retention_days: int | None = None
    deactivated: int
    deleted: int


class CleanupRequest(BaseModel):
    max_age_days: int | None = Field(default=None, ge=1, le=365)
    retention_days: int | None = Field(default=None, ge=1, le=3650)
    full: bool = True


class CleanupStats(BaseModel):
    total_jobs: int
    active_jobs: int
    inactive_jobs: int
    stale_active_jobs: int
    max_age_days: int
    oldest_active_posted_date: str | None = None
    last_cleanup: CleanupResult | None = None


class RefreshOutcome(BaseModel):
    trigger: RunTrigger
    started_at: str
    finished_at: str
    aggregation: AggregationRunResponse | None = None
    cleanup: CleanupResult | None = None
    error: str | None = None


class RefreshStats(BaseModel):
    enabled: bool
    schedule: str
    is_running: bool
    last_refresh: str | None = None
    last_result: RefreshOutcome | None = None
    next_scheduled_run: str | None = None


class RefreshTriggerResponse(BaseModel):
    status: Literal["started"]
    started_at: str


class SystemHealth(BaseModel):
    status: Literal["ok", "degraded"]
    generated_at: str
    database: Literal["ok", "error"]
    total_jobs: int
    active_jobs: int
    providers: list[ProviderState]
    refresh: RefreshStats
