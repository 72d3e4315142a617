from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from email.utils import parsedate_to_datetime
from typing import Any

import httpx
from common.utils import normalize_whitespace, parse_iso_datetime, strip_html
from pydantic import BaseModel, Field, ValidationError

from jobboard.models import NormalizedJob

LOGGER = logging.getLogger("jobharbor.providers")

USAJOBS_URL = "https://data.usajobs.gov/api/Search"
REMOTEOK_URL = "https://remoteok.com/api"
ARBEITNOW_URL = "https://www.arbeitnow.com/api/job-board-api"
JOOBLE_URL = "https://jooble.org/api"
CAREERJET_URL = "https://public.api.careerjet.net/search"
HANDSHAKE_URL = "https://api.joinhandshake.com/edu/v1/jobs"
LINKEDIN_HOST = "linkedin-job-search-api.p.rapidapi.com"
LINKEDIN_URL = f"https://{LINKEDIN_HOST}/active-jb-24h"

DEFAULT_KEYWORDS = "software engineer"
DEFAULT_USER_AGENT = "jobharbor/0.1"
CACHE_TTL_SECONDS = 60 * 60
LINKEDIN_LOCATION_FILTERS = (
    "United States",
    "New York OR San Francisco OR Seattle OR Austin OR Boston",
    "Chicago OR Denver OR Los Angeles OR San Diego OR Portland",
    "Remote",
)

_EMPLOYMENT_CODES = {
    "F": "FULL_TIME",
    "P": "PART_TIME",
    "C": "CONTRACT",
    "I": "INTERNSHIP",
    "T": "TEMPORARY",
}
_EXPERIENCE_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\b(?:director|executive|vp|vice\s+president|head\s+of|chief)\b|^5$"), "EXECUTIVE"),
    (re.compile(r"\b(?:lead|principal|staff|architect)\b|^4$"), "LEAD"),
    (re.compile(r"\b(?:senior|sr)\b|^3$"), "SENIOR"),
    (re.compile(r"\b(?:mid|intermediate|associate)\b|^2$"), "MID"),
    (
        re.compile(
            r"\b(?:entry|junior|jr|intern(?:ship)?|new\s+grad(?:uate)?|graduate|trainee)\b|^1$"
        ),
        "ENTRY",
    ),
)
_SALARY_NUMBER = re.compile(r"(\d[\d,]*(?:\.\d+)?)\s*([kK])?")
_RELATIVE_AGE = re.compile(r"(\d+)\s+(minute|hour|day|week|month)s?\s+ago", re.IGNORECASE)


class ProviderSettings(BaseModel):
    usajobs_api_key: str | None = None
    usajobs_user_agent: str | None = None
    jooble_api_key: str | None = None
    careerjet_affid: str | None = None
    handshake_api_key: str | None = None
    rapidapi_key: str | None = None
    timeout_seconds: float = Field(default=15.0, gt=0, le=120)
    linkedin_request_delay: float = Field(default=1.0, ge=0, le=30)

    @classmethod
    def from_env(cls) -> ProviderSettings:
        def read(name: str) -> str | None:
            return os.getenv(name, "").strip() or None

        return cls(
            usajobs_api_key=read("USAJOBS_API_KEY"),
            usajobs_user_agent=read("USAJOBS_USER_AGENT"),
            jooble_api_key=read("JOOBLE_API_KEY"),
            careerjet_affid=read("CAREERJET_AFFID"),
            handshake_api_key=read("HANDSHAKE_API_KEY"),
            rapidapi_key=read("RAPIDAPI_KEY"),
            timeout_seconds=float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "15")),
        )


@dataclass
class FetchParams:
    keywords: str = DEFAULT_KEYWORDS
    location: str = ""
    pages: int = 1


def map_employment_type(value: str | None) -> str:
    if not value:
        return "FULL_TIME"
    upper = value.strip().upper()
    if upper in _EMPLOYMENT_CODES:
        return _EMPLOYMENT_CODES[upper]
    if "FULL" in upper:
        return "FULL_TIME"
    if "PART" in upper:
        return "PART_TIME"
    if "CONTRACT" in upper:
        return "CONTRACT"
    if "INTERN" in upper:
        return "INTERNSHIP"
    if "TEMP" in upper:
        return "TEMPORARY"
    return "FULL_TIME"


def map_experience_level(value: str | None, default: str = "MID") -> str:
    if not value:
        return default
    normalized = normalize_whitespace(value).lower()
    for pattern, level in _EXPERIENCE_PATTERNS:
        if pattern.search(normalized):
            return level
    return default


def parse_salary_text(value: str | None) -> tuple[float | None, float | None]:
    if not value:
        return None, None
    amounts: list[float] = []
    for number, thousands in _SALARY_NUMBER.findall(value):
        try:
            amount = float(number.replace(",", ""))
        except ValueError:
            continue
        if thousands:
            amount *= 1000
        if amount > 0:
            amounts.append(amount)
    if not amounts:
        return None, None
    if len(amounts) == 1:
        return amounts[0], None
    return min(amounts[:2]), max(amounts[:2])


def parse_amount(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        amount = float(str(value).replace(",", ""))
    except ValueError:
        return None
    return amount if amount > 0 else None


def parse_posted_date(value: Any, *, now: datetime | None = None) -> str | None:
    """Turn the many date shapes providers send into a UTC ISO string.

    Accepts unix timestamps, ISO-8601, RFC 2822 and "3 days ago" style text.
    """
    if value is None or value == "":
        return None
    reference = now or datetime.now(UTC)
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.strip().isdigit()):
        try:
            return datetime.fromtimestamp(int(value), tz=UTC).isoformat()
        except (OverflowError, OSError, ValueError):
            return None

    text = str(value).strip()
    parsed = parse_iso_datetime(text)
    if parsed is not None:
        return parsed.astimezone(UTC).isoformat()

    relative = _RELATIVE_AGE.search(text)
    if relative:
        amount = int(relative.group(1))
        unit = relative.group(2).lower()
        hours_per_unit = {"minute": 1 / 60, "hour": 1, "day": 24, "week": 168, "month": 720}
        return (reference - timedelta(hours=amount * hours_per_unit[unit])).isoformat()

    try:
        parsed = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC).isoformat()


def _first(values: Any) -> Any:
    if isinstance(values, list) and values:
        return values[0]
    return None


class ResultCache:
    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._value: list[NormalizedJob] | None = None
        self._stored_at: float | None = None

    def get(self) -> list[NormalizedJob] | None:
        if self._value is None or self._stored_at is None:
            return None
        if self._clock() - self._stored_at >= self.ttl_seconds:
            return None
        return list(self._value)

    def store(self, value: list[NormalizedJob]) -> None:
        self._value = list(value)
        self._stored_at = self._clock()


class JobProvider:
    source = ""

    def __init__(self, settings: ProviderSettings, client: httpx.Client) -> None:
        self.settings = settings
        self.client = client

    def has_credentials(self) -> bool:
        return True

    def is_configured(self) -> bool:
        return self.has_credentials()

    def fetch_jobs(self, params: FetchParams) -> list[NormalizedJob]:
        raise NotImplementedError

    def _get_json(
        self,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        response = self.client.get(
            url,
            params=params,
            headers=headers,
            timeout=self.settings.timeout_seconds,
        )
        response.raise_for_status()
        return response.json()

    def _collect(
        self,
        items: Iterable[Any],
        transform: Callable[[dict[str, Any]], NormalizedJob | None],
    ) -> list[NormalizedJob]:
        jobs: list[NormalizedJob] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            try:
                job = transform(item)
            except (ValidationError, ValueError, TypeError, KeyError, OverflowError) as exc:
                LOGGER.warning(
                    json.dumps(
                        {
                            "event": "provider_item_skipped",
                            "source": self.source,
                            "error": str(exc).splitlines()[0],
                        }
                    )
                )
                continue
            if job is not None:
                jobs.append(job)
        return jobs


class USAJobsProvider(JobProvider):
    source = "USAJOBS"

    def has_credentials(self) -> bool:
        return bool(self.settings.usajobs_api_key and self.settings.usajobs_user_agent)

    def fetch_jobs(self, params: FetchParams) -> list[NormalizedJob]:
        headers = {
            "Host": "data.usajobs.gov",
            "User-Agent": self.settings.usajobs_user_agent or "",
            "Authorization-Key": self.settings.usajobs_api_key or "",
        }
        jobs: list[NormalizedJob] = []
        for page in range(1, params.pages + 1):
            query: dict[str, Any] = {
                "Keyword": params.keywords,
                "ResultsPerPage": 100,
                "Page": page,
            }
            if params.location:
                query["LocationName"] = params.location
            payload = self._get_json(USAJOBS_URL, params=query, headers=headers)
            items = payload.get("SearchResult", {}).get("SearchResultItems", [])
            jobs.extend(self._collect(items, self._normalize))
            if len(items) < 100:
                break
        return jobs

    def _normalize(self, item: dict[str, Any]) -> NormalizedJob | None:
        descriptor = item.get("MatchedObjectDescriptor") or {}
        job_id = descriptor.get("PositionID") or item.get("MatchedObjectId")
        if not job_id:
            return None
        details = (descriptor.get("UserArea") or {}).get("Details") or {}
        remuneration = _first(descriptor.get("PositionRemuneration")) or {}
        schedule = _first(descriptor.get("PositionSchedule")) or {}
        location = descriptor.get("PositionLocationDisplay") or (
            (_first(descriptor.get("PositionLocation")) or {}).get("LocationName")
        )
        title = descriptor.get("PositionTitle") or ""
        qualifications = strip_html(descriptor.get("QualificationSummary"))
        description = strip_html(details.get("JobSummary")) or qualifications
        return NormalizedJob(
            source=self.source,
            source_job_id=str(job_id),
            title=title,
            company=descriptor.get("OrganizationName") or descriptor.get("DepartmentName") or "",
            location=location or "",
            description=description,
            requirements=[qualifications] if qualifications else [],
            employment_type=map_employment_type(schedule.get("Name")),
            experience_level=map_experience_level(title),
            remote=bool(details.get("RemoteIndicator")) or "remote" in (location or "").lower(),
            salary_min=parse_amount(remuneration.get("MinimumRange")),
            salary_max=parse_amount(remuneration.get("MaximumRange")),
            source_url=descriptor.get("PositionURI"),
            application_url=_first(descriptor.get("ApplyURI")) or descriptor.get("PositionURI"),
            posted_date=parse_posted_date(descriptor.get("PublicationStartDate")),
            expiry_date=parse_posted_date(descriptor.get("ApplicationCloseDate")),
            industry_tags=["Government"],
        )


class RemoteOKProvider(JobProvider):
    source = "REMOTEOK"

    def fetch_jobs(self, params: FetchParams) -> list[NormalizedJob]:
        payload = self._get_json(REMOTEOK_URL, headers={"User-Agent": DEFAULT_USER_AGENT})
        if not isinstance(payload, list):
            raise ValueError("RemoteOK payload must be a list.")
        # The first element is a legal notice without a job id.
        return self._collect(payload, self._normalize)

    def _normalize(self, item: dict[str, Any]) -> NormalizedJob | None:
        if not item.get("id") or not item.get("position"):
            return None
        title = str(item["position"])
        tags = [str(tag) for tag in item.get("tags") or []]
        return NormalizedJob(
            source=self.source,
            source_job_id=str(item["id"]),
            title=title,
            company=item.get("company") or "",
            location=item.get("location") or "Remote",
            description=strip_html(item.get("description")),
            employment_type=map_employment_type(title),
            experience_level=map_experience_level(title),
            remote=True,
            salary_min=parse_amount(item.get("salary_min")),
            salary_max=parse_amount(item.get("salary_max")),
            source_url=item.get("url"),
            application_url=item.get("apply_url") or item.get("url"),
            posted_date=parse_posted_date(item.get("date") or item.get("epoch")),
            company_logo=item.get("company_logo") or item.get("logo") or None,
            skills_required=tags,
        )


class ArbeitnowProvider(JobProvider):
    source = "ARBEITNOW"

    def fetch_jobs(self, params: FetchParams) -> list[NormalizedJob]:
        jobs: list[NormalizedJob] = []
        for page in range(1, params.pages + 1):
            payload = self._get_json(ARBEITNOW_URL, params={"page": page})
            items = payload.get("data", [])
            jobs.extend(self._collect(items, self._normalize))
            if not (payload.get("links") or {}).get("next"):
                break
        return jobs

    def _normalize(self, item: dict[str, Any]) -> NormalizedJob | None:
        if not item.get("slug"):
            return None
        title = item.get("title") or ""
        job_types = " ".join(str(value) for value in item.get("job_types") or [])
        return NormalizedJob(
            source=self.source,
            source_job_id=str(item["slug"]),
            title=title,
            company=item.get("company_name") or "",
            location=item.get("location") or "",
            description=strip_html(item.get("description")),
            employment_type=map_employment_type(job_types or title),
            experience_level=map_experience_level(title),
            remote=bool(item.get("remote")),
            source_url=item.get("url"),
            application_url=item.get("url"),
            posted_date=parse_posted_date(item.get("created_at")),
            skills_required=[str(tag) for tag in item.get("tags") or []],
        )


class JoobleProvider(JobProvider):
    source = "JOOBLE"

    def has_credentials(self) -> bool:
        return bool(self.settings.jooble_api_key)

    def fetch_jobs(self, params: FetchParams) -> list[NormalizedJob]:
        jobs: list[NormalizedJob] = []
        for page in range(1, params.pages + 1):
            response = self.client.post(
                f"{JOOBLE_URL}/{self.settings.jooble_api_key}",
                json={
                    "keywords": params.keywords,
                    "location": params.location,
                    "page": str(page),
                },
                timeout=self.settings.timeout_seconds,
            )
            response.raise_for_status()
            items = response.json().get("jobs", [])
            jobs.extend(self._collect(items, self._normalize))
            if not items:
                break
        return jobs

    def _normalize(self, item: dict[str, Any]) -> NormalizedJob | None:
        if not item.get("id"):
            return None
        title = item.get("title") or ""
        salary_min, salary_max = parse_salary_text(item.get("salary"))
        return NormalizedJob(
            source=self.source,
            source_job_id=str(item["id"]),
            title=title,
            company=item.get("company") or "",
            location=item.get("location") or "",
            description=strip_html(item.get("snippet")),
            employment_type=map_employment_type(item.get("type") or title),
            experience_level=map_experience_level(title),
            remote="remote" in f"{item.get('location', '')} {title}".lower(),
            salary_min=salary_min,
            salary_max=salary_max,
            source_url=item.get("link"),
            application_url=item.get("link"),
            posted_date=parse_posted_date(item.get("updated")),
        )


class CareerjetProvider(JobProvider):
    source = "CAREERJET"

    def has_credentials(self) -> bool:
        return bool(self.settings.careerjet_affid)

    def fetch_jobs(self, params: FetchParams) -> list[NormalizedJob]:
        jobs: list[NormalizedJob] = []
        for page in range(1, params.pages + 1):
            payload = self._get_json(
                CAREERJET_URL,
                params={
                    "affid": self.settings.careerjet_affid,
                    "keywords": params.keywords,
                    "location": params.location,
                    "locale_code": "en_US",
                    "pagesize": 50,
                    "page": page,
                    "sort": "date",
                    "user_ip": "127.0.0.1",
                    "user_agent": DEFAULT_USER_AGENT,
                },
            )
            if payload.get("type") != "JOBS":
                raise ValueError(f"Careerjet returned {payload.get('type') or 'no'} result type.")
            jobs.extend(self._collect(payload.get("jobs", []), self._normalize))
            if page >= int(payload.get("pages") or 1):
                break
        return jobs

    def _normalize(self, item: dict[str, Any]) -> NormalizedJob | None:
        url = item.get("url")
        if not url:
            return None
        title = item.get("title") or ""
        salary_min = parse_amount(item.get("salary_min"))
        salary_max = parse_amount(item.get("salary_max"))
        if salary_min is None and salary_max is None:
            salary_min, salary_max = parse_salary_text(item.get("salary"))
        return NormalizedJob(
            source=self.source,
            source_job_id=hashlib.sha1(url.encode()).hexdigest(),
            title=title,
            company=item.get("company") or "",
            location=item.get("locations") or "",
            description=strip_html(item.get("description")),
            employment_type=map_employment_type(title),
            experience_level=map_experience_level(title),
            remote="remote" in f"{item.get('locations', '')} {title}".lower(),
            salary_min=salary_min,
            salary_max=salary_max,
            salary_currency=item.get("salary_currency_code") or "USD",
            source_url=url,
            application_url=url,
            posted_date=parse_posted_date(item.get("date")),
        )


class HandshakeProvider(JobProvider):
    """University recruiting jobs; serves a fixed campus sample when the API is unavailable."""

    source = "HANDSHAKE"

    def __init__(
        self,
        settings: ProviderSettings,
        client: httpx.Client,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(settings, client)
        self.cache = ResultCache(CACHE_TTL_SECONDS, clock=clock)

    def has_credentials(self) -> bool:
        return bool(self.settings.handshake_api_key)

    def is_configured(self) -> bool:
        return True

    def fetch_jobs(self, params: FetchParams) -> list[NormalizedJob]:
        if not self.has_credentials():
            LOGGER.warning(
                json.dumps(
                    {"event": "provider_mock_fallback", "source": self.source, "reason": "no api key"}
                )
            )
            return mock_handshake_jobs()

        cached = self.cache.get()
        if cached is not None:
            return cached

        try:
            payload = self._get_json(
                HANDSHAKE_URL,
                params={
                    "per_page": 100,
                    "job_type": "internship,full-time",
                    "posted_within": "30days",
                },
                headers={"Authorization": f"Bearer {self.settings.handshake_api_key}"},
            )
            if not isinstance(payload, dict):
                raise ValueError("Handshake payload must be a JSON object.")
            jobs = self._collect(payload.get("jobs") or [], self._normalize)
        except (httpx.HTTPError, ValueError) as exc:
            LOGGER.warning(
                json.dumps(
                    {
                        "event": "provider_mock_fallback",
                        "source": self.source,
                        "reason": "request failed",
                        "error": str(exc),
                    }
                )
            )
            return mock_handshake_jobs()

        self.cache.store(jobs)
        return jobs

    def _normalize(self, item: dict[str, Any]) -> NormalizedJob | None:
        if not item.get("id"):
            return None
        location_data = item.get("location") or {}
        parts = [
            location_data.get(key)
            for key in ("city", "state", "country")
            if location_data.get(key)
        ]
        location = ", ".join(parts) if parts else location_data.get("name") or ""
        salary = item.get("salary_range") or {}
        title = item.get("title") or ""
        return NormalizedJob(
            source=self.source,
            source_job_id=str(item["id"]),
            title=title,
            company=(item.get("employer") or {}).get("name") or "",
            location=location,
            description=strip_html(item.get("description")),
            employment_type=map_employment_type(item.get("job_type") or item.get("employment_type")),
            experience_level=map_experience_level(item.get("experience_level"), default="ENTRY"),
            remote=bool(item.get("remote")),
            salary_min=parse_amount(salary.get("min")),
            salary_max=parse_amount(salary.get("max")),
            salary_currency=salary.get("currency") or "USD",
            source_url=item.get("application_url"),
            application_url=item.get("application_url"),
            is_university_job=True,
            university_name=(item.get("university") or {}).get("name"),
            is_campus_exclusive=bool(item.get("campus_exclusive")),
            posted_date=parse_posted_date(item.get("created_at")),
            skills_required=[str(skill) for skill in item.get("skills") or []],
        )


class LinkedInProvider(JobProvider):
    """Jobs posted in the last day on LinkedIn, through the RapidAPI job search API."""

    source = "LINKEDIN"

    def __init__(
        self,
        settings: ProviderSettings,
        client: httpx.Client,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(settings, client)
        self.cache = ResultCache(CACHE_TTL_SECONDS, clock=clock)
        self._sleep = sleep

    def has_credentials(self) -> bool:
        return bool(self.settings.rapidapi_key)

    def is_configured(self) -> bool:
        return True

    def fetch_jobs(self, params: FetchParams) -> list[NormalizedJob]:
        if not self.has_credentials():
            LOGGER.warning(
                json.dumps(
                    {"event": "provider_mock_fallback", "source": self.source, "reason": "no api key"}
                )
            )
            return mock_linkedin_jobs()

        cached = self.cache.get()
        if cached is not None:
            return cached

        headers = {
            "x-rapidapi-key": self.settings.rapidapi_key or "",
            "x-rapidapi-host": LINKEDIN_HOST,
        }
        jobs: list[NormalizedJob] = []
        seen_ids: set[str] = set()
        failures: list[str] = []
        for index, location_filter in enumerate(LINKEDIN_LOCATION_FILTERS):
            if index > 0 and self.settings.linkedin_request_delay > 0:
                self._sleep(self.settings.linkedin_request_delay)
            try:
                payload = self._get_json(
                    LINKEDIN_URL,
                    params={
                        "offset": 0,
                        "description_type": "text",
                        "location_filter": location_filter,
                    },
                    headers=headers,
                )
            except (httpx.HTTPError, ValueError) as exc:
                failures.append(f"{location_filter}: {exc}")
                LOGGER.warning(
                    json.dumps(
                        {
                            "event": "provider_location_failed",
                            "source": self.source,
                            "location_filter": location_filter,
                            "error": str(exc),
                        }
                    )
                )
                continue
            if not isinstance(payload, list):
                continue
            for job in self._collect(payload, self._normalize):
                if job.source_job_id in seen_ids:
                    continue
                seen_ids.add(job.source_job_id)
                jobs.append(job)

        if len(failures) == len(LINKEDIN_LOCATION_FILTERS):
            raise RuntimeError(f"All LinkedIn location queries failed; last error {failures[-1]}")

        self.cache.store(jobs)
        return jobs

    def _normalize(self, item: dict[str, Any]) -> NormalizedJob | None:
        if not item.get("id"):
            return None
        title = item.get("title") or ""
        employment_type = map_employment_type(_first(item.get("employment_type")))
        experience_level = map_experience_level(item.get("seniority"), default="ENTRY")
        salary_min, salary_max, currency = _linkedin_salary(item.get("salary_raw"))
        return NormalizedJob(
            source=self.source,
            source_job_id=str(item["id"]),
            title=title,
            company=item.get("organization") or "",
            location=_first(item.get("locations_derived")) or "Remote",
            description=item.get("description_text") or "No description available",
            employment_type=employment_type,
            experience_level=experience_level,
            remote=bool(item.get("remote_derived")),
            salary_min=salary_min,
            salary_max=salary_max,
            salary_currency=currency,
            source_url=item.get("url"),
            application_url=item.get("external_apply_url") or item.get("url"),
            is_university_job=employment_type == "INTERNSHIP" or experience_level == "ENTRY",
            posted_date=parse_posted_date(item.get("date_posted")),
            company_logo=item.get("organization_logo"),
        )


def _linkedin_salary(raw: Any) -> tuple[float | None, float | None, str]:
    if not isinstance(raw, dict):
        return None, None, "USD"
    value = raw.get("value") if isinstance(raw.get("value"), dict) else {}
    salary_min = parse_amount(raw.get("min") or value.get("minValue"))
    salary_max = parse_amount(raw.get("max") or value.get("maxValue"))
    return salary_min, salary_max, raw.get("currency") or "USD"


# Age in days of each sample posting.
_MOCK_AGE_DAYS = (1, 3, 8, 15, 30)

_MOCK_HANDSHAKE_JOBS: tuple[dict[str, Any], ...] = (
    {
        "source_job_id": "mock-handshake-1",
        "title": "Software Engineering Intern",
        "company": "Tech Corp",
        "location": "San Francisco, CA",
        "description": (
            "Great internship opportunity for students. Join our team and work on cutting-edge "
            "technology projects. Requirements: Computer Science major, proficiency in "
            "JavaScript/TypeScript, React, Node.js."
        ),
        "salary_min": 25,
        "salary_max": 35,
        "remote": False,
        "employment_type": "INTERNSHIP",
        "university_name": "Stanford University",
        "skills_required": ["JavaScript", "TypeScript", "React", "Node.js"],
    },
    {
        "source_job_id": "mock-handshake-2",
        "title": "Data Science Intern",
        "company": "Analytics Inc",
        "location": "Remote",
        "description": (
            "Work with our data science team to analyze large datasets and build predictive "
            "models. Perfect for students with strong Python and statistics background."
        ),
        "salary_min": 30,
        "salary_max": 40,
        "remote": True,
        "employment_type": "INTERNSHIP",
        "university_name": "MIT",
        "skills_required": ["Python", "Machine Learning", "Statistics", "SQL"],
    },
    {
        "source_job_id": "mock-handshake-3",
        "title": "Product Management Intern",
        "company": "StartupXYZ",
        "location": "New York, NY",
        "description": (
            "Join our product team and help shape the future of our platform. Great opportunity "
            "to learn product management skills and work cross-functionally."
        ),
        "salary_min": 28,
        "salary_max": 38,
        "remote": False,
        "employment_type": "INTERNSHIP",
        "university_name": "Harvard University",
        "skills_required": ["Product Management", "Agile", "User Research"],
    },
    {
        "source_job_id": "mock-handshake-4",
        "title": "UX/UI Design Intern",
        "company": "Design Studio",
        "location": "Austin, TX",
        "description": (
            "Work alongside experienced designers to create beautiful and intuitive user "
            "interfaces. Portfolio required."
        ),
        "salary_min": 22,
        "salary_max": 32,
        "remote": False,
        "employment_type": "INTERNSHIP",
        "university_name": "University of Texas",
        "skills_required": ["Figma", "Adobe XD", "UI Design", "UX Research"],
    },
    {
        "source_job_id": "mock-handshake-5",
        "title": "Full Stack Developer - New Grad",
        "company": "Enterprise Solutions",
        "location": "Seattle, WA",
        "description": (
            "Full-time position for recent graduates. Build scalable web applications using "
            "modern technologies. H1B sponsorship available."
        ),
        "salary_min": 90000,
        "salary_max": 120000,
        "remote": False,
        "employment_type": "FULL_TIME",
        "university_name": "University of Washington",
        "skills_required": ["JavaScript", "React", "Node.js", "PostgreSQL", "AWS"],
    },
)

_MOCK_LINKEDIN_JOBS: tuple[dict[str, Any], ...] = (
    {
        "source_job_id": "mock-linkedin-1",
        "title": "Software Engineering Intern - Summer",
        "company": "Microsoft",
        "location": "Redmond, WA",
        "description": (
            "Join our team as a Software Engineering Intern. Work on real projects that impact "
            "millions of users. Requirements: CS major, proficiency in C#, Java, or Python."
        ),
        "salary_min": 30,
        "salary_max": 45,
        "remote": False,
        "employment_type": "INTERNSHIP",
        "skills_required": ["C#", "Java", "Python", "Azure"],
    },
    {
        "source_job_id": "mock-linkedin-2",
        "title": "Product Management Intern",
        "company": "Google",
        "location": "Mountain View, CA",
        "description": (
            "Work alongside experienced Product Managers to define product strategy and roadmap. "
            "Perfect for MBA or CS students with strong analytical skills."
        ),
        "salary_min": 35,
        "salary_max": 50,
        "remote": False,
        "employment_type": "INTERNSHIP",
        "skills_required": ["Product Management", "SQL", "Analytics"],
    },
    {
        "source_job_id": "mock-linkedin-3",
        "title": "Frontend Developer - Remote",
        "company": "Shopify",
        "location": "Remote",
        "description": (
            "Build beautiful, performant user interfaces for our e-commerce platform. Work with "
            "React, TypeScript, and modern web technologies."
        ),
        "salary_min": 80000,
        "salary_max": 120000,
        "remote": True,
        "employment_type": "FULL_TIME",
        "skills_required": ["React", "TypeScript", "CSS", "GraphQL"],
    },
)


def _mock_posted_date(index: int, now: datetime | None) -> str:
    reference = now or datetime.now(UTC)
    age = _MOCK_AGE_DAYS[index % len(_MOCK_AGE_DAYS)]
    return (reference - timedelta(days=age)).isoformat()


def mock_handshake_jobs(now: datetime | None = None) -> list[NormalizedJob]:
    return [
        NormalizedJob(
            source="HANDSHAKE-MOCK",
            experience_level="ENTRY",
            is_university_job=True,
            is_campus_exclusive=True,
            posted_date=_mock_posted_date(index, now),
            source_url=f"https://example.com/jobs/{entry['source_job_id']}",
            application_url=f"https://example.com/jobs/{entry['source_job_id']}",
            **entry,
        )
        for index, entry in enumerate(_MOCK_HANDSHAKE_JOBS)
    ]


def mock_linkedin_jobs(now: datetime | None = None) -> list[NormalizedJob]:
    jobs: list[NormalizedJob] = []
    for index, entry in enumerate(_MOCK_LINKEDIN_JOBS):
        jobs.append(
            NormalizedJob(
                source="LINKEDIN-MOCK",
                experience_level="ENTRY",
                is_university_job=True,
                posted_date=_mock_posted_date(index, now),
                source_url=f"https://example.com/jobs/{entry['source_job_id']}",
                application_url=f"https://example.com/jobs/{entry['source_job_id']}",
                **entry,
            )
        )
    return jobs


PROVIDER_CLASSES: tuple[type[JobProvider], ...] = (
    USAJobsProvider,
    RemoteOKProvider,
    ArbeitnowProvider,
    JoobleProvider,
    CareerjetProvider,
    HandshakeProvider,
    LinkedInProvider,
)


def build_default_providers(
    settings: ProviderSettings,
    client: httpx.Client,
) -> list[JobProvider]:
    return [provider_class(settings, client) for provider_class in PROVIDER_CLASSES]
