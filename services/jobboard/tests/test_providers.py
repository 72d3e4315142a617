from __future__ import annotations

import json
from datetime import UTC, datetime

import httpx
import pytest
from jobboard.providers import (
    LINKEDIN_LOCATION_FILTERS,
    ArbeitnowProvider,
    CareerjetProvider,
    FetchParams,
    HandshakeProvider,
    JoobleProvider,
    LinkedInProvider,
    ProviderSettings,
    RemoteOKProvider,
    ResultCache,
    USAJobsProvider,
    build_default_providers,
    map_employment_type,
    map_experience_level,
    mock_handshake_jobs,
    mock_linkedin_jobs,
    parse_posted_date,
    parse_salary_text,
)

pytestmark = pytest.mark.unit


def client_for(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_employment_and_experience_mapping() -> None:
    assert map_employment_type("F") == "FULL_TIME"
    assert map_employment_type("Part-time") == "PART_TIME"
    assert map_employment_type("Summer Internship") == "INTERNSHIP"
    assert map_employment_type(None) == "FULL_TIME"
    assert map_experience_level("Staff Engineer, Tech Lead") == "LEAD"
    assert map_experience_level("Senior Backend Developer") == "SENIOR"
    assert map_experience_level("Junior Developer") == "ENTRY"
    assert map_experience_level("Backend Developer") == "MID"
    assert map_experience_level(None, default="ENTRY") == "ENTRY"


def test_salary_text_parsing() -> None:
    assert parse_salary_text("$50k - $70k") == (50000, 70000)
    assert parse_salary_text("90,000 USD") == (90000, None)
    assert parse_salary_text("Competitive") == (None, None)


def test_posted_date_parsing() -> None:
    now = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)

    assert parse_posted_date(0) == "1970-01-01T00:00:00+00:00"
    assert parse_posted_date("2026-03-01T08:00:00Z") == "2026-03-01T08:00:00+00:00"
    assert parse_posted_date("3 days ago", now=now) == "2026-03-07T12:00:00+00:00"
    assert parse_posted_date("Tue, 03 Mar 2026 10:00:00 GMT") == "2026-03-03T10:00:00+00:00"
    assert parse_posted_date("not a date") is None
    assert parse_posted_date("") is None
    assert parse_posted_date(10**20) is None


def test_result_cache_expires() -> None:
    clock = FakeClock()
    cache = ResultCache(10, clock=clock)

    assert cache.get() is None
    cache.store([])
    assert cache.get() == []
    clock.now = 11
    assert cache.get() is None


def test_usajobs_requires_key_and_sends_headers() -> None:
    seen: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["headers"] = request.headers
        seen["params"] = dict(request.url.params)
        return httpx.Response(
            200,
            json={
                "SearchResult": {
                    "SearchResultItems": [
                        {
                            "MatchedObjectId": "777",
                            "MatchedObjectDescriptor": {
                                "PositionID": "IT-777",
                                "PositionTitle": "IT Specialist",
                                "OrganizationName": "Department of Energy",
                                "PositionLocationDisplay": "Washington, DC",
                                "PositionURI": "https://www.usajobs.gov/job/777",
                                "ApplyURI": ["https://www.usajobs.gov/apply/777"],
                                "PositionRemuneration": [
                                    {"MinimumRange": "85000", "MaximumRange": "110000"}
                                ],
                                "PositionSchedule": [{"Name": "Full-time"}],
                                "PublicationStartDate": "2026-03-01T00:00:00",
                                "UserArea": {
                                    "Details": {"JobSummary": "<p>Keep systems secure.</p>"}
                                },
                            },
                        }
                    ]
                }
            },
        )

    unconfigured = USAJobsProvider(ProviderSettings(), client_for(handler))
    assert unconfigured.is_configured() is False

    provider = USAJobsProvider(
        ProviderSettings(usajobs_api_key="key-1", usajobs_user_agent="me@example.com"),
        client_for(handler),
    )
    jobs = provider.fetch_jobs(FetchParams(keywords="it", location="DC"))

    assert seen["headers"]["Authorization-Key"] == "key-1"
    assert seen["params"]["Keyword"] == "it"
    assert seen["params"]["LocationName"] == "DC"
    assert len(jobs) == 1
    job = jobs[0]
    assert job.source_job_id == "IT-777"
    assert job.company == "Department of Energy"
    assert job.description == "Keep systems secure."
    assert (job.salary_min, job.salary_max) == (85000, 110000)
    assert job.application_url == "https://www.usajobs.gov/apply/777"
    assert job.industry_tags == ["Government"]


def test_remoteok_skips_legal_notice_and_bad_items() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json=[
                {"legal": "Terms apply"},
                {
                    "id": "101",
                    "position": "Senior Python Developer",
                    "company": "Remote Co",
                    "description": "<b>Async</b> services",
                    "tags": ["python", "asyncio"],
                    "salary_min": 0,
                    "salary_max": 150000,
                    "epoch": 1767225600,
                    "url": "https://remoteok.com/jobs/101",
                },
                {"id": "102", "position": "Designer", "employment_type": "full_time", "date": 5},
                "garbage",
            ],
        )

    provider = RemoteOKProvider(ProviderSettings(), client_for(handler))
    jobs = provider.fetch_jobs(FetchParams())

    assert [job.source_job_id for job in jobs] == ["101", "102"]
    first = jobs[0]
    assert first.remote is True
    assert first.experience_level == "SENIOR"
    assert first.skills_required == ["python", "asyncio"]
    assert first.salary_min is None
    assert first.salary_max == 150000
    assert first.description == "Async services"
    assert first.visa_sponsorship is None


def test_remoteok_keeps_good_items_when_an_epoch_is_out_of_range() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json=[
                {"id": "201", "position": "Platform Engineer", "epoch": 1767225600},
                {"id": "202", "position": "SRE", "epoch": 10**20},
            ],
        )

    provider = RemoteOKProvider(ProviderSettings(), client_for(handler))
    jobs = provider.fetch_jobs(FetchParams())

    assert [job.source_job_id for job in jobs] == ["201", "202"]
    assert jobs[0].posted_date == "2026-01-01T00:00:00+00:00"
    assert jobs[1].posted_date is None


def test_remoteok_rejects_unexpected_payload() -> None:
    provider = RemoteOKProvider(
        ProviderSettings(),
        client_for(lambda request: httpx.Response(200, json={"error": "rate limited"})),
    )

    with pytest.raises(ValueError):
        provider.fetch_jobs(FetchParams())


def test_arbeitnow_follows_pages_until_no_next_link() -> None:
    pages: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        page = request.url.params["page"]
        pages.append(page)
        links = {"next": "https://example.com?page=2"} if page == "1" else {}
        return httpx.Response(
            200,
            json={
                "data": [
                    {
                        "slug": f"job-{page}",
                        "title": "Werkstudent Data",
                        "company_name": "Berlin GmbH",
                        "location": "Berlin",
                        "remote": False,
                        "job_types": ["Internship"],
                        "tags": ["SQL"],
                        "created_at": 1767225600,
                    }
                ],
                "links": links,
            },
        )

    provider = ArbeitnowProvider(ProviderSettings(), client_for(handler))
    jobs = provider.fetch_jobs(FetchParams(pages=5))

    assert pages == ["1", "2"]
    assert [job.source_job_id for job in jobs] == ["job-1", "job-2"]
    assert jobs[0].employment_type == "INTERNSHIP"


def test_jooble_posts_to_keyed_url() -> None:
    seen: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "jobs": [
                    {
                        "id": 55,
                        "title": "Remote Java Engineer",
                        "company": "Jooble Co",
                        "location": "Anywhere",
                        "snippet": "Java &amp; Spring",
                        "salary": "$80k - $100k",
                        "updated": "2026-03-01T10:00:00.0000000",
                        "link": "https://jooble.org/jobs/55",
                    }
                ]
            },
        )

    provider = JoobleProvider(ProviderSettings(jooble_api_key="abc"), client_for(handler))
    jobs = provider.fetch_jobs(FetchParams(keywords="java"))

    assert seen["url"].endswith("/api/abc")
    assert seen["body"] == {"keywords": "java", "location": "", "page": "1"}
    assert jobs[0].remote is True
    assert (jobs[0].salary_min, jobs[0].salary_max) == (80000, 100000)
    assert jobs[0].description == "Java & Spring"


def test_careerjet_rejects_non_job_results() -> None:
    provider = CareerjetProvider(
        ProviderSettings(careerjet_affid="aff"),
        client_for(lambda request: httpx.Response(200, json={"type": "LOCATIONS"})),
    )

    with pytest.raises(ValueError, match="LOCATIONS"):
        provider.fetch_jobs(FetchParams())


def test_careerjet_hashes_url_into_job_id() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "type": "JOBS",
                "pages": 1,
                "jobs": [
                    {
                        "url": "https://careerjet.com/job/1",
                        "title": "QA Engineer",
                        "company": "Test Inc",
                        "locations": "Boston, MA",
                        "salary": "60000 - 75000",
                        "date": "Tue, 03 Mar 2026 10:00:00 GMT",
                    }
                ],
            },
        )

    provider = CareerjetProvider(ProviderSettings(careerjet_affid="aff"), client_for(handler))
    jobs = provider.fetch_jobs(FetchParams())

    assert len(jobs[0].source_job_id) == 40
    assert (jobs[0].salary_min, jobs[0].salary_max) == (60000, 75000)
    assert jobs[0].posted_date == "2026-03-03T10:00:00+00:00"


def test_handshake_serves_mock_jobs_without_key() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    provider = HandshakeProvider(ProviderSettings(), client_for(handler))
    jobs = provider.fetch_jobs(FetchParams())

    assert provider.is_configured() is True
    assert provider.has_credentials() is False
    assert len(jobs) == 5
    assert {job.source for job in jobs} == {"HANDSHAKE-MOCK"}
    assert all(job.is_university_job and job.is_campus_exclusive for job in jobs)


def test_handshake_falls_back_to_mock_on_error_and_caches_success() -> None:
    calls: list[int] = []

    def failing(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    fallback = HandshakeProvider(ProviderSettings(handshake_api_key="k"), client_for(failing))
    assert {job.source for job in fallback.fetch_jobs(FetchParams())} == {"HANDSHAKE-MOCK"}

    def working(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        assert request.headers["Authorization"] == "Bearer k"
        return httpx.Response(
            200,
            json={
                "jobs": [
                    {
                        "id": 9,
                        "title": "Software Intern",
                        "employer": {"name": "Campus Corp"},
                        "location": {"city": "Ann Arbor", "state": "MI"},
                        "job_type": "Internship",
                        "university": {"name": "University of Michigan"},
                        "skills": ["Python"],
                    }
                ]
            },
        )

    clock = FakeClock()
    provider = HandshakeProvider(
        ProviderSettings(handshake_api_key="k"),
        client_for(working),
        clock=clock,
    )
    first = provider.fetch_jobs(FetchParams())
    second = provider.fetch_jobs(FetchParams())

    assert len(calls) == 1
    assert first == second
    assert first[0].location == "Ann Arbor, MI"
    assert first[0].experience_level == "ENTRY"
    assert first[0].university_name == "University of Michigan"


def test_linkedin_queries_each_location_and_dedupes() -> None:
    filters: list[str] = []
    sleeps: list[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        filters.append(request.url.params["location_filter"])
        return httpx.Response(
            200,
            json=[
                {
                    "id": "li-1",
                    "title": "Graduate Software Engineer",
                    "organization": "LinkedIn Corp",
                    "locations_derived": ["Sunnyvale, CA"],
                    "employment_type": ["INTERN"],
                    "date_posted": "2026-03-09T08:00:00",
                    "salary_raw": {"currency": "USD", "value": {"minValue": 40, "maxValue": 55}},
                }
            ],
        )

    provider = LinkedInProvider(
        ProviderSettings(rapidapi_key="rk"),
        client_for(handler),
        sleep=sleeps.append,
    )
    jobs = provider.fetch_jobs(FetchParams())

    assert filters == list(LINKEDIN_LOCATION_FILTERS)
    assert sleeps == [1.0] * (len(LINKEDIN_LOCATION_FILTERS) - 1)
    assert len(jobs) == 1
    assert jobs[0].employment_type == "INTERNSHIP"
    assert jobs[0].is_university_job is True
    assert (jobs[0].salary_min, jobs[0].salary_max) == (40, 55)


def test_linkedin_raises_when_every_location_fails() -> None:
    provider = LinkedInProvider(
        ProviderSettings(rapidapi_key="rk", linkedin_request_delay=0),
        client_for(lambda request: httpx.Response(429)),
    )

    with pytest.raises(RuntimeError, match="All LinkedIn"):
        provider.fetch_jobs(FetchParams())


def test_linkedin_serves_mock_jobs_without_key() -> None:
    provider = LinkedInProvider(ProviderSettings(), client_for(lambda request: httpx.Response(500)))

    jobs = provider.fetch_jobs(FetchParams())

    assert len(jobs) == 3
    assert {job.source for job in jobs} == {"LINKEDIN-MOCK"}


def test_default_providers_cover_every_source() -> None:
    providers = build_default_providers(ProviderSettings(), client_for(lambda r: httpx.Response(200)))

    assert [provider.source for provider in providers] == [
        "USAJOBS",
        "REMOTEOK",
        "ARBEITNOW",
        "JOOBLE",
        "CAREERJET",
        "HANDSHAKE",
        "LINKEDIN",
    ]


def test_sample_jobs_carry_fixed_ages() -> None:
    now = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)

    handshake = [job.posted_date for job in mock_handshake_jobs(now)]
    linkedin = [job.posted_date for job in mock_linkedin_jobs(now)]

    assert handshake == [
        "2026-03-09T12:00:00+00:00",
        "2026-03-07T12:00:00+00:00",
        "2026-03-02T12:00:00+00:00",
        "2026-02-23T12:00:00+00:00",
        "2026-02-08T12:00:00+00:00",
    ]
    assert linkedin == handshake[:3]
    assert mock_handshake_jobs(now) == mock_handshake_jobs(now)
