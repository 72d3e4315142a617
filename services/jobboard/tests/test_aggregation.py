from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from jobboard.aggregator import JobAggregator, apply_visa_detection
from jobboard.main import create_app
from jobboard.models import NormalizedJob, VisaSponsorship
from jobboard.providers import FetchParams
from jobboard.repository import JobRepository

pytestmark = pytest.mark.integration


class StaticProvider:
    def __init__(
        self,
        source: str,
        jobs: list[NormalizedJob] | None = None,
        *,
        error: Exception | None = None,
        configured: bool = True,
    ) -> None:
        self.source = source
        self.jobs = jobs or []
        self.error = error
        self.configured = configured
        self.calls: list[FetchParams] = []

    def has_credentials(self) -> bool:
        return self.configured

    def is_configured(self) -> bool:
        return self.configured

    def fetch_jobs(self, params: FetchParams) -> list[NormalizedJob]:
        self.calls.append(params)
        if self.error is not None:
            raise self.error
        return list(self.jobs)


def remote_job(source_job_id: str, description: str = "Build APIs in Python") -> NormalizedJob:
    return NormalizedJob(
        source="REMOTEOK",
        source_job_id=source_job_id,
        title="Backend Engineer",
        company="Remote Co",
        description=description,
        remote=True,
    )


@pytest.fixture
def repository(tmp_path: Path):
    repo = JobRepository(database_path=str(tmp_path / "jobboard.sqlite3"))
    repo.connect()
    yield repo
    repo.close()


def test_aggregate_inserts_then_updates(repository: JobRepository) -> None:
    provider = StaticProvider("REMOTEOK", [remote_job("r-1"), remote_job("r-2")])
    aggregator = JobAggregator(repository, [provider])

    first = aggregator.aggregate(params=FetchParams(keywords="python"))
    second = aggregator.aggregate()

    assert first.total_fetched == 2
    assert first.total_inserted == 2
    assert first.successful_sources == 1
    assert second.total_inserted == 0
    assert second.total_updated == 2
    assert provider.calls[0].keywords == "python"
    assert repository.count_jobs() == (2, 2)


def test_failing_provider_is_isolated_and_backed_off(repository: JobRepository) -> None:
    healthy = StaticProvider("REMOTEOK", [remote_job("r-1")])
    broken = StaticProvider("ARBEITNOW", error=RuntimeError("upstream down"))
    aggregator = JobAggregator(repository, [broken, healthy])

    first = aggregator.aggregate()
    second = aggregator.aggregate()

    assert first.failed_sources == 1
    assert first.successful_sources == 1
    failed = next(item for item in first.results if item.source == "ARBEITNOW")
    assert failed.status == "error"
    assert failed.error == "upstream down"
    assert failed.backoff_seconds == 60
    assert failed.next_eligible_run_at is not None

    failed_again = next(item for item in second.results if item.source == "ARBEITNOW")
    assert failed_again.attempt_number == 2
    assert failed_again.backoff_seconds == 120

    state = repository.get_provider_state("ARBEITNOW")
    assert state is not None
    assert state.consecutive_failures == 2
    assert state.last_error == "upstream down"


def test_respect_backoff_skips_provider_until_eligible(repository: JobRepository) -> None:
    broken = StaticProvider("ARBEITNOW", error=RuntimeError("boom"))
    aggregator = JobAggregator(repository, [broken])

    aggregator.aggregate()
    skipped = aggregator.aggregate(respect_backoff=True)

    assert len(broken.calls) == 1
    assert skipped.skipped_sources == 1
    assert skipped.results[0].status == "skipped"
    assert 0 < skipped.results[0].backoff_seconds <= 60
    assert skipped.results[0].error is None
    state = repository.get_provider_state("ARBEITNOW")
    assert state is not None
    assert state.last_status == "skipped"
    assert state.last_error == "boom"
    assert state.consecutive_failures == 1


def test_success_resets_failure_count(repository: JobRepository) -> None:
    provider = StaticProvider("REMOTEOK", error=RuntimeError("flaky"))
    aggregator = JobAggregator(repository, [provider])
    aggregator.aggregate()

    provider.error = None
    provider.jobs = [remote_job("r-1")]
    result = aggregator.aggregate()

    assert result.results[0].status == "ok"
    assert result.results[0].attempt_number == 1
    state = repository.get_provider_state("REMOTEOK")
    assert state is not None
    assert state.consecutive_failures == 0
    assert state.next_eligible_run_at is None
    assert state.last_success_at is not None


def test_unconfigured_provider_is_skipped(repository: JobRepository) -> None:
    missing_key = StaticProvider("JOOBLE", [remote_job("j-1")], configured=False)
    aggregator = JobAggregator(repository, [missing_key])

    result = aggregator.aggregate()

    assert result.skipped_sources == 1
    assert result.results[0].error == "not configured"
    assert missing_key.calls == []
    assert aggregator.provider_states()[0].configured is False


def test_unknown_source_selection_is_rejected(repository: JobRepository) -> None:
    aggregator = JobAggregator(repository, [StaticProvider("REMOTEOK")])

    with pytest.raises(ValueError, match="MONSTER"):
        aggregator.aggregate(sources=["monster"])


def test_source_selection_runs_only_requested_providers(repository: JobRepository) -> None:
    remoteok = StaticProvider("REMOTEOK", [remote_job("r-1")])
    arbeitnow = StaticProvider("ARBEITNOW")
    aggregator = JobAggregator(repository, [remoteok, arbeitnow])

    result = aggregator.aggregate(sources=["remoteok"])

    assert result.requested_sources == 1
    assert len(remoteok.calls) == 1
    assert arbeitnow.calls == []


def test_visa_detection_fills_missing_flags_only() -> None:
    detected = apply_visa_detection(remote_job("r-1", "We offer STEM OPT and H-1B support."))
    explicit = apply_visa_detection(
        NormalizedJob(
            source="MANUAL",
            source_job_id="m-1",
            description="H1B sponsorship available",
            visa_sponsorship=VisaSponsorship(),
        )
    )

    assert detected.visa_sponsorship == VisaSponsorship(h1b=True, opt=True, stem_opt=True)
    assert explicit.visa_sponsorship == VisaSponsorship()


@pytest.fixture
def client(tmp_path: Path):
    providers = [
        StaticProvider("REMOTEOK", [remote_job("r-1")]),
        StaticProvider("ARBEITNOW", error=RuntimeError("upstream down")),
    ]
    app = create_app(database_path=str(tmp_path / "jobboard.sqlite3"), providers=providers)
    with TestClient(app) as test_client:
        yield test_client


def test_aggregate_endpoint_and_history(client: TestClient) -> None:
    response = client.post("/api/jobs/aggregate", json={"keywords": "python"})

    assert response.status_code == 200
    body = response.json()
    assert body["trigger"] == "manual"
    assert body["total_inserted"] == 1
    assert body["failed_sources"] == 1

    history = client.get("/api/jobs/system/aggregation-history", params={"status": "error"})
    assert history.status_code == 200
    items = history.json()
    assert len(items) == 1
    assert items[0]["source"] == "ARBEITNOW"
    assert items[0]["run_id"] == body["run_id"]

    providers = client.get("/api/jobs/system/providers").json()
    by_source = {item["source"]: item for item in providers}
    assert by_source["ARBEITNOW"]["consecutive_failures"] == 1
    assert by_source["REMOTEOK"]["last_status"] == "ok"


def test_aggregate_endpoint_validates_input(client: TestClient) -> None:
    unknown = client.post("/api/jobs/aggregate", json={"sources": ["monster"]})
    bad_pages = client.post("/api/jobs/aggregate", json={"pages": 9})
    bad_time = client.get(
        "/api/jobs/system/aggregation-history",
        params={"ran_after": "yesterday"},
    )

    assert unknown.status_code == 422
    assert bad_pages.status_code == 422
    assert bad_time.status_code == 422


def test_aggregate_endpoint_accepts_empty_body(client: TestClient) -> None:
    response = client.post("/api/jobs/aggregate")

    assert response.status_code == 200
    assert response.json()["requested_sources"] == 2
