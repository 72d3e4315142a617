from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from jobboard.aggregator import JobAggregator
from jobboard.main import create_app
from jobboard.models import NormalizedJob
from jobboard.providers import FetchParams
from jobboard.refresh import (
    DailyRefreshService,
    RefreshInProgressError,
    next_run_after,
    parse_refresh_time,
)
from jobboard.repository import JobRepository

pytestmark = pytest.mark.unit


class OneJobProvider:
    source = "REMOTEOK"

    def has_credentials(self) -> bool:
        return True

    def is_configured(self) -> bool:
        return True

    def fetch_jobs(self, params: FetchParams) -> list[NormalizedJob]:
        return [NormalizedJob(source="REMOTEOK", source_job_id="r-1", remote=True)]


class BrokenAggregator:
    def __init__(self, repository: JobRepository) -> None:
        self.repository = repository

    def aggregate(self, **_: object) -> None:
        raise RuntimeError("database locked")


def fixed_clock(value: datetime):
    return lambda: value


@pytest.fixture
def repository(tmp_path: Path):
    repo = JobRepository(database_path=str(tmp_path / "jobboard.sqlite3"))
    repo.connect()
    yield repo
    repo.close()


def test_parse_refresh_time() -> None:
    assert parse_refresh_time("02:00") == (2, 0)
    assert parse_refresh_time(" 23:59 ") == (23, 59)
    for bad in ("2am", "24:00", "12:60", ""):
        with pytest.raises(ValueError):
            parse_refresh_time(bad)


def test_next_run_after_rolls_to_next_day() -> None:
    before = datetime(2026, 3, 10, 1, 30, tzinfo=UTC)
    after = datetime(2026, 3, 10, 2, 0, tzinfo=UTC)

    assert next_run_after(before, 2, 0) == datetime(2026, 3, 10, 2, 0, tzinfo=UTC)
    assert next_run_after(after, 2, 0) == datetime(2026, 3, 11, 2, 0, tzinfo=UTC)


def test_run_refresh_aggregates_then_cleans_up(repository: JobRepository) -> None:
    service = DailyRefreshService(
        JobAggregator(repository, [OneJobProvider()]),
        enabled=False,
    )

    outcome = service.run_refresh("manual")

    assert outcome.error is None
    assert outcome.aggregation is not None
    assert outcome.aggregation.total_inserted == 1
    assert outcome.aggregation.respect_backoff is True
    assert outcome.cleanup is not None
    assert outcome.cleanup.retention_days == 90
    stats = service.stats()
    assert stats.is_running is False
    assert stats.last_refresh == outcome.finished_at
    assert stats.next_scheduled_run is None


def test_aggregation_failure_still_runs_cleanup(repository: JobRepository) -> None:
    service = DailyRefreshService(BrokenAggregator(repository), enabled=False)

    outcome = service.run_refresh("scheduled")

    assert outcome.aggregation is None
    assert outcome.cleanup is not None
    assert outcome.error == "aggregation: database locked"
    assert service.is_running is False


def test_refresh_cannot_run_twice_at_once(repository: JobRepository) -> None:
    service = DailyRefreshService(JobAggregator(repository, []), enabled=False)

    started_at = service.claim()
    with pytest.raises(RefreshInProgressError):
        service.run_refresh()

    service.execute_claimed("manual", started_at)
    assert service.run_refresh().error is None


def test_enabled_service_reports_next_run(repository: JobRepository) -> None:
    service = DailyRefreshService(
        JobAggregator(repository, []),
        enabled=True,
        refresh_time="06:15",
        clock=fixed_clock(datetime(2026, 3, 10, 7, 0, tzinfo=UTC)),
    )

    stats = service.stats()

    assert stats.schedule == "daily at 06:15 UTC"
    assert stats.next_scheduled_run == "2026-03-11T06:15:00+00:00"


@pytest.mark.asyncio
async def test_run_forever_sleeps_until_schedule_then_refreshes(
    repository: JobRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    delays: list[float] = []
    real_sleep = asyncio.sleep

    async def fake_sleep(delay: float) -> None:
        if delay == 0:
            await real_sleep(0)
            return
        delays.append(delay)
        if len(delays) > 1:
            raise asyncio.CancelledError

    monkeypatch.setattr("jobboard.refresh.asyncio.sleep", fake_sleep)
    service = DailyRefreshService(
        JobAggregator(repository, [OneJobProvider()]),
        enabled=True,
        refresh_time="02:00",
        clock=fixed_clock(datetime(2026, 3, 10, 1, 0, tzinfo=UTC)),
    )

    with pytest.raises(asyncio.CancelledError):
        await service.run_forever()

    assert delays == [3600.0, 3600.0]
    assert service.last_result is not None
    assert service.last_result.trigger == "scheduled"


@pytest.fixture
def client(tmp_path: Path):
    app = create_app(
        database_path=str(tmp_path / "jobboard.sqlite3"),
        providers=[OneJobProvider()],
        refresh_enabled=True,
        refresh_time="03:30",
    )
    with TestClient(app) as test_client:
        yield test_client


@pytest.mark.integration
def test_refresh_endpoints(client: TestClient) -> None:
    before = client.get("/api/jobs/system/refresh-stats").json()
    assert before["enabled"] is True
    assert before["schedule"] == "daily at 03:30 UTC"
    assert before["next_scheduled_run"].endswith("03:30:00+00:00")
    assert before["last_result"] is None

    triggered = client.post("/api/jobs/system/refresh")
    assert triggered.status_code == 202
    assert triggered.json()["status"] == "started"

    after = client.get("/api/jobs/system/refresh-stats").json()
    assert after["is_running"] is False
    assert after["last_result"]["trigger"] == "manual"
    assert after["last_result"]["aggregation"]["total_inserted"] == 1


@pytest.mark.integration
def test_refresh_trigger_conflicts_while_running(client: TestClient) -> None:
    client.app.state.refresh_service.claim()

    response = client.post("/api/jobs/system/refresh")

    assert response.status_code == 409
