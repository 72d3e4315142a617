from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from jobboard.main import build_auth_subject, create_app, parse_api_tokens

pytestmark = pytest.mark.integration

JOB = {"source": "MANUAL", "source_job_id": "auth-1", "title": "Backend Engineer"}


@pytest.fixture
def client(tmp_path: Path):
    app = create_app(
        database_path=str(tmp_path / "jobboard.sqlite3"),
        providers=[],
        api_key="admin-key",
        api_tokens={
            "token-jobs": {"jobs:write"},
            "token-aggregate": ["aggregate"],
            "token-users": {"users:write"},
        },
    )
    with TestClient(app) as test_client:
        yield test_client


def test_scope_enforcement_for_write_endpoints(client: TestClient) -> None:
    missing = client.post("/api/jobs", json={"jobs": [JOB]})
    unknown = client.post("/api/jobs", headers={"x-api-key": "nope"}, json={"jobs": [JOB]})
    forbidden = client.post(
        "/api/jobs",
        headers={"x-api-key": "token-users"},
        json={"jobs": [JOB]},
    )
    allowed = client.post(
        "/api/jobs",
        headers={"x-api-key": "token-jobs"},
        json={"jobs": [JOB]},
    )

    assert missing.status_code == 401
    assert unknown.status_code == 401
    assert forbidden.status_code == 403
    assert allowed.status_code == 200
    assert allowed.json()["inserted"] == 1


def test_admin_key_has_every_scope(client: TestClient) -> None:
    headers = {"x-api-key": "admin-key"}

    assert client.post("/api/jobs/aggregate", headers=headers, json={}).status_code == 200
    assert (
        client.post("/api/users", headers=headers, json={"user_id": "abc", "name": "A"}).status_code
        == 200
    )
    assert client.post("/api/jobs/system/cleanup", headers=headers, json={}).status_code == 200


def test_reads_stay_open_when_tokens_are_configured(client: TestClient) -> None:
    assert client.get("/api/jobs/search").status_code == 200
    assert client.get("/api/jobs/system/providers").status_code == 200
    assert client.get("/api/jobs/system/refresh-stats").status_code == 200


def test_visa_update_requires_jobs_scope(client: TestClient) -> None:
    job_id = client.post(
        "/api/jobs",
        headers={"x-api-key": "token-jobs"},
        json={"jobs": [JOB]},
    ).json()["job_ids"][0]

    preview = client.post(f"/api/jobs/{job_id}/analyze-visa")
    update_denied = client.post(
        f"/api/jobs/{job_id}/analyze-visa",
        params={"update": "true"},
        headers={"x-api-key": "token-aggregate"},
    )
    update_allowed = client.post(
        f"/api/jobs/{job_id}/analyze-visa",
        params={"update": "true"},
        headers={"x-api-key": "token-jobs"},
    )

    assert preview.status_code == 200
    assert update_denied.status_code == 403
    assert update_allowed.status_code == 200


def test_aggregate_and_user_scopes(client: TestClient) -> None:
    aggregate_denied = client.post(
        "/api/jobs/aggregate",
        headers={"x-api-key": "token-users"},
        json={},
    )
    refresh_allowed = client.post(
        "/api/jobs/system/refresh",
        headers={"x-api-key": "token-aggregate"},
    )
    bookmark_denied = client.post(
        "/api/users/abc/bookmarks/some-job",
        headers={"x-api-key": "token-aggregate"},
    )

    assert aggregate_denied.status_code == 403
    assert refresh_allowed.status_code == 202
    assert bookmark_denied.status_code == 403


def test_parse_api_tokens_accepts_strings_and_lists() -> None:
    parsed = parse_api_tokens('{"a": "jobs:write", "b": ["aggregate", " users:write "], "c": []}')

    assert parsed == {"a": {"jobs:write"}, "b": {"aggregate", "users:write"}, "c": set()}


@pytest.mark.parametrize(
    "raw",
    ['["not", "an", "object"]', '{"a": 5}', '{"": ["aggregate"]}'],
)
def test_parse_api_tokens_rejects_bad_shapes(raw: str) -> None:
    with pytest.raises(ValueError):
        parse_api_tokens(raw)


def test_auth_subject_hides_token() -> None:
    subject = build_auth_subject("super-secret")

    assert subject.startswith("token:")
    assert "super-secret" not in subject
    assert len(subject) == len("token:") + 12
