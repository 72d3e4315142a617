from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from jobboard.main import create_app
from pytest_bdd import given, parsers, scenario, then, when

pytestmark = pytest.mark.bdd


@scenario("features/jobboard.feature", "Search stored jobs by keyword")
def test_search_stored_jobs_by_keyword() -> None:
    pass


@scenario("features/jobboard.feature", "Reject an unknown employment type filter")
def test_reject_unknown_employment_type() -> None:
    pass


@scenario("features/jobboard.feature", "Bookmark a job for a student")
def test_bookmark_job_for_student() -> None:
    pass


@pytest.fixture
def client(tmp_path: Path):
    app = create_app(database_path=str(tmp_path / "jobboard.sqlite3"), providers=[])
    with TestClient(app) as test_client:
        yield test_client


@given("jobs are stored in the job board")
def given_jobs_are_stored(client: TestClient) -> None:
    response = client.post(
        "/api/jobs",
        json={
            "jobs": [
                {
                    "source": "MANUAL",
                    "source_job_id": "bdd-1",
                    "title": "Senior Python Engineer",
                    "company": "Acme",
                    "description": "Build Python APIs",
                },
                {
                    "source": "MANUAL",
                    "source_job_id": "bdd-2",
                    "title": "Platform Engineer",
                    "company": "Globex",
                    "description": "Own CI pipelines written in Python",
                },
                {
                    "source": "MANUAL",
                    "source_job_id": "bdd-3",
                    "title": "Data Scientist",
                    "company": "Initech",
                    "description": "Train machine learning models",
                },
            ]
        },
    )
    assert response.status_code == 200


@given("a student profile exists")
def given_student_profile(client: TestClient) -> None:
    response = client.post("/api/users", json={"user_id": "student-1", "name": "Sam Student"})
    assert response.status_code == 200


@when(parsers.parse('the jobs are searched for "{keywords}"'), target_fixture="response")
def when_jobs_are_searched(client: TestClient, keywords: str):
    return client.get("/api/jobs/search", params={"keywords": keywords})


@when(
    parsers.parse('the jobs are searched with employment type "{employment_type}"'),
    target_fixture="response",
)
def when_jobs_are_searched_by_type(client: TestClient, employment_type: str):
    return client.get("/api/jobs/search", params={"employment_type": employment_type})


@when(
    parsers.parse('the student bookmarks the top search result for "{keywords}"'),
    target_fixture="response",
)
def when_student_bookmarks(client: TestClient, keywords: str):
    job_id = client.get("/api/jobs/search", params={"keywords": keywords}).json()["jobs"][0]["id"]
    return client.post(f"/api/users/student-1/bookmarks/{job_id}")


@then("the job board response is successful")
def then_response_is_successful(response) -> None:
    assert response.status_code == 200


@then(parsers.parse('the top search result is "{title}"'))
def then_top_result_matches(response, title: str) -> None:
    assert response.json()["jobs"][0]["title"] == title


@then(parsers.parse("the search found {count:d} jobs"))
def then_search_count_matches(response, count: int) -> None:
    assert response.json()["pagination"]["total_jobs"] == count


@then("the job board response has validation errors")
def then_validation_errors_are_reported(response) -> None:
    assert response.status_code == 422


@then(parsers.parse("the student has {count:d} bookmarked job"))
def then_student_bookmark_count(client: TestClient, count: int) -> None:
    assert client.get("/api/users/student-1/bookmarks").json()["total"] == count
