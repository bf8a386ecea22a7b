"""API tests against the app with a SQLite database and in-memory broker."""

import pytest
from fastapi.testclient import TestClient

from repoverify.api.main import create_app
from repoverify.sandbox.fake import FakeRuntime


@pytest.fixture
def client(settings, database_url):
    app = create_app(settings, database_url=database_url, runtime=FakeRuntime())
    with TestClient(app) as test_client:
        yield test_client


def test_health(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["broker"] == "ok"
    assert data["sandbox"] == "fake"


def test_root(client):
    response = client.get("/")

    assert response.status_code == 200
    assert response.json()["name"] == "RepoVerify"


def test_create_submission_and_poll_job(client):
    """
    Test the submission flow without workers.

    Arrange: API with workers disabled
    Act: Submit one repository, then fetch the submission, job and logs
    Assert: Job pending with queue state "waiting"; logs empty
    """
    response = client.post(
        "/api/submissions",
        json={"repo_urls": ["https://github.com/octocat/Hello-World"]},
    )

    assert response.status_code == 200
    submission = response.json()
    assert submission["total_repos"] == 1
    assert submission["status"] == "pending"
    [job] = submission["jobs"]
    assert job["status"] == "pending"

    response = client.get(f"/api/submissions/{submission['id']}")
    assert response.status_code == 200
    assert [j["id"] for j in response.json()["jobs"]] == [job["id"]]

    response = client.get(f"/api/jobs/{job['id']}")
    assert response.status_code == 200
    detail = response.json()
    assert detail["repo_url"] == "https://github.com/octocat/Hello-World"
    assert detail["queue_state"] == "waiting"
    assert detail["result"] is None

    response = client.get(f"/api/jobs/{job['id']}/logs")
    assert response.status_code == 200
    assert response.json() == {"logs": "", "setup_instructions": "", "reason": ""}


def test_submission_with_too_many_repositories(client):
    urls = [f"https://github.com/octocat/repo-{i}" for i in range(11)]

    response = client.post("/api/submissions", json={"repo_urls": urls})

    assert response.status_code == 422


def test_submission_rejects_invalid_url(client):
    response = client.post("/api/submissions", json={"repo_urls": ["not a url"]})

    assert response.status_code == 422


def test_broker_outage_returns_503(client):
    client.app.state.service.broker.available = False

    response = client.post(
        "/api/submissions",
        json={"repo_urls": ["https://github.com/octocat/Hello-World"]},
    )

    assert response.status_code == 503


def test_unknown_job_and_submission(client):
    assert client.get("/api/jobs/missing").status_code == 404
    assert client.get("/api/jobs/missing/logs").status_code == 404
    assert client.get("/api/submissions/missing").status_code == 404
