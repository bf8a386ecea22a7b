"""
Shared test fixtures for the verification pipeline.

Provides: test settings, a SQLite job store, the fake sandbox runtime,
local git repositories to clone, and an assembled in-process service.
"""

import os
import shutil
import subprocess
from pathlib import Path

import pytest

from repoverify.config import Settings
from repoverify.database.models import Job, Submission
from repoverify.database.session import (
    close_db,
    create_engine,
    create_session_factory,
    init_db,
    session_scope,
)
from repoverify.jobqueue import InMemoryBroker
from repoverify.pipeline.store import SQLJobStore
from repoverify.resolver import StaticResolver
from repoverify.sandbox.fake import FakeRuntime
from repoverify.service import build_service


requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Fast settings: memory broker, tiny backoff, short deadlines."""
    return Settings(
        _env_file=None,
        environment="development",
        broker_backend="memory",
        resolver_backend="static",
        worker_concurrency=2,
        max_attempts=3,
        backoff_base_seconds=0.01,
        backoff_factor=2.0,
        job_timeout_seconds=10,
        sandbox_timeout_seconds=5,
        watchdog_interval_seconds=0.05,
        persistence_retry_attempts=5,
        persistence_retry_delay_seconds=0.05,
        broker_retry_delay_seconds=0.01,
        workspace_root=str(tmp_path / "workspaces"),
    )


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'repoverify.db'}"


@pytest.fixture
async def session_factory(settings, database_url):
    """SQLite database with the tables created."""
    engine = create_engine(settings, url=database_url)
    await init_db(engine)
    yield create_session_factory(engine)
    await close_db(engine)


@pytest.fixture
def store(session_factory, settings) -> SQLJobStore:
    return SQLJobStore(session_factory, max_attempts=settings.max_attempts)


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime(output="installed\nstarted")


@pytest.fixture
def broker() -> InMemoryBroker:
    return InMemoryBroker()


@pytest.fixture
async def make_service(settings, session_factory, runtime, broker):
    """Factory for an in-process service; call with overrides, then start it."""
    services = []

    def _make(command: str | None = "npm install && npm start", **overrides):
        service = build_service(
            settings.model_copy(update=overrides),
            session_factory,
            runtime=runtime,
            resolver=StaticResolver(command),
            broker=broker,
        )
        services.append(service)
        return service

    yield _make

    for service in services:
        await service.stop()


@pytest.fixture
async def pending_job(session_factory) -> Job:
    """A committed submission with one pending job."""
    async with session_scope(session_factory) as session:
        submission = Submission(total_repos=1)
        session.add(submission)
        await session.flush()
        job = Job(submission_id=submission.id, repo_url="https://example.com/repo.git")
        session.add(job)
    return job


def _git(*args: str, cwd: Path) -> None:
    subprocess.run(
        ["git", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        env={
            **os.environ,
            "GIT_AUTHOR_NAME": "Test",
            "GIT_AUTHOR_EMAIL": "test@example.com",
            "GIT_COMMITTER_NAME": "Test",
            "GIT_COMMITTER_EMAIL": "test@example.com",
            "GIT_CONFIG_GLOBAL": os.devnull,
        },
    )


@pytest.fixture
def make_git_repo(tmp_path):
    """Create a local repository with the given files and one commit."""

    def _make(name: str = "origin", files: dict[str, str] | None = None) -> str:
        repo = tmp_path / name
        repo.mkdir()
        for path, content in (files or {}).items():
            (repo / path).write_text(content)
        _git("init", "--quiet", cwd=repo)
        _git("add", "--all", cwd=repo)
        _git("commit", "--quiet", "--allow-empty", "-m", "initial", cwd=repo)
        return str(repo)

    return _make


@pytest.fixture
def git_repo(make_git_repo) -> str:
    return make_git_repo(files={"README.md": "# Demo\n\n```\nnpm install\nnpm start\n```\n"})
