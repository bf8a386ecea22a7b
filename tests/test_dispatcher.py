"""End-to-end tests for the job queue, worker pool and retry policy.

Jobs run through the real fetcher (local git repositories), the SQL store and
the fake sandbox runtime.
"""

import asyncio
from pathlib import Path

import pytest

from repoverify.errors import JobNotFoundError
from repoverify.intake import submit_repositories
from repoverify.jobqueue import InMemoryBroker, backoff_delay
from repoverify.pipeline.runner import NO_INSTRUCTIONS_REASON
from repoverify.pipeline.store import SQLJobStore
from repoverify.resolver import StaticResolver
from repoverify.sandbox.fake import FakeRuntime
from repoverify.sandbox.executor import SUCCESS_REASON
from repoverify.schemas import JobMessage, JobOutcome, JobStatus, QueueState
from repoverify.service import build_service

from tests.conftest import requires_git


WAIT = 15


class RecordingStore(SQLJobStore):
    """SQLJobStore that remembers every status it wrote."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.history: dict[str, list[str]] = {}

    async def update_job_status(self, job_id, status, attempts=None):
        await super().update_job_status(job_id, status, attempts)
        self.history.setdefault(job_id, []).append(JobStatus(status).value)

    async def update_job_result(self, job_id, outcome):
        await super().update_job_result(job_id, outcome)
        self.history.setdefault(job_id, []).append(outcome.status.value)


class RecordingBroker(InMemoryBroker):
    """In-memory broker that remembers the delay of every enqueue."""

    def __init__(self):
        super().__init__()
        self.delays: list[float] = []

    async def enqueue(self, message, delay=0.0):
        self.delays.append(delay)
        await super().enqueue(message, delay)


async def run_one(service, session_factory, repo_url):
    await service.start()
    _, [job], [handle] = await submit_repositories(
        session_factory, service.queue, [repo_url], track=True
    )
    outcome = await handle.wait(timeout=WAIT)
    return outcome, await service.store.get_job(job.id)


class TestBackoffDelay:
    def test_doubles_per_attempt(self):
        assert backoff_delay(1, base=2.0, factor=2.0) == 2.0
        assert backoff_delay(2, base=2.0, factor=2.0) == 4.0
        assert backoff_delay(3, base=2.0, factor=2.0) == 8.0


@requires_git
class TestScenarios:
    """The three reference journeys through the pipeline."""

    @pytest.mark.asyncio
    async def test_valid_repository_completes(self, make_service, session_factory, git_repo, runtime):
        """
        Test a repository whose setup command succeeds.

        Arrange: Local repository with a README, command exits 0
        Act: Submit and wait for the outcome
        Assert: completed, result True, logs and instructions stored,
                sandbox destroyed, workspace removed
        """
        service = make_service()

        outcome, job = await run_one(service, session_factory, git_repo)

        assert outcome.status == JobStatus.COMPLETED
        assert job.status == "completed"
        assert job.result is True
        assert job.reason == SUCCESS_REASON
        assert job.setup_instructions == "npm install && npm start"
        assert job.attempts == 1
        assert job.execution_time_ms is not None
        assert "Repository cloned" in job.logs
        assert "installed" in job.logs

        [handle] = runtime.created
        assert runtime.destroy_count(handle) == 1

        status = await service.queue.get_status(job.id)
        assert status.state == QueueState.COMPLETED
        assert status.progress == 100

    @pytest.mark.asyncio
    async def test_unreachable_repository_fails_after_retries(
        self, make_service, session_factory, tmp_path, runtime
    ):
        """
        Test a repository that cannot be cloned.

        Arrange: URL pointing at nothing, three attempts allowed
        Act: Submit and wait
        Assert: failed, result False, fetch reason, every attempt logged,
                no sandbox ever created
        """
        service = make_service()

        outcome, job = await run_one(service, session_factory, str(tmp_path / "nowhere"))

        assert outcome.status == JobStatus.FAILED
        assert job.status == "failed"
        assert job.result is False
        assert job.reason.startswith("Failed to fetch repository")
        assert job.attempts == 3
        assert job.logs.count("Cloning repository...") == 3
        assert runtime.create_attempts == 0

    @pytest.mark.asyncio
    async def test_failing_command_is_not_retried(self, make_service, session_factory, git_repo, runtime):
        """
        Test a repository whose setup command exits non-zero.

        Arrange: Command "exit 1"
        Act: Submit and wait
        Assert: completed with result False after a single attempt
        """
        service = make_service(command="exit 1")

        outcome, job = await run_one(service, session_factory, git_repo)

        assert outcome.status == JobStatus.COMPLETED
        assert job.result is False
        assert job.reason == "Setup failed with exit code 1"
        assert job.attempts == 1
        assert len(runtime.created) == 1


@requires_git
class TestRetryPolicy:

    @pytest.mark.asyncio
    async def test_sandbox_creation_failures_back_off_until_exhausted(
        self, settings, session_factory, git_repo
    ):
        """
        Test an isolation backend that never comes up.

        Arrange: Runtime that always fails to create, recording broker
        Act: Submit and wait
        Assert: attempts == max_attempts, terminal failed, retries delayed
                with increasing backoff, status history monotonic
        """
        runtime = FakeRuntime(create_failures=100)
        broker = RecordingBroker()
        service = build_service(
            settings, session_factory, runtime=runtime, resolver=StaticResolver("npm start"), broker=broker
        )
        store = RecordingStore(session_factory, max_attempts=settings.max_attempts)
        service.reporter.store = store

        try:
            outcome, job = await run_one(service, session_factory, git_repo)
        finally:
            await service.stop()

        assert outcome.status == JobStatus.FAILED
        assert job.result is False
        assert job.attempts == settings.max_attempts
        assert job.reason.startswith("Sandbox error")
        assert runtime.create_attempts == settings.max_attempts

        # First enqueue from intake, then one delayed requeue per retry
        assert broker.delays == [0.0, 0.01, 0.02]

        assert store.history[job.id] == [
            "processing", "failed", "pending",
            "processing", "failed", "pending",
            "processing", "failed",
        ]

    @pytest.mark.asyncio
    async def test_transient_failure_recovers_on_retry(self, settings, session_factory, git_repo):
        runtime = FakeRuntime(create_failures=1)
        service = build_service(
            settings, session_factory, runtime=runtime, resolver=StaticResolver("npm start"),
            broker=InMemoryBroker(),
        )

        try:
            outcome, job = await run_one(service, session_factory, git_repo)
        finally:
            await service.stop()

        assert outcome.status == JobStatus.COMPLETED
        assert job.result is True
        assert job.attempts == 2
        assert "Sandbox error" in job.logs
        assert "Attempt 1 failed, retrying" in job.logs

    @pytest.mark.asyncio
    async def test_sandbox_timeout_is_reported_with_partial_logs(
        self, make_service, session_factory, git_repo, runtime
    ):
        """
        Test a command that outlives the sandbox hard timeout.

        Arrange: "sleep infinity", one attempt, 0.2s hard timeout
        Act: Submit and wait
        Assert: failed, reason contains "timeout", partial output kept,
                sandbox destroyed once
        """
        service = make_service(command="sleep infinity", max_attempts=1, sandbox_timeout_seconds=0.2)

        outcome, job = await run_one(service, session_factory, git_repo)

        assert job.status == "failed"
        assert job.result is False
        assert "timeout" in job.reason
        assert "$ sleep infinity" in job.logs
        assert runtime.destroy_count(runtime.created[0]) == 1

    @pytest.mark.asyncio
    async def test_job_deadline_cancels_attempt(
        self, make_service, session_factory, git_repo, runtime, settings
    ):
        """
        Test the whole-job deadline firing while the sandbox runs.

        Arrange: Job deadline 1s, sandbox timeout far longer
        Act: Submit and wait
        Assert: timeout reason, sandbox torn down, workspace removed
        """
        service = make_service(
            command="sleep infinity",
            max_attempts=1,
            job_timeout_seconds=1.0,
            sandbox_timeout_seconds=60,
        )

        outcome, job = await run_one(service, session_factory, git_repo)

        assert job.status == "failed"
        assert job.reason.startswith("timeout")
        assert "deadline" in job.reason
        assert "$ sleep infinity" in job.logs
        assert runtime.destroy_count(runtime.created[0]) == 1
        assert list(Path(settings.workspace_root).iterdir()) == []


@requires_git
class TestConcurrency:

    @pytest.mark.asyncio
    async def test_same_url_jobs_run_in_disjoint_workspaces(
        self, make_service, session_factory, git_repo, settings
    ):
        """
        Test two jobs for one URL at the same time.

        Arrange: Two workers, runtime that takes a moment per command
        Act: Submit the same URL twice in one submission
        Assert: Both complete, in different workspaces, in parallel
        """
        runtime = FakeRuntime(run_delay=0.5)
        service = build_service(
            settings, session_factory, runtime=runtime, resolver=StaticResolver("npm start"),
            broker=InMemoryBroker(),
        )
        await service.start()
        try:
            _, jobs, handles = await submit_repositories(
                session_factory, service.queue, [git_repo, git_repo], track=True
            )
            outcomes = await asyncio.gather(*(h.wait(timeout=WAIT) for h in handles))
        finally:
            await service.stop()

        assert [o.result for o in outcomes] == [True, True]
        workspaces = {spec.workspace_path for spec in runtime.specs.values()}
        assert len(workspaces) == 2
        assert runtime.max_active == 2
        assert jobs[0].id != jobs[1].id


class TestDispatcherEdges:

    @pytest.mark.asyncio
    async def test_stale_message_is_dropped(self, make_service, pending_job, store):
        """
        Test a message for a job that already moved on.

        Arrange: Job already completed
        Act: Process a message for it
        Assert: Nothing runs, job unchanged
        """
        await store.update_job_status(pending_job.id, JobStatus.PROCESSING, attempts=1)
        await store.update_job_result(
            pending_job.id, JobOutcome(status=JobStatus.COMPLETED, result=True, reason="done")
        )
        service = make_service()

        result = await service.queue.process(
            JobMessage(job_id=pending_job.id, repo_url=pending_job.repo_url)
        )

        assert result is None
        job = await store.get_job(pending_job.id)
        assert job.reason == "done"

    @pytest.mark.asyncio
    async def test_message_for_unknown_job_is_dropped(self, make_service):
        service = make_service(persistence_retry_attempts=1)

        result = await service.queue.process(JobMessage(job_id="missing", repo_url="x"))

        assert result is None
        assert service.queue.in_flight == frozenset()

    @pytest.mark.asyncio
    async def test_dropped_job_fails_its_tracked_handle(self, make_service):
        service = make_service(persistence_retry_attempts=1)
        handle = await service.queue.enqueue("https://example.com/a.git", "missing", track=True)

        await service.queue.process(JobMessage(job_id="missing", repo_url="https://example.com/a.git"))

        with pytest.raises(JobNotFoundError):
            await handle.wait(timeout=1)
        assert service.queue._handles == {}

    @pytest.mark.asyncio
    async def test_untracked_enqueues_keep_no_handles(self, make_service):
        """
        Test enqueueing from a process that runs no workers.

        Arrange: Queue with workers stopped
        Act: Enqueue many jobs without asking for handles
        Assert: Nothing is kept per job
        """
        service = make_service()

        for i in range(500):
            handle = await service.queue.enqueue("https://example.com/a.git", f"job{i}")
            assert handle is None

        assert service.queue._handles == {}

    @requires_git
    @pytest.mark.asyncio
    async def test_no_instructions_completes_without_sandbox(
        self, make_service, session_factory, make_git_repo, runtime
    ):
        repo = make_git_repo(name="bare-readme", files={"README.md": "# Nothing to run\n"})
        service = make_service(command=None, default_setup_command=None)

        await service.start()
        _, [job], [handle] = await submit_repositories(
            session_factory, service.queue, [repo], track=True
        )
        outcome = await handle.wait(timeout=WAIT)

        assert outcome.status == JobStatus.COMPLETED
        assert outcome.result is False
        assert outcome.reason == NO_INSTRUCTIONS_REASON
        assert runtime.created == []
