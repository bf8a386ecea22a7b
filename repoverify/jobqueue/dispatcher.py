"""Job queue and worker pool.

A fixed number of worker tasks drain the broker, one job each at a time.
Every attempt runs under the job deadline; when it fires, the pipeline task
is cancelled, which kills a running clone and tears down the sandbox.

Failure handling per attempt:
- retryable error, attempts left  -> failed, pending, re-enqueued after backoff
- retryable error, no attempts    -> failed (terminal, result=False)
- non-zero exit of the command    -> completed, result=False, never retried
- broker outage                   -> retried at the connection level only
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter

from pydantic import BaseModel

from repoverify.config import Settings
from repoverify.errors import (
    ExecutionTimeoutError,
    InvalidTransitionError,
    JobNotFoundError,
    PersistenceError,
    TransientInfraError,
    VerificationError,
)
from repoverify.jobqueue.broker import Broker
from repoverify.pipeline.reporter import ResultReporter
from repoverify.pipeline.runner import AttemptContext, VerificationPipeline
from repoverify.schemas import JobMessage, JobOutcome, JobStatus, QueueJobStatus, QueueState


logger = logging.getLogger(__name__)


class QueueConfig(BaseModel):
    """Scheduling knobs for the worker pool."""
    concurrency: int = 2
    max_attempts: int = 3
    backoff_base: float = 2.0
    backoff_factor: float = 2.0
    job_timeout: float = 300.0
    poll_timeout: float = 1.0
    infra_retry_delay: float = 1.0
    requeue_tries: int = 3

    @classmethod
    def from_settings(cls, settings: Settings) -> "QueueConfig":
        return cls(
            concurrency=settings.worker_concurrency,
            max_attempts=settings.max_attempts,
            backoff_base=settings.backoff_base_seconds,
            backoff_factor=settings.backoff_factor,
            job_timeout=settings.job_timeout_seconds,
            infra_retry_delay=settings.broker_retry_delay_seconds,
            requeue_tries=settings.requeue_tries,
        )


def backoff_delay(attempt: int, base: float, factor: float) -> float:
    """Delay before the retry that follows failed attempt ``attempt`` (1-based)."""
    return base * factor ** (attempt - 1)


class QueueHandle:
    """Result channel for one enqueued job."""

    def __init__(self, job_id: str, future: asyncio.Future):
        self.job_id = job_id
        self._future = future

    def done(self) -> bool:
        return self._future.done()

    async def wait(self, timeout: float | None = None) -> JobOutcome:
        """Wait for the job's terminal outcome."""
        return await asyncio.wait_for(asyncio.shield(self._future), timeout=timeout)


class JobQueue:
    """Dispatcher: enqueue, worker pool, retry and deadline policy."""

    def __init__(
        self,
        broker: Broker,
        pipeline: VerificationPipeline,
        reporter: ResultReporter,
        config: QueueConfig | None = None,
    ):
        self.broker = broker
        self.pipeline = pipeline
        self.reporter = reporter
        self.config = config or QueueConfig()

        self._handles: dict[str, asyncio.Future] = {}
        self._in_flight: Counter[str] = Counter()
        self._workers: list[asyncio.Task] = []
        self._stopping = False

    # =========================================================================
    # Intake side
    # =========================================================================

    async def enqueue(
        self,
        repo_url: str,
        job_id: str,
        submission_id: str | None = None,
        track: bool = False,
    ) -> QueueHandle | None:
        """Schedule the first attempt of a job.

        With ``track`` the caller gets a handle that a local worker resolves
        with the terminal outcome; without it nothing is kept per job.

        Raises:
            TransientInfraError: The broker is unavailable; nothing was scheduled
        """
        message = JobMessage(job_id=job_id, repo_url=repo_url, submission_id=submission_id)
        future = None
        if track:
            future = asyncio.get_running_loop().create_future()
            self._handles[job_id] = future

        try:
            await self.broker.enqueue(message)
        except TransientInfraError:
            self._handles.pop(job_id, None)
            raise

        logger.info(f"[{job_id}] Enqueued {repo_url}")
        return QueueHandle(job_id, future) if future is not None else None

    async def requeue(
        self,
        message: JobMessage,
        delay: float = 0.0,
        max_tries: int | None = None,
    ) -> None:
        """Put a message back, retrying while the broker is unreachable.

        Raises:
            TransientInfraError: ``max_tries`` enqueues failed, or the queue is stopping
        """
        tries = 0
        while True:
            try:
                await self.broker.enqueue(message, delay=delay)
                return
            except TransientInfraError as e:
                tries += 1
                if self._stopping or (max_tries is not None and tries >= max_tries):
                    raise
                logger.warning(f"[{message.job_id}] Broker unavailable, retrying enqueue: {e}")
                await asyncio.sleep(self.config.infra_retry_delay)

    async def get_status(self, job_id: str) -> QueueJobStatus | None:
        return await self.broker.get_status(job_id)

    def resolve_handle(self, job_id: str, outcome: JobOutcome) -> None:
        """Deliver a terminal outcome to the local handle, if any."""
        future = self._handles.pop(job_id, None)
        if future is not None and not future.done():
            future.set_result(outcome)

    def discard_handle(self, job_id: str, error: Exception) -> None:
        """Fail the local handle of a job that will not be processed here."""
        future = self._handles.pop(job_id, None)
        if future is not None and not future.done():
            future.set_exception(error)

    @property
    def in_flight(self) -> frozenset[str]:
        """Jobs a local worker is processing right now."""
        return frozenset(self._in_flight)

    # =========================================================================
    # Worker pool
    # =========================================================================

    async def start(self) -> None:
        if self._workers:
            return
        self._stopping = False
        self._workers = [
            asyncio.create_task(self._worker_loop(i), name=f"repoverify-worker-{i}")
            for i in range(self.config.concurrency)
        ]
        logger.info(f"Started {self.config.concurrency} workers")

    async def stop(self) -> None:
        self._stopping = True
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Workers stopped")

    async def __aenter__(self) -> "JobQueue":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    async def _worker_loop(self, index: int) -> None:
        while not self._stopping:
            try:
                message = await self.broker.dequeue(timeout=self.config.poll_timeout)
            except TransientInfraError as e:
                logger.warning(f"Worker {index}: broker unavailable: {e}")
                await asyncio.sleep(self.config.infra_retry_delay)
                continue

            if message is not None:
                await self.process(message)

    async def process(self, message: JobMessage) -> JobOutcome | None:
        """Run one attempt of a job and apply the retry policy.

        Returns:
            The terminal outcome, or None if the job was rescheduled or skipped
        """
        self._in_flight[message.job_id] += 1
        try:
            return await self._process(message)
        except (TransientInfraError, PersistenceError) as e:
            logger.error(f"[{message.job_id}] Infrastructure failure while finishing job: {e}")
            return None
        except Exception:
            # One bad job must not take the worker down
            logger.exception(f"[{message.job_id}] Unhandled error in dispatcher")
            return None
        finally:
            self._in_flight[message.job_id] -= 1
            if self._in_flight[message.job_id] <= 0:
                del self._in_flight[message.job_id]

    async def _process(self, message: JobMessage) -> JobOutcome | None:
        job_id = message.job_id
        attempt = message.attempt

        try:
            await self.reporter.mark_processing(job_id, attempt)
        except InvalidTransitionError as e:
            logger.warning(f"[{job_id}] Dropping stale message for attempt {attempt}: {e}")
            if self._in_flight[job_id] <= 1:
                self.discard_handle(job_id, e)
            return None
        except JobNotFoundError as e:
            # Intake rolled back after this message was already published
            logger.error(f"[{job_id}] Dropping message for unknown job: {e}")
            self.discard_handle(job_id, e)
            return None
        except PersistenceError as e:
            logger.error(f"[{job_id}] Could not mark processing, rescheduling: {e}")
            await self.requeue(message, delay=self.config.infra_retry_delay)
            return None

        await self._set_queue_state(job_id, QueueState.ACTIVE, progress=10, attempt=attempt)

        context = AttemptContext(message)
        started = time.perf_counter()
        error: VerificationError | None = None
        outcome: JobOutcome | None = None

        try:
            outcome = await asyncio.wait_for(
                self.pipeline.run(context), timeout=self.config.job_timeout
            )
        except asyncio.TimeoutError:
            error = ExecutionTimeoutError(
                f"Job exceeded deadline of {self.config.job_timeout} seconds"
            )
            context.log(f"Error: {error.reason}")
        except VerificationError as e:
            error = e
            context.append_output(e.logs)
            context.log(f"Error: {e.reason}")
        except Exception as e:
            logger.exception(f"[{job_id}] Pipeline crashed")
            error = VerificationError(f"Unexpected error: {e}")
            context.log(f"Error: {error.reason}")

        execution_time_ms = int((time.perf_counter() - started) * 1000)

        if error is None:
            outcome = outcome.model_copy(update={"execution_time_ms": execution_time_ms})
            return await self._finish(job_id, outcome)

        if error.retryable and attempt < self.config.max_attempts:
            delay = backoff_delay(attempt, self.config.backoff_base, self.config.backoff_factor)
            context.log(f"Attempt {attempt} failed, retrying in {delay:g}s")
            logger.warning(f"[{job_id}] Attempt {attempt} failed ({error.reason}), retry in {delay:g}s")
            await self.reporter.record_retry(
                job_id,
                JobOutcome(
                    status=JobStatus.FAILED,
                    result=None,
                    reason=error.reason,
                    logs=context.text(),
                    setup_instructions=context.setup_instructions,
                ),
                on_committed=lambda: self.requeue(
                    message.next_attempt(), delay=delay, max_tries=self.config.requeue_tries
                ),
            )
            return None

        return await self._finish(
            job_id,
            JobOutcome(
                status=JobStatus.FAILED,
                result=False,
                reason=error.reason,
                logs=context.text(),
                setup_instructions=context.setup_instructions,
                execution_time_ms=execution_time_ms,
            ),
        )

    async def _finish(self, job_id: str, outcome: JobOutcome) -> JobOutcome:
        await self.reporter.record_outcome(job_id, outcome)
        state = QueueState.COMPLETED if outcome.status == JobStatus.COMPLETED else QueueState.FAILED
        await self._set_queue_state(job_id, state, progress=100)
        self.resolve_handle(job_id, outcome)
        return outcome

    async def _set_queue_state(
        self,
        job_id: str,
        state: QueueState,
        progress: int | None = None,
        attempt: int | None = None,
    ) -> None:
        # Queue status is advisory; the job store is the source of truth
        try:
            await self.broker.set_state(job_id, state, progress=progress, attempt=attempt)
        except TransientInfraError as e:
            logger.warning(f"[{job_id}] Could not update queue state: {e}")
