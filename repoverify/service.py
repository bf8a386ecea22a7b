"""Wiring of the verification core from settings.

Entry points (API, CLI) build one ``VerifierService`` and pass its parts to
whatever needs them; nothing in the core reaches for a global instance.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from repoverify.config import Settings
from repoverify.jobqueue import JobQueue, QueueConfig, Watchdog, build_broker
from repoverify.jobqueue.broker import Broker
from repoverify.pipeline.fetcher import RepositoryFetcher
from repoverify.pipeline.reporter import ResultReporter
from repoverify.pipeline.runner import VerificationPipeline
from repoverify.pipeline.store import JobStore, SQLJobStore
from repoverify.resolver import InstructionResolver, build_resolver
from repoverify.sandbox.executor import SandboxConfig, SandboxExecutor
from repoverify.sandbox.runtime import SandboxRuntime


logger = logging.getLogger(__name__)


@dataclass
class VerifierService:
    """The assembled core plus its background tasks."""
    broker: Broker
    store: JobStore
    reporter: ResultReporter
    queue: JobQueue
    watchdog: Watchdog
    runtime: SandboxRuntime
    resolver: InstructionResolver
    _watchdog_task: asyncio.Task | None = field(default=None, repr=False)

    async def start(self, workers: bool = True) -> None:
        if workers:
            await self.queue.start()
            self._watchdog_task = asyncio.create_task(self.watchdog.run(), name="repoverify-watchdog")

    async def stop(self) -> None:
        if self._watchdog_task is not None:
            self._watchdog_task.cancel()
            await asyncio.gather(self._watchdog_task, return_exceptions=True)
            self._watchdog_task = None
        await self.queue.stop()
        await self.resolver.close()
        await self.runtime.close()
        await self.broker.close()


def build_service(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    runtime: SandboxRuntime | None = None,
    resolver: InstructionResolver | None = None,
    broker: Broker | None = None,
) -> VerifierService:
    """Assemble the core; any collaborator can be swapped in."""
    if runtime is None:
        from repoverify.sandbox.docker_runtime import DockerRuntime

        runtime = DockerRuntime()

    resolver = resolver or build_resolver(settings)
    broker = broker or build_broker(settings)

    store = SQLJobStore(session_factory, max_attempts=settings.max_attempts)
    reporter = ResultReporter(
        store,
        retry_attempts=settings.persistence_retry_attempts,
        retry_delay=settings.persistence_retry_delay_seconds,
    )
    pipeline = VerificationPipeline(
        fetcher=RepositoryFetcher(settings.workspace_root, settings.clone_timeout_seconds),
        resolver=resolver,
        executor=SandboxExecutor(runtime, SandboxConfig.from_settings(settings)),
        default_command=settings.default_setup_command,
    )
    queue = JobQueue(broker, pipeline, reporter, QueueConfig.from_settings(settings))
    watchdog = Watchdog(
        store,
        queue,
        reporter,
        max_attempts=settings.max_attempts,
        stale_after=settings.job_timeout_seconds + settings.watchdog_margin_seconds,
        interval=settings.watchdog_interval_seconds,
    )

    logger.info(
        f"Verifier ready: runtime={runtime.backend_name} resolver={resolver.name} "
        f"workers={settings.worker_concurrency}"
    )
    return VerifierService(
        broker=broker,
        store=store,
        reporter=reporter,
        queue=queue,
        watchdog=watchdog,
        runtime=runtime,
        resolver=resolver,
    )
