"""Verification pipeline for a single attempt.

fetch → read README → resolve command → execute in sandbox

The pipeline only produces outcomes for attempts that ran to the end
(including a non-zero exit). Infrastructure failures propagate as
VerificationError subclasses for the dispatcher to classify.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from repoverify.pipeline.fetcher import RepositoryFetcher
from repoverify.resolver.base import InstructionResolver, resolve_instructions
from repoverify.sandbox.executor import SandboxExecutor
from repoverify.schemas import JobMessage, JobOutcome, JobStatus
from repoverify.tools.git_ops import git_head
from repoverify.tools.repo import read_readme


logger = logging.getLogger(__name__)

NO_INSTRUCTIONS_REASON = "No setup instructions found"


class AttemptContext:
    """Mutable record of one attempt, readable even if the attempt is cancelled."""

    def __init__(self, message: JobMessage):
        self.message = message
        self.lines: list[str] = []
        self.setup_instructions: str | None = None

    @property
    def attempt_id(self) -> str:
        return self.message.attempt_id

    def log(self, line: str) -> None:
        stamp = datetime.utcnow().strftime("%H:%M:%S")
        self.lines.append(f"[{stamp}] {line}")
        logger.info(f"[{self.attempt_id}] {line}")

    def append_output(self, output: str) -> None:
        if output:
            self.lines.append(output.rstrip("\n"))

    def text(self) -> str:
        return "\n".join(self.lines)


class VerificationPipeline:
    """Runs fetch, resolve and execute for one attempt."""

    def __init__(
        self,
        fetcher: RepositoryFetcher,
        resolver: InstructionResolver,
        executor: SandboxExecutor,
        default_command: str | None = None,
    ):
        self.fetcher = fetcher
        self.resolver = resolver
        self.executor = executor
        self.default_command = default_command

    async def run(self, context: AttemptContext) -> JobOutcome:
        """Run one attempt.

        Raises:
            FetchError: Clone failed
            SandboxCreationError: Isolation backend failed
            ExecutionTimeoutError: Command hit the sandbox hard timeout
        """
        message = context.message
        context.log(f"Starting attempt {message.attempt} for {message.repo_url}")

        context.log("Cloning repository...")
        async with self.fetcher.checkout(message.repo_url, context.attempt_id) as workspace:
            head = await git_head(str(workspace))
            if head.ok:
                context.log(f"Repository cloned at {head.data['hash']}")
            else:
                context.log("Repository cloned")

            context.log("Extracting setup instructions...")
            readme = await asyncio.to_thread(read_readme, str(workspace))
            command = await resolve_instructions(self.resolver, readme, self.default_command)
            context.setup_instructions = command
            context.log(f"Setup instructions extracted: {'Yes' if command else 'No'}")

            if not command:
                return JobOutcome(
                    status=JobStatus.COMPLETED,
                    result=False,
                    reason=NO_INSTRUCTIONS_REASON,
                    logs=context.text(),
                )

            context.log(f"Executing in sandbox: {command}")
            result = await self.executor.execute(
                workspace, command, context.attempt_id, transcript=context.lines
            )
            context.append_output(result.logs)
            context.log(result.reason)

        return JobOutcome(
            status=JobStatus.COMPLETED,
            result=result.success,
            reason=result.reason,
            logs=context.text(),
            setup_instructions=command,
        )
