"""Sandbox execution of untrusted setup commands.

Runs the resolved command over the cloned workspace inside one isolated
environment per attempt:
- Memory and CPU ceilings, no network
- Hard timeout on the command
- Combined stdout/stderr captured as the job log
- The environment is destroyed on every exit path
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path

from pydantic import BaseModel

from repoverify.config import Settings
from repoverify.errors import ExecutionTimeoutError, SandboxCreationError
from repoverify.sandbox.runtime import RuntimeWaitTimeout, SandboxRuntime
from repoverify.schemas import EnvironmentSpec, ExecutionResult


logger = logging.getLogger(__name__)

SUCCESS_REASON = "Setup completed successfully"


class SandboxConfig(BaseModel):
    """Limits applied to every sandboxed run."""
    base_image: str = "node:18-alpine"
    working_dir: str = "/app"
    memory_limit_bytes: int = 512 * 1024 * 1024
    cpu_quota_percent: int = 50
    network_mode: str = "none"
    hard_timeout: float = 240.0
    max_log_bytes: int = 1024 * 1024

    @classmethod
    def from_settings(cls, settings: Settings) -> "SandboxConfig":
        return cls(
            base_image=settings.sandbox_base_image,
            working_dir=settings.sandbox_working_dir,
            memory_limit_bytes=settings.sandbox_memory_limit_bytes,
            cpu_quota_percent=settings.sandbox_cpu_quota_percent,
            network_mode=settings.sandbox_network_mode,
            hard_timeout=settings.sandbox_timeout_seconds,
            max_log_bytes=settings.sandbox_max_log_bytes,
        )


def truncate_output(output: str, max_bytes: int) -> str:
    """Truncate output to max_bytes, adding truncation notice if needed."""
    encoded = output.encode("utf-8", errors="replace")
    if len(encoded) <= max_bytes:
        return output
    kept = encoded[:max_bytes].decode("utf-8", errors="ignore")
    return f"{kept}\n... [output truncated, {len(encoded) - max_bytes} bytes omitted]"


def outcome_for_exit_code(exit_code: int) -> tuple[bool, str]:
    """Map a command exit code to (result, reason)."""
    if exit_code == 0:
        return True, SUCCESS_REASON
    return False, f"Setup failed with exit code {exit_code}"


class SandboxExecutor:
    """Runs one command per attempt through a SandboxRuntime."""

    def __init__(self, runtime: SandboxRuntime, config: SandboxConfig | None = None):
        self.runtime = runtime
        self.config = config or SandboxConfig()

    def build_spec(self, workspace: Path, command: str, attempt_id: str) -> EnvironmentSpec:
        return EnvironmentSpec(
            name=f"repoverify-{attempt_id}",
            image=self.config.base_image,
            command=["/bin/sh", "-c", command],
            workspace_path=str(Path(workspace).resolve()),
            working_dir=self.config.working_dir,
            memory_limit_bytes=self.config.memory_limit_bytes,
            cpu_quota_percent=self.config.cpu_quota_percent,
            network_mode=self.config.network_mode,
        )

    async def execute(
        self,
        workspace: Path,
        command: str,
        attempt_id: str,
        transcript: list[str] | None = None,
    ) -> ExecutionResult:
        """Run ``command`` against ``workspace`` in a fresh environment.

        Args:
            workspace: Host directory bound at the working directory
            command: Shell command to run
            attempt_id: Unique attempt identifier, used to name the environment
            transcript: Receives the partial output if the run is cancelled

        Returns:
            ExecutionResult for a command that ran to completion (any exit code)

        Raises:
            SandboxCreationError: The environment could not be created or run
            ExecutionTimeoutError: The command outlived the hard timeout
        """
        start = time.perf_counter()
        spec = self.build_spec(workspace, command, attempt_id)
        timeout = self.config.hard_timeout

        create = asyncio.ensure_future(self.runtime.create_environment(spec))
        try:
            handle = await asyncio.shield(create)
        except asyncio.CancelledError:
            # The backend call keeps running; whatever it creates is removed
            await asyncio.shield(self._discard_pending(create, attempt_id))
            raise
        except Exception as e:
            raise SandboxCreationError(f"Failed to create environment: {e}") from e

        logger.info(f"[{attempt_id}] Sandbox {handle} created ({spec.image})")

        try:
            try:
                await self.runtime.start(handle)
            except Exception as e:
                raise SandboxCreationError(f"Failed to start environment: {e}") from e

            try:
                exit_code = await self.runtime.wait(handle, timeout)
            except RuntimeWaitTimeout:
                output = await self._collect_logs(handle)
                logger.warning(f"[{attempt_id}] Command timed out after {timeout}s")
                raise ExecutionTimeoutError(
                    f"Command timed out after {timeout} seconds", logs=output
                )
            except asyncio.CancelledError:
                if transcript is not None:
                    transcript.append(await self._collect_logs(handle))
                raise
            except Exception as e:
                raise SandboxCreationError(f"Environment failed while running: {e}") from e

            output = await self._collect_logs(handle)
        finally:
            await asyncio.shield(self._destroy(handle, attempt_id))

        success, reason = outcome_for_exit_code(exit_code)
        latency_ms = int((time.perf_counter() - start) * 1000)
        logger.info(f"[{attempt_id}] Command exited with {exit_code} in {latency_ms}ms")

        return ExecutionResult(
            success=success,
            exit_code=exit_code,
            reason=reason,
            logs=output,
            latency_ms=latency_ms,
        )

    async def _collect_logs(self, handle: str) -> str:
        try:
            output = await self.runtime.logs(handle)
        except Exception as e:
            logger.warning(f"Could not read logs from {handle}: {e}")
            return f"[logs unavailable: {e}]"
        return truncate_output(output, self.config.max_log_bytes)

    async def _discard_pending(self, create: asyncio.Future, attempt_id: str) -> None:
        try:
            handle = await create
        except Exception:
            return
        logger.warning(f"[{attempt_id}] Cancelled while creating sandbox {handle}, removing it")
        await self._destroy(handle, attempt_id)

    async def _destroy(self, handle: str, attempt_id: str) -> None:
        try:
            await self.runtime.destroy(handle)
        except Exception:
            # Labelled environments can still be reaped out of band
            logger.exception(f"[{attempt_id}] Failed to destroy sandbox {handle}")
