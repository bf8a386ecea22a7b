"""Docker backend for the sandbox runtime client.

Containers are created with:
- the workspace bind-mounted read/write at the working directory
- a hard memory ceiling with swap capped to the same value
- a CPU quota over the default 100ms CFS period
- networking disabled entirely

The Docker SDK is synchronous; every call runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import logging
import time

import docker
from docker.errors import DockerException, NotFound

from repoverify.sandbox.runtime import RuntimeWaitTimeout, SandboxRuntime
from repoverify.schemas import EnvironmentSpec


logger = logging.getLogger(__name__)

CPU_PERIOD_US = 100_000
LABEL = "repoverify.sandbox"


class DockerRuntime(SandboxRuntime):
    """Sandbox runtime backed by the local Docker daemon."""

    def __init__(
        self,
        client: docker.DockerClient | None = None,
        poll_interval: float = 0.5,
    ):
        self._client = client
        self.poll_interval = poll_interval

    @property
    def backend_name(self) -> str:
        return "docker"

    def _get_client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def _get_container(self, handle: str):
        return self._get_client().containers.get(handle)

    async def create_environment(self, spec: EnvironmentSpec) -> str:
        def _create() -> str:
            client = self._get_client()
            container = client.containers.create(
                spec.image,
                command=spec.command,
                name=spec.name,
                working_dir=spec.working_dir,
                volumes={spec.workspace_path: {"bind": spec.working_dir, "mode": "rw"}},
                mem_limit=spec.memory_limit_bytes,
                memswap_limit=spec.memory_limit_bytes,
                cpu_period=CPU_PERIOD_US,
                cpu_quota=CPU_PERIOD_US * spec.cpu_quota_percent // 100,
                network_mode=spec.network_mode,
                labels={LABEL: "1"},
                detach=True,
            )
            return container.id

        handle = await asyncio.to_thread(_create)
        logger.debug(f"Created container {handle[:12]} ({spec.name})")
        return handle

    async def start(self, handle: str) -> None:
        await asyncio.to_thread(lambda: self._get_container(handle).start())

    async def wait(self, handle: str, timeout: float) -> int:
        # Poll instead of a blocking wait so cancellation is observed promptly
        deadline = time.monotonic() + timeout
        container = await asyncio.to_thread(self._get_container, handle)

        while True:
            await asyncio.to_thread(container.reload)
            state = container.attrs.get("State", {})
            if state.get("Status") in ("exited", "dead"):
                return int(state.get("ExitCode", -1))
            if time.monotonic() >= deadline:
                raise RuntimeWaitTimeout(f"Container {handle[:12]} still running after {timeout}s")
            await asyncio.sleep(self.poll_interval)

    async def logs(self, handle: str) -> str:
        def _logs() -> bytes:
            return self._get_container(handle).logs(stdout=True, stderr=True)

        output = await asyncio.to_thread(_logs)
        return (output or b"").decode("utf-8", errors="replace")

    async def destroy(self, handle: str) -> None:
        def _remove() -> None:
            try:
                self._get_container(handle).remove(force=True)
            except NotFound:
                pass

        await asyncio.to_thread(_remove)
        logger.debug(f"Removed container {handle[:12]}")

    async def ping(self) -> bool:
        """Check if the Docker daemon is reachable."""
        try:
            return bool(await asyncio.to_thread(lambda: self._get_client().ping()))
        except DockerException:
            return False

    async def close(self) -> None:
        if self._client is not None:
            await asyncio.to_thread(self._client.close)
            self._client = None
