"""Abstract base class for sandbox runtime clients."""

from __future__ import annotations

from abc import ABC, abstractmethod

from repoverify.schemas import EnvironmentSpec


class RuntimeWaitTimeout(Exception):
    """The environment did not exit within the wait timeout."""


class SandboxRuntime(ABC):
    """Capability interface over an isolation backend.

    The executor depends only on these five operations, so the Docker
    backend and the in-memory fake are interchangeable. Implementations
    raise on backend failures; the executor decides what they mean.
    """

    @property
    @abstractmethod
    def backend_name(self) -> str:
        """Return the backend name (e.g., 'docker', 'fake')."""
        ...

    @abstractmethod
    async def create_environment(self, spec: EnvironmentSpec) -> str:
        """Create (but do not start) an isolated environment.

        Returns:
            Opaque handle for the other operations
        """
        ...

    @abstractmethod
    async def start(self, handle: str) -> None:
        """Start the environment's command."""
        ...

    @abstractmethod
    async def wait(self, handle: str, timeout: float) -> int:
        """Wait for the command to exit.

        Returns:
            Exit code of the command

        Raises:
            RuntimeWaitTimeout: If it is still running after ``timeout`` seconds
        """
        ...

    @abstractmethod
    async def logs(self, handle: str) -> str:
        """Combined stdout and stderr produced so far."""
        ...

    @abstractmethod
    async def destroy(self, handle: str) -> None:
        """Kill the environment if running and remove it."""
        ...

    async def close(self) -> None:
        """Release client resources."""
        return None
