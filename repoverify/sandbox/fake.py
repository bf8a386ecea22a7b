"""Deterministic in-memory sandbox runtime.

Used by the test suite and by ``repoverify verify --fake-sandbox``. The
command script decides the outcome:

- ``exit N``            exits with code N
- ``sleep infinity``    never exits (waits hit their timeout)
- anything else         exits with ``default_exit_code``

Every call is recorded so tests can assert on lifecycle counts.
"""

from __future__ import annotations

import asyncio
import itertools
import re

from repoverify.sandbox.runtime import RuntimeWaitTimeout, SandboxRuntime
from repoverify.schemas import EnvironmentSpec


_EXIT_RE = re.compile(r"^\s*exit\s+(\d+)\s*$")
_HANG_SCRIPTS = ("sleep infinity", "while true; do :; done")


class FakeRuntimeError(Exception):
    """Injected backend failure."""


class FakeRuntime(SandboxRuntime):
    """Scriptable runtime that never touches a real isolation backend."""

    def __init__(
        self,
        default_exit_code: int = 0,
        output: str = "",
        create_failures: int = 0,
        run_delay: float = 0.0,
        create_delay: float = 0.0,
    ):
        self.default_exit_code = default_exit_code
        self.output = output
        self.create_failures = create_failures
        self.run_delay = run_delay
        self.create_delay = create_delay

        self._ids = itertools.count(1)
        self.specs: dict[str, EnvironmentSpec] = {}
        self.created: list[str] = []
        self.started: list[str] = []
        self.destroyed: list[str] = []
        self.create_attempts = 0
        self.active: set[str] = set()
        self.max_active = 0

    @property
    def backend_name(self) -> str:
        return "fake"

    @staticmethod
    def _script(spec: EnvironmentSpec) -> str:
        return spec.command[-1] if spec.command else ""

    async def create_environment(self, spec: EnvironmentSpec) -> str:
        self.create_attempts += 1
        if self.create_failures > 0:
            self.create_failures -= 1
            raise FakeRuntimeError(f"image {spec.image} is unavailable")

        handle = f"fake-{next(self._ids)}"
        self.specs[handle] = spec
        self.created.append(handle)
        self.active.add(handle)
        self.max_active = max(self.max_active, len(self.active))
        if self.create_delay:
            # Backend is slow to answer after the environment exists
            await asyncio.sleep(self.create_delay)
        return handle

    async def start(self, handle: str) -> None:
        self.started.append(handle)

    async def wait(self, handle: str, timeout: float) -> int:
        script = self._script(self.specs[handle])

        if any(hang in script for hang in _HANG_SCRIPTS):
            await asyncio.sleep(timeout)
            raise RuntimeWaitTimeout(f"{handle} still running after {timeout}s")

        if self.run_delay:
            if self.run_delay > timeout:
                await asyncio.sleep(timeout)
                raise RuntimeWaitTimeout(f"{handle} still running after {timeout}s")
            await asyncio.sleep(self.run_delay)

        match = _EXIT_RE.match(script)
        if match:
            return int(match.group(1))
        return self.default_exit_code

    async def logs(self, handle: str) -> str:
        spec = self.specs[handle]
        return f"$ {self._script(spec)}\n{self.output}"

    async def destroy(self, handle: str) -> None:
        self.destroyed.append(handle)
        self.active.discard(handle)

    def destroy_count(self, handle: str) -> int:
        return self.destroyed.count(handle)
