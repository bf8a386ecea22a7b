"""Sandbox runtime clients and the executor built on them."""

from repoverify.sandbox.executor import SandboxConfig, SandboxExecutor
from repoverify.sandbox.fake import FakeRuntime
from repoverify.sandbox.runtime import RuntimeWaitTimeout, SandboxRuntime

__all__ = [
    "FakeRuntime",
    "RuntimeWaitTimeout",
    "SandboxConfig",
    "SandboxExecutor",
    "SandboxRuntime",
]
