"""Instruction resolver contract and the soft-fail wrapper the pipeline uses."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod


logger = logging.getLogger(__name__)


class InstructionResolver(ABC):
    """Turns README text into a setup command.

    Implementations may raise; callers go through ``resolve_instructions``
    which never lets a resolver failure abort a job.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the resolver name (e.g., 'gemini', 'static')."""
        ...

    @abstractmethod
    async def resolve(self, readme_text: str) -> str | None:
        """Extract a shell command from README text.

        Returns:
            Command string, or None when the README has no usable steps
        """
        ...

    async def close(self) -> None:
        """Release client resources."""
        return None


class StaticResolver(InstructionResolver):
    """Returns a fixed command regardless of the README."""

    def __init__(self, command: str | None):
        self.command = command

    @property
    def name(self) -> str:
        return "static"

    async def resolve(self, readme_text: str) -> str | None:
        return self.command


async def resolve_instructions(
    resolver: InstructionResolver,
    readme_text: str | None,
    default_command: str | None = None,
) -> str | None:
    """Resolve setup instructions, falling back to ``default_command``.

    Any resolver error is logged and treated as "no instructions found".
    """
    command: str | None = None

    if readme_text:
        try:
            command = await resolver.resolve(readme_text)
        except Exception as e:
            logger.warning(f"Resolver {resolver.name} failed, using default: {e}")
            command = None

    if command is not None:
        command = command.strip() or None

    return command or default_command
