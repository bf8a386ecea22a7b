"""Instruction resolvers."""

from __future__ import annotations

from repoverify.config import Settings
from repoverify.resolver.base import InstructionResolver, StaticResolver, resolve_instructions
from repoverify.resolver.gemini import GeminiResolver


def build_resolver(settings: Settings) -> InstructionResolver:
    """Create the configured resolver.

    Without an API key the Gemini backend degrades to the static default
    command rather than failing every lookup.
    """
    if settings.resolver_backend == "gemini" and settings.gemini_api_key:
        return GeminiResolver(
            api_key=settings.gemini_api_key,
            api_url=settings.gemini_api_url,
            timeout=settings.resolver_timeout_seconds,
        )
    return StaticResolver(settings.default_setup_command)


__all__ = [
    "GeminiResolver",
    "InstructionResolver",
    "StaticResolver",
    "build_resolver",
    "resolve_instructions",
]
