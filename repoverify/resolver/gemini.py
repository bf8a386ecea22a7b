"""Gemini instruction resolver.

Sends the start of the README to the Gemini ``generateContent`` endpoint and
asks for the setup, install, build and run commands as a single shell line.
"""

from __future__ import annotations

import logging
import re

import httpx

from repoverify.errors import ResolutionError
from repoverify.resolver.base import InstructionResolver


logger = logging.getLogger(__name__)

# README characters sent to the model
MAX_README_CHARS = 2000

PROMPT_TEMPLATE = """Extract setup, install, build, and run commands from this README.
Return only the commands joined with " && " on a single line, with no prose
and no markdown. Reply with NONE if the README has no such commands.

{readme}"""

_FENCE_RE = re.compile(r"^```[\w-]*\n?|\n?```$")


def clean_command(text: str) -> str | None:
    """Normalize model output into one shell command line."""
    text = _FENCE_RE.sub("", text.strip()).strip()
    lines = [
        line.strip().lstrip("$").strip()
        for line in text.splitlines()
        if line.strip() and not line.strip().startswith("#")
    ]
    if not lines or lines[0].upper() == "NONE":
        return None
    return " && ".join(lines)


class GeminiResolver(InstructionResolver):
    """Resolver backed by the Gemini REST API."""

    def __init__(
        self,
        api_key: str,
        api_url: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not api_key:
            raise ValueError("Gemini API key not configured")

        self.api_url = api_url
        self._client = httpx.AsyncClient(
            headers={
                "x-goog-api-key": api_key,
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    @property
    def name(self) -> str:
        return "gemini"

    def _build_request(self, readme_text: str) -> dict:
        prompt = PROMPT_TEMPLATE.format(readme=readme_text[:MAX_README_CHARS])
        return {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {"temperature": 0.0, "maxOutputTokens": 256},
        }

    async def resolve(self, readme_text: str) -> str | None:
        """Ask Gemini for the setup command."""
        try:
            response = await self._client.post(self.api_url, json=self._build_request(readme_text))
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise ResolutionError(
                f"Gemini returned HTTP {e.response.status_code}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise ResolutionError(f"Gemini request failed: {e}") from e

        try:
            text = data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError):
            logger.info("Gemini response had no candidate text")
            return None

        return clean_command(text)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()
