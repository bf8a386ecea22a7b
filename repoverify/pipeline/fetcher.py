"""Repository fetcher.

Every attempt gets its own directory under the workspace root, named from
the attempt id plus a random suffix, so two jobs on the same URL (or two
attempts of one job) never share a checkout.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

from repoverify.errors import FetchError
from repoverify.tools.git_ops import git_clone


logger = logging.getLogger(__name__)


class RepositoryFetcher:
    """Clones repositories into disposable per-attempt workspaces."""

    def __init__(self, workspace_root: str, clone_timeout: float = 120.0):
        # mkdtemp hands back absolute paths under this root
        self.workspace_root = Path(workspace_root).resolve()
        self.clone_timeout = clone_timeout

    def _allocate(self, attempt_id: str) -> Path:
        self.workspace_root.mkdir(parents=True, exist_ok=True)
        # mkdtemp creates the directory exclusively (mode 0700)
        return Path(tempfile.mkdtemp(prefix=f"job-{attempt_id}-", dir=self.workspace_root))

    async def fetch(self, repo_url: str, attempt_id: str) -> Path:
        """Clone ``repo_url`` into a fresh workspace.

        The caller owns the returned checkout and must ``release`` it.

        Raises:
            FetchError: If the clone fails; the workspace is already released
        """
        workspace = self._allocate(attempt_id)
        checkout = workspace / "repo"
        logger.info(f"[{attempt_id}] Cloning {repo_url} into {checkout}")

        try:
            result = await git_clone(repo_url, str(checkout), timeout=self.clone_timeout)
        except BaseException:
            await self._remove(workspace)
            raise

        if not result.ok:
            await self._remove(workspace)
            raise FetchError(result.error_message or "git clone failed")

        return checkout

    async def release(self, checkout: Path) -> None:
        """Remove the workspace that holds a checkout returned by ``fetch``."""
        await self._remove(checkout.parent)

    async def _remove(self, workspace: Path) -> None:
        if workspace.resolve() == self.workspace_root:
            raise ValueError(f"Refusing to remove the workspace root {workspace}")
        await asyncio.to_thread(shutil.rmtree, workspace, ignore_errors=True)
        if os.path.exists(workspace):
            logger.error(f"Workspace {workspace} could not be removed")

    @asynccontextmanager
    async def checkout(self, repo_url: str, attempt_id: str) -> AsyncIterator[Path]:
        """Scoped workspace: cloned on entry, removed on every exit path."""
        path = await self.fetch(repo_url, attempt_id)
        try:
            yield path
        finally:
            # Shielded so a cancelled job still cleans up its checkout
            await asyncio.shield(self.release(path))
