"""Git operations tooling.

Provides the git operations the fetcher needs:
- git_clone: Shallow clone of a remote repository
- git_head: Commit hash checked out in a working tree

Commands run as asyncio subprocesses so a cancelled job kills them instead
of leaving a clone running in the background.
"""

from __future__ import annotations

import asyncio
import os
import time

from repoverify.schemas import ToolResult


# Never block on a credentials prompt for private or missing repositories
GIT_ENV = {
    "GIT_TERMINAL_PROMPT": "0",
    "GIT_ASKPASS": "echo",
}


async def _run_git(
    args: list[str],
    cwd: str | None = None,
    timeout: float | None = None,
) -> tuple[int, str, str]:
    """Run git and return (exit_code, stdout, stderr).

    Raises:
        asyncio.TimeoutError: If the command outlives ``timeout``
    """
    env = os.environ.copy()
    env.update(GIT_ENV)

    process = await asyncio.create_subprocess_exec(
        "git",
        *args,
        cwd=cwd,
        env=env,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except BaseException:
        # Timeout or cancellation: the child must not outlive the job
        if process.returncode is None:
            process.kill()
            await process.wait()
        raise

    return (
        process.returncode,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


async def git_clone(
    repo_url: str,
    dest: str,
    depth: int | None = 1,
    timeout: float | None = 120.0,
) -> ToolResult:
    """Clone a repository into ``dest``.

    Args:
        repo_url: Remote URL (or local path) to clone
        dest: Target directory; must be empty or absent
        depth: Shallow clone depth, None for full history
        timeout: Clone timeout in seconds

    Returns:
        ToolResult with the destination path
    """
    start = time.perf_counter()

    args = ["clone", "--quiet"]
    if depth:
        args += ["--depth", str(depth)]
    args += ["--", repo_url, dest]

    try:
        returncode, _, stderr = await _run_git(args, timeout=timeout)
    except asyncio.TimeoutError:
        return ToolResult(
            ok=False,
            error_code="GIT_TIMEOUT",
            error_message=f"git clone timed out after {timeout} seconds",
            retryable=True,
        )
    except OSError as e:
        return ToolResult(
            ok=False,
            error_code="GIT_ERROR",
            error_message=str(e),
            retryable=True,
        )

    if returncode != 0:
        return ToolResult(
            ok=False,
            error_code="CLONE_FAILED",
            error_message=stderr.strip() or f"git clone exited with code {returncode}",
            retryable=True,
        )

    latency_ms = int((time.perf_counter() - start) * 1000)

    return ToolResult(
        ok=True,
        data={"path": dest, "repo_url": repo_url},
        latency_ms=latency_ms,
    )


async def git_head(repo_path: str) -> ToolResult:
    """Get the commit hash checked out in ``repo_path``."""
    if not os.path.isdir(os.path.join(repo_path, ".git")):
        return ToolResult(
            ok=False,
            error_code="NOT_A_GIT_REPO",
            error_message="Directory is not a git repository",
        )

    try:
        returncode, stdout, stderr = await _run_git(
            ["rev-parse", "HEAD"], cwd=repo_path, timeout=10
        )
    except asyncio.TimeoutError:
        return ToolResult(
            ok=False,
            error_code="GIT_TIMEOUT",
            error_message="Git command timed out",
            retryable=True,
        )

    if returncode != 0:
        return ToolResult(
            ok=False,
            error_code="GIT_ERROR",
            error_message=stderr.strip(),
        )

    return ToolResult(ok=True, data={"hash": stdout.strip()[:8]})
