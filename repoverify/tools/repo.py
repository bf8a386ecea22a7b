"""Repository content helpers.

- find_readme: Locate the README the resolver reads setup steps from
- read_readme: Read it, skipping oversized or binary files
"""

from __future__ import annotations

import logging
import os


logger = logging.getLogger(__name__)

# Maximum file size to read (1MB)
MAX_FILE_SIZE = 1024 * 1024

README_CANDIDATES = ("README.md", "README.txt", "readme.md", "readme.txt")


def _is_safe_path(repo_path: str, file_path: str) -> bool:
    """Check if file_path is safely within repo_path."""
    repo_abs = os.path.realpath(repo_path)
    file_abs = os.path.realpath(os.path.join(repo_path, file_path))
    return os.path.commonpath([repo_abs, file_abs]) == repo_abs


def find_readme(repo_path: str) -> str | None:
    """Return the path of the first README candidate present in the repo root."""
    for name in README_CANDIDATES:
        # A symlinked README could point outside the workspace
        if not _is_safe_path(repo_path, name):
            continue
        path = os.path.join(repo_path, name)
        if os.path.isfile(path):
            return path
    return None


def read_readme(repo_path: str) -> str | None:
    """Read the repository README.

    Returns:
        README text, or None when there is none or it is unusable
    """
    path = find_readme(repo_path)
    if path is None:
        return None

    size = os.path.getsize(path)
    if size > MAX_FILE_SIZE:
        logger.warning(f"Skipping {path}: {size} bytes exceeds {MAX_FILE_SIZE}")
        return None

    try:
        with open(path, encoding="utf-8") as f:
            return f.read()
    except UnicodeDecodeError:
        logger.warning(f"Skipping {path}: not valid UTF-8")
        return None
