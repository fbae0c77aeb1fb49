"""Utility functions for burrow."""

import os
import re
import subprocess
import time
from datetime import datetime

from burrow.constants import (
    DEFAULT_NAME_COLUMN_WIDTH,
    SECONDS_PER_DAY,
    SECONDS_PER_HOUR,
    SECONDS_PER_MINUTE,
)


def _git_output(args: list[str], directory: str | None = None) -> str | None:
    try:
        result = subprocess.run(
            ["git", *args],
            capture_output=True,
            text=True,
            timeout=2,
            check=False,
            cwd=directory,
        )
    except (subprocess.TimeoutExpired, FileNotFoundError, ValueError):
        return None

    if result.returncode != 0:
        return None

    return result.stdout.strip() or None


def is_git_repository(directory: str | None = None) -> bool:
    """Whether ``directory`` is inside a git working tree."""
    return _git_output(["rev-parse", "--is-inside-work-tree"], directory) == "true"


def get_git_project_name(directory: str | None = None) -> str:
    """Detect project name from the git remote or the directory name.

    Parameters
    ----------
    directory : str | None
        Working tree to inspect (default: current directory)

    Returns
    -------
    str
        Repository name from ``remote.origin.url`` without ``.git``, or the
        directory's base name
    """
    directory = directory or os.getcwd()
    url = _git_output(["config", "--get", "remote.origin.url"], directory)

    if url:
        project = url.rstrip("/").split("/")[-1].split(":")[-1]
        if project.endswith(".git"):
            project = project[:-4]
        if project:
            return project

    return os.path.basename(os.path.abspath(directory))


def get_git_branch(directory: str | None = None) -> str | None:
    """Detect current git branch.

    Returns None for detached HEAD state or if not in a git repository.
    """
    branch = _git_output(["rev-parse", "--abbrev-ref", "HEAD"], directory)
    if branch and branch != "HEAD":
        return branch
    return None


def get_git_identity(directory: str | None = None) -> tuple[str | None, str | None]:
    """Return the ``user.name`` and ``user.email`` git would commit with."""
    return (
        _git_output(["config", "--get", "user.name"], directory),
        _git_output(["config", "--get", "user.email"], directory),
    )


def sanitize_environment_name(name: str) -> str:
    """Sanitize an environment name for tags, git remotes and file names.

    Lowercases, replaces anything outside ``a-z0-9-`` with a dash, collapses
    repeated dashes, trims them from both ends and limits the result to 63
    characters.
    """
    name = name.lower()
    name = name.replace("/", "-")
    name = re.sub(r"[^a-z0-9\-]", "-", name)
    name = re.sub(r"-+", "-", name)
    name = name.strip("-")
    return name[:63].rstrip("-")


def generate_environment_name(directory: str | None = None) -> str:
    """Generate an environment name from the git context.

    Uses ``{project}-{branch}`` inside a git repository and falls back to
    ``env-{unix_timestamp}`` elsewhere.
    """
    branch = get_git_branch(directory)

    if branch:
        project = get_git_project_name(directory)
        name = sanitize_environment_name(f"{project}-{branch}")
        if name:
            return name

    return f"env-{int(time.time())}"


def format_time_ago(dt: datetime) -> str:
    """Format datetime as human-readable time ago.

    Parameters
    ----------
    dt : datetime
        Datetime to format (timezone-aware)

    Returns
    -------
    str
        Human-readable time string (e.g., "2h ago", "30m ago", "5d ago")

    Raises
    ------
    ValueError
        If dt is not timezone-aware
    """
    if dt.tzinfo is None:
        raise ValueError("datetime must be timezone-aware")

    seconds = (datetime.now(dt.tzinfo) - dt).total_seconds()

    if seconds < SECONDS_PER_MINUTE:
        return "just now"
    elif seconds < SECONDS_PER_HOUR:
        return f"{int(seconds / SECONDS_PER_MINUTE)}m ago"
    elif seconds < SECONDS_PER_DAY:
        return f"{int(seconds / SECONDS_PER_HOUR)}h ago"
    else:
        return f"{int(seconds / SECONDS_PER_DAY)}d ago"


def truncate_name(name: str, max_width: int = DEFAULT_NAME_COLUMN_WIDTH) -> str:
    """Truncate name to fit in column width, marking the cut with an ellipsis."""
    if len(name) > max_width:
        return name[: max_width - 3] + "..."

    return name
