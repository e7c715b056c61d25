"""
Stable project identifiers.

- Custom name configured: `<custom_name>_<hash>`
- Git repos: `<org>_<repo>_<hash>`
- Anything else: `local_<hash>`

The hash is the first 8 hex chars of SHA-256 of the raw path, so two
checkouts of the same repository on one machine stay distinct.
"""

import hashlib
import logging
import re
import subprocess
from typing import Callable, Optional, Tuple

logger = logging.getLogger(__name__)

PROJECT_NAME_KEY = "project_name"

_HTTPS_REMOTE = re.compile(r"https?://[^/]+/([^/]+)/([^/\s]+?)(?:\.git)?$")
_SSH_REMOTE = re.compile(r"git@[^:]+:([^/]+)/([^/\s]+?)(?:\.git)?$")


def short_hash(value: str) -> str:
    """First 8 hex chars of SHA-256."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:8]


def parse_git_remote(url: str) -> Optional[Tuple[str, str]]:
    """Parse (org, repo) from an HTTPS or SSH git remote URL."""
    for pattern in (_HTTPS_REMOTE, _SSH_REMOTE):
        match = pattern.search(url.strip())
        if match:
            return match.group(1), match.group(2)
    return None


def get_git_remote_url(raw_path: str) -> Optional[str]:
    """Return the origin remote URL for a path, or None if unavailable."""
    try:
        result = subprocess.run(
            ["git", "-C", raw_path, "remote", "get-url", "origin"],
            capture_output=True, text=True, timeout=5,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        logger.debug("git remote lookup failed for %s: %s", raw_path, exc)
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def resolve_project_identifier(
    raw_path: str,
    custom_name: Optional[str] = None,
    git_remote: Callable[[str], Optional[str]] = get_git_remote_url
) -> str:
    """Resolve a stable project identifier from a raw filesystem path.

    Priority:
    1. User-configured project name
    2. Git remote origin
    3. Fallback to `local_<hash>`
    """
    path_hash = short_hash(raw_path)

    if custom_name:
        return f"{custom_name}_{path_hash}"

    remote_url = git_remote(raw_path)
    if remote_url:
        parsed = parse_git_remote(remote_url)
        if parsed:
            org, repo = parsed
            return f"{org}_{repo}_{path_hash}"

    return f"local_{path_hash}"
