"""Repository base URLs for linking issue and pull-request references."""

from __future__ import annotations

import re

_GITHUB_REMOTE_RE = re.compile(
    r"^(?:https?://github\.com/|git@github\.com:|ssh://git@github\.com/)"
    r"(?P<owner>[^/\s]+)/(?P<repo>[^/\s]+?)(?:\.git)?(?:/.*)?$"
)


def parse_github_remote(remote: str) -> str | None:
    """Return ``https://github.com/owner/repo`` for a GitHub web URL or git remote."""
    match = _GITHUB_REMOTE_RE.match(remote.strip())
    if not match:
        return None
    return f"https://github.com/{match.group('owner')}/{match.group('repo')}"


def normalize_repo_url(value: str) -> str:
    """Normalize a configured repository to the base URL issue links hang off.

    GitHub remotes in any of their usual forms map to the web URL; other
    http(s) URLs are kept without a trailing slash or ``.git`` suffix.
    """
    github = parse_github_remote(value)
    if github:
        return github
    value = value.strip().rstrip("/")
    if not value.startswith(("http://", "https://")):
        raise ValueError(f"not a repository URL: {value!r}")
    return value.removesuffix(".git")
