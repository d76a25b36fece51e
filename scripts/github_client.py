#!/usr/bin/env python3
"""
GitHub Repository Client

Thin wrapper over the GitHub git-data API used by the ingestion phase:

    fetch_tree  - recursive tree listing plus the commit hash it belongs to
    fetch_blob  - one file's contents (base64 encoded by GitHub)

Every failure is raised as ``GitHubError`` with a code from
NOT_FOUND, RATE_LIMIT, PRIVATE_REPO, GITHUB_ERROR or NETWORK_ERROR.
Only connection-level failures are retried; rate limits never are.
"""

import base64
import logging
import math
import re
import time
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import requests
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from exceptions import GitHubError

logger = logging.getLogger(__name__)

GITHUB_API_BASE = "https://api.github.com"

GITHUB_URL_RE = re.compile(r"^https://github\.com/([a-zA-Z0-9_.-]+)/([a-zA-Z0-9_.-]+)")


@dataclass
class TreeEntry:
    path: str
    type: str  # 'blob' or 'tree'
    sha: str
    mode: str = ""
    size: Optional[int] = None


@dataclass
class RepoTree:
    commit_hash: str
    entries: List[TreeEntry] = field(default_factory=list)
    truncated: bool = False


@dataclass
class Blob:
    content: str
    encoding: str
    size: int = 0

    def decode(self) -> str:
        """Return the blob text, decoding base64 payloads as UTF-8"""
        if self.encoding == "base64":
            raw = base64.b64decode(self.content)
            return raw.decode("utf-8", errors="replace")
        return self.content


def parse_github_url(url: str) -> Optional[Tuple[str, str]]:
    """Extract ``(owner, repo)`` from a github.com URL, or None if it is not one"""
    cleaned = url.strip()
    if cleaned.endswith(".git"):
        cleaned = cleaned[: -len(".git")]
    match = GITHUB_URL_RE.match(cleaned)
    if not match:
        return None
    return match.group(1), match.group(2)


def normalize_github_error(status_code: int, headers) -> GitHubError:
    """Map an unsuccessful GitHub response onto a ``GitHubError``"""
    if status_code == 404:
        return GitHubError("Repository not found", error_code="NOT_FOUND")

    rate_limited = status_code == 429 or (
        status_code == 403 and headers.get("X-RateLimit-Remaining") == "0"
    )
    if rate_limited:
        minutes = 0
        reset = headers.get("X-RateLimit-Reset")
        if reset:
            try:
                minutes = math.ceil((float(reset) - time.time()) / 60)
            except ValueError:
                minutes = 0
        return GitHubError(
            f"GitHub rate limit hit. Try again in {max(minutes, 1)} minutes.",
            error_code="RATE_LIMIT",
        )

    if status_code == 403:
        return GitHubError("Repository is private or inaccessible", error_code="PRIVATE_REPO")

    return GitHubError(f"GitHub API error: {status_code}", error_code="GITHUB_ERROR")


class GitHubClient:
    """GitHub git-data API client

    Args:
        token: Optional API token; anonymous requests get a much lower rate limit.
        timeout: Per-request timeout in seconds.
        retry_attempts: Total attempts for connection-level failures.
        session: Optional pre-built ``requests.Session`` (tests inject one).
    """

    def __init__(self, token: str = "", timeout: float = 30.0, retry_attempts: int = 2, session=None):
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/vnd.github.v3+json"})
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

        self._get = retry(
            stop=stop_after_attempt(max(1, retry_attempts)),
            wait=wait_exponential(multiplier=1, min=1, max=8),
            retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )(self._get_once)

    @classmethod
    def from_config(cls, config: dict) -> "GitHubClient":
        return cls(
            token=config.get("github_token", ""),
            timeout=float(config.get("request_timeout", 30)),
            retry_attempts=int(config.get("github_retry_attempts", 2)),
        )

    def _get_once(self, url: str) -> requests.Response:
        return self.session.get(url, timeout=self.timeout)

    def _request_json(self, url: str) -> dict:
        try:
            response = self._get(url)
        except requests.RequestException as e:
            logger.error("GitHub request failed: %s", e)
            raise GitHubError(str(e) or type(e).__name__, error_code="NETWORK_ERROR") from e

        if not response.ok:
            raise normalize_github_error(response.status_code, response.headers)

        try:
            return response.json()
        except ValueError as e:
            raise GitHubError("GitHub returned a non-JSON response", error_code="GITHUB_ERROR") from e

    def fetch_tree(self, owner: str, repo: str, ref: str = "HEAD") -> RepoTree:
        """Fetch the full recursive tree for *ref*"""
        data = self._request_json(
            f"{GITHUB_API_BASE}/repos/{owner}/{repo}/git/trees/{ref}?recursive=1"
        )
        entries = [
            TreeEntry(
                path=item.get("path", ""),
                type=item.get("type", ""),
                sha=item.get("sha", ""),
                mode=item.get("mode", ""),
                size=item.get("size"),
            )
            for item in data.get("tree", [])
        ]
        if data.get("truncated"):
            logger.warning("GitHub truncated the tree listing for %s/%s", owner, repo)
        return RepoTree(commit_hash=data.get("sha", ""), entries=entries, truncated=bool(data.get("truncated")))

    def fetch_blob(self, owner: str, repo: str, sha: str) -> Blob:
        """Fetch one blob by its SHA"""
        data = self._request_json(f"{GITHUB_API_BASE}/repos/{owner}/{repo}/git/blobs/{sha}")
        return Blob(
            content=data.get("content", ""),
            encoding=data.get("encoding", "utf-8"),
            size=data.get("size", 0),
        )


__all__ = [
    "GITHUB_API_BASE",
    "TreeEntry",
    "RepoTree",
    "Blob",
    "GitHubClient",
    "parse_github_url",
    "normalize_github_error",
]
