"""Pull request lookups against the GitHub REST API."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Literal

import httpx

from .runner import GitRunner, GitRunnerError
from .worktrees import get_branch_status

PullRequestState = Literal["open", "closed", "merged", "draft", "none", "unknown"]

GITHUB_API_URL = "https://api.github.com"
GITHUB_API_VERSION = "2022-11-28"
REQUEST_TIMEOUT_SECONDS = 15.0
CONFIG_TIMEOUT_SECONDS = 5.0

# git@github.com:owner/repo.git and https://github.com/owner/repo.git
_GITHUB_REMOTE = re.compile(r"github\.com[:/]([^/]+)/(.+?)(?:\.git)?/?$", re.IGNORECASE)

logger = logging.getLogger(__name__)


class GithubError(RuntimeError):
    """Raised for GitHub API failures that callers map to ``unknown``."""


@dataclass(slots=True)
class GithubRepoRef:
    owner: str
    repo: str


@dataclass(slots=True)
class PullRequestStatus:
    state: PullRequestState
    number: int | None = None
    title: str | None = None
    url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"state": self.state}
        if self.number is not None:
            payload["number"] = self.number
        if self.title is not None:
            payload["title"] = self.title
        if self.url is not None:
            payload["url"] = self.url
        return payload


def parse_github_remote(remote_url: str) -> GithubRepoRef | None:
    match = _GITHUB_REMOTE.search(remote_url.strip())
    if not match:
        return None
    owner, repo = match.group(1), match.group(2)
    if not owner or not repo:
        return None
    return GithubRepoRef(owner=owner, repo=repo)


def map_pull_request(payload: dict[str, Any]) -> PullRequestStatus:
    raw_state = payload.get("state")
    state = raw_state.lower() if isinstance(raw_state, str) else "unknown"

    mapped: PullRequestState = "unknown"
    if state == "open":
        mapped = "draft" if payload.get("draft") else "open"
    elif state == "closed":
        mapped = "merged" if payload.get("merged_at") else "closed"
    elif state == "merged":
        mapped = "merged"

    number = payload.get("number")
    title = payload.get("title")
    url = payload.get("html_url")
    return PullRequestStatus(
        state=mapped,
        number=number if isinstance(number, int) and not isinstance(number, bool) else None,
        title=title if isinstance(title, str) else None,
        url=url if isinstance(url, str) else None,
    )


class GithubClient:
    """Resolves the pull request state of a workspace's current branch."""

    def __init__(
        self,
        git: GitRunner,
        token: str | None,
        *,
        base_url: str = GITHUB_API_URL,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._git = git
        self._token = token
        self._base_url = base_url
        self._timeout = timeout
        self._transport = transport

    async def get_repo_ref(self, path: str) -> GithubRepoRef | None:
        result = await self._git.run(
            "config", "--get", "remote.origin.url", cwd=path, timeout=CONFIG_TIMEOUT_SECONDS
        )
        if not result.ok:
            raise GithubError(f"No origin remote configured for {path}")
        remote_url = result.stdout.strip()
        if not remote_url:
            return None
        return parse_github_remote(remote_url)

    async def fetch_pull_requests_by_head(
        self, repo_ref: GithubRepoRef, branch: str, state: str = "all"
    ) -> list[dict[str, Any]]:
        if not self._token:
            raise GithubError("Missing GitHub token. Set GITHUB_TOKEN or GH_TOKEN.")

        headers = {
            "Accept": "application/vnd.github+json",
            "Authorization": f"Bearer {self._token}",
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
        }
        params = {"state": state, "head": f"{repo_ref.owner}:{branch}", "per_page": "1"}
        async with httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(self._timeout),
            transport=self._transport,
        ) as client:
            response = await client.get(
                f"/repos/{repo_ref.owner}/{repo_ref.repo}/pulls", params=params, headers=headers
            )
            if response.status_code >= 400:
                raise GithubError(
                    f"GitHub API request failed ({response.status_code}): {response.text}"
                )
            payload = response.json()

        if not isinstance(payload, list):
            raise GithubError("Unexpected GitHub API response shape")
        return [item for item in payload if isinstance(item, dict)]

    async def get_pull_request_status(self, path: str) -> PullRequestStatus | None:
        """PR state for the branch checked out at ``path``.

        None when there is no branch to ask about (not a repository, detached
        HEAD). Every lookup failure maps to ``unknown``.
        """

        branch_status = await get_branch_status(self._git, path)
        if branch_status is None:
            return None
        branch = branch_status.branch
        if not branch or branch == "HEAD":
            return None

        try:
            repo_ref = await self.get_repo_ref(path)
            if repo_ref is None:
                return PullRequestStatus(state="none")
            pull_requests = await self.fetch_pull_requests_by_head(repo_ref, branch)
        except (GitRunnerError, GithubError, httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "Failed to read PR status",
                extra={"branch": branch, "path": path, "error": str(exc)},
            )
            return PullRequestStatus(state="unknown")

        if not pull_requests:
            return PullRequestStatus(state="none")
        return map_pull_request(pull_requests[0])


__all__ = [
    "GithubClient",
    "GithubError",
    "GithubRepoRef",
    "PullRequestState",
    "PullRequestStatus",
    "map_pull_request",
    "parse_github_remote",
]
