"""GitHub hosting provider: git CLI for working copies, PyGithub for pull requests."""

import asyncio
import shutil
import subprocess
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import structlog
from github import Auth, Github, GithubException  # type: ignore[import-not-found]
from github.PullRequest import PullRequest as GHPullRequest  # type: ignore[import-not-found]

from khitomer.exceptions import GitOperationError, HostingError
from khitomer.models.domain import ReviewRequest
from khitomer.providers.base import HostingProvider
from khitomer.utils.async_subprocess import run_command

log = structlog.get_logger(__name__)

T = TypeVar("T")

GIT_TIMEOUT = 600.0


async def _run_sync(func: Callable[[], T]) -> T:
    """Run a synchronous PyGithub call in a thread pool."""
    return await asyncio.to_thread(func)


class GitHubHostingProvider(HostingProvider):
    """GitHub implementation of the hosting contract.

    Working-copy operations shell out to ``git``; the access token is
    embedded in the clone URL so pushes authenticate through the origin
    remote, and it is masked in every error message. Pull request calls go
    through PyGithub on a worker thread.
    """

    def __init__(
        self,
        token: str,
        api_url: str = "https://api.github.com",
        web_url: str = "https://github.com",
        author_name: str = "Khitomer Bot",
        author_email: str = "khitomer@example.com",
        client: Github | None = None,
    ):
        """Initialize GitHub provider.

        Args:
            token: Personal access token or App installation token
            api_url: GitHub API base URL (for GitHub Enterprise)
            web_url: Base URL used to build clone URLs
            author_name: Commit author name
            author_email: Commit author email
            client: Pre-built PyGithub client (tests)
        """
        self.token = token.strip() if token else token
        self.api_url = api_url.rstrip("/")
        self.web_url = web_url.rstrip("/")
        self.author_name = author_name
        self.author_email = author_email
        self._client = client

    @property
    def client(self) -> Github:
        if self._client is None:
            self._client = Github(auth=Auth.Token(self.token), base_url=self.api_url)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await _run_sync(self._client.close)
            self._client = None

    def clone_url(self, owner: str, repo: str) -> str:
        scheme, _, host = self.web_url.partition("://")
        return f"{scheme}://x-access-token:{self.token}@{host}/{owner}/{repo}.git"

    async def clone(self, owner: str, repo: str, branch: str, workspace: Path) -> Path:
        """Clone into ``workspace``, replacing any partial previous clone."""
        workspace = Path(workspace)
        if workspace.exists():
            await _run_sync(lambda: shutil.rmtree(workspace))
        workspace.parent.mkdir(parents=True, exist_ok=True)

        await self._git(
            "clone",
            "--branch",
            branch,
            "--single-branch",
            self.clone_url(owner, repo),
            str(workspace),
        )
        log.info("repository_cloned", owner=owner, repo=repo, branch=branch, path=str(workspace))
        return workspace

    async def create_branch(self, workspace: Path, base: str, new: str) -> str:
        """Check out ``base`` then (re)create ``new`` from it."""
        await self._git("checkout", base, cwd=workspace)
        await self._git("checkout", "-B", new, cwd=workspace)
        log.info("branch_created", branch=new, base=base, path=str(workspace))
        return new

    async def commit(self, workspace: Path, message: str) -> str | None:
        """Stage everything and commit; a clean tree is a no-op."""
        await self._git("add", "--all", cwd=workspace)
        status, _, _ = await self._git("status", "--porcelain", cwd=workspace)
        if not status.strip():
            log.info("nothing_to_commit", path=str(workspace))
            return None

        await self._git(
            "-c",
            f"user.name={self.author_name}",
            "-c",
            f"user.email={self.author_email}",
            "commit",
            "--message",
            message,
            cwd=workspace,
        )
        sha, _, _ = await self._git("rev-parse", "HEAD", cwd=workspace)
        log.info("changes_committed", sha=sha.strip(), path=str(workspace))
        return sha.strip()

    async def push(self, workspace: Path, branch: str) -> None:
        """Force-push the feature branch; it is owned by the automation namespace."""
        await self._git("push", "--force", "origin", f"refs/heads/{branch}:refs/heads/{branch}", cwd=workspace)
        log.info("branch_pushed", branch=branch, path=str(workspace))

    async def open_review_request(
        self,
        owner: str,
        repo: str,
        base: str,
        head: str,
        title: str,
        body: str,
    ) -> ReviewRequest:
        """Open a pull request, or return the open one already tracking ``head``."""
        log.info("open_review_request", owner=owner, repo=repo, head=head, base=base)

        def _open() -> tuple[GHPullRequest, bool]:
            gh_repo = self.client.get_repo(f"{owner}/{repo}")
            for existing in gh_repo.get_pulls(state="open", head=f"{owner}:{head}", base=base):
                return existing, False
            return gh_repo.create_pull(title=title, body=body, head=head, base=base), True

        try:
            gh_pr, created = await _run_sync(_open)
        except GithubException as e:
            log.error("github_open_review_request_failed", owner=owner, repo=repo, error=str(e))
            raise HostingError(
                f"Failed to open pull request for {owner}/{repo}",
                status_code=e.status,
                response_text=str(e.data),
            ) from e

        review = self._convert_pull_request(gh_pr)
        log.info("review_request_ready", number=review.number, url=review.url, created=created)
        return review

    async def _git(self, *args: str, cwd: Path | None = None) -> tuple[str, str, int]:
        try:
            return await run_command("git", *args, cwd=cwd, timeout=GIT_TIMEOUT)
        except subprocess.CalledProcessError as e:
            raise GitOperationError(
                f"git {args[0]} failed with exit code {e.returncode}",
                command=args[0],
                stderr=self._mask(e.stderr or ""),
            ) from None
        except TimeoutError as e:
            raise GitOperationError(f"git {args[0]} timed out after {GIT_TIMEOUT}s", command=args[0]) from e

    def _mask(self, text: str) -> str:
        if self.token:
            return text.replace(self.token, "***")
        return text

    def _convert_pull_request(self, gh_pr: GHPullRequest) -> ReviewRequest:
        return ReviewRequest(
            number=gh_pr.number,
            url=gh_pr.html_url,
            title=gh_pr.title,
            body=gh_pr.body or "",
            state=gh_pr.state,
        )
