"""GitHub Tracker implementation using PyGithub and the REST API."""

import asyncio
from collections.abc import Callable
from typing import TypeVar

import structlog
from github import Auth, Github, GithubException  # type: ignore[import-not-found]
from github.Repository import Repository as GHRepository  # type: ignore[import-not-found]

from issue_pipeline.config.settings import TrackerConfig
from issue_pipeline.exceptions import CollaboratorFailure, ConfigurationError
from issue_pipeline.providers.base import ReviewVerdict, TrackedIssue, Tracker
from issue_pipeline.utils.retry import async_retry

log = structlog.get_logger(__name__)

T = TypeVar("T")

CLOSE_STATE_REASONS = ("completed", "not_planned")


def _transient(e: Exception) -> bool:
    """Timeouts and server errors are worth another attempt; 4xx answers are not."""
    status = getattr(e, "status_code", None)
    return status is None or status >= 500


def _failure(action: str, e: Exception) -> CollaboratorFailure:
    if isinstance(e, GithubException):
        message = e.data.get("message") if isinstance(e.data, dict) else None
        return CollaboratorFailure(f"{action} failed: {message or e}", collaborator="tracker", status_code=e.status)
    return CollaboratorFailure(f"{action} timed out", collaborator="tracker")


class GitHubTracker(Tracker):
    """Tracker backed by a GitHub repository.

    PyGithub is synchronous; every call runs in a worker thread and is
    additionally bounded by ``asyncio.wait_for`` so a hung connection
    cannot stall a command.
    """

    def __init__(self, config: TrackerConfig) -> None:
        """Initialize GitHub tracker.

        Nothing is validated or contacted until the first call, so commands
        that never reach the Tracker work without a token.

        Args:
            config: Tracker section of the project configuration
        """
        self.config = config
        self.timeout = config.timeout
        self._client: Github | None = None
        self._repo: GHRepository | None = None

    async def _run_sync(self, action: str, func: Callable[[], T]) -> T:
        """Run a blocking PyGithub call in a thread, bounded by the tracker timeout."""
        try:
            return await asyncio.wait_for(asyncio.to_thread(func), timeout=self.timeout)
        except (GithubException, TimeoutError) as e:
            log.error("github_call_failed", action=action, error=str(e))
            raise _failure(action, e) from e

    async def _repository(self) -> GHRepository:
        """Connect on first use.

        Raises:
            ConfigurationError: If repo or token are missing
        """
        if self._repo is None:
            repo_name = self.config.repo
            if not repo_name:
                raise ConfigurationError("tracker.repo is required for the GitHub tracker")
            token = self.config.token.get_secret_value().strip() if self.config.token else ""
            if not token:
                raise ConfigurationError("tracker.token is required for the GitHub tracker")

            def _connect() -> tuple[Github, GHRepository]:
                client = Github(
                    auth=Auth.Token(token),
                    base_url=self.config.base_url.rstrip("/"),
                    timeout=int(self.timeout),
                )
                return client, client.get_repo(repo_name)

            self._client, self._repo = await self._run_sync("connect", _connect)
            log.debug("github_connected", repo=repo_name, base_url=self.config.base_url)
        return self._repo

    async def close(self) -> None:
        """Close the underlying HTTP session."""
        if self._client is not None:
            await asyncio.to_thread(self._client.close)
            self._client = None
            self._repo = None

    async def create_issue(self, title: str, body: str, labels: list[str]) -> TrackedIssue:
        repo = await self._repository()
        log.info("create_issue", title=title, labels=labels)

        gh_issue = await self._run_sync(
            "create issue", lambda: repo.create_issue(title=title, body=body, labels=labels)
        )
        return TrackedIssue(number=gh_issue.number, url=gh_issue.html_url)

    async def close_issue(self, number: int, reason: str) -> None:
        """Close an issue with a GitHub state reason.

        Free-text reasons are left as a comment before closing as not planned.
        """
        repo = await self._repository()
        log.info("close_issue", number=number, reason=reason)

        def _close() -> None:
            gh_issue = repo.get_issue(number)
            state_reason = reason if reason in CLOSE_STATE_REASONS else "not_planned"
            if reason not in CLOSE_STATE_REASONS:
                gh_issue.create_comment(f"Closed: {reason}")
            gh_issue.edit(state="closed", state_reason=state_reason)

        await self._run_sync(f"close issue #{number}", _close)

    async def merge_pr(self, pr: int, strategy: str) -> None:
        """Merge a pull request and optionally delete its head branch."""
        repo = await self._repository()
        log.info("merge_pr", pr=pr, strategy=strategy)

        def _merge() -> str:
            gh_pr = repo.get_pull(pr)
            status = gh_pr.merge(merge_method=strategy)
            if not status.merged:
                raise GithubException(405, {"message": status.message or "merge refused"}, None)
            return gh_pr.head.ref

        head_ref = await self._run_sync(f"merge PR #{pr}", _merge)

        if self.config.delete_branch:
            # The PR is merged at this point; a leftover branch is only cosmetic
            try:
                await self._run_sync(
                    f"delete branch {head_ref}", lambda: repo.get_git_ref(f"heads/{head_ref}").delete()
                )
            except CollaboratorFailure as e:
                log.warning("branch_delete_failed", pr=pr, branch=head_ref, error=e.message)

    async def review_pr(self, pr: int, verdict: ReviewVerdict, body: str) -> None:
        repo = await self._repository()
        log.info("review_pr", pr=pr, verdict=verdict)

        await self._run_sync(
            f"review PR #{pr}", lambda: repo.get_pull(pr).create_review(body=body, event=verdict)
        )

    @async_retry(max_attempts=3, backoff_factor=2.0, exceptions=(CollaboratorFailure,), retry_if=_transient)
    async def fetch_issue_body(self, number: int) -> str:
        repo = await self._repository()
        gh_issue = await self._run_sync(f"fetch issue #{number}", lambda: repo.get_issue(number))
        return gh_issue.body or ""
