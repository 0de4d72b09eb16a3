"""
Abstract base classes for the pipeline's external collaborators.

The core never talks to GitHub, Discord, an agent CLI or a shell directly.
It depends on these four interfaces, and ``providers.factory`` picks the
concrete implementations from project configuration. Tests substitute
in-memory fakes.

Every implementation must bound its calls with a timeout and report any
failure as ``CollaboratorFailure``; library exceptions must not leak out.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Literal

from issue_pipeline.enums import Destination, IssueType, SenderIdentity
from issue_pipeline.models.domain import DeployResult, Draft

ReviewVerdict = Literal["APPROVE", "REQUEST_CHANGES"]


@dataclass
class TrackedIssue:
    """Identity of an issue just created on the Tracker."""

    number: int
    url: str


class Tracker(ABC):
    """Issue and pull request system of record."""

    @abstractmethod
    async def create_issue(self, title: str, body: str, labels: list[str]) -> TrackedIssue:
        """Open a new issue.

        Args:
            title: Issue title
            body: Markdown body
            labels: Labels to apply; may be empty

        Returns:
            The Tracker-allocated number and web URL

        Raises:
            CollaboratorFailure: If the Tracker rejects or times out
        """

    @abstractmethod
    async def close_issue(self, number: int, reason: str) -> None:
        """Close an issue.

        Args:
            number: Issue number
            reason: ``completed``, ``not_planned``, or free text. Free text
                is posted as a closing comment and the issue is closed as
                not planned.
        """

    @abstractmethod
    async def merge_pr(self, pr: int, strategy: str) -> None:
        """Merge a pull request with ``squash``, ``merge`` or ``rebase``.

        Raises:
            CollaboratorFailure: If the PR cannot be merged (conflicts,
                failing checks, already closed)
        """

    @abstractmethod
    async def review_pr(self, pr: int, verdict: ReviewVerdict, body: str) -> None:
        """Submit a review on a pull request."""

    @abstractmethod
    async def fetch_issue_body(self, number: int) -> str:
        """Return the current Markdown body of an issue."""


class Board(ABC):
    """Chat platform hosting issue threads and notification channels.

    Posting reports failure by raising ``CollaboratorFailure``; the
    Notification Router turns that into a failed ``Delivery``.
    """

    @abstractmethod
    async def create_thread(self, title: str, body: str, tags: list[str]) -> str:
        """Create the discussion thread for an issue.

        Returns:
            Opaque thread handle stored on the issue record
        """

    @abstractmethod
    async def post_message(
        self,
        destination: Destination,
        body: str,
        identity: SenderIdentity,
        thread: str | None = None,
    ) -> None:
        """Post a message under the given sender identity.

        Args:
            destination: Surface to post to
            body: Message text
            identity: ACTION to provoke a recipient, INFO to only report
            thread: Thread handle, required for ``Destination.THREAD``
        """

    @abstractmethod
    async def archive_thread(self, thread: str) -> None:
        """Archive an issue thread."""

    @abstractmethod
    async def apply_tag(self, thread: str, tag: str) -> None:
        """Apply a forum tag to an issue thread."""

    def has_destination(self, destination: Destination) -> bool:
        """Whether the surface is configured. Optional surfaces are skipped when not."""
        return True


class Drafter(ABC):
    """Agent that turns a one-line description into a titled issue."""

    @abstractmethod
    async def draft(self, kind: IssueType, description: str, repo: str) -> Draft:
        """Draft an issue.

        The caller time-boxes this call and falls back to a template on
        timeout or failure.

        Raises:
            CollaboratorFailure: If the agent fails or its output is unusable
        """


class Deployer(ABC):
    """Runs the project's deploy steps after a merge."""

    @abstractmethod
    async def run(self, steps: list[str]) -> DeployResult:
        """Run steps in order, stopping at the first failure.

        Returns:
            Outcome with captured output; failure is reported in the
            result, not raised
        """
