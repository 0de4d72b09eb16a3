"""Pytest configuration and shared fixtures.

Collaborators are replaced by in-memory fakes that record every call, so
pipeline tests can assert both the resulting state and the exact side
effects (and their order) on the Tracker and the Board.
"""

import asyncio
from pathlib import Path
from typing import Any

import pytest

from issue_pipeline.config.settings import ProjectSettings, deep_merge
from issue_pipeline.engine.pipeline import Pipeline
from issue_pipeline.engine.state_store import StateStore
from issue_pipeline.enums import Destination, IssueType, SenderIdentity
from issue_pipeline.exceptions import CollaboratorFailure
from issue_pipeline.models.domain import DeployResult, Draft
from issue_pipeline.providers.base import Board, Deployer, Drafter, ReviewVerdict, TrackedIssue, Tracker

BASE_SETTINGS: dict[str, Any] = {
    "name": "acme",
    "tracker": {"repo": "acme/webapp", "token": "ghp_test"},
    "board": {
        "guild_id": "900",
        "forum_channel": "100",
        "review_channel": "200",
        "bot_token": "bot-token",
        "forum_webhook": "https://discord.test/api/webhooks/1/forum",
        "reviews_webhook": "https://discord.test/api/webhooks/2/reviews",
        "tags": {"bug": "tag-bug", "feature": "tag-feature", "task": "tag-task", "resolved": "tag-resolved"},
    },
    "identities": {"action": "Pipeline", "info": "Pipeline Status", "reviewer": "R1"},
    "workers": {"roster": [{"id": "W1", "name": "alpha"}, {"id": "W2", "name": "beta"}]},
    "drafter": {"enabled": False},
    "auto_merge": True,
}


def build_settings(**overrides: Any) -> ProjectSettings:
    """ProjectSettings from the base test project with nested overrides."""
    return ProjectSettings(**deep_merge(BASE_SETTINGS, overrides))


class FakeTracker(Tracker):
    """Tracker that allocates numbers from ``next_number`` and records calls."""

    def __init__(self, next_number: int = 42) -> None:
        self.next_number = next_number
        self.calls: list[tuple[Any, ...]] = []
        self.created: list[dict[str, Any]] = []
        self.create_error: CollaboratorFailure | None = None
        self.merge_error: CollaboratorFailure | None = None
        self.close_error: CollaboratorFailure | None = None
        self.fetch_error: CollaboratorFailure | None = None
        self.body = "Users cannot log in when the password contains a colon."

    async def create_issue(self, title: str, body: str, labels: list[str]) -> TrackedIssue:
        self.calls.append(("create_issue", title))
        if self.create_error:
            raise self.create_error
        number = self.next_number
        self.next_number += 1
        self.created.append({"number": number, "title": title, "body": body, "labels": labels})
        return TrackedIssue(number=number, url=f"https://github.com/acme/webapp/issues/{number}")

    async def close_issue(self, number: int, reason: str) -> None:
        self.calls.append(("close_issue", number, reason))
        if self.close_error:
            raise self.close_error

    async def merge_pr(self, pr: int, strategy: str) -> None:
        self.calls.append(("merge_pr", pr, strategy))
        if self.merge_error:
            raise self.merge_error

    async def review_pr(self, pr: int, verdict: ReviewVerdict, body: str) -> None:
        self.calls.append(("review_pr", pr, verdict, body))

    async def fetch_issue_body(self, number: int) -> str:
        self.calls.append(("fetch_issue_body", number))
        if self.fetch_error:
            raise self.fetch_error
        return self.body

    def names(self) -> list[str]:
        return [call[0] for call in self.calls]


class FakeBoard(Board):
    """Board that hands out thread ids ``T1``, ``T2``... and records every side effect."""

    def __init__(self) -> None:
        self.threads: list[dict[str, Any]] = []
        self.posts: list[dict[str, Any]] = []
        self.calls: list[tuple[Any, ...]] = []
        self.failing: set[Destination] = set()
        self.thread_error: CollaboratorFailure | None = None
        self.deploy_enabled = False

    async def create_thread(self, title: str, body: str, tags: list[str]) -> str:
        self.calls.append(("create_thread", title))
        if self.thread_error:
            raise self.thread_error
        thread = f"T{len(self.threads) + 1}"
        self.threads.append({"id": thread, "title": title, "body": body, "tags": tags})
        return thread

    async def post_message(
        self,
        destination: Destination,
        body: str,
        identity: SenderIdentity,
        thread: str | None = None,
    ) -> None:
        self.calls.append(("post", destination, identity))
        if destination in self.failing:
            raise CollaboratorFailure("webhook rejected", collaborator="board", status_code=500)
        self.posts.append({"destination": destination, "body": body, "identity": identity, "thread": thread})

    async def archive_thread(self, thread: str) -> None:
        self.calls.append(("archive", thread))

    async def apply_tag(self, thread: str, tag: str) -> None:
        self.calls.append(("tag", thread, tag))

    def has_destination(self, destination: Destination) -> bool:
        return destination is not Destination.DEPLOY or self.deploy_enabled

    def posts_to(self, destination: Destination) -> list[dict[str, Any]]:
        return [p for p in self.posts if p["destination"] is destination]


class FakeDrafter(Drafter):
    def __init__(self, draft: Draft | None = None, delay: float = 0.0, error: Exception | None = None) -> None:
        self.draft_result = draft or Draft(title="Drafted title", body="## Description\nDrafted body")
        self.delay = delay
        self.error = error
        self.calls: list[tuple[IssueType, str, str]] = []

    async def draft(self, kind: IssueType, description: str, repo: str) -> Draft:
        self.calls.append((kind, description, repo))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.draft_result


class FakeDeployer(Deployer):
    def __init__(self, result: DeployResult | None = None) -> None:
        self.result = result or DeployResult(ok=True, output="deployed\n")
        self.runs: list[list[str]] = []

    async def run(self, steps: list[str]) -> DeployResult:
        self.runs.append(list(steps))
        return self.result


class Clock:
    """Monotonic fake timestamps, one second apart."""

    def __init__(self) -> None:
        self.ticks = 0

    def __call__(self) -> str:
        self.ticks += 1
        return f"2026-01-01T00:{self.ticks // 60:02d}:{self.ticks % 60:02d}+00:00"


@pytest.fixture
def settings() -> ProjectSettings:
    """Resolved settings for the test project ``acme``."""
    return build_settings()


@pytest.fixture
def state_path(tmp_path: Path) -> Path:
    return tmp_path / "projects" / "acme.state.json"


@pytest.fixture
def store(state_path: Path) -> StateStore:
    """StateStore backed by a temp file."""
    return StateStore(state_path)


@pytest.fixture
def tracker() -> FakeTracker:
    return FakeTracker()


@pytest.fixture
def board() -> FakeBoard:
    return FakeBoard()


@pytest.fixture
def make_pipeline(store: StateStore, tracker: FakeTracker, board: FakeBoard):
    """Factory for a Pipeline over the shared fakes with optional setting overrides."""

    def _make(
        agent: Drafter | None = None,
        deployer: Deployer | None = None,
        **overrides: Any,
    ) -> Pipeline:
        return Pipeline(
            build_settings(**overrides),
            store,
            tracker=tracker,
            board=board,
            drafter=agent,
            deployer=deployer,
            clock=Clock(),
        )

    return _make


@pytest.fixture
def pipeline(make_pipeline) -> Pipeline:
    return make_pipeline()


@pytest.fixture
def fake_drafter():
    """Factory fixture for drafters with a canned answer, delay or error."""
    return FakeDrafter


@pytest.fixture
def fake_deployer():
    """Factory fixture for deployers returning a fixed result."""
    return FakeDeployer
