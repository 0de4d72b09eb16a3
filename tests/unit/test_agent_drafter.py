"""Tests for issue_pipeline/providers/agent_drafter.py."""

import subprocess
from unittest.mock import AsyncMock, patch

import pytest

from issue_pipeline.config.settings import DrafterConfig
from issue_pipeline.enums import IssueType
from issue_pipeline.exceptions import CollaboratorFailure, DraftTimeout
from issue_pipeline.providers.agent_drafter import AgentDrafter, parse_draft

AGENT_OUTPUT = """Sure, here is the issue.
TITLE: Login fails when the password contains a colon
---
## Description
Users cannot log in.
"""


class TestParseDraft:
    def test_parses_title_and_body(self):
        """Should split title and body and drop chatter before the title."""
        draft = parse_draft(AGENT_OUTPUT)

        assert draft.title == "Login fails when the password contains a colon"
        assert draft.body == "## Description\nUsers cannot log in."
        assert draft.drafted is True

    def test_separator_optional(self):
        """Should accept output without the --- line."""
        draft = parse_draft("title: Crash\nBody text")
        assert draft.title == "Crash"
        assert draft.body == "Body text"

    @pytest.mark.parametrize("output", ["", "no title here", "TITLE: \n---\nbody", "TITLE: Only a title\n---\n"])
    def test_rejects_incomplete(self, output):
        """Should return None without both title and body."""
        assert parse_draft(output) is None


class TestAgentDrafter:
    def test_build_command(self):
        """Should substitute prompt and session id into the argv template."""
        drafter = AgentDrafter(DrafterConfig(command=["agent", "--session", "{session_id}", "-m", "{prompt}"]))
        assert drafter.build_command("hello", "s1") == ["agent", "--session", "s1", "-m", "hello"]

    @pytest.mark.asyncio
    async def test_draft(self):
        """Should render the prompt, run the agent and parse its answer."""
        drafter = AgentDrafter(DrafterConfig(command=["agent", "{prompt}"], timeout=5))

        with patch(
            "issue_pipeline.providers.agent_drafter.run_command",
            new_callable=AsyncMock,
            return_value=(AGENT_OUTPUT, "", 0),
        ) as run:
            draft = await drafter.draft(IssueType.BUG, "login fails with colon", "acme/webapp")

        argv = run.call_args.args
        assert argv[0] == "agent"
        assert "bug: login fails with colon" in argv[1]
        assert run.call_args.kwargs["timeout"] == 5
        assert draft.title.startswith("Login fails")

    @pytest.mark.asyncio
    async def test_timeout(self):
        """Should raise DraftTimeout when the agent overruns."""
        drafter = AgentDrafter(DrafterConfig(timeout=1))
        with patch("issue_pipeline.providers.agent_drafter.run_command", new_callable=AsyncMock) as run:
            run.side_effect = TimeoutError()
            with pytest.raises(DraftTimeout):
                await drafter.draft(IssueType.TASK, "x", "acme/webapp")

    @pytest.mark.asyncio
    async def test_agent_missing(self):
        """Should raise CollaboratorFailure when the agent is not installed."""
        drafter = AgentDrafter(DrafterConfig(command=["no-such-agent", "{prompt}"]))
        with patch("issue_pipeline.providers.agent_drafter.run_command", new_callable=AsyncMock) as run:
            run.side_effect = FileNotFoundError()
            with pytest.raises(CollaboratorFailure, match="no-such-agent"):
                await drafter.draft(IssueType.TASK, "x", "acme/webapp")

    @pytest.mark.asyncio
    async def test_agent_error_exit(self):
        """Should carry the agent's exit code."""
        drafter = AgentDrafter(DrafterConfig())
        with patch("issue_pipeline.providers.agent_drafter.run_command", new_callable=AsyncMock) as run:
            run.side_effect = subprocess.CalledProcessError(2, ["openclaw"], "", "auth expired")
            with pytest.raises(CollaboratorFailure) as exc_info:
                await drafter.draft(IssueType.TASK, "x", "acme/webapp")

        assert exc_info.value.status_code == 2
        assert "auth expired" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_unparseable_output(self):
        """Should fail when the agent ignores the format."""
        drafter = AgentDrafter(DrafterConfig())
        with patch(
            "issue_pipeline.providers.agent_drafter.run_command",
            new_callable=AsyncMock,
            return_value=("I could not do that.", "", 0),
        ):
            with pytest.raises(CollaboratorFailure):
                await drafter.draft(IssueType.TASK, "x", "acme/webapp")
