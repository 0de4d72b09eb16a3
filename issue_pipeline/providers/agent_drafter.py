"""
Drafter that asks an external agent CLI to write the issue.

The agent runs in a fresh session per draft and must answer in the format
the prompt asks for::

    TITLE: Login fails when the password contains a colon
    ---
    ## Description
    ...

Anything the agent prints before the ``TITLE:`` line is ignored. Output
without a title or a body is rejected, and the caller falls back to the
deterministic template.
"""

import subprocess
import time

import structlog

from issue_pipeline.config.settings import DrafterConfig
from issue_pipeline.enums import IssueType
from issue_pipeline.exceptions import CollaboratorFailure, DraftTimeout
from issue_pipeline.models.domain import Draft
from issue_pipeline.providers.base import Drafter
from issue_pipeline.rendering.engine import TemplateEngine
from issue_pipeline.utils.async_subprocess import run_command

log = structlog.get_logger(__name__)


def parse_draft(output: str) -> Draft | None:
    """Extract title and body from agent output.

    Returns:
        The draft, or None if no ``TITLE:`` line or no body was found
    """
    lines = output.strip().splitlines()
    title_index = next((i for i, line in enumerate(lines) if line.strip().upper().startswith("TITLE:")), None)
    if title_index is None:
        return None

    title = lines[title_index].strip()[len("TITLE:") :].strip()
    rest = lines[title_index + 1 :]
    if rest and rest[0].strip() == "---":
        rest = rest[1:]
    body = "\n".join(rest).strip()

    if not title or not body:
        return None
    return Draft(title=title, body=body, drafted=True)


class AgentDrafter(Drafter):
    """Runs the configured agent command with the drafting prompt."""

    def __init__(self, config: DrafterConfig, templates: TemplateEngine | None = None) -> None:
        self.config = config
        self.templates = templates or TemplateEngine()

    def build_command(self, prompt: str, session_id: str) -> list[str]:
        """Substitute ``{prompt}`` and ``{session_id}`` into the argv template."""
        return [arg.replace("{session_id}", session_id).replace("{prompt}", prompt) for arg in self.config.command]

    async def draft(self, kind: IssueType, description: str, repo: str) -> Draft:
        prompt = self.templates.render(
            "prompts/draft_issue.j2", {"issue_type": kind.value, "description": description, "repo": repo}
        )
        session_id = f"pipeline-draft-{int(time.time())}"
        argv = self.build_command(prompt, session_id)
        log.info("draft_requested", type=kind.value, session=session_id, agent=argv[0])

        try:
            stdout, _, _ = await run_command(*argv, timeout=self.config.timeout)
        except TimeoutError as e:
            raise DraftTimeout(self.config.timeout) from e
        except FileNotFoundError as e:
            raise CollaboratorFailure(f"agent command not found: {argv[0]}", collaborator="drafter") from e
        except subprocess.CalledProcessError as e:
            raise CollaboratorFailure(
                f"agent exited with an error: {(e.stderr or '').strip()[:200]}",
                collaborator="drafter",
                status_code=e.returncode,
            ) from e

        draft = parse_draft(stdout)
        if draft is None:
            raise CollaboratorFailure("agent output has no TITLE line or body", collaborator="drafter")

        log.info("draft_received", title=draft.title)
        return draft
