"""Jinja2 rendering of issue bodies, agent prompts and Board messages.

All text the pipeline sends to a collaborator comes from a template under
``issue_pipeline/templates``. Templates render in a sandboxed environment
with ``StrictUndefined`` so a missing context value fails loudly instead of
posting a message with a blank where the PR link should be.

Key Exports:
    TemplateEngine: Renders named templates.
    truncate_title: Board thread title limit.

Example:
    >>> engine = TemplateEngine()
    >>> engine.render("issues/task.md.j2", {"description": "add retries"})
"""

from pathlib import Path
from typing import Any

from jinja2 import FileSystemLoader, StrictUndefined, TemplateNotFound, UndefinedError
from jinja2.sandbox import SandboxedEnvironment

from issue_pipeline.exceptions import ConfigurationError

THREAD_TITLE_LIMIT = 100


def truncate_title(title: str, limit: int = THREAD_TITLE_LIMIT) -> str:
    """Cut a title to ``limit`` characters, ending in ``...`` when cut."""
    if len(title) <= limit:
        return title
    return title[: limit - 3] + "..."


def tail(text: str, lines: int = 20) -> str:
    """Last ``lines`` lines of captured command output."""
    return "\n".join(text.rstrip().splitlines()[-lines:])


class TemplateEngine:
    """Sandboxed Jinja2 environment over the package templates.

    Attributes:
        template_dir: Resolved template root.
        env: The SandboxedEnvironment instance.
    """

    def __init__(self, template_dir: Path | None = None) -> None:
        """Initialize the engine.

        Args:
            template_dir: Root directory for templates. Defaults to the
                package's built-in ``templates`` directory.

        Raises:
            ValueError: If template_dir doesn't exist or isn't a directory.
        """
        if template_dir is None:
            template_dir = Path(__file__).parent.parent / "templates"

        self.template_dir = template_dir.resolve()
        if not self.template_dir.is_dir():
            raise ValueError(f"Template directory does not exist: {self.template_dir}")

        self.env = SandboxedEnvironment(
            loader=FileSystemLoader(str(self.template_dir)),
            undefined=StrictUndefined,
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=False,
        )
        self.env.filters["tail"] = tail
        self.env.filters["truncate_title"] = truncate_title

    def render(self, template_name: str, context: dict[str, Any]) -> str:
        """Render a template with the given context.

        Args:
            template_name: Path relative to the template root
            context: Template variables

        Returns:
            Rendered text with surrounding whitespace stripped

        Raises:
            ConfigurationError: If the template is missing or references a
                variable the context does not provide
        """
        try:
            template = self.env.get_template(template_name)
            return template.render(**context).strip()
        except TemplateNotFound as e:
            raise ConfigurationError(f"Template not found: {template_name}") from e
        except UndefinedError as e:
            raise ConfigurationError(f"Template {template_name} is missing a value: {e.message}") from e

    def exists(self, template_name: str) -> bool:
        return (self.template_dir / template_name).is_file()
