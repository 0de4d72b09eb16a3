"""Template rendering for issue bodies, agent prompts and Board messages."""

from issue_pipeline.rendering.engine import TemplateEngine

__all__ = ["TemplateEngine"]
